"""Shared fakes: a recording tool runner and an in-memory serial port."""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import pytest

from rm01_flasher.config import FlasherConfig, Timings
from rm01_flasher.core.safety import ConfirmationGate
from rm01_flasher.hardware.runner import ExternalToolRunner, ToolResult


@dataclass
class Call:
    program: str
    args: List[str]
    privileged: bool = False
    working_dir: Optional[str] = None
    input_text: Optional[str] = None
    stream: bool = False


Response = Union[None, str, ToolResult, Callable[[List[str]], Union[str, ToolResult]]]


class FakeRunner(ExternalToolRunner):
    """
    Records every run() and answers from ``responses``.

    ``responses`` maps a program name to a stdout string, a ToolResult, or a
    callable taking the argument list. Unknown programs exit 0 silently.
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None):
        super().__init__(escalation=["sudo"])
        self.responses = dict(responses or {})
        self.calls: List[Call] = []

    def run(self, program, args=(), working_dir=None, privileged=False,
            stream=False, input_text=None, timeout=None) -> ToolResult:
        argv = [str(a) for a in args]
        self.calls.append(Call(
            program=str(program),
            args=argv,
            privileged=privileged,
            working_dir=str(working_dir) if working_dir is not None else None,
            input_text=input_text,
            stream=stream,
        ))
        command = self.build_command(program, argv, privileged)
        response = self.responses.get(str(program))
        if callable(response):
            response = response(argv)
        if response is None:
            return ToolResult(command=command, exit_code=0)
        if isinstance(response, str):
            return ToolResult(command=command, exit_code=0, stdout=response)
        response.command = command
        return response

    def programs(self) -> List[str]:
        return [c.program for c in self.calls]

    def calls_to(self, program: str) -> List[Call]:
        return [c for c in self.calls if c.program == program]


class FakeSerial:
    """
    pyserial stand-in. Replies are queued when a matching command is written.

    Args:
        replies: command text -> bytes to make readable after the write
        echo: Also echo each written line back, as robOS's console does
        fail_open: open() raises SerialException
    """

    def __init__(self, replies: Optional[Dict[str, bytes]] = None, echo: bool = False,
                 fail_open: bool = False):
        self.replies = dict(replies or {})
        self.echo = echo
        self.fail_open = fail_open
        self.port = None
        self.baudrate = 9600
        self.bytesize = 8
        self.parity = "N"
        self.stopbits = 1
        self.timeout = 0.01
        self.write_timeout = None
        self.dtr = True
        self.rts = True
        self.is_open = False
        self.written: List[bytes] = []
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def open(self) -> None:
        import serial

        if self.fail_open:
            raise serial.SerialException("could not open port: busy")
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    @property
    def in_waiting(self) -> int:
        with self._lock:
            return len(self._buffer)

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            if self._buffer:
                data = bytes(self._buffer[:size])
                del self._buffer[:size]
                return data
        time.sleep(self.timeout or 0.01)
        return b""

    def write(self, data: bytes) -> int:
        self.written.append(data)
        command = data.decode().strip()
        with self._lock:
            if self.echo:
                self._buffer.extend(command.encode() + b"\r\n")
            reply = self.replies.get(command)
            if reply:
                self._buffer.extend(reply)
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        with self._lock:
            self._buffer.clear()


class SleepRecorder:
    """Replaces time.sleep; records requested delays without waiting."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def config(tmp_path) -> FlasherConfig:
    """Config rooted in tmp_path with every wait zeroed."""
    return FlasherConfig(
        base_dir=tmp_path,
        l4t_dir=tmp_path / "Linux_for_Tegra",
        timings=Timings.instant(),
    )


@pytest.fixture
def yes_gate() -> ConfirmationGate:
    return ConfirmationGate.headless(True)


@pytest.fixture
def no_gate() -> ConfirmationGate:
    return ConfirmationGate.headless(False)

"""
Serial command channel for the companion microcontroller.

Handles line-oriented text commands to robOS over a USB serial port.

This module provides:
- Serial port open/close with DTR/RTS held inactive (no accidental reset)
- Command send with an overlapped, bounded response capture
- Response classification (acknowledged / error keyword / silent)
- Batched parameter sends with per-command retry
- Hardware reset through the external DTR/RTS helper

The protocol has no framing, no checksums and no guaranteed reply, so the
classification rules below are the only robustness the channel has.
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple, Union

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from rm01_flasher.config import Timings
from rm01_flasher.core.errors import SerialChannelError
from rm01_flasher.core.retry import RetryBudget, run_with_retry
from .runner import ExternalToolRunner

logger = logging.getLogger(__name__)

LINE_TERMINATOR = b"\r\n"
FAILURE_KEYWORDS = ("error", "fail", "invalid", "unknown")
# Console prompt in front of an echoed line, e.g. "robOS> "
PROMPT_PREFIX = re.compile(r"^\S*[>#$]\s*")

# Command shapes. A command is a QUERY if any token asks for state back.
QUERY_TOKENS = {"status", "get", "show", "list", "info", "version"}
ACTION_TOKENS = {"reboot", "recovery", "usbmux", "reset"}
CONFIG_TOKENS = {
    "set", "save", "enable", "disable", "config", "mode", "auto", "gpio",
    "curve", "hysteresis", "anim", "import", "gamma", "saturation",
    "brightness", "on", "off",
}


class CommandKind(Enum):
    """Shape of a command, used to decide whether silence is acceptable."""
    CONFIG = "config"   # set/save/enable style; no reply expected
    ACTION = "action"   # reboot, mux switch, recovery; reply optional
    QUERY = "query"     # status style; a reply is expected
    OTHER = "other"


class ResponseStatus(Enum):
    ACKNOWLEDGED = "acknowledged"
    ERROR_DETECTED = "error_detected"
    SILENT = "silent"


def classify_command(text: str) -> CommandKind:
    tokens = text.lower().split()
    if not tokens:
        return CommandKind.OTHER
    if any(token in QUERY_TOKENS for token in tokens):
        return CommandKind.QUERY
    if any(token in ACTION_TOKENS for token in tokens):
        return CommandKind.ACTION
    if any(token in CONFIG_TOKENS for token in tokens):
        return CommandKind.CONFIG
    return CommandKind.OTHER


def silence_acceptable(text: str) -> bool:
    return classify_command(text) in (CommandKind.CONFIG, CommandKind.ACTION)


@dataclass
class SerialTranscript:
    """Everything captured during one command's response window."""
    command: str
    raw: bytes = b""
    window: float = 0.0

    @property
    def text(self) -> str:
        return self.raw.decode("utf-8", errors="replace")

    @property
    def lines(self) -> List[str]:
        return [line.strip() for line in self.text.splitlines() if line.strip()]

    @property
    def response_lines(self) -> List[str]:
        """Captured lines minus the device's echo of the command itself."""
        echo = self.command.strip().lower()
        return [line for line in self.lines if not self._is_echo(line, echo)]

    @staticmethod
    def _is_echo(line: str, echo: str) -> bool:
        lowered = line.lower()
        if lowered == echo:
            return True
        return PROMPT_PREFIX.sub("", lowered, count=1).strip() == echo

    @property
    def empty(self) -> bool:
        return not self.lines


@dataclass
class ResponseClassification:
    """
    Verdict on one transcript.

    Attributes:
        status: ACKNOWLEDGED, ERROR_DETECTED or SILENT
        command_kind: Shape of the command that was sent
        keyword: Failure keyword found (ERROR_DETECTED only)
        silent: Nothing but the echo was captured
        evidence: The line that triggered ERROR_DETECTED, or the first reply line
    """
    status: ResponseStatus
    command_kind: CommandKind
    keyword: Optional[str] = None
    silent: bool = False
    evidence: str = ""

    @property
    def ok(self) -> bool:
        """Not a hard failure. SILENT is suspicious but not failed."""
        return self.status != ResponseStatus.ERROR_DETECTED

    @property
    def flagged(self) -> bool:
        """Needs an operator's eye: silence where a reply was expected."""
        return self.status == ResponseStatus.SILENT

    def describe(self) -> str:
        if self.status == ResponseStatus.ERROR_DETECTED:
            return f"error reply ('{self.keyword}'): {self.evidence}"
        if self.status == ResponseStatus.SILENT:
            return "no reply (expected one)"
        if self.silent:
            return "no reply (config command)"
        return f"reply: {self.evidence}" if self.evidence else "acknowledged"


def classify(
    transcript: SerialTranscript,
    keywords: Sequence[str] = FAILURE_KEYWORDS,
) -> ResponseClassification:
    """
    Classify a transcript.

    Rules:
    1. Any failure keyword (case-insensitive) outside the echo -> ERROR_DETECTED
    2. No reply beyond the echo and silence acceptable for this command -> ACKNOWLEDGED
    3. No reply beyond the echo otherwise -> SILENT (flagged, not failed)
    4. Anything else -> ACKNOWLEDGED
    """
    kind = classify_command(transcript.command)
    replies = transcript.response_lines

    for line in replies:
        lowered = line.lower()
        for keyword in keywords:
            if keyword in lowered:
                return ResponseClassification(
                    status=ResponseStatus.ERROR_DETECTED,
                    command_kind=kind,
                    keyword=keyword,
                    evidence=line,
                )

    if not replies:
        status = (
            ResponseStatus.ACKNOWLEDGED
            if kind in (CommandKind.CONFIG, CommandKind.ACTION)
            else ResponseStatus.SILENT
        )
        return ResponseClassification(status=status, command_kind=kind, silent=True)

    return ResponseClassification(
        status=ResponseStatus.ACKNOWLEDGED,
        command_kind=kind,
        evidence=replies[0],
    )


@dataclass
class DeviceHandle:
    """
    An open serial endpoint.

    Owned by one component at a time; ``lock`` serializes every command
    issued against it.
    """
    path: str
    alive: bool = False
    port: Any = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class CommandOutcome:
    command: str
    classification: Optional[ResponseClassification]
    attempts: int
    lines: List[str] = field(default_factory=list)
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.classification is not None and self.classification.ok


@dataclass
class BatchResult:
    outcomes: List[CommandOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [o.command for o in self.outcomes if not o.ok]

    @property
    def flagged(self) -> List[str]:
        return [o.command for o in self.outcomes
                if o.classification is not None and o.classification.flagged]

    @property
    def ok(self) -> bool:
        return not self.failed


class SerialChannel:
    """
    Text command channel over a serial port.

    Example:
        channel = SerialChannel(runner)
        with channel.session("/dev/ttyACM0") as handle:
            transcript = channel.send_command(handle, "fan status", 1.0)
            verdict = classify(transcript)

    Args:
        runner: Used for stty and the reset helper
        serial_factory: Returns an unopened pyserial-compatible object
        baudrate: Default baud rate for new sessions
        read_poll: Reader poll interval; bounds how late the reader stops
        lead_in: Time between the reader starting and the write
        reader_join_timeout: Longest wait for the reader to stop
        sleep: Used for settle delays between commands
    """

    def __init__(
        self,
        runner: Optional[ExternalToolRunner] = None,
        serial_factory: Optional[Callable[[], Any]] = None,
        baudrate: int = 115200,
        read_poll: float = 0.05,
        lead_in: float = 0.5,
        reader_join_timeout: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner or ExternalToolRunner()
        self.serial_factory = serial_factory or serial.Serial
        self.baudrate = baudrate
        self.read_poll = read_poll
        self.lead_in = lead_in
        self.reader_join_timeout = reader_join_timeout
        self.sleep = sleep

    def open(self, path: str, baudrate: Optional[int] = None) -> DeviceHandle:
        """
        Open ``path`` for commands.

        DTR and RTS are set inactive before opening; on the RM-01 board they
        drive the MCU's EN and GPIO0 lines.

        Raises:
            SerialChannelError: If the port cannot be opened
        """
        port = self.serial_factory()
        port.port = path
        port.baudrate = baudrate or self.baudrate
        port.bytesize = 8
        port.parity = "N"
        port.stopbits = 1
        port.timeout = self.read_poll
        port.write_timeout = 2.0
        port.dtr = False
        port.rts = False
        try:
            port.open()
        except (serial.SerialException, OSError) as e:
            raise SerialChannelError(f"Cannot open port {path}: {e}", details={"port": path})

        logger.debug(f"Opened {path} at {port.baudrate} bps")
        return DeviceHandle(path=path, alive=True, port=port)

    def close(self, handle: DeviceHandle) -> None:
        """Close the handle. Safe to call twice."""
        with handle.lock:
            if handle.port is not None and handle.alive:
                try:
                    handle.port.close()
                except (serial.SerialException, OSError) as e:
                    logger.warning(f"Error closing {handle.path}: {e}")
                logger.debug(f"Closed {handle.path}")
            handle.alive = False

    @contextmanager
    def session(self, path: str, baudrate: Optional[int] = None) -> Iterator[DeviceHandle]:
        handle = self.open(path, baudrate)
        try:
            yield handle
        finally:
            self.close(handle)

    def _capture(self, port, started: threading.Event, stop: threading.Event,
                 chunks: List[bytes], errors: List[Exception]) -> None:
        started.set()
        while not stop.is_set():
            try:
                waiting = port.in_waiting
                chunk = port.read(waiting or 1)
            except (serial.SerialException, OSError) as e:
                errors.append(e)
                return
            if chunk:
                chunks.append(chunk)

        # Bytes that arrived after the last poll
        try:
            waiting = port.in_waiting
            if waiting:
                chunk = port.read(waiting)
                if chunk:
                    chunks.append(chunk)
        except (serial.SerialException, OSError) as e:
            errors.append(e)

    def send_command(
        self,
        handle: DeviceHandle,
        text: str,
        response_window: float,
    ) -> SerialTranscript:
        """
        Send ``text`` + CRLF and capture the device's output.

        The reader is running before the write starts, because robOS may echo
        before ``write`` returns. Capture stops when the window elapses, not
        on a quiet period; the reader is abandoned (daemon thread) if it does
        not stop within ``reader_join_timeout``.

        Raises:
            SerialChannelError: If the handle is closed or the write fails
        """
        with handle.lock:
            if not handle.alive or handle.port is None:
                raise SerialChannelError(
                    f"Serial port {handle.path} not open", details={"command": text}
                )
            port = handle.port

            try:
                port.reset_input_buffer()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Could not drain {handle.path}: {e}")

            chunks: List[bytes] = []
            errors: List[Exception] = []
            started = threading.Event()
            stop = threading.Event()
            reader = threading.Thread(
                target=self._capture,
                args=(port, started, stop, chunks, errors),
                name=f"serial-capture-{handle.path}",
                daemon=True,
            )
            reader.start()
            started.wait(timeout=self.reader_join_timeout)
            if self.lead_in:
                time.sleep(self.lead_in)

            payload = text.encode("utf-8") + LINE_TERMINATOR
            logger.debug(f">>> {text}")
            try:
                written = port.write(payload)
                port.flush()
            except (serial.SerialException, OSError) as e:
                stop.set()
                reader.join(timeout=self.reader_join_timeout)
                raise SerialChannelError(
                    f"Write error on {handle.path}: {e}", details={"command": text}
                )
            if written is not None and written != len(payload):
                logger.warning(f"Incomplete write: sent {written}/{len(payload)} bytes")

            if response_window:
                time.sleep(response_window)
            stop.set()
            reader.join(timeout=self.reader_join_timeout)
            if reader.is_alive():
                logger.warning(f"Capture on {handle.path} did not stop; abandoning reader")

            if errors:
                handle.alive = False
                raise SerialChannelError(
                    f"Read error on {handle.path}: {errors[0]}", details={"command": text}
                )

            transcript = SerialTranscript(
                command=text, raw=b"".join(list(chunks)), window=response_window
            )
            for line in transcript.lines:
                logger.debug(f"<<< {line}")
            return transcript

    def set_baud_rate(self, target: Union[DeviceHandle, str], rate: int) -> bool:
        """
        Best-effort baud rate change.

        Applies to the open handle if given one, otherwise runs ``stty`` on the
        path. Failure is a warning: some devices configure themselves.
        """
        if isinstance(target, DeviceHandle):
            try:
                target.port.baudrate = rate
                logger.info(f"Set {target.path} to {rate} bps")
                return True
            except (serial.SerialException, OSError, ValueError) as e:
                logger.warning(f"Failed to set baud rate on {target.path}: {e}; continuing")
                return False

        result = self.runner.run("stty", ["-F", target, str(rate), "cs8", "-cstopb", "-parenb"])
        if not result.ok:
            logger.warning(f"Failed to set baud rate on {target}: {result.tail(2)}; continuing")
            return False
        logger.info(f"Set {target} to {rate} bps")
        return True

    def hardware_reset(self, path: str, helper: Path, bootloader: bool = False) -> bool:
        """
        Pulse EN (and GPIO0 for bootloader mode) through the reset helper.

        A missing or failing helper is reported as False with a warning; the
        caller's ResetFailurePolicy decides what happens next.
        """
        helper = Path(helper)
        if not helper.exists():
            logger.warning(f"Reset helper not found: {helper}")
            return False

        args = [path] + (["bootloader"] if bootloader else [])
        result = self.runner.run(helper, args)
        if not result.ok:
            logger.warning(f"Hardware reset failed (exit {result.exit_code}): {result.tail(3)}")
            return False
        logger.info(f"Hardware reset of {path} complete ({'bootloader' if bootloader else 'normal'} mode)")
        return True

    def send_and_classify(
        self,
        handle: DeviceHandle,
        text: str,
        response_window: float,
    ) -> Tuple[SerialTranscript, ResponseClassification]:
        transcript = self.send_command(handle, text, response_window)
        return transcript, classify(transcript)

    def send_batch(
        self,
        handle: DeviceHandle,
        commands: Sequence[str],
        timings: Timings,
        max_attempts: int = 1,
        on_outcome: Optional[Callable[[int, int, CommandOutcome], None]] = None,
    ) -> BatchResult:
        """
        Send ``commands`` in order, re-sending any that reply with an error.

        ``reboot`` gets a longer window and an extra settle afterwards.
        Silent queries are flagged in the result but do not fail it.
        """
        batch = BatchResult()
        total = len(commands)

        for index, command in enumerate(commands, start=1):
            is_reboot = command.strip().lower() == "reboot"
            window = timings.reboot_window if is_reboot else timings.command_window
            logger.info(f"[{index}/{total}] {command}")

            last_transcript: List[SerialTranscript] = []

            def attempt(number: int) -> ResponseClassification:
                transcript, verdict = self.send_and_classify(handle, command, window)
                last_transcript[:] = [transcript]
                return verdict

            budget = RetryBudget(max_attempts=max_attempts, backoff=timings.command_retry_backoff)
            verdict, error = run_with_retry(
                attempt,
                budget,
                succeeded=lambda v: v is not None and v.ok,
                sleep=self.sleep,
                label=f"'{command}'",
            )

            outcome = CommandOutcome(
                command=command,
                classification=verdict,
                attempts=budget.attempts,
                lines=last_transcript[0].lines if last_transcript else [],
                error=error.reason if error else "",
            )
            if outcome.ok:
                if verdict.flagged:
                    logger.warning(f"  no reply to '{command}'")
                else:
                    logger.info(f"  {verdict.describe()}")
            else:
                logger.warning(
                    f"  command may have failed: {command} "
                    f"({outcome.error or verdict.describe()})"
                )
            batch.outcomes.append(outcome)
            if on_outcome:
                on_outcome(index, total, outcome)

            if is_reboot:
                logger.info(f"Device rebooting, waiting {timings.reboot_settle:g}s...")
                self.sleep(timings.reboot_settle)
            self.sleep(timings.inter_command_delay)

        return batch

"""
External tool supervision.

Runs vendor and system tools (esptool.py, flash.sh, sfdisk, mkfs, ...) as
opaque subprocesses. No retry and no interpretation: callers decide what an
exit code or a line of output means.

Long-running tools are streamed line by line to an output callback so a
stalled flash is visible while it happens, and captured at the same time.

Example:
    runner = ExternalToolRunner(escalation=["sudo"])
    result = runner.run("lsblk", ["-b", "-n", "-d", "-o", "SIZE", "/dev/sdd"])
    if result.ok:
        size = int(result.stdout.split()[0])
"""

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Thread
from typing import Callable, Dict, List, Optional, Sequence, Union

from rm01_flasher.core.errors import ExternalToolFailure

logger = logging.getLogger(__name__)

# (line, stream_type) where stream_type is "stdout" or "stderr"
OutputCallback = Callable[[str, str], None]

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


@dataclass
class ToolResult:
    """Structured outcome of one external program run."""
    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for keyword scanning."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output.rstrip().splitlines()[-lines:])

    def raise_for_status(self, reason: str) -> "ToolResult":
        """Raise ExternalToolFailure unless the tool exited 0."""
        if not self.ok:
            raise ExternalToolFailure(
                f"{reason} (exit code {self.exit_code})",
                exit_code=self.exit_code,
                output=self.output,
                details={"command": " ".join(self.command)},
            )
        return self


class ExternalToolRunner:
    """
    Runs external programs and returns ``ToolResult`` objects.

    Args:
        escalation: Prefix for privileged runs (e.g. ``["sudo"]``); empty
            to run everything as the current user
        on_output: Callback for streamed lines; defaults to logging them
        env: Extra environment variables for every child process
    """

    def __init__(
        self,
        escalation: Optional[Sequence[str]] = None,
        on_output: Optional[OutputCallback] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.escalation = list(escalation or [])
        self.on_output = on_output or self._log_line
        self.env = env

    @staticmethod
    def _log_line(line: str, stream_type: str) -> None:
        if stream_type == "stderr":
            logger.warning(f"  {line}")
        else:
            logger.info(f"  {line}")

    @staticmethod
    def which(program: str) -> Optional[str]:
        """Return the resolved path of ``program``, or None if not installed."""
        return shutil.which(program)

    def build_command(
        self,
        program: Union[str, Path],
        args: Sequence[Union[str, Path]] = (),
        privileged: bool = False,
    ) -> List[str]:
        command = [str(program)] + [str(a) for a in args]
        if privileged and self.escalation:
            command = self.escalation + command
        return command

    def run(
        self,
        program: Union[str, Path],
        args: Sequence[Union[str, Path]] = (),
        working_dir: Optional[Union[str, Path]] = None,
        privileged: bool = False,
        stream: bool = False,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """
        Run ``program`` with ``args`` and capture its output.

        Args:
            program: Executable name or path
            args: Arguments
            working_dir: Directory to run in (None for the current one)
            privileged: Prefix the escalation command
            stream: Forward each output line to ``on_output`` as it arrives
            input_text: Text written to the child's stdin
            timeout: Seconds before the child is killed (None waits forever)

        Returns:
            ToolResult. A missing program gives exit code 127, a timeout 124.
        """
        command = self.build_command(program, args, privileged)
        cwd = str(working_dir) if working_dir is not None else None
        logger.info(f"$ {' '.join(command)}" + (f"  (in {cwd})" if cwd else ""))

        env = None
        if self.env:
            env = dict(os.environ)
            env.update(self.env)

        started = time.monotonic()
        try:
            if stream:
                exit_code, stdout, stderr = self._run_streaming(
                    command, cwd, env, input_text, timeout
                )
            else:
                exit_code, stdout, stderr = self._run_captured(
                    command, cwd, env, input_text, timeout
                )
        except FileNotFoundError as exc:
            exit_code, stdout, stderr = EXIT_NOT_FOUND, "", f"{command[0]}: {exc}"
        except PermissionError as exc:
            exit_code, stdout, stderr = EXIT_NOT_EXECUTABLE, "", f"{command[0]}: {exc}"

        result = ToolResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - started,
        )
        if result.ok:
            logger.debug(f"{command[0]} finished in {result.duration:.1f}s")
        else:
            logger.debug(f"{command[0]} exited {exit_code}: {result.tail(5)}")
        return result

    @staticmethod
    def _run_captured(command, cwd, env, input_text, timeout):
        try:
            proc = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                input=input_text,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            stdout = _decode(exc.stdout)
            stderr = _decode(exc.stderr) + f"\ntimed out after {timeout}s"
            return EXIT_TIMEOUT, stdout, stderr
        return proc.returncode, proc.stdout or "", proc.stderr or ""

    def _run_streaming(self, command, cwd, env, input_text, timeout):
        process = subprocess.Popen(
            command,
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE if input_text is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )

        captured: Dict[str, List[str]] = {"stdout": [], "stderr": []}

        def pump(stream, stream_type: str) -> None:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip("\r\n")
                captured[stream_type].append(line)
                self.on_output(line, stream_type)
            stream.close()

        readers = [
            Thread(target=pump, args=(process.stdout, "stdout"), daemon=True),
            Thread(target=pump, args=(process.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        if input_text is not None:
            process.stdin.write(input_text)
            process.stdin.close()

        timed_out = False
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            process.kill()
            process.wait()
            exit_code = EXIT_TIMEOUT

        for reader in readers:
            reader.join(timeout=5)

        stdout = "\n".join(captured["stdout"])
        stderr = "\n".join(captured["stderr"])
        if timed_out:
            stderr += f"\ntimed out after {timeout}s"
        return exit_code, stdout, stderr


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data

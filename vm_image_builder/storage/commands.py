"""Command execution utilities.

Every external tool the builder drives (sfdisk, losetup, mkfs.*, mount,
debootstrap, chroot, systemctl, qemu-img, ...) goes through one of these two
functions so commands and their output are logged the same way:

    - run_command(): short commands, output captured
    - stream_command(): long-running commands, output streamed to the log
      line by line while the tool runs

Both raise ``subprocess.CalledProcessError`` on a non-zero exit when
``check=True`` and let ``OSError`` (tool not installed) propagate. Callers
convert these into the build error for their area.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from typing import Mapping, Optional, Sequence

from vm_image_builder.logging import LoggerFactory


log = LoggerFactory.for_system()


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    log_output: bool = True,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {format_command(command)}")
    try:
        result = subprocess.run(
            command,
            check=check,
            input=input_text,
            env=_merged_env(env),
            text=True,
            capture_output=True,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {format_command(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def _stop_process(
    process: subprocess.Popen, command: Sequence[str], timeout: float = 5
) -> None:
    """Terminate a streamed child that was abandoned, then reap it."""
    if process.poll() is not None:
        return
    log.warning(f"Stopping interrupted command: {format_command(command)}")
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def stream_command(
    command: Sequence[str],
    check: bool = True,
    env: Optional[Mapping[str, str]] = None,
    tail_lines: int = 20,
) -> subprocess.CompletedProcess:
    """Run a long command, logging its combined output as it is produced.

    The last ``tail_lines`` lines are kept and returned as ``stdout`` so
    callers can put them in error messages.
    """
    command = [str(part) for part in command]
    tool = os.path.basename(command[0])
    tool_log = LoggerFactory.for_tool_output(tool)
    log.debug(f"Starting command: {format_command(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env=_merged_env(env),
        text=True,
    )
    tail: list[str] = []
    try:
        with process.stdout:
            for line in process.stdout:
                line = line.rstrip()
                if not line:
                    continue
                tool_log.debug(line)
                tail.append(line)
                if len(tail) > tail_lines:
                    tail.pop(0)
        returncode = process.wait()
    except BaseException:
        _stop_process(process, command)
        raise
    output = "\n".join(tail)
    log.debug(f"Command completed with return code {returncode}")
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, command, output=output)
    return subprocess.CompletedProcess(command, returncode, stdout=output, stderr="")


def describe_failure(error: BaseException) -> str:
    """Best single-line description of a failed command for error messages."""
    if isinstance(error, subprocess.CalledProcessError):
        for stream in (error.stderr, error.stdout):
            if stream and stream.strip():
                return stream.strip().splitlines()[-1]
        return f"exit status {error.returncode}"
    return str(error)

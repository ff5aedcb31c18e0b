from __future__ import annotations

import asyncio
import os
import shlex
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from shutil import which

from irscope.errors import MalformedInputError


@dataclass(frozen=True, kw_only=True)
class CommandOutput:
    output: str
    returncode: int


def tokenize(line: str) -> list[str]:
    """Splits a command line into arguments with POSIX shell rules.

    Whitespace separates arguments unless quoted or escaped, quotes are
    removed from the resulting tokens.

    Args:
        line (str): the command line

    Returns:
        list[str]:
            the arguments, including the executable
    """
    try:
        return shlex.split(line)
    except ValueError as e:
        raise MalformedInputError(f"Cannot parse command line {line!r}: {e}")


def quote_args(args: list[str]) -> str:
    """Inverse of `tokenize`: joins `args` into a shell-safe command line."""
    return shlex.join(args)


def find_executable(
    executable: str,
    working_dir: Path | None = None,
    additional_env: dict[str, str] = {},
) -> Path | None:
    """Resolves `executable` the way a shell started in `working_dir` would.

    Returns:
        Path | None:
            the executable's path, None if it cannot be found or executed
    """
    if working_dir is None:
        working_dir = Path(os.getcwd())
    env = os.environ.copy()
    env.update(additional_env)

    candidate = Path(executable)
    if not candidate.is_absolute() and len(candidate.parts) > 1:
        candidate = working_dir / candidate
        executable = str(candidate)
    found = which(executable, path=env.get("PATH"))
    return Path(found) if found else None


class CancellationToken:
    """Lets a caller abandon a running dry run.

    Cancelling kills the spawned process; the awaiting call then resolves
    without a result instead of hanging.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(process.wait(), timeout=5)


async def run_cmd_async(
    cmd: list[str],
    working_dir: Path | None = None,
    additional_env: dict[str, str] = {},
    timeout: float | None = None,
    cancel_token: CancellationToken | None = None,
) -> CommandOutput | None:
    """Runs `cmd` without blocking the event loop and captures its
    stdout and stderr combined.

    Args:
        cmd (list[str]):
            the executable and its arguments
        working_dir (Path | None):
            where to run the command, the current directory by default
        additional_env (dict[str, str]):
            variables added to the inherited environment
        timeout (float | None):
            seconds to wait for the process before killing it
        cancel_token (CancellationToken | None):
            kills the process when cancelled

    Returns:
        CommandOutput | None:
            the output and exit status, None if `cancel_token` was cancelled

    Raises:
        OSError: the executable could not be started
        TimeoutError: the process did not finish within `timeout`
    """
    if working_dir is None:
        working_dir = Path(os.getcwd())
    env = os.environ.copy()
    env.update(additional_env)

    if cancel_token is not None and cancel_token.is_cancelled():
        return None

    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(working_dir),
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )

    communicate = asyncio.ensure_future(process.communicate())
    waiters: set[asyncio.Future[object]] = {communicate}
    cancelled: asyncio.Future[object] | None = None
    if cancel_token is not None:
        cancelled = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancelled)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        communicate.cancel()
        await _kill(process)
        raise
    finally:
        if cancelled is not None:
            cancelled.cancel()

    if communicate not in done:
        communicate.cancel()
        await _kill(process)
        if cancelled is not None and cancelled in done:
            return None
        raise TimeoutError(f"{cmd[0]} did not finish within {timeout}s")

    stdout, _ = communicate.result()
    assert process.returncode is not None
    return CommandOutput(
        output=stdout.decode("utf-8", errors="replace").rstrip(),
        returncode=process.returncode,
    )

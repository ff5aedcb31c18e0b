""" Discovery of the jobs a compiler driver plans for an invocation

clang and gcc print their jobs with -### and nvcc with --dryrun, without
running any of them. -save-temps (--keep for nvcc) is added so that every
intermediate artifact gets its own job and a file name next to the sources.

Example:

jobs = await discover_jobs(ToolchainKind.CLANG, "clang++", ["main.cpp"])
for job in jobs:
    # job is a tokenized command line, e.g., ["/usr/bin/clang", "-cc1", ...]
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from irscope.errors import (
    DryRunFailedError,
    MalformedInputError,
    ToolchainNotFoundError,
)
from irscope.toolchain import ToolchainKind
from irscope.utils import CancellationToken, quote_args, run_cmd_async, tokenize

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass(frozen=True, kw_only=True)
class DryRunSetting:
    """How dry runs are executed.

    Attributes:
        timeout_s (float | None):
            seconds to wait for the driver before giving up, None waits forever
        additional_env (dict[str, str]):
            variables added to the environment the driver runs in
    """

    timeout_s: float | None = DEFAULT_TIMEOUT_S
    additional_env: dict[str, str] = field(default_factory=dict)


def dry_run_args(kind: ToolchainKind, args: list[str]) -> list[str]:
    """Appends the flags that make the driver list its jobs to `args`.

    Args:
        kind (ToolchainKind): CLANG or NVCC
        args (list[str]): the original arguments, without the executable

    Returns:
        list[str]:
            arguments for the dry run
    """
    match kind:
        case ToolchainKind.CLANG:
            if any(a.startswith("-save-temps") for a in args):
                return args + ["-###"]
            return args + ["-save-temps", "-###"]
        case ToolchainKind.NVCC:
            if "--keep" in args or "-keep" in args:
                return args + ["--dryrun"]
            return args + ["--keep", "--dryrun"]
        case ToolchainKind.RUSTC:
            raise ValueError("rustc does not plan jobs")


def extract_job(kind: ToolchainKind, line: str) -> str | None:
    """Returns the command in `line` if `line` describes a planned job."""
    match kind:
        case ToolchainKind.CLANG:
            # jobs are indented, clang quotes every token, gcc only some:
            # ' "/usr/bin/clang" "-cc1" ...', ' as --64 -o main.o main.s'
            job = line.strip()
            if not line.startswith(" ") or not job or job == "(in-process)":
                return None
            return job
        case ToolchainKind.NVCC:
            if not line.startswith("#$ "):
                return None
            job = line[len("#$ ") :].strip()
            if not job or _ENV_ASSIGNMENT.match(job):
                return None
            return job
        case ToolchainKind.RUSTC:
            return None


def parse_jobs(kind: ToolchainKind, output: str) -> list[list[str]]:
    """Parses the output of a dry run.

    Args:
        kind (ToolchainKind): the toolchain that printed `output`
        output (str): the combined stdout and stderr of the dry run

    Returns:
        list[list[str]]:
            the tokenized jobs in the order they were printed, empty if
            the output format was not recognized
    """
    jobs: list[list[str]] = []
    for line in output.splitlines():
        job = extract_job(kind, line)
        if job is None:
            continue
        try:
            tokens = tokenize(job)
        except MalformedInputError as e:
            logger.debug(f"Skipping unparsable job line {job!r}: {e}")
            continue
        if tokens:
            jobs.append(tokens)
    return jobs


async def discover_jobs(
    kind: ToolchainKind,
    executable: str,
    args: list[str],
    working_dir: Path | None = None,
    setting: DryRunSetting = DryRunSetting(),
    cancel_token: CancellationToken | None = None,
) -> list[list[str]] | None:
    """Runs the driver in dry-run mode and collects the jobs it prints.

    Args:
        kind (ToolchainKind): CLANG or NVCC
        executable (str): the driver
        args (list[str]): the driver's original arguments
        working_dir (Path | None): where to run the driver
        setting (DryRunSetting): timeout and environment
        cancel_token (CancellationToken | None): kills the driver when cancelled

    Returns:
        list[list[str]] | None:
            the tokenized jobs, None if the dry run was cancelled

    Raises:
        ToolchainNotFoundError: the driver could not be started
        DryRunFailedError: the driver failed or timed out
    """
    cmd = [executable] + dry_run_args(kind, args)
    cmd_str = quote_args(cmd)
    logger.debug(f"Dry run: {cmd_str}")
    try:
        result = await run_cmd_async(
            cmd,
            working_dir=working_dir,
            additional_env=setting.additional_env,
            timeout=setting.timeout_s,
            cancel_token=cancel_token,
        )
    except TimeoutError:
        assert setting.timeout_s is not None
        raise DryRunFailedError.from_timeout(cmd_str, setting.timeout_s)
    except OSError as e:
        raise ToolchainNotFoundError(executable, str(e))

    if result is None:
        logger.info(f"Dry run cancelled: {cmd_str}")
        return None
    if result.returncode != 0:
        raise DryRunFailedError.from_process_output(
            cmd_str, result.returncode, result.output
        )

    jobs = parse_jobs(kind, result.output)
    logger.debug(f"{executable} planned {len(jobs)} jobs")
    return jobs

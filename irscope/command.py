""" A typed model of compiler invocations

A command line is classified by its executable into one of the supported
toolchains. Driver toolchains (clang/gcc, nvcc) are asked for the jobs they
would run, each job becomes a sub-command; rustc commands can be rewritten to
emit LLVM IR and assembly.

Example:

cmd = await Command.create_from_string("clang++ -std=c++17 -o a.out main.cpp")
cmd.get_input_path()  # "main.cpp"
for job in cmd.sub_commands:
    print(job.get_type(), job.get_output_path(), job.to_string())
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, ClassVar, Iterator

from irscope.dryrun import DryRunSetting, discover_jobs
from irscope.errors import (
    CommandError,
    DryRunFailedError,
    MalformedInputError,
    ToolchainNotFoundError,
    UnsupportedToolchainError,
)
from irscope.rustc_flags import parse_rustc_args
from irscope.toolchain import (
    INTERMEDIATE_SUFFIXES,
    STDOUT_MARKER,
    JobPhase,
    LeafKind,
    ToolchainKind,
    classify,
    classify_job,
    default_driver_output,
    has_suffix,
    path_stem,
)
from irscope.utils import CancellationToken, find_executable, quote_args, tokenize

logger = logging.getLogger(__name__)

# driver flags that start with -o but are not -o<path>
_NOT_JOINED_OUTPUT = ("-obj", "-opt", "-order_file")


def find_flag_value(
    args: list[str], flags: tuple[str, ...], joined_o: bool = True
) -> str | None:
    """Returns the value of the first of `flags` in `args`.

    Both `-flag value` and `-flag=value` are recognized, `-o` additionally
    as `-opath` if `joined_o` and no separate form is present.
    """
    for i, arg in enumerate(args):
        if arg in flags:
            if i + 1 < len(args):
                return args[i + 1]
            continue
        for flag in flags:
            if arg.startswith(flag + "="):
                return arg[len(flag) + 1 :]
    if joined_o and "-o" in flags:
        for arg in args:
            if (
                len(arg) > 2
                and arg.startswith("-o")
                and not arg.startswith(_NOT_JOINED_OUTPUT)
            ):
                return arg[2:]
    return None


def positional_args(args: list[str], value_flags: tuple[str, ...]) -> Iterator[str]:
    """Yields the arguments that are neither flags nor values of flags."""
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in value_flags:
            skip = True
            continue
        if arg.startswith("-") and arg != STDOUT_MARKER:
            continue
        yield arg


class Command(ABC):
    """A single invocation of a tool.

    Roots are created with `Command.create_from_string`, sub-commands are
    created while discovering the jobs of a driver.

    Attributes:
        raw_line (str):
            the command line this command was parsed from
        executable (str):
            the first token of the command line
        args (tuple[str, ...]):
            the remaining tokens, as parsed
        working_dir (Path):
            the directory the command is interpreted relative to
        parent (Command | None):
            the driver whose dry run produced this command
    """

    def __init__(
        self,
        raw_line: str,
        tokens: list[str],
        working_dir: Path | None = None,
        parent: Command | None = None,
    ) -> None:
        assert tokens, "A command needs at least an executable"
        self.raw_line = raw_line
        self.executable = tokens[0]
        self.args: tuple[str, ...] = tuple(tokens[1:])
        self.working_dir = working_dir if working_dir else Path(os.getcwd())
        self.parent = parent
        self._sub_commands: tuple[Command, ...] = tuple()

    @property
    def sub_commands(self) -> tuple[Command, ...]:
        """The jobs this command runs, in pipeline order."""
        return self._sub_commands

    def get_type(self) -> str:
        return type(self).__name__

    @abstractmethod
    def get_input_path(self) -> str | None:
        pass

    @abstractmethod
    def get_output_path(self) -> str | None:
        pass

    def is_output_to_stdout(self) -> bool:
        return self.get_output_path() == STDOUT_MARKER

    def get_args(self) -> list[str]:
        return list(self.args)

    def to_string(self) -> str:
        """Returns:
        str:
            the executable and `get_args()` as a shell-safe command line
        """
        return quote_args([self.executable] + self.get_args())

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"{self.get_type()}({self.to_string()!r})"

    def walk(self) -> Iterator[Command]:
        """Iterates over this command and all its sub-commands, parents first."""
        yield self
        for sub_command in self._sub_commands:
            yield from sub_command.walk()

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "type": self.get_type(),
            "executable": self.executable,
            "args": self.get_args(),
            "input": self.get_input_path(),
            "output": self.get_output_path(),
            "sub_commands": [c.to_json_dict() for c in self._sub_commands],
        }

    @staticmethod
    async def create_from_string(
        line: str,
        working_dir: Path | None = None,
        setting: DryRunSetting | None = None,
        cancel_token: CancellationToken | None = None,
        strict: bool = False,
    ) -> Command:
        """Parses `line` into a command and discovers its jobs.

        Args:
            line (str):
                the command line, e.g., "clang++ -O2 -o a.out main.cpp"
            working_dir (Path | None):
                where the command runs, the current directory by default
            setting (DryRunSetting | None):
                timeout and environment of the dry runs
            cancel_token (CancellationToken | None):
                cancelling it stops job discovery, the command is returned
                without sub-commands
            strict (bool):
                raise DryRunFailedError instead of returning a command
                without sub-commands when the dry run fails

        Returns:
            Command:
                ClangCommand, NVCCCommand or RustcCommand

        Raises:
            MalformedInputError: the line cannot be tokenized
            UnsupportedToolchainError: the executable is not recognized
            ToolchainNotFoundError: the driver cannot be executed
            DryRunFailedError: only if `strict`
        """
        tokens = tokenize(line)
        if not tokens:
            raise MalformedInputError("Empty command line")
        kind = classify(tokens[0])
        if kind is None:
            raise UnsupportedToolchainError(tokens[0])

        command: DriverCommand
        match kind:
            case ToolchainKind.RUSTC:
                return RustcCommand(line, tokens, working_dir)
            case ToolchainKind.CLANG:
                command = ClangCommand(line, tokens, working_dir)
            case ToolchainKind.NVCC:
                command = NVCCCommand(line, tokens, working_dir)

        try:
            await command.discover(setting, cancel_token)
        except DryRunFailedError as e:
            e.command = command
            if strict:
                raise
            logger.warning(f"Could not discover the jobs of {line}: {e.message}")
            command.discovery_error = e
        return command


class LeafCommand(Command):
    """A job planned by a driver: one preprocessing, compilation, assembly
    or link step.

    Attributes:
        input_path (str | None): the job's main input
        output_path (str | None): the artifact the job writes
        phase (JobPhase): the pipeline stage the job performs
    """

    leaf_kind: ClassVar[LeafKind] = LeafKind.OTHER

    # flags whose value is never the job's input
    value_flags: ClassVar[tuple[str, ...]] = (
        "-o",
        "-main-file-name",
        "-triple",
        "-target-cpu",
        "-tune-cpu",
        "-resource-dir",
        "-internal-isystem",
        "-internal-externc-isystem",
        "-isystem",
        "-include",
        "-I",
        "-D",
        "-dependency-file",
        "-MT",
        "-MF",
        "-MQ",
        "-filetype",
        "-dumpbase",
        "-dumpbase-ext",
        "-dumpdir",
        "-auxbase",
        "-auxbase-strip",
        "-x",
        "--module_id_file_name",
        "--gen_c_file_name",
        "--stub_file_name",
        "--gen_device_file_name",
        "--orig_src_file_name",
        "--orig_src_path_name",
        "-orig_src_file_name",
        "-orig_src_path_name",
    )
    output_flags: ClassVar[tuple[str, ...]] = (
        "-o",
        "--output-file",
        "--create",
        "--gen_c_file_name",
    )

    def __init__(
        self,
        raw_line: str,
        tokens: list[str],
        working_dir: Path | None = None,
        parent: Command | None = None,
    ) -> None:
        super().__init__(raw_line, tokens, working_dir, parent)
        args = list(self.args)
        self.phase = self._infer_phase(args)
        self.output_path = find_flag_value(args, self.output_flags, False)
        if self.output_path is None and self.phase == JobPhase.PREPROCESS:
            self.output_path = STDOUT_MARKER
        self.input_path = self._find_input(args)

    def _infer_phase(self, args: list[str]) -> JobPhase:
        if phase := self.leaf_kind.fixed_phase():
            return phase
        if phase := JobPhase.from_flags(args):
            return phase
        output = find_flag_value(args, self.output_flags, False)
        return JobPhase.from_output_suffix(output) or JobPhase.OTHER

    def _find_input(self, args: list[str]) -> str | None:
        # clang's frontend jobs end with: -x <language> <input>
        for i in reversed(range(len(args) - 2)):
            if args[i] == "-x":
                candidate = args[i + 2]
                if not candidate.startswith("-"):
                    return candidate
                break
        candidates = [
            arg
            for arg in positional_args(args, self.value_flags)
            if has_suffix(arg, INTERMEDIATE_SUFFIXES)
        ]
        return candidates[0] if candidates else None

    def get_input_path(self) -> str | None:
        return self.input_path

    def get_output_path(self) -> str | None:
        return self.output_path

    def to_json_dict(self) -> dict[str, Any]:
        d = super().to_json_dict()
        d["phase"] = self.phase.name
        return d


class CC1Command(LeafCommand):
    """The compiler proper: clang -cc1 or gcc's cc1/cc1plus."""

    leaf_kind = LeafKind.CC1


class CC1ASCommand(LeafCommand):
    """clang's integrated assembler (-cc1as)."""

    leaf_kind = LeafKind.CC1AS


class AssemblerCommand(LeafCommand):
    leaf_kind = LeafKind.ASSEMBLER


class LinkerCommand(LeafCommand):
    leaf_kind = LeafKind.LINKER

    def _find_input(self, args: list[str]) -> str | None:
        # prefer the objects of the build over the runtime's crt*.o
        objects = [
            arg
            for arg in positional_args(args, self.value_flags)
            if has_suffix(arg, INTERMEDIATE_SUFFIXES)
        ]
        for obj in objects:
            if not PurePosixPath(obj.replace("\\", "/")).is_absolute():
                return obj
        return objects[0] if objects else None


class CudafeCommand(LeafCommand):
    leaf_kind = LeafKind.CUDAFE


class CICCCommand(LeafCommand):
    """nvcc's device code compiler, emits PTX."""

    leaf_kind = LeafKind.CICC


class PTXASCommand(LeafCommand):
    leaf_kind = LeafKind.PTXAS


class FatbinaryCommand(LeafCommand):
    leaf_kind = LeafKind.FATBINARY


class JobCommand(LeafCommand):
    """Any other job, e.g., nvcc's clean-up steps."""

    leaf_kind = LeafKind.OTHER


_LEAF_COMMANDS: dict[LeafKind, type[LeafCommand]] = {
    cls.leaf_kind: cls
    for cls in (
        CC1Command,
        CC1ASCommand,
        AssemblerCommand,
        LinkerCommand,
        CudafeCommand,
        CICCCommand,
        PTXASCommand,
        FatbinaryCommand,
        JobCommand,
    )
}


class DriverCommand(Command):
    """An invocation of a compiler driver whose jobs can be discovered.

    Attributes:
        input_path (str | None):
            the first source file on the command line
        output_path (str):
            the explicit output or the driver's default output name
        discovery_error (CommandError | None):
            why discovering the jobs failed, if it failed
        discovery_cancelled (bool):
            whether discovery was cancelled
    """

    kind: ClassVar[ToolchainKind]
    value_flags: ClassVar[tuple[str, ...]]
    output_flags: ClassVar[tuple[str, ...]]
    # whether -opath means -o path
    joined_output: ClassVar[bool] = True

    def __init__(
        self,
        raw_line: str,
        tokens: list[str],
        working_dir: Path | None = None,
        parent: Command | None = None,
    ) -> None:
        super().__init__(raw_line, tokens, working_dir, parent)
        args = list(self.args)
        self.input_path = next(
            (
                arg
                for arg in positional_args(args, self.value_flags)
                if has_suffix(arg, self.kind.source_suffixes())
            ),
            None,
        )
        output = find_flag_value(args, self.output_flags, self.joined_output)
        self.output_path = (
            output
            if output is not None
            else default_driver_output(self.kind, args, self.input_path)
        )
        self.discovery_error: CommandError | None = None
        self.discovery_cancelled = False

    def get_input_path(self) -> str | None:
        return self.input_path

    def get_output_path(self) -> str:
        return self.output_path

    def to_json_dict(self) -> dict[str, Any]:
        d = super().to_json_dict()
        d["discovery_error"] = (
            self.discovery_error.message if self.discovery_error else None
        )
        return d

    async def discover(
        self,
        setting: DryRunSetting | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """Runs the driver's dry run and sets `sub_commands` to its jobs.

        Drivers among the jobs get their own jobs discovered, failures of
        those are recorded on the nested command and not raised.

        Raises:
            ToolchainNotFoundError: the driver cannot be executed
            DryRunFailedError: the dry run failed or timed out
        """
        if setting is None:
            setting = DryRunSetting()
        exe = find_executable(self.executable, self.working_dir, setting.additional_env)
        if exe is None:
            raise ToolchainNotFoundError(self.executable)

        jobs = await discover_jobs(
            self.kind,
            str(exe),
            list(self.args),
            working_dir=self.working_dir,
            setting=setting,
            cancel_token=cancel_token,
        )
        if jobs is None:
            self.discovery_cancelled = True
            return

        sub_commands: list[Command] = []
        for job in jobs:
            sub_command = await self._make_sub_command(job, setting, cancel_token)
            sub_commands.append(sub_command)
        self._sub_commands = tuple(sub_commands)

    async def _make_sub_command(
        self,
        tokens: list[str],
        setting: DryRunSetting,
        cancel_token: CancellationToken | None,
    ) -> Command:
        line = quote_args(tokens)
        kind = classify(tokens[0])
        leaf_kind = classify_job(tokens[0], tokens[1:])

        if kind is not None and kind.is_driver() and leaf_kind == LeafKind.OTHER:
            driver = _DRIVER_COMMANDS[kind](line, tokens, self.working_dir, self)
            try:
                await driver.discover(setting, cancel_token)
            except (DryRunFailedError, ToolchainNotFoundError) as e:
                logger.warning(f"Could not discover the jobs of {line}: {e.message}")
                if isinstance(e, DryRunFailedError):
                    e.command = driver
                driver.discovery_error = e
            return driver
        if kind == ToolchainKind.RUSTC:
            return RustcCommand(line, tokens, self.working_dir, self)
        return _LEAF_COMMANDS[leaf_kind](line, tokens, self.working_dir, self)


class ClangCommand(DriverCommand):
    """clang, clang++, gcc or g++."""

    kind = ToolchainKind.CLANG
    value_flags = (
        "-o",
        "--output",
        "-I",
        "-D",
        "-U",
        "-include",
        "-imacros",
        "-isystem",
        "-idirafter",
        "-iquote",
        "-isysroot",
        "-iprefix",
        "--sysroot",
        "-MF",
        "-MT",
        "-MQ",
        "-x",
        "-Xclang",
        "-Xlinker",
        "-Xassembler",
        "-Xpreprocessor",
        "-target",
        "-arch",
        "-L",
        "-T",
        "-u",
        "-z",
    )
    output_flags = ("-o", "--output")


class NVCCCommand(DriverCommand):
    kind = ToolchainKind.NVCC
    value_flags = (
        "-o",
        "--output-file",
        "-I",
        "--include-path",
        "-D",
        "--define-macro",
        "-U",
        "--undefine-macro",
        "-include",
        "--pre-include",
        "-isystem",
        "--system-include",
        "-x",
        "--x",
        "-ccbin",
        "--compiler-bindir",
        "-Xcompiler",
        "--compiler-options",
        "-Xlinker",
        "--linker-options",
        "-Xptxas",
        "--ptxas-options",
        "-gencode",
        "--generate-code",
        "-arch",
        "--gpu-architecture",
        "-code",
        "--gpu-code",
        "-odir",
        "--output-directory",
        "-MF",
        "-MT",
        "-L",
        "-l",
    )
    output_flags = ("-o", "--output-file")
    # -odir is --output-directory
    joined_output = False


_DRIVER_COMMANDS: dict[ToolchainKind, type[DriverCommand]] = {
    ToolchainKind.CLANG: ClangCommand,
    ToolchainKind.NVCC: NVCCCommand,
}


class RustcCommand(Command):
    """A rustc invocation that can be rewritten to emit LLVM IR and assembly.

    rustc is not a driver, nothing is spawned to build this command.
    `get_args()` returns the rewritten arguments, the original ones stay
    in `args`.

    Attributes:
        input (tuple[str, ...]):
            all .rs files on the command line (rustc itself accepts one)
        output_path (str | None):
            the explicit output or rustc's default output name
    """

    value_flags = (
        "-o",
        "--out-dir",
        "--crate-name",
        "--crate-type",
        "--edition",
        "--target",
        "--sysroot",
        "--extern",
        "--cfg",
        "--check-cfg",
        "--cap-lints",
        "--print",
        "--explain",
        "--error-format",
        "--json",
        "--color",
        "--remap-path-prefix",
        "--emit",
        "--codegen",
        "-C",
        "-Z",
        "-L",
        "-l",
        "-A",
        "-W",
        "-D",
        "-F",
    )

    def __init__(
        self,
        raw_line: str,
        tokens: list[str],
        working_dir: Path | None = None,
        parent: Command | None = None,
    ) -> None:
        super().__init__(raw_line, tokens, working_dir, parent)
        args = list(self.args)
        self.input: tuple[str, ...] = tuple(
            arg
            for arg in positional_args(args, self.value_flags)
            if arg.endswith(".rs")
        )
        self.output_path = self._find_output(args)
        self.flags = parse_rustc_args(args)

    def _find_output(self, args: list[str]) -> str | None:
        if (output := find_flag_value(args, ("-o",))) is not None:
            return output
        name = find_flag_value(args, ("--crate-name",))
        if name is None:
            if not self.input:
                return None
            name = path_stem(self.input[0])
        out_dir = find_flag_value(args, ("--out-dir",))
        return str(PurePosixPath(out_dir) / name) if out_dir else name

    @property
    def emit_llvm(self) -> bool:
        return self.flags.emit_llvm

    @property
    def emit_asm(self) -> bool:
        return self.flags.emit_asm

    @property
    def filter(self) -> str | None:
        return self.flags.filter

    def set_emit_llvm(self, emit: bool) -> None:
        self.flags.emit_llvm = emit

    def set_emit_asm(self, emit: bool) -> None:
        self.flags.emit_asm = emit

    def set_filter(self, value: str | None) -> None:
        """Only print IR changes (e.g., -C llvm-args=-print-changed) of
        functions matching `value`; None removes the filter.

        llvm-args of the original command are kept.
        """
        self.flags.filter = value

    def set_codegen_option(self, key: str, value: str | None) -> None:
        self.flags.set_codegen_option(key, value)

    def get_input_path(self) -> str | None:
        return self.input[0] if self.input else None

    def get_output_path(self) -> str | None:
        return self.output_path

    def get_args(self) -> list[str]:
        return self.flags.synthesize()

    def _artifact_path(self, kind: str, suffix: str) -> str | None:
        # --emit kind=path wins over the name derived from the output
        if (path := self.flags.emit_paths.get(kind)) is not None:
            return path
        if self.output_path is None or self.is_output_to_stdout():
            return None
        return os.path.splitext(self.output_path)[0] + suffix

    def get_llvm_ir_path(self) -> str | None:
        """Returns:
        str | None:
            where rustc writes the LLVM IR, None if it is not emitted
        """
        return self._artifact_path("llvm-ir", ".ll") if self.emit_llvm else None

    def get_asm_path(self) -> str | None:
        return self._artifact_path("asm", ".s") if self.emit_asm else None

    def to_json_dict(self) -> dict[str, Any]:
        d = super().to_json_dict()
        d["input"] = list(self.input)
        d["llvm_ir"] = self.get_llvm_ir_path()
        d["asm"] = self.get_asm_path()
        return d

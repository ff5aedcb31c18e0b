"""Recognition of toolchains and of the jobs their drivers plan.

Everything here works on executable names and argument lists only; nothing
is spawned.
"""

from __future__ import annotations

import re
import sys
from enum import Enum
from pathlib import PurePosixPath, PureWindowsPath

STDOUT_MARKER = "-"


class ToolchainKind(Enum):
    """The toolchains whose command lines can be modelled."""

    CLANG = 0
    NVCC = 1
    RUSTC = 2

    def is_driver(self) -> bool:
        """Drivers split one invocation into several jobs (preprocess,
        compile, assemble, link) that can be listed with a dry run."""
        match self:
            case ToolchainKind.CLANG | ToolchainKind.NVCC:
                return True
            case ToolchainKind.RUSTC:
                return False

    def source_suffixes(self) -> tuple[str, ...]:
        """Returns:
        tuple[str, ...]:
            suffixes of the files this toolchain accepts as input
        """
        match self:
            case ToolchainKind.CLANG:
                return CLANG_SOURCE_SUFFIXES
            case ToolchainKind.NVCC:
                return NVCC_SOURCE_SUFFIXES
            case ToolchainKind.RUSTC:
                return (".rs",)


# .C and .S are case sensitive, everything else is compared lowercased
CLANG_SOURCE_SUFFIXES = (
    ".c",
    ".cc",
    ".cp",
    ".cpp",
    ".cxx",
    ".c++",
    ".cu",
    ".C",
    ".m",
    ".mm",
    ".i",
    ".ii",
    ".s",
    ".S",
)
NVCC_SOURCE_SUFFIXES = (".cu", ".c", ".cc", ".cpp", ".cxx", ".ptx", ".gpu")

# inputs and outputs of the jobs a driver plans
INTERMEDIATE_SUFFIXES = (
    ".ii",
    ".i",
    ".bc",
    ".ll",
    ".s",
    ".S",
    ".o",
    ".obj",
    ".ptx",
    ".cubin",
    ".fatbin",
    ".c",
    ".cc",
    ".cpp",
    ".cxx",
    ".cu",
    ".rs",
)

_CLANG_NAME = re.compile(r"^clang(\+\+)?(-\d+(\.\d+)*)?$")
_GCC_NAME = re.compile(r"^([\w.]+-)*(gcc|g\+\+)(-\d+(\.\d+)*)?$")


def executable_basename(executable: str) -> str:
    """Strips directories (either separator) and a trailing .exe."""
    name = PureWindowsPath(PurePosixPath(executable).name).name
    if name.lower().endswith(".exe"):
        name = name[: -len(".exe")]
    return name


def classify(executable: str) -> ToolchainKind | None:
    """Finds which toolchain `executable` belongs to.

    Args:
        executable (str): the first token of a command line

    Returns:
        ToolchainKind | None:
            the toolchain, None if the executable is not recognized
    """
    name = executable_basename(executable)
    if _CLANG_NAME.match(name) or _GCC_NAME.match(name):
        return ToolchainKind.CLANG
    match name:
        case "nvcc":
            return ToolchainKind.NVCC
        case "rustc":
            return ToolchainKind.RUSTC
    return None


def has_suffix(path: str, suffixes: tuple[str, ...]) -> bool:
    for suffix in suffixes:
        if suffix in (".C", ".S"):
            if path.endswith(suffix):
                return True
        elif path.lower().endswith(suffix):
            return True
    return False


def path_stem(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).stem


def default_executable_name() -> str:
    return "a.exe" if sys.platform == "win32" else "a.out"


def default_object_suffix() -> str:
    return ".obj" if sys.platform == "win32" else ".o"


def default_driver_output(
    kind: ToolchainKind, args: list[str], input_path: str | None
) -> str:
    """The output a driver writes when no output flag is given.

    Args:
        kind (ToolchainKind): CLANG or NVCC
        args (list[str]): the driver's arguments
        input_path (str | None): the driver's source file

    Returns:
        str:
            the conventional output name, STDOUT_MARKER for preprocessing
    """
    if "-E" in args:
        return STDOUT_MARKER
    stem = path_stem(input_path) if input_path else None
    if stem:
        match kind:
            case ToolchainKind.CLANG:
                if "-S" in args:
                    return stem + ".s"
            case ToolchainKind.NVCC:
                for flag, suffix in (
                    ("-ptx", ".ptx"),
                    ("-cubin", ".cubin"),
                    ("-fatbin", ".fatbin"),
                ):
                    if flag in args:
                        return stem + suffix
        if "-c" in args or "--compile" in args:
            return stem + default_object_suffix()
    return default_executable_name()


class JobPhase(Enum):
    """Stage of the compilation pipeline a planned job performs."""

    PREPROCESS = 0
    COMPILE = 1
    ASSEMBLE = 2
    LINK = 3
    OTHER = 4

    @staticmethod
    def from_flags(args: list[str]) -> JobPhase | None:
        if "-E" in args:
            return JobPhase.PREPROCESS
        for flag in ("-S", "-emit-llvm-bc", "-emit-llvm", "-fpreprocessed"):
            if flag in args:
                return JobPhase.COMPILE
        for flag in ("-emit-obj", "-c"):
            if flag in args:
                return JobPhase.ASSEMBLE
        return None

    @staticmethod
    def from_output_suffix(output: str | None) -> JobPhase | None:
        if not output:
            return None
        if has_suffix(output, (".ii", ".i")):
            return JobPhase.PREPROCESS
        if has_suffix(output, (".s", ".ll", ".bc", ".ptx")):
            return JobPhase.COMPILE
        if has_suffix(output, (".o", ".obj", ".cubin")):
            return JobPhase.ASSEMBLE
        return None


class LeafKind(Enum):
    """Tools that appear as jobs in a driver's dry run."""

    CC1 = 0
    CC1AS = 1
    ASSEMBLER = 2
    LINKER = 3
    CUDAFE = 4
    CICC = 5
    PTXAS = 6
    FATBINARY = 7
    OTHER = 8

    def fixed_phase(self) -> JobPhase | None:
        """Returns:
        JobPhase | None:
            the phase every job of this tool performs, None if it
            depends on the job's flags
        """
        match self:
            case LeafKind.CC1AS | LeafKind.ASSEMBLER | LeafKind.PTXAS:
                return JobPhase.ASSEMBLE
            case LeafKind.LINKER:
                return JobPhase.LINK
            case LeafKind.CICC:
                return JobPhase.COMPILE
            case LeafKind.CUDAFE | LeafKind.FATBINARY:
                return JobPhase.OTHER
            case LeafKind.CC1 | LeafKind.OTHER:
                return None


_LINKERS = ("ld", "ld.lld", "ld.gold", "ld.bfd", "collect2", "link", "lld-link")


def classify_job(executable: str, args: list[str]) -> LeafKind:
    """Finds which tool a planned job runs.

    Args:
        executable (str): the job's executable
        args (list[str]): the job's arguments

    Returns:
        LeafKind:
            the tool, LeafKind.OTHER if unknown
    """
    if args:
        match args[0]:
            case "-cc1":
                return LeafKind.CC1
            case "-cc1as":
                return LeafKind.CC1AS
    name = executable_basename(executable)
    match name:
        case "cc1" | "cc1plus" | "cc1obj" | "cc1objplus":
            return LeafKind.CC1
        case "as" | "gcc-as":
            return LeafKind.ASSEMBLER
        case "nvlink":
            return LeafKind.LINKER
        case "cudafe++" | "cudafe":
            return LeafKind.CUDAFE
        case "cicc":
            return LeafKind.CICC
        case "ptxas":
            return LeafKind.PTXAS
        case "fatbinary":
            return LeafKind.FATBINARY
    if name in _LINKERS or name.endswith("-ld"):
        return LeafKind.LINKER
    return LeafKind.OTHER

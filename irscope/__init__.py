from irscope import command, dryrun, errors, rustc_flags, toolchain, utils
from irscope.command import (
    ClangCommand,
    Command,
    LeafCommand,
    NVCCCommand,
    RustcCommand,
)

__all__ = [
    "command",
    "dryrun",
    "errors",
    "rustc_flags",
    "toolchain",
    "utils",
    "Command",
    "ClangCommand",
    "NVCCCommand",
    "RustcCommand",
    "LeafCommand",
]

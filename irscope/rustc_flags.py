""" Rewriting of rustc arguments to request LLVM IR and assembly

rustc has no driver that could be asked for its jobs, instead the emission
and codegen flags of the original command are parsed into a RustcFlags
object which re-synthesizes an equivalent command line on demand.

Example:

flags = parse_rustc_args(["main.rs", "-C", "llvm-args=-print-changed", "-O"])
flags.filter = "add"
flags.synthesize()
# ["main.rs", "--emit", "llvm-ir,asm",
#  "-C", "llvm-args=-print-changed -filter-print-funcs=add", "-O"]
"""

from __future__ import annotations

from dataclasses import dataclass, field

LLVM_ARGS = "llvm-args"


@dataclass
class CodegenOption:
    """A `-C key[=value]` flag."""

    key: str
    value: str | None = None

    @staticmethod
    def from_str(s: str) -> CodegenOption:
        key, sep, value = s.partition("=")
        return CodegenOption(key, value if sep else None)

    def to_str(self) -> str:
        return self.key if self.value is None else f"{self.key}={self.value}"


@dataclass
class RustcFlags:
    """Emission and codegen state of a rustc command.

    Attributes:
        retained (list[str]):
            arguments passed through unchanged, in their original order
        emit_llvm (bool):
            whether to emit LLVM IR (--emit llvm-ir)
        emit_asm (bool):
            whether to emit assembly (--emit asm)
        other_emit_kinds (list[str]):
            other kinds the original --emit requested (link, obj, ...),
            with their `=path` if one was given
        emit_paths (dict[str, str]):
            explicit destinations of llvm-ir and asm (`--emit llvm-ir=out.ll`)
        codegen (list[CodegenOption]):
            -C options in first-seen order, all llvm-args merged into one
        optimize (bool):
            whether -O was passed
        filter (str | None):
            only print IR changes of functions matching this
            (-filter-print-funcs)
    """

    retained: list[str] = field(default_factory=list)
    emit_llvm: bool = True
    emit_asm: bool = True
    other_emit_kinds: list[str] = field(default_factory=list)
    emit_paths: dict[str, str] = field(default_factory=dict)
    codegen: list[CodegenOption] = field(default_factory=list)
    optimize: bool = False
    filter: str | None = None

    def add_codegen_option(self, option: CodegenOption) -> None:
        if option.key == LLVM_ARGS and option.value:
            for existing in self.codegen:
                if existing.key == LLVM_ARGS:
                    existing.value = (
                        f"{existing.value} {option.value}"
                        if existing.value
                        else option.value
                    )
                    return
        self.codegen.append(option)

    def set_codegen_option(self, key: str, value: str | None) -> None:
        """Replaces all values of `key`, appends the option if it is new."""
        options = [o for o in self.codegen if o.key == key]
        if not options:
            self.codegen.append(CodegenOption(key, value))
            return
        options[0].value = value
        self.codegen = [o for o in self.codegen if o.key != key or o is options[0]]

    def record_emit(self, kinds: str) -> None:
        """Records the kinds of one --emit value, keeping their `=path`."""
        for kind in kinds.split(","):
            kind = kind.strip()
            name, sep, path = kind.partition("=")
            match name:
                case "":
                    continue
                case "llvm-ir":
                    self.emit_llvm = True
                case "asm":
                    self.emit_asm = True
                case _:
                    if name not in [k.partition("=")[0] for k in self.other_emit_kinds]:
                        self.other_emit_kinds.append(kind)
                    continue
            if sep:
                self.emit_paths[name] = path

    def emit_kinds(self) -> list[str]:
        kinds = list(self.other_emit_kinds)
        for name, emit in (("llvm-ir", self.emit_llvm), ("asm", self.emit_asm)):
            if emit:
                path = self.emit_paths.get(name)
                kinds.append(f"{name}={path}" if path is not None else name)
        return kinds

    def codegen_options(self) -> list[CodegenOption]:
        """Returns the codegen options with the filter merged into llvm-args."""
        options = [CodegenOption(o.key, o.value) for o in self.codegen]
        if self.filter is None:
            return options
        directive = f"-filter-print-funcs={self.filter}"
        for option in options:
            if option.key == LLVM_ARGS:
                option.value = (
                    f"{option.value} {directive}" if option.value else directive
                )
                return options
        options.append(CodegenOption(LLVM_ARGS, directive))
        return options

    def synthesize(self) -> list[str]:
        """Builds the rewritten arguments: retained arguments, --emit,
        codegen options, -O. The order is fixed so that the result can be
        compared across calls."""
        args = list(self.retained)
        if kinds := self.emit_kinds():
            args += ["--emit", ",".join(kinds)]
        for option in self.codegen_options():
            args += ["-C", option.to_str()]
        if self.optimize:
            args.append("-O")
        return args


def parse_rustc_args(args: list[str]) -> RustcFlags:
    """Parses rustc arguments (without the executable) into RustcFlags.

    Unknown flags are kept as they are, this never fails.

    Args:
        args (list[str]): the original arguments

    Returns:
        RustcFlags:
            the parsed state, emit_llvm and emit_asm are True unless an
            --emit flag without them was given
    """
    flags = RustcFlags()
    seen_emit = False

    def emit(kinds: str) -> None:
        nonlocal seen_emit
        if not seen_emit:
            flags.emit_llvm = False
            flags.emit_asm = False
            seen_emit = True
        flags.record_emit(kinds)

    i = 0
    while i < len(args):
        arg = args[i]
        has_value = i + 1 < len(args)
        if arg == "--emit" and has_value:
            emit(args[i + 1])
            i += 2
            continue
        if arg in ("-C", "--codegen") and has_value:
            flags.add_codegen_option(CodegenOption.from_str(args[i + 1]))
            i += 2
            continue

        if arg.startswith("--emit="):
            emit(arg[len("--emit=") :])
        elif arg.startswith("--codegen="):
            flags.add_codegen_option(CodegenOption.from_str(arg[len("--codegen=") :]))
        elif arg.startswith("-C") and len(arg) > 2:
            flags.add_codegen_option(CodegenOption.from_str(arg[2:]))
        elif arg == "-O":
            flags.optimize = True
        else:
            flags.retained.append(arg)
        i += 1
    return flags

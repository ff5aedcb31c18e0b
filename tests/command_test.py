import asyncio
import logging
from pathlib import Path
from typing import Callable

import pytest

from dryrun_outputs import (
    CLANG_SAVE_TEMPS,
    GCC_PREPROCESS_ONLY,
    GCC_SAVE_TEMPS,
    GXX_SAVE_TEMPS,
    NVCC_DRYRUN,
    NVCC_WITH_HOST_COMPILER,
)

from irscope.command import (
    CC1ASCommand,
    CC1Command,
    CICCCommand,
    ClangCommand,
    Command,
    CudafeCommand,
    FatbinaryCommand,
    JobCommand,
    LinkerCommand,
    NVCCCommand,
    PTXASCommand,
    find_flag_value,
)
from irscope.dryrun import DryRunSetting
from irscope.errors import (
    DryRunFailedError,
    MalformedInputError,
    ToolchainNotFoundError,
    UnsupportedToolchainError,
)
from irscope.toolchain import JobPhase, default_object_suffix
from irscope.utils import CancellationToken, tokenize

CLANG_LINE = "clang++ -std=c++17 -Wall -Wextra -Wpedantic -Werror -o a.exe main.cpp"


@pytest.mark.asyncio
async def test_clang_command(fake_toolchain: Callable[..., Path]) -> None:
    args_file = fake_toolchain("clang++", output=CLANG_SAVE_TEMPS)
    cmd = await Command.create_from_string(CLANG_LINE)

    assert isinstance(cmd, ClangCommand)
    assert cmd.get_type() == "ClangCommand"
    assert cmd.get_input_path() == "main.cpp"
    assert cmd.get_output_path() == "a.exe"
    assert not cmd.is_output_to_stdout()
    assert cmd.discovery_error is None
    assert cmd.to_string() == CLANG_LINE
    assert args_file.read_text().splitlines()[-2:] == ["-save-temps", "-###"]

    pp = cmd.sub_commands[0]
    assert pp.get_type() == "CC1Command"
    assert pp.get_output_path() == "main.ii"
    assert pp.get_input_path() == "main.cpp"
    assert pp.parent is cmd
    assert pp.sub_commands == ()


@pytest.mark.asyncio
async def test_clang_pipeline(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang++", output=CLANG_SAVE_TEMPS)
    cmd = await Command.create_from_string(CLANG_LINE)

    jobs = cmd.sub_commands
    assert [type(job) for job in jobs] == [
        CC1Command,
        CC1Command,
        CC1Command,
        CC1ASCommand,
        LinkerCommand,
    ]
    assert [job.phase for job in jobs] == [  # type: ignore[attr-defined]
        JobPhase.PREPROCESS,
        JobPhase.COMPILE,
        JobPhase.COMPILE,
        JobPhase.ASSEMBLE,
        JobPhase.LINK,
    ]
    assert [(job.get_input_path(), job.get_output_path()) for job in jobs] == [
        ("main.cpp", "main.ii"),
        ("main.ii", "main.bc"),
        ("main.bc", "main.s"),
        ("main.s", "main.o"),
        ("main.o", "a.exe"),
    ]
    assert list(cmd.walk()) == [cmd, *jobs]


@pytest.mark.asyncio
async def test_gcc_pipeline(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("gcc", output=GCC_SAVE_TEMPS)
    cmd = await Command.create_from_string("gcc -O2 -o prog main.c")

    assert cmd.get_type() == "ClangCommand"
    assert [job.get_type() for job in cmd.sub_commands] == [
        "CC1Command",
        "CC1Command",
        "AssemblerCommand",
        "LinkerCommand",
    ]
    paths = [(job.get_input_path(), job.get_output_path()) for job in cmd.sub_commands]
    assert paths == [
        ("main.c", "prog-main.i"),
        ("prog-main.i", "prog-main.s"),
        ("prog-main.s", "prog-main.o"),
        ("prog-main.o", "prog"),
    ]


@pytest.mark.asyncio
async def test_gxx_command(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("g++", output=GXX_SAVE_TEMPS)
    cmd = await Command.create_from_string("g++ -std=c++17 -Wall -o a.exe main.cpp")

    assert isinstance(cmd, ClangCommand)
    assert cmd.discovery_error is None
    assert len(cmd.sub_commands) == 4
    pp = cmd.sub_commands[0]
    assert isinstance(pp, CC1Command)
    assert pp.phase == JobPhase.PREPROCESS
    assert pp.get_input_path() == "main.cpp"
    assert pp.get_output_path() == "a-main.ii"
    assert cmd.sub_commands[-1].get_input_path() == "a-main.o"
    assert cmd.sub_commands[-1].get_output_path() == "a.exe"


@pytest.mark.asyncio
async def test_nvcc_command(fake_toolchain: Callable[..., Path]) -> None:
    args_file = fake_toolchain("nvcc", output=NVCC_DRYRUN)
    cmd = await Command.create_from_string(
        "nvcc -std=c++17 -arch=sm_75 -o a.exe main.cu"
    )

    assert isinstance(cmd, NVCCCommand)
    assert cmd.get_input_path() == "main.cu"
    assert cmd.get_output_path() == "a.exe"
    assert args_file.read_text().splitlines()[-2:] == ["--keep", "--dryrun"]

    assert len(cmd.sub_commands) != 0
    assert [type(job) for job in cmd.sub_commands] == [
        CudafeCommand,
        CICCCommand,
        PTXASCommand,
        FatbinaryCommand,
        JobCommand,
        LinkerCommand,
    ]
    cudafe, cicc, ptxas, fatbinary, rm, nvlink = cmd.sub_commands
    assert cudafe.get_input_path() == "main.cpp4.ii"
    assert cudafe.get_output_path() == "main.cudafe1.cpp"
    assert cicc.get_input_path() == "main.cpp1.ii"
    assert cicc.get_output_path() == "main.ptx"
    assert ptxas.get_output_path() == "main.sm_75.cubin"
    assert fatbinary.get_output_path() == "main.fatbin"
    assert rm.get_input_path() == "main_dlink.reg.c"
    assert nvlink.get_input_path() == "main.o"


@pytest.mark.asyncio
async def test_nested_driver(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("nvcc", output=NVCC_WITH_HOST_COMPILER)
    gcc_args = fake_toolchain("gcc", output=GCC_PREPROCESS_ONLY)
    cmd = await Command.create_from_string("nvcc -o a.out main.cu")

    host, cicc = cmd.sub_commands
    assert isinstance(host, ClangCommand)
    assert host.parent is cmd
    assert host.get_input_path() == "main.cu"
    assert host.get_output_path() == "main.cpp4.ii"
    assert gcc_args.read_text().splitlines()[-1] == "-###"

    (cc1plus,) = host.sub_commands
    assert isinstance(cc1plus, CC1Command)
    assert cc1plus.phase == JobPhase.PREPROCESS
    assert cc1plus.parent is host
    assert isinstance(cicc, CICCCommand)
    assert [c.get_type() for c in cmd.walk()] == [
        "NVCCCommand",
        "ClangCommand",
        "CC1Command",
        "CICCCommand",
    ]


@pytest.mark.asyncio
async def test_nested_driver_failure_is_recorded(
    fake_toolchain: Callable[..., Path],
) -> None:
    fake_toolchain("nvcc", output=NVCC_WITH_HOST_COMPILER)
    fake_toolchain("gcc", output="gcc: fatal error: no input files", exit_code=1)
    cmd = await Command.create_from_string("nvcc -o a.out main.cu")

    assert isinstance(cmd, NVCCCommand)
    assert cmd.discovery_error is None
    host = cmd.sub_commands[0]
    assert isinstance(host, ClangCommand)
    assert isinstance(host.discovery_error, DryRunFailedError)
    assert host.discovery_error.command is host
    assert host.sub_commands == ()


@pytest.mark.asyncio
async def test_dry_run_failure(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang", output="clang: error: unknown argument", exit_code=1)
    cmd = await Command.create_from_string("clang -c -o main.o main.c")

    assert isinstance(cmd, ClangCommand)
    assert cmd.sub_commands == ()
    assert isinstance(cmd.discovery_error, DryRunFailedError)
    assert "unknown argument" in cmd.discovery_error.message
    assert cmd.get_input_path() == "main.c"
    assert cmd.get_output_path() == "main.o"


@pytest.mark.asyncio
async def test_dry_run_failure_is_logged(
    fake_toolchain: Callable[..., Path], caplog: pytest.LogCaptureFixture
) -> None:
    fake_toolchain("clang", exit_code=1)
    with caplog.at_level(logging.DEBUG, logger="irscope"):
        await Command.create_from_string("clang main.c")

    records = [r for r in caplog.records if r.name.startswith("irscope")]
    warnings = [r for r in records if r.levelno == logging.WARNING]
    assert [r.name for r in warnings] == ["irscope.command"]
    assert "clang main.c" in warnings[0].getMessage()
    assert any(r.name == "irscope.dryrun" for r in records)


@pytest.mark.asyncio
async def test_dry_run_failure_strict(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang", exit_code=1)
    with pytest.raises(DryRunFailedError) as e:
        await Command.create_from_string("clang main.c", strict=True)
    assert isinstance(e.value.command, ClangCommand)
    assert e.value.command.get_input_path() == "main.c"


@pytest.mark.asyncio
async def test_dry_run_timeout(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang", hang=True)
    cmd = await Command.create_from_string(
        "clang main.c", setting=DryRunSetting(timeout_s=0.5)
    )
    assert isinstance(cmd, ClangCommand)
    assert isinstance(cmd.discovery_error, DryRunFailedError)
    assert cmd.sub_commands == ()


@pytest.mark.asyncio
async def test_dry_run_cancel(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang", hang=True)
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.2, token.cancel)
    cmd = await Command.create_from_string("clang main.c", cancel_token=token)

    assert isinstance(cmd, ClangCommand)
    assert cmd.discovery_cancelled
    assert cmd.discovery_error is None
    assert cmd.sub_commands == ()


@pytest.mark.asyncio
async def test_unrecognized_dry_run_output(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang", output="something else entirely")
    cmd = await Command.create_from_string("clang main.c")
    assert isinstance(cmd, ClangCommand)
    assert cmd.sub_commands == ()
    assert cmd.discovery_error is None


@pytest.mark.asyncio
async def test_concurrent_commands(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang++", output=CLANG_SAVE_TEMPS)
    fake_toolchain("nvcc", output=NVCC_DRYRUN)
    clang, nvcc = await asyncio.gather(
        Command.create_from_string(CLANG_LINE),
        Command.create_from_string("nvcc -o a.exe main.cu"),
    )
    assert len(clang.sub_commands) == 5
    assert len(nvcc.sub_commands) == 6


@pytest.mark.asyncio
async def test_working_dir(fake_toolchain: Callable[..., Path], tmp_path: Path) -> None:
    fake_toolchain("clang++", output=CLANG_SAVE_TEMPS)
    work = tmp_path / "work"
    work.mkdir()
    cmd = await Command.create_from_string(CLANG_LINE, working_dir=work)
    assert cmd.working_dir == work
    assert all(job.working_dir == work for job in cmd.walk())


@pytest.mark.asyncio
async def test_toolchain_not_found(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(ToolchainNotFoundError) as e:
        await Command.create_from_string("clang++ -o a.exe main.cpp")
    assert e.value.executable == "clang++"


@pytest.mark.asyncio
async def test_unsupported_toolchain() -> None:
    with pytest.raises(UnsupportedToolchainError) as e:
        await Command.create_from_string("fooc main.c")
    assert e.value.executable == "fooc"


@pytest.mark.asyncio
@pytest.mark.parametrize("line", ["", "   ", 'clang++ "main.cpp'])
async def test_malformed_input(line: str) -> None:
    with pytest.raises(MalformedInputError):
        await Command.create_from_string(line)


@pytest.mark.asyncio
async def test_to_json_dict(fake_toolchain: Callable[..., Path]) -> None:
    fake_toolchain("clang++", output=CLANG_SAVE_TEMPS)
    cmd = await Command.create_from_string(CLANG_LINE)
    d = cmd.to_json_dict()

    assert d["type"] == "ClangCommand"
    assert d["input"] == "main.cpp"
    assert d["output"] == "a.exe"
    assert d["discovery_error"] is None
    assert len(d["sub_commands"]) == 5
    assert d["sub_commands"][0]["phase"] == "PREPROCESS"
    assert d["sub_commands"][0]["output"] == "main.ii"
    assert d["sub_commands"][0]["sub_commands"] == []


@pytest.mark.parametrize(
    "line,input_path,output_path",
    [
        ("clang -o a.exe main.cpp", "main.cpp", "a.exe"),
        ("gcc main.c -o build/main", "main.c", "build/main"),
        ("gcc -obuild/main main.c", "main.c", "build/main"),
        ("clang --output=x.o -c main.c", "main.c", "x.o"),
        ("clang -E main.c", "main.c", "-"),
        ("clang -o - -S main.c", "main.c", "-"),
        ("clang -S main.c", "main.c", "main.s"),
        ("clang -c src/util.cc", "src/util.cc", "util" + default_object_suffix()),
        (
            "gcc -MT Dem.cpp.o -MF Dem.cpp.o.d -c -o Dem.cpp.o Dem.cpp",
            "Dem.cpp",
            "Dem.cpp.o",
        ),
        ("gcc -include pre.c -I inc main.c -o m", "main.c", "m"),
        ("clang -x c prog.C -o p", "prog.C", "p"),
        ("clang -order_file syms.txt -o a.out main.c", "main.c", "a.out"),
        ("clang -objc-arc -omain main.m", "main.m", "main"),
    ],
)
def test_clang_paths(line: str, input_path: str, output_path: str) -> None:
    cmd = ClangCommand(line, tokenize(line))
    assert cmd.get_input_path() == input_path
    assert cmd.get_output_path() == output_path
    assert cmd.is_output_to_stdout() == (output_path == "-")


@pytest.mark.parametrize(
    "line,input_path,output_path",
    [
        ("nvcc -arch=sm_75 -o a.exe main.cu", "main.cu", "a.exe"),
        ("nvcc --output-file k.o -c kernel.cu", "kernel.cu", "k.o"),
        ("nvcc -ptx kernel.cu", "kernel.cu", "kernel.ptx"),
        ("nvcc -odir out -ptx kernel.cu", "kernel.cu", "kernel.ptx"),
        ("nvcc -ccbin g++-12 -Xcompiler -fPIC -o lib.so k.cu", "k.cu", "lib.so"),
    ],
)
def test_nvcc_paths(line: str, input_path: str, output_path: str) -> None:
    cmd = NVCCCommand(line, tokenize(line))
    assert cmd.get_input_path() == input_path
    assert cmd.get_output_path() == output_path


def test_find_flag_value() -> None:
    assert find_flag_value(["-o", "x"], ("-o",)) == "x"
    assert find_flag_value(["-ox"], ("-o",)) == "x"
    assert find_flag_value(["-ox"], ("-o",), joined_o=False) is None
    assert find_flag_value(["-objc", "-o", "y"], ("-o",)) == "y"
    assert find_flag_value(["--create=a.fatbin"], ("--create",)) == "a.fatbin"
    assert find_flag_value(["-o"], ("-o",)) is None
    assert find_flag_value(["-order_file", "s.txt", "-o", "a"], ("-o",)) == "a"
    assert find_flag_value(["-ofirst", "-o", "second"], ("-o",)) == "second"
    assert find_flag_value(["-order_file", "s.txt"], ("-o",)) is None

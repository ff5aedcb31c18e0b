import os
from pathlib import Path
from typing import Callable

import pytest


@pytest.fixture
def fake_toolchain(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Callable[..., Path]:
    """Installs executables that print canned dry-run output.

    The working directory is changed to `tmp_path` and the executables are
    put first in PATH. The returned function creates one executable and
    returns the file its arguments are written to, one per line.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    monkeypatch.chdir(tmp_path)

    def install(
        name: str, output: str = "", exit_code: int = 0, hang: bool = False
    ) -> Path:
        output_file = bin_dir / f"{name}.output"
        output_file.write_text(output)
        args_file = bin_dir / f"{name}.args"

        script = f'#!/bin/sh\nprintf "%s\\n" "$@" > "{args_file}"\n'
        if hang:
            script += "exec sleep 30\n"
        script += f'cat "{output_file}" >&2\nexit {exit_code}\n'

        exe = bin_dir / name
        exe.write_text(script)
        exe.chmod(0o755)
        return args_file

    return install

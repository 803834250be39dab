import os
import stat

import pytest

from compile import CommandResult, Toolchain


class FakeTools:
    """Runner standing in for the frontend, llc and ld.

    Records every argv it is called with and creates the artifact the real
    tool would, unless told to fail via ``failures``.
    """

    def __init__(self, ir: bytes = b"; ModuleID = 'hello'\n"):
        self.ir = ir
        self.calls: list[list[str]] = []
        self.failures: dict[str, tuple[int, bytes]] = {}
        self.seen: dict[str, bool] = {}
        self.ir_seen: list[bytes] = []

    def __call__(self, argv: list[str]) -> CommandResult:
        self.calls.append(list(argv))
        name = os.path.basename(argv[0])
        if name in self.failures:
            code, err = self.failures[name]
            return CommandResult(argv, code, b"", err)
        if name == "llc":
            ir_path = argv[3]
            self.seen["ir"] = os.path.exists(ir_path)
            with open(ir_path, "rb") as f:
                self.ir_seen.append(f.read())
            _touch(argv[2])
        elif name == "ld":
            self.seen["object"] = os.path.exists(argv[5])
            _touch(argv[2])
        else:
            return CommandResult(argv, 0, self.ir, b"")
        return CommandResult(argv, 0)

    def programs(self) -> list[str]:
        return [os.path.basename(c[0]) for c in self.calls]


def _touch(path: str) -> None:
    with open(path, "wb") as f:
        f.write(b"\x7fELF")


@pytest.fixture
def helper(tmp_path):
    path = tmp_path / "helper" / "flush_stdout.o"
    path.parent.mkdir()
    path.write_bytes(b"\x7fELF helper")
    return path


@pytest.fixture
def toolchain(tmp_path, helper):
    return Toolchain(
        frontend=["frontend"],
        helper_object=str(helper),
        workdir=str(tmp_path / "int"),
        output=str(tmp_path / "bin" / "hello"),
    )


@pytest.fixture
def tools():
    return FakeTools()


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    """Directory of shell scripts named cargo, llc and ld, first on PATH."""
    bin_dir = tmp_path / "fakebin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))

    def install(name: str, body: str) -> None:
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    install("cargo", "printf '; ModuleID = %s\\n' \"${2:-main}\"\n")
    install("llc", "printf 'obj' > \"$2\"\n")
    install("ld", "printf '#!/bin/sh\\necho hello\\n' > \"$2\"\nchmod +x \"$2\"\n")
    return install

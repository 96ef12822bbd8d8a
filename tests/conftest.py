from __future__ import annotations

from pathlib import Path

import pytest

from fake_tools import BPFTOOL_SCRIPT, UNAME_SCRIPT, FakeBin, clang_script


@pytest.fixture
def fake_bin(tmp_path: Path) -> FakeBin:
    return FakeBin(tmp_path)


@pytest.fixture
def fake_toolchain(fake_bin: FakeBin) -> FakeBin:
    """clang 15, bpftool and uname (x86_64) on the fake PATH."""
    fake_bin.add("clang", clang_script())
    fake_bin.add("bpftool", BPFTOOL_SCRIPT)
    fake_bin.add("uname", UNAME_SCRIPT)
    return fake_bin


@pytest.fixture
def libbpf_prefix(tmp_path: Path) -> Path:
    """A flat libbpf install like the one `make install DESTDIR=` produces."""
    prefix = tmp_path / "libbpf-install"
    (prefix / "include" / "bpf").mkdir(parents=True)
    (prefix / "include" / "bpf" / "libbpf.h").write_text("/* libbpf */\n")
    (prefix / "lib64").mkdir()
    (prefix / "lib64" / "libbpf.a").write_text("!<arch>\n")
    return prefix

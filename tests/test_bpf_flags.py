"""Tests for target arch mapping and the clang system include probe."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

from _bpf_errors import ParseFailure, ProcessFailure
from bpf_flags import host_arch, idirafter_flags, map_arch, parse_search_dirs, probe_system_includes

from fake_tools import CLANG_SEARCH_DIRS, CLANG_VERBOSE_TRANSCRIPT, UNAME_SCRIPT, clang_script


# ---------------------------------------------------------------------------
# map_arch
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("machine, arch", [
    ("x86_64", "x86"),
    ("aarch64", "arm64"),
    ("ppc64le", "powerpc"),
    ("mips", "mips"),
    ("mips64", "mips"),
    ("mipsel", "mips"),
    ("riscv64", "riscv"),
    ("s390x", "s390x"),
    ("loongarch64", "loongarch64"),
    ("x86_64\n", "x86"),
])
def test_map_arch(machine, arch):
    assert map_arch(machine) == arch


def test_map_arch_matches_whole_token_only():
    # Substring matches must not be rewritten
    assert map_arch("x86_64_v2") == "x86_64_v2"
    assert map_arch("aarch64_be") == "aarch64_be"


def test_host_arch_maps_uname(fake_bin, capsys):
    fake_bin.add("uname", UNAME_SCRIPT)
    assert host_arch(fake_bin.env(FAKE_MACHINE="aarch64")) == "arm64"
    assert "BPF target arch: arm64" in capsys.readouterr().out
    assert fake_bin.calls("uname") == ["uname -m"]


def test_host_arch_failure(fake_bin):
    fake_bin.add("uname", 'echo "uname: cannot get system name" >&2\nexit 1\n')
    with pytest.raises(ProcessFailure) as exc:
        host_arch(fake_bin.env())
    assert "cannot get system name" in str(exc.value)
    assert "target architecture" in str(exc.value)


# ---------------------------------------------------------------------------
# parse_search_dirs / idirafter_flags
# ---------------------------------------------------------------------------

def test_parse_search_dirs_returns_block_in_order():
    assert parse_search_dirs(CLANG_VERBOSE_TRANSCRIPT) == CLANG_SEARCH_DIRS


@pytest.mark.parametrize("n", [0, 1, 3, 7])
def test_idirafter_flag_per_path(n):
    dirs = [f"/opt/sysroot/include{i}" for i in range(n)]
    transcript = "\n".join([
        "#include <...> search starts here:",
        *(f" {d}" for d in dirs),
        "End of search list.",
    ])
    flags = idirafter_flags(parse_search_dirs(transcript))
    assert len(flags) == 2 * n
    assert flags[0::2] == ["-idirafter"] * n
    assert flags[1::2] == dirs


def test_parse_search_dirs_ignores_quote_block():
    transcript = "\n".join([
        '#include "..." search starts here:',
        " /home/user/quoted",
        "#include <...> search starts here:",
        " /usr/include",
        "End of search list.",
    ])
    assert parse_search_dirs(transcript) == ["/usr/include"]


def test_parse_search_dirs_skips_non_path_lines():
    transcript = "\n".join([
        "#include <...> search starts here:",
        " /usr/include",
        " /System/Library/Frameworks (framework directory)",
        " relative/dir",
        "End of search list.",
    ])
    assert parse_search_dirs(transcript) == ["/usr/include"]


@pytest.mark.parametrize("transcript", [
    "",
    "clang version 15.0.7\n",
    "#include <...> search starts here:\n /usr/include\n",
])
def test_parse_search_dirs_missing_markers(transcript):
    with pytest.raises(ParseFailure):
        parse_search_dirs(transcript)


# ---------------------------------------------------------------------------
# probe_system_includes
# ---------------------------------------------------------------------------

def test_probe_system_includes(fake_bin, capsys):
    clang = fake_bin.add("clang", clang_script())
    flags = probe_system_includes(clang, fake_bin.env())
    assert flags == idirafter_flags(CLANG_SEARCH_DIRS)
    assert fake_bin.calls("clang") == ["clang -v -E -"]
    assert "BPF system include flags: -idirafter /usr/lib/llvm-15" in capsys.readouterr().out


def test_probe_system_includes_command_failure(fake_bin):
    clang = fake_bin.add("clang", 'echo "clang: error: no such file" >&2\nexit 1\n')
    with pytest.raises(ProcessFailure) as exc:
        probe_system_includes(clang, fake_bin.env())
    # stderr is merged into the captured output
    assert "no such file" in exc.value.stderr


def test_probe_system_includes_unexpected_output(fake_bin):
    clang = fake_bin.add("clang", clang_script(transcript="nothing useful here"))
    with pytest.raises(ParseFailure):
        probe_system_includes(clang, fake_bin.env())

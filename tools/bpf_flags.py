"""Per-host compile flags for the BPF target.

Two things clang cannot work out for itself with ``-target bpf``:

* the architecture the program will be loaded on, needed by libbpf's
  bpf_tracing.h as ``-D__TARGET_ARCH_<arch>`` using kernel arch names;
* the host's system include directories, which the bpf target does not
  search by default.  They are re-added with -idirafter so the target's
  own headers still win.
"""

import re
import subprocess

from _bpf_errors import ParseFailure, ProcessFailure

# Applied in order; first match wins.  Anything else passes through.
ARCH_MAP = (
    (re.compile(r"^x86_64$"), "x86"),
    (re.compile(r"^aarch64$"), "arm64"),
    (re.compile(r"^ppc64le$"), "powerpc"),
    (re.compile(r"^mips.*$"), "mips"),
    (re.compile(r"^riscv64$"), "riscv"),
)

SEARCH_START = "<...> search starts here:"
SEARCH_END = "End of search list."
FRAMEWORK_SUFFIX = " (framework directory)"


def map_arch(machine):
    """Map a ``uname -m`` string to the kernel arch name."""
    machine = machine.strip()
    for pattern, arch in ARCH_MAP:
        if pattern.match(machine):
            return arch
    return machine


def host_arch(env=None):
    """Query the machine architecture with ``uname -m`` and map it."""
    cmd = ["uname", "-m"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, env=env)
    except OSError as e:
        raise ProcessFailure(cmd, -1, str(e),
                             what="Failed to determine target architecture") from e
    if result.returncode != 0:
        raise ProcessFailure(cmd, result.returncode, result.stderr,
                             what="Failed to determine target architecture")
    arch = map_arch(result.stdout)
    print(f"BPF target arch: {arch}")
    return arch


def parse_search_dirs(transcript):
    """Return the ``#include <...>`` search dirs from ``clang -v`` output.

    Only the block after the ``<...>`` marker is used; the quote-include
    block before it does not apply to system headers.
    """
    dirs = []
    inside = False
    seen_start = False
    for line in transcript.splitlines():
        if not inside:
            if SEARCH_START in line:
                inside = True
                seen_start = True
            continue
        if SEARCH_END in line:
            inside = False
            break
        path = line.strip()
        # Darwin framework dirs take -F, not an include path
        if path.endswith(FRAMEWORK_SUFFIX):
            continue
        if path.startswith("/"):
            dirs.append(path)
    if not seen_start or inside:
        raise ParseFailure("clang include search list", transcript)
    return dirs


def idirafter_flags(dirs):
    """Turn search dirs into ``-idirafter <dir>`` argument pairs."""
    flags = []
    for d in dirs:
        flags.extend(["-idirafter", d])
    return flags


def probe_system_includes(clang, env=None):
    """Ask clang for its default include path and return -idirafter flags."""
    cmd = [clang, "-v", "-E", "-"]
    try:
        result = subprocess.run(cmd, stdin=subprocess.DEVNULL,
                                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                text=True, env=env)
    except OSError as e:
        raise ProcessFailure(cmd, -1, str(e),
                             what="Failed to determine BPF system includes") from e
    if result.returncode != 0:
        raise ProcessFailure(cmd, result.returncode, result.stdout,
                             what="Failed to determine BPF system includes")

    flags = idirafter_flags(parse_search_dirs(result.stdout))
    print(f"BPF system include flags: {' '.join(flags)}")
    return flags

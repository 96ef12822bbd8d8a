"""Locate clang and bpftool and check clang is new enough for BPF CO-RE.

The BPF backend in anything older than clang 10 miscompiles or rejects
CO-RE relocations, so an old compiler is fatal here rather than at the
first compile.
"""

import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Tuple

from _bpf_errors import ParseFailure, ProcessFailure, VersionTooOld

MIN_CLANG_MAJOR = 10

# "clang version 15.0.7", "Ubuntu clang version 14.0.0-1ubuntu1",
# "Apple clang version 15.0.0 (clang-1500.1.0.2.5)"
_VERSION_RE = re.compile(r"\bversion (\d+)\.(\d+)\.(\d+)")


@dataclass(frozen=True)
class ToolchainFacts:
    clang: str
    clang_version: Tuple[int, int, int]
    bpftool: Optional[str]

    @property
    def clang_version_str(self):
        return ".".join(str(p) for p in self.clang_version)


def find_program(names, path):
    """Return the absolute path of the first of *names* found on *path*.

    Entries in *names* containing a slash are treated as explicit paths
    and only checked for existence.  Returns None when nothing matches.
    """
    if isinstance(names, str):
        names = [names]
    for name in names:
        if "/" in name:
            found = shutil.which(name)
        else:
            found = shutil.which(name, path=path)
        if found:
            return found
    return None


def parse_clang_version(text):
    """Extract (major, minor, patch) from ``clang --version`` output."""
    m = _VERSION_RE.search(text)
    if not m:
        return None
    return tuple(int(g) for g in m.groups())


def check_clang_version(clang, env, minimum=MIN_CLANG_MAJOR):
    """Run ``clang --version`` and enforce the minimum major version.

    Returns the (major, minor, patch) tuple.
    """
    cmd = [clang, "--version"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, env=env)
    except OSError as e:
        raise ProcessFailure(cmd, -1, str(e)) from e
    if result.returncode != 0:
        raise ProcessFailure(cmd, result.returncode, result.stderr)

    version = parse_clang_version(result.stdout)
    if version is None:
        raise ParseFailure("clang version string", result.stdout)

    version_str = ".".join(str(p) for p in version)
    if version[0] < minimum:
        raise VersionTooOld(version_str, minimum)

    print(f"Found clang version: {version_str}")
    return version

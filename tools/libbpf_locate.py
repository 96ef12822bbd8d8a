"""Locate libbpf development headers and a linkable libbpf.

Callers that already know where libbpf lives pass both values and no
search happens.  Otherwise hint prefixes (a vendored install) are
searched, then pkg-config is asked, then a list of install prefixes
is searched the way a CMake find module would
(bpf/libbpf.h under include/, libbpf.a or libbpf.so under lib*/).

A missing libbpf is not fatal here: the empty fields are reported later
together with every other missing prerequisite.
"""

import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Tuple

from _env import warn
from bpf_toolchain import find_program

_HEADER = os.path.join("bpf", "libbpf.h")
_LIB_NAMES = ("libbpf.a", "libbpf.so")
# "" covers flat installs (DESTDIR=... LIBDIR= INCLUDEDIR=)
_LIB_SUBDIRS = ("lib64", "lib", "usr/lib64", "usr/lib", "")
_INCLUDE_SUBDIRS = ("include", "usr/include", "")

DEFAULT_PREFIXES = ("/usr/local", "/usr")


@dataclass(frozen=True)
class LibraryLocation:
    include_dirs: Tuple[str, ...] = ()
    libraries: Tuple[str, ...] = ()

    @property
    def complete(self):
        return bool(self.include_dirs) and bool(self.libraries)


def _pkg_config(pkg_config, args, env):
    cmd = [pkg_config, *args, "libbpf"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, env=env)
    except OSError as e:
        warn(f"pkg-config unavailable: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _query_pkg_config(pkg_config, env):
    """Ask pkg-config for libbpf.  Returns (include_dirs, libraries)."""
    include_dirs = []
    libraries = []

    cflags = _pkg_config(pkg_config, ["--cflags-only-I"], env)
    if cflags is None:
        return include_dirs, libraries
    for token in shlex.split(cflags):
        if token.startswith("-I") and len(token) > 2:
            include_dirs.append(token[2:])

    libdir = _pkg_config(pkg_config, ["--variable=libdir"], env)
    if libdir:
        for name in _LIB_NAMES:
            candidate = os.path.join(libdir, name)
            if os.path.isfile(candidate):
                libraries.append(candidate)
                break

    # pkg-config reports no -I when headers live in a default dir
    if not include_dirs:
        includedir = _pkg_config(pkg_config, ["--variable=includedir"], env)
        if includedir and os.path.isfile(os.path.join(includedir, _HEADER)):
            include_dirs.append(includedir)

    return include_dirs, libraries


def _search_prefixes(prefixes):
    """find_path()/find_library() equivalent over install prefixes."""
    include_dir = None
    library = None
    for prefix in prefixes:
        if include_dir is None:
            for sub in _INCLUDE_SUBDIRS:
                d = os.path.normpath(os.path.join(prefix, sub))
                if os.path.isfile(os.path.join(d, _HEADER)):
                    include_dir = d
                    break
        if library is None:
            for sub in _LIB_SUBDIRS:
                for name in _LIB_NAMES:
                    candidate = os.path.join(prefix, sub, name)
                    if os.path.isfile(candidate):
                        library = candidate
                        break
                if library:
                    break
        if include_dir and library:
            break
    return include_dir, library


def find_libbpf(include_dirs=(), libraries=(), env=None, hints=(),
                prefixes=DEFAULT_PREFIXES, pkg_config="pkg-config"):
    """Resolve libbpf include dirs and libraries.

    *hints* are prefixes searched before pkg-config (e.g. a vendored
    3rdparty/libbpf install); *prefixes* are searched after it.
    """
    include_dirs = tuple(include_dirs)
    libraries = tuple(libraries)
    if include_dirs and libraries:
        return LibraryLocation(include_dirs, libraries)

    found_inc = []
    found_lib = []

    hint_inc, hint_lib = _search_prefixes(hints)
    if hint_inc:
        found_inc.append(hint_inc)
    if hint_lib:
        found_lib.append(hint_lib)

    if not (found_inc and found_lib):
        pc = find_program(pkg_config, (env or {}).get("PATH", ""))
        if pc:
            pc_inc, pc_lib = _query_pkg_config(pc, env)
            if not found_inc:
                found_inc = pc_inc
            if not found_lib:
                found_lib = pc_lib

    if not (found_inc and found_lib):
        inc, lib = _search_prefixes(prefixes)
        if not found_inc and inc:
            found_inc = [inc]
        if not found_lib and lib:
            found_lib = [lib]

    location = LibraryLocation(
        include_dirs or tuple(found_inc),
        libraries or tuple(found_lib),
    )
    if location.complete:
        print(f"Found LibBpf: {', '.join(location.libraries)}")
    return location

#!/usr/bin/env python3
"""Find everything needed to build BPF CO-RE objects.

Resolves, once per invocation:

  BPFOBJECT_BPFTOOL_EXE   bpftool binary
  BPFOBJECT_CLANG_EXE     clang binary (version >= 10)
  LIBBPF_INCLUDE_DIRS     libbpf development headers
  LIBBPF_LIBRARIES        libbpf library
  GENERATED_VMLINUX_DIR   directory holding vmlinux.h (pinned or generated)

then probes clang's system include dirs and the target arch.  Each of
the first five may be supplied by flag or by the environment variable
of the same name (BPFOBJECT_VMLINUX_H for the header path), which skips
its search.  Missing prerequisites are reported together; any other
failure stops the pass immediately.
"""

import argparse
import json
import os
import sys
from dataclasses import asdict, dataclass, field
from typing import Optional, Tuple

from _bpf_errors import BpfObjectError, ToolNotFound, die
from _env import add_path_args, tool_env
from bpf_flags import host_arch, probe_system_includes
from bpf_toolchain import ToolchainFacts, check_clang_version, find_program
from kernel_btf_headers import DEFAULT_BTF, KernelTypeHeader, resolve_vmlinux_h
from libbpf_locate import DEFAULT_PREFIXES, LibraryLocation, find_libbpf

REQUIRED_VARS = (
    "BPFOBJECT_BPFTOOL_EXE",
    "BPFOBJECT_CLANG_EXE",
    "LIBBPF_INCLUDE_DIRS",
    "LIBBPF_LIBRARIES",
    "GENERATED_VMLINUX_DIR",
)


@dataclass(frozen=True)
class ResolveOptions:
    project_dir: str
    build_dir: str
    clang: Optional[str] = None
    bpftool: Optional[str] = None
    libbpf_include_dirs: Tuple[str, ...] = ()
    libbpf_libraries: Tuple[str, ...] = ()
    vmlinux_h: Optional[str] = None
    btf: str = DEFAULT_BTF
    libbpf_hints: Tuple[str, ...] = ()
    libbpf_prefixes: Tuple[str, ...] = DEFAULT_PREFIXES


@dataclass(frozen=True)
class ResolvedContext:
    """Everything bpf_object() needs, computed once and never mutated."""
    project_dir: str
    build_dir: str
    toolchain: ToolchainFacts
    libbpf: LibraryLocation
    vmlinux: KernelTypeHeader
    arch: str
    system_includes: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self):
        d = asdict(self)
        d["toolchain"]["clang_version"] = self.toolchain.clang_version_str
        return d


def resolve(options, env):
    """Run every resolver and return a ResolvedContext.

    Raises ToolNotFound listing every unresolved required variable, or
    the first ProcessFailure / ParseFailure / VersionTooOld encountered.
    """
    path = env.get("PATH", "")

    bpftool = find_program(options.bpftool or "bpftool", path)

    clang = find_program(options.clang or "clang", path)
    clang_version = None
    if clang:
        clang_version = check_clang_version(clang, env)

    libbpf = find_libbpf(
        options.libbpf_include_dirs, options.libbpf_libraries, env=env,
        hints=options.libbpf_hints, prefixes=options.libbpf_prefixes,
    )

    vmlinux = resolve_vmlinux_h(options.vmlinux_h, bpftool, options.build_dir,
                                btf=options.btf, env=env)

    found = {
        "BPFOBJECT_BPFTOOL_EXE": bpftool,
        "BPFOBJECT_CLANG_EXE": clang,
        "LIBBPF_INCLUDE_DIRS": libbpf.include_dirs,
        "LIBBPF_LIBRARIES": libbpf.libraries,
        "GENERATED_VMLINUX_DIR": vmlinux.directory if vmlinux else None,
    }
    missing = [var for var in REQUIRED_VARS if not found[var]]
    if missing:
        raise ToolNotFound(missing)
    print(f"Found BpfObject: {clang} {bpftool}")

    system_includes = probe_system_includes(clang, env)
    arch = host_arch(env)

    return ResolvedContext(
        project_dir=os.path.abspath(options.project_dir),
        build_dir=os.path.abspath(options.build_dir),
        toolchain=ToolchainFacts(clang, clang_version, bpftool),
        libbpf=libbpf,
        vmlinux=vmlinux,
        arch=arch,
        system_includes=tuple(system_includes),
    )


def _env_list(name):
    value = os.environ.get(name, "")
    return [p for p in value.split(":") if p]


def add_resolve_args(parser):
    """Register resolution inputs; defaults come from the environment."""
    parser.add_argument("--project-dir", default=".",
                        help="Project root (sources under src/, headers under include/)")
    parser.add_argument("--build-dir", required=True,
                        help="Output directory for generated files")
    parser.add_argument("--clang", default=os.environ.get("BPFOBJECT_CLANG_EXE"),
                        help="Path to clang (env: BPFOBJECT_CLANG_EXE)")
    parser.add_argument("--bpftool", default=os.environ.get("BPFOBJECT_BPFTOOL_EXE"),
                        help="Path to bpftool (env: BPFOBJECT_BPFTOOL_EXE)")
    parser.add_argument("--libbpf-include-dir", action="append",
                        dest="libbpf_include_dirs", default=None,
                        help="libbpf header dir (repeatable, env: LIBBPF_INCLUDE_DIRS)")
    parser.add_argument("--libbpf-library", action="append",
                        dest="libbpf_libraries", default=None,
                        help="libbpf library path (repeatable, env: LIBBPF_LIBRARIES)")
    parser.add_argument("--libbpf-hint", action="append", dest="libbpf_hints",
                        default=[], help="Prefix searched first for libbpf (repeatable)")
    parser.add_argument("--vmlinux-h", default=os.environ.get("BPFOBJECT_VMLINUX_H"),
                        help="Pinned vmlinux.h (env: BPFOBJECT_VMLINUX_H)")
    parser.add_argument("--btf", default=DEFAULT_BTF,
                        help=f"BTF source for vmlinux.h generation (default: {DEFAULT_BTF})")
    add_path_args(parser)


def options_from_args(args):
    include_dirs = args.libbpf_include_dirs
    if include_dirs is None:
        include_dirs = _env_list("LIBBPF_INCLUDE_DIRS")
    libraries = args.libbpf_libraries
    if libraries is None:
        libraries = _env_list("LIBBPF_LIBRARIES")
    return ResolveOptions(
        project_dir=args.project_dir,
        build_dir=args.build_dir,
        clang=args.clang or None,
        bpftool=args.bpftool or None,
        libbpf_include_dirs=tuple(os.path.abspath(p) for p in include_dirs),
        libbpf_libraries=tuple(os.path.abspath(p) for p in libraries),
        vmlinux_h=args.vmlinux_h or None,
        btf=args.btf,
        libbpf_hints=tuple(os.path.abspath(p) for p in args.libbpf_hints),
    )


def main():
    parser = argparse.ArgumentParser(description="Resolve the BPF CO-RE toolchain")
    add_resolve_args(parser)
    parser.add_argument("--output", default="",
                        help="Write the resolved context as JSON to this path")
    args = parser.parse_args()

    env = tool_env(args)
    os.makedirs(args.build_dir, exist_ok=True)

    try:
        ctx = resolve(options_from_args(args), env)
    except BpfObjectError as e:
        die(e)

    text = json.dumps(ctx.to_dict(), indent=2, sort_keys=True)
    if args.output:
        with open(args.output, "w") as f:
            f.write(text + "\n")
        print(f"Resolved context written to {args.output}")
    else:
        print(text)


if __name__ == "__main__":
    main()

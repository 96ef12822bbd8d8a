#!/usr/bin/env python3
"""Define and build BPF CO-RE objects and their skeleton headers.

For each ``--object NAME:SOURCE`` (SOURCE relative to <project>/src):

  [clang] <src> -> <build>/<name>.bpf.o
  [skel]  <build>/<name>.bpf.o -> <build>/<name>.skel.h   (bpftool gen skeleton)

and exposes a ``<name>_skel`` unit carrying the include dirs and link
libraries a userspace program needs to use the skeleton.  The units are
written to a JSON manifest for the build graph that links against them.

A step runs only when its output is missing or older than its input.
The compile step depends on the source alone; the skeleton step on the
object alone.
"""

import argparse
import json
import os
import subprocess
import sys
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from _bpf_errors import BpfObjectError, ConfigError, NameCollision, ProcessFailure, die
from _env import tool_env
from find_bpf_object import add_resolve_args, options_from_args, resolve

# Always linked alongside libbpf.
SYSTEM_LINK_LIBRARIES = ("-lelf", "-lz")


@dataclass(frozen=True)
class BuildStep:
    comment: str
    argv: Tuple[str, ...]
    inputs: Tuple[str, ...]
    output: str
    # When set, the command's stdout is the output file.
    capture_stdout: bool = False


@dataclass(frozen=True)
class BuildUnit:
    name: str
    source: str
    object: str
    skeleton: str
    include_dirs: Tuple[str, ...]
    system_include_dirs: Tuple[str, ...]
    link_libraries: Tuple[str, ...]
    compile_step: BuildStep
    skeleton_step: BuildStep

    @property
    def steps(self):
        return (self.compile_step, self.skeleton_step)

    def to_dict(self):
        d = asdict(self)
        d["compile_step"]["argv"] = list(self.compile_step.argv)
        d["skeleton_step"]["argv"] = list(self.skeleton_step.argv)
        return d


class BpfObjectRegistry:
    """Units defined in one resolution pass, keyed by logical name."""

    def __init__(self):
        self._units = {}

    def add(self, unit, name):
        if name in self._units:
            raise NameCollision(name)
        self._units[name] = unit

    def __contains__(self, name):
        return name in self._units

    def __iter__(self):
        return iter(self._units.values())

    def __len__(self):
        return len(self._units)


def compile_argv(ctx, source, obj):
    """clang command line for one BPF object."""
    argv = [
        ctx.toolchain.clang, "-g", "-O2", "-target", "bpf",
        f"-D__TARGET_ARCH_{ctx.arch}",
        *ctx.system_includes,
        f"-I{ctx.vmlinux.directory}",
        f"-I{os.path.join(ctx.project_dir, 'include')}",
    ]
    for inc in ctx.libbpf.include_dirs:
        argv.extend(["-isystem", inc])
    argv.extend(["-c", source, "-o", obj])
    return tuple(argv)


def bpf_object(ctx, name, src, registry: Optional[BpfObjectRegistry] = None):
    """Define the ``<name>_skel`` unit for ``<project>/src/<src>``."""
    if not name or "/" in name:
        raise ConfigError(f"invalid bpf_object name: {name!r}")
    if registry is not None and name in registry:
        raise NameCollision(name)

    source = os.path.join(ctx.project_dir, "src", src)
    obj = os.path.join(ctx.build_dir, f"{name}.bpf.o")
    skel = os.path.join(ctx.build_dir, f"{name}.skel.h")

    compile_step = BuildStep(
        comment=f"[clang] Building BPF object: {name}",
        argv=compile_argv(ctx, source, obj),
        inputs=(source,),
        output=obj,
    )
    skeleton_step = BuildStep(
        comment=f"[skel]  Building BPF skeleton: {name}",
        argv=(ctx.toolchain.bpftool, "gen", "skeleton", obj),
        inputs=(obj,),
        output=skel,
        capture_stdout=True,
    )

    unit = BuildUnit(
        name=f"{name}_skel",
        source=source,
        object=obj,
        skeleton=skel,
        include_dirs=(ctx.build_dir,),
        system_include_dirs=tuple(ctx.libbpf.include_dirs),
        link_libraries=tuple(ctx.libbpf.libraries) + SYSTEM_LINK_LIBRARIES,
        compile_step=compile_step,
        skeleton_step=skeleton_step,
    )
    if registry is not None:
        registry.add(unit, name)
    return unit


def is_stale(step):
    """True if the step's output is missing or older than any input."""
    try:
        out_mtime = os.stat(step.output).st_mtime
    except FileNotFoundError:
        return True
    for path in step.inputs:
        if os.stat(path).st_mtime > out_mtime:
            return True
    return False


def run_step(step, env=None):
    """Run one build step; a partial output is removed on failure."""
    print(step.comment)
    print(f"  + {' '.join(step.argv)}")
    os.makedirs(os.path.dirname(step.output) or ".", exist_ok=True)
    try:
        if step.capture_stdout:
            with open(step.output, "w") as outf:
                result = subprocess.run(step.argv, stdout=outf,
                                        stderr=subprocess.PIPE, text=True, env=env)
        else:
            result = subprocess.run(step.argv, stderr=subprocess.PIPE,
                                    text=True, env=env)
    except OSError as e:
        raise ProcessFailure(step.argv, -1, str(e), what=step.comment.strip()) from e

    if result.returncode != 0:
        if os.path.exists(step.output):
            os.unlink(step.output)
        raise ProcessFailure(step.argv, result.returncode, result.stderr,
                             what=step.comment.strip())


def build_unit(unit, env=None, force=False):
    """Bring a unit up to date.  Returns the steps that actually ran."""
    if not os.path.isfile(unit.source):
        raise ConfigError(f"BPF source not found: {unit.source}")
    ran = []
    for step in unit.steps:
        if force or is_stale(step):
            run_step(step, env)
            ran.append(step)
    return ran


def parse_object_arg(value):
    """Parse an --object NAME:SOURCE argument."""
    if ":" not in value:
        raise argparse.ArgumentTypeError(
            f"object must be NAME:SOURCE, got: {value}"
        )
    name, source = value.split(":", 1)
    if not name or not source:
        raise argparse.ArgumentTypeError(
            f"object must be NAME:SOURCE, got: {value}"
        )
    return (name, source)


def write_manifest(units, path):
    manifest = {"units": [u.to_dict() for u in units]}
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
        f.write("\n")


def main():
    parser = argparse.ArgumentParser(description="Build BPF CO-RE objects and skeletons")
    add_resolve_args(parser)
    parser.add_argument("--object", action="append", dest="objects", default=[],
                        type=parse_object_arg,
                        help="NAME:SOURCE, SOURCE relative to <project>/src (repeatable)")
    parser.add_argument("--manifest-out", default="",
                        help="Write exposed units as JSON to this path")
    parser.add_argument("--no-build", action="store_true",
                        help="Define units and write the manifest without running steps")
    parser.add_argument("--force", action="store_true",
                        help="Run every step even when outputs are up to date")
    args = parser.parse_args()

    if not args.objects:
        print("error: at least one --object NAME:SOURCE is required", file=sys.stderr)
        sys.exit(1)

    env = tool_env(args)
    os.makedirs(args.build_dir, exist_ok=True)

    try:
        ctx = resolve(options_from_args(args), env)
        registry = BpfObjectRegistry()
        for name, source in args.objects:
            bpf_object(ctx, name, source, registry)
        if not args.no_build:
            for unit in registry:
                build_unit(unit, env, force=args.force)
    except BpfObjectError as e:
        die(e)

    if args.manifest_out:
        write_manifest(registry, args.manifest_out)
        print(f"Manifest written to {args.manifest_out}")

    print(f"{len(registry)} BPF object(s) ready")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Staged build of a BPF agent with vendored libbpf and bpftool.

The project tree decides what this run does:

  3rdparty/libbpf/ missing     -> NEEDS_LIBRARY:  build and install libbpf
  3rdparty/bootstrap/ missing  -> NEEDS_AUX_TOOL: build bootstrap bpftool
  both present                 -> READY:          build every object listed
                                                  in bpfobject.yaml

Exactly one stage runs per invocation; rerun to advance.
"""

import argparse
import enum
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Dict

from _bpf_errors import BpfObjectError, ProcessFailure, die
from _env import add_path_args, tool_env
from bpf_object import BpfObjectRegistry, bpf_object, build_unit, write_manifest
from bpf_project import PROJECT_FILE, load_project_config
from find_bpf_object import ResolveOptions, resolve

THIRD_PARTY = "3rdparty"
MANIFEST_NAME = "bpf_objects.json"


class BuildStage(enum.Enum):
    NEEDS_LIBRARY = "libbpf"
    NEEDS_AUX_TOOL = "bpftool"
    READY = "objects"


@dataclass(frozen=True)
class StageContext:
    project_dir: str
    build_dir: str
    libbpf_src: str
    bpftool_src: str
    project_file: str
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def libbpf_root(self):
        return os.path.join(self.project_dir, THIRD_PARTY, "libbpf")

    @property
    def bpftool_root(self):
        return os.path.join(self.project_dir, THIRD_PARTY, "bootstrap")


def detect_stage(project_dir):
    third_party = os.path.join(project_dir, THIRD_PARTY)
    if not os.path.exists(os.path.join(third_party, "libbpf")):
        return BuildStage.NEEDS_LIBRARY
    if not os.path.exists(os.path.join(third_party, "bootstrap")):
        return BuildStage.NEEDS_AUX_TOOL
    return BuildStage.READY


def _run(cmd, env):
    print(f"  + {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, env=env, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise ProcessFailure(cmd, -1, str(e)) from e
    if result.returncode != 0:
        raise ProcessFailure(cmd, result.returncode, result.stderr)


def build_libbpf(sc):
    """Static libbpf installed flat into 3rdparty/libbpf/."""
    src = os.path.join(sc.libbpf_src, "src")
    if not os.path.isdir(src):
        raise BpfObjectError(f"libbpf source not found: {src}")
    _run([
        "make", "-C", src,
        "BUILD_STATIC_ONLY=1",
        f"OBJDIR={os.path.join(sc.build_dir, 'libbpf')}",
        f"DESTDIR={sc.libbpf_root}",
        "INCLUDEDIR=", "LIBDIR=", "UAPIDIR=",
        "install",
    ], sc.env)
    print(f"libbpf installed to {sc.libbpf_root}")


def build_bpftool(sc):
    """Bootstrap bpftool (no skeleton-dependent features) into 3rdparty/bootstrap/."""
    src = os.path.join(sc.bpftool_src, "src")
    if not os.path.isdir(src):
        raise BpfObjectError(f"bpftool source not found: {src}")
    _run([
        "make", "-C", src, "bootstrap",
        f"OUTPUT={sc.bpftool_root}/",
    ], sc.env)
    print(f"bpftool bootstrapped into {sc.bpftool_root}")


def vendored_bpftool(sc):
    path = os.path.join(sc.bpftool_root, "bootstrap", "bpftool")
    return path if os.path.isfile(path) else None


def build_objects(sc):
    """Resolve against the vendored libbpf/bpftool and build every object."""
    config = load_project_config(sc.project_file)
    pinned = config.pinned
    options = ResolveOptions(
        project_dir=sc.project_dir,
        build_dir=sc.build_dir,
        clang=pinned.get("clang"),
        bpftool=pinned.get("bpftool") or vendored_bpftool(sc),
        libbpf_include_dirs=pinned.get("libbpf_include_dirs", ()),
        libbpf_libraries=pinned.get("libbpf_libraries", ()),
        vmlinux_h=pinned.get("vmlinux_h"),
        libbpf_hints=(sc.libbpf_root,),
    )
    os.makedirs(sc.build_dir, exist_ok=True)
    ctx = resolve(options, sc.env)

    registry = BpfObjectRegistry()
    for name, source in config.objects:
        bpf_object(ctx, name, source, registry)
    for unit in registry:
        build_unit(unit, sc.env)

    manifest = os.path.join(sc.build_dir, MANIFEST_NAME)
    write_manifest(registry, manifest)
    print(f"Manifest written to {manifest}")
    return registry


STAGE_HANDLERS = {
    BuildStage.NEEDS_LIBRARY: build_libbpf,
    BuildStage.NEEDS_AUX_TOOL: build_bpftool,
    BuildStage.READY: build_objects,
}


def dispatch(stage, sc):
    print(f"Build {stage.value}")
    return STAGE_HANDLERS[stage](sc)


def main():
    parser = argparse.ArgumentParser(description="Run the next stage of a BPF agent build")
    parser.add_argument("--project-dir", default=".",
                        help="Project root containing 3rdparty/, src/ and include/")
    parser.add_argument("--build-dir", required=True, help="Build output directory")
    parser.add_argument("--libbpf-src", default="",
                        help="libbpf source tree (default: <project>/libbpf)")
    parser.add_argument("--bpftool-src", default="",
                        help="bpftool source tree (default: <project>/bpftool)")
    parser.add_argument("--project-file", default="",
                        help=f"Object list (default: <project>/{PROJECT_FILE})")
    add_path_args(parser)
    args = parser.parse_args()

    project_dir = os.path.abspath(args.project_dir)
    if not os.path.isdir(project_dir):
        print(f"error: project directory not found: {project_dir}", file=sys.stderr)
        sys.exit(1)

    sc = StageContext(
        project_dir=project_dir,
        build_dir=os.path.abspath(args.build_dir),
        libbpf_src=os.path.abspath(args.libbpf_src or os.path.join(project_dir, "libbpf")),
        bpftool_src=os.path.abspath(args.bpftool_src or os.path.join(project_dir, "bpftool")),
        project_file=os.path.abspath(args.project_file or os.path.join(project_dir, PROJECT_FILE)),
        env=tool_env(args),
    )

    try:
        dispatch(detect_stage(project_dir), sc)
    except BpfObjectError as e:
        die(e)


if __name__ == "__main__":
    main()

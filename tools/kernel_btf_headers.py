#!/usr/bin/env python3
"""Resolve or generate vmlinux.h for BPF CO-RE programs.

A pinned vmlinux.h is used as-is.  Otherwise the header is generated
from the running kernel's BTF:

    bpftool btf dump file /sys/kernel/btf/vmlinux format c > vmlinux.h

Generation reads live kernel state, so it only happens when no header
was pinned.  Pin one to get the same vmlinux.h on every build host.
"""

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass

from _bpf_errors import BpfObjectError, ProcessFailure, die
from _env import add_path_args, tool_env, warn
from bpf_toolchain import find_program

DEFAULT_BTF = "/sys/kernel/btf/vmlinux"

_ELF_MAGIC = b"\x7fELF"


@dataclass(frozen=True)
class KernelTypeHeader:
    path: str
    directory: str
    generated: bool = False


def dump_vmlinux_h(bpftool, output, btf=DEFAULT_BTF, env=None):
    """Write vmlinux.h for *btf* to *output*, removing it on failure."""
    cmd = [bpftool, "btf", "dump", "file", btf, "format", "c"]
    print(f"  + {' '.join(cmd)} > {output}")

    os.makedirs(os.path.dirname(output) or ".", exist_ok=True)
    try:
        with open(output, "w") as outf:
            result = subprocess.run(cmd, stdout=outf, stderr=subprocess.PIPE,
                                    text=True, env=env)
    except OSError as e:
        if os.path.exists(output):
            os.unlink(output)
        raise ProcessFailure(cmd, -1, str(e),
                             what="Failed to dump vmlinux.h from BTF") from e

    if result.returncode != 0:
        os.unlink(output)
        raise ProcessFailure(cmd, result.returncode, result.stderr,
                             what="Failed to dump vmlinux.h from BTF")
    return output


def resolve_vmlinux_h(vmlinux_h, bpftool, output_dir, btf=DEFAULT_BTF,
                      env=None):
    """Return the KernelTypeHeader for this pass, or None.

    A supplied *vmlinux_h* is trusted without running anything.  With no
    header and no bpftool there is nothing to do; the caller reports
    GENERATED_VMLINUX_DIR as missing.
    """
    if vmlinux_h:
        path = os.path.abspath(vmlinux_h)
        print(f"Using vmlinux.h: {path}")
        return KernelTypeHeader(path, os.path.dirname(path))

    if not bpftool:
        return None

    output = os.path.join(os.path.abspath(output_dir), "vmlinux.h")
    dump_vmlinux_h(bpftool, output, btf=btf, env=env)
    print(f"vmlinux.h generated: {output}")
    return KernelTypeHeader(output, os.path.dirname(output), generated=True)


def _is_elf(path):
    try:
        with open(path, "rb") as f:
            return f.read(4) == _ELF_MAGIC
    except OSError:
        return False


def _validate_btf(vmlinux, env=None):
    """Check that an ELF vmlinux has a .BTF section."""
    try:
        result = subprocess.run(
            ["readelf", "-S", vmlinux],
            capture_output=True, text=True, timeout=30, env=env,
        )
        if ".BTF" not in result.stdout:
            print(
                "error: vmlinux has no .BTF section. "
                "The kernel must be built with CONFIG_DEBUG_INFO_BTF=y.",
                file=sys.stderr,
            )
            sys.exit(1)
        print("  BTF data present in vmlinux")
    except FileNotFoundError:
        warn("readelf not found, skipping BTF validation")
    except subprocess.TimeoutExpired:
        warn("readelf timed out, skipping BTF validation")


def main():
    parser = argparse.ArgumentParser(description="Generate vmlinux.h from BTF")
    parser.add_argument("--btf", default=DEFAULT_BTF,
                        help="Raw BTF file or vmlinux ELF with BTF data "
                             f"(default: {DEFAULT_BTF})")
    parser.add_argument("--output-dir", required=True,
                        help="Directory to write vmlinux.h into")
    parser.add_argument("--bpftool", default="bpftool",
                        help="Path to bpftool binary (default: bpftool from PATH)")
    add_path_args(parser)
    args = parser.parse_args()

    env = tool_env(args)

    btf = os.path.abspath(args.btf)
    if not os.path.isfile(btf):
        print(f"error: BTF source not found: {btf}", file=sys.stderr)
        sys.exit(1)

    bpftool = find_program(args.bpftool, env["PATH"])
    if not bpftool:
        print(f"error: bpftool not found: {args.bpftool}", file=sys.stderr)
        sys.exit(1)

    if _is_elf(btf):
        _validate_btf(btf, env)

    try:
        resolve_vmlinux_h(None, bpftool, args.output_dir, btf=btf, env=env)
    except BpfObjectError as e:
        die(e)


if __name__ == "__main__":
    main()

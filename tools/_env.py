"""Shared environment handling for the BPF object helpers.

clang, bpftool and pkg-config all inherit whatever the calling build
system leaks into the environment.  Host locale changes the text clang
prints around its include search list, and stray CCACHE or CFLAGS
settings change which toolchain answers.  Every external command here
therefore runs with a whitelisted environment: only functional vars,
pinned determinism vars, and a PATH chosen explicitly.  The pkg-config
search variables are functional: they are how a user points the libbpf
lookup at an install outside the default prefixes.
"""

import os
import sys

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "TMPDIR", "TEMP", "TMP",
    "TERM",
    # pkg-config search path, so libbpf installs it knows about are found
    "PKG_CONFIG_PATH", "PKG_CONFIG_LIBDIR", "PKG_CONFIG_SYSROOT_DIR",
})

# Vars pinned to fixed values for determinism.  LC_ALL=C keeps the
# "search starts here" / "End of search list." markers untranslated.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "SOURCE_DATE_EPOCH": "315576000",
    "CCACHE_DISABLE": "1",
}


def clean_env():
    """Return a clean env dict for subprocess env= parameter.

    Copies only whitelisted vars from the host, then applies
    determinism pins.  Callers layer PATH and helper-specific vars on top.
    """
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_DETERMINISM_PINS)
    return env


def add_path_args(parser):
    """Register the PATH selection arguments on an argparse parser."""
    parser.add_argument("--hermetic-path", action="append",
                        dest="hermetic_path", default=[],
                        help="Set PATH to only these dirs (repeatable)")
    parser.add_argument("--hermetic-empty", action="store_true",
                        help="Start with empty PATH")
    parser.add_argument("--path-prepend", action="append",
                        dest="path_prepend", default=[],
                        help="Dir to prepend to PATH (repeatable)")


def setup_path(args, env, host_path=""):
    """Set env["PATH"] from the arguments registered by add_path_args().

    Without --hermetic-path or --hermetic-empty the host PATH is used,
    which is where clang and bpftool are normally searched for.
    """
    if args.hermetic_path:
        env["PATH"] = ":".join(os.path.abspath(p) for p in args.hermetic_path)
    elif args.hermetic_empty:
        env["PATH"] = ""
    else:
        env["PATH"] = host_path
    if getattr(args, "path_prepend", None):
        prepend = ":".join(os.path.abspath(p) for p in args.path_prepend)
        env["PATH"] = prepend + (":" + env["PATH"] if env.get("PATH") else "")
    return env


def tool_env(args=None, host_path=None):
    """clean_env() plus a PATH, the environment every helper command gets."""
    if host_path is None:
        host_path = os.environ.get("PATH", "")
    env = clean_env()
    if args is None:
        env["PATH"] = host_path
        return env
    return setup_path(args, env, host_path)


def warn(msg):
    print(f"warning: {msg}", file=sys.stderr)

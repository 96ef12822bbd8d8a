"""Error types for BPF toolchain resolution and object builds.

Library code raises these; each helper's main() reports them as a single
``error:`` line on stderr and exits 1.  ProcessFailure means a tool
refused to run; ParseFailure means it ran but printed something we
could not understand.
"""

import sys


class BpfObjectError(Exception):
    """Base class for every fatal condition in a resolution pass."""


class ToolNotFound(BpfObjectError):
    """One or more required variables could not be resolved."""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            "Could NOT find BpfObject (missing: " + " ".join(self.missing) + ")"
        )


class VersionTooOld(BpfObjectError):
    def __init__(self, version, minimum):
        self.version = version
        self.minimum = minimum
        super().__init__(
            f"clang {version} is too old for BPF CO-RE (need >= {minimum})"
        )


class ProcessFailure(BpfObjectError):
    """An external command exited non-zero."""

    def __init__(self, cmd, returncode, stderr="", what=""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr or ""
        prefix = f"{what}: " if what else ""
        msg = (f"{prefix}command \"{' '.join(self.cmd)}\" failed "
               f"(rc={returncode})")
        if self.stderr.strip():
            msg += f" with output:\n{self.stderr.rstrip()}"
        super().__init__(msg)


class ParseFailure(BpfObjectError):
    """A command succeeded but its output did not have the expected shape."""

    def __init__(self, what, output):
        self.what = what
        self.output = output
        super().__init__(f"Failed to parse {what}: {output.strip()!r}")


class NameCollision(BpfObjectError):
    def __init__(self, name):
        self.name = name
        super().__init__(f"bpf_object {name!r} is already defined")


class ConfigError(BpfObjectError):
    """Invalid project configuration file or command-line value."""


def die(err):
    """Report a BpfObjectError the way every helper does and exit."""
    print(f"error: {err}", file=sys.stderr)
    sys.exit(1)

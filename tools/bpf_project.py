"""Project file listing the BPF objects to build.

bpfobject.yaml::

    objects:
      - name: myobject
        source: myobject.bpf.c
    pinned:                     # optional, each entry skips its search
      clang: /usr/bin/clang-17
      bpftool: /usr/sbin/bpftool
      vmlinux_h: include/vmlinux.h
      libbpf_include_dirs: [/opt/libbpf/include]
      libbpf_libraries: [/opt/libbpf/lib64/libbpf.a]

Relative pinned paths are relative to the project file's directory.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import yaml

from _bpf_errors import ConfigError

PROJECT_FILE = "bpfobject.yaml"

_PINNED_SCALARS = ("clang", "bpftool", "vmlinux_h")
_PINNED_LISTS = ("libbpf_include_dirs", "libbpf_libraries")


@dataclass
class ProjectConfig:
    path: str
    objects: List[Tuple[str, str]] = field(default_factory=list)
    pinned: Dict[str, object] = field(default_factory=dict)


def _abs(base, p):
    return p if os.path.isabs(p) else os.path.normpath(os.path.join(base, p))


def _parse_objects(raw, path):
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{path}: 'objects' must be a non-empty list")
    objects = []
    seen = set()
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"{path}: objects[{i}] must be a mapping")
        name = entry.get("name")
        source = entry.get("source")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"{path}: objects[{i}] is missing 'name'")
        if not isinstance(source, str) or not source:
            raise ConfigError(f"{path}: objects[{i}] ({name}) is missing 'source'")
        if name in seen:
            raise ConfigError(f"{path}: duplicate object name {name!r}")
        seen.add(name)
        objects.append((name, source))
    return objects


def _parse_pinned(raw, path, base):
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: 'pinned' must be a mapping")
    unknown = set(raw) - set(_PINNED_SCALARS) - set(_PINNED_LISTS)
    if unknown:
        raise ConfigError(f"{path}: unknown pinned keys: {', '.join(sorted(unknown))}")

    pinned = {}
    for key in _PINNED_SCALARS:
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigError(f"{path}: pinned.{key} must be a string")
        # A bare program name is looked up on PATH, not next to the file.
        pinned[key] = _abs(base, value) if "/" in value or key == "vmlinux_h" else value
    for key in _PINNED_LISTS:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{path}: pinned.{key} must be a list of strings")
        pinned[key] = tuple(_abs(base, v) for v in value)
    return pinned


def load_project_config(path):
    """Read and validate a project file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    base = os.path.dirname(os.path.abspath(path))
    return ProjectConfig(
        path=os.path.abspath(path),
        objects=_parse_objects(data.get("objects"), path),
        pinned=_parse_pinned(data.get("pinned"), path, base),
    )

"""Tests for build stage detection and dispatch."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

import bpf_stage
from _bpf_errors import BpfObjectError, ProcessFailure
from bpf_stage import BuildStage, StageContext, detect_stage, dispatch

from fake_tools import BPFTOOL_SCRIPT, clang_script

MAKE_SCRIPT = "exit 0\n"


def _stage_context(tmp_path, fake_bin):
    project = tmp_path / "project"
    return StageContext(
        project_dir=str(project),
        build_dir=str(tmp_path / "build"),
        libbpf_src=str(project / "libbpf"),
        bpftool_src=str(project / "bpftool"),
        project_file=str(project / "bpfobject.yaml"),
        env=fake_bin.env(),
    )


def test_detect_stage(tmp_path):
    assert detect_stage(str(tmp_path)) is BuildStage.NEEDS_LIBRARY
    (tmp_path / "3rdparty" / "bootstrap").mkdir(parents=True)
    assert detect_stage(str(tmp_path)) is BuildStage.NEEDS_LIBRARY
    (tmp_path / "3rdparty" / "libbpf").mkdir()
    assert detect_stage(str(tmp_path)) is BuildStage.READY
    (tmp_path / "3rdparty" / "bootstrap").rmdir()
    assert detect_stage(str(tmp_path)) is BuildStage.NEEDS_AUX_TOOL


def test_every_stage_has_a_handler():
    assert set(bpf_stage.STAGE_HANDLERS) == set(BuildStage)


def test_dispatch_runs_only_the_selected_handler(monkeypatch, tmp_path, fake_bin):
    seen = []
    monkeypatch.setattr(bpf_stage, "STAGE_HANDLERS", {
        stage: (lambda sc, s=stage: seen.append(s)) for stage in BuildStage
    })
    dispatch(BuildStage.NEEDS_AUX_TOOL, _stage_context(tmp_path, fake_bin))
    assert seen == [BuildStage.NEEDS_AUX_TOOL]


def test_build_libbpf_make_command(tmp_path, fake_bin):
    fake_bin.add("make", MAKE_SCRIPT)
    sc = _stage_context(tmp_path, fake_bin)
    (Path(sc.libbpf_src) / "src").mkdir(parents=True)
    dispatch(BuildStage.NEEDS_LIBRARY, sc)
    [call] = fake_bin.calls("make")
    assert call.startswith(f"make -C {sc.libbpf_src}/src BUILD_STATIC_ONLY=1")
    assert f"DESTDIR={sc.project_dir}/3rdparty/libbpf" in call
    assert call.endswith("INCLUDEDIR= LIBDIR= UAPIDIR= install")


def test_build_bpftool_make_command(tmp_path, fake_bin):
    fake_bin.add("make", MAKE_SCRIPT)
    sc = _stage_context(tmp_path, fake_bin)
    (Path(sc.bpftool_src) / "src").mkdir(parents=True)
    dispatch(BuildStage.NEEDS_AUX_TOOL, sc)
    assert fake_bin.calls("make") == [
        f"make -C {sc.bpftool_src}/src bootstrap OUTPUT={sc.project_dir}/3rdparty/bootstrap/"
    ]


def test_make_failure_is_fatal(tmp_path, fake_bin):
    fake_bin.add("make", 'echo "make: *** No rule to make target" >&2\nexit 2\n')
    sc = _stage_context(tmp_path, fake_bin)
    (Path(sc.libbpf_src) / "src").mkdir(parents=True)
    with pytest.raises(ProcessFailure) as exc:
        dispatch(BuildStage.NEEDS_LIBRARY, sc)
    assert "No rule to make target" in exc.value.stderr


def test_missing_vendored_source(tmp_path, fake_bin):
    with pytest.raises(BpfObjectError):
        dispatch(BuildStage.NEEDS_LIBRARY, _stage_context(tmp_path, fake_bin))
    assert fake_bin.calls() == []


def test_ready_stage_builds_project(tmp_path, fake_bin):
    fake_bin.add("clang", clang_script())
    fake_bin.add("uname", "echo aarch64\n")
    sc = _stage_context(tmp_path, fake_bin)
    project = Path(sc.project_dir)

    # vendored libbpf (flat install) and bootstrap bpftool
    libbpf = project / "3rdparty" / "libbpf"
    (libbpf / "bpf").mkdir(parents=True)
    (libbpf / "bpf" / "libbpf.h").write_text("")
    (libbpf / "libbpf.a").write_text("")
    bootstrap = project / "3rdparty" / "bootstrap" / "bootstrap"
    bootstrap.mkdir(parents=True)
    tool = bootstrap / "bpftool"
    tool.write_text(
        "#!/bin/bash\n"
        f'echo "bpftool $*" >> "{fake_bin.log}"\n'
        + BPFTOOL_SCRIPT
    )
    tool.chmod(0o755)

    (project / "src").mkdir()
    (project / "src" / "agent.bpf.c").write_text("int x;\n")
    (project / "bpfobject.yaml").write_text(
        "objects:\n  - name: agent\n    source: agent.bpf.c\n"
    )

    assert detect_stage(sc.project_dir) is BuildStage.READY
    registry = dispatch(BuildStage.READY, sc)

    [unit] = list(registry)
    assert unit.name == "agent_skel"
    assert unit.system_include_dirs == (str(libbpf),)
    assert unit.compile_step.argv[unit.compile_step.argv.index("-target") + 2] == "-D__TARGET_ARCH_arm64"
    assert unit.skeleton_step.argv[0] == str(tool)
    assert Path(unit.skeleton).exists()

    manifest = json.loads((Path(sc.build_dir) / "bpf_objects.json").read_text())
    assert [u["name"] for u in manifest["units"]] == ["agent_skel"]

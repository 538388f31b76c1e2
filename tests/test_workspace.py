"""Tests for shellmate.workspace: verification picker, request context, changed files."""

import shutil
import subprocess

import pytest

from shellmate import fmt, workspace
from shellmate.workspace import (
    VERIFICATION_SKIPPED,
    augment_user_input,
    build_project_snapshot,
    changed_files,
    is_project_analysis_request,
    pick_verification_command,
    print_changed_files_delta,
    run_auto_verification,
)


def _touch(path, content=""):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "files, expected",
    [
        (["Cargo.toml"], ("rust", "cargo check")),
        (["Cargo.toml", "pyproject.toml"], ("rust", "cargo check")),
        (["pnpm-lock.yaml", "tsconfig.json", "package.json"], ("typescript", "pnpm -s tsc --noEmit")),
        (["package.json", "tsconfig.json"], ("typescript", "npm exec -y tsc --noEmit")),
        (["pyproject.toml"], ("python", "pytest -q")),
        (["pytest.ini"], ("python", "pytest -q")),
        (["go.mod"], ("go", "go build ./...")),
        (["package.json"], None),
        ([], None),
    ],
)
def test_pick_verification_command(tmp_path, files, expected):
    for name in files:
        _touch(tmp_path / name)
    assert pick_verification_command(str(tmp_path)) == expected


def test_verification_skipped(tmp_path):
    result = run_auto_verification(str(tmp_path))
    assert result.text == VERIFICATION_SKIPPED
    assert result.status == "skipped"
    assert result.label is None


def test_verification_ok(tmp_path):
    _touch(tmp_path / "pyproject.toml")
    calls = []

    def fake_runner(cmd, base_dir, timeout):
        calls.append((cmd, base_dir, timeout))
        return "3 passed in 0.01s"

    result = run_auto_verification(str(tmp_path), 30, runner=fake_runner)
    assert calls == [("pytest -q", str(tmp_path), 30)]
    assert result.ok
    assert result.text == "verification[python] ok\n$ pytest -q\n3 passed in 0.01s"


def test_verification_failed_and_clipped(tmp_path):
    _touch(tmp_path / "Cargo.toml")

    def fake_runner(cmd, base_dir, timeout):
        return "error: No such file\n" + "e" * 6000

    result = run_auto_verification(str(tmp_path), runner=fake_runner)
    assert result.status == "failed"
    assert result.text.startswith("verification[rust] failed\n$ cargo check\n")
    assert result.text.endswith("...\n[truncated]")


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


def test_plain_augmentation(tmp_path):
    text = augment_user_input("what does main do?", str(tmp_path))
    assert text == f"Workspace CWD: {tmp_path.resolve()}\nUser request: what does main do?"


@pytest.mark.parametrize(
    "text",
    ["Please analyze this project", "REVIEW THE PROJECT now", "帮我分析这个项目"],
)
def test_analysis_requests_detected(text):
    assert is_project_analysis_request(text)


def test_analysis_request_gets_snapshot(tmp_path):
    _touch(tmp_path / "pyproject.toml", '[project]\nname = "demo"\n')
    _touch(tmp_path / "src" / "demo.py", "print(1)\n")
    _touch(tmp_path / "node_modules" / "dep" / "index.js")
    text = augment_user_input("analyze this project", str(tmp_path))
    assert text.startswith(f"Workspace CWD: {tmp_path.resolve()}\nAuto project snapshot:\n")
    assert text.endswith("\n\nUser request: analyze this project")
    assert "- src/" in text
    assert "- pyproject.toml" in text
    assert "--- pyproject.toml ---\n[project]" in text
    assert "node_modules" not in text


def test_snapshot_limits(tmp_path):
    for i in range(130):
        _touch(tmp_path / f"f{i:03d}.txt")
    snapshot = build_project_snapshot(str(tmp_path))
    assert "- ... (50 more)" in snapshot
    assert "Total indexed files: 130" in snapshot
    assert "- ... (10 more)" in snapshot
    assert "- none found in workspace root" in snapshot


def test_indexed_files_keeps_bounded_sample(tmp_path):
    for i in range(5):
        _touch(tmp_path / "b" / f"{i}.rs")
    _touch(tmp_path / "a.txt")
    _touch(tmp_path / ".git" / "HEAD")
    sample, total = workspace._indexed_files(tmp_path, limit=3)
    assert sample == ["a.txt", "b/0.rs", "b/1.rs"]
    assert total == 6


def test_snapshot_empty_dir(tmp_path):
    snapshot = build_project_snapshot(str(tmp_path))
    assert "Root entries:\n- (empty)" in snapshot
    assert "Total indexed files: 0" in snapshot


# ---------------------------------------------------------------------------
# Changed files
# ---------------------------------------------------------------------------


def test_changed_files_outside_git(tmp_path):
    assert changed_files(str(tmp_path)) == set()


def test_changed_files_in_git_repo(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git not found on PATH")
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    _touch(tmp_path / "new.txt", "x")
    assert changed_files(str(tmp_path)) == {"new.txt"}


def test_print_changed_files_delta(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(workspace, "changed_files", lambda base_dir: {"a", "b"})
    monkeypatch.setattr(
        fmt, "changed_files", lambda added, kept, removed: seen.append((added, kept, removed))
    )
    after = print_changed_files_delta({"b", "c"}, str(tmp_path))
    assert after == {"a", "b"}
    assert seen == [(["a"], ["b"], ["c"])]


def test_print_changed_files_delta_silent_when_unchanged(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(workspace, "changed_files", lambda base_dir: {"a"})
    monkeypatch.setattr(fmt, "changed_files", lambda *a, **kw: seen.append(a))
    print_changed_files_delta({"a"}, str(tmp_path))
    assert seen == []

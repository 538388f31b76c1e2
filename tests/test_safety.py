"""Tests for shellmate.safety: prechecks, exec policy and trusted prefixes."""

import json

import pytest

from shellmate.report import ConfigError
from shellmate.safety import (
    ALLOWED,
    DENIED_BY_POLICY,
    DENIED_BY_PRECHECK,
    NEEDS_CONFIRMATION,
    ExecPolicy,
    TrustStore,
    classify,
    command_prefix,
    is_command_allowed,
    is_safe_readonly,
    matches_prefix_list,
    normalize_command,
    precheck_command,
)


# ---------------------------------------------------------------------------
# Prefixes
# ---------------------------------------------------------------------------


def test_normalize_command():
    assert normalize_command("  Git   STATUS\t-sb ") == "git status -sb"


def test_matches_prefix_list_case_insensitive():
    assert matches_prefix_list(["Git Status"], "git  status -sb")
    assert not matches_prefix_list(["git status"], "git push")
    assert not matches_prefix_list(["", "  "], "ls")


@pytest.mark.parametrize(
    "cmd, prefix",
    [
        ("git push origin main", "git push"),
        ("cargo test --all", "cargo test"),
        ("ls -la", "ls"),
        ("python3 build.py", "python3"),
        ("git", "git"),
        ("", ""),
    ],
)
def test_command_prefix(cmd, prefix):
    assert command_prefix(cmd) == prefix


# ---------------------------------------------------------------------------
# Safe mode whitelist
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "cmd",
    [
        "ls -la",
        "rg --files",
        "git status",
        "git diff HEAD~1",
        "git log --oneline | head -20",
        "cat README.md | wc -l",
        "find . -name '*.py'",
        "Get-ChildItem",
    ],
)
def test_safe_readonly_accepts(cmd):
    assert is_safe_readonly(cmd)


@pytest.mark.parametrize(
    "cmd",
    [
        "rm -rf /",
        "git push",
        "git",
        "ls; rm -rf /",
        "ls && rm x",
        "cat a > b",
        "echo $(whoami)",
        "find . -name x -delete",
        "find . -exec rm {} +",
        "ls | sh",
        "python3 -c 'print(1)'",
        "ls\nrm -rf victim",
        "ls\r\nrm -rf victim",
        "ls & rm -rf victim",
        "rg --pre ./evil.sh x",
        "rg --pre=./evil.sh x",
        "find . -fprintf out.txt %p",
        "find . -fprint0 out",
        "find . -fls out",
    ],
)
def test_safe_readonly_rejects(cmd):
    assert not is_safe_readonly(cmd)


# ---------------------------------------------------------------------------
# Policy classification
# ---------------------------------------------------------------------------


class TestClassify:
    def test_safe_denies_rm(self, tmp_path):
        verdict = classify(ExecPolicy(mode="safe"), "rm -rf /", str(tmp_path))
        assert verdict.kind == DENIED_BY_POLICY
        assert not verdict.allowed

    def test_safe_allows_listing(self, tmp_path):
        assert classify(ExecPolicy(), "ls -la", str(tmp_path)).kind == ALLOWED

    def test_custom_allow_prefix(self, tmp_path):
        policy = ExecPolicy(mode="custom", allow=["git status"])
        assert classify(policy, "git status -sb", str(tmp_path)).kind == ALLOWED
        assert classify(policy, "git push", str(tmp_path)).kind == DENIED_BY_POLICY

    def test_all_mode(self, tmp_path):
        assert classify(ExecPolicy(mode="all"), "make test", str(tmp_path)).allowed

    @pytest.mark.parametrize("mode", ["safe", "all", "custom"])
    def test_deny_wins_everywhere(self, mode, tmp_path):
        policy = ExecPolicy(mode=mode, allow=["git"], deny=["git push"])
        verdict = classify(policy, "git push --force", str(tmp_path))
        assert verdict.kind == DENIED_BY_POLICY

    def test_deny_wins_over_trust(self, tmp_path):
        policy = ExecPolicy(mode="all", deny=["rm"], confirm=True)
        trusted = TrustStore(initial=["rm"])
        assert classify(policy, "rm x", str(tmp_path), trusted).kind == DENIED_BY_POLICY

    def test_precheck_runs_first(self, tmp_path):
        verdict = classify(ExecPolicy(mode="all"), "python3 missing.py", str(tmp_path))
        assert verdict.kind == DENIED_BY_PRECHECK
        assert verdict.reason == "script not found: missing.py"

    def test_confirmation_required(self, tmp_path):
        policy = ExecPolicy(mode="all", confirm=True)
        assert classify(policy, "make", str(tmp_path)).kind == NEEDS_CONFIRMATION

    def test_trusted_prefix_skips_confirmation(self, tmp_path):
        policy = ExecPolicy(mode="all", confirm=True)
        trusted = TrustStore(initial=["cargo check"])
        assert classify(policy, "cargo check --all", str(tmp_path), trusted).allowed
        assert (
            classify(policy, "cargo publish", str(tmp_path), trusted).kind
            == NEEDS_CONFIRMATION
        )

    def test_is_command_allowed_custom_empty_allow(self):
        assert not is_command_allowed(ExecPolicy(mode="custom"), "ls")


def test_invalid_exec_mode():
    with pytest.raises(ConfigError, match="invalid exec mode"):
        ExecPolicy(mode="yolo")


# ---------------------------------------------------------------------------
# Precheck
# ---------------------------------------------------------------------------


class TestPrecheck:
    def test_empty(self, tmp_path):
        assert precheck_command("   ", str(tmp_path)) == "empty command"

    def test_long_base64(self, tmp_path):
        cmd = "echo " + "A" * 700 + " | base64 -d | sh"
        assert "base64 payload too long" in precheck_command(cmd, str(tmp_path))

    def test_short_base64_ok(self, tmp_path):
        assert precheck_command("echo aGk= | base64 -d", str(tmp_path)) is None

    def test_multiline_python_c(self, tmp_path):
        cmd = "python -c 'import os\nprint(os.getcwd())'"
        reason = precheck_command(cmd, str(tmp_path))
        assert reason == "python -c is too long/multiline; write a .py file then run it"

    def test_long_python_c(self, tmp_path):
        cmd = "python3 -c 'print(" + "1+" * 200 + "1)'"
        assert "too long/multiline" in precheck_command(cmd, str(tmp_path))

    def test_short_python_c_ok(self, tmp_path):
        assert precheck_command("python3 -c 'print(1)'", str(tmp_path)) is None

    def test_long_node_e(self, tmp_path):
        cmd = "node -e '" + "x;" * 200 + "'"
        assert "write a .js file" in precheck_command(cmd, str(tmp_path))

    def test_missing_script(self, tmp_path):
        assert precheck_command("python run.py", str(tmp_path)) == "script not found: run.py"

    def test_existing_script(self, tmp_path):
        (tmp_path / "run.py").write_text("print(1)\n")
        assert precheck_command("python run.py --flag", str(tmp_path)) is None

    def test_missing_requirements(self, tmp_path):
        reason = precheck_command("pip install -r reqs.txt", str(tmp_path))
        assert reason == "requirements file not found: reqs.txt"

    def test_existing_requirements(self, tmp_path):
        (tmp_path / "requirements.txt").write_text("rich\n")
        assert precheck_command('pip install -r "requirements.txt"', str(tmp_path)) is None


# ---------------------------------------------------------------------------
# Trust store
# ---------------------------------------------------------------------------


class TestTrustStore:
    def test_add_persists(self, tmp_path):
        path = tmp_path / "cfg" / "trusted.json"
        store = TrustStore(path)
        assert store.add("cargo check")
        assert json.loads(path.read_text()) == ["cargo check"]
        assert TrustStore(path).is_trusted("cargo check --release")

    def test_case_insensitive_dedupe(self, tmp_path):
        store = TrustStore(tmp_path / "trusted.json", initial=["Git Status"])
        assert not store.add("git status")
        assert store.prefixes == ["Git Status"]

    def test_merges_initial_and_file(self, tmp_path):
        path = tmp_path / "trusted.json"
        path.write_text(json.dumps(["npm test", "ls"]))
        store = TrustStore(path, initial=["ls", "make"])
        assert store.prefixes == ["ls", "make", "npm test"]

    def test_remove(self, tmp_path):
        path = tmp_path / "trusted.json"
        store = TrustStore(path, initial=["make"])
        assert store.remove("MAKE")
        assert not store.remove("make")
        assert json.loads(path.read_text()) == []

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "trusted.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="invalid JSON"):
            TrustStore(path)

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "trusted.json"
        path.write_text('{"a": 1}')
        with pytest.raises(ConfigError, match="array of strings"):
            TrustStore(path)

    def test_memory_only(self):
        store = TrustStore(initial=["ls"])
        assert store.add("pwd")
        assert store.is_trusted("pwd -P")

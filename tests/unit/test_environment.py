# ABOUTME: Unit tests for unit environment preparation
# ABOUTME: Tests .env.base/.env.<target> merging, TF_VAR_ exports and branch-to-environment mapping

import pytest

from metarun.environment import (
    env_from_git_branch,
    read_env_file,
    set_secrets_on_local,
    unit_env_values,
    with_tf_vars,
)


@pytest.mark.unit
class TestReadEnvFile:
    """Tests for read_env_file."""

    def test_missing_file(self, tmp_path):
        """Test that a missing file yields {}."""
        assert read_env_file(tmp_path / ".env") == {}

    def test_drops_valueless_keys(self, tmp_path):
        """Test that bare keys are dropped."""
        path = tmp_path / ".env"
        path.write_text("A=1\nBARE\nB=two words\n", encoding="utf-8")
        assert read_env_file(path) == {"A": "1", "B": "two words"}


@pytest.mark.unit
class TestWithTfVars:
    """Tests for TF_VAR_ duplication."""

    def test_adds_prefixed_copies(self):
        """Test every key gets a TF_VAR_ copy."""
        assert with_tf_vars({"A": "1"}) == {"A": "1", "TF_VAR_A": "1"}

    def test_explicit_tf_var_wins(self):
        """Test that an explicit TF_VAR_ value is not overwritten."""
        merged = with_tf_vars({"A": "1", "TF_VAR_A": "explicit"})
        assert merged["TF_VAR_A"] == "explicit"

    def test_no_double_prefix(self):
        """Test that prefixed keys are not prefixed again."""
        assert "TF_VAR_TF_VAR_X" not in with_tf_vars({"TF_VAR_X": "1"})


@pytest.mark.unit
class TestUnitEnvValues:
    """Tests for unit_env_values."""

    def test_merges_base_and_target(self, api_dir, src_tree):
        """Test base, target and descriptor defaults."""
        values = unit_env_values(api_dir, "local", src_tree, {"GCP_PROJECT_ID": "acme-123"})

        assert values["SHARED"] == "api"
        assert values["DB_HOST"] == "localhost"
        assert values["DB_PASSWORD"] == "secret"
        assert values["TF_VAR_DB_PASSWORD"] == "secret"
        assert values["TF_VAR_PROJECT"] == "acme"
        assert values["TF_VAR_APP"] == "api"
        assert values["PROJECT"] == "acme"
        assert values["APP"] == "api"
        assert values["TF_VAR_GCP_PROJECT_ID"] == "acme-123"
        assert values["PORT"] == "8080"
        assert values["TF_VAR_PORT"] == "8080"

    def test_target_overrides_base(self, api_dir, src_tree):
        """Test that .env.<target> wins over .env.base."""
        (api_dir / ".env.dev").write_text("SHARED=dev\n", encoding="utf-8")
        values = unit_env_values(api_dir, "dev", src_tree, {})
        assert values["SHARED"] == "dev"

    def test_missing_target_file(self, api_dir, src_tree):
        """Test that a missing target file means nothing to export."""
        assert unit_env_values(api_dir, "staging", src_tree, {}) is None

    def test_missing_base_file(self, api_dir, src_tree):
        """Test that a declared but missing base file means nothing to export."""
        (api_dir / ".env.base").unlink()
        assert unit_env_values(api_dir, "local", src_tree, {}) is None

    def test_project_from_src_env(self, api_dir, src_tree):
        """Test that SRC locates the project when no root is given."""
        values = unit_env_values(api_dir, "local", environ={"SRC": str(src_tree)})
        assert values["TF_VAR_PROJECT"] == "acme"

    def test_explicit_project_kept(self, api_dir, src_tree):
        """Test that a file-provided PROJECT is not replaced."""
        (api_dir / ".env.local").write_text("PROJECT=other\n", encoding="utf-8")
        values = unit_env_values(api_dir, "local", src_tree, {})
        assert values["TF_VAR_PROJECT"] == "other"
        assert values["PROJECT"] == "other"

    def test_plain_app_from_tf_var(self, api_dir, src_tree):
        """Test that APP follows a file-provided TF_VAR_APP."""
        (api_dir / ".env.local").write_text("TF_VAR_APP=renamed\n", encoding="utf-8")
        values = unit_env_values(api_dir, "local", src_tree, {})
        assert values["APP"] == "renamed"


@pytest.mark.unit
class TestSetSecretsOnLocal:
    """Tests for set_secrets_on_local."""

    def test_exports_into_environ(self, api_dir, src_tree):
        """Test that values override the given mapping."""
        environ = {"DB_PASSWORD": "old"}
        exported = set_secrets_on_local(api_dir, "local", environ, src_tree)

        assert environ["DB_PASSWORD"] == "secret"
        assert exported["TF_VAR_APP"] == "api"

    def test_nothing_to_load(self, src_tree):
        """Test that a unit without env files leaves the mapping alone."""
        environ: dict[str, str] = {}
        assert set_secrets_on_local(src_tree / "app" / "web", "local", environ, src_tree) == {}
        assert environ == {}


@pytest.mark.unit
class TestEnvFromGitBranch:
    """Tests for env_from_git_branch."""

    def test_outside_git(self, tmp_path, runner):
        """Test that no .git means no environment and no command."""
        assert env_from_git_branch(runner, tmp_path) is None
        assert runner.calls == []

    def test_main_is_prod(self, tmp_path, runner):
        """Test main -> prod."""
        (tmp_path / ".git").mkdir()
        runner.respond("git branch --show-current", stdout="main\n")
        assert env_from_git_branch(runner, tmp_path) == "prod"
        assert runner.calls[0].cwd == str(tmp_path)

    def test_other_branch_is_its_name(self, tmp_path, runner):
        """Test that other branches map to themselves."""
        (tmp_path / ".git").mkdir()
        runner.respond("git branch", stdout="dev")
        assert env_from_git_branch(runner, tmp_path) == "dev"

    def test_detached_head(self, tmp_path, runner):
        """Test that an empty branch name yields None."""
        (tmp_path / ".git").mkdir()
        runner.respond("git branch", stdout="")
        assert env_from_git_branch(runner, tmp_path) is None

    def test_git_failure(self, tmp_path, runner):
        """Test that a failing git command yields None."""
        (tmp_path / ".git").mkdir()
        runner.respond("git branch", returncode=128, stderr="fatal: not a git repository")
        assert env_from_git_branch(runner, tmp_path) is None

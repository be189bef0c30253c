# ABOUTME: Unit tests for vault commands
# ABOUTME: Tests KV namespaces, CREDS parsing for both engines, import/export and export --all

import json

import pytest

from metarun.commands import vault
from metarun.errors import ConfigurationError, OperationBlocked, RunError


def kv_payload(creds: str, v2: bool = True) -> str:
    data = {"CREDS": creds}
    return json.dumps({"data": {"data": data}} if v2 else {"data": data})


@pytest.mark.unit
class TestNamespace:
    """Tests for secret_namespace."""

    def test_environment(self, run_context):
        """Test the environment namespace."""
        assert vault.secret_namespace(run_context.descriptor(), "dev") == "apiid/dev"

    def test_explicit_target(self, run_context):
        """Test that an explicit target wins."""
        assert vault.secret_namespace(run_context.descriptor(), "dev", "local") == "apiid/local"

    def test_global_unit(self, run_context, src_tree):
        """Test that global units share one namespace."""
        descriptor = run_context.descriptor(src_tree / "infra" / "network")
        assert vault.secret_namespace(descriptor, "prod") == "netid/global"


@pytest.mark.unit
class TestKv:
    """Tests for kv_get and kv_put."""

    @pytest.mark.parametrize("v2", [True, False])
    def test_get_both_engines(self, run_context, runner, v2):
        """Test CREDS extraction from KV v1 and v2 payloads."""
        runner.respond("vault kv get", stdout=kv_payload("A=1\n", v2))
        assert vault.kv_get(run_context, "apiid/dev/secrets") == "A=1\n"
        assert runner.lines[-1] == "vault kv get -format=json kv/apiid/dev/secrets"

    def test_get_without_creds(self, run_context, runner):
        """Test that an entry without CREDS is an error."""
        runner.respond("vault kv get", stdout=json.dumps({"data": {"data": {"OTHER": "x"}}}))
        with pytest.raises(RunError, match="no CREDS field"):
            vault.kv_get(run_context, "apiid/dev/secrets")

    def test_get_dry_run(self, run_context):
        """Test that dry runs read nothing."""
        run_context.runner.dry_run = True
        assert vault.kv_get(run_context, "apiid/dev/secrets") == ""

    def test_put(self, run_context, runner):
        """Test the CREDS field and the kv/ mount."""
        vault.kv_put(run_context, "apiid/dev/secrets", "TOKEN=abc")
        assert runner.calls[0].argv == ["vault", "kv", "put", "kv/apiid/dev/secrets", "CREDS=TOKEN=abc"]


@pytest.mark.unit
class TestImportExport:
    """Tests for import_env and export_env."""

    def test_import_local(self, run_context, runner):
        """Test that .env.local goes to the local namespace."""
        path = vault.import_env(run_context)

        assert path == "apiid/local/secrets"
        assert runner.calls[0].argv[-1] == "CREDS=DB_PASSWORD=secret\n"

    def test_import_missing_file(self, run_context):
        """Test that a missing env file is reported."""
        with pytest.raises(ConfigurationError, match=r"\.env\.staging"):
            vault.import_env(run_context, "staging")

    def test_export_with_backup(self, run_context, runner, api_dir):
        """Test that an existing .env is backed up before writing."""
        (api_dir / ".env").write_text("OLD=1\n", encoding="utf-8")
        runner.respond("vault kv get", stdout=kv_payload("NEW=1\n"))

        destination = vault.export_env(run_context)

        assert destination == api_dir / ".env"
        assert destination.read_text(encoding="utf-8") == "NEW=1\n"
        assert (api_dir / ".env.backup").read_text(encoding="utf-8") == "OLD=1\n"
        assert runner.lines[-1].endswith("kv/apiid/dev/secrets")

    def test_export_declined(self, run_context, runner, prompt):
        """Test that declining the overwrite reads nothing."""
        prompt.return_value = False
        with pytest.raises(OperationBlocked):
            vault.export_env(run_context)
        assert runner.calls == []

    def test_export_dry_run_writes_nothing(self, run_context, api_dir):
        """Test that dry runs leave the filesystem alone."""
        run_context.runner.dry_run = True
        vault.export_env(run_context)
        assert not (api_dir / ".env").exists()

    def test_export_all(self, run_context, runner, src_tree):
        """Test every unit declaring secrets, project root last."""
        runner.respond("vault kv get", stdout=kv_payload("X=1\n"))

        written = vault.export_all(run_context)

        assert written == [src_tree / "app" / "api" / ".env", src_tree / ".env"]
        assert [line.split()[-1] for line in runner.lines] == ["kv/apiid/dev/secrets", "kv/rootid/dev/secrets"]
        assert (src_tree / ".env.backup").read_text(encoding="utf-8").startswith("ROOT_SECRET=root")

    def test_export_all_skips_ignored_environment(self, run_context, runner, make_unit, src_tree):
        """Test that vault.ignoreEnv excludes a unit for the current environment."""
        make_unit(
            src_tree / "app" / "batch",
            {"id": "batchid", "name": "batch", "secrets": True, "vault": {"ignoreEnv": ["dev"]}},
        )
        runner.respond("vault kv get", stdout=kv_payload("X=1\n"))

        written = vault.export_all(run_context)

        assert src_tree / "app" / "batch" / ".env" not in written
        assert not any("batchid" in line for line in runner.lines)


@pytest.mark.unit
class TestCertificates:
    """Tests for certificate storage."""

    def test_round_trip_paths(self, run_context, runner):
        """Test the certificats namespace."""
        runner.respond("vault kv get", stdout=kv_payload('{"kind": "Secret"}'))

        assert vault.certificates_to_vault(run_context, '{"kind": "Secret"}') == "apiid/dev/certificats"
        assert vault.certificates_from_vault(run_context) == '{"kind": "Secret"}'

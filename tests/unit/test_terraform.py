# ABOUTME: Unit tests for terraform commands
# ABOUTME: Tests backend prefixes, digests as TF_VARs, guarded operations, variables.tf and apply-all ordering

import json

import httpx
import pytest
import respx
from pydantic import SecretStr

from metarun.batch import BatchPolicy
from metarun.commands import terraform
from metarun.errors import ConfigurationError, DescriptorError, OperationBlocked
from metarun.utils.storage import STORAGE_URL

MANIFEST = json.dumps([{"Descriptor": {"digest": "sha256:abc", "platform": {"architecture": "amd64"}}}])


@pytest.fixture
def with_manifest(runner):
    runner.respond("docker manifest inspect", stdout=MANIFEST)
    return runner


@pytest.mark.unit
class TestResolution:
    """Tests for component selection and backend configuration."""

    def test_single_component_selected(self, run_context):
        """Test that a lone component is used without naming it."""
        name, spec = terraform.select_component(run_context.descriptor(), None)
        assert name == "core"
        assert spec.path == "infra"

    def test_default_required_with_several(self, run_context, make_unit, tmp_path):
        """Test that several components require a name or 'default'."""
        unit = make_unit(tmp_path / "u", {"terraform": {"a": {}, "b": {}}})
        with pytest.raises(DescriptorError, match="'default' not found"):
            terraform.select_component(run_context.at(unit).descriptor(), None)

    @pytest.mark.parametrize(
        ("is_global", "expected"),
        [(False, "apiid/dev/terraform/core"), (True, "apiid/global/terraform/core")],
    )
    def test_state_prefix(self, is_global, expected):
        """Test environment and global prefixes."""
        assert terraform.state_prefix("apiid", "dev", "core", is_global) == expected

    def test_backend_args(self, run_context):
        """Test -backend-config arguments."""
        descriptor = run_context.descriptor()
        name, spec = terraform.select_component(descriptor, None)
        assert terraform.backend_args(run_context, descriptor, name, spec) == [
            "-backend-config=bucket=tf-state",
            "-backend-config=prefix=apiid/dev/terraform/core",
        ]

    def test_bucket_required(self, run_context):
        """Test that a missing bucket is a configuration error."""
        run_context.settings = run_context.settings.model_copy(update={"terraform_bucket_name": None})
        descriptor = run_context.descriptor()
        name, spec = terraform.select_component(descriptor, None)
        with pytest.raises(ConfigurationError):
            terraform.backend_args(run_context, descriptor, name, spec)

    def test_id_required(self, run_context, make_unit, tmp_path):
        """Test that a descriptor without id fails before init."""
        unit = make_unit(tmp_path / "u", {"terraform": {"default": {}}})
        with pytest.raises(DescriptorError, match="'id'"):
            terraform.plan(run_context.at(unit))

    def test_image_digests_with_modifier(self, run_context, runner):
        """Test TF_VAR names and <container>:<tag> modifiers."""
        runner.respond("docker manifest inspect gcr.io/acme/api:dev-beta-amd64", stdout=MANIFEST)

        variables = terraform.image_digests(run_context, ["default"], "amd64", ["default:beta"])

        assert variables == {"TF_VAR_IMAGE_DIGEST_DEFAULT": "gcr.io/acme/api@sha256:abc"}


@pytest.mark.unit
class TestOperations:
    """Tests for apply, destroy and friends."""

    def test_apply(self, run_context, with_manifest, api_dir):
        """Test init/plan/apply in the component directory with digests."""
        terraform.apply(run_context, env={"TF_VAR_APP": "api"})

        workdir = str(api_dir / "infra")
        tf_calls = [c for c in with_manifest.calls if c.argv[0] == "terraform"]
        assert [c.line for c in tf_calls] == [
            "terraform init -backend-config=bucket=tf-state -backend-config=prefix=apiid/dev/terraform/core --lock=false",
            "terraform plan",
            "terraform apply -auto-approve",
        ]
        assert all(c.cwd == workdir for c in tf_calls)
        assert tf_calls[-1].env == {
            "TF_VAR_APP": "api",
            "TF_VAR_IMAGE_DIGEST_DEFAULT": "gcr.io/acme/api@sha256:abc",
        }

    def test_apply_in_protected_environment_prompts(self, run_context, with_manifest, prompt):
        """Test that applying to prod asks first."""
        run_context.guard.environment = "prod"
        terraform.apply(run_context)
        prompt.assert_called_once()

    def test_apply_clean_removes_dot_terraform(self, run_context, with_manifest, api_dir):
        """Test --clean."""
        (api_dir / "infra" / ".terraform").mkdir()
        terraform.apply(run_context, clean=True)
        assert not (api_dir / "infra" / ".terraform").exists()

    def test_missing_component_directory(self, run_context, make_unit, tmp_path):
        """Test that a terraform path that does not exist fails early."""
        unit = make_unit(tmp_path / "u", {"id": "x", "terraform": {"default": {"path": "nope"}}})
        with pytest.raises(DescriptorError, match="not a directory"):
            terraform.plan(run_context.at(unit))

    def test_destroy(self, run_context, runner, prompt):
        """Test confirmation and empty digests on destroy."""
        terraform.destroy(run_context)

        assert "terraform_destroy" in prompt.call_args[0][0]
        assert "state: apiid/dev/terraform/core" in prompt.call_args[0][0]
        assert runner.lines[-2:] == ["terraform plan -destroy", "terraform destroy -auto-approve"]
        assert runner.calls[-1].env == {"TF_VAR_IMAGE_DIGEST_DEFAULT": ""}

    def test_destroy_declined(self, run_context, runner, prompt):
        """Test that declining runs nothing."""
        prompt.return_value = False
        with pytest.raises(OperationBlocked):
            terraform.destroy(run_context)
        assert runner.calls == []

    def test_output(self, run_context, runner):
        """Test parsed outputs."""
        runner.respond("terraform output -json", stdout='{"url": {"value": "https://api"}}')
        assert terraform.output(run_context) == {"url": {"value": "https://api"}}

    def test_state_pull(self, run_context, runner):
        """Test that pull returns the state."""
        runner.respond("terraform state pull", stdout='{"version": 4}')
        assert terraform.state(run_context, "pull", []) == '{"version": 4}'

    def test_state_push_guarded(self, run_context, runner, prompt):
        """Test that push asks for confirmation."""
        terraform.state(run_context, "push", ["backup.tfstate"])
        assert "state_push" in prompt.call_args[0][0]
        assert runner.lines[-1] == "terraform state push backup.tfstate"

    def test_state_mv(self, run_context, runner, prompt):
        """Test that mv is not guarded."""
        terraform.state(run_context, "mv", ["a.b", "a.c"])
        prompt.assert_not_called()
        assert runner.lines[-1] == "terraform state mv a.b a.c"

    def test_import(self, run_context, runner):
        """Test terraform import."""
        terraform.import_resource(run_context, "google_project.p", "acme")
        assert runner.lines[-1] == "terraform import google_project.p acme"

    def test_clean(self, run_context, api_dir):
        """Test cleaning every component."""
        (api_dir / "infra" / ".terraform").mkdir()
        assert terraform.clean(run_context) == ["core"]
        assert terraform.clean(run_context) == []

    def test_clean_dry_run_keeps(self, run_context, api_dir):
        """Test that dry runs do not delete anything."""
        (api_dir / "infra" / ".terraform").mkdir()
        run_context.runner.dry_run = True
        assert terraform.clean(run_context) == []
        assert (api_dir / "infra" / ".terraform").exists()


@pytest.mark.unit
class TestUnlock:
    """Tests for unlock."""

    @respx.mock
    def test_deletes_lock(self, run_context, prompt):
        """Test that the component lock is deleted from the bucket."""
        run_context.settings = run_context.settings.model_copy(update={"gcp_access_token": SecretStr("tok")})
        route = respx.delete(
            f"{STORAGE_URL}/storage/v1/b/tf-state/o/apiid%2Fdev%2Fterraform%2Fcore%2Fdefault.tflock"
        ).mock(return_value=httpx.Response(204))

        assert terraform.unlock(run_context) is True
        assert route.called
        assert "terraform_unlock" in prompt.call_args[0][0]

    @respx.mock
    def test_other_environment(self, run_context):
        """Test unlocking another environment's state."""
        run_context.settings = run_context.settings.model_copy(update={"gcp_access_token": SecretStr("tok")})
        respx.delete(
            f"{STORAGE_URL}/storage/v1/b/tf-state/o/apiid%2Fprod%2Fterraform%2Fcore%2Fdefault.tflock"
        ).mock(return_value=httpx.Response(404, json={"error": {"message": "Not Found"}}))

        assert terraform.unlock(run_context, environment="prod") is False


@pytest.mark.unit
class TestVariables:
    """Tests for variables.tf generation."""

    def test_render(self):
        """Test variable declarations and the env_vars local, PORT excluded."""
        text = terraform.render_variables_tf(["APP", "PORT"])

        assert 'variable "APP" {}' in text
        assert 'variable "PORT" {}' in text
        assert "value = var.APP" in text
        assert "var.PORT" not in text
        assert "locals {" in text

    def test_generate(self, run_context, api_dir):
        """Test variables.tf from .env.base and .env.local."""
        path = terraform.generate_variables(run_context)

        assert path == api_dir / "infra" / "variables.tf"
        text = path.read_text(encoding="utf-8")
        for name in ("APP", "DB_HOST", "DB_PASSWORD", "IMAGE_DIGEST_DEFAULT", "PORT", "PROJECT", "SHARED"):
            assert f'variable "{name}" {{}}' in text


@pytest.mark.unit
class TestApplyAll:
    """Tests for discovery and priority-ordered apply-all."""

    def test_discover_units(self, src_tree):
        """Test one unit per component with its priority."""
        units = terraform.discover_units(src_tree)
        assert [(u.name, u.priority, u.payload) for u in units] == [
            ("api:core", 2, "core"),
            ("web:core", 1, "core"),
            ("network:default", None, "default"),
        ]

    def test_priority_order(self, run_context, with_manifest, src_tree):
        """Test that components apply by ascending priority, unprioritized last."""
        result = terraform.apply_all(run_context)

        applies = [c.cwd for c in with_manifest.calls if c.line == "terraform apply -auto-approve"]
        assert applies == [
            str(src_tree / "app" / "web" / "infra"),
            str(src_tree / "app" / "api" / "infra"),
            str(src_tree / "infra" / "network"),
        ]
        assert result.ok
        assert [u.name for u in result.succeeded] == ["web:core", "api:core", "network:default"]

    def test_unit_env_passed(self, run_context, with_manifest, src_tree):
        """Test that each unit gets its own env file values."""
        terraform.apply_all(run_context)

        api_apply = next(
            c
            for c in with_manifest.calls
            if c.line == "terraform apply -auto-approve" and c.cwd.endswith("/app/api/infra")
        )
        assert api_apply.env["TF_VAR_DB_PASSWORD"] == "secret"

    def test_global_component_prefix(self, run_context, runner, make_unit, tmp_path):
        """Test that a component marked global uses the global state prefix."""
        unit = make_unit(tmp_path / "dns", {"id": "dnsid", "terraform": {"default": {"global": True}}})
        terraform.plan(run_context.at(unit))
        assert "-backend-config=prefix=dnsid/global/terraform/default" in runner.calls[0].argv

    def test_unit_scope_does_not_change_prefix(self, run_context, with_manifest):
        """Test that only the component flag selects the global prefix."""
        terraform.apply_all(run_context)
        assert any("prefix=netid/dev/terraform/default" in line for line in with_manifest.lines)

    def test_fail_fast(self, run_context, with_manifest):
        """Test that a failing group stops later groups."""
        with_manifest.respond("terraform plan", returncode=1, stderr="Error: boom")

        result = terraform.apply_all(run_context, policy=BatchPolicy.FAIL_FAST)

        assert [f.unit.name for f in result.failed] == ["web:core"]
        assert [u.name for u in result.skipped] == ["api:core", "network:default"]

    def test_collect(self, run_context, with_manifest):
        """Test that collect reports every failure."""
        with_manifest.respond("terraform plan", returncode=1, stderr="Error: boom")

        result = terraform.apply_all(run_context)

        assert len(result.failed) == 3
        assert "Error: boom" in result.summary()

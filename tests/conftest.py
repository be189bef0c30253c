# ABOUTME: Pytest fixtures and configuration for metarun tests
# ABOUTME: Provides a meta.json source tree, settings, a recording runner and a ready RunContext

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from rich.console import Console

from metarun.config import RunSettings, SafetySettings
from metarun.context import RunContext
from metarun.errors import CommandError
from metarun.utils.logging import AuditLogger
from metarun.utils.safety import SafetyGuard
from metarun.utils.shell import CommandResult, ShellRunner


def write_meta(directory: Path, data: dict[str, Any]) -> Path:
    """Create a directory holding a meta.json."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "meta.json").write_text(json.dumps(data), encoding="utf-8")
    return directory


@dataclass
class Call:
    """One command seen by RecordingRunner."""

    argv: list[str]
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    input: str | None = None

    @property
    def line(self) -> str:
        return " ".join(self.argv)


class RecordingRunner(ShellRunner):
    """
    ShellRunner that records commands instead of executing them.

    Canned answers are registered by command-line prefix:

        runner.respond("git branch", stdout="main")
        runner.respond("kubectl delete secret", returncode=1, stderr="NotFound")
    """

    def __init__(self, dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.calls: list[Call] = []
        self._responses: list[tuple[str, str, int, str]] = []

    def respond(self, prefix: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self._responses.insert(0, (prefix, stdout, returncode, stderr))

    def run(
        self,
        args: Any,
        cwd: Any,
        *,
        env: Any = None,
        capture: bool = False,
        input: str | None = None,  # noqa: A002
        check: bool = True,
        redact: Any = (),
    ) -> CommandResult:
        argv = [str(a) for a in args]
        workdir = os.fspath(cwd)
        self.calls.append(Call(argv, workdir, dict(env or {}), input))
        if self.dry_run:
            return CommandResult(argv, workdir, 0)

        line = " ".join(argv)
        stdout, returncode, stderr = "", 0, ""
        for prefix, out, code, err in self._responses:
            if line.startswith(prefix):
                stdout, returncode, stderr = out, code, err
                break
        if check and returncode != 0:
            raise CommandError(argv, workdir, returncode, stderr, stdout)
        return CommandResult(argv, workdir, returncode, stdout, stderr)

    @property
    def lines(self) -> list[str]:
        return [call.line for call in self.calls]

    def find(self, prefix: str) -> Call:
        for call in self.calls:
            if call.line.startswith(prefix):
                return call
        raise AssertionError(f"no command starting with {prefix!r} in {self.lines}")


# =============================================================================
# SOURCE TREE
# =============================================================================


@pytest.fixture
def make_unit():
    """Factory writing a meta.json into a (new) directory."""
    return write_meta


@pytest.fixture
def src_tree(tmp_path: Path) -> Path:
    """
    A small project:

        src/                 project, secrets (.env)
        ├── app/
        │   ├── api/         app: docker, terraform core (priority 2), cluster tls
        │   │   ├── container/
        │   │   ├── infra/
        │   │   └── scripts/
        │   ├── empty/       no meta.json
        │   └── web/         app: terraform core (priority 1), cluster tls false
        ├── infra/
        │   └── network/     component, global scope, terraform default
        └── node_modules/
            └── pkg/         ignored by discovery
    """
    src = tmp_path / "src"
    write_meta(src, {"id": "rootid", "name": "acme", "type": "project", "secrets": True})
    (src / ".env").write_text("ROOT_SECRET=root\nSHARED=root\n", encoding="utf-8")

    api = write_meta(
        src / "app" / "api",
        {
            "id": "apiid",
            "name": "api",
            "type": "app",
            "port": 8080,
            "docker": {"default": {"root": "container", "image": "gcr.io/acme/api"}},
            "terraform": {"core": {"path": "infra", "containers": ["default"], "priority": 2}},
            "cluster": {"app": "api", "tls": True, "priority": 1},
            "secrets": {"base": ".env.base"},
        },
    )
    for sub in ("container", "infra", "scripts"):
        (api / sub).mkdir()
    (api / ".env.base").write_text("SHARED=api\nDB_HOST=localhost\n", encoding="utf-8")
    (api / ".env.local").write_text("DB_PASSWORD=secret\n", encoding="utf-8")

    (src / "app" / "empty").mkdir(parents=True)

    write_meta(
        src / "app" / "web",
        {
            "id": "webid",
            "name": "web",
            "type": "app",
            "terraform": {"core": {"path": "infra", "priority": 1}},
            "cluster": {"app": "web", "tls": False},
        },
    )
    (src / "app" / "web" / "infra").mkdir()

    write_meta(
        src / "infra" / "network",
        {
            "id": "netid",
            "name": "network",
            "type": "component",
            "scope": "global",
            "terraform": {"default": {"path": "."}},
        },
    )

    write_meta(src / "node_modules" / "pkg", {"name": "ignored", "terraform": {"default": {}}})
    return src


@pytest.fixture
def api_dir(src_tree: Path) -> Path:
    return src_tree / "app" / "api"


# =============================================================================
# SETTINGS AND CONTEXT
# =============================================================================


@pytest.fixture
def safety_settings() -> SafetySettings:
    """Create safety settings for testing."""
    return SafetySettings(
        assume_yes=False,
        protected_environments=["prod"],
        audit_log=None,
        dry_run=False,
    )


@pytest.fixture
def settings(src_tree: Path, safety_settings: SafetySettings) -> RunSettings:
    """Settings pointing at the test source tree, environment dev."""
    return RunSettings(
        src=src_tree,
        environment="dev",
        terraform_bucket_name="tf-state",
        cluster_project="acme-infra",
        gcp_project_name="acme",
        safety=safety_settings,
    )


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def prompt() -> MagicMock:
    """Confirmation prompt that always accepts."""
    return MagicMock(return_value=True)


@pytest.fixture
def run_context(
    settings: RunSettings,
    runner: RecordingRunner,
    prompt: MagicMock,
    api_dir: Path,
) -> RunContext:
    """RunContext acting on app/api with an isolated environment mapping."""
    audit = AuditLogger()
    return RunContext(
        settings=settings,
        runner=runner,
        guard=SafetyGuard(settings.safety, settings.environment, audit, prompt),
        audit=audit,
        cwd=api_dir,
        target="local",
        environ={"SRC": str(settings.src)},
        console=Console(width=120, force_terminal=False),
    )


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# =============================================================================
# LOGGING
# =============================================================================


@pytest.fixture(autouse=True)
def uncached_logging(monkeypatch):
    """
    Keep structlog configuration from leaking between tests.

    configure_logging binds its logger factory to the sys.stderr of the
    moment, which pytest and CliRunner close afterwards. Loggers are never
    cached during tests and defaults are restored after each one.
    """
    configure = structlog.configure

    def configure_uncached(*args: Any, **kwargs: Any) -> None:
        kwargs["cache_logger_on_first_use"] = False
        configure(*args, **kwargs)

    monkeypatch.setattr(structlog, "configure", configure_uncached)
    yield
    structlog.reset_defaults()

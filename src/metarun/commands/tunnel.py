# ABOUTME: Cloudflare tunnel to local services declared in meta.json
# ABOUTME: Routes DNS for each hostname, writes the cloudflared ingress config with PyYAML, then runs the tunnel

"""cloudflared tunnel wrapper."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
import yaml

from metarun.context import get_context
from metarun.errors import ConfigurationError
from metarun.meta import find_directories_matching

if TYPE_CHECKING:
    from metarun.context import RunContext
    from metarun.descriptor import TunnelRoute

FALLBACK_SERVICE = "http_status:404"


def default_config_path() -> Path:
    return Path.home() / ".cloudflared" / "config.yaml"


def collect_routes(run: RunContext, all_units: bool = False) -> list[TunnelRoute]:
    if not all_units:
        return list(run.descriptor().require("tunnel").values())
    routes: list[TunnelRoute] = []
    for match in find_directories_matching("tunnel", root_path=run.src):
        routes.extend((match.typed().tunnel or {}).values())
    return routes


def render_config(tunnel_name: str, routes: list[TunnelRoute]) -> dict[str, Any]:
    """cloudflared config: one ingress rule per route, then a 404 catch-all."""
    ingress: list[dict[str, Any]] = [
        {"hostname": route.hostname, "service": route.service} for route in routes
    ]
    ingress.append({"service": FALLBACK_SERVICE})
    return {"tunnel": tunnel_name, "ingress": ingress}


def run_tunnel(
    run: RunContext,
    all_units: bool = False,
    tunnel_name: str | None = None,
    config_path: Path | None = None,
) -> Path:
    """Route DNS, write the config, and run cloudflared in the foreground."""
    settings = run.settings
    name = tunnel_name or settings.cloudflared_tunnel_name
    if not name:
        raise ConfigurationError("CLOUDFLARED_TUNNEL_NAME is not set (or pass --tunnel)")
    token = settings.cloudflared_tunnel_token.get_secret_value()

    routes = collect_routes(run, all_units)
    for route in routes:
        run.runner.run(["cloudflared", "tunnel", "route", "dns", name, route.hostname], run.cwd)

    path = config_path or default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(render_config(name, routes), sort_keys=False), encoding="utf-8")

    argv = ["cloudflared", "tunnel", "--config", str(path), "--protocol", "http2", "run"]
    if token:
        argv += ["--token", token]
    argv.append(name)
    run.runner.run(argv, run.cwd, redact=[token] if token else ())
    return path


app = typer.Typer(no_args_is_help=True, help="Cloudflare tunnels to local services")


@app.command("run")
def run_command(
    ctx: typer.Context,
    all_units: Annotated[bool, typer.Option("--all", help="Every unit declaring a tunnel")] = False,
    tunnel: Annotated[str | None, typer.Option("--tunnel", help="Tunnel name")] = None,
    config: Annotated[Path | None, typer.Option("--config", help="cloudflared config file to write")] = None,
) -> None:
    """Expose local services through a cloudflared tunnel."""
    run_tunnel(get_context(ctx), all_units, tunnel, config)

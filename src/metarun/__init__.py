# ABOUTME: metarun package initialization
# ABOUTME: Exposes version information for the `run` workflow wrapper

"""
metarun - the `run` command, driven by per-directory meta.json descriptors.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

`run` is a thin orchestration layer over the CLIs a platform team uses every
day: docker, terraform, kubectl, hasura, vault, gh/act, cloudflared, gcloud,
skaffold and vercel. It does not reimplement any of them. Instead it:

1. FINDS the directory you are working in (and the project it belongs to)
2. READS that directory's meta.json descriptor
3. COMPUTES the names, tags, paths and backend prefixes the tool needs
4. RUNS the external binary in that directory and forwards its output

=============================================================================
THE DESCRIPTOR CONVENTION
=============================================================================

Every deployable unit (an app, a container, a terraform component, a cluster
pod) carries a meta.json next to its sources:

    {
        "id": "a1b2c3d4e5f6",
        "name": "api",
        "type": "app",
        "docker": {"default": {"root": "container", "image": "gcr.io/p/api"}},
        "terraform": {"core": {"path": "infra", "containers": ["default"]}}
    }

A directory without meta.json is perfectly normal. Discovery walks the tree,
skips such directories, and collects the ones that match.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

metarun/
├── __init__.py          <- Package entry point
├── cli.py               <- typer application (the `run` console script)
├── config.py            <- Settings from environment (pydantic-settings)
├── context.py           <- RunContext handed to every command
├── errors.py            <- Exception hierarchy
├── descriptor.py        <- Typed meta.json models
├── meta.py              <- Discovery core: resolver, walker, matcher, climber
├── batch.py             <- Priority-grouped sequential batches
├── environment.py       <- .env merging and TF_VAR_ exports
├── server.py            <- Read-only MCP discovery server
├── commands/            <- One module per wrapped tool
└── utils/
    ├── logging.py       <- Structured logging with audit trail
    ├── safety.py        <- Confirmation guard for destructive operations
    ├── shell.py         <- External process runner with explicit cwd
    └── storage.py       <- Cloud Storage JSON API client
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

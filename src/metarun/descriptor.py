# ABOUTME: Typed models for meta.json descriptors
# ABOUTME: Validates type/scope tags at load time and gives every sub-object explicit defaults

"""
meta.json descriptor models.

=============================================================================
WHAT IS A DESCRIPTOR?
=============================================================================

A descriptor is the parsed meta.json of one directory. The top level says
what the unit is (id, name, type, scope); sub-objects keyed by subsystem say
how each tool should treat it:

    {
        "id": "k3j4h5g6f7d8",
        "name": "api",
        "type": "app",
        "scope": "global",
        "docker": {"default": {"root": "container", "image": "gcr.io/p/api"}},
        "terraform": {"core": {"path": "infra", "containers": ["default"]}},
        "cluster": {"app": "api", "namespace": "core", "priority": 2},
        "secrets": {"base": ".env.base"}
    }

=============================================================================
VALIDATION STRATEGY
=============================================================================

1. CLOSED TAGS: `type` and `scope` are enums. A typo such as "contaienr"
   fails when the file is loaded instead of silently falling through every
   `if type == ...` branch.

2. OPTIONAL SUB-OBJECTS WITH DEFAULTS: a descriptor with no `hasura` block
   is fine until someone runs a hasura command. Defaults observed in the
   field are encoded here (hasura.state = "app/state", compose filename
   "compose.yaml", custom_script.root = "scripts").

3. FAIL FAST ON USE: commands call `require(...)`, which raises
   DescriptorError naming the directory and the missing field before any
   external command line is assembled.

4. LEGACY SHAPES: older descriptors used a flat `docker{root,image}` and a
   boolean `global`. Both are normalized on load.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from metarun.errors import DescriptorError

SCHEMA_VERSION = 1

# =============================================================================
# CLOSED TAGS
# =============================================================================


class UnitType(str, Enum):
    """What kind of unit a directory holds."""

    PROJECT = "project"
    APP = "app"
    CONFIG = "config"
    CONTAINER = "container"
    CLUSTER = "cluster"
    CLUSTER_CORE = "cluster_core"
    CLUSTER_APP = "cluster_app"
    COMPONENT = "component"
    DB = "db"
    POD = "pod"
    GROUP = "group"
    RDS = "rds"
    PGADMIN = "pgadmin"
    VAULT = "vault"


class Scope(str, Enum):
    """Whether a unit's remote state is shared across environments."""

    GLOBAL = "global"
    ENVIRONMENT = "environment"


# =============================================================================
# SUB-OBJECTS
# =============================================================================


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class DockerComponent(_Section):
    root: str = "."
    image: str | None = None
    env_based: bool = True
    context_dir: str | None = None
    tag_modifiers: list[str] = Field(default_factory=list)


class TerraformComponent(_Section):
    path: str = "."
    global_: bool = Field(default=False, alias="global")
    containers: list[str] = Field(default_factory=list)
    priority: int | None = None

    @model_validator(mode="before")
    @classmethod
    def root_is_path(cls, data: Any) -> Any:
        # Older descriptors named the directory "root".
        if isinstance(data, dict) and "path" not in data and "root" in data:
            data = {**data, "path": data["root"]}
        return data


class ClusterConfig(_Section):
    app: str | None = None
    namespace: str | None = None
    tls: bool = False
    priority: int | None = None
    ignore_env: list[str] = Field(default_factory=list, alias="ignoreEnv")


class HasuraConfig(_Section):
    state: str = "app/state"


class VaultConfig(_Section):
    ignore_env: list[str] = Field(default_factory=list, alias="ignoreEnv")


class ComposeComponent(_Section):
    root: str = "."
    filename: str = "compose.yaml"
    use_project_env: bool = True


class TunnelRoute(_Section):
    hostname: str
    service: str


class SecretsConfig(_Section):
    base: bool | str | None = None


class CustomScriptConfig(_Section):
    root: str = "scripts"


class SkaffoldConfig(_Section):
    group: list[str] = Field(default_factory=list)


def _as_components(value: Any, flat_keys: set[str]) -> Any:
    """Wrap a legacy flat section into {"default": section}."""
    if isinstance(value, dict) and value and flat_keys & set(value):
        if not all(isinstance(v, dict) for v in value.values()):
            return {"default": value}
    return value


# =============================================================================
# DESCRIPTOR
# =============================================================================


class Descriptor(BaseModel):
    """
    Validated meta.json.

    `directory` is not part of the file; it is attached by the loader so
    error messages can say where the descriptor lives.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    schema_version: int = SCHEMA_VERSION
    id: str | None = None
    name: str | None = None
    type: UnitType | None = None
    scope: Scope = Scope.ENVIRONMENT

    docker: dict[str, DockerComponent] | None = None
    terraform: dict[str, TerraformComponent] | None = None
    cluster: ClusterConfig | None = None
    hasura: HasuraConfig | None = None
    vault: VaultConfig | None = None
    compose: dict[str, ComposeComponent] | None = None
    tunnel: dict[str, TunnelRoute] | None = None
    secrets: SecretsConfig | None = None
    custom_script: CustomScriptConfig | None = None
    skaffold: SkaffoldConfig | None = None
    mcp: dict[str, Any] | None = None

    directory: str = Field(default="", exclude=True)

    @model_validator(mode="before")
    @classmethod
    def normalize_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.pop("global", False) is True and "scope" not in data:
            data["scope"] = Scope.GLOBAL.value
        if "docker" in data:
            data["docker"] = _as_components(data["docker"], {"root", "image", "tag"})
        if "terraform" in data:
            data["terraform"] = _as_components(data["terraform"], {"root", "path", "containers"})
        if "compose" in data:
            data["compose"] = _as_components(data["compose"], {"root", "filename"})
        if "tunnel" in data:
            data["tunnel"] = _as_components(data["tunnel"], {"hostname", "service"})
        if isinstance(data.get("secrets"), bool):
            data["secrets"] = {"base": data["secrets"]} if data["secrets"] else None
        return data

    @property
    def is_global(self) -> bool:
        return self.scope is Scope.GLOBAL

    def require(self, field: str) -> Any:
        """
        Return a top-level field, failing fast when it is absent.

        Raises:
            DescriptorError: If the field is missing or empty.
        """
        value = getattr(self, field, None)
        if value is None or value == {} or value == "":
            raise DescriptorError(self.directory, f"missing required field '{field}'")
        return value

    def component(self, section: str, name: str | None = None) -> Any:
        """
        Return a named component of a multi-component section.

        Args:
            section: "docker", "terraform", "compose" or "tunnel"
            name: Component name, "default" when omitted

        Raises:
            DescriptorError: If the section or component does not exist.
        """
        components = self.require(section)
        key = name or "default"
        if key not in components:
            available = ", ".join(sorted(components)) or "none"
            raise DescriptorError(
                self.directory,
                f"{section} component '{key}' not found (available: {available})",
            )
        return components[key]


# =============================================================================
# INTERPOLATION
# =============================================================================

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def _lookup(data: Any, dotted: str) -> Any:
    current = data
    for segment in dotted.split("."):
        if not isinstance(current, dict) or current.get(segment) is None:
            return None
        current = current[segment]
    return current


def interpolate(raw: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Substitute placeholders in every string value of a raw descriptor.

    `${VAR}` reads the environment; `${this.a.b}` reads the descriptor
    itself. Placeholders that do not resolve are left untouched.
    """
    env = os.environ if environ is None else environ

    def replace(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key.startswith("this."):
            value = _lookup(raw, key[len("this.") :])
        else:
            value = env.get(key)
        if value is None or isinstance(value, (dict, list)):
            return match.group(0)
        return str(value)

    def walk(node: Any) -> Any:
        if isinstance(node, str):
            return _PLACEHOLDER.sub(replace, node)
        if isinstance(node, dict):
            return {k: walk(v) for k, v in node.items()}
        if isinstance(node, list):
            return [walk(v) for v in node]
        return node

    return walk(raw)


def parse_descriptor(raw: dict[str, Any], directory: str) -> Descriptor:
    """
    Validate a raw meta.json mapping.

    Raises:
        DescriptorError: With every validation problem listed, e.g. an unknown
            `type` tag.
    """
    try:
        descriptor = Descriptor.model_validate(raw)
    except ValidationError as err:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}" for e in err.errors()
        )
        raise DescriptorError(directory, f"invalid descriptor ({problems})") from err
    descriptor.directory = directory
    return descriptor

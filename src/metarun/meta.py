# ABOUTME: Discovery core: project root resolution, meta.json access, directory walking and matching
# ABOUTME: Also climbs ancestor directories to load opted-in .env files up to the project boundary

"""
Meta discovery.

=============================================================================
THE FIVE PRIMITIVES
=============================================================================

Every feature command is built on these, leaves first:

1. resolve_project_root(current_dir)
       "/src/api/scripts" -> "/src/api". Scripts live in a `scripts`
       folder next to meta.json; running from there targets the unit.

2. read_meta(dir) / load_descriptor(dir)
       The parsed meta.json, or None when the directory has none. None is
       the common case while walking a tree and is never logged as a failure.

3. list_subdirectories(dir) / walk_all_subdirectories(dir)
       Child directories minus dependency caches and VCS metadata, then the
       same applied recursively, depth-first, parent before children.

4. find_directories_matching(property, value, root_path)
       Every directory under a root whose descriptor has a (dotted) property
       that is truthy, or equal to a requested value.

5. load_secrets_up_chain(start_dir)
       Walk upward from a unit to its enclosing project, loading the .env of
       every level whose descriptor declares `secrets`.

=============================================================================
RAW VERSUS TYPED
=============================================================================

The matcher works on the raw dict so any field, including ones the typed
model does not know about, can be addressed by a dotted path. Commands use
the typed Descriptor (see descriptor.py) so missing fields fail early.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from dotenv import dotenv_values

from metarun.descriptor import Descriptor, UnitType, interpolate, parse_descriptor

if TYPE_CHECKING:
    from collections.abc import Iterable, MutableMapping

logger = structlog.get_logger(__name__)

META_FILENAME = "meta.json"

IGNORED_DIRECTORIES = frozenset({"node_modules", ".git", ".terraform", "migrations"})


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass
class MetaMatch:
    """A directory whose descriptor matched, with the raw descriptor."""

    directory: str
    descriptor: dict[str, Any]

    def typed(self) -> Descriptor:
        return parse_descriptor(self.descriptor, self.directory)


# =============================================================================
# PATH RESOLVER
# =============================================================================


def resolve_project_root(current_dir: str | os.PathLike[str]) -> str:
    """
    Strip the first "/scripts" from a path that mentions "scripts".

    The check is a plain substring test, so "/src/my-scripts-app/scripts"
    becomes "/src/my-app/scripts" (the first "/scripts" occurrence is inside
    the directory name). Paths without "scripts" are returned unchanged.
    """
    path = os.fspath(current_dir)
    if "scripts" in path:
        return path.replace("/scripts", "", 1)
    return path


# =============================================================================
# META ACCESSOR
# =============================================================================


def read_meta(
    directory: str | os.PathLike[str],
    environ: dict[str, str] | None = None,
    *,
    substitute: bool = True,
) -> dict[str, Any] | None:
    """
    Read and interpolate <directory>/meta.json.

    substitute=False returns the file as written, for commands that edit
    and write it back.

    Returns:
        The parsed mapping, or None if the file is absent, unreadable, not
        valid JSON or not a JSON object.
    """
    meta_path = Path(directory) / META_FILENAME
    try:
        text = meta_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as err:
        logger.debug("meta.json is not valid JSON", path=str(meta_path), error=str(err))
        return None
    if not isinstance(raw, dict):
        logger.debug("meta.json is not an object", path=str(meta_path))
        return None
    return interpolate(raw, environ) if substitute else raw


def meta_exists(directory: str | os.PathLike[str]) -> bool:
    return (Path(directory) / META_FILENAME).is_file()


def load_descriptor(
    directory: str | os.PathLike[str],
    environ: dict[str, str] | None = None,
) -> Descriptor | None:
    """
    Load the typed descriptor of a directory.

    Returns:
        Descriptor, or None when the directory has no usable meta.json.

    Raises:
        DescriptorError: If meta.json exists but fails validation.
    """
    raw = read_meta(directory, environ)
    if raw is None:
        return None
    return parse_descriptor(raw, os.fspath(directory))


def write_meta(directory: str | os.PathLike[str], data: dict[str, Any]) -> Path:
    """Write a descriptor back to disk, two-space indented like hand-edited files."""
    meta_path = Path(directory) / META_FILENAME
    meta_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return meta_path


# =============================================================================
# DIRECTORY WALKER
# =============================================================================


def list_subdirectories(
    directory: str | os.PathLike[str],
    ignore: Iterable[str] = (),
) -> list[str]:
    """
    Names of the immediate child directories.

    Excludes IGNORED_DIRECTORIES, any name in `ignore`, and symlinked
    directories (a link back to an ancestor would otherwise recurse
    forever). Names are sorted.
    """
    excluded = IGNORED_DIRECTORIES | set(ignore)
    try:
        entries = list(os.scandir(directory))
    except OSError as err:
        logger.debug("cannot list directory", directory=os.fspath(directory), error=str(err))
        return []
    names = [
        entry.name
        for entry in entries
        if entry.is_dir(follow_symlinks=False) and entry.name not in excluded
    ]
    return sorted(names)


def walk_all_subdirectories(
    directory: str | os.PathLike[str],
    ignore: Iterable[str] = (),
) -> list[str]:
    """
    Absolute paths of every directory below `directory`, depth-first
    pre-order.

    The starting directory itself is not included. Each parent appears
    before any of its descendants.
    """
    ignore = tuple(ignore)
    root = os.path.abspath(os.fspath(directory))
    paths: list[str] = []
    for name in list_subdirectories(root, ignore):
        child = os.path.join(root, name)
        paths.append(child)
        paths.extend(walk_all_subdirectories(child, ignore))
    return paths


# =============================================================================
# META MATCHER
# =============================================================================


def resolve_property(data: Any, prop: str) -> Any:
    """
    Follow a dotted property path through nested mappings.

    Returns None as soon as a segment is missing or its value is null.
    """
    current = data
    for segment in prop.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
        if current is None:
            return None
    return current


def strictly_equal(left: Any, right: Any) -> bool:
    """Equality without bool/number coercion: True never equals 1, 1 equals 1.0."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def find_directories_matching(
    property: str,  # noqa: A002 - the public name of the matched field
    value: Any = UNSET,
    root_path: str | os.PathLike[str] | None = None,
    *,
    include_falsy: bool = False,
    ignore: Iterable[str] = (),
) -> list[MetaMatch]:
    """
    Collect directories whose descriptor matches a property.

    A directory matches when:
        - no value is given and the resolved property is truthy, or
        - the resolved property equals `value` and is truthy.

    Falsy values never match (searching for `False` or `0` returns nothing)
    unless include_falsy=True, in which case equality alone decides.

    Args:
        property: Field name, dot-delimited for nested fields ("cluster.tls")
        value: Expected value; omit for a truthiness check
        root_path: Directory to search; defaults to $SRC, then the cwd
        include_falsy: Let explicitly requested falsy values match
        ignore: Extra directory names to skip

    Returns:
        Matches in walk order (depth-first pre-order).
    """
    root = os.fspath(root_path) if root_path is not None else os.environ.get("SRC", os.getcwd())
    matches: list[MetaMatch] = []
    for directory in walk_all_subdirectories(root, ignore):
        raw = read_meta(directory)
        if raw is None:
            continue
        resolved = resolve_property(raw, property)
        if value is UNSET:
            hit = bool(resolved)
        elif include_falsy:
            hit = resolved is not None and strictly_equal(resolved, value)
        else:
            hit = bool(resolved) and strictly_equal(resolved, value)
        if hit:
            matches.append(MetaMatch(directory, raw))
    logger.debug(
        "meta matching complete",
        root=root,
        property=property,
        matches=len(matches),
    )
    return matches


# =============================================================================
# SECRET-SCOPE CLIMBER
# =============================================================================


def ancestors(start_dir: str | os.PathLike[str]) -> list[str]:
    """
    The directory and each of its parents, deepest first, ending with "/".

        ancestors("/a/b") == ["/a/b", "/a", "/"]
    """
    path = os.path.abspath(os.fspath(start_dir))
    chain = [path]
    while True:
        parent = os.path.dirname(path)
        if parent == path:
            break
        chain.append(parent)
        path = parent
    return chain


def load_secrets_up_chain(
    start_dir: str | os.PathLike[str],
    environ: MutableMapping[str, str] | None = None,
    override: bool = False,
) -> list[str]:
    """
    Load .env files from `start_dir` up to the nearest project.

    For each ancestor, deepest first: when its descriptor declares
    `secrets`, merge its `.env` into `environ`. Stop after the first
    ancestor whose type is "project", whether or not it declared secrets.

    With override=False a variable already set is kept, so files closer to
    `start_dir` win over files nearer the project root.

    Args:
        start_dir: Directory to start from
        environ: Mapping to populate; defaults to os.environ
        override: Overwrite variables that are already set

    Returns:
        Paths of the .env files that were loaded.
    """
    target = os.environ if environ is None else environ
    loaded: list[str] = []
    for directory in ancestors(start_dir):
        raw = read_meta(directory)
        if raw is None:
            continue
        if raw.get("secrets"):
            env_file = os.path.join(directory, ".env")
            if os.path.isfile(env_file):
                for key, val in dotenv_values(env_file).items():
                    if val is None:
                        continue
                    if override or key not in target:
                        target[key] = val
                loaded.append(env_file)
                logger.debug("loaded secrets", env_file=env_file)
        if raw.get("type") == UnitType.PROJECT.value:
            break
    return loaded

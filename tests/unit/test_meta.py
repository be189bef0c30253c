# ABOUTME: Unit tests for meta discovery
# ABOUTME: Tests path resolution, meta.json access, directory walking, matching and the secrets climber

import json
import os
from pathlib import Path

import pytest

from metarun.errors import DescriptorError
from metarun.meta import (
    IGNORED_DIRECTORIES,
    ancestors,
    find_directories_matching,
    list_subdirectories,
    load_descriptor,
    load_secrets_up_chain,
    meta_exists,
    read_meta,
    resolve_project_root,
    resolve_property,
    walk_all_subdirectories,
    write_meta,
)


@pytest.mark.unit
class TestResolveProjectRoot:
    """Tests for resolve_project_root."""

    def test_strips_scripts(self):
        """Test that a scripts folder resolves to its unit."""
        assert resolve_project_root("/home/u/proj/scripts") == "/home/u/proj"

    def test_unchanged_without_scripts(self):
        """Test that ordinary paths are returned as-is."""
        assert resolve_project_root("/home/u/proj") == "/home/u/proj"

    def test_strips_first_occurrence_only(self):
        """Test that only the first /scripts is removed."""
        assert resolve_project_root("/a/scripts/b/scripts") == "/a/b/scripts"

    def test_substring_match_is_literal(self):
        """Test that a directory merely containing 'scripts' triggers stripping."""
        assert resolve_project_root("/src/my/scriptsdir/app") == "/src/mydir/app"

    def test_substring_without_slash_is_unchanged(self):
        """Test that 'scripts' without a leading slash leaves the path alone."""
        assert resolve_project_root("/src/my-scripts-app") == "/src/my-scripts-app"

    def test_accepts_pathlike(self):
        """Test that Path objects are accepted."""
        assert resolve_project_root(Path("/x/scripts")) == "/x"

    @pytest.mark.parametrize(
        "path",
        ["/home/u/proj/scripts", "/home/u/proj", "/src/my-scripts-app", "/", "/a/scripts/b"],
    )
    def test_idempotent(self, path):
        """Test that resolving twice equals resolving once."""
        once = resolve_project_root(path)
        assert resolve_project_root(once) == once


@pytest.mark.unit
class TestReadMeta:
    """Tests for meta.json access."""

    def test_reads_descriptor(self, api_dir):
        """Test reading an existing meta.json."""
        raw = read_meta(api_dir)
        assert raw is not None
        assert raw["name"] == "api"

    def test_absent_returns_none(self, src_tree):
        """Test that a directory without meta.json yields None."""
        assert read_meta(src_tree / "app" / "empty") is None

    def test_missing_directory_returns_none(self, tmp_path):
        """Test that a nonexistent directory yields None."""
        assert read_meta(tmp_path / "nope") is None

    def test_invalid_json_returns_none(self, tmp_path):
        """Test that an unparsable file is treated as absent."""
        (tmp_path / "meta.json").write_text("{not json", encoding="utf-8")
        assert read_meta(tmp_path) is None

    def test_non_object_returns_none(self, tmp_path):
        """Test that a JSON array is treated as absent."""
        (tmp_path / "meta.json").write_text("[1, 2]", encoding="utf-8")
        assert read_meta(tmp_path) is None

    def test_interpolates_environment(self, tmp_path, make_unit):
        """Test ${VAR} substitution from the given environment."""
        make_unit(tmp_path, {"name": "x", "docker": {"default": {"image": "gcr.io/${PROJECT}/x"}}})
        raw = read_meta(tmp_path, {"PROJECT": "acme"})
        assert raw["docker"]["default"]["image"] == "gcr.io/acme/x"

    def test_interpolates_self_reference(self, tmp_path, make_unit):
        """Test ${this.name} substitution from the descriptor itself."""
        make_unit(tmp_path, {"name": "api", "cluster": {"app": "${this.name}"}})
        assert read_meta(tmp_path, {})["cluster"]["app"] == "api"

    def test_unresolved_placeholder_kept(self, tmp_path, make_unit):
        """Test that unknown placeholders are left untouched."""
        make_unit(tmp_path, {"name": "${MISSING}"})
        assert read_meta(tmp_path, {})["name"] == "${MISSING}"

    def test_substitute_false_returns_raw(self, tmp_path, make_unit):
        """Test that substitution can be disabled for editing."""
        make_unit(tmp_path, {"name": "${PROJECT}"})
        assert read_meta(tmp_path, {"PROJECT": "acme"}, substitute=False)["name"] == "${PROJECT}"

    def test_meta_exists(self, api_dir, src_tree):
        """Test presence check."""
        assert meta_exists(api_dir) is True
        assert meta_exists(src_tree / "app" / "empty") is False

    def test_write_meta_round_trip(self, tmp_path):
        """Test that written descriptors are indented JSON ending with a newline."""
        path = write_meta(tmp_path, {"name": "x", "type": "app"})
        text = path.read_text(encoding="utf-8")
        assert text.endswith("\n")
        assert '\n  "name": "x"' in text
        assert json.loads(text) == {"name": "x", "type": "app"}


@pytest.mark.unit
class TestLoadDescriptor:
    """Tests for the typed loader."""

    def test_absent_returns_none(self, src_tree):
        """Test that absence is not an error."""
        assert load_descriptor(src_tree / "app" / "empty") is None

    def test_typed_descriptor(self, api_dir):
        """Test that the loaded descriptor carries its directory."""
        descriptor = load_descriptor(api_dir)
        assert descriptor.name == "api"
        assert descriptor.directory == os.fspath(api_dir)

    def test_invalid_type_raises(self, tmp_path, make_unit):
        """Test that an unknown type tag fails at load time."""
        make_unit(tmp_path, {"name": "x", "type": "contaienr"})
        with pytest.raises(DescriptorError) as exc_info:
            load_descriptor(tmp_path)
        assert "type" in str(exc_info.value)
        assert str(tmp_path) in str(exc_info.value)


@pytest.mark.unit
class TestDirectoryWalker:
    """Tests for list_subdirectories and walk_all_subdirectories."""

    def test_lists_sorted_children(self, src_tree):
        """Test immediate children, denylist excluded."""
        assert list_subdirectories(src_tree) == ["app", "infra"]

    def test_denylist_never_returned(self, tmp_path):
        """Test that every denylisted name is skipped even when present."""
        for name in IGNORED_DIRECTORIES:
            (tmp_path / name).mkdir()
        (tmp_path / "keep").mkdir()
        assert list_subdirectories(tmp_path) == ["keep"]

    def test_extra_ignore(self, src_tree):
        """Test caller-supplied ignore names."""
        assert list_subdirectories(src_tree, ignore=["infra"]) == ["app"]

    def test_files_are_not_directories(self, src_tree):
        """Test that files such as meta.json are not listed."""
        assert "meta.json" not in list_subdirectories(src_tree)

    def test_missing_directory(self, tmp_path):
        """Test that listing a missing directory returns nothing."""
        assert list_subdirectories(tmp_path / "missing") == []

    def test_symlinked_directories_skipped(self, tmp_path):
        """Test that a link back to an ancestor does not recurse."""
        (tmp_path / "a").mkdir()
        os.symlink(tmp_path, tmp_path / "a" / "loop")
        assert walk_all_subdirectories(tmp_path) == [str(tmp_path / "a")]

    def test_walk_preorder(self, src_tree):
        """Test depth-first pre-order with absolute paths."""
        root = str(src_tree)
        expected = [
            f"{root}/app",
            f"{root}/app/api",
            f"{root}/app/api/container",
            f"{root}/app/api/infra",
            f"{root}/app/api/scripts",
            f"{root}/app/empty",
            f"{root}/app/web",
            f"{root}/app/web/infra",
            f"{root}/infra",
            f"{root}/infra/network",
        ]
        assert walk_all_subdirectories(src_tree) == expected

    def test_walk_parent_before_child_and_unique(self, src_tree):
        """Test that every path appears once and after its parent."""
        paths = walk_all_subdirectories(src_tree)
        assert len(paths) == len(set(paths))
        for index, path in enumerate(paths):
            parent = os.path.dirname(path)
            if parent != str(src_tree):
                assert paths.index(parent) < index

    def test_walk_matches_os_walk(self, src_tree):
        """Test that the walk reaches exactly the non-ignored directories."""
        reachable = set()
        for dirpath, dirnames, _ in os.walk(src_tree):
            dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRECTORIES]
            reachable.update(os.path.join(dirpath, d) for d in dirnames)
        assert set(walk_all_subdirectories(src_tree)) == reachable

    def test_walk_empty(self, tmp_path):
        """Test that a directory without children yields []."""
        assert walk_all_subdirectories(tmp_path) == []

    def test_walk_without_descriptors(self, tmp_path):
        """Test that plain directories are listed even without meta.json."""
        (tmp_path / "x" / "y").mkdir(parents=True)
        assert walk_all_subdirectories(tmp_path) == [str(tmp_path / "x"), str(tmp_path / "x" / "y")]


@pytest.mark.unit
class TestResolveProperty:
    """Tests for dotted property lookup."""

    def test_nested(self):
        """Test a nested lookup."""
        assert resolve_property({"a": {"b": 3}}, "a.b") == 3

    def test_missing_intermediate(self):
        """Test short-circuit on a missing segment."""
        assert resolve_property({"a": None}, "a.b") is None
        assert resolve_property({}, "a.b.c") is None

    def test_non_mapping_intermediate(self):
        """Test that indexing into a scalar returns None instead of raising."""
        assert resolve_property({"a": 5}, "a.b") is None


@pytest.mark.unit
class TestFindDirectoriesMatching:
    """Tests for the meta matcher."""

    def test_cluster_tls_scenario(self, tmp_path, make_unit):
        """Test the app1/app2 cluster.tls example."""
        make_unit(tmp_path, {"type": "project"})
        make_unit(tmp_path / "app1", {"cluster": {"tls": True}})
        make_unit(tmp_path / "app2", {"cluster": {"tls": False}})

        matches = find_directories_matching("cluster.tls", True, tmp_path)

        assert len(matches) == 1
        assert matches[0].directory == str(tmp_path / "app1")
        assert matches[0].descriptor == {"cluster": {"tls": True}}

    def test_bool_and_number_never_equal(self, tmp_path, make_unit):
        """Test that True does not match 1 and 1 does not match True."""
        make_unit(tmp_path / "one", {"cluster": {"tls": 1}})
        make_unit(tmp_path / "two", {"cluster": {"priority": True}})
        make_unit(tmp_path / "three", {"cluster": {"tls": True, "priority": 1.0}})

        tls = find_directories_matching("cluster.tls", True, tmp_path)
        priority = find_directories_matching("cluster.priority", 1, tmp_path)

        assert [m.directory for m in tls] == [str(tmp_path / "three")]
        assert [m.directory for m in priority] == [str(tmp_path / "three")]

    def test_string_does_not_match_number(self, tmp_path, make_unit):
        """Test that "1" and 1 are different values."""
        make_unit(tmp_path / "one", {"cluster": {"priority": "1"}})
        assert find_directories_matching("cluster.priority", 1, tmp_path) == []

    def test_truthiness_without_value(self, src_tree):
        """Test presence check in walk order; node_modules ignored."""
        matches = find_directories_matching("terraform", root_path=src_tree)
        names = [m.descriptor["name"] for m in matches]
        assert names == ["api", "web", "network"]

    def test_value_equality(self, src_tree):
        """Test matching on an exact value."""
        matches = find_directories_matching("scope", "global", src_tree)
        assert [m.descriptor["name"] for m in matches] == ["network"]

    def test_falsy_value_never_matches(self, src_tree):
        """Test that searching for False returns nothing."""
        assert find_directories_matching("cluster.tls", False, src_tree) == []

    def test_include_falsy(self, src_tree):
        """Test that falsy matches can be requested explicitly."""
        matches = find_directories_matching("cluster.tls", False, src_tree, include_falsy=True)
        assert [m.descriptor["name"] for m in matches] == ["web"]

    def test_missing_property_excluded(self, src_tree):
        """Test that descriptors without the property are skipped silently."""
        assert [m.descriptor["name"] for m in find_directories_matching("docker.default", root_path=src_tree)] == [
            "api"
        ]

    def test_root_itself_not_included(self, src_tree):
        """Test that only directories below the root are searched."""
        assert find_directories_matching("secrets", True, src_tree) == []

    def test_defaults_to_src_env(self, src_tree, monkeypatch):
        """Test that SRC is the default root."""
        monkeypatch.setenv("SRC", str(src_tree))
        assert len(find_directories_matching("cluster")) == 2

    def test_typed_match(self, src_tree):
        """Test converting a match to a typed descriptor."""
        match = find_directories_matching("name", "network", src_tree)[0]
        assert match.typed().is_global is True


@pytest.mark.unit
class TestSecretsClimber:
    """Tests for ancestors and load_secrets_up_chain."""

    def test_ancestors(self):
        """Test ancestor chain, deepest first."""
        assert ancestors("/a/b") == ["/a/b", "/a", "/"]

    def test_loads_up_to_project(self, src_tree):
        """Test that the project .env is loaded from a nested unit."""
        environ: dict[str, str] = {}
        loaded = load_secrets_up_chain(src_tree / "app" / "api", environ)
        assert loaded == [str(src_tree / ".env")]
        assert environ["ROOT_SECRET"] == "root"

    def test_closer_files_win(self, src_tree, make_unit):
        """Test first-writer-wins merge order."""
        make_unit(src_tree / "app", {"name": "apps", "type": "group", "secrets": True})
        (src_tree / "app" / ".env").write_text("SHARED=group\n", encoding="utf-8")

        environ: dict[str, str] = {}
        loaded = load_secrets_up_chain(src_tree / "app" / "web", environ)

        assert loaded == [str(src_tree / "app" / ".env"), str(src_tree / ".env")]
        assert environ["SHARED"] == "group"

    def test_existing_variables_kept(self, src_tree):
        """Test that already-set variables are not overwritten by default."""
        environ = {"SHARED": "preset"}
        load_secrets_up_chain(src_tree / "app", environ)
        assert environ["SHARED"] == "preset"

    def test_override(self, src_tree):
        """Test that override=True replaces existing variables."""
        environ = {"SHARED": "preset"}
        load_secrets_up_chain(src_tree / "app", environ, override=True)
        assert environ["SHARED"] == "root"

    def test_stops_at_project_boundary(self, tmp_path, make_unit):
        """Test that nothing above the nearest project is read."""
        make_unit(tmp_path, {"type": "project", "secrets": True})
        (tmp_path / ".env").write_text("OUTER=1\n", encoding="utf-8")
        inner = make_unit(tmp_path / "inner", {"type": "project"})
        unit = make_unit(inner / "unit", {"secrets": True})
        (unit / ".env").write_text("UNIT=1\n", encoding="utf-8")

        environ: dict[str, str] = {}
        loaded = load_secrets_up_chain(unit, environ)

        assert loaded == [str(unit / ".env")]
        assert "OUTER" not in environ

    def test_secrets_without_env_file(self, tmp_path, make_unit):
        """Test that a declared but missing .env is skipped."""
        make_unit(tmp_path, {"type": "project", "secrets": True})
        assert load_secrets_up_chain(tmp_path, {}) == []

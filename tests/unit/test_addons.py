"""Unit tests for turning native addons into statically linked modules."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from nodeboxer.errors import AddonLinkError, BuildCommandFailed
from nodeboxer.patchers import addons
from nodeboxer.patchers.addons import (
    LINKED_GYP,
    AddonSpec,
    addon_id,
    link_addon,
    objhash,
    prep_for_usage_with_node,
    turn_into_static_library,
)
from nodeboxer.patchers.gyp import load_gyp


@pytest.fixture
def npm_calls(monkeypatch):
    calls = []

    def fake_spawn(cmd, cwd, env=None, logger=None):
        calls.append((list(cmd), Path(cwd)))

    monkeypatch.setattr(addons, "spawn_build_command", fake_spawn)
    return calls


class TestIdentifiers:
    """Tests for content-derived addon identifiers."""

    def test_objhash_is_stable(self) -> None:
        """Test that hashing is deterministic and key-order independent."""
        assert objhash({"a": 1, "b": 2}) == objhash({"b": 2, "a": 1})
        assert len(objhash({"a": 1})) == 32

    def test_same_content_same_id(self) -> None:
        """Test that equal AddonSpecs hash equally across instances."""
        a = AddonSpec(Path("/src/weak-napi"), re.compile(r"weakref\.node$"))
        b = AddonSpec(Path("/src/weak-napi"), re.compile(r"weakref\.node$"))
        assert addon_id(a) == addon_id(b)

    def test_different_content_different_id(self) -> None:
        """Test that path, pattern and flags all feed the hash."""
        base = AddonSpec(Path("/src/weak-napi"), re.compile(r"weakref\.node$"))
        assert addon_id(base) != addon_id(AddonSpec(Path("/src/other"), base.require_regexp))
        assert addon_id(base) != addon_id(AddonSpec(base.path, re.compile(r"weak\.node$")))
        assert addon_id(base) != addon_id(AddonSpec(base.path, re.compile(r"weakref\.node$", re.I)))


class TestTurnIntoStaticLibrary:
    """Tests for turn_into_static_library."""

    def test_rewrites_targets(self) -> None:
        """Test types, defines and generated names."""
        config = {
            "targets": [
                {"target_name": "weakref", "defines": ["BUILDING_NODE_EXTENSION", "NAPI_VERSION=3"]},
                {"target_name": "loader", "type": "loadable_module",
                 "defines!": ["BUILDING_NODEBOXER_EXTENSION"]},
                {"target_name": "helper", "type": "none"},
            ]
        }
        modules = turn_into_static_library(config, "abc123")
        weakref, loader, helper = config["targets"]

        assert weakref["type"] == "static_library"
        assert loader["type"] == "static_library"
        assert helper["type"] == "none"

        assert "BUILDING_NODE_EXTENSION" not in weakref["defines"]
        assert "NAPI_VERSION=3" in weakref["defines"]
        assert set(addons.UNWANTED_DEFINES) <= set(weakref["defines!"])
        assert "BUILDING_NODEBOXER_EXTENSION" in loader["defines"]
        assert "BUILDING_NODEBOXER_EXTENSION" not in loader["defines!"]
        assert "NODEBOXER_REGISTER_FUNCTION=nodeboxer_weakref_register_abc123" in weakref["defines"]
        assert "NODEBOXER_MODULE_NAME=nodeboxer_weakref_abc123" in weakref["defines"]
        assert all(t["win_delay_load_hook"] == "false" for t in config["targets"])

        assert [m.target_name for m in modules] == ["weakref", "loader", "helper"]
        assert modules[0].register_function == "nodeboxer_weakref_register_abc123"
        assert modules[0].linked_module_name == "nodeboxer_weakref_abc123"

    def test_no_targets(self) -> None:
        """Test that a descriptor without targets links nothing."""
        assert turn_into_static_library({}, "x") == []


class TestPrepForUsageWithNode:
    """Tests for prep_for_usage_with_node."""

    def test_points_at_source_tree(self, tmp_path: Path) -> None:
        """Test includes, variables and removal of the node-addon-api dummy."""
        config = {
            "variables": {"openssl_fips": ""},
            "targets": [{
                "target_name": "weakref",
                "dependencies": ["<!(node -p \"require('node-addon-api').gyp\")", "other.gyp:other"],
            }],
        }
        prep_for_usage_with_node(config, tmp_path)

        gyp_dir = tmp_path / "deps" / "npm" / "node_modules" / "node-gyp"
        assert config["includes"] == [str(gyp_dir / "addon.gypi")]
        assert config["targets"][0]["dependencies"] == ["other.gyp:other"]
        assert config["variables"]["openssl_fips"] == ""
        assert config["variables"]["node_root_dir%"] == str(tmp_path)
        assert config["variables"]["standalone_static_library%"] == "1"
        assert config["variables"]["node_engine%"] == "v8"
        assert config["variables"]["library%"] == "static_library"
        assert config["variables"]["win_delay_load_hook%"] == "false"


class TestLinkAddon:
    """Tests for link_addon."""

    def test_links_addon(self, source_tree: Path, addon_dir: Path, npm_calls, logger) -> None:
        """Test copying, npm install and the rewritten descriptor."""
        addon = AddonSpec(addon_dir, re.compile(r"weakref\.node$"))
        modules = link_addon(addon, source_tree, {}, logger)
        addon_hash = addon_id(addon)
        copied = source_tree / "deps" / addon_hash

        assert (copied / "src" / "weakref.cc").is_file()
        assert npm_calls == [([*addons.npm_command(), "install", "--ignore-scripts", "--omit=dev"], copied)]

        original = (addon_dir / "binding.gyp").read_text()
        assert "nodeboxer" not in (copied / "binding.gyp").read_text()
        assert "nodeboxer" not in original

        linked = load_gyp(copied / LINKED_GYP)
        assert linked["targets"][0]["type"] == "static_library"
        assert linked["targets"][0]["dependencies"] == []
        assert [m.target_name for m in modules] == [
            f"deps/{addon_hash}/{LINKED_GYP}:weakref",
            f"deps/{addon_hash}/{LINKED_GYP}:helper",
        ]
        assert modules[0].linked_module_name == f"nodeboxer_weakref_{addon_hash}"

    def test_repeatable(self, source_tree: Path, addon_dir: Path, npm_calls, logger) -> None:
        """Test that linking the same addon twice gives the same identifiers."""
        addon = AddonSpec(addon_dir, re.compile(r"weakref\.node$"))
        assert link_addon(addon, source_tree, {}, logger) == link_addon(addon, source_tree, {}, logger)

    def test_unreadable_descriptor(self, source_tree: Path, addon_dir: Path, npm_calls, logger) -> None:
        """Test that a missing binding.gyp is fatal."""
        (addon_dir / "binding.gyp").unlink()
        with pytest.raises(AddonLinkError):
            link_addon(AddonSpec(addon_dir, re.compile("x")), source_tree, {}, logger)

    def test_missing_addon_dir(self, source_tree: Path, tmp_path: Path, npm_calls, logger) -> None:
        """Test that a nonexistent addon path is fatal."""
        with pytest.raises(AddonLinkError):
            link_addon(AddonSpec(tmp_path / "nope", re.compile("x")), source_tree, {}, logger)

    def test_npm_failure(self, source_tree: Path, addon_dir: Path, monkeypatch, logger) -> None:
        """Test that a failing npm install is an AddonLinkError."""
        def failing_spawn(cmd, cwd, env=None, logger=None):
            raise BuildCommandFailed(cmd, 1)

        monkeypatch.setattr(addons, "spawn_build_command", failing_spawn)
        with pytest.raises(AddonLinkError):
            link_addon(AddonSpec(addon_dir, re.compile("x")), source_tree, {}, logger)

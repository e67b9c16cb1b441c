import hashlib
import json
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from nodeboxer.build import is_windows, spawn_build_command
from nodeboxer.errors import AddonLinkError, BuildCommandFailed, DescriptorParseError
from nodeboxer.patchers.gyp import load_gyp, store_gyp


ADDON_GYP = "binding.gyp"
LINKED_GYP = ".nodeboxer.gyp"

UNWANTED_DEFINES = ["USING_UV_SHARED=1", "USING_V8_SHARED=1", "BUILDING_NODE_EXTENSION"]
NODE_ADDON_API_DUMMY_RE = re.compile(r"require\s*\(.+node-addon-api.+\)\s*\.\s*gyp")


@dataclass(frozen=True)
class AddonSpec:
    path: Path
    require_regexp: "re.Pattern[str]"

    def identity(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "require_regexp": self.require_regexp.pattern,
            "flags": self.require_regexp.flags,
        }


@dataclass(frozen=True)
class LinkedModule:
    target_name: str
    register_function: str
    linked_module_name: str


def objhash(value: Any) -> str:
    data = json.dumps(value, sort_keys=True).encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:32]


def addon_id(addon: AddonSpec) -> str:
    return objhash(addon.identity())


def npm_command() -> List[str]:
    npm_execpath = os.environ.get("npm_execpath")
    node = os.environ.get("npm_node_execpath")
    if npm_execpath and node:
        return [node, npm_execpath]
    return ["npm.cmd" if is_windows() else "npm"]


# =========================
# DESCRIPTOR TRANSFORMS
# =========================
def turn_into_static_library(config: Dict[str, Any], addon_hash: str) -> List[LinkedModule]:
    targets = config.get("targets")
    if not isinstance(targets, list):
        return []

    result = []
    for target in targets:
        name = target["target_name"]
        if not target.get("type") or target["type"] == "loadable_module":
            target["type"] = "static_library"
        register_function = f"nodeboxer_{name}_register_{addon_hash}"
        linked_module_name = f"nodeboxer_{name}_{addon_hash}"

        pos = list(target.get("defines", []))
        neg = list(target.get("defines!", []))
        for unwanted in UNWANTED_DEFINES:
            if unwanted in pos:
                pos.remove(unwanted)
            if unwanted not in neg:
                neg.append(unwanted)
        for wanted in [
            "BUILDING_NODEBOXER_EXTENSION",
            f"NODEBOXER_REGISTER_FUNCTION={register_function}",
            f"NODEBOXER_MODULE_NAME={linked_module_name}",
        ]:
            if wanted in neg:
                neg.remove(wanted)
            if wanted not in pos:
                pos.append(wanted)
        target["defines"] = pos
        target["defines!"] = neg
        target["win_delay_load_hook"] = "false"

        result.append(LinkedModule(name, register_function, linked_module_name))
    return result


def node_gyp_dir(source_tree: Path) -> Path:
    return source_tree / "deps" / "npm" / "node_modules" / "node-gyp"


def prep_for_usage_with_node(config: Dict[str, Any], source_tree: Path) -> None:
    gyp_dir = node_gyp_dir(source_tree)
    config.setdefault("includes", []).append(str(gyp_dir / "addon.gypi"))
    # the node-addon-api dummy target adds a nothing.c that clashes between addons
    for scope in [config, *config.get("targets", [])]:
        if "dependencies" in scope or scope is config:
            scope["dependencies"] = [
                dep for dep in scope.get("dependencies", [])
                if not NODE_ADDON_API_DUMMY_RE.search(dep)
            ]
    config["variables"] = {
        **config.get("variables", {}),
        "node_root_dir%": str(source_tree),
        "standalone_static_library%": "1",
        "node_engine%": "v8",
        "node_gyp_dir%": str(gyp_dir),
        "library%": "static_library",
        "visibility%": "default",
        "module_root_dir%": str(source_tree),
        "node_lib_file%": "kernel32.lib",
        "win_delay_load_hook%": "false",
    }


# =========================
# LINKING
# =========================
def link_addon(addon: AddonSpec, source_tree: Path, env: Dict[str, str], logger) -> List[LinkedModule]:
    addon_hash = addon_id(addon)
    addon_path = source_tree / "deps" / addon_hash

    logger.step_starting(f"Copying addon at {addon.path}")
    try:
        shutil.copytree(addon.path, addon_path, dirs_exist_ok=True)
    except OSError as e:
        raise AddonLinkError(f"Cannot copy addon {addon.path}: {e}")
    logger.step_completed()

    try:
        spawn_build_command(
            [*npm_command(), "install", "--ignore-scripts", "--omit=dev"],
            cwd=addon_path, env=env, logger=logger)
    except (BuildCommandFailed, OSError) as e:
        raise AddonLinkError(f"Installing dependencies of {addon.path} failed: {e}")

    logger.step_starting(f"Preparing addon at {addon.path}")
    source_gyp = addon_path / ADDON_GYP
    target_gyp = addon_path / LINKED_GYP
    try:
        config = load_gyp(source_gyp)
    except DescriptorParseError as e:
        raise AddonLinkError(f"Addon {addon.path} has no usable {ADDON_GYP}: {e}")
    modules = turn_into_static_library(config, addon_hash)
    prep_for_usage_with_node(config, source_tree)
    store_gyp(target_gyp, config)
    logger.step_completed()

    relative = target_gyp.relative_to(source_tree).as_posix()
    return [
        LinkedModule(f"{relative}:{m.target_name}", m.register_function, m.linked_module_name)
        for m in modules
    ]

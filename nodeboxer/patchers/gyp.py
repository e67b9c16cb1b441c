import ast
import json
from pathlib import Path
from typing import Any, Dict, Iterable

from nodeboxer.errors import DescriptorParseError


# gyp files are Python literals: dicts, lists, strings, ints and comments
def load_gyp(path: Path) -> Dict[str, Any]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise DescriptorParseError(path, e.strerror or str(e))
    try:
        config = ast.literal_eval(text)
    except (SyntaxError, ValueError) as e:
        raise DescriptorParseError(path, str(e))
    if not isinstance(config, dict):
        raise DescriptorParseError(path, f"expected a dict at top level, got {type(config).__name__}")
    return config


def store_gyp(path: Path, config: Dict[str, Any]) -> None:
    # JSON is a subset of the gyp syntax
    Path(path).write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")


def _extend_unique(items: list, extra: Iterable[str]) -> list:
    out = list(items)
    for item in extra:
        if item not in out:
            out.append(item)
    return out


def append_dependencies(path: Path, dependencies: Iterable[str]) -> Dict[str, Any]:
    config = load_gyp(path)
    config["dependencies"] = _extend_unique(config.get("dependencies", []), dependencies)
    store_gyp(path, config)
    return config

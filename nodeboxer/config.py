import json
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from nodeboxer.codegen import js_regexp
from nodeboxer.errors import InvalidInput
from nodeboxer.patchers.addons import AddonSpec


CONFIGURE_ARGS_ENV = "NODEBOXER_CONFIGURE_ARGS"
MAKE_ARGS_ENV = "NODEBOXER_MAKE_ARGS"
SCRIPT_EXTENSIONS = (".js", ".cjs")

REQUIRED_KEYS = {
    "source": str,
    "target": str,
}

OPTIONAL_KEYS = {
    "node_version": str,
    "namespace": str,
    "tmpdir": str,
    "clean": bool,
    "configure_args": list,
    "make_args": list,
    "env": dict,
    "addons": list,
    "use_code_cache": bool,
    "use_node_snapshot": bool,
    "compress_blobs": bool,
}

ADDON_KEYS = {
    "path": str,
    "require_regexp": str,
}


@dataclass(frozen=True)
class CompilationOptions:
    source_file: Path
    target_file: Path
    node_version_range: str = "*"
    namespace: Optional[str] = None
    tmpdir: Optional[Path] = None
    clean: bool = False
    configure_args: Tuple[str, ...] = ()
    make_args: Tuple[str, ...] = ()
    env: Optional[Mapping[str, str]] = None
    addons: Tuple[AddonSpec, ...] = ()
    use_code_cache: bool = False
    use_node_snapshot: bool = False
    compress_blobs: bool = False
    pre_compile_hook: Optional[Callable[[Path], None]] = field(default=None, compare=False)

    @property
    def effective_namespace(self) -> str:
        return self.namespace or Path(self.source_file).stem

    @property
    def cache_dir(self) -> Path:
        # No random component, so compiler caches (ccache, sccache) can hit
        if self.tmpdir is not None:
            return Path(self.tmpdir)
        return Path(tempfile.gettempdir()) / "nodeboxer" / self.effective_namespace

    @property
    def build_env(self) -> Dict[str, str]:
        return dict(os.environ if self.env is None else self.env)


# =========================
# ENVIRONMENT OVERRIDES
# =========================
def parse_arg_list(raw: str) -> List[str]:
    """Parse `a,b,c` or a JSON array of strings."""
    raw = raw.strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            value = json.loads(raw)
        except ValueError as e:
            raise InvalidInput(f"Invalid JSON argument list {raw!r}: {e}")
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise InvalidInput(f"Argument list must be a JSON array of strings: {raw!r}")
        return value
    return [arg for arg in raw.split(",") if arg]


def with_env_args(options: CompilationOptions, environ: Optional[Mapping[str, str]] = None) -> CompilationOptions:
    """Return a copy with the env var argument lists appended to the explicit ones."""
    environ = os.environ if environ is None else environ
    return replace(
        options,
        configure_args=tuple(options.configure_args) + tuple(parse_arg_list(environ.get(CONFIGURE_ARGS_ENV, ""))),
        make_args=tuple(options.make_args) + tuple(parse_arg_list(environ.get(MAKE_ARGS_ENV, ""))),
    )


def validate_source_file(source_file: Path) -> None:
    if not str(source_file).endswith(SCRIPT_EXTENSIONS):
        raise InvalidInput(f"Only .js files can be compiled (got: {source_file})")
    if not Path(source_file).is_file():
        raise InvalidInput(f"Source file not found: {source_file}")


# =========================
# CONFIG FILE
# =========================
def read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise InvalidInput(f"Failed to read JSON config {path}: {e}")


def validate_config(cfg: Dict[str, Any]) -> None:
    if not isinstance(cfg, dict):
        raise InvalidInput("Config must be a JSON object")
    for k, t in REQUIRED_KEYS.items():
        if k not in cfg or not isinstance(cfg[k], t):
            raise InvalidInput(f"Missing or invalid config key: {k}")
    for k, t in OPTIONAL_KEYS.items():
        if k in cfg and not isinstance(cfg[k], t):
            raise InvalidInput(f"Invalid config key: {k}")
    unknown = set(cfg) - set(REQUIRED_KEYS) - set(OPTIONAL_KEYS)
    if unknown:
        raise InvalidInput(f"Unknown config keys: {', '.join(sorted(unknown))}")
    for k in ("configure_args", "make_args"):
        if not all(isinstance(v, str) for v in cfg.get(k, [])):
            raise InvalidInput(f"{k} must be a list of strings")
    for i, addon in enumerate(cfg.get("addons", [])):
        if not isinstance(addon, dict):
            raise InvalidInput(f"addons[{i}] must be an object")
        for k, t in ADDON_KEYS.items():
            if k not in addon or not isinstance(addon[k], t):
                raise InvalidInput(f"Missing or invalid addons[{i}].{k}")


def addon_from_config(entry: Dict[str, str], base_dir: Path) -> AddonSpec:
    try:
        regexp = re.compile(entry["require_regexp"])
    except re.error as e:
        raise InvalidInput(f"Invalid require_regexp {entry['require_regexp']!r}: {e}")
    # the pattern is evaluated by the bootstrap shim as a JavaScript RegExp
    js_regexp(regexp)
    return AddonSpec(path=(base_dir / entry["path"]).resolve(), require_regexp=regexp)


def options_from_config(cfg: Dict[str, Any], base_dir: Path) -> CompilationOptions:
    validate_config(cfg)
    return CompilationOptions(
        source_file=(base_dir / cfg["source"]).resolve(),
        target_file=(base_dir / cfg["target"]).resolve(),
        node_version_range=cfg.get("node_version", "*"),
        namespace=cfg.get("namespace"),
        tmpdir=Path(cfg["tmpdir"]) if "tmpdir" in cfg else None,
        clean=cfg.get("clean", False),
        configure_args=tuple(cfg.get("configure_args", [])),
        make_args=tuple(cfg.get("make_args", [])),
        env={**os.environ, **cfg["env"]} if "env" in cfg else None,
        addons=tuple(addon_from_config(a, base_dir) for a in cfg.get("addons", [])),
        use_code_cache=cfg.get("use_code_cache", False),
        use_node_snapshot=cfg.get("use_node_snapshot", False),
        compress_blobs=cfg.get("compress_blobs", False),
    )

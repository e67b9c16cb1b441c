"""Code generation for the files nodeboxer splices into the Node.js source tree.

Two artifacts are rendered from Jinja2 templates in ``resources/``:

* ``main-template.cc.j2``: the C++ ``main()`` replacing ``src/node_main.cc``.
  It embeds the user script, the code cache and the heap snapshot as static
  arrays and carries the blob modes as compile-time constants.
* ``bootstrap.js.j2``: the JavaScript shim that runs first inside the
  produced binary and routes ``require()`` calls to linked addons.
"""

import json
import re
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import brotli
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from nodeboxer.blobs import INTERMEDIATE_FILE, BlobMode
from nodeboxer.errors import InvalidInput


RESOURCES = Path(__file__).resolve().parent / "resources"
MAIN_TEMPLATE = "main-template.cc.j2"
BOOTSTRAP_TEMPLATE = "bootstrap.js.j2"

# C++ array literals are wrapped at this many elements per line
ELEMENTS_PER_LINE = 32

_env = Environment(
    loader=FileSystemLoader(str(RESOURCES)),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


def _array_literal(values: Sequence[int]) -> str:
    # A trailing 0 keeps the array non-empty, C++ rejects zero-sized arrays
    values = list(values) + [0]
    lines = []
    for i in range(0, len(values), ELEMENTS_PER_LINE):
        lines.append(",".join(str(v) for v in values[i:i + ELEMENTS_PER_LINE]))
    return ",\n    ".join(lines)


def utf16_code_units(text: str) -> Tuple[int, ...]:
    data = text.encode("utf-16-le", "surrogatepass")
    return struct.unpack(f"<{len(data) // 2}H", data)


# =========================
# BLOB DEFINITIONS
# =========================
def cpp_string_definition(fn_name: str, source: str) -> str:
    units = utf16_code_units(source)
    one_byte = all(u <= 0xFF for u in units)
    return f"""
  static const {'uint8_t' if one_byte else 'uint16_t'} {fn_name}_source_[] = {{
    {_array_literal(units)}
  }};
  static_assert(
    {len(units)} <= v8::String::kMaxLength,
    "main script source exceeds max string length");
  Local<String> {fn_name}(Isolate* isolate) {{
    return v8::String::NewFrom{'One' if one_byte else 'Two'}Byte(
      isolate,
      {fn_name}_source_,
      v8::NewStringType::kNormal,
      {len(units)}).ToLocalChecked();
  }}
"""


def uncompressed_blob_definition(fn_name: str, data: bytes) -> str:
    return f"""
  static const uint8_t {fn_name}_source_[] = {{
    {_array_literal(data)}
  }};
  std::string {fn_name}() {{
    return std::string(
      reinterpret_cast<const char*>({fn_name}_source_),
      {len(data)});
  }}
"""


def compressed_blob_definition(fn_name: str, data: bytes) -> str:
    compressed = brotli.compress(data, quality=11)
    return f"""
  static const uint8_t {fn_name}_source_[] = {{
    {_array_literal(compressed)}
  }};
  std::string {fn_name}() {{
    size_t decoded_size = {len(data)};
    std::string dst(decoded_size, 0);
    const auto result = BrotliDecoderDecompress(
      {len(compressed)},
      {fn_name}_source_,
      &decoded_size,
      reinterpret_cast<uint8_t*>(&dst[0]));
    assert(result == BROTLI_DECODER_RESULT_SUCCESS);
    assert(decoded_size == {len(data)});
    return dst;
  }}
"""


def blob_definition(fn_name: str, data: bytes, compress: bool) -> str:
    if compress:
        return compressed_blob_definition(fn_name, data)
    return uncompressed_blob_definition(fn_name, data)


# =========================
# ENTRY POINT
# =========================
@dataclass(frozen=True)
class EntryPoint:
    entry_module: str
    main_script: str
    register_functions: Tuple[str, ...] = ()
    code_cache_mode: BlobMode = BlobMode.IGNORE
    snapshot_mode: BlobMode = BlobMode.IGNORE
    code_cache: bytes = b""
    snapshot: bytes = b""
    compress_blobs: bool = False

    @property
    def embeds_main_script(self) -> bool:
        # a consumed snapshot already ran the script while it was captured
        return self.snapshot_mode is not BlobMode.CONSUME

    def blob_definitions(self) -> List[str]:
        defs = []
        if self.embeds_main_script:
            defs.append(cpp_string_definition("GetMainScriptSource", self.main_script))
        defs.append(blob_definition("GetCodeCache", self.code_cache, self.compress_blobs))
        defs.append(blob_definition("GetSnapshotBlob", self.snapshot, self.compress_blobs))
        return defs


def render_main_source(entry: EntryPoint) -> str:
    template = _env.get_template(MAIN_TEMPLATE)
    return template.render(
        entry_point_literal=json.dumps(json.dumps(entry.entry_module)),
        register_functions=entry.register_functions,
        code_cache_mode=entry.code_cache_mode.cpp_name,
        snapshot_mode=entry.snapshot_mode.cpp_name,
        intermediate_file=INTERMEDIATE_FILE,
        embeds_main_script=entry.embeds_main_script,
        uses_brotli=entry.compress_blobs,
        blob_definitions=entry.blob_definitions(),
    )


# =========================
# BOOTSTRAP SHIM
# =========================
_JS_FLAGS = [(re.IGNORECASE, "i"), (re.MULTILINE, "m"), (re.DOTALL, "s")]
# Global inline flags; Python already folds them into pattern.flags
_LEADING_FLAGS_RE = re.compile(r"^\(\?[aiLmsux]+\)")
# Group openers that mean the same thing in both dialects
_SHARED_GROUPS = ("(?:", "(?=", "(?!", "(?<=", "(?<!")


def _unsupported(pattern: "re.Pattern[str]", construct: str) -> InvalidInput:
    return InvalidInput(
        f"require_regexp {pattern.pattern!r} uses {construct}, which has no JavaScript equivalent")


def js_regexp(pattern: "re.Pattern[str]") -> Tuple[str, str]:
    """Return (source, flags) for a JavaScript RegExp equivalent to `pattern`.

    Leading inline flags, named groups and the ``\\A``/``\\Z`` anchors are
    translated. Anything else without a JavaScript counterpart raises
    InvalidInput rather than producing a RegExp that matches differently.
    """
    if pattern.flags & re.VERBOSE:
        raise _unsupported(pattern, "verbose mode")
    multiline = bool(pattern.flags & re.MULTILINE)
    source = _LEADING_FLAGS_RE.sub("", pattern.pattern, count=1)

    out = []
    i = 0
    in_class = False
    while i < len(source):
        c = source[i]
        if c == "\\":
            escape = source[i:i + 2]
            if not in_class and escape in ("\\A", "\\Z"):
                # ^ and $ stop meaning start/end of input under the m flag
                if multiline:
                    raise _unsupported(pattern, f"{escape} together with MULTILINE")
                out.append("^" if escape == "\\A" else "$")
            else:
                out.append(escape)
            i += 2
            continue
        if in_class:
            if c == "]":
                in_class = False
            out.append(c)
            i += 1
            continue
        if c == "[":
            in_class = True
            out.append(c)
            i += 1
            # a leading ] (after an optional ^) is a literal in Python
            for literal in ("^", "]"):
                if source.startswith(literal, i):
                    out.append("\\]" if literal == "]" else literal)
                    i += 1
            continue
        if source.startswith("(?", i):
            if source.startswith("(?P<", i):
                out.append("(?<")
                i += 4
                continue
            if source.startswith("(?P=", i):
                end = source.find(")", i)
                out.append(f"\\k<{source[i + 4:end]}>")
                i = end + 1
                continue
            if not source.startswith(_SHARED_GROUPS, i):
                raise _unsupported(pattern, f"the group {source[i:i + 4]!r}")
        out.append(c)
        i += 1

    flags = "".join(js for py, js in _JS_FLAGS if pattern.flags & py)
    return "".join(out), flags


def bootstrap_config(require_mappings: Iterable[Tuple["re.Pattern[str]", str]],
                     enable_bindings_patch: Optional[bool] = None) -> Dict[str, Any]:
    mappings = [[*js_regexp(regexp), linked] for regexp, linked in require_mappings]
    if enable_bindings_patch is None:
        enable_bindings_patch = bool(mappings)
    return {
        "requireMappings": mappings,
        "enableBindingsPatch": enable_bindings_patch,
        "intermediateFile": INTERMEDIATE_FILE,
    }


def render_bootstrap_config(config: Dict[str, Any]) -> str:
    return _env.get_template(BOOTSTRAP_TEMPLATE).render(config_json=json.dumps(config, indent=2))


def render_bootstrap(require_mappings: Iterable[Tuple["re.Pattern[str]", str]],
                     enable_bindings_patch: Optional[bool] = None) -> str:
    return render_bootstrap_config(bootstrap_config(require_mappings, enable_bindings_patch))

from pathlib import Path

from nodeboxer.log import log_info, log_success


RESOURCES = Path(__file__).resolve().parent.parent / "resources"
PATCH_MARKER = "// _NODEBOXER_PATCHED_"

# (header inside <source>/src, snippet appended to it)
HEADER_PATCHES = [
    ("node.h", "add-node.h"),
    ("node_api.h", "add-node_api.h"),
]


def is_header_already_patched(header: Path) -> bool:
    return PATCH_MARKER in header.read_text(encoding="utf-8")


def patch_headers(source_tree: Path) -> None:
    """Append the static-registration overrides to node.h and node_api.h."""
    for header_name, snippet_name in HEADER_PATCHES:
        header = source_tree / "src" / header_name
        if is_header_already_patched(header):
            log_info(f"{header_name} already patched, skipping")
            continue
        snippet = (RESOURCES / snippet_name).read_text(encoding="utf-8")
        text = header.read_text(encoding="utf-8")
        if not text.endswith("\n"):
            text += "\n"
        header.write_text(f"{text}\n{PATCH_MARKER}\n{snippet}", encoding="utf-8")
        log_success(f"Patched {header}")

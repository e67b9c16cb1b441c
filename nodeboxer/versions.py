import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from nodeboxer.errors import NoMatchingVersion


RELEASE_BASE_URL = "https://nodejs.org/download/release"
NIGHTLY_BASE_URL = "https://nodejs.org/download/nightly"
RELEASE_INDEX_URL = f"{RELEASE_BASE_URL}/index.json"

NIGHTLY_RE = re.compile(r"-nightly\d+")
PARTIAL_RE = re.compile(
    r"^v?(\d+|[xX*])(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)
COMPARATOR_RE = re.compile(r"^(\^|~>?|>=|<=|>|<|=)?\s*(.*)$")
HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")


@dataclass(frozen=True)
class ResolvedRelease:
    version: Optional[str]
    source_url: Optional[str] = None
    checksum_url: Optional[str] = None
    local_path: Optional[Path] = None

    @property
    def tarball_name(self) -> str:
        return f"node-{self.version}.tar.gz"

    @property
    def is_local(self) -> bool:
        return self.local_path is not None


# =========================
# NPM RANGE TRANSLATION
# =========================
def _parse_partial(text: str):
    """Split `1.2.x` style versions into (major, minor, patch), None for wildcards."""
    m = PARTIAL_RE.match(text.strip())
    if not m:
        raise NoMatchingVersion(f"Invalid version in range: {text!r}")
    parts = []
    for p in m.groups():
        if p is None or p in ("x", "X", "*"):
            parts.append(None)
        else:
            parts.append(int(p))
    # Anything after a wildcard is a wildcard too
    for i in range(1, 3):
        if parts[i - 1] is None:
            parts[i] = None
    return tuple(parts)


def _comparator_to_specifiers(comp: str) -> List[str]:
    comp = comp.strip()
    if comp in ("", "*", "x", "X"):
        return []
    op, rest = COMPARATOR_RE.match(comp).groups()
    major, minor, patch = _parse_partial(rest)
    op = op or "="

    if major is None:
        # `*`, `>=*` and friends match everything, `<*` and `>*` nothing
        return ["<0"] if op in ("<", ">") else []

    lo = f"{major}.{minor or 0}.{patch or 0}"

    if op == "^":
        if major > 0 or minor is None:
            return [f">={lo}", f"<{major + 1}.0.0"]
        if minor > 0 or patch is None:
            return [f">={lo}", f"<0.{minor + 1}.0"]
        return [f">={lo}", f"<0.0.{patch + 1}"]
    if op.startswith("~"):
        if minor is None:
            return [f">={lo}", f"<{major + 1}.0.0"]
        return [f">={lo}", f"<{major}.{minor + 1}.0"]
    if op == "=":
        if minor is None:
            return [f">={lo}", f"<{major + 1}.0.0"]
        if patch is None:
            return [f">={lo}", f"<{major}.{minor + 1}.0"]
        return [f"=={lo}"]
    if op == ">=":
        return [f">={lo}"]
    if op == "<":
        return [f"<{lo}"]
    if op == ">":
        if minor is None:
            return [f">={major + 1}.0.0"]
        if patch is None:
            return [f">={major}.{minor + 1}.0"]
        return [f">{lo}"]
    # `<=`
    if minor is None:
        return [f"<{major + 1}.0.0"]
    if patch is None:
        return [f"<{major}.{minor + 1}.0"]
    return [f"<={lo}"]


def _hyphen_to_specifiers(low: str, high: str) -> List[str]:
    specs = _comparator_to_specifiers(f">={low}")
    specs += _comparator_to_specifiers(f"<={high}")
    return specs


def npm_range_to_specifiers(version_range: str) -> List[SpecifierSet]:
    """Translate an npm semver range into alternative SpecifierSets (`||`)."""
    alternatives = []
    for alt in version_range.split("||"):
        hyphen = HYPHEN_RE.match(alt)
        if hyphen:
            specs = _hyphen_to_specifiers(*hyphen.groups())
        else:
            # `>= 1.2` is legal npm syntax, glue operators back to their version
            alt = re.sub(r"(\^|~>?|>=|<=|>|<|=)\s+", r"\1", alt)
            specs = []
            for comp in alt.split():
                specs += _comparator_to_specifiers(comp)
        try:
            alternatives.append(SpecifierSet(",".join(specs)))
        except InvalidSpecifier as e:
            raise NoMatchingVersion(f"Invalid version range {version_range!r}: {e}")
    return alternatives


def satisfies(version: str, version_range: str) -> bool:
    try:
        v = Version(version.lstrip("v"))
    except InvalidVersion:
        return False
    return any(v in spec for spec in npm_range_to_specifiers(version_range))


# =========================
# RELEASE INDEX
# =========================
def get_node_version_info(session=None) -> List[Dict[str, Any]]:
    http = session or requests
    try:
        resp = http.get(RELEASE_INDEX_URL, timeout=60)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as e:
        raise NoMatchingVersion(f"Could not get Node.js version info from {RELEASE_INDEX_URL}: {e}")


def pick_best_version(version_range: str, infos: List[Dict[str, Any]]) -> Dict[str, Any]:
    specs = npm_range_to_specifiers(version_range)
    best = None
    best_version = None
    for info in infos:
        try:
            v = Version(str(info["version"]).lstrip("v"))
        except (KeyError, InvalidVersion):
            continue
        if not any(v in spec for spec in specs):
            continue
        if best_version is None or v > best_version:
            best, best_version = info, v
    if best is None:
        raise NoMatchingVersion(f"Could not find matching Node.js version for {version_range!r}")
    return best


def resolve_version(spec: str, session=None) -> ResolvedRelease:
    spec = spec.strip()
    if spec.startswith("file:"):
        return ResolvedRelease(version=None, local_path=Path(url2pathname(urlparse(spec).path)))

    if NIGHTLY_RE.search(spec):
        version = spec if spec.startswith("v") else f"v{spec}"
        base = f"{NIGHTLY_BASE_URL}/{version}"
        return ResolvedRelease(version=version, source_url=f"{base}/node-{version}.tar.gz")

    info = pick_best_version(spec, get_node_version_info(session))
    version = str(info["version"])
    if not version.startswith("v"):
        version = f"v{version}"
    base = f"{RELEASE_BASE_URL}/{version}"
    return ResolvedRelease(
        version=version,
        source_url=f"{base}/node-{version}.tar.gz",
        checksum_url=f"{base}/SHASUMS256.txt",
    )

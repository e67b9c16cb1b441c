import hashlib
import shutil
import tarfile
from pathlib import Path
from typing import Callable, Optional

import requests
import urllib3

from nodeboxer.errors import (
    RETRYABLE_ERRORS,
    IntegrityMismatch,
    MalformedArchive,
    SourceFetchError,
)
from nodeboxer.versions import ResolvedRelease


CHUNK_SIZE = 64 * 1024
SCRATCH_DIR = ".extract"


# =========================
# STREAM HELPERS
# =========================
class TeeReader:
    """File-like reader that copies every chunk it hands out into `sink`.

    The tar extractor pulls from this object, so the cache file receives
    exactly the bytes the extractor consumed, in the same read call.
    """

    def __init__(self, raw, sink, on_read: Optional[Callable[[int], None]] = None) -> None:
        self._raw = raw
        self._sink = sink
        self._on_read = on_read
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._raw.read(size)
        if chunk:
            self._sink.write(chunk)
            self.bytes_read += len(chunk)
            if self._on_read is not None:
                self._on_read(self.bytes_read)
        return chunk

    def drain(self) -> None:
        # tar stops at its end-of-archive marker, the gzip padding still has
        # to reach the cache file
        while self.read(CHUNK_SIZE):
            pass


def safe_filter(tarinfo, path):
    if tarinfo.name.startswith("/") or ".." in Path(tarinfo.name).parts:
        return None
    return tarinfo


def extract_stream(fileobj, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=fileobj, mode="r|gz") as tar:
        tar.extractall(dest, filter=safe_filter)


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


# =========================
# CHECKSUMS
# =========================
def fetch_expected_sha(checksum_url: str, tarball_name: str, session=None) -> Optional[str]:
    """Return the published digest for `tarball_name`, "" if it is not listed.

    Raises SourceFetchError when the manifest itself cannot be fetched.
    """
    http = session or requests
    try:
        resp = http.get(checksum_url, timeout=60)
        resp.raise_for_status()
        text = resp.text
    except requests.RequestException as e:
        raise SourceFetchError(f"Could not fetch {checksum_url}: {e}")
    for line in text.splitlines():
        fields = line.split()
        if len(fields) == 2 and fields[1].lstrip("*") == tarball_name:
            return fields[0].lower()
    return ""


def verify_cached_tarball(release: ResolvedRelease, cached: Path, logger, session=None) -> bool:
    if release.checksum_url is None:
        # nightly builds have no published manifest to check against
        return True
    logger.step_starting(f"Verifying existing tarball via {release.checksum_url}")
    try:
        expected = fetch_expected_sha(release.checksum_url, release.tarball_name, session)
    except SourceFetchError as e:
        logger.step_failed(e)
        logger.step_starting("Using cached tarball without verification")
        return True
    actual = sha256_file(cached)
    if expected != actual:
        logger.step_failed(IntegrityMismatch(cached, expected or None, actual))
        return False
    logger.step_starting("Unpacking existing tarball")
    return True


# =========================
# ACQUISITION
# =========================
def extract_local_archive(archive: Path, cache_dir: Path, logger) -> Path:
    logger.step_starting(f"Unpacking {archive} to {cache_dir}")
    if not archive.is_file():
        raise MalformedArchive(f"Archive not found: {archive}")
    scratch = cache_dir / SCRATCH_DIR
    if scratch.exists():
        shutil.rmtree(scratch)
    try:
        with open(archive, "rb") as f:
            extract_stream(f, scratch)
    except (tarfile.TarError, EOFError, OSError) as e:
        raise MalformedArchive(f"Cannot extract {archive}: {e}")

    items = list(scratch.iterdir())
    if len(items) != 1 or not items[0].is_dir():
        shutil.rmtree(scratch)
        raise MalformedArchive(
            f"Expected exactly one top-level directory in {archive}, found {len(items)} entries")
    dest = cache_dir / items[0].name
    if dest.exists():
        shutil.rmtree(dest)
    items[0].rename(dest)
    scratch.rmdir()
    logger.step_completed()
    return dest


def download_and_extract(release: ResolvedRelease, cache_dir: Path, cached: Path, logger, session=None) -> None:
    http = session or requests
    logger.step_starting(f"Downloading from {release.source_url}")
    try:
        with http.get(release.source_url, stream=True, timeout=60) as resp:
            if resp.status_code != 200:
                raise SourceFetchError(
                    f"Could not download Node.js source tarball: HTTP {resp.status_code}")

            logger.step_starting(f"Unpacking tarball to {cache_dir}")
            on_read = None
            total = int(resp.headers.get("Content-Length") or 0)
            if total:
                logger.start_progress(total)
                on_read = logger.do_progress

            # gzip is the payload here, not a transfer encoding
            resp.raw.decode_content = False
            with open(cached, "wb") as sink:
                tee = TeeReader(resp.raw, sink, on_read)
                extract_stream(tee, cache_dir)
                tee.drain()
    # resp.raw is a urllib3 response, its read errors are not wrapped by requests
    except (requests.RequestException, urllib3.exceptions.HTTPError,
            tarfile.TarError, EOFError, OSError) as e:
        raise SourceFetchError(f"Failed to fetch {release.source_url}: {e}")


def _acquire_once(release: ResolvedRelease, cache_dir: Path, logger, session=None) -> Path:
    cached = cache_dir / release.tarball_name
    has_cached = cached.is_file() and cached.stat().st_size > 0
    if has_cached:
        has_cached = verify_cached_tarball(release, cached, logger, session)

    if has_cached:
        try:
            with open(cached, "rb") as f:
                extract_stream(f, cache_dir)
        except (tarfile.TarError, EOFError, OSError) as e:
            cached.unlink(missing_ok=True)
            raise SourceFetchError(f"Cannot unpack cached tarball {cached}: {e}")
    else:
        cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            download_and_extract(release, cache_dir, cached, logger, session)
        except SourceFetchError:
            cached.unlink(missing_ok=True)
            raise

    source_tree = cache_dir / f"node-{release.version}"
    if not source_tree.is_dir():
        raise SourceFetchError(f"Tarball did not contain {source_tree.name}/")
    logger.step_completed()
    return source_tree


def acquire_source(release: ResolvedRelease, cache_dir: Path, logger, session=None, retries: int = 2) -> Path:
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)
    if release.is_local:
        return extract_local_archive(release.local_path, cache_dir, logger)

    attempt = 0
    while True:
        try:
            return _acquire_once(release, cache_dir, logger, session)
        except RETRYABLE_ERRORS as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.step_failed(e)
            logger.step_starting(f"Re-trying ({attempt}/{retries})")

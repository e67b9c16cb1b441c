from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional

from nodeboxer.build import spawn_build_command
from nodeboxer.errors import EmptyArtifact, InvalidInput


# Written by a GENERATE-mode binary into its working directory
INTERMEDIATE_FILE = "intermediate.out"


class BlobMode(Enum):
    IGNORE = "ignore"
    GENERATE = "generate"
    CONSUME = "consume"

    @property
    def cpp_name(self) -> str:
        return "k" + self.value.capitalize()


class BlobKind(Enum):
    CODE_CACHE = "code cache"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class BlobPhase:
    """Inputs for one render+build round."""

    code_cache_mode: BlobMode = BlobMode.IGNORE
    snapshot_mode: BlobMode = BlobMode.IGNORE
    code_cache: bytes = b""
    snapshot: bytes = b""

    @classmethod
    def for_kind(cls, kind: BlobKind, mode: BlobMode, artifact: bytes = b"") -> "BlobPhase":
        if kind is BlobKind.CODE_CACHE:
            return cls(code_cache_mode=mode, code_cache=artifact)
        return cls(snapshot_mode=mode, snapshot=artifact)


def select_blob_kind(use_code_cache: bool, use_snapshot: bool) -> Optional[BlobKind]:
    if use_code_cache and use_snapshot:
        raise InvalidInput("Code cache and snapshot support cannot be combined")
    if use_code_cache:
        return BlobKind.CODE_CACHE
    if use_snapshot:
        return BlobKind.SNAPSHOT
    return None


def run_generation(binary: Path, source_tree: Path, env: Dict[str, str], logger) -> bytes:
    intermediate = source_tree / INTERMEDIATE_FILE
    intermediate.unlink(missing_ok=True)
    spawn_build_command([binary], cwd=source_tree, env=env, logger=logger)
    try:
        data = intermediate.read_bytes()
    except FileNotFoundError:
        raise EmptyArtifact(intermediate)
    if not data:
        raise EmptyArtifact(intermediate)
    return data


def build_with_blobs(kind: Optional[BlobKind], build: Callable[[BlobPhase], Path],
                     source_tree: Path, env: Dict[str, str], logger) -> Path:
    """Drive IGNORE, or GENERATE -> self-run -> CONSUME, and return the final binary."""
    if kind is None:
        return build(BlobPhase())

    logger.step_starting(f"Building binary that generates the {kind.value}")
    generator = build(BlobPhase.for_kind(kind, BlobMode.GENERATE))

    logger.step_starting(f"Running {generator} to capture the {kind.value}")
    artifact = run_generation(generator, source_tree, env, logger)
    logger.step_starting(f"Captured {len(artifact)} bytes of {kind.value}")
    logger.step_completed()

    return build(BlobPhase.for_kind(kind, BlobMode.CONSUME, artifact))

from typing import List, Optional


class NodeBoxerError(Exception):
    pass


class InvalidInput(NodeBoxerError):
    pass


class NoMatchingVersion(NodeBoxerError):
    pass


class SourceFetchError(NodeBoxerError):
    pass


class IntegrityMismatch(NodeBoxerError):
    def __init__(self, path, expected: Optional[str], actual: str) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"SHA256 mismatch for {path}: got {actual}, expected {expected}")


class MalformedArchive(NodeBoxerError):
    pass


class DescriptorParseError(NodeBoxerError):
    def __init__(self, path, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot read {path}: {reason}")


class AddonLinkError(NodeBoxerError):
    pass


class BuildCommandFailed(NodeBoxerError):
    def __init__(self, command: List[str], returncode: int) -> None:
        self.command = list(command)
        self.returncode = returncode
        super().__init__(f"Command failed: {' '.join(self.command)} (code {returncode})")


class EmptyArtifact(NodeBoxerError):
    def __init__(self, path) -> None:
        self.path = path
        super().__init__(f"Expected a non-empty artifact at {path}")


# Errors after which a fresh source acquisition attempt may succeed
RETRYABLE_ERRORS = (SourceFetchError, IntegrityMismatch)

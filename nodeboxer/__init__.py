"""Compile a JavaScript file into a standalone Node.js executable."""

from nodeboxer.builder import compile_js_file_as_binary
from nodeboxer.config import CompilationOptions
from nodeboxer.errors import (
    AddonLinkError,
    BuildCommandFailed,
    DescriptorParseError,
    EmptyArtifact,
    IntegrityMismatch,
    InvalidInput,
    MalformedArchive,
    NoMatchingVersion,
    NodeBoxerError,
    SourceFetchError,
)
from nodeboxer.patchers.addons import AddonSpec

__version__ = "0.1.0"

__all__ = [
    "AddonLinkError",
    "AddonSpec",
    "BuildCommandFailed",
    "CompilationOptions",
    "DescriptorParseError",
    "EmptyArtifact",
    "IntegrityMismatch",
    "InvalidInput",
    "MalformedArchive",
    "NoMatchingVersion",
    "NodeBoxerError",
    "SourceFetchError",
    "compile_js_file_as_binary",
]

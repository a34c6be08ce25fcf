"""Exception hierarchy for aumai-imagemanifest.

Every error carries the process exit code the CLI reports for it.
"""

from __future__ import annotations

__all__ = [
    "AmbiguousRootLayer",
    "ArchiveIOError",
    "CorruptArchive",
    "InvalidChain",
    "InvalidInput",
    "KeyLoadError",
    "ManifestError",
    "MissingRootLayer",
    "SignatureVerificationError",
    "SigningError",
]


class ManifestError(Exception):
    """Base class for all pipeline failures."""

    exit_code: int = 1


class ArchiveIOError(ManifestError):
    """The archive could not be opened or read."""

    exit_code = 3


class CorruptArchive(ManifestError):
    """The archive is not a well-formed tar stream."""

    exit_code = 4


class MissingRootLayer(ManifestError):
    """No layer without a parent was found."""

    exit_code = 5


class InvalidChain(ManifestError):
    """The layer records do not form a single linear chain."""

    exit_code = 6


class AmbiguousRootLayer(InvalidChain):
    """More than one layer claims to be the root."""


class KeyLoadError(ManifestError):
    """The signing key could not be loaded."""

    exit_code = 7


class SigningError(ManifestError):
    """Producing the signed envelope failed."""

    exit_code = 7


class SignatureVerificationError(ManifestError):
    """A signed manifest did not verify."""

    exit_code = 8


class InvalidInput(ManifestError, ValueError):
    """An archive entry held data of the wrong shape."""

    exit_code = 9

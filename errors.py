"""
Error taxonomy for the datmerge patch engine.

Only bundle parsing and the integrity gate stop an operation before anything
is touched. ``MissingSourceError`` is never raised by the engine: instances
are collected in ``OperationResult.warnings`` so callers can show them.
"""


class DatMergeError(Exception):
    """Base class for all datmerge errors."""


class BundleFormatError(DatMergeError):
    """The mod bundle is unreadable or its metadata is missing or invalid."""


class IntegrityMismatchError(DatMergeError):
    """The primary base tier changed since the last reconcile or migration."""


class MissingSourceError(DatMergeError):
    """A referenced file was not found in any known tier."""


class ContainerWriteError(DatMergeError):
    """Rebuilding a container failed; its on-disk state is unknown."""


class ContainerFormatError(DatMergeError):
    """A container could not be parsed."""


class ManifestStoreError(DatMergeError):
    """The installation manifest is missing, unreadable or unsupported."""

"""Exception hierarchy shared by the authority, the deferred script and the client."""

from __future__ import annotations


class ModSyncError(Exception):
    """Base class for all modsync errors."""


class StateError(ModSyncError):
    """A desired-state document could not be read, written or edited."""


class ProtectedBundleError(StateError):
    """An edit or removal targeted a protected bundle."""


class StagingError(ModSyncError):
    """Downloading or extracting a bundle into the staging cache failed."""


class PathSecurityError(ModSyncError):
    """A requested path escapes the installation root or its sync roots."""


class ManifestFetchError(ModSyncError):
    """The authority manifest or config could not be fetched or parsed."""

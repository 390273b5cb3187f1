"""
Error taxonomy for secret synchronization.

Every failure raised while resolving a store, fetching, extracting,
templating or writing is a SecretSyncError. The controller is the only
place that decides whether a failure is retried quickly (transient) or
slowly (permanent).
"""

from typing import Optional


class SecretSyncError(Exception):
    """Base class for all reconcile failures."""

    kind: str = "Unknown"
    transient: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class StoreNotFound(SecretSyncError):
    """The referenced secret store does not exist."""

    kind = "StoreNotFound"

    def __init__(self, name: str, namespace: Optional[str] = None):
        self.name = name
        self.namespace = namespace
        scope = f" in namespace '{namespace}'" if namespace else ""
        super().__init__(f"secret store '{name}' not found{scope}")


class InvalidStoreConfig(SecretSyncError):
    """The store declaration cannot be turned into a provider client."""

    kind = "InvalidStoreConfig"


class InvalidSpec(SecretSyncError):
    """The external secret declaration could not be parsed."""

    kind = "InvalidSpec"


class KeyNotFound(SecretSyncError):
    """The remote key (or requested version) does not exist in the backend."""

    kind = "KeyNotFound"

    def __init__(self, key: str, version: Optional[str] = None):
        self.key = key
        self.version = version
        suffix = f" (version {version})" if version else ""
        super().__init__(f"key '{key}'{suffix} not found")


class PropertyNotFound(SecretSyncError):
    """The property path does not resolve inside the fetched payload."""

    kind = "PropertyNotFound"

    def __init__(self, property_path: str, key: Optional[str] = None):
        self.property = property_path
        self.key = key
        where = f" in key '{key}'" if key else ""
        super().__init__(f"property '{property_path}' not found{where}")


class MalformedPayload(SecretSyncError):
    """A property was requested but the payload is not structured data."""

    kind = "MalformedPayload"


class Unauthorized(SecretSyncError):
    """The backend rejected the credentials."""

    kind = "Unauthorized"


class Unavailable(SecretSyncError):
    """The backend could not be reached or returned a server error."""

    kind = "Unavailable"
    transient = True


class ProviderTimeout(SecretSyncError):
    """A backend call or the whole attempt ran out of time."""

    kind = "Timeout"
    transient = True


class TemplateRenderError(SecretSyncError):
    """A template referenced a value that could not be rendered."""

    kind = "TemplateRenderError"


class WriteConflict(SecretSyncError):
    """The target record kept changing underneath the writer."""

    kind = "WriteConflict"
    transient = True


class ReconcileAbandoned(Exception):
    """
    Raised when the declaration was deleted or superseded mid-attempt.

    Not a failure: nothing was committed and the status is left untouched.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def is_transient(error: BaseException) -> bool:
    """Return True if the error should be retried with exponential backoff."""
    if isinstance(error, SecretSyncError):
        return error.transient
    # Anything outside the taxonomy is treated as a transient fault.
    return True


def error_kind(error: BaseException) -> str:
    """Return the taxonomy kind for an error, or its class name."""
    if isinstance(error, SecretSyncError):
        return error.kind
    return type(error).__name__

"""Error taxonomy shared by record stores, the reconciler and the manager.

Stores raise these domain exceptions, never client-library ones -- mapping
``ApiException`` status codes is the Kubernetes store's responsibility.
"""

from __future__ import annotations


class StoreError(RuntimeError):
    """A store call failed.  Always retryable from the reconciler's view."""


class RecordNotFoundError(StoreError, LookupError):
    """Raised when a record or derived resource does not exist."""


class ConflictError(StoreError):
    """Raised when an update was based on a stale resource version."""


class AlreadyExistsError(StoreError):
    """Raised when creating a derived resource whose name is taken."""


class ShuttingDownError(RuntimeError):
    """Raised by the work queue once shutdown has begun."""


class UnsupportedBackendError(ValueError):
    """Raised when the configured pipeline backend is not served by this controller."""

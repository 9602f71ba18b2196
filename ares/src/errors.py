from __future__ import annotations


class AresError(RuntimeError):
    """Base class for every failure raised by the reconciliation engine."""


class ConfigError(AresError):
    """Raised when configuration or managed-record data is invalid.

    Fatal to the task that encounters it; the reconcile driver does not retry.
    """


class IncompleteRecordError(ConfigError):
    """Raised by :meth:`RecordBuilder.finalize` when ttl or value is unset."""


class OwnershipError(AresError):
    """A mutation was refused because tracking-record state did not allow it."""


class RecordAlreadyOwnedError(OwnershipError):
    """A tracking record already exists; adding could clobber another owner."""


class UnownedRecordError(OwnershipError):
    """No tracking record exists, so the record was not created by ARES."""


class ProviderError(AresError):
    """Network, auth, or malformed-response failure talking to a DNS backend."""


class UnsupportedOperationError(AresError, NotImplementedError):
    """The backend does not implement the requested optional operation."""


class CollectionError(AresError):
    """Cluster state needed to derive record values is missing or incomplete.

    Cluster state is eventually consistent, so these are retried.
    """


class WatchError(AresError):
    """A watch stream reported an error or closed unexpectedly."""


class RecordDeletedError(AresError):
    """The managed record resource was deleted while it was being watched."""

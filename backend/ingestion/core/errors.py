from __future__ import annotations

"""Controlled ingestion errors.

- Jobs are failure-tolerant: one entity or artifact failing never aborts a batch.
- These errors are *signals* for classification and logging. Jobs catch them
  per item; only configuration errors are allowed to stop a process at startup.
- Lease contention is not an error and has no exception type.
"""


class IngestionError(RuntimeError):
    """Base error for ingestion; should be caught and logged, not propagated."""


class ProviderError(IngestionError):
    """Raised by a provider client when a call does not yield usable data."""


class TransientProviderError(ProviderError):
    """Rate limited, timed out, 5xx or otherwise worth retrying later."""


class PermanentProviderError(ProviderError):
    """The provider refused the request in a way retrying will not fix."""


class ArtifactNotFoundError(PermanentProviderError):
    """The provider has no such artifact."""


class OutsideRetentionError(PermanentProviderError):
    """The artifact is older than the provider keeps data for."""


class InvalidIdentifierError(IngestionError, ValueError):
    """A malformed entity id, artifact id or lease key (programming/config error)."""


class SettingsError(IngestionError, ValueError):
    """Job configuration failed validation."""

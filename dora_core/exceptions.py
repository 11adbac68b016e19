"""
Error kinds raised by the ingestion and metric layers.

Each kind maps to one handling policy: the API gateway turns them into HTTP
status codes, and the backfill scheduler decides per kind whether to skip a
record or abort a source's batch.
"""


class DoraError(Exception):
    """Base class for all errors raised by dora_core."""


class ValidationError(DoraError):
    """
    Malformed input: blank external key, bad time window, missing required
    field, unparseable payload. Surfaced to the caller, never retried.
    """


class ConflictError(DoraError):
    """
    An observation disagrees with an immutable field of the stored record
    (e.g. two different start times for one incident number). The record is
    left untouched.
    """

    def __init__(self, kind: str, external_key: str, field: str, stored, observed):
        self.kind = kind
        self.external_key = external_key
        self.field = field
        self.stored = stored
        self.observed = observed
        super().__init__(
            f"{kind} {external_key!r}: immutable field '{field}' is {stored!r}, observed {observed!r}"
        )


class ExternalSourceError(DoraError):
    """
    An upstream fetch failed (transport error, non-2xx, bad body, timeout).
    Retried only by the next scheduled backfill tick.
    """

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class StoreError(DoraError):
    """Storage unavailable or an unexpected constraint failure."""

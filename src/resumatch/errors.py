"""Error taxonomy for the retry and deduplication core.

Callers distinguish four cases:

* ``TransientQuotaError``: the inference service rate-limited us. Never shown
  as a failure; the unit of work is queued instead.
* ``ReferencedEntityMissing``: the row a queued unit refers to is gone. Workers
  treat this as a vacuous success.
* ``PersistenceConflict``: a unique constraint rejected a concurrent duplicate.
  Expected (and swallowed) for match results only.
* anything else is unclassified and fails that one unit of work.
"""

from __future__ import annotations

from datetime import datetime


class ResumatchError(Exception):
    """Base class for errors raised by this package."""


class TransientQuotaError(ResumatchError):
    """Classified rate limit from the inference service."""

    def __init__(self, message: str = "rate limit exceeded", retry_after: datetime | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitExhaustedError(TransientQuotaError):
    """Raised by the inline retry helper once its attempts are spent."""


class ReferencedEntityMissing(ResumatchError):
    def __init__(self, entity: str, entity_id: int):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PersistenceConflict(ResumatchError):
    def __init__(self, entity: str, key: object):
        super().__init__(f"{entity} already exists for {key!r}")
        self.entity = entity
        self.key = key


class InferenceError(ResumatchError):
    """The inference call returned content that could not be used."""

"""
Error taxonomy for the memory engine.

Collaborator failures (extraction, decision, embedding) are transient: they are absorbed at the
write-path boundary and degrade to "nothing learned". Slot conflicts are retried internally with a
fresh read. Invariant violations and exhausted jobs are surfaced, never repaired.
"""

from typing import Optional


class MemcoreError(Exception):
    """Base exception for memory engine errors."""
    pass


class CollaboratorUnavailable(MemcoreError):
    """An external collaborator (LLM or embedding service) failed or timed out."""
    pass


class ExtractionUnavailable(CollaboratorUnavailable):
    """Fact extraction collaborator is unavailable."""
    pass


class DecisionUnavailable(CollaboratorUnavailable):
    """Decision collaborator is unavailable or returned an unusable answer."""
    pass


class EmbeddingUnavailable(CollaboratorUnavailable):
    """Embedding service is unavailable."""
    pass


class SlotConflict(MemcoreError):
    """A concurrent writer changed the slot or record between read and write."""

    def __init__(self, message: str, record_id: Optional[str] = None, slot: Optional[tuple] = None):
        super().__init__(message)
        self.record_id = record_id
        self.slot = slot


class InvariantViolation(MemcoreError):
    """An operation would break a store invariant (second active record in a slot, chain cycle, ...)."""
    pass


class RecordNotFound(MemcoreError):
    """No record with the requested id exists for the owner."""
    pass


class JobFailed(MemcoreError):
    """A maintenance job exhausted its attempts."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id

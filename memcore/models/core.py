"""
Core data models for the memory engine.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.text_utils import normalize_predicate, normalize_subject
from ..utils.timestamp_utils import to_iso, utc_now

RECORD_KINDS = ('entity', 'fact', 'preference', 'event', 'goal', 'procedure', 'decision', 'action')
SENSITIVITY_RANK = {'normal': 0, 'sensitive': 1, 'private': 2}
IMPORTANCE_TIERS = {'critical': 1.0, 'high': 0.8, 'medium': 0.5, 'low': 0.3, 'trivial': 0.1}


class RecordStatus(str, Enum):
    ACTIVE = 'active'
    SUPERSEDED = 'superseded'
    ARCHIVED = 'archived'


class Operation(str, Enum):
    ADD = 'ADD'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'
    NOOP = 'NOOP'
    CONSOLIDATE = 'CONSOLIDATE'


class MergeStrategy(str, Enum):
    REPLACE = 'replace'
    APPEND = 'append'
    SUPERSEDE = 'supersede'


class OperationStatus(str, Enum):
    APPLIED = 'applied'
    NOOP = 'noop'
    FAILED = 'failed'  # collaborator unavailable after retries
    REJECTED = 'rejected'  # invariant violation


class JobType(str, Enum):
    DECAY = 'decay'
    CONSOLIDATE = 'consolidate'
    RESUMMARIZE = 'resummarize'
    REINDEX = 'reindex'
    CLEANUP = 'cleanup'


class JobStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'


def tier_score(tier: Optional[str]) -> float:
    return IMPORTANCE_TIERS.get((tier or 'medium').lower(), IMPORTANCE_TIERS['medium'])


@dataclass
class MemoryRecord:
    """Atomic unit of stored knowledge.

    A record belongs to exactly one owner. Records with a predicate occupy the slot
    (owner, subject, predicate); at most one record per slot is active at any time.
    """
    id: str
    owner_id: str
    kind: str  # one of RECORD_KINDS
    subject_name: str  # entity the record is about, as written
    content: str
    predicate: Optional[str] = None
    object_value: Optional[str] = None
    embedding: Optional[List[float]] = None  # nullable until computed
    embedding_model: Optional[str] = None
    importance: float = 0.5
    base_importance: float = 0.5  # decay restarts from here after each access
    importance_tier: str = 'medium'
    pinned: bool = False  # explicitly marked important by the user
    sentiment: Optional[float] = None
    confidence: Optional[float] = None
    is_historical: bool = False
    effective_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    recurrence: Optional[Dict[str, Any]] = None  # e.g. {"type": "weekly", "day": "Monday"}
    sensitivity: str = 'normal'
    category: str = 'general'
    status: str = RecordStatus.ACTIVE.value
    supersedes_id: Optional[str] = None
    superseded_by_id: Optional[str] = None
    version: int = 1
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    source_text: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def subject_key(self) -> str:
        return normalize_subject(self.subject_name)

    @property
    def slot(self) -> Optional[Tuple[str, str, str]]:
        """(owner, subject, predicate) slot key, None for free-form records."""
        predicate = normalize_predicate(self.predicate)
        if predicate is None:
            return None
        return (self.owner_id, self.subject_key, predicate)

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE.value

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_embedding:
            data.pop('embedding', None)
        for key in ('effective_from', 'expires_at', 'last_accessed_at', 'created_at', 'updated_at'):
            data[key] = to_iso(data[key])
        return data


@dataclass
class CandidateFact:
    """A normalized, not-yet-committed unit of information extracted from raw text."""
    kind: str
    subject_name: str
    content: str
    predicate: Optional[str] = None
    object_value: Optional[str] = None
    is_historical: bool = False
    effective_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    recurrence: Optional[Dict[str, Any]] = None
    sensitivity: str = 'normal'
    importance_tier: str = 'medium'
    pinned: bool = False
    sentiment: Optional[float] = None
    confidence: Optional[float] = None
    category: Optional[str] = None
    do_not_remember: bool = False  # user asked not to keep this
    source_text: Optional[str] = None
    embedding: Optional[List[float]] = None

    @property
    def subject_key(self) -> str:
        return normalize_subject(self.subject_name)

    def to_prompt_dict(self) -> Dict[str, Any]:
        """Fields shown to the decision collaborator."""
        return {
            'kind': self.kind,
            'subject_name': self.subject_name,
            'content': self.content,
            'predicate': self.predicate,
            'object': self.object_value,
            'is_historical': self.is_historical,
            'effective_from': to_iso(self.effective_from),
            'expires_at': to_iso(self.expires_at),
            'sensitivity': self.sensitivity,
            'source_text': self.source_text,
        }


@dataclass
class SimilarRecord:
    """A record returned by the similarity retriever with its cosine similarity."""
    record: MemoryRecord
    similarity: float


@dataclass
class Decision:
    """Output of the decision collaborator, possibly rewritten by deterministic overrides."""
    operation: Operation
    reasoning: str = ''
    merge_strategy: Optional[MergeStrategy] = None
    target_id: Optional[str] = None
    hard_delete: bool = False
    same_entity: bool = False  # collaborator asserts target denotes the same entity under another name
    overrides: List[str] = field(default_factory=list)
    target_version: Optional[int] = None  # version of the target the decision was based on


@dataclass
class MemoryOperation:
    """Immutable audit entry for one decision of the update engine or one consolidation merge."""
    id: str
    owner_id: str
    operation: str
    status: str
    candidate_text: str = ''
    candidate: Optional[Dict[str, Any]] = None
    similar: List[Dict[str, Any]] = field(default_factory=list)  # [{id, content, similarity}]
    reasoning: str = ''
    merge_strategy: Optional[str] = None
    hard_delete: bool = False
    target_id: Optional[str] = None
    result_record_ids: List[str] = field(default_factory=list)
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    old_version: Optional[int] = None
    new_version: Optional[int] = None
    deleted_snapshot: Optional[Dict[str, Any]] = None
    overrides: List[str] = field(default_factory=list)
    error: Optional[str] = None
    job_id: Optional[str] = None
    processing_time_ms: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = to_iso(self.created_at)
        return data


@dataclass
class CategorySummary:
    """Synthesized narrative over the active records of one category."""
    id: str
    owner_id: str
    category: str
    summary_text: str
    member_record_ids: List[str] = field(default_factory=list)
    version: int = 1
    source_hash: Optional[str] = None
    last_synthesized_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_synthesized_at'] = to_iso(self.last_synthesized_at)
        return data


@dataclass
class MaintenanceJob:
    """Queued unit of background work."""
    id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = JobStatus.PENDING.value
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime = field(default_factory=utc_now)
    depends_on: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self.payload.get('owner_id')


@dataclass
class RetrievalResult:
    """Token-bounded context assembled for a query."""
    summaries: List[CategorySummary] = field(default_factory=list)
    records: List[MemoryRecord] = field(default_factory=list)
    tokens_used: int = 0
    source: str = 'none'  # summaries | records | none
    scores: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'tokens_used': self.tokens_used,
            'summaries': [summary.to_dict() for summary in self.summaries],
            'records': [dict(record.to_dict(), score=self.scores.get(record.id)) for record in self.records],
        }

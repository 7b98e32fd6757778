"""
Interfaces of the collaborators the engine depends on.

Bedrock-backed implementations live next to this module; tests substitute in-process fakes.
"""

from typing import List, Optional, Protocol, Sequence

from ..models.core import CandidateFact, CategorySummary, Decision, MemoryRecord, SimilarRecord


class Embedder(Protocol):
    """Pure function text -> fixed-size vector. Raises EmbeddingUnavailable on failure."""

    model_id: str

    def embed_document(self, text: str) -> List[float]:
        ...

    def embed_query(self, text: str) -> List[float]:
        ...


class FactExtractor(Protocol):
    """Turns raw text into candidate facts. Never raises; failure yields an empty list."""

    def extract(self, text: str, known_entities: Sequence[str] = ()) -> List[CandidateFact]:
        ...


class DecisionMaker(Protocol):
    """Chooses ADD/UPDATE/DELETE/NOOP for a candidate. Raises DecisionUnavailable on failure."""

    def decide(self, candidate: CandidateFact, similar: Sequence[SimilarRecord]) -> Decision:
        ...


class SimilarityRetriever(Protocol):
    """Owner-scoped nearest-neighbour search over active records."""

    def find_similar(self, owner_id: str, embedding: Sequence[float], k: int, threshold: float) -> List[SimilarRecord]:
        ...

    def sync(self, record: MemoryRecord) -> None:
        ...

    def remove(self, record_id: str) -> None:
        ...


class SummaryWriter(Protocol):
    """Rewrites a category narrative from its member records."""

    def write_summary(self, category: str, records: Sequence[MemoryRecord], previous: Optional[str] = None) -> str:
        ...


class SufficiencyJudge(Protocol):
    """Decides whether category summaries alone answer a query."""

    def is_sufficient(self, query: str, summaries: Sequence[CategorySummary]) -> bool:
        ...

"""
Retrieval Composer: token-bounded context for a query, category summaries first, records second.
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from ..models.core import SENSITIVITY_RANK, CategorySummary, MemoryRecord, RecordStatus, RetrievalResult, SimilarRecord
from ..models.errors import EmbeddingUnavailable
from ..utils.config import RetrievalConfig
from ..utils.logging_config import get_logger
from ..utils.text_utils import categories_for_query, estimate_tokens
from ..utils.timestamp_utils import days_between, utc_now
from .contracts import Embedder, SimilarityRetriever, SufficiencyJudge
from .memory_store import MemoryStore
from .similarity import cosine_similarity

logger = get_logger(__name__)

SIMILARITY_WEIGHT = 0.5
IMPORTANCE_WEIGHT = 0.2
RECENCY_WEIGHT = 0.15
ACCESS_WEIGHT = 0.15


def recency_score(updated_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """0.95 per week since the record last changed."""
    weeks = days_between(updated_at, now) / 7.0
    return 0.95**weeks


def access_score(access_count: int) -> float:
    return min(1.0, 0.5 + math.log(max(1, access_count)) / 10.0)


def composite_score(similarity: float, record: MemoryRecord, now: Optional[datetime] = None) -> float:
    return (SIMILARITY_WEIGHT * similarity + IMPORTANCE_WEIGHT * record.importance +
            RECENCY_WEIGHT * recency_score(record.updated_at, now) + ACCESS_WEIGHT * access_score(record.access_count))


def is_effective(record: MemoryRecord, now: datetime) -> bool:
    return record.effective_from is None or record.effective_from <= now


class RetrievalComposer:
    """Assembles tiered, token-budgeted context from summaries and records."""

    def __init__(self,
                 store: MemoryStore,
                 embedder: Embedder,
                 retriever: SimilarityRetriever,
                 judge: SufficiencyJudge,
                 config: Optional[RetrievalConfig] = None):
        self.store = store
        self.embedder = embedder
        self.retriever = retriever
        self.judge = judge
        self.config = config or RetrievalConfig()

    def retrieve(self,
                 owner_id: str,
                 query_text: str,
                 token_budget: Optional[int] = None,
                 max_sensitivity: Optional[str] = None,
                 now: Optional[datetime] = None) -> RetrievalResult:
        """
        Build context for a query.

        Args:
            owner_id: Owner whose memories are searched
            query_text: Natural-language query
            token_budget: Maximum estimated tokens in the result (config default when None)
            max_sensitivity: Most sensitive level allowed in record results
            now: Reference time for effective_from and recency

        Returns:
            RetrievalResult with either summaries or records
        """
        budget = self.config.default_token_budget if token_budget is None else token_budget
        max_sensitivity = max_sensitivity or self.config.max_sensitivity
        if max_sensitivity not in SENSITIVITY_RANK:
            raise ValueError(f'Unknown sensitivity level: {max_sensitivity}')
        now = now or utc_now()
        if budget <= 0 or not (query_text or '').strip():
            return RetrievalResult()

        summaries, summary_tokens = self._pack_summaries(self._relevant_summaries(owner_id, query_text), budget)
        if summaries and self.judge.is_sufficient(query_text, summaries):
            logger.debug(f'Answering "{query_text}" for owner {owner_id} from {len(summaries)} summaries')
            return RetrievalResult(summaries=summaries, tokens_used=summary_tokens, source='summaries')

        try:
            embedding = self.embedder.embed_query(query_text)
        except EmbeddingUnavailable as e:
            logger.warning(f'Query embedding unavailable, returning summaries only: {e}')
            if summaries:
                return RetrievalResult(summaries=summaries, tokens_used=summary_tokens, source='summaries')
            return RetrievalResult()

        similar = self.retriever.find_similar(owner_id, embedding, self.config.candidate_pool, self.config.min_similarity)
        candidates = self._visible(similar, embedding, max_sensitivity, now)
        result = self._pack_records(candidates, budget, now)
        if result.records:
            self.store.record_access([record.id for record in result.records], now=now)
        logger.debug(f'Composed {len(result.records)} records ({result.tokens_used} tokens) for owner {owner_id}')
        return result

    def _relevant_summaries(self, owner_id: str, query_text: str) -> List[CategorySummary]:
        categories = categories_for_query(query_text)
        summaries = self.store.list_summaries(owner_id, categories or None)
        return [summary for summary in summaries if summary.summary_text.strip()]

    @staticmethod
    def _pack_summaries(summaries: Sequence[CategorySummary], budget: int) -> Tuple[List[CategorySummary], int]:
        packed, used = [], 0
        for summary in summaries:
            tokens = estimate_tokens(summary.summary_text)
            if used + tokens > budget:
                continue
            packed.append(summary)
            used += tokens
        return packed, used

    def _visible(self, similar: Sequence[SimilarRecord], embedding: Sequence[float], max_sensitivity: str,
                 now: datetime) -> List[SimilarRecord]:
        """Drop records that may not be shown; a not-yet-effective record yields to its predecessor."""
        limit = SENSITIVITY_RANK[max_sensitivity]
        seen = set()
        visible = []
        for item in similar:
            record, similarity = item.record, item.similarity
            if not is_effective(record, now):
                record = self._effective_predecessor(record, now)
                if record is None:
                    continue
                similarity = cosine_similarity(embedding, record.embedding) if record.embedding else similarity
            if record.id in seen or SENSITIVITY_RANK.get(record.sensitivity, 2) > limit:
                continue
            seen.add(record.id)
            visible.append(SimilarRecord(record=record, similarity=similarity))
        return visible

    def _effective_predecessor(self, record: MemoryRecord, now: datetime) -> Optional[MemoryRecord]:
        current = record
        while current.supersedes_id:
            previous = self.store.get_by_id(current.supersedes_id, owner_id=record.owner_id)
            if previous is None or previous.status != RecordStatus.SUPERSEDED.value:
                return None
            if is_effective(previous, now):
                return previous
            current = previous
        return None

    def _pack_records(self, candidates: Sequence[SimilarRecord], budget: int, now: datetime) -> RetrievalResult:
        scored = sorted(((composite_score(item.similarity, item.record, now), item.record) for item in candidates),
                        key=lambda pair: pair[0],
                        reverse=True)
        result = RetrievalResult(source='records')
        for score, record in scored:
            remaining = budget - result.tokens_used
            if remaining <= 0:
                break
            tokens = estimate_tokens(record.content)
            if tokens > remaining or score / tokens < self.config.min_value_per_token:
                continue
            result.records.append(record)
            result.scores[record.id] = round(score, 4)
            result.tokens_used += tokens
        if not result.records:
            result.source = 'none'
        return result

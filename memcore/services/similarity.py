"""
Similarity retrievers: owner-scoped top-k cosine search over active records.

StoreScanRetriever scans the owner's active records with numpy and suits small stores and tests.
OpenSearchRetriever delegates candidate generation to an HNSW k-NN index and re-checks every hit
against the store, so stale index entries never leak archived or foreign records.
"""

from typing import List, Optional, Sequence

import numpy as np

from ..models.core import MemoryRecord, SimilarRecord
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import to_iso
from .memory_store import MemoryStore

logger = get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def top_k_by_cosine(query: Sequence[float], records: Sequence[MemoryRecord], k: int, threshold: float) -> List[SimilarRecord]:
    """Rank records by cosine similarity to query, keeping those strictly above threshold.

    Records without an embedding, or with one of a different dimension, are skipped.
    """
    q = np.asarray(query, dtype=np.float32)
    usable = [r for r in records if r.embedding is not None and len(r.embedding) == q.shape[0]]
    if not usable or k <= 0 or not np.any(q):
        return []

    matrix = normalize_rows(np.asarray([r.embedding for r in usable], dtype=np.float32))
    scores = matrix @ (q / np.linalg.norm(q))
    order = np.argsort(-scores, kind='stable')

    results = []
    for idx in order:
        score = float(scores[idx])
        if score <= threshold:
            break
        results.append(SimilarRecord(record=usable[int(idx)], similarity=score))
        if len(results) >= k:
            break
    return results


class StoreScanRetriever:
    """Brute-force retriever over the relational store."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def find_similar(self, owner_id: str, embedding: Sequence[float], k: int, threshold: float) -> List[SimilarRecord]:
        records = self.store.list_records(owner_id)
        results = top_k_by_cosine(embedding, records, k, threshold)
        logger.debug(f'Store scan over {len(records)} records returned {len(results)} matches for owner {owner_id}')
        return results

    def sync(self, record: MemoryRecord) -> None:
        # the store is the index
        pass

    def remove(self, record_id: str) -> None:
        pass


class OpenSearchRetriever:
    """k-NN retriever backed by an OpenSearch index kept in sync with the store."""

    def __init__(self, store: MemoryStore, client: OpenSearchClient, overfetch: int = 2):
        """
        Args:
            store: Source of truth used to re-check hits
            client: OpenSearch client holding the record index
            overfetch: Multiplier on k to absorb stale or filtered hits
        """
        self.store = store
        self.client = client
        self.overfetch = overfetch

    def ensure_index(self) -> str:
        return self.client.create_index_if_not_exists()

    def find_similar(self, owner_id: str, embedding: Sequence[float], k: int, threshold: float) -> List[SimilarRecord]:
        hits = self.client.vector_search(list(embedding), owner_id, top_k=max(k * self.overfetch, k), filters={'status': 'active'})

        results = []
        for hit in hits:
            record = self.store.get_by_id(hit['id'], owner_id=owner_id)
            if record is None or not record.is_active:
                logger.debug(f'Skipping stale index entry {hit["id"]}')
                continue
            if record.embedding is not None:
                similarity = cosine_similarity(embedding, record.embedding)
            else:
                # cosinesimil scores are 1 / (2 - cos)
                similarity = 2.0 - 1.0 / hit['score'] if hit['score'] else 0.0
            if similarity > threshold:
                results.append(SimilarRecord(record=record, similarity=similarity))

        results.sort(key=lambda item: item.similarity, reverse=True)
        return results[:k]

    def sync(self, record: MemoryRecord) -> None:
        """Mirror a record into the index, or drop it when it is no longer searchable."""
        if not record.is_active or record.embedding is None:
            self.remove(record.id)
            return
        document = {
            'id': record.id,
            'owner_id': record.owner_id,
            'subject_key': record.subject_key,
            'predicate': record.predicate,
            'status': record.status,
            'category': record.category,
            'sensitivity': record.sensitivity,
            'content': record.content,
            'embedding': record.embedding,
            'updated_at': to_iso(record.updated_at),
        }
        self.client.index_document(record.id, document)

    def remove(self, record_id: str) -> None:
        try:
            self.client.delete_document(record_id)
        except OpenSearchError as e:
            # search re-checks the store, so a leftover entry is harmless
            logger.warning(f'Failed to remove {record_id} from index: {e}')


def build_retriever(backend: str, store: MemoryStore, client: Optional[OpenSearchClient] = None):
    """Pick the retriever for the configured backend ('store' or 'opensearch')."""
    if backend == 'opensearch':
        if client is None:
            from ..utils.config import config
            client = OpenSearchClient(config.opensearch)
        retriever = OpenSearchRetriever(store, client)
        retriever.ensure_index()
        return retriever
    if backend != 'store':
        raise ValueError(f'Unknown retriever backend: {backend}')
    return StoreScanRetriever(store)

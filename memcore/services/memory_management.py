"""
Memory Management Service: one entry point wiring extraction, the update engine, retrieval and
maintenance over a shared memory database.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import CandidateFact, MaintenanceJob, MemoryOperation, MemoryRecord, RetrievalResult
from ..models.errors import RecordNotFound
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.database import create_database_engine
from ..utils.health_check import get_health_status
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from .audit_log import AuditLog
from .contracts import DecisionMaker, Embedder, FactExtractor, SimilarityRetriever, SufficiencyJudge, SummaryWriter
from .decision import BedrockDecisionMaker
from .fact_extraction import FactExtractionService
from .maintenance import JobQueue, MaintenanceJobs, MaintenanceScheduler
from .memory_store import MemoryStore
from .retrieval import RetrievalComposer
from .similarity import build_retriever
from .summaries import BedrockSufficiencyJudge, BedrockSummaryWriter, HeuristicSufficiencyJudge
from .update_engine import UpdateDecisionEngine

logger = get_logger(__name__)

MAX_KNOWN_ENTITIES = 50


class MemoryManagementService:
    """Unified service for learning, retrieval and maintenance of owner-scoped memories."""

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 engine=None,
                 embedder: Optional[Embedder] = None,
                 extractor: Optional[FactExtractor] = None,
                 decision_maker: Optional[DecisionMaker] = None,
                 retriever: Optional[SimilarityRetriever] = None,
                 summary_writer: Optional[SummaryWriter] = None,
                 judge: Optional[SufficiencyJudge] = None):
        """
        Initialize the memory management service.

        Collaborators that are not passed in are built from the configuration (Bedrock for the
        language and embedding models, the configured retriever backend).

        Args:
            app_config: Application configuration (global config when None)
            engine: SQLAlchemy engine of the memory database
            embedder: Embedding adapter
            extractor: Fact extraction adapter
            decision_maker: Decision collaborator
            retriever: Similarity retriever
            summary_writer: Category summary writer
            judge: Summary sufficiency judge
        """
        self.config = app_config or config
        self.engine = engine if engine is not None else create_database_engine(self.config.database)
        self.store = MemoryStore(self.engine)
        self.audit = AuditLog(self.engine)

        llm_mode = self.config.retrieval.sufficiency_mode == 'llm'
        llm = None
        if extractor is None or decision_maker is None or summary_writer is None or (judge is None and llm_mode):
            llm = BedrockLLM(self.config.bedrock_llm)

        self.embedder = embedder or BedrockEmbed(self.config.bedrock_embed)
        self.extractor = extractor or FactExtractionService(llm)
        self.decision_maker = decision_maker or BedrockDecisionMaker(llm)
        if retriever is None:
            client = OpenSearchClient(self.config.opensearch) if self.config.retriever.backend == 'opensearch' else None
            retriever = build_retriever(self.config.retriever.backend, self.store, client)
        self.retriever = retriever
        summary_writer = summary_writer or BedrockSummaryWriter(llm)
        if judge is None:
            judge = BedrockSufficiencyJudge(llm) if llm_mode else HeuristicSufficiencyJudge()

        self.updates = UpdateDecisionEngine(self.store, self.audit, self.embedder, self.retriever, self.decision_maker,
                                            self.config.decision)
        self.composer = RetrievalComposer(self.store, self.embedder, self.retriever, judge, self.config.retrieval)
        self.queue = JobQueue(self.engine, self.config.maintenance)
        self.jobs = MaintenanceJobs(self.store, self.audit, self.embedder, self.retriever, summary_writer, self.config.maintenance)
        self.scheduler = MaintenanceScheduler(self.queue, self.jobs, self.config.maintenance)

        logger.info('Initialized MemoryManagementService')

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def learn(self, owner_id: str, text: str, known_entities: Optional[Sequence[str]] = None) -> List[MemoryOperation]:
        """Extract candidate facts from an observation and apply them.

        Never raises for unavailable collaborators: a failed extraction learns nothing and a failed
        decision shows up as a failed audit entry.

        Args:
            owner_id: Owner of the observation
            text: Raw observation text
            known_entities: Entity names for disambiguation; the owner's subjects when None

        Returns:
            One audit entry per candidate fact
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for learning')
            return []
        if known_entities is None:
            known_entities = sorted({record.subject_name for record in self.store.list_records(owner_id)})[:MAX_KNOWN_ENTITIES]

        candidates = self.extractor.extract(text, known_entities)
        if not candidates:
            logger.debug(f'Nothing to learn for owner {owner_id}')
            return []
        return self.process_candidates(owner_id, candidates)

    def process_candidates(self, owner_id: str, candidates: Sequence[CandidateFact]) -> List[MemoryOperation]:
        """Apply already-extracted candidates and queue summaries that fell behind."""
        outcomes = self.updates.process(owner_id, candidates)
        self._enqueue_due_summaries(owner_id)
        return outcomes

    def forget(self, owner_id: str, record_id: str) -> MemoryOperation:
        """Permanently remove a record at the user's request."""
        return self.updates.forget(owner_id, record_id)

    def _enqueue_due_summaries(self, owner_id: str) -> Optional[str]:
        if self.queue.open_job(owner_id, 'resummarize') is not None:
            return None
        categories = self.jobs.categories_due(owner_id)
        if not categories:
            return None
        return self.queue.enqueue('resummarize', {'owner_id': owner_id, 'categories': categories})

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def retrieve(self,
                 owner_id: str,
                 query_text: str,
                 token_budget: Optional[int] = None,
                 max_sensitivity: Optional[str] = None) -> RetrievalResult:
        return self.composer.retrieve(owner_id, query_text, token_budget=token_budget, max_sensitivity=max_sensitivity)

    def get_record(self, owner_id: str, record_id: str) -> Optional[MemoryRecord]:
        return self.store.get_by_id(record_id, owner_id=owner_id)

    def get_history(self, owner_id: str, record_id: str) -> List[MemoryRecord]:
        """Version chain of a record, oldest first.

        Raises:
            RecordNotFound: If the owner has no such record
        """
        if self.store.get_by_id(record_id, owner_id=owner_id) is None:
            raise RecordNotFound(f'Record {record_id} not found for owner {owner_id}')
        return self.store.chain(record_id)

    def get_audit_trail(self, owner_id: str, record_id: Optional[str] = None, limit: int = 100) -> List[MemoryOperation]:
        return self.audit.list_for_owner(owner_id, record_id=record_id, limit=limit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def enqueue(self,
                job_type: str,
                payload: Optional[Dict[str, Any]] = None,
                scheduled_for: Optional[datetime] = None,
                depends_on: Optional[str] = None) -> str:
        return self.scheduler.enqueue(job_type, payload, scheduled_for=scheduled_for, depends_on=depends_on)

    def run_maintenance(self, owner_id: Optional[str] = None, job_types: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Run maintenance synchronously.

        Args:
            owner_id: Restrict to one owner's jobs
            job_types: Job types to enqueue first, chained in the given order

        Returns:
            Ids of the enqueued jobs and the number of job attempts executed
        """
        enqueued = {}
        previous = None
        for job_type in job_types or ():
            payload = {'owner_id': owner_id} if owner_id else {}
            previous = self.scheduler.enqueue(job_type, payload, depends_on=previous)
            enqueued[job_type] = previous
        executed = self.scheduler.run_pending(owner_id=owner_id)
        return {'enqueued': enqueued, 'executed': executed}

    def schedule_periodic(self, owner_id: str) -> Dict[str, str]:
        return self.scheduler.schedule_periodic(owner_id)

    def start_workers(self) -> None:
        self.scheduler.start()

    def stop_workers(self, timeout: Optional[float] = None) -> None:
        self.scheduler.stop(timeout)

    def get_job(self, job_id: str) -> Optional[MaintenanceJob]:
        return self.queue.get(job_id)

    def job_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.queue.result(job_id)

    def list_failed_jobs(self, owner_id: Optional[str] = None) -> List[MaintenanceJob]:
        return self.queue.list_failed(owner_id)

    def health(self) -> Dict[str, Any]:
        return get_health_status(self.config, self.engine)

"""
Maintenance Scheduler: a durable job queue in the memory database, the job handlers that keep an
owner's store healthy, and a pool of worker threads draining the queue.

Job types:
    decay        lower importance of records that are not being accessed (half-life per kind)
    consolidate  archive near-duplicate active records into the higher-importance one
    resummarize  rewrite category summaries from their current members
    reindex      recompute stale embeddings, resync the retriever, recompute relationship strengths
    cleanup      archive expired records and long-unused low-importance ones

Every handler is idempotent: running it twice over unchanged data changes nothing the second time.
"""

import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Engine

from ..models.core import (SENSITIVITY_RANK, CategorySummary, JobStatus, JobType, MaintenanceJob, MemoryOperation, MemoryRecord,
                           Operation, OperationStatus, RecordStatus)
from ..models.errors import JobFailed, RecordNotFound, SlotConflict
from ..utils.config import MaintenanceConfig
from ..utils.database import maintenance_jobs
from ..utils.logging_config import get_logger
from ..utils.text_utils import content_hash
from ..utils.timestamp_utils import days_between, ensure_utc, utc_now
from .audit_log import AuditLog
from .contracts import Embedder, SimilarityRetriever, SummaryWriter
from .memory_store import MemoryStore
from .similarity import normalize_rows

logger = get_logger(__name__)

PENDING = JobStatus.PENDING.value
RUNNING = JobStatus.RUNNING.value
DONE = JobStatus.DONE.value
FAILED = JobStatus.FAILED.value

# How often schedule_periodic lets each job type run per owner
PERIODS = {
    JobType.DECAY: timedelta(days=1),
    JobType.CONSOLIDATE: timedelta(days=1),
    JobType.CLEANUP: timedelta(days=1),
    JobType.RESUMMARIZE: timedelta(days=7),
    JobType.REINDEX: timedelta(days=30),
}


def decayed_importance(record: MemoryRecord, config: MaintenanceConfig, now: Optional[datetime] = None) -> float:
    """Importance of a record after decay at time now.

    Decay restarts from base_importance at the last access (or creation) and halves every
    half-life of the record's kind after a grace period. Events only start decaying once their
    date has passed. The result never rises above the current importance and never falls below
    the floor (the pinned floor for pinned or critical records).
    """
    now = now or utc_now()
    floor = config.pinned_floor if record.pinned or record.importance_tier == 'critical' else config.decay_floor
    start = record.last_accessed_at or record.created_at
    if record.kind == 'event' and record.effective_from is not None:
        if record.effective_from > now:
            return record.importance
        start = max(start, record.effective_from)

    half_life = config.half_lives.get(record.kind, 90.0)
    idle = max(0.0, days_between(start, now) - config.decay_grace_days)
    target = record.base_importance * 0.5**(idle / half_life)
    if record.importance <= floor:
        return record.importance
    return min(record.importance, max(floor, target))


def keeper_order(record: MemoryRecord):
    return (record.importance, record.access_count, record.updated_at)


class JobQueue:
    """Durable maintenance job queue on the maintenance_jobs table."""

    def __init__(self, engine: Engine, config: Optional[MaintenanceConfig] = None):
        self.engine = engine
        self.config = config or MaintenanceConfig()

    def enqueue(self,
                job_type: str,
                payload: Optional[Dict[str, Any]] = None,
                scheduled_for: Optional[datetime] = None,
                depends_on: Optional[str] = None,
                max_attempts: Optional[int] = None) -> str:
        """
        Add a job to the queue.

        Args:
            job_type: One of decay, consolidate, resummarize, reindex, cleanup
            payload: Job parameters; owner_id scopes the job to one owner
            scheduled_for: Earliest run time (now when None)
            depends_on: Id of a job that must finish successfully first
            max_attempts: Attempts before the job is marked failed

        Returns:
            The new job id
        """
        job_type = JobType(job_type).value
        payload = dict(payload or {})
        if depends_on is not None and self.get(depends_on) is None:
            raise RecordNotFound(f'Dependency job {depends_on} not found')

        now = utc_now()
        job_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                insert(maintenance_jobs).values(id=job_id,
                                                job_type=job_type,
                                                owner_id=payload.get('owner_id'),
                                                payload=payload,
                                                status=PENDING,
                                                attempts=0,
                                                max_attempts=max_attempts or self.config.max_attempts,
                                                scheduled_for=ensure_utc(scheduled_for) or now,
                                                depends_on=depends_on,
                                                created_at=now))
        logger.info(f'Enqueued {job_type} job {job_id} payload={payload} depends_on={depends_on}')
        return job_id

    def get(self, job_id: str) -> Optional[MaintenanceJob]:
        with self.engine.connect() as conn:
            row = conn.execute(select(maintenance_jobs).where(maintenance_jobs.c.id == job_id)).first()
        return self._from_row(row) if row is not None else None

    def result(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Result of a finished job; None while it is still pending or running.

        Raises:
            RecordNotFound: If the job does not exist
            JobFailed: If the job exhausted its attempts
        """
        job = self.get(job_id)
        if job is None:
            raise RecordNotFound(f'Job {job_id} not found')
        if job.status == FAILED:
            raise JobFailed(f'Job {job_id} ({job.job_type}) failed after {job.attempts} attempts: {job.last_error}', job_id=job_id)
        return job.result if job.status == DONE else None

    def claim_next(self, now: Optional[datetime] = None, owner_id: Optional[str] = None) -> Optional[MaintenanceJob]:
        """Atomically move the next runnable job to running.

        A pending job is runnable when it is due and its dependency is done. A job whose
        dependency failed is failed as well, so chains never wait forever. Running jobs whose
        lease expired are reclaimed first.
        """
        now = now or utc_now()
        self.reclaim_expired(now)
        query = select(maintenance_jobs).where(and_(maintenance_jobs.c.status == PENDING, maintenance_jobs.c.scheduled_for <= now))
        if owner_id is not None:
            query = query.where(maintenance_jobs.c.owner_id == owner_id)
        query = query.order_by(maintenance_jobs.c.scheduled_for, maintenance_jobs.c.created_at)

        with self.engine.begin() as conn:
            for row in conn.execute(query).all():
                job = self._from_row(row)
                if job.depends_on:
                    dependency = conn.execute(select(maintenance_jobs.c.status).where(maintenance_jobs.c.id == job.depends_on)).scalar_one_or_none()
                    if dependency == FAILED or dependency is None:
                        conn.execute(
                            update(maintenance_jobs).where(and_(maintenance_jobs.c.id == job.id, maintenance_jobs.c.status == PENDING)).values(
                                status=FAILED, last_error=f'Dependency {job.depends_on} failed', finished_at=now))
                        logger.error(f'Job {job.id} ({job.job_type}) failed: dependency {job.depends_on} failed')
                        continue
                    if dependency != DONE:
                        continue
                result = conn.execute(
                    update(maintenance_jobs).where(and_(maintenance_jobs.c.id == job.id, maintenance_jobs.c.status == PENDING)).values(
                        status=RUNNING, attempts=maintenance_jobs.c.attempts + 1, started_at=now))
                if result.rowcount == 1:
                    job.status = RUNNING
                    job.attempts += 1
                    job.started_at = now
                    return job
        return None

    def reclaim_expired(self, now: Optional[datetime] = None) -> int:
        """Count running jobs older than job_timeout_seconds as failed attempts.

        Covers workers that died between claim and completion; the job is retried with backoff
        or marked failed like any other failed attempt.

        Returns:
            Number of jobs reclaimed
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.config.job_timeout_seconds)
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(maintenance_jobs).where(and_(maintenance_jobs.c.status == RUNNING, maintenance_jobs.c.started_at <= cutoff))).all()

        reclaimed = 0
        for row in rows:
            job = self._from_row(row)
            error = TimeoutError(f'lease expired after {self.config.job_timeout_seconds:.0f}s in running')
            if self.fail(job, error, now) != RUNNING:
                reclaimed += 1
        return reclaimed

    def _finish(self, job: MaintenanceJob, values: Dict[str, Any]) -> bool:
        # only the holder of the current attempt may record its outcome
        with self.engine.begin() as conn:
            result = conn.execute(
                update(maintenance_jobs).where(
                    and_(maintenance_jobs.c.id == job.id, maintenance_jobs.c.status == RUNNING,
                         maintenance_jobs.c.attempts == job.attempts)).values(**values))
        if result.rowcount == 0:
            logger.warning(f'Job {job.id} ({job.job_type}) attempt {job.attempts} no longer holds its lease; outcome dropped')
            return False
        return True

    def complete(self, job: MaintenanceJob, result: Optional[Dict[str, Any]] = None) -> bool:
        if not self._finish(job, {'status': DONE, 'result': result or {}, 'last_error': None, 'finished_at': utc_now()}):
            return False
        logger.info(f'Job {job.id} ({job.job_type}) done: {result}')
        return True

    def fail(self, job: MaintenanceJob, error: Exception, now: Optional[datetime] = None) -> str:
        """Record a failed attempt: reschedule with exponential backoff or mark the job failed.

        Returns:
            The job's new status; its stored status when the attempt lost its lease
        """
        now = now or utc_now()
        message = f'{type(error).__name__}: {error}'
        if job.attempts >= job.max_attempts:
            values = {'status': FAILED, 'last_error': message, 'finished_at': now}
        else:
            delay = self.config.backoff_base_seconds * (2**(job.attempts - 1))
            values = {'status': PENDING, 'last_error': message, 'scheduled_for': now + timedelta(seconds=delay)}
        if not self._finish(job, values):
            current = self.get(job.id)
            return current.status if current is not None else FAILED

        if values['status'] == FAILED:
            logger.error(f'Job {job.id} ({job.job_type}) failed permanently after {job.attempts} attempts: {message}')
        else:
            logger.warning(f'Job {job.id} ({job.job_type}) attempt {job.attempts}/{job.max_attempts} failed, '
                           f'retrying in {delay:.1f}s: {message}')
        return values['status']

    def list_jobs(self, owner_id: Optional[str] = None, status: Optional[str] = None,
                  job_type: Optional[str] = None) -> List[MaintenanceJob]:
        query = select(maintenance_jobs)
        if owner_id is not None:
            query = query.where(maintenance_jobs.c.owner_id == owner_id)
        if status is not None:
            query = query.where(maintenance_jobs.c.status == status)
        if job_type is not None:
            query = query.where(maintenance_jobs.c.job_type == job_type)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(maintenance_jobs.c.created_at)).all()
        return [self._from_row(row) for row in rows]

    def list_failed(self, owner_id: Optional[str] = None) -> List[MaintenanceJob]:
        return self.list_jobs(owner_id=owner_id, status=FAILED)

    def open_job(self, owner_id: str, job_type: str) -> Optional[MaintenanceJob]:
        """A pending or running job of this type for the owner, if any."""
        for job in self.list_jobs(owner_id=owner_id, job_type=job_type):
            if job.status in (PENDING, RUNNING):
                return job
        return None

    def last_finished_at(self, owner_id: str, job_type: str) -> Optional[datetime]:
        finished = [job.finished_at for job in self.list_jobs(owner_id=owner_id, status=DONE, job_type=job_type) if job.finished_at]
        return max(finished) if finished else None

    @staticmethod
    def _from_row(row) -> MaintenanceJob:
        data = dict(row._mapping)
        data.pop('owner_id', None)
        for key in ('scheduled_for', 'created_at', 'started_at', 'finished_at'):
            data[key] = ensure_utc(data[key])
        data['payload'] = dict(data['payload'] or {})
        return MaintenanceJob(**data)


class MaintenanceJobs:
    """Handlers for each maintenance job type."""

    def __init__(self,
                 store: MemoryStore,
                 audit: AuditLog,
                 embedder: Embedder,
                 retriever: SimilarityRetriever,
                 summary_writer: SummaryWriter,
                 config: Optional[MaintenanceConfig] = None):
        self.store = store
        self.audit = audit
        self.embedder = embedder
        self.retriever = retriever
        self.summary_writer = summary_writer
        self.config = config or MaintenanceConfig()

    def handler_for(self, job_type: str) -> Callable[[MaintenanceJob, datetime], Dict[str, Any]]:
        return {
            JobType.DECAY.value: self.decay,
            JobType.CONSOLIDATE.value: self.consolidate,
            JobType.RESUMMARIZE.value: self.resummarize,
            JobType.REINDEX.value: self.reindex,
            JobType.CLEANUP.value: self.cleanup,
        }[job_type]

    def _owners(self, job: MaintenanceJob) -> List[str]:
        return [job.owner_id] if job.owner_id else self.store.list_owners()

    # ------------------------------------------------------------------
    # decay
    # ------------------------------------------------------------------

    def decay(self, job: MaintenanceJob, now: datetime) -> Dict[str, Any]:
        updated = 0
        for owner_id in self._owners(job):
            for record in self.store.list_records(owner_id):
                importance = decayed_importance(record, self.config, now)
                if importance >= record.importance - 1e-6:
                    continue
                if self.store.set_importance(record.id, round(importance, 6), expected_version=record.version):
                    updated += 1
                else:
                    logger.debug(f'Record {record.id} changed during decay, skipping')
        return {'updated': updated}

    # ------------------------------------------------------------------
    # consolidate
    # ------------------------------------------------------------------

    def consolidate(self, job: MaintenanceJob, now: datetime) -> Dict[str, Any]:
        threshold = float(job.payload.get('threshold', self.config.consolidate_threshold))
        merged = 0
        for owner_id in self._owners(job):
            by_subject = defaultdict(list)
            for record in self.store.list_records(owner_id):
                if record.embedding:
                    by_subject[record.subject_key].append(record)
            for records in by_subject.values():
                merged += self._consolidate_group(owner_id, records, threshold, job.id)
        return {'merged': merged}

    def _consolidate_group(self, owner_id: str, records: Sequence[MemoryRecord], threshold: float, job_id: str) -> int:
        dimension = len(records[0].embedding) if records else 0
        records = [record for record in records if len(record.embedding) == dimension]
        if len(records) < 2:
            return 0

        matrix = normalize_rows(np.asarray([record.embedding for record in records], dtype=np.float32))
        similarity = matrix @ matrix.T
        pairs = sorted(((float(similarity[i, j]), i, j) for i, j in combinations(range(len(records)), 2)
                        if similarity[i, j] >= threshold),
                       reverse=True)

        archived = set()
        merged = 0
        for score, i, j in pairs:
            if i in archived or j in archived:
                continue
            keeper, loser = sorted((records[i], records[j]), key=keeper_order, reverse=True)
            try:
                self.store.soft_delete(loser.id, expected_version=loser.version, superseded_by_id=keeper.id)
            except (SlotConflict, RecordNotFound) as e:
                logger.debug(f'Skipping consolidation of {loser.id}: {e}')
                continue
            archived.add(j if loser is records[j] else i)
            self._unsync(loser.id)
            self.audit.append(
                MemoryOperation(id=str(uuid.uuid4()),
                                owner_id=owner_id,
                                operation=Operation.CONSOLIDATE.value,
                                status=OperationStatus.APPLIED.value,
                                candidate_text=loser.content,
                                similar=[{
                                    'id': keeper.id,
                                    'content': keeper.content,
                                    'similarity': round(score, 4)
                                }],
                                reasoning=f'near-duplicate of {keeper.id} (similarity {score:.2f}); kept the higher-importance record',
                                target_id=loser.id,
                                result_record_ids=[keeper.id, loser.id],
                                old_content=loser.content,
                                new_content=keeper.content,
                                old_version=loser.version,
                                new_version=keeper.version,
                                job_id=job_id))
            merged += 1
            logger.info(f'Consolidated {loser.id} into {keeper.id} for owner {owner_id} (similarity {score:.2f})')
        return merged

    # ------------------------------------------------------------------
    # resummarize
    # ------------------------------------------------------------------

    def categories_due(self, owner_id: str) -> List[str]:
        """Categories with enough new records since their summary was last written."""
        due = []
        categories = {record.category for record in self.store.list_records(owner_id)}
        for category in sorted(categories):
            summary = self.store.get_summary(owner_id, category)
            since = summary.last_synthesized_at if summary else None
            if self.store.count_active_in_category_since(owner_id, category, since) >= self.config.resummarize_min_new_records:
                due.append(category)
        return due

    def resummarize(self, job: MaintenanceJob, now: datetime) -> Dict[str, Any]:
        requested = job.payload.get('categories')
        rewritten, skipped = 0, 0
        for owner_id in self._owners(job):
            members_by_category = defaultdict(list)
            for record in self.store.list_records(owner_id):
                if SENSITIVITY_RANK.get(record.sensitivity, 2) >= SENSITIVITY_RANK['private']:
                    continue
                if record.effective_from is not None and record.effective_from > now:
                    continue
                members_by_category[record.category].append(record)
            categories = set(members_by_category) | {summary.category for summary in self.store.list_summaries(owner_id)}
            if requested:
                categories &= set(requested)

            for category in sorted(categories):
                if self._resummarize_category(owner_id, category, members_by_category.get(category, []), now):
                    rewritten += 1
                else:
                    skipped += 1
        return {'rewritten': rewritten, 'skipped': skipped}

    def _resummarize_category(self, owner_id: str, category: str, members: Sequence[MemoryRecord], now: datetime) -> bool:
        source_hash = content_hash(f'{record.id}:{record.version}:{record.content}\n' for record in members)
        existing = self.store.get_summary(owner_id, category)
        if existing is not None and existing.source_hash == source_hash:
            return False
        if existing is None and not members:
            return False

        if members:
            text = self.summary_writer.write_summary(category, members, previous=existing.summary_text if existing else None)
        else:
            text = ''
        summary = self.store.save_summary(
            CategorySummary(id=existing.id if existing else str(uuid.uuid4()),
                            owner_id=owner_id,
                            category=category,
                            summary_text=text,
                            member_record_ids=[record.id for record in members],
                            source_hash=source_hash,
                            last_synthesized_at=now))
        logger.info(f'Rewrote {category} summary for owner {owner_id} (version {summary.version}, {len(members)} records)')
        return True

    # ------------------------------------------------------------------
    # reindex
    # ------------------------------------------------------------------

    def reindex(self, job: MaintenanceJob, now: datetime) -> Dict[str, Any]:
        force = bool(job.payload.get('force', False))
        model_id = getattr(self.embedder, 'model_id', None)
        reembedded, synced, relationships = 0, 0, 0
        for owner_id in self._owners(job):
            records = [record for status in RecordStatus for record in self.store.list_records(owner_id, status=status.value)]
            for record in records:
                if force or record.embedding is None or record.embedding_model != model_id:
                    record.embedding = self.embedder.embed_document(record.content)
                    record.embedding_model = model_id
                    self.store.set_embedding(record.id, record.embedding, model_id)
                    reembedded += 1
                if record.is_active:
                    self.retriever.sync(record)
                    synced += 1
                else:
                    self._unsync(record.id)
            relationships += self._recompute_relationships(owner_id, records)
        return {'reembedded': reembedded, 'synced': synced, 'relationships': relationships}

    def _recompute_relationships(self, owner_id: str, records: Sequence[MemoryRecord]) -> int:
        """Jaccard strength between subjects from how often their records were retrieved together."""
        subject_of = {record.id: record.subject_key for record in records}
        accesses = defaultdict(int)
        for record in records:
            accesses[record.subject_key] += record.access_count

        together = defaultdict(int)
        for record_a, record_b, count in self.store.cooccurrence(owner_id):
            a, b = subject_of.get(record_a), subject_of.get(record_b)
            if a is None or b is None or a == b:
                continue
            together[tuple(sorted((a, b)))] += count

        strengths = {}
        for (a, b), count in together.items():
            union = accesses[a] + accesses[b] - count
            strengths[(a, b)] = (min(1.0, count / union) if union > 0 else 1.0, count)
        self.store.replace_relationships(owner_id, strengths)
        return len(strengths)

    # ------------------------------------------------------------------
    # cleanup
    # ------------------------------------------------------------------

    def cleanup(self, job: MaintenanceJob, now: datetime) -> Dict[str, Any]:
        expired, stale = [], []
        for owner_id in self._owners(job):
            for record in self.store.list_records(owner_id):
                if record.expires_at is not None and record.expires_at <= now:
                    bucket = expired
                elif self._is_stale(record, now):
                    bucket = stale
                else:
                    continue
                try:
                    self.store.soft_delete(record.id, expected_version=record.version)
                except SlotConflict as e:
                    logger.debug(f'Record {record.id} changed during cleanup, skipping: {e}')
                    continue
                self._unsync(record.id)
                bucket.append(record.id)
        if expired or stale:
            logger.info(f'Cleanup archived {len(expired)} expired and {len(stale)} unused records')
        return {'expired': expired, 'stale': stale}

    def _is_stale(self, record: MemoryRecord, now: datetime) -> bool:
        if record.pinned or record.importance_tier == 'critical':
            return False
        idle = days_between(record.last_accessed_at or record.created_at, now)
        return idle >= self.config.cleanup_idle_days and record.importance < self.config.cleanup_importance

    def _unsync(self, record_id: str) -> None:
        self.retriever.remove(record_id)


class MaintenanceScheduler:
    """Runs queued maintenance jobs, synchronously or on a pool of worker threads."""

    def __init__(self, queue: JobQueue, jobs: MaintenanceJobs, config: Optional[MaintenanceConfig] = None):
        """
        Initialize the scheduler.

        Args:
            queue: Durable job queue
            jobs: Job handlers
            config: MaintenanceConfig, defaults when None
        """
        self.queue = queue
        self.jobs = jobs
        self.config = config or MaintenanceConfig()
        self.workers: List[threading.Thread] = []
        self._stop = threading.Event()
        self.lock = threading.Lock()
        self.completed_count = 0
        self.failed_count = 0

    def enqueue(self,
                job_type: str,
                payload: Optional[Dict[str, Any]] = None,
                scheduled_for: Optional[datetime] = None,
                depends_on: Optional[str] = None) -> str:
        return self.queue.enqueue(job_type, payload, scheduled_for=scheduled_for, depends_on=depends_on)

    def run_job(self, job: MaintenanceJob, now: Optional[datetime] = None) -> str:
        """Execute one claimed job and record its outcome.

        Returns:
            The job's resulting status
        """
        now = now or utc_now()
        try:
            result = self.jobs.handler_for(job.job_type)(job, now)
        except Exception as e:
            status = self.queue.fail(job, e, now)
            if status == FAILED:
                with self.lock:
                    self.failed_count += 1
            return status

        if not self.queue.complete(job, result):
            current = self.queue.get(job.id)
            return current.status if current is not None else FAILED
        with self.lock:
            self.completed_count += 1
        return DONE

    def run_pending(self, owner_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Drain every job that is runnable now; retries scheduled for later are left queued.

        Returns:
            Number of job attempts executed
        """
        executed = 0
        while True:
            job = self.queue.claim_next(now=now, owner_id=owner_id)
            if job is None:
                return executed
            self.run_job(job, now=now)
            executed += 1

    def schedule_periodic(self, owner_id: str, now: Optional[datetime] = None) -> Dict[str, str]:
        """Enqueue each job type whose period has elapsed for the owner.

        Job types with a pending or running job are skipped; resummarize waits for consolidate.

        Returns:
            Mapping job type -> id of the enqueued job
        """
        now = now or utc_now()
        enqueued: Dict[str, str] = {}
        for job_type in (JobType.DECAY, JobType.CONSOLIDATE, JobType.CLEANUP, JobType.RESUMMARIZE, JobType.REINDEX):
            if self.queue.open_job(owner_id, job_type.value) is not None:
                continue
            last = self.queue.last_finished_at(owner_id, job_type.value)
            if last is not None and now - last < PERIODS[job_type]:
                continue
            depends_on = None
            if job_type == JobType.RESUMMARIZE:
                consolidate = self.queue.open_job(owner_id, JobType.CONSOLIDATE.value)
                depends_on = consolidate.id if consolidate is not None else None
            enqueued[job_type.value] = self.queue.enqueue(job_type.value, {'owner_id': owner_id}, scheduled_for=now, depends_on=depends_on)
        return enqueued

    def start(self) -> None:
        """Start the worker threads."""
        if self.workers:
            return
        self._stop.clear()
        for i in range(self.config.workers):
            worker = threading.Thread(target=self._worker_loop, name=f'Maintenance-Worker-{i}', daemon=True)
            worker.start()
            self.workers.append(worker)
        logger.info(f'Started {self.config.workers} maintenance workers')

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the workers to exit and wait for them."""
        self._stop.set()
        for worker in self.workers:
            worker.join(timeout)
        self.workers = []
        logger.info(f'Stopped maintenance workers (completed={self.completed_count}, failed={self.failed_count})')

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self.queue.claim_next()
            except Exception as e:
                logger.error(f'Failed to claim maintenance job: {e}')
                job = None
            if job is None:
                self._stop.wait(self.config.poll_interval_seconds)
                continue
            self.run_job(job)

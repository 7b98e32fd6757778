"""
Update Decision Engine: turns candidate facts into store mutations plus one audit entry each.

Per candidate: embed, retrieve similar records, ask the decision collaborator, validate its answer
against deterministic rules, execute against the store, audit. Collaborator failures re-queue the
candidate once; slot conflicts are resolved by re-reading the slot and retrying.
"""

import time
import uuid
from collections import deque
from dataclasses import replace
from typing import List, Optional, Sequence

from ..models.core import (SENSITIVITY_RANK, CandidateFact, Decision, MemoryOperation, MemoryRecord, MergeStrategy, Operation,
                           OperationStatus, SimilarRecord, tier_score)
from ..models.errors import CollaboratorUnavailable, InvariantViolation, RecordNotFound, SlotConflict
from ..utils.config import DecisionConfig
from ..utils.logging_config import get_logger
from ..utils.text_utils import categorize, contains_secret, is_forget_request, join_append, normalize_content, normalize_subject
from ..utils.timestamp_utils import utc_now
from .audit_log import AuditLog
from .contracts import DecisionMaker, Embedder, SimilarityRetriever
from .memory_store import MemoryStore

logger = get_logger(__name__)


def tie_break(similar: Sequence[SimilarRecord], tolerance: float = 0.01) -> List[SimilarRecord]:
    """Order by similarity; records within tolerance of the best one in their run prefer recent access,
    then higher importance."""

    def preference(item: SimilarRecord):
        accessed = item.record.last_accessed_at.timestamp() if item.record.last_accessed_at else 0.0
        return (-accessed, -item.record.importance)

    ordered: List[SimilarRecord] = []
    group: List[SimilarRecord] = []
    for item in sorted(similar, key=lambda item: -item.similarity):
        if group and group[0].similarity - item.similarity > tolerance:
            ordered.extend(sorted(group, key=preference))
            group = []
        group.append(item)
    ordered.extend(sorted(group, key=preference))
    return ordered


def same_subject(record: MemoryRecord, candidate: CandidateFact) -> bool:
    key = candidate.subject_key
    return record.subject_key == key or key in {normalize_subject(alias) for alias in record.aliases}


def is_redundant(record: MemoryRecord, candidate: CandidateFact) -> bool:
    """True when the record already states what the candidate says."""
    if not record.is_active or not same_subject(record, candidate):
        return False
    if normalize_content(record.content) == normalize_content(candidate.content):
        return True
    if candidate.predicate and record.predicate == candidate.predicate and candidate.object_value and record.object_value:
        return (normalize_content(record.object_value) == normalize_content(candidate.object_value)
                and record.is_historical == candidate.is_historical)
    return False


class UpdateDecisionEngine:
    """State machine applying candidate facts to an owner's memory store."""

    def __init__(self,
                 store: MemoryStore,
                 audit: AuditLog,
                 embedder: Embedder,
                 retriever: SimilarityRetriever,
                 decision_maker: DecisionMaker,
                 config: Optional[DecisionConfig] = None):
        """
        Initialize the update engine.

        Args:
            store: Memory store to mutate
            audit: Audit log receiving one entry per candidate
            embedder: Embedding adapter
            retriever: Similarity retriever used to find merge candidates
            decision_maker: Decision collaborator
            config: DecisionConfig, defaults when None
        """
        self.store = store
        self.audit = audit
        self.embedder = embedder
        self.retriever = retriever
        self.decision_maker = decision_maker
        self.config = config or DecisionConfig()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process(self, owner_id: str, candidates: Sequence[CandidateFact], job_id: Optional[str] = None) -> List[MemoryOperation]:
        """Apply a batch of candidates.

        Candidates whose collaborators are unavailable are re-queued behind the rest of the batch
        until max_attempts is reached, then dropped with a failed audit entry. Never raises for
        collaborator failures.

        Args:
            owner_id: Owner the candidates belong to
            candidates: Candidate facts from extraction
            job_id: Optional job id recorded in the audit entries

        Returns:
            One audit entry per candidate
        """
        queue = deque((candidate, 1) for candidate in candidates)
        outcomes = []
        while queue:
            candidate, attempt = queue.popleft()
            try:
                outcomes.append(self.apply(owner_id, candidate, job_id=job_id))
            except CollaboratorUnavailable as e:
                if attempt < self.config.max_attempts:
                    logger.warning(f'Collaborator unavailable for candidate "{candidate.content}" '
                                   f'(attempt {attempt}/{self.config.max_attempts}), re-queueing: {e}')
                    queue.append((candidate, attempt + 1))
                else:
                    logger.warning(f'Dropping candidate "{candidate.content}" after {attempt} attempts: {e}')
                    outcomes.append(self._record_failure(owner_id, candidate, e, job_id))
        return outcomes

    def apply(self, owner_id: str, candidate: CandidateFact, job_id: Optional[str] = None) -> MemoryOperation:
        """Decide and execute a single candidate.

        Returns:
            The audit entry written for this candidate

        Raises:
            CollaboratorUnavailable: If embedding, retrieval or decision fails; nothing was mutated
        """
        started = time.perf_counter()
        embedding = candidate.embedding or self.embedder.embed_document(candidate.content)
        candidate = replace(candidate, embedding=embedding)

        similar = tie_break(self.retriever.find_similar(owner_id, embedding, self.config.top_k, self.config.threshold),
                            self.config.tie_tolerance)
        occupant = self._slot_occupant(owner_id, candidate)

        decision = self._pre_decide(candidate, similar, occupant)
        if decision is None:
            decision = self.decision_maker.decide(candidate, similar)

        entry = MemoryOperation(id=str(uuid.uuid4()),
                                owner_id=owner_id,
                                operation=decision.operation.value,
                                status=OperationStatus.APPLIED.value,
                                candidate_text=candidate.source_text or candidate.content,
                                candidate=_candidate_snapshot(candidate),
                                similar=[{
                                    'id': item.record.id,
                                    'content': item.record.content,
                                    'similarity': round(item.similarity, 4)
                                } for item in similar],
                                job_id=job_id)
        try:
            decision = self._validate(owner_id, candidate, decision, similar, occupant)
            self._execute_with_retry(owner_id, candidate, decision, entry)
        except InvariantViolation as e:
            logger.error(f'Rejected {decision.operation.value} for owner {owner_id} candidate "{candidate.content}" '
                         f'target={decision.target_id}: {e}')
            entry.status = OperationStatus.REJECTED.value
            entry.error = str(e)
        except SlotConflict as e:
            logger.error(f'Giving up on candidate "{candidate.content}" after {self.config.conflict_retries} slot conflicts: {e}')
            entry.status = OperationStatus.FAILED.value
            entry.error = f'SlotConflict: {e}'
        except RecordNotFound as e:
            logger.warning(f'Target of {decision.operation.value} for owner {owner_id} vanished mid-write: {e}')
            entry.status = OperationStatus.FAILED.value
            entry.error = f'RecordNotFound: {e}'

        entry.operation = decision.operation.value
        entry.reasoning = decision.reasoning
        entry.overrides = list(decision.overrides)
        entry.merge_strategy = decision.merge_strategy.value if decision.merge_strategy else None
        entry.hard_delete = decision.hard_delete
        entry.target_id = entry.target_id or decision.target_id
        if entry.status == OperationStatus.APPLIED.value and decision.operation == Operation.NOOP:
            entry.status = OperationStatus.NOOP.value
        entry.processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        return self.audit.append(entry)

    def forget(self, owner_id: str, record_id: str, reason: str = 'explicit forget request') -> MemoryOperation:
        """Hard-delete one record on the user's explicit request; only the audit entry keeps its content.

        Raises:
            RecordNotFound: If the owner has no such record
        """
        record = self.store.get_by_id(record_id, owner_id=owner_id)
        if record is None:
            raise RecordNotFound(f'Record {record_id} not found for owner {owner_id}')
        snapshot = self.store.hard_delete(record.id)
        self._unsync(record.id)
        logger.info(f'Forgot record {record.id} for owner {owner_id}')
        return self.audit.append(
            MemoryOperation(id=str(uuid.uuid4()),
                            owner_id=owner_id,
                            operation=Operation.DELETE.value,
                            status=OperationStatus.APPLIED.value,
                            candidate_text=reason,
                            reasoning=reason,
                            hard_delete=True,
                            target_id=record.id,
                            result_record_ids=[record.id],
                            old_version=record.version,
                            deleted_snapshot=snapshot.to_dict(),
                            overrides=['forget_request']))

    # ------------------------------------------------------------------
    # Deterministic rules
    # ------------------------------------------------------------------

    def _slot_occupant(self, owner_id: str, candidate: CandidateFact) -> Optional[MemoryRecord]:
        if not candidate.predicate:
            return None
        return self.store.get_active_by_slot(owner_id, candidate.subject_name, candidate.predicate)

    def _same_subject_match(self, candidate: CandidateFact, similar: Sequence[SimilarRecord],
                            occupant: Optional[MemoryRecord]) -> Optional[MemoryRecord]:
        if occupant is not None:
            return occupant
        for item in similar:
            if same_subject(item.record, candidate):
                return item.record
        return None

    def _pre_decide(self, candidate: CandidateFact, similar: Sequence[SimilarRecord],
                    occupant: Optional[MemoryRecord]) -> Optional[Decision]:
        """Decisions that never need the collaborator."""
        # only this fact's own text counts; the note it came from may carry other facts
        if candidate.do_not_remember or is_forget_request(candidate.content):
            target = self._same_subject_match(candidate, similar, occupant)
            if target is None:
                return Decision(Operation.NOOP, reasoning='forget request with nothing stored to forget', overrides=['forget_request'])
            return Decision(Operation.DELETE,
                            reasoning='user explicitly asked not to remember this',
                            target_id=target.id,
                            hard_delete=True,
                            overrides=['forget_request'])

        if contains_secret(candidate.content) or contains_secret(candidate.source_text):
            return Decision(Operation.NOOP, reasoning='sensitive credential; never stored', overrides=['secret_guard'])

        for record in [occupant] + [item.record for item in similar]:
            if record is not None and is_redundant(record, candidate):
                return Decision(Operation.NOOP,
                                reasoning=f'duplicates existing record {record.id}',
                                target_id=record.id,
                                overrides=['duplicate'])
        return None

    def _resolve_target(self, owner_id: str, target_id: Optional[str]) -> Optional[MemoryRecord]:
        """Load the decision's target, following supersession to the active version.

        Raises:
            InvariantViolation: If the target belongs to another owner
        """
        if not target_id:
            return None
        record = self.store.get_by_id(target_id)
        if record is None:
            logger.warning(f'Decision referenced unknown record {target_id}')
            return None
        if record.owner_id != owner_id:
            raise InvariantViolation(f'Decision target {target_id} belongs to a different owner')
        if not record.is_active:
            latest = self.store.latest_in_chain(record.id)
            if latest is None or not latest.is_active:
                return None
            record = latest
        return record

    def _validate(self, owner_id: str, candidate: CandidateFact, decision: Decision, similar: Sequence[SimilarRecord],
                  occupant: Optional[MemoryRecord]) -> Decision:
        """Apply the rules that override whatever the collaborator suggested."""
        overrides = list(decision.overrides)
        operation = decision.operation
        strategy = decision.merge_strategy
        hard_delete = decision.hard_delete
        forget = 'forget_request' in overrides

        if operation == Operation.NOOP:
            return decision

        target = self._resolve_target(owner_id, decision.target_id) if operation != Operation.ADD else None
        if target is not None and target.id != decision.target_id:
            overrides.append('target_followed_chain')
            if operation != Operation.DELETE and is_redundant(target, candidate):
                return Decision(Operation.NOOP,
                                reasoning='already applied by a concurrent writer',
                                target_id=target.id,
                                overrides=overrides)

        if target is not None and not same_subject(target, candidate):
            if decision.same_entity:
                target = self.store.add_alias(target.id, candidate.subject_name)
                overrides.append('alias_linked')
            elif operation == Operation.UPDATE:
                logger.debug(f'Refusing to merge "{candidate.subject_name}" into record about "{target.subject_name}"')
                operation, strategy, target = Operation.ADD, None, None
                overrides.append('subject_mismatch')
            else:
                target = None
                overrides.append('subject_mismatch')

        if operation == Operation.UPDATE and target is None:
            target = self._same_subject_match(candidate, similar, occupant)
            if target is not None:
                overrides.append('target_fallback')
            else:
                operation, strategy = Operation.ADD, None
                overrides.append('update_without_target')

        if operation == Operation.DELETE:
            if target is None:
                return Decision(operation=Operation.NOOP,
                                reasoning=decision.reasoning,
                                target_id=decision.target_id,
                                overrides=overrides + ['delete_without_target'])
            if hard_delete and not forget:
                hard_delete = False
                overrides.append('soft_delete_default')
            return Decision(operation=Operation.DELETE,
                            reasoning=decision.reasoning,
                            target_id=target.id,
                            target_version=target.version,
                            hard_delete=hard_delete,
                            same_entity=decision.same_entity,
                            overrides=overrides)

        if operation == Operation.ADD:
            if occupant is None:
                return Decision(operation=Operation.ADD, reasoning=decision.reasoning, overrides=overrides)
            # a second active record may never enter an occupied slot
            strategy, target = MergeStrategy.SUPERSEDE, occupant
            overrides.append('slot_occupied')

        if strategy is None:
            strategy = MergeStrategy.SUPERSEDE if candidate.predicate else MergeStrategy.APPEND
            overrides.append('default_strategy')
        if candidate.is_historical and not target.is_historical and strategy != MergeStrategy.SUPERSEDE:
            strategy = MergeStrategy.SUPERSEDE
            overrides.append('historical_supersede')
        if candidate.effective_from and candidate.effective_from > utc_now() and strategy != MergeStrategy.SUPERSEDE:
            # keep the current state readable until the new one takes effect
            strategy = MergeStrategy.SUPERSEDE
            overrides.append('future_supersede')
        return Decision(operation=Operation.UPDATE,
                        reasoning=decision.reasoning,
                        merge_strategy=strategy,
                        target_id=target.id,
                        target_version=target.version,
                        same_entity=decision.same_entity,
                        overrides=overrides)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute_with_retry(self, owner_id: str, candidate: CandidateFact, decision: Decision, entry: MemoryOperation) -> None:
        for attempt in range(self.config.conflict_retries + 1):
            try:
                self._execute(owner_id, candidate, decision, entry)
                return
            except SlotConflict as e:
                if attempt >= self.config.conflict_retries:
                    raise
                logger.warning(f'Slot conflict on {decision.operation.value} for owner {owner_id} '
                               f'(attempt {attempt + 1}), re-reading: {e}')
                resolved = self._resolve_conflict(owner_id, candidate, decision, e)
                decision.operation = resolved.operation
                decision.merge_strategy = resolved.merge_strategy
                decision.target_id = resolved.target_id
                decision.hard_delete = resolved.hard_delete
                decision.target_version = resolved.target_version
                decision.overrides.append('slot_conflict_retry')

    def _resolve_conflict(self, owner_id: str, candidate: CandidateFact, decision: Decision, error: SlotConflict) -> Decision:
        """Re-read after a conflict and turn the decision into NOOP or a supersede of the fresh state."""
        current = None
        if decision.target_id:
            current = self.store.latest_in_chain(decision.target_id)
        if (current is None or not current.is_active) and candidate.predicate:
            current = self._slot_occupant(owner_id, candidate)
        if (current is None or not current.is_active) and error.record_id:
            current = self.store.get_by_id(error.record_id, owner_id=owner_id)

        if current is None or not current.is_active:
            if decision.operation == Operation.DELETE:
                return Decision(Operation.NOOP, reasoning='record already gone')
            return Decision(Operation.ADD, reasoning=decision.reasoning)
        if decision.operation == Operation.DELETE:
            return replace(decision, target_id=current.id, target_version=current.version)
        if is_redundant(current, candidate):
            return Decision(Operation.NOOP, reasoning='already applied by a concurrent writer', target_id=current.id)
        strategy = decision.merge_strategy if decision.operation == Operation.UPDATE else MergeStrategy.SUPERSEDE
        if current.slot is not None and current.id != decision.target_id:
            strategy = MergeStrategy.SUPERSEDE
        return Decision(Operation.UPDATE,
                        reasoning=decision.reasoning,
                        merge_strategy=strategy,
                        target_id=current.id,
                        target_version=current.version)

    def _execute(self, owner_id: str, candidate: CandidateFact, decision: Decision, entry: MemoryOperation) -> None:
        if decision.operation == Operation.NOOP:
            return

        if decision.operation == Operation.ADD:
            record = self.store.insert(self._new_record(owner_id, candidate))
            self._sync(record)
            entry.result_record_ids = [record.id]
            entry.new_content = record.content
            entry.new_version = record.version
            return

        target = self.store.get_by_id(decision.target_id, owner_id=owner_id)
        if target is None or not target.is_active:
            raise SlotConflict(f'Record {decision.target_id} changed before it could be applied', record_id=decision.target_id)
        expected_version = decision.target_version or target.version
        entry.target_id = target.id
        entry.old_content = target.content
        entry.old_version = target.version
        try:
            self._mutate(owner_id, candidate, decision, entry, target, expected_version)
        except RecordNotFound:
            # a concurrent forget removed the row after it was read
            raise SlotConflict(f'Record {target.id} disappeared', record_id=target.id)

    def _mutate(self, owner_id: str, candidate: CandidateFact, decision: Decision, entry: MemoryOperation, target: MemoryRecord,
                expected_version: int) -> None:
        if decision.operation == Operation.DELETE:
            if decision.hard_delete:
                snapshot = self.store.hard_delete(target.id)
                entry.deleted_snapshot = snapshot.to_dict()
                entry.old_content = None  # hard delete keeps the content in the snapshot only
            else:
                self.store.soft_delete(target.id, expected_version=expected_version)
            self._unsync(target.id)
            entry.result_record_ids = [target.id]
            return

        if decision.merge_strategy == MergeStrategy.SUPERSEDE:
            new_record = self._new_record(owner_id, candidate, previous=target)
            new_record = self.store.supersede(target.id, new_record, expected_version=expected_version)
            self._unsync(target.id)
            self._sync(new_record)
            entry.result_record_ids = [new_record.id, target.id]
            entry.new_content = new_record.content
            entry.new_version = new_record.version
            return

        if decision.merge_strategy == MergeStrategy.APPEND:
            content = join_append(target.content, candidate.content)
            embedding = self.embedder.embed_document(content)
        else:
            content = candidate.content
            embedding = candidate.embedding
        patch = {
            'content': content,
            'embedding': embedding,
            'embedding_model': getattr(self.embedder, 'model_id', None),
            'sensitivity': max(target.sensitivity, candidate.sensitivity, key=SENSITIVITY_RANK.get),
            'source_text': candidate.source_text,
        }
        if candidate.object_value:
            patch['object_value'] = candidate.object_value
        for field_name in ('effective_from', 'expires_at', 'recurrence', 'sentiment'):
            value = getattr(candidate, field_name)
            if value is not None:
                patch[field_name] = value
        updated = self.store.update(target.id, patch, expected_version=expected_version, bump_version=True)
        self._sync(updated)
        entry.result_record_ids = [updated.id]
        entry.new_content = updated.content
        entry.new_version = updated.version

    def _new_record(self, owner_id: str, candidate: CandidateFact, previous: Optional[MemoryRecord] = None) -> MemoryRecord:
        importance = tier_score(candidate.importance_tier)
        subject_name, predicate = candidate.subject_name, candidate.predicate
        pinned = candidate.pinned or candidate.importance_tier == 'critical'
        if previous is not None:
            # the new version stays in the slot it replaces
            if candidate.subject_key != previous.subject_key:
                subject_name = previous.subject_name
            predicate = predicate or previous.predicate
            pinned = pinned or previous.pinned
            importance = max(importance, previous.importance) if previous.pinned else importance
        return MemoryRecord(id=str(uuid.uuid4()),
                            owner_id=owner_id,
                            kind=candidate.kind,
                            subject_name=subject_name,
                            content=candidate.content,
                            predicate=predicate,
                            object_value=candidate.object_value,
                            embedding=candidate.embedding,
                            embedding_model=getattr(self.embedder, 'model_id', None),
                            importance=importance,
                            base_importance=importance,
                            importance_tier=candidate.importance_tier,
                            pinned=pinned,
                            sentiment=candidate.sentiment,
                            confidence=candidate.confidence,
                            is_historical=candidate.is_historical,
                            effective_from=candidate.effective_from,
                            expires_at=candidate.expires_at,
                            recurrence=candidate.recurrence,
                            sensitivity=candidate.sensitivity,
                            category=candidate.category or categorize(candidate.content),
                            source_text=candidate.source_text,
                            aliases=list(previous.aliases) if previous is not None else [])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sync(self, record: MemoryRecord) -> None:
        try:
            self.retriever.sync(record)
        except CollaboratorUnavailable as e:
            # the store is authoritative; the next reindex job repairs the index
            logger.warning(f'Failed to sync record {record.id} to retriever: {e}')

    def _unsync(self, record_id: str) -> None:
        try:
            self.retriever.remove(record_id)
        except CollaboratorUnavailable as e:
            logger.warning(f'Failed to remove record {record_id} from retriever: {e}')

    def _record_failure(self, owner_id: str, candidate: CandidateFact, error: Exception, job_id: Optional[str]) -> MemoryOperation:
        entry = MemoryOperation(id=str(uuid.uuid4()),
                                owner_id=owner_id,
                                operation=Operation.NOOP.value,
                                status=OperationStatus.FAILED.value,
                                candidate_text=candidate.source_text or candidate.content,
                                candidate=_candidate_snapshot(candidate),
                                reasoning='collaborator unavailable; observation not learned',
                                error=f'{type(error).__name__}: {error}',
                                job_id=job_id)
        return self.audit.append(entry)


def _candidate_snapshot(candidate: CandidateFact) -> dict:
    snapshot = candidate.to_prompt_dict()
    snapshot.update({
        'importance_tier': candidate.importance_tier,
        'category': candidate.category,
        'do_not_remember': candidate.do_not_remember,
        'recurrence': candidate.recurrence,
    })
    return snapshot


"""
Memory Store: durable, versioned records with supersession and the single-active-per-slot rule.

Every mutation runs inside one transaction. Slot-affecting mutations additionally hold an
in-process lock for the slot and use a conditional UPDATE on (id, status, version), so a writer
acting on a stale read gets SlotConflict instead of silently overwriting. The partial unique index
on active slots backs this up across processes.
"""

import threading
import uuid
import weakref
from contextlib import contextmanager
from datetime import datetime
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ..models.core import RECORD_KINDS, SENSITIVITY_RANK, CategorySummary, MemoryRecord, RecordStatus
from ..models.errors import InvariantViolation, RecordNotFound, SlotConflict
from ..utils.database import (category_summaries, entity_relationships, memory_aliases, memory_records,
                              record_cooccurrence)
from ..utils.logging_config import get_logger
from ..utils.text_utils import normalize_predicate, normalize_subject
from ..utils.timestamp_utils import ensure_utc, utc_now

logger = get_logger(__name__)

ACTIVE = RecordStatus.ACTIVE.value
SUPERSEDED = RecordStatus.SUPERSEDED.value
ARCHIVED = RecordStatus.ARCHIVED.value

# Fields update() may patch; identity, owner, slot and chain links are only changed by dedicated operations
MUTABLE_FIELDS = frozenset({
    'content', 'object_value', 'embedding', 'embedding_model', 'importance', 'base_importance', 'importance_tier', 'pinned',
    'sentiment', 'confidence', 'is_historical', 'effective_from', 'expires_at', 'recurrence', 'sensitivity', 'category',
    'source_text'
})
_DATETIME_FIELDS = ('effective_from', 'expires_at', 'last_accessed_at', 'created_at', 'updated_at')


class MemoryStore:
    """Relational memory store backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        """
        Initialize the memory store.

        Args:
            engine: SQLAlchemy engine with the memory schema created
        """
        self.engine = engine
        # entries vanish once no caller holds the lock
        self._slot_locks = weakref.WeakValueDictionary()
        self._slot_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, slot: Tuple[str, str, str]) -> threading.Lock:
        with self._slot_locks_guard:
            lock = self._slot_locks.get(slot)
            if lock is None:
                lock = self._slot_locks[slot] = threading.Lock()
            return lock

    @contextmanager
    def slot_lock(self, *slots: Optional[Tuple[str, str, str]]):
        """Hold the locks of every given slot, acquired in sorted order."""
        keys = sorted({slot for slot in slots if slot is not None})
        locks = [self._lock_for(slot) for slot in keys]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(record: MemoryRecord) -> Dict[str, Any]:
        return {
            'id': record.id,
            'owner_id': record.owner_id,
            'kind': record.kind,
            'subject_name': record.subject_name,
            'subject_key': record.subject_key,
            'content': record.content,
            'predicate': normalize_predicate(record.predicate),
            'object_value': record.object_value,
            'embedding': record.embedding,
            'embedding_model': record.embedding_model,
            'importance': record.importance,
            'base_importance': record.base_importance,
            'importance_tier': record.importance_tier,
            'pinned': record.pinned,
            'sentiment': record.sentiment,
            'confidence': record.confidence,
            'is_historical': record.is_historical,
            'effective_from': record.effective_from,
            'expires_at': record.expires_at,
            'recurrence': record.recurrence,
            'sensitivity': record.sensitivity,
            'category': record.category,
            'status': record.status,
            'supersedes_id': record.supersedes_id,
            'superseded_by_id': record.superseded_by_id,
            'version': record.version,
            'access_count': record.access_count,
            'last_accessed_at': record.last_accessed_at,
            'source_text': record.source_text,
            'created_at': record.created_at,
            'updated_at': record.updated_at,
        }

    @staticmethod
    def _from_row(row, aliases: Optional[List[str]] = None) -> MemoryRecord:
        data = dict(row._mapping)
        data.pop('subject_key', None)
        for key in _DATETIME_FIELDS:
            data[key] = ensure_utc(data[key])
        return MemoryRecord(aliases=list(aliases or []), **data)

    def _aliases_for(self, conn: Connection, record_ids: Sequence[str]) -> Dict[str, List[str]]:
        if not record_ids:
            return {}
        rows = conn.execute(
            select(memory_aliases.c.record_id, memory_aliases.c.alias).where(memory_aliases.c.record_id.in_(list(record_ids))).order_by(
                memory_aliases.c.id)).all()
        aliases: Dict[str, List[str]] = {}
        for record_id, alias in rows:
            aliases.setdefault(record_id, []).append(alias)
        return aliases

    def _load(self, conn: Connection, rows) -> List[MemoryRecord]:
        rows = list(rows)
        aliases = self._aliases_for(conn, [row.id for row in rows])
        return [self._from_row(row, aliases.get(row.id)) for row in rows]

    def _fetch(self, conn: Connection, record_id: str) -> Optional[MemoryRecord]:
        row = conn.execute(select(memory_records).where(memory_records.c.id == record_id)).first()
        if row is None:
            return None
        return self._load(conn, [row])[0]

    def _fetch_active_in_slot(self, conn: Connection, slot: Tuple[str, str, str]) -> List[MemoryRecord]:
        owner_id, subject_key, predicate = slot
        rows = conn.execute(
            select(memory_records).where(
                and_(memory_records.c.owner_id == owner_id, memory_records.c.subject_key == subject_key,
                     memory_records.c.predicate == predicate, memory_records.c.status == ACTIVE))).all()
        return self._load(conn, rows)

    def _assert_single_active(self, conn: Connection, slot: Optional[Tuple[str, str, str]]) -> None:
        if slot is None:
            return
        occupants = self._fetch_active_in_slot(conn, slot)
        if len(occupants) > 1:
            ids = [record.id for record in occupants]
            logger.error(f'Slot {slot} has {len(ids)} active records: {ids}')
            raise InvariantViolation(f'Slot {slot} has more than one active record: {ids}')

    @staticmethod
    def _validate(record: MemoryRecord) -> None:
        if record.kind not in RECORD_KINDS:
            raise ValueError(f'Unknown record kind: {record.kind}')
        if record.sensitivity not in SENSITIVITY_RANK:
            raise ValueError(f'Unknown sensitivity: {record.sensitivity}')
        if not record.owner_id:
            raise ValueError('Record owner_id is required')
        if not record.subject_key:
            raise ValueError('Record subject_name is required')
        if record.sentiment is not None and not -1.0 <= record.sentiment <= 1.0:
            raise ValueError(f'Sentiment out of range: {record.sentiment}')

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, record: MemoryRecord) -> MemoryRecord:
        """Insert a new record.

        Args:
            record: Record to insert; id is generated when empty

        Returns:
            The stored record

        Raises:
            SlotConflict: If the record is active and its slot already has an active record
        """
        self._validate(record)
        record.id = record.id or str(uuid.uuid4())
        record.predicate = normalize_predicate(record.predicate)
        now = utc_now()
        record.created_at = record.created_at or now
        record.updated_at = now
        slot = record.slot if record.is_active else None

        with self.slot_lock(slot):
            try:
                with self.engine.begin() as conn:
                    if slot is not None:
                        occupants = self._fetch_active_in_slot(conn, slot)
                        if occupants:
                            raise SlotConflict(f'Slot {slot} is occupied by {occupants[0].id}', record_id=occupants[0].id, slot=slot)
                    conn.execute(insert(memory_records).values(**self._to_row(record)))
                    self._insert_aliases(conn, record.id, record.owner_id, record.aliases)
            except IntegrityError as e:
                # another process won the slot between our check and insert
                raise SlotConflict(f'Slot {slot} was taken concurrently: {e.orig}', slot=slot)

        logger.debug(f'Inserted record {record.id} ({record.kind}) for owner {record.owner_id}')
        return record

    def update(self,
               record_id: str,
               patch: Dict[str, Any],
               expected_version: Optional[int] = None,
               bump_version: Optional[bool] = None) -> MemoryRecord:
        """Patch mutable fields of an active record in place.

        Args:
            record_id: Record to update
            patch: Field values to set (see MUTABLE_FIELDS)
            expected_version: Optimistic check; the update fails if the stored version differs
            bump_version: Increment version; defaults to True when content changes

        Returns:
            The updated record

        Raises:
            RecordNotFound: If the record does not exist
            SlotConflict: If the record is no longer active or its version moved on
            InvariantViolation: If the patch touches immutable fields
        """
        illegal = set(patch) - MUTABLE_FIELDS
        if illegal:
            raise InvariantViolation(f'Fields {sorted(illegal)} cannot be patched on record {record_id}')

        with self.engine.begin() as conn:
            current = self._fetch(conn, record_id)
        if current is None:
            raise RecordNotFound(f'Record {record_id} not found')

        with self.slot_lock(current.slot):
            with self.engine.begin() as conn:
                current = self._fetch(conn, record_id)
                if current is None:
                    raise RecordNotFound(f'Record {record_id} not found')
                if bump_version is None:
                    bump_version = 'content' in patch and patch['content'] != current.content
                values = dict(patch)
                values['updated_at'] = utc_now()
                if bump_version:
                    values['version'] = current.version + 1

                conditions = [memory_records.c.id == record_id, memory_records.c.status == ACTIVE]
                if expected_version is not None:
                    conditions.append(memory_records.c.version == expected_version)
                result = conn.execute(update(memory_records).where(and_(*conditions)).values(**values))
                if result.rowcount == 0:
                    raise SlotConflict(
                        f'Record {record_id} changed concurrently (status={current.status}, version={current.version}, '
                        f'expected={expected_version})',
                        record_id=record_id,
                        slot=current.slot)
                updated = self._fetch(conn, record_id)

        logger.debug(f'Updated record {record_id} fields={sorted(patch)} version={updated.version}')
        return updated

    def supersede(self, old_id: str, new_record: MemoryRecord, expected_version: Optional[int] = None) -> MemoryRecord:
        """Replace an active record by a new version in one transaction.

        The old record becomes superseded and historical, the new one is active with
        version = old.version + 1 and both chain links set.

        Args:
            old_id: Active record being replaced
            new_record: Replacement; owner must match
            expected_version: Optimistic check on the old record

        Returns:
            The new active record

        Raises:
            RecordNotFound: If old_id does not exist
            SlotConflict: If the old record is no longer active, its version moved on, or the
                new record's slot is held by a third record
            InvariantViolation: On owner mismatch or if the link would create a cycle
        """
        self._validate(new_record)
        new_record.id = new_record.id or str(uuid.uuid4())
        new_record.predicate = normalize_predicate(new_record.predicate)

        with self.engine.begin() as conn:
            old = self._fetch(conn, old_id)
        if old is None:
            raise RecordNotFound(f'Record {old_id} not found')
        if old.owner_id != new_record.owner_id:
            logger.error(f'Refusing cross-owner supersede of {old_id} ({old.owner_id}) by owner {new_record.owner_id}')
            raise InvariantViolation(f'Record {old_id} belongs to a different owner')

        with self.slot_lock(old.slot, new_record.slot):
            try:
                with self.engine.begin() as conn:
                    old = self._fetch(conn, old_id)
                    if old is None:
                        raise RecordNotFound(f'Record {old_id} not found')
                    if not old.is_active or (expected_version is not None and old.version != expected_version):
                        raise SlotConflict(f'Record {old_id} changed concurrently (status={old.status}, version={old.version})',
                                           record_id=old_id,
                                           slot=old.slot)
                    if new_record.id in self._chain_ids(conn, old_id):
                        logger.error(f'Supersede of {old_id} by {new_record.id} would create a version cycle')
                        raise InvariantViolation(f'Record {new_record.id} already appears in the chain of {old_id}')
                    if new_record.slot is not None and new_record.slot != old.slot:
                        others = [r for r in self._fetch_active_in_slot(conn, new_record.slot) if r.id != old_id]
                        if others:
                            raise SlotConflict(f'Slot {new_record.slot} is occupied by {others[0].id}',
                                               record_id=others[0].id,
                                               slot=new_record.slot)

                    now = utc_now()
                    result = conn.execute(
                        update(memory_records).where(
                            and_(memory_records.c.id == old_id, memory_records.c.status == ACTIVE,
                                 memory_records.c.version == old.version)).values(status=SUPERSEDED,
                                                                                  superseded_by_id=new_record.id,
                                                                                  is_historical=True,
                                                                                  updated_at=now))
                    if result.rowcount == 0:
                        raise SlotConflict(f'Record {old_id} changed concurrently', record_id=old_id, slot=old.slot)

                    new_record.status = ACTIVE
                    new_record.version = old.version + 1
                    new_record.supersedes_id = old_id
                    new_record.superseded_by_id = None
                    new_record.created_at = now
                    new_record.updated_at = now
                    new_record.aliases = sorted(set(old.aliases) | set(new_record.aliases))
                    conn.execute(insert(memory_records).values(**self._to_row(new_record)))
                    self._insert_aliases(conn, new_record.id, new_record.owner_id, new_record.aliases)
                    self._assert_single_active(conn, new_record.slot)
            except IntegrityError as e:
                raise SlotConflict(f'Slot {new_record.slot} was taken concurrently: {e.orig}', slot=new_record.slot)

        logger.debug(f'Record {old_id} superseded by {new_record.id} (version {new_record.version})')
        return new_record

    def soft_delete(self,
                    record_id: str,
                    expected_version: Optional[int] = None,
                    superseded_by_id: Optional[str] = None) -> MemoryRecord:
        """Archive an active record, keeping the row for history.

        Args:
            record_id: Record to archive
            expected_version: Optimistic check
            superseded_by_id: Link to the record that absorbed this one (consolidation)

        Returns:
            The archived record
        """
        with self.engine.begin() as conn:
            current = self._fetch(conn, record_id)
            if current is None:
                raise RecordNotFound(f'Record {record_id} not found')
            if superseded_by_id == record_id:
                raise InvariantViolation(f'Record {record_id} cannot be superseded by itself')
            conditions = [memory_records.c.id == record_id, memory_records.c.status == ACTIVE]
            if expected_version is not None:
                conditions.append(memory_records.c.version == expected_version)
            values = {'status': ARCHIVED, 'updated_at': utc_now()}
            if superseded_by_id is not None:
                values['superseded_by_id'] = superseded_by_id
            result = conn.execute(update(memory_records).where(and_(*conditions)).values(**values))
            if result.rowcount == 0:
                raise SlotConflict(f'Record {record_id} is not active at version {expected_version}', record_id=record_id, slot=current.slot)
            archived = self._fetch(conn, record_id)

        logger.debug(f'Archived record {record_id}')
        return archived

    def hard_delete(self, record_id: str) -> MemoryRecord:
        """Physically remove a record; links pointing at it are cleared.

        Returns:
            Snapshot of the record as it was before deletion
        """
        with self.engine.begin() as conn:
            snapshot = self._fetch(conn, record_id)
            if snapshot is None:
                raise RecordNotFound(f'Record {record_id} not found')
            conn.execute(delete(memory_aliases).where(memory_aliases.c.record_id == record_id))
            conn.execute(
                delete(record_cooccurrence).where(
                    or_(record_cooccurrence.c.record_a == record_id, record_cooccurrence.c.record_b == record_id)))
            conn.execute(update(memory_records).where(memory_records.c.supersedes_id == record_id).values(supersedes_id=None))
            conn.execute(update(memory_records).where(memory_records.c.superseded_by_id == record_id).values(superseded_by_id=None))
            conn.execute(delete(memory_records).where(memory_records.c.id == record_id))

        logger.info(f'Hard-deleted record {record_id} for owner {snapshot.owner_id}')
        return snapshot

    def add_alias(self, record_id: str, alias: str) -> MemoryRecord:
        """Attach an alternative name to a record without touching its content."""
        with self.engine.begin() as conn:
            record = self._fetch(conn, record_id)
            if record is None:
                raise RecordNotFound(f'Record {record_id} not found')
            key = normalize_subject(alias)
            if key and key != record.subject_key and alias not in record.aliases:
                self._insert_aliases(conn, record_id, record.owner_id, [alias])
            record = self._fetch(conn, record_id)
        return record

    def _insert_aliases(self, conn: Connection, record_id: str, owner_id: str, aliases: Iterable[str]) -> None:
        existing = {normalize_subject(a) for a in self._aliases_for(conn, [record_id]).get(record_id, [])}
        now = utc_now()
        for alias in aliases:
            key = normalize_subject(alias)
            if not key or key in existing:
                continue
            existing.add(key)
            conn.execute(insert(memory_aliases).values(record_id=record_id, owner_id=owner_id, alias=alias, alias_key=key, created_at=now))

    def record_access(self, record_ids: Sequence[str], now: Optional[datetime] = None, boost: float = 0.02) -> None:
        """Register that records were surfaced together by a retrieval.

        Increments access counters, nudges importance up and restarts decay from the current
        importance. Pairs of records are counted as co-accessed.
        """
        if not record_ids:
            return
        now = now or utc_now()
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(memory_records.c.id, memory_records.c.owner_id, memory_records.c.importance).where(
                    memory_records.c.id.in_(list(record_ids)))).all()
            for row in rows:
                importance = min(1.0, row.importance + boost)
                conn.execute(
                    update(memory_records).where(memory_records.c.id == row.id).values(access_count=memory_records.c.access_count + 1,
                                                                                      last_accessed_at=now,
                                                                                      importance=importance,
                                                                                      base_importance=importance))
            owners = {row.id: row.owner_id for row in rows}
            for a, b in combinations(sorted(owners), 2):
                if owners[a] != owners[b]:
                    continue
                result = conn.execute(
                    update(record_cooccurrence).where(and_(record_cooccurrence.c.record_a == a,
                                                           record_cooccurrence.c.record_b == b)).values(count=record_cooccurrence.c.count + 1,
                                                                                                        last_seen_at=now))
                if result.rowcount == 0:
                    conn.execute(insert(record_cooccurrence).values(record_a=a, record_b=b, owner_id=owners[a], count=1, last_seen_at=now))

    def set_importance(self, record_id: str, importance: float, expected_version: Optional[int] = None) -> bool:
        """Maintenance write of an active record's importance; updated_at is left alone.

        Returns:
            False when the record is no longer active or its version moved on
        """
        conditions = [memory_records.c.id == record_id, memory_records.c.status == ACTIVE]
        if expected_version is not None:
            conditions.append(memory_records.c.version == expected_version)
        with self.engine.begin() as conn:
            result = conn.execute(update(memory_records).where(and_(*conditions)).values(importance=importance))
        return result.rowcount == 1

    def set_embedding(self, record_id: str, embedding: List[float], model_id: Optional[str]) -> bool:
        """Store a recomputed embedding on a record of any status."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(memory_records).where(memory_records.c.id == record_id).values(embedding=list(embedding), embedding_model=model_id))
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, record_id: str, owner_id: Optional[str] = None) -> Optional[MemoryRecord]:
        with self.engine.connect() as conn:
            record = self._fetch(conn, record_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            return None
        return record

    def get_active_by_slot(self, owner_id: str, subject: str, predicate: str) -> Optional[MemoryRecord]:
        """Return the active record of a slot, if any."""
        slot = (owner_id, normalize_subject(subject), normalize_predicate(predicate))
        if slot[2] is None:
            return None
        with self.engine.connect() as conn:
            occupants = self._fetch_active_in_slot(conn, slot)
        return occupants[0] if occupants else None

    def find_by_subject(self, owner_id: str, subject: str, active_only: bool = True) -> List[MemoryRecord]:
        """Records whose subject or one of whose aliases matches the given name."""
        key = normalize_subject(subject)
        aliased = select(memory_aliases.c.record_id).where(and_(memory_aliases.c.owner_id == owner_id, memory_aliases.c.alias_key == key))
        query = select(memory_records).where(
            and_(memory_records.c.owner_id == owner_id, or_(memory_records.c.subject_key == key, memory_records.c.id.in_(aliased))))
        if active_only:
            query = query.where(memory_records.c.status == ACTIVE)
        with self.engine.connect() as conn:
            return self._load(conn, conn.execute(query.order_by(memory_records.c.created_at)).all())

    def list_records(self,
                     owner_id: str,
                     status: Optional[str] = ACTIVE,
                     category: Optional[str] = None,
                     kinds: Optional[Sequence[str]] = None) -> List[MemoryRecord]:
        query = select(memory_records).where(memory_records.c.owner_id == owner_id)
        if status is not None:
            query = query.where(memory_records.c.status == status)
        if category is not None:
            query = query.where(memory_records.c.category == category)
        if kinds:
            query = query.where(memory_records.c.kind.in_(list(kinds)))
        with self.engine.connect() as conn:
            return self._load(conn, conn.execute(query.order_by(memory_records.c.created_at, memory_records.c.id)).all())

    def list_owners(self) -> List[str]:
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(select(memory_records.c.owner_id).distinct().order_by(memory_records.c.owner_id))]

    def count_active_in_category_since(self, owner_id: str, category: str, since: Optional[datetime]) -> int:
        query = select(func.count()).select_from(memory_records).where(
            and_(memory_records.c.owner_id == owner_id, memory_records.c.category == category, memory_records.c.status == ACTIVE))
        if since is not None:
            query = query.where(memory_records.c.created_at > since)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def _chain_ids(self, conn: Connection, record_id: str) -> List[str]:
        """Ids reachable backwards through supersedes_id, starting at record_id."""
        seen: List[str] = []
        current = record_id
        while current is not None:
            if current in seen:
                logger.error(f'Version chain cycle detected at {current} (path {seen})')
                raise InvariantViolation(f'Version chain of {record_id} contains a cycle at {current}')
            seen.append(current)
            current = conn.execute(select(memory_records.c.supersedes_id).where(memory_records.c.id == current)).scalar_one_or_none()
        return seen

    def chain(self, record_id: str) -> List[MemoryRecord]:
        """Full version chain containing record_id, oldest first.

        Raises:
            InvariantViolation: If the chain loops
        """
        with self.engine.connect() as conn:
            if self._fetch(conn, record_id) is None:
                raise RecordNotFound(f'Record {record_id} not found')
            backward = self._chain_ids(conn, record_id)
            forward: List[str] = []
            current = record_id
            while True:
                nxt = conn.execute(select(memory_records.c.superseded_by_id).where(memory_records.c.id == current)).scalar_one_or_none()
                if nxt is None:
                    break
                back_link = conn.execute(select(memory_records.c.supersedes_id).where(memory_records.c.id == nxt)).scalar_one_or_none()
                if back_link != current:
                    # consolidation points at the keeper without a back-link; that ends the chain
                    break
                if nxt in backward or nxt in forward:
                    raise InvariantViolation(f'Version chain of {record_id} contains a cycle at {nxt}')
                forward.append(nxt)
                current = nxt
            ids = list(reversed(backward)) + forward
            rows = conn.execute(select(memory_records).where(memory_records.c.id.in_(ids))).all()
            by_id = {record.id: record for record in self._load(conn, rows)}
        return [by_id[i] for i in ids if i in by_id]

    def latest_in_chain(self, record_id: str) -> Optional[MemoryRecord]:
        """Follow superseded_by_id links (including consolidation) to the newest record."""
        with self.engine.connect() as conn:
            record = self._fetch(conn, record_id)
            seen = set()
            while record is not None and record.superseded_by_id and record.id not in seen:
                seen.add(record.id)
                nxt = self._fetch(conn, record.superseded_by_id)
                if nxt is None:
                    break
                record = nxt
        return record

    # ------------------------------------------------------------------
    # Category summaries
    # ------------------------------------------------------------------

    @staticmethod
    def _summary_from_row(row) -> CategorySummary:
        data = dict(row._mapping)
        data['last_synthesized_at'] = ensure_utc(data['last_synthesized_at'])
        data['member_record_ids'] = list(data['member_record_ids'] or [])
        return CategorySummary(**data)

    def get_summary(self, owner_id: str, category: str) -> Optional[CategorySummary]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(category_summaries).where(and_(category_summaries.c.owner_id == owner_id,
                                                      category_summaries.c.category == category))).first()
        return self._summary_from_row(row) if row is not None else None

    def list_summaries(self, owner_id: str, categories: Optional[Sequence[str]] = None) -> List[CategorySummary]:
        query = select(category_summaries).where(category_summaries.c.owner_id == owner_id)
        if categories:
            query = query.where(category_summaries.c.category.in_(list(categories)))
        with self.engine.connect() as conn:
            return [self._summary_from_row(row) for row in conn.execute(query.order_by(category_summaries.c.category))]

    def save_summary(self, summary: CategorySummary) -> CategorySummary:
        """Insert or replace the summary of (owner, category); version increments on replace."""
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(category_summaries.c.id, category_summaries.c.version).where(
                    and_(category_summaries.c.owner_id == summary.owner_id, category_summaries.c.category == summary.category))).first()
            values = {
                'summary_text': summary.summary_text,
                'member_record_ids': list(summary.member_record_ids),
                'source_hash': summary.source_hash,
                'last_synthesized_at': summary.last_synthesized_at,
            }
            if existing is None:
                summary.id = summary.id or str(uuid.uuid4())
                summary.version = 1
                conn.execute(insert(category_summaries).values(id=summary.id,
                                                               owner_id=summary.owner_id,
                                                               category=summary.category,
                                                               version=1,
                                                               **values))
            else:
                summary.id = existing.id
                summary.version = existing.version + 1
                conn.execute(update(category_summaries).where(category_summaries.c.id == existing.id).values(version=summary.version, **values))
        return summary

    # ------------------------------------------------------------------
    # Co-access and relationship strengths
    # ------------------------------------------------------------------

    def cooccurrence(self, owner_id: str) -> List[Tuple[str, str, int]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(record_cooccurrence.c.record_a, record_cooccurrence.c.record_b,
                       record_cooccurrence.c.count).where(record_cooccurrence.c.owner_id == owner_id)).all()
        return [(row.record_a, row.record_b, row.count) for row in rows]

    def replace_relationships(self, owner_id: str, strengths: Dict[Tuple[str, str], Tuple[float, int]]) -> None:
        """Overwrite the owner's relationship strengths with freshly computed values."""
        now = utc_now()
        with self.engine.begin() as conn:
            conn.execute(delete(entity_relationships).where(entity_relationships.c.owner_id == owner_id))
            for (subject_a, subject_b), (strength, count) in sorted(strengths.items()):
                conn.execute(
                    insert(entity_relationships).values(owner_id=owner_id,
                                                        subject_a=subject_a,
                                                        subject_b=subject_b,
                                                        strength=strength,
                                                        co_access_count=count,
                                                        updated_at=now))

    def list_relationships(self, owner_id: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(entity_relationships).where(entity_relationships.c.owner_id == owner_id).order_by(
                    entity_relationships.c.strength.desc())).all()
        return [dict(row._mapping) for row in rows]

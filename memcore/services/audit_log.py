"""
Append-only audit log of memory operations.
"""

import uuid
from typing import List, Optional

from sqlalchemy import Text, cast, func, insert, or_, select
from sqlalchemy.engine import Engine

from ..models.core import MemoryOperation
from ..utils.database import memory_operations
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc

logger = get_logger(__name__)

_JSON_LIST_FIELDS = ('similar', 'result_record_ids', 'overrides')


class AuditLog:
    """Writes and reads MemoryOperation rows. Rows are never updated or deleted."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def append(self, entry: MemoryOperation) -> MemoryOperation:
        """Persist an audit entry.

        Args:
            entry: Operation to record; id is generated when empty

        Returns:
            The stored entry
        """
        entry.id = entry.id or str(uuid.uuid4())
        values = entry.to_dict()
        values['created_at'] = entry.created_at
        with self.engine.begin() as conn:
            conn.execute(insert(memory_operations).values(**values))
        logger.debug(f'Audit {entry.operation}/{entry.status} for owner {entry.owner_id}: {entry.result_record_ids}')
        return entry

    def list_for_owner(self, owner_id: str, record_id: Optional[str] = None, limit: int = 100) -> List[MemoryOperation]:
        """Most recent entries first, optionally restricted to those touching a record.

        Args:
            owner_id: Owner to read
            record_id: Only entries whose target or results include this id
            limit: Maximum number of entries
        """
        query = select(memory_operations).where(memory_operations.c.owner_id == owner_id)
        if record_id is not None:
            # JSON containment differs per dialect; match the serialized id instead
            query = query.where(or_(memory_operations.c.target_id == record_id,
                                    cast(memory_operations.c.result_record_ids, Text).contains(record_id)))
        query = query.order_by(memory_operations.c.created_at.desc(), memory_operations.c.id).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [self._from_row(row) for row in rows]

    def count(self, owner_id: str, operation: Optional[str] = None) -> int:
        query = select(func.count()).select_from(memory_operations).where(memory_operations.c.owner_id == owner_id)
        if operation is not None:
            query = query.where(memory_operations.c.operation == operation)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    @staticmethod
    def _from_row(row) -> MemoryOperation:
        data = dict(row._mapping)
        data['created_at'] = ensure_utc(data['created_at'])
        for key in _JSON_LIST_FIELDS:
            data[key] = list(data[key] or [])
        return MemoryOperation(**data)

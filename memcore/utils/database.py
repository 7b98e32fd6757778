"""
SQLAlchemy engine and table definitions for the memory store.
"""

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, Index, Integer, MetaData, String, Table, Text, UniqueConstraint,
                        and_, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .logging_config import get_logger

logger = get_logger(__name__)

metadata = MetaData()

memory_records = Table(
    'memory_records',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(128), nullable=False),
    Column('kind', String(32), nullable=False),
    Column('subject_name', Text, nullable=False),
    Column('subject_key', String(256), nullable=False),
    Column('content', Text, nullable=False),
    Column('predicate', String(128), nullable=True),
    Column('object_value', Text, nullable=True),
    Column('embedding', JSON, nullable=True),
    Column('embedding_model', String(128), nullable=True),
    Column('importance', Float, nullable=False, default=0.5),
    Column('base_importance', Float, nullable=False, default=0.5),
    Column('importance_tier', String(16), nullable=False, default='medium'),
    Column('pinned', Boolean, nullable=False, default=False),
    Column('sentiment', Float, nullable=True),
    Column('confidence', Float, nullable=True),
    Column('is_historical', Boolean, nullable=False, default=False),
    Column('effective_from', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('recurrence', JSON, nullable=True),
    Column('sensitivity', String(16), nullable=False, default='normal'),
    Column('category', String(64), nullable=False, default='general'),
    Column('status', String(16), nullable=False, default='active'),
    Column('supersedes_id', String(36), nullable=True),
    Column('superseded_by_id', String(36), nullable=True),
    Column('version', Integer, nullable=False, default=1),
    Column('access_count', Integer, nullable=False, default=0),
    Column('last_accessed_at', DateTime(timezone=True), nullable=True),
    Column('source_text', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)

Index('ix_memory_records_owner_status', memory_records.c.owner_id, memory_records.c.status)
Index('ix_memory_records_owner_subject', memory_records.c.owner_id, memory_records.c.subject_key)
Index('ix_memory_records_supersedes', memory_records.c.supersedes_id)

# One active record per (owner, subject, predicate) slot
_active_slot = and_(memory_records.c.status == 'active', memory_records.c.predicate.isnot(None))
Index('uq_memory_records_active_slot',
      memory_records.c.owner_id,
      memory_records.c.subject_key,
      memory_records.c.predicate,
      unique=True,
      sqlite_where=_active_slot,
      postgresql_where=_active_slot)

memory_aliases = Table(
    'memory_aliases',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('record_id', String(36), nullable=False, index=True),
    Column('owner_id', String(128), nullable=False),
    Column('alias', Text, nullable=False),
    Column('alias_key', String(256), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('record_id', 'alias_key', name='uq_memory_aliases_record_alias'),
)
Index('ix_memory_aliases_owner_key', memory_aliases.c.owner_id, memory_aliases.c.alias_key)

category_summaries = Table(
    'category_summaries',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(128), nullable=False),
    Column('category', String(64), nullable=False),
    Column('summary_text', Text, nullable=False),
    Column('member_record_ids', JSON, nullable=False),
    Column('version', Integer, nullable=False, default=1),
    Column('source_hash', String(64), nullable=True),
    Column('last_synthesized_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('owner_id', 'category', name='uq_category_summaries_owner_category'),
)

memory_operations = Table(
    'memory_operations',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(128), nullable=False),
    Column('operation', String(16), nullable=False),
    Column('status', String(16), nullable=False),
    Column('candidate_text', Text, nullable=False, default=''),
    Column('candidate', JSON, nullable=True),
    Column('similar', JSON, nullable=False),
    Column('reasoning', Text, nullable=False, default=''),
    Column('merge_strategy', String(16), nullable=True),
    Column('hard_delete', Boolean, nullable=False, default=False),
    Column('target_id', String(36), nullable=True),
    Column('result_record_ids', JSON, nullable=False),
    Column('old_content', Text, nullable=True),
    Column('new_content', Text, nullable=True),
    Column('old_version', Integer, nullable=True),
    Column('new_version', Integer, nullable=True),
    Column('deleted_snapshot', JSON, nullable=True),
    Column('overrides', JSON, nullable=False),
    Column('error', Text, nullable=True),
    Column('job_id', String(36), nullable=True),
    Column('processing_time_ms', Float, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)
Index('ix_memory_operations_owner_created', memory_operations.c.owner_id, memory_operations.c.created_at)

maintenance_jobs = Table(
    'maintenance_jobs',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('job_type', String(32), nullable=False),
    Column('owner_id', String(128), nullable=True),
    Column('payload', JSON, nullable=False),
    Column('status', String(16), nullable=False, default='pending'),
    Column('attempts', Integer, nullable=False, default=0),
    Column('max_attempts', Integer, nullable=False, default=3),
    Column('scheduled_for', DateTime(timezone=True), nullable=False),
    Column('depends_on', String(36), nullable=True),
    Column('last_error', Text, nullable=True),
    Column('result', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('finished_at', DateTime(timezone=True), nullable=True),
)
Index('ix_maintenance_jobs_status_scheduled', maintenance_jobs.c.status, maintenance_jobs.c.scheduled_for)

record_cooccurrence = Table(
    'record_cooccurrence',
    metadata,
    Column('record_a', String(36), primary_key=True),
    Column('record_b', String(36), primary_key=True),
    Column('owner_id', String(128), nullable=False, index=True),
    Column('count', Integer, nullable=False, default=0),
    Column('last_seen_at', DateTime(timezone=True), nullable=False),
)

entity_relationships = Table(
    'entity_relationships',
    metadata,
    Column('owner_id', String(128), primary_key=True),
    Column('subject_a', String(256), primary_key=True),
    Column('subject_b', String(256), primary_key=True),
    Column('strength', Float, nullable=False),
    Column('co_access_count', Integer, nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)


def create_database_engine(db_config: DatabaseConfig) -> Engine:
    """Create an engine for the configured URL and make sure the schema exists.

    SQLite transactions are opened with BEGIN IMMEDIATE so concurrent writers queue on the
    database lock instead of failing on a read-to-write upgrade.

    Args:
        db_config: DatabaseConfig with the SQLAlchemy URL

    Returns:
        Engine with all memory tables created
    """
    url = db_config.url
    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        engine = create_engine(url, echo=db_config.echo, **kwargs)

        @event.listens_for(engine, 'connect')
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, 'begin')
        def _begin_immediate(conn):
            conn.exec_driver_sql('BEGIN IMMEDIATE')
    else:
        engine = create_engine(url, echo=db_config.echo, pool_pre_ping=True)

    metadata.create_all(engine)
    logger.info(f'Initialized memory database: {engine.url.render_as_string(hide_password=True)}')
    return engine

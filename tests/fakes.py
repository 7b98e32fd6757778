"""In-process stand-ins for the Bedrock and OpenSearch collaborators."""

import hashlib
import re
import uuid
from dataclasses import replace
from datetime import timedelta

from sqlalchemy import update

from memcore.models.core import CandidateFact, Decision, MemoryRecord, MergeStrategy, Operation
from memcore.models.errors import CollaboratorUnavailable, EmbeddingUnavailable
from memcore.services.memory_management import MemoryManagementService
from memcore.utils.config import MaintenanceConfig, config
from memcore.utils.database import memory_records
from memcore.utils.timestamp_utils import utc_now

_TOKEN = re.compile(r'[a-z0-9]+')


class HashingEmbedder:
    """Deterministic bag-of-words embedder: each token hashes into one dimension."""

    def __init__(self, dimension=256, model_id='hashing-v1'):
        self.dimension = dimension
        self.model_id = model_id
        self.available = True
        self.calls = 0

    def _embed(self, text):
        self.calls += 1
        if not self.available:
            raise EmbeddingUnavailable('embedding service down')
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            vector[int(hashlib.md5(token.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        return vector

    def embed_document(self, text):
        return self._embed(text)

    def embed_query(self, text):
        return self._embed(text)


class ScriptedDecisionMaker:
    """Plays back decisions in order; a step is a Decision factory or an exception to raise."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    def decide(self, candidate, similar):
        self.calls.append((candidate, list(similar)))
        step = self.steps.pop(0) if self.steps else add()
        if isinstance(step, Exception):
            raise step
        return step(candidate, similar)


def add():
    return lambda candidate, similar: Decision(Operation.ADD, reasoning='new information')


def noop():
    return lambda candidate, similar: Decision(Operation.NOOP, reasoning='already known')


def update_top(strategy=MergeStrategy.SUPERSEDE, same_entity=False):
    return lambda candidate, similar: Decision(Operation.UPDATE,
                                               reasoning=f'{strategy.value} the closest record',
                                               merge_strategy=strategy,
                                               target_id=similar[0].record.id,
                                               same_entity=same_entity)


def update_target(target_id, strategy=MergeStrategy.SUPERSEDE, same_entity=False):
    return lambda candidate, similar: Decision(Operation.UPDATE,
                                               reasoning='explicit target',
                                               merge_strategy=strategy,
                                               target_id=target_id,
                                               same_entity=same_entity)


def delete_target(target_id, hard_delete=False):
    return lambda candidate, similar: Decision(Operation.DELETE, reasoning='no longer true', target_id=target_id, hard_delete=hard_delete)


class ScriptedExtractor:
    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls = []

    def extract(self, text, known_entities=()):
        self.calls.append((text, list(known_entities)))
        return self.batches.pop(0) if self.batches else []


class RecordingSummaryWriter:
    def __init__(self):
        self.calls = []
        self.available = True

    def write_summary(self, category, records, previous=None):
        self.calls.append((category, [record.id for record in records], previous))
        if not self.available:
            raise CollaboratorUnavailable('summary model down')
        return ' '.join(record.content for record in records)


class StaticJudge:
    def __init__(self, answer=False):
        self.answer = answer

    def is_sufficient(self, query, summaries):
        return self.answer and bool(summaries)


class DummyLLM:
    """Stands in for BedrockLLM; answers come from a list, exceptions are raised."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    def _next(self):
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def generate_json(self, system_prompt, user_text, max_tokens=None):
        self.calls.append((system_prompt, user_text))
        return self._next()

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        self.calls.append((system_prompt, messages))
        return self._next(), None


def make_candidate(subject='Marcus', content='works at Stripe', kind='fact', **fields):
    return CandidateFact(kind=kind, subject_name=subject, content=content, **fields)


def make_record(owner_id='alice', subject='Marcus', content='works at Stripe', kind='fact', embedder=None, **fields):
    embedding = fields.pop('embedding', None)
    if embedding is None and embedder is not None:
        embedding = embedder.embed_document(content)
    embedding_model = fields.pop('embedding_model', getattr(embedder, 'model_id', None))
    return MemoryRecord(id=str(uuid.uuid4()),
                        owner_id=owner_id,
                        kind=kind,
                        subject_name=subject,
                        content=content,
                        embedding=embedding,
                        embedding_model=embedding_model,
                        **fields)


def backdate(engine, record_id, days, **extra):
    """Move a record's timestamps into the past, as if it had been stored `days` ago."""
    then = utc_now() - timedelta(days=days)
    values = {'created_at': then, 'updated_at': then}
    values.update(extra)
    with engine.begin() as conn:
        conn.execute(update(memory_records).where(memory_records.c.id == record_id).values(**values))


def make_service(engine, embedder, extractor=None, decision_maker=None, judge=None, **maintenance):
    """MemoryManagementService over the test database with every collaborator faked."""
    app_config = replace(config, maintenance=MaintenanceConfig(**maintenance))
    return MemoryManagementService(app_config=app_config,
                                   engine=engine,
                                   embedder=embedder,
                                   extractor=extractor or ScriptedExtractor(),
                                   decision_maker=decision_maker or ScriptedDecisionMaker(),
                                   summary_writer=RecordingSummaryWriter(),
                                   judge=judge or StaticJudge(False))

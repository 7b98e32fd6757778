import threading
from datetime import timedelta

from fakes import (ScriptedDecisionMaker, add, delete_target, make_candidate, make_record, noop, update_target, update_top)
from memcore.models.core import MergeStrategy, SimilarRecord
from memcore.models.errors import DecisionUnavailable
from memcore.services.update_engine import UpdateDecisionEngine, tie_break
from memcore.utils.config import DecisionConfig
from memcore.utils.timestamp_utils import utc_now


def build(store, audit, embedder, retriever, *steps, **config):
    decision_maker = ScriptedDecisionMaker(*steps)
    engine = UpdateDecisionEngine(store, audit, embedder, retriever, decision_maker, DecisionConfig(**config))
    return engine, decision_maker


def stripe():
    return make_candidate('Marcus', 'works at Stripe', predicate='works_at', object_value='Stripe')


def notion():
    return make_candidate('Marcus', 'works at Notion', predicate='works_at', object_value='Notion', source_text='Marcus accepted offer at Notion')


def test_marcus_changes_jobs(store, audit, embedder, retriever):
    engine, _ = build(store, audit, embedder, retriever, add(), update_top(MergeStrategy.SUPERSEDE))

    first = engine.apply('alice', stripe())
    second = engine.apply('alice', notion())

    assert first.operation == 'ADD'
    stripe_id = first.result_record_ids[0]
    assert second.operation == 'UPDATE'
    assert second.merge_strategy == 'supersede'

    old = store.get_by_id(stripe_id)
    new = store.get_active_by_slot('alice', 'Marcus', 'works_at')
    assert old.status == 'superseded'
    assert new.content == 'works at Notion'
    assert new.supersedes_id == stripe_id
    assert [r.id for r in store.chain(new.id)] == [stripe_id, new.id]


def test_verbatim_duplicate_is_a_noop_with_an_audit_entry(store, audit, embedder, retriever):
    engine, decision_maker = build(store, audit, embedder, retriever, add())
    engine.apply('alice', stripe())
    before = [record.to_dict() for record in store.list_records('alice', status=None)]

    entry = engine.apply('alice', make_candidate('marcus', 'Works at Stripe.'))

    assert entry.operation == 'NOOP'
    assert entry.status == 'noop'
    assert 'duplicate' in entry.overrides
    assert len(decision_maker.calls) == 1
    assert [record.to_dict() for record in store.list_records('alice', status=None)] == before
    assert audit.count('alice') == 2


def test_noop_is_idempotent(store, audit, embedder, retriever):
    engine, _ = build(store, audit, embedder, retriever, add(), noop(), noop())
    engine.apply('alice', make_candidate('Marcus', 'enjoys long bike rides'))
    snapshot = [record.to_dict() for record in store.list_records('alice', status=None)]

    engine.apply('alice', make_candidate('Marcus', 'likes cycling'))
    engine.apply('alice', make_candidate('Marcus', 'likes cycling'))

    assert [record.to_dict() for record in store.list_records('alice', status=None)] == snapshot
    assert audit.count('alice', operation='NOOP') == 2


def test_forget_request_forces_a_hard_delete(store, audit, embedder, retriever):
    engine, decision_maker = build(store, audit, embedder, retriever, add())
    record_id = engine.apply('alice', stripe()).result_record_ids[0]

    entry = engine.apply('alice', make_candidate('Marcus', 'works at Stripe', predicate='works_at', do_not_remember=True,
                                                 source_text="Please forget that Marcus works at Stripe"))

    assert entry.operation == 'DELETE'
    assert entry.hard_delete
    assert 'forget_request' in entry.overrides
    assert entry.deleted_snapshot['content'] == 'works at Stripe'
    assert store.get_by_id(record_id) is None
    assert len(decision_maker.calls) == 1


def test_do_not_remember_flag_without_match_is_a_noop(store, audit, embedder, retriever):
    engine, decision_maker = build(store, audit, embedder, retriever)

    entry = engine.apply('alice', make_candidate('Marcus', 'has a secret project', do_not_remember=True))

    assert entry.operation == 'NOOP'
    assert store.list_records('alice') == []
    assert decision_maker.calls == []


def test_delete_defaults_to_soft_archive(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, predicate='works_at'))
    engine, _ = build(store, audit, embedder, retriever, delete_target(record.id, hard_delete=True))

    entry = engine.apply('alice', make_candidate('Marcus', 'no longer works at Stripe'))

    assert entry.operation == 'DELETE'
    assert not entry.hard_delete
    assert 'soft_delete_default' in entry.overrides
    assert store.get_by_id(record.id).status == 'archived'


def test_historical_candidate_supersedes_instead_of_replacing(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, subject='Priya', content='works at Acme', predicate='works_at', object_value='Acme'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.REPLACE))

    entry = engine.apply('alice', make_candidate('Priya', 'used to work at Acme', predicate='works_at', object_value='Acme', is_historical=True))

    assert entry.merge_strategy == 'supersede'
    assert 'historical_supersede' in entry.overrides
    assert store.get_by_id(record.id).status == 'superseded'
    current = store.get_active_by_slot('alice', 'Priya', 'works_at')
    assert current.is_historical
    assert current.supersedes_id == record.id


def test_future_effective_candidate_is_stored_with_its_start_date(store, audit, embedder, retriever):
    engine, _ = build(store, audit, embedder, retriever, add(), add())
    old_id = engine.apply('alice', stripe()).result_record_ids[0]
    starts = utc_now() + timedelta(days=30)

    entry = engine.apply('alice', make_candidate('Marcus', 'works at Figma', predicate='works_at', object_value='Figma', effective_from=starts))

    assert entry.operation == 'UPDATE'
    assert 'slot_occupied' in entry.overrides
    new = store.get_active_by_slot('alice', 'Marcus', 'works_at')
    assert new.effective_from == starts
    assert new.supersedes_id == old_id


def test_unavailable_decision_is_requeued_once_then_audited_as_failed(store, audit, embedder, retriever):
    engine, decision_maker = build(store, audit, embedder, retriever, DecisionUnavailable('down'), DecisionUnavailable('down'))

    outcomes = engine.process('alice', [stripe()])

    assert len(outcomes) == 1
    assert outcomes[0].status == 'failed'
    assert 'DecisionUnavailable' in outcomes[0].error
    assert len(decision_maker.calls) == 2
    assert store.list_records('alice') == []


def test_requeued_candidate_succeeds_after_transient_failure(store, audit, embedder, retriever):
    engine, _ = build(store, audit, embedder, retriever, DecisionUnavailable('blip'), add(), add())

    outcomes = engine.process('alice', [stripe(), make_candidate('Jane', 'lives in Boston')])

    assert [entry.status for entry in outcomes] == ['applied', 'applied']
    assert len(store.list_records('alice')) == 2


def test_unavailable_embedding_degrades_to_failed_entry(store, audit, embedder, retriever):
    embedder.available = False
    engine, decision_maker = build(store, audit, embedder, retriever)

    outcomes = engine.process('alice', [stripe()])

    assert outcomes[0].status == 'failed'
    assert decision_maker.calls == []


def test_alias_links_names_without_renaming_the_record(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, subject='Robert', content='Robert plays chess'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.APPEND, same_entity=True))

    entry = engine.apply('alice', make_candidate('Bob', 'Bob plays chess on Sundays'))

    assert 'alias_linked' in entry.overrides
    updated = store.get_by_id(record.id)
    assert updated.subject_name == 'Robert'
    assert 'Bob' in updated.aliases
    assert updated.content == 'Robert plays chess. Bob plays chess on Sundays'
    assert updated.version == 2
    assert [r.id for r in store.find_by_subject('alice', 'bob')] == [record.id]


def test_different_subjects_are_never_merged_without_alias(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, subject='Robert', content='plays chess'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.REPLACE))

    entry = engine.apply('alice', make_candidate('Bob', 'plays chess on Sundays'))

    assert entry.operation == 'ADD'
    assert 'subject_mismatch' in entry.overrides
    assert store.get_by_id(record.id).content == 'plays chess'
    assert len(store.list_records('alice')) == 2


def test_append_merges_text_and_reembeds(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, content='Marcus likes jazz.'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.APPEND))

    entry = engine.apply('alice', make_candidate('Marcus', 'especially Coltrane'))

    updated = store.get_by_id(record.id)
    assert updated.content == 'Marcus likes jazz. especially Coltrane'
    assert updated.embedding == embedder.embed_document(updated.content)
    assert entry.old_version == 1
    assert entry.new_version == 2


def test_credentials_are_never_stored(store, audit, embedder, retriever):
    engine, decision_maker = build(store, audit, embedder, retriever, add())

    entry = engine.apply('alice', make_candidate('Marcus', 'bank password is hunter2'))

    assert entry.operation == 'NOOP'
    assert 'secret_guard' in entry.overrides
    assert store.list_records('alice') == []
    assert decision_maker.calls == []


def test_target_owned_by_someone_else_is_rejected(store, audit, embedder, retriever):
    foreign = store.insert(make_record(owner_id='bob', embedder=embedder))
    engine, _ = build(store, audit, embedder, retriever, update_target(foreign.id, MergeStrategy.REPLACE))

    entry = engine.apply('alice', make_candidate('Marcus', 'works at Notion'))

    assert entry.status == 'rejected'
    assert store.get_by_id(foreign.id).content == 'works at Stripe'
    assert store.list_records('alice') == []


def test_every_decision_is_audited(store, audit, embedder, retriever):
    engine, _ = build(store, audit, embedder, retriever, add(), noop(), DecisionUnavailable('x'), DecisionUnavailable('x'))

    engine.process('alice', [stripe(), make_candidate('Jane', 'likes tea'), make_candidate('Jane', 'lives in Boston')])

    trail = audit.list_for_owner('alice')
    assert sorted(entry.status for entry in trail) == ['applied', 'failed', 'noop']


def test_tie_break_prefers_recent_access_then_importance():
    now = utc_now()
    older = SimilarRecord(make_record(content='a', importance=0.9, last_accessed_at=now - timedelta(days=3)), 0.801)
    recent = SimilarRecord(make_record(content='b', importance=0.2, last_accessed_at=now), 0.800)
    important = SimilarRecord(make_record(content='c', importance=0.7, last_accessed_at=now), 0.800)
    distant = SimilarRecord(make_record(content='d', importance=1.0), 0.6)

    ordered = tie_break([distant, older, recent, important], tolerance=0.01)

    assert [item.record.content for item in ordered] == ['c', 'b', 'a', 'd']


def _concurrent_supersedes(store, audit, embedder, retriever, candidates):
    barrier = threading.Barrier(len(candidates), timeout=10)

    def decide(candidate, similar):
        barrier.wait()
        return update_top(MergeStrategy.SUPERSEDE)(candidate, similar)

    engine, _ = build(store, audit, embedder, retriever, add(), *[decide for _ in candidates])
    engine.apply('alice', stripe())

    outcomes = []

    def writer(candidate):
        outcomes.append(engine.apply('alice', candidate))

    threads = [threading.Thread(target=writer, args=(candidate, )) for candidate in candidates]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_concurrent_identical_updates_one_wins_other_noops(store, audit, embedder, retriever):
    outcomes = _concurrent_supersedes(store, audit, embedder, retriever, [notion(), notion()])

    statuses = sorted(entry.status for entry in outcomes)
    assert statuses == ['applied', 'noop']
    loser = next(entry for entry in outcomes if entry.status == 'noop')
    assert {'slot_conflict_retry', 'target_followed_chain'} & set(loser.overrides)
    active = [r for r in store.list_records('alice') if r.predicate == 'works_at']
    assert [r.content for r in active] == ['works at Notion']


def test_concurrent_different_updates_supersede_in_sequence(store, audit, embedder, retriever):
    figma = make_candidate('Marcus', 'works at Figma', predicate='works_at', object_value='Figma')
    outcomes = _concurrent_supersedes(store, audit, embedder, retriever, [notion(), figma])

    assert [entry.status for entry in outcomes] == ['applied', 'applied']
    assert any({'slot_conflict_retry', 'target_followed_chain'} & set(entry.overrides) for entry in outcomes)
    active = [r for r in store.list_records('alice') if r.predicate == 'works_at']
    assert len(active) == 1
    chain = store.chain(active[0].id)
    assert len(chain) == 3
    assert [r.version for r in chain] == [1, 2, 3]


def test_forget_phrase_elsewhere_in_the_note_only_drops_its_own_fact(store, audit, embedder, retriever):
    record = store.insert(make_record(embedder=embedder, predicate='works_at', object_value='Stripe'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.SUPERSEDE))
    note = 'Marcus works at Stripe as a staff engineer now. Forget that I told you his salary.'

    outcomes = engine.process('alice', [
        make_candidate('Marcus', 'works at Stripe as a staff engineer', predicate='works_at', source_text=note),
        make_candidate('Marcus', 'earns 250k a year', do_not_remember=True, source_text=note),
    ])

    assert [entry.operation for entry in outcomes] == ['UPDATE', 'NOOP']
    assert not any(entry.hard_delete for entry in outcomes)
    assert 'forget_request' in outcomes[1].overrides
    assert store.get_by_id(record.id).status == 'superseded'
    assert store.get_active_by_slot('alice', 'Marcus', 'works_at').content == 'works at Stripe as a staff engineer'


def test_target_forgotten_mid_write_is_retried_and_audited(store, audit, embedder, retriever, monkeypatch):
    record = store.insert(make_record(embedder=embedder, content='likes jazz'))
    engine, _ = build(store, audit, embedder, retriever, update_target(record.id, MergeStrategy.REPLACE))
    original_update = store.update

    def forgotten_first(record_id, patch, **kwargs):
        store.hard_delete(record_id)
        return original_update(record_id, patch, **kwargs)

    monkeypatch.setattr(store, 'update', forgotten_first)
    entry = engine.apply('alice', make_candidate('Marcus', 'likes jazz and blues'))

    assert entry.status == 'applied'
    assert entry.operation == 'ADD'
    assert 'slot_conflict_retry' in entry.overrides
    assert audit.count('alice') == 1
    assert [r.content for r in store.list_records('alice')] == ['likes jazz and blues']


def test_tie_break_groups_by_distance_not_rounding():
    now = utc_now()
    closer = SimilarRecord(make_record(content='a', importance=0.1), 0.8051)
    recent = SimilarRecord(make_record(content='b', importance=0.1, last_accessed_at=now), 0.8049)
    far = SimilarRecord(make_record(content='c', importance=1.0, last_accessed_at=now), 0.7940)

    ordered = tie_break([closer, far, recent], tolerance=0.01)

    assert [item.record.content for item in ordered] == ['b', 'a', 'c']

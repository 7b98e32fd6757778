import pytest

from fakes import ScriptedDecisionMaker, ScriptedExtractor, add, make_candidate, make_service, update_top
from memcore.models.core import MergeStrategy
from memcore.models.errors import DecisionUnavailable, RecordNotFound


def stripe():
    return make_candidate('Marcus', 'works at Stripe', predicate='works_at', object_value='Stripe', category='work_life')


def notion():
    return make_candidate('Marcus', 'works at Notion', predicate='works_at', object_value='Notion', category='work_life')


def priya():
    return make_candidate('Priya', 'leads the payments team', category='work_life')


@pytest.fixture
def extractor():
    return ScriptedExtractor([stripe(), priya()], [notion()])


@pytest.fixture
def service(engine, embedder, extractor):
    decisions = ScriptedDecisionMaker(add(), add(), update_top(MergeStrategy.SUPERSEDE))
    return make_service(engine, embedder, extractor=extractor, decision_maker=decisions, resummarize_min_new_records=2)


def test_learn_applies_candidates_and_queues_due_summaries(service, extractor):
    first = service.learn('alice', 'Marcus works at Stripe with Priya, who leads payments')

    assert [entry.operation for entry in first] == ['ADD', 'ADD']
    assert extractor.calls[0][1] == []
    resummarize = service.queue.open_job('alice', 'resummarize')
    assert resummarize.payload['categories'] == ['work_life']

    second = service.learn('alice', 'Marcus just accepted an offer at Notion')

    assert [entry.operation for entry in second] == ['UPDATE']
    assert extractor.calls[1][1] == ['Marcus', 'Priya']
    assert len(service.queue.list_jobs('alice', job_type='resummarize')) == 1


def test_history_and_retrieval_follow_the_current_version(service):
    service.learn('alice', 'Marcus works at Stripe with Priya')
    service.learn('alice', 'Marcus moved to Notion')
    current = service.store.get_active_by_slot('alice', 'Marcus', 'works_at')

    history = service.get_history('alice', current.id)
    assert [record.content for record in history] == ['works at Stripe', 'works at Notion']
    with pytest.raises(RecordNotFound):
        service.get_history('bob', current.id)

    result = service.retrieve('alice', 'works at Notion')
    assert current.id in [record.id for record in result.records]
    assert 'works at Stripe' not in [record.content for record in result.records]


def test_run_maintenance_writes_summaries_from_current_records(service):
    service.learn('alice', 'Marcus works at Stripe with Priya')
    service.learn('alice', 'Marcus moved to Notion')

    outcome = service.run_maintenance('alice')

    assert outcome == {'enqueued': {}, 'executed': 1}
    summary = service.store.get_summary('alice', 'work_life')
    assert 'works at Notion' in summary.summary_text
    assert 'Stripe' not in summary.summary_text


def test_run_maintenance_chains_requested_jobs(service):
    outcome = service.run_maintenance('alice', ['consolidate', 'resummarize'])

    assert outcome['executed'] == 2
    consolidate, resummarize = outcome['enqueued']['consolidate'], outcome['enqueued']['resummarize']
    assert service.get_job(resummarize).depends_on == consolidate
    assert service.job_result(consolidate) == {'merged': 0}
    assert service.list_failed_jobs('alice') == []


def test_forget_removes_record_and_leaves_an_audit_snapshot(service):
    service.learn('alice', 'Marcus works at Stripe with Priya')
    record = service.store.get_active_by_slot('alice', 'Marcus', 'works_at')

    entry = service.forget('alice', record.id)

    assert entry.hard_delete
    assert service.get_record('alice', record.id) is None
    trail = service.get_audit_trail('alice', record_id=record.id)
    assert [e.operation for e in trail][0] == 'DELETE'
    assert trail[0].deleted_snapshot['content'] == 'works at Stripe'
    with pytest.raises(RecordNotFound):
        service.forget('alice', record.id)


def test_collaborator_outages_degrade_to_nothing_learned(engine, embedder):
    decisions = ScriptedDecisionMaker(DecisionUnavailable('down'), DecisionUnavailable('down'))
    service = make_service(engine, embedder, extractor=ScriptedExtractor([stripe()], []), decision_maker=decisions)

    outcomes = service.learn('alice', 'Marcus works at Stripe')
    assert [entry.status for entry in outcomes] == ['failed']
    assert service.learn('alice', 'the extractor is down now') == []
    assert service.learn('alice', '   ') == []
    assert service.store.list_records('alice') == []
    assert service.audit.count('alice') == 1

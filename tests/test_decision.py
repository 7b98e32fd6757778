import pytest

from fakes import DummyLLM, make_candidate, make_record
from memcore.models.core import MergeStrategy, Operation, SimilarRecord
from memcore.models.errors import DecisionUnavailable
from memcore.services.decision import BedrockDecisionMaker, format_similar, parse_decision
from memcore.utils.bedrock_llm import BedrockLLMError


def test_parse_decision_accepts_well_formed_update():
    decision = parse_decision({
        'operation': 'update',
        'merge_strategy': 'Supersede',
        'target_id': 'r1',
        'same_entity': 'false',
        'reasoning': 'changed jobs'
    })

    assert decision.operation == Operation.UPDATE
    assert decision.merge_strategy == MergeStrategy.SUPERSEDE
    assert decision.target_id == 'r1'
    assert not decision.same_entity


def test_parse_decision_ignores_strategy_outside_updates():
    decision = parse_decision({'operation': 'DELETE', 'merge_strategy': 'append', 'memory_id': 'r2', 'hard_delete': True})

    assert decision.merge_strategy is None
    assert decision.target_id == 'r2'
    assert decision.hard_delete


@pytest.mark.parametrize('payload', [['ADD'], {'operation': 'MERGE'}, {'operation': 'CONSOLIDATE'},
                                     {'operation': 'UPDATE', 'merge_strategy': 'overwrite'}])
def test_parse_decision_rejects_unusable_payloads(payload):
    with pytest.raises(DecisionUnavailable):
        parse_decision(payload)


def test_decide_shows_similar_records_to_the_model():
    record = make_record()
    llm = DummyLLM({'operation': 'UPDATE', 'merge_strategy': 'supersede', 'target_id': record.id, 'reasoning': 'new job'})

    decision = BedrockDecisionMaker(llm=llm).decide(make_candidate(content='works at Notion'), [SimilarRecord(record, 0.81)])

    assert decision.target_id == record.id
    _, user_message = llm.calls[0]
    assert f'id={record.id}' in user_message
    assert 'similarity=0.81' in user_message
    assert '"content": "works at Notion"' in user_message


def test_decide_raises_decision_unavailable_when_model_fails():
    with pytest.raises(DecisionUnavailable):
        BedrockDecisionMaker(llm=DummyLLM(BedrockLLMError('timeout'))).decide(make_candidate(), [])


def test_format_similar_with_no_records():
    assert format_similar([]) == '(none)'

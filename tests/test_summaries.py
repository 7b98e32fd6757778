import pytest

from fakes import DummyLLM, make_record
from memcore.models.core import CategorySummary
from memcore.models.errors import CollaboratorUnavailable
from memcore.services.summaries import BedrockSufficiencyJudge, BedrockSummaryWriter, HeuristicSufficiencyJudge, query_terms
from memcore.utils.bedrock_llm import BedrockLLMError


def summary(text, category='work_life'):
    return CategorySummary(id='s1', owner_id='alice', category=category, summary_text=text)


def test_summary_writer_rewrites_from_members_and_previous_text():
    llm = DummyLLM('  Marcus now works at Notion.  ')
    records = [make_record(content='works at Notion'), make_record(subject='Priya', content='leads the payments team')]

    text = BedrockSummaryWriter(llm).write_summary('work_life', records, previous='Marcus works at Stripe.')

    assert text == 'Marcus now works at Notion.'
    _, messages = llm.calls[0]
    user_text = messages[0]['content'][0]['text']
    assert 'CURRENT SUMMARY:\nMarcus works at Stripe.' in user_text
    assert '- Priya (fact): leads the payments team' in user_text


def test_summary_writer_treats_empty_answer_as_unavailable():
    with pytest.raises(CollaboratorUnavailable):
        BedrockSummaryWriter(DummyLLM('   ')).write_summary('work_life', [make_record()])


def test_llm_judge_requires_confidence():
    summaries = [summary('Marcus works at Notion.')]

    assert BedrockSufficiencyJudge(DummyLLM({'sufficient': True, 'confidence': 0.9})).is_sufficient('Where is Marcus?', summaries)
    assert not BedrockSufficiencyJudge(DummyLLM({'sufficient': 'true', 'confidence': 0.4})).is_sufficient('Where is Marcus?', summaries)
    assert not BedrockSufficiencyJudge(DummyLLM(['sufficient'])).is_sufficient('Where is Marcus?', summaries)


def test_llm_judge_failure_falls_back_to_records():
    llm = DummyLLM(BedrockLLMError('throttled'))

    assert not BedrockSufficiencyJudge(llm).is_sufficient('Where is Marcus?', [summary('Marcus works at Notion.')])
    assert not BedrockSufficiencyJudge(DummyLLM()).is_sufficient('Where is Marcus?', [])


def test_heuristic_judge_measures_query_coverage():
    judge = HeuristicSufficiencyJudge(min_coverage=0.7)
    summaries = [summary('Marcus works at Notion as a designer.')]

    assert judge.is_sufficient('Marcus Notion designer', summaries)
    assert not judge.is_sufficient('What is Marcus paid?', summaries)
    assert not judge.is_sufficient('what is it?', summaries)


def test_query_terms_drop_stopwords_and_short_words():
    assert query_terms('What does Marcus do at Notion?') == {'marcus', 'notion'}

import pytest
from fastmcp import FastMCP

from fakes import ScriptedExtractor, make_candidate, make_service
from memcore.mcp_interface import MemoryTools, build_server


@pytest.fixture
def tools(engine, embedder):
    extractor = ScriptedExtractor([make_candidate('Marcus', 'works at Stripe', predicate='works_at', object_value='Stripe')])
    return MemoryTools(make_service(engine, embedder, extractor=extractor))


def test_remember_then_recall(tools):
    outcomes = tools.remember('alice', 'Marcus works at Stripe')

    assert [(o['operation'], o['status']) for o in outcomes] == [('ADD', 'applied')]
    context = tools.recall('alice', 'works at Stripe')
    assert context['source'] == 'records'
    assert context['records'][0]['content'] == 'works at Stripe'
    assert 'embedding' not in context['records'][0]
    assert context['records'][0]['score'] > 0


def test_forget_and_history(tools):
    record_id = tools.remember('alice', 'Marcus works at Stripe')[0]['record_ids'][0]

    assert [r['id'] for r in tools.memory_history('alice', record_id)] == [record_id]
    assert tools.forget_memory('alice', record_id)['operation'] == 'DELETE'
    with pytest.raises(Exception, match='History lookup failed'):
        tools.memory_history('alice', record_id)
    with pytest.raises(Exception, match='Forget failed'):
        tools.forget_memory('alice', record_id)


def test_tools_validate_input(tools):
    with pytest.raises(ValueError):
        tools.remember(' ', 'hello')
    assert tools.recall('alice', '  ')['source'] == 'none'
    with pytest.raises(Exception, match='Maintenance failed'):
        tools.run_maintenance('alice', ['vacuum'])


def test_maintenance_tools(tools):
    result = tools.run_maintenance('alice', ['decay', 'cleanup'])

    assert result['executed'] == 2
    assert tools.failed_jobs('alice') == []


def test_build_server(engine, embedder):
    server = build_server(make_service(engine, embedder))

    assert isinstance(server, FastMCP)
    assert server.name == 'Memory Engine'

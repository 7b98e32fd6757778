from dataclasses import replace

from memcore.utils import health_check
from memcore.utils.config import RetrieverConfig, config


class HealthyClient:
    def __init__(self, config):
        self.config = config

    def health_check(self):
        return True


class MissingCredentials:
    def __init__(self, config):
        raise RuntimeError('no credentials')


def test_health_status_reports_each_component(monkeypatch, engine):
    monkeypatch.setattr(health_check, 'BedrockLLM', HealthyClient)
    monkeypatch.setattr(health_check, 'BedrockEmbed', MissingCredentials)
    app_config = replace(config, retriever=RetrieverConfig(backend='store'))

    status = health_check.get_health_status(app_config, engine)

    assert status['bedrock_llm']['healthy']
    assert status['bedrock_embed'] == {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': 'no credentials'}
    assert status['database'] == {'healthy': True, 'service': 'Memory store', 'dialect': 'sqlite'}
    assert 'opensearch' not in status
    assert not health_check.check_health(app_config, engine)


def test_system_info_includes_configuration(monkeypatch):
    monkeypatch.setattr(health_check, 'BedrockLLM', HealthyClient)
    monkeypatch.setattr(health_check, 'BedrockEmbed', HealthyClient)
    app_config = replace(config, retriever=RetrieverConfig(backend='store'))

    info = health_check.get_system_info(app_config)

    assert info['configuration']['retriever_backend'] == 'store'
    assert info['configuration']['consolidate_threshold'] == app_config.maintenance.consolidate_threshold
    assert health_check.check_health(app_config)

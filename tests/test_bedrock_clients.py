import io
import json

import pytest
from botocore.exceptions import ClientError

from memcore.models.errors import EmbeddingUnavailable
from memcore.utils.bedrock_embed import BedrockEmbed
from memcore.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from memcore.utils.config import BedrockEmbedConfig, BedrockLLMConfig

THROTTLED = ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}}, 'ConverseStream')


class DummyRuntime:
    """bedrock-runtime stand-in; each response is a dict or an exception to raise."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def converse_stream(self, **request):
        return self._next(request)

    def invoke_model(self, **request):
        return self._next(request)


def stream(text):
    return {'stream': [{'contentBlockDelta': {'delta': {'text': text}}}, {'metadata': {'usage': {'inputTokens': 3}, 'metrics': {'latencyMs': 5}}}]}


@pytest.fixture
def runtime(monkeypatch):
    holder = {}

    def client(*args, **kwargs):
        return holder['runtime']

    monkeypatch.setattr('boto3.client', client)
    monkeypatch.setattr('time.sleep', lambda seconds: None)
    return holder


def llm_config(attempts=3):
    return BedrockLLMConfig(region='us-east-1', model_id='test-model', max_tokens=256, temperature=0.0, retry_attempts=attempts,
                            retry_delay=0.0, timeout=5)


def embed_config(model_id='amazon.titan-embed-text-v2:0', dimension=3):
    return BedrockEmbedConfig(region='us-east-1', model_id=model_id, dimension=dimension, retry_attempts=2, retry_delay=0.0, timeout=5)


def test_generate_json_strips_fence_and_parses(runtime):
    runtime['runtime'] = DummyRuntime(stream('\n[{"content": "works at Stripe"}]\n'))
    llm = BedrockLLM(llm_config())

    assert llm.generate_json('system', 'note') == [{'content': 'works at Stripe'}]
    request = runtime['runtime'].requests[0]
    assert request['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
    assert request['inferenceConfig']['stopSequences'] == ['```']


def test_generate_response_retries_throttling_then_gives_up(runtime):
    runtime['runtime'] = DummyRuntime(THROTTLED, stream('OK'))
    assert BedrockLLM(llm_config()).generate_response([], 'system')[0] == 'OK'

    runtime['runtime'] = DummyRuntime(THROTTLED, THROTTLED)
    with pytest.raises(BedrockLLMError):
        BedrockLLM(llm_config(attempts=2)).generate_response([], 'system')


def test_titan_embedding_request_and_shape_check(runtime):
    body = io.BytesIO(json.dumps({'embedding': [0.1, 0.2, 0.3]}).encode('utf-8'))
    runtime['runtime'] = DummyRuntime({'body': body}, {'body': io.BytesIO(b'{"embedding": [0.1]}')})
    embedder = BedrockEmbed(embed_config())

    assert embedder.embed_document('works at Stripe') == [0.1, 0.2, 0.3]
    assert json.loads(runtime['runtime'].requests[0]['body']) == {'inputText': 'works at Stripe', 'dimensions': 3}
    with pytest.raises(EmbeddingUnavailable):
        embedder.embed_query('works at Notion')
    assert embedder.embed_document('  ') == [0.0, 0.0, 0.0]


def test_unsupported_embedding_model_is_unavailable(runtime):
    runtime['runtime'] = DummyRuntime()
    with pytest.raises(EmbeddingUnavailable):
        BedrockEmbed(embed_config(model_id='mystery-embed')).embed_document('hello')

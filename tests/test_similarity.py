import pytest
from opensearchpy.exceptions import TransportError

from fakes import make_record
from memcore.services.similarity import OpenSearchRetriever, build_retriever, cosine_similarity, top_k_by_cosine
from memcore.utils.config import OpenSearchConfig
from memcore.utils.opensearch_client import OpenSearchClient, OpenSearchError


class DummyIndices:
    def __init__(self, exists=False):
        self._exists = exists
        self.created = []

    def exists(self, index):
        return self._exists

    def create(self, index, body):
        self.created.append((index, body))
        self._exists = True
        return {'acknowledged': True}


class DummyOpenSearch:
    """Records calls the way the low-level opensearch-py client receives them."""

    def __init__(self, hits=(), delete_error=None):
        self.indices = DummyIndices()
        self.hits = list(hits)
        self.delete_error = delete_error
        self.indexed = {}
        self.deleted = []
        self.searches = []

    def index(self, index, id, body):
        self.indexed[id] = body
        return {'result': 'created'}

    def delete(self, index, id):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(id)
        self.indexed.pop(id, None)
        return {'result': 'deleted'}

    def search(self, index, body):
        self.searches.append(body)
        return {'hits': {'hits': [{'_id': hit_id, '_score': score, '_source': {}} for hit_id, score in self.hits]}}


def opensearch_client(low_level):
    config = OpenSearchConfig(endpoint='localhost', port=443, region='us-east-1', index_name='test_records', dimension=256)
    return OpenSearchClient(config, client=low_level, sync_wait_seconds=0)


def test_cosine_similarity_handles_degenerate_vectors():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


def test_top_k_keeps_strictly_above_threshold_in_descending_order():
    records = [
        make_record(content='exact', embedding=[1.0, 0.0]),
        make_record(content='orthogonal', embedding=[0.0, 1.0]),
        make_record(content='opposite', embedding=[-1.0, 0.0]),
        make_record(content='close', embedding=[0.9, 0.1]),
        make_record(content='no vector'),
        make_record(content='wrong size', embedding=[1.0, 0.0, 0.0]),
    ]

    results = top_k_by_cosine([1.0, 0.0], records, k=5, threshold=0.0)

    assert [item.record.content for item in results] == ['exact', 'close']
    assert results[0].similarity >= results[1].similarity
    assert len(top_k_by_cosine([1.0, 0.0], records, k=1, threshold=0.0)) == 1
    assert top_k_by_cosine([0.0, 0.0], records, k=5, threshold=0.0) == []


def test_store_scan_is_owner_scoped_and_active_only(store, embedder, retriever):
    mine = store.insert(make_record(embedder=embedder))
    store.insert(make_record(owner_id='bob', embedder=embedder))
    archived = store.insert(make_record(content='works at Stripe as engineer', embedder=embedder))
    store.soft_delete(archived.id)

    results = retriever.find_similar('alice', embedder.embed_query('works at Stripe'), 10, 0.5)

    assert [item.record.id for item in results] == [mine.id]
    assert results[0].similarity == pytest.approx(1.0)


def test_opensearch_retriever_rechecks_hits_against_the_store(store, embedder):
    close = store.insert(make_record(embedder=embedder))
    farther = store.insert(make_record(subject='Stripe', content='Stripe is a payments company', embedder=embedder))
    archived = store.insert(make_record(content='works at Stripe in Dublin', embedder=embedder))
    store.soft_delete(archived.id)
    foreign = store.insert(make_record(owner_id='bob', embedder=embedder))
    low_level = DummyOpenSearch(hits=[(archived.id, 0.99), (foreign.id, 0.98), (farther.id, 0.7), (close.id, 0.6), ('gone', 0.5)])
    retriever = OpenSearchRetriever(store, opensearch_client(low_level))

    results = retriever.find_similar('alice', embedder.embed_query('works at Stripe'), 5, 0.1)

    assert [item.record.id for item in results] == [close.id, farther.id]
    body = low_level.searches[0]
    assert {'term': {'owner_id': 'alice'}} in body['query']['bool']['filter']
    assert {'term': {'status': 'active'}} in body['query']['bool']['filter']
    assert body['size'] == 10


def test_opensearch_sync_indexes_active_and_drops_inactive(store, embedder):
    low_level = DummyOpenSearch()
    retriever = OpenSearchRetriever(store, opensearch_client(low_level))
    record = store.insert(make_record(embedder=embedder))

    retriever.sync(record)
    assert low_level.indexed[record.id]['owner_id'] == 'alice'
    assert low_level.indexed[record.id]['embedding'] == record.embedding

    retriever.sync(store.soft_delete(record.id))
    assert record.id not in low_level.indexed
    assert low_level.deleted == [record.id]


def test_opensearch_remove_tolerates_index_errors(store):
    missing = OpenSearchRetriever(store, opensearch_client(DummyOpenSearch(delete_error=TransportError(404, 'not_found', {}))))
    broken = OpenSearchRetriever(store, opensearch_client(DummyOpenSearch(delete_error=TransportError(500, 'boom', {}))))

    missing.remove('x')
    broken.remove('x')

    with pytest.raises(OpenSearchError):
        broken.client.delete_document('x')
    assert missing.client.delete_document('x') is False


def test_ensure_index_creates_knn_mapping(store):
    low_level = DummyOpenSearch()
    retriever = OpenSearchRetriever(store, opensearch_client(low_level))

    assert retriever.ensure_index() == 'created'
    assert retriever.ensure_index() == 'exists'
    _, body = low_level.indices.created[0]
    assert body['mappings']['properties']['embedding']['dimension'] == 256
    assert body['settings']['index']['knn'] is True


def test_build_retriever_rejects_unknown_backend(store):
    with pytest.raises(ValueError):
        build_retriever('faiss', store)
    assert build_retriever('opensearch', store, client=opensearch_client(DummyOpenSearch())).client is not None

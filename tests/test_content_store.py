"""Unit tests for the content store clients."""
import pytest
import requests

from datasets.backoff import Deadline, RetryPolicy
from datasets.content_store import GatewayContentStore, MemoryContentStore, build_content_store
from datasets.crypto import content_hash
from datasets.errors import DeadlineExceeded, NotFound, Unavailable


class FakeResponse:

    def __init__(self, status_code, content=b''):
        self.status_code = status_code
        self.content = content
        self.text = content.decode('utf-8', errors='replace')


class FakeSession:
    """Replays scripted responses and records requests."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def request(self, method, url, **kwargs):
        self.calls.append((method, url))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _store(responses, max_attempts=3):
    session = FakeSession(responses)
    store = GatewayContentStore(
        'https://pins.example.test/', token='secret', session=session,
        retry=RetryPolicy(max_attempts=max_attempts, backoff_seconds=0.01), sleep=lambda _: None,
    )
    return store, session


def test_put_uploads_and_returns_content_hash():
    """put should upload unpinned bytes under their content hash."""
    store, session = _store([FakeResponse(404), FakeResponse(201)])
    content_id = store.put(b'ciphertext')

    assert content_id == content_hash(b'ciphertext')
    assert session.calls == [
        ('HEAD', f'https://pins.example.test/pins/{content_id}'),
        ('PUT', f'https://pins.example.test/blobs/{content_id}'),
    ]
    assert session.headers['Authorization'] == 'Bearer secret'


def test_put_skips_upload_when_already_pinned():
    """Re-putting identical bytes is a no-op."""
    store, session = _store([FakeResponse(200)])
    store.put(b'ciphertext')
    assert [method for method, _ in session.calls] == ['HEAD']


def test_get_retries_transient_failures():
    """5xx and transport errors are retried until a good response arrives."""
    data = b'payload'
    store, session = _store([
        FakeResponse(503),
        requests.ConnectionError('reset'),
        FakeResponse(200, data),
    ])
    assert store.get(content_hash(data)) == data
    assert len(session.calls) == 3


def test_get_gives_up_with_unavailable():
    """Persistent failures surface as Unavailable after max attempts."""
    store, session = _store([FakeResponse(502), FakeResponse(502)], max_attempts=2)
    with pytest.raises(Unavailable):
        store.get(content_hash(b'x'))
    assert len(session.calls) == 2


def test_get_missing_content_is_not_found_without_retry():
    """404 is authoritative."""
    store, session = _store([FakeResponse(404)])
    with pytest.raises(NotFound):
        store.get(content_hash(b'x'))
    assert len(session.calls) == 1


def test_get_rejects_bytes_that_do_not_match_content_id():
    """A gateway returning the wrong bytes is treated as a transient failure."""
    store, _ = _store([FakeResponse(200, b'wrong'), FakeResponse(200, b'right')])
    assert store.get(content_hash(b'right')) == b'right'


def test_get_honours_expired_deadline():
    """No request is made once the deadline has passed."""
    store, session = _store([])
    with pytest.raises(DeadlineExceeded):
        store.get(content_hash(b'x'), deadline=Deadline(0, clock=lambda: 0))
    assert session.calls == []


def test_unpin_is_best_effort():
    """Unpin reports failure instead of raising."""
    store, _ = _store([FakeResponse(500)])
    assert store.unpin(content_hash(b'x')) is False

    store, _ = _store([FakeResponse(204)])
    assert store.unpin(content_hash(b'x')) is True


def test_memory_store_put_get_and_unpin():
    """The in-process store is content addressed and forgets unpinned bytes."""
    store = MemoryContentStore()
    content_id = store.put(b'abc')
    assert store.put(b'abc') == content_id
    assert store.get(content_id) == b'abc'
    assert store.is_pinned(content_id)

    store.unpin(content_id)
    assert not store.is_pinned(content_id)
    with pytest.raises(NotFound):
        store.get(content_id)


def test_build_content_store_follows_settings(settings):
    """CONTENT_STORE_BACKEND selects the implementation."""
    settings.CONTENT_STORE_BACKEND = 'memory'
    assert isinstance(build_content_store(), MemoryContentStore)

    settings.CONTENT_STORE_BACKEND = 'gateway'
    settings.CONTENT_GATEWAY_URL = 'https://pins.example.test'
    assert isinstance(build_content_store(), GatewayContentStore)

# datasets/content_store.py
"""
Client for the content-addressed store that holds dataset ciphertext.

Objects are addressed by content_hash(bytes). The store is eventually
consistent across gateways, so reads retry transient failures with
exponential backoff before giving up with Unavailable.
"""
import logging
import threading
import time

import requests
from django.conf import settings

from .backoff import Deadline, RetryPolicy, call_with_backoff
from .crypto import content_hash
from .errors import BadRequest, NotFound, Unavailable

logger = logging.getLogger(__name__)


class GatewayContentStore:
    """
    HTTP client for a pinning gateway:

        PUT    /blobs/{cid}   upload and pin
        GET    /blobs/{cid}   download
        HEAD   /pins/{cid}    pin status
        DELETE /pins/{cid}    release our pin
    """

    def __init__(self, base_url, token=None, timeout=30, retry=None, session=None, sleep=time.sleep):
        if not base_url:
            raise BadRequest('CONTENT_GATEWAY_URL is not configured')
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.session = session or requests.Session()
        self._sleep = sleep
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'

    def _request(self, method, path, **kwargs):
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise Unavailable(f'{method} {path} failed: {exc.__class__.__name__}') from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise Unavailable(f'{method} {path} returned {response.status_code}')
        return response

    def put(self, data):
        data = bytes(data)
        content_id = content_hash(data)
        if self.is_pinned(content_id):
            logger.debug('Content %s already pinned, skipping upload', content_id)
            return content_id
        response = self._request(
            'PUT', f'/blobs/{content_id}', data=data,
            headers={'Content-Type': 'application/octet-stream'},
        )
        if response.status_code not in (200, 201, 204):
            raise BadRequest(f'Content gateway rejected upload: {response.status_code} {response.text[:200]}')
        logger.info('Pinned %d bytes as %s', len(data), content_id)
        return content_id

    def _get_once(self, content_id):
        response = self._request('GET', f'/blobs/{content_id}')
        if response.status_code == 404:
            raise NotFound(f'Content {content_id} not found')
        if response.status_code != 200:
            raise Unavailable(f'Content gateway returned {response.status_code} for {content_id}')
        data = response.content
        if content_hash(data) != content_id:
            raise Unavailable(f'Content gateway returned bytes not matching {content_id}')
        return data

    def get(self, content_id, deadline=None):
        return call_with_backoff(
            lambda: self._get_once(content_id), self.retry,
            deadline=deadline, what=f'get {content_id}', sleep=self._sleep,
        )

    def is_pinned(self, content_id):
        response = self._request('HEAD', f'/pins/{content_id}')
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise Unavailable(f'Pin status check returned {response.status_code}')
        return True

    def unpin(self, content_id):
        """Best effort; other pinners may keep the bytes alive."""
        try:
            response = self._request('DELETE', f'/pins/{content_id}')
        except Unavailable as exc:
            logger.warning('Unpin of %s failed: %s', content_id, exc.message)
            return False
        if response.status_code not in (200, 202, 204, 404):
            logger.warning('Unpin of %s returned %s', content_id, response.status_code)
            return False
        return True


class MemoryContentStore:
    """In-process store for development and tests."""

    def __init__(self):
        self._blobs = {}
        self._pinned = set()
        self._lock = threading.Lock()

    def put(self, data):
        data = bytes(data)
        content_id = content_hash(data)
        with self._lock:
            self._blobs.setdefault(content_id, data)
            self._pinned.add(content_id)
        return content_id

    def get(self, content_id, deadline=None):
        (deadline or Deadline.none()).check(f'get {content_id}')
        with self._lock:
            if content_id not in self._blobs:
                raise NotFound(f'Content {content_id} not found')
            return self._blobs[content_id]

    def is_pinned(self, content_id):
        with self._lock:
            return content_id in self._pinned

    def unpin(self, content_id):
        with self._lock:
            self._pinned.discard(content_id)
            # unpinned bytes are garbage collected immediately here
            self._blobs.pop(content_id, None)
        return True


_store = None
_store_lock = threading.Lock()


def build_content_store():
    backend = getattr(settings, 'CONTENT_STORE_BACKEND', 'gateway')
    if backend == 'memory':
        return MemoryContentStore()
    if backend == 'gateway':
        return GatewayContentStore(
            settings.CONTENT_GATEWAY_URL,
            token=getattr(settings, 'CONTENT_GATEWAY_TOKEN', None),
            retry=RetryPolicy(
                max_attempts=settings.CONTENT_STORE_MAX_ATTEMPTS,
                backoff_seconds=settings.CONTENT_STORE_BACKOFF_SECONDS,
            ),
        )
    raise BadRequest(f'Unknown CONTENT_STORE_BACKEND: {backend}')


def get_content_store():
    global _store
    with _store_lock:
        if _store is None:
            _store = build_content_store()
        return _store


def reset_content_store():
    global _store
    with _store_lock:
        _store = None

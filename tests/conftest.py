import threading

import pytest

from btcodec import encode
from cache import AnnounceCache
from store import CacheStore

INFO_HASH = bytes(range(20))
OTHER_HASH = bytes(range(20, 40))
TRACKER_URL = 'http://tracker.example.org/announce'

REPLY = encode({
    b'interval': 1800,
    b'complete': 3,
    b'incomplete': 1,
    b'peers': b'\x7f\x00\x00\x01\x1a\xe1\x0a\x00\x00\x02\x1a\xe2',
})


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeOrigin:
    """Stands in for OriginClient; `gates` hold fetches for given info-hashes."""

    def __init__(self, body=REPLY):
        self.body = body
        self.error = None
        self.gates = {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, tracker_url, info_hash, size=None, numwant=None, compact=None):
        with self._lock:
            self.calls.append({
                'tracker_url': tracker_url,
                'info_hash': info_hash,
                'size': size,
                'numwant': numwant,
                'compact': compact,
            })
        gate = self.gates.get(info_hash)
        if gate is not None:
            gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.body


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def origin():
    return FakeOrigin()


@pytest.fixture
def store(tmp_path):
    cache_store = CacheStore(tmp_path / 'btc')
    cache_store.load_all()
    return cache_store


@pytest.fixture
def announce_cache(store, origin, clock):
    engine = AnnounceCache(store, origin, max_workers=4, clock=clock)
    yield engine
    engine.shutdown(wait=True)

import threading
import time

import pytest

from btcodec import encode
from cache import AnnounceCache, cache_key, normalize_tracker_url
from conftest import INFO_HASH, OTHER_HASH, REPLY, TRACKER_URL
from errors import HTTPStatusError, InvalidAnnounce, NetworkError, TrackerFailure

KEY = cache_key(TRACKER_URL, INFO_HASH)


def wait_until(condition, timeout=5):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.005)


def count_waiters(engine):
    """Wrap the engine's wait step so tests can tell how many callers are parked on a fetch."""
    waiting = []
    original = engine._wait

    def _wait(key, flight, timeout):
        waiting.append(key)
        return original(key, flight, timeout)

    engine._wait = _wait
    return waiting


def run_concurrently(count, target):
    results = [None] * count

    def worker(index):
        try:
            results[index] = target()
        except Exception as e:
            results[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    return threads, results


def test_normalize_tracker_url():
    assert normalize_tracker_url('HTTP://Tracker.Example.ORG:80/announce') == 'http://tracker.example.org/announce'
    assert normalize_tracker_url('https://t.example:443') == 'https://t.example/'
    assert normalize_tracker_url('http://t.example:8080/a?passkey=X#frag') == 'http://t.example:8080/a?passkey=X'


@pytest.mark.parametrize('url', ['udp://t.example:80', 'not a url', 'http:///announce', 'http://t.example:99999/'])
def test_normalize_rejects_unusable_urls(url):
    with pytest.raises(InvalidAnnounce):
        normalize_tracker_url(url)


def test_cache_key_ignores_cosmetic_url_differences():
    assert cache_key('http://TRACKER.example.org:80/announce', INFO_HASH) == KEY
    assert cache_key(TRACKER_URL, OTHER_HASH) != KEY


def test_miss_fetches_and_stores(announce_cache, origin, store):
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert len(origin.calls) == 1
    assert origin.calls[0]['info_hash'] == INFO_HASH
    assert store.get(KEY).body == REPLY
    assert not announce_cache.in_flight(KEY)


def test_fresh_entry_short_circuits(announce_cache, origin, clock):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    clock.advance(599)
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert len(origin.calls) == 1


def test_stale_entry_refetches(announce_cache, origin, clock, store):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    clock.advance(600)
    origin.body = encode({b'interval': 60, b'peers': b''})
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == origin.body
    assert len(origin.calls) == 2
    assert store.get(KEY).fetched_at == clock.now


def test_shorter_ttl_does_not_force_refetch(announce_cache, origin, clock):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 3600)
    clock.advance(100)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 10)
    assert len(origin.calls) == 1


def test_longer_ttl_extends_freshness(announce_cache, origin, clock, store):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 100)
    clock.advance(50)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 1000)
    assert store.metadata(KEY).ttl == 1000

    clock.advance(500)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 10)
    assert len(origin.calls) == 1

    clock.advance(451)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 10)
    assert len(origin.calls) == 2


def test_longer_ttl_revives_entry_within_its_window(announce_cache, origin, clock):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 100)
    clock.advance(200)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 1000)
    assert len(origin.calls) == 1


def test_origin_min_interval_raises_ttl(announce_cache, origin, clock, store):
    origin.body = encode({b'interval': 1800, b'min interval': 900, b'peers': b''})
    announce_cache.announce(TRACKER_URL, INFO_HASH, 60)
    assert store.metadata(KEY).ttl == 900
    clock.advance(120)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 60)
    assert len(origin.calls) == 1


def test_unrelated_keys_are_cached_separately(announce_cache, origin):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    announce_cache.announce(TRACKER_URL, OTHER_HASH, 600)
    announce_cache.announce('http://other.example.org/announce', INFO_HASH, 600)
    assert len(origin.calls) == 3


def test_torrent_size_is_remembered(announce_cache, origin, clock):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600, size=123456)
    clock.advance(601)
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    assert [call['size'] for call in origin.calls] == [123456, 123456]


def test_pass_through_preferences_reach_origin(announce_cache, origin):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600, numwant=50, compact=1)
    assert origin.calls[0]['numwant'] == 50
    assert origin.calls[0]['compact'] == 1


def test_concurrent_requests_share_one_fetch(announce_cache, origin):
    gate = threading.Event()
    origin.gates[INFO_HASH] = gate
    waiting = count_waiters(announce_cache)

    threads, results = run_concurrently(8, lambda: announce_cache.announce(TRACKER_URL, INFO_HASH, 600))
    wait_until(lambda: len(waiting) == 8)
    assert announce_cache.in_flight(KEY)
    gate.set()
    for thread in threads:
        thread.join(5)

    assert len(origin.calls) == 1
    assert results == [REPLY] * 8


def test_concurrent_requests_share_one_failure(announce_cache, origin, store):
    gate = threading.Event()
    origin.gates[INFO_HASH] = gate
    origin.error = NetworkError("connection refused")
    waiting = count_waiters(announce_cache)

    threads, results = run_concurrently(5, lambda: announce_cache.announce(TRACKER_URL, INFO_HASH, 600))
    wait_until(lambda: len(waiting) == 5)
    gate.set()
    for thread in threads:
        thread.join(5)

    assert len(origin.calls) == 1
    assert all(result is origin.error for result in results)
    assert store.get(KEY) is None


def test_unrelated_key_is_not_blocked(announce_cache, origin):
    gate = threading.Event()
    origin.gates[INFO_HASH] = gate
    threads, results = run_concurrently(1, lambda: announce_cache.announce(TRACKER_URL, INFO_HASH, 600))
    wait_until(lambda: announce_cache.in_flight(KEY))

    assert announce_cache.announce(TRACKER_URL, OTHER_HASH, 600) == REPLY

    gate.set()
    threads[0].join(5)
    assert results == [REPLY]


def test_abandoned_waiter_does_not_cancel_fetch(announce_cache, origin, store):
    gate = threading.Event()
    origin.gates[INFO_HASH] = gate
    with pytest.raises(NetworkError):
        announce_cache.announce(TRACKER_URL, INFO_HASH, 600, timeout=0.05)

    gate.set()
    wait_until(lambda: not announce_cache.in_flight(KEY))
    assert store.get(KEY).body == REPLY
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert len(origin.calls) == 1


def test_tracker_failure_is_not_cached(announce_cache, origin, store):
    body = encode({b'failure reason': b'unregistered torrent'})
    origin.error = TrackerFailure('unregistered torrent', body)
    with pytest.raises(TrackerFailure) as excinfo:
        announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    assert excinfo.value.body == body
    assert store.get(KEY) is None

    origin.error = None
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert len(origin.calls) == 2


def test_failed_refresh_keeps_stale_entry(announce_cache, origin, clock, store):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    clock.advance(700)
    origin.error = HTTPStatusError(502)
    with pytest.raises(HTTPStatusError):
        announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    assert store.get(KEY).body == REPLY


def test_serve_stale_on_failure(store, origin, clock):
    engine = AnnounceCache(store, origin, max_workers=2, serve_stale=True, clock=clock)
    try:
        engine.announce(TRACKER_URL, INFO_HASH, 600)
        clock.advance(700)
        origin.error = NetworkError("timed out")
        assert engine.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
        assert len(origin.calls) == 2
    finally:
        engine.shutdown(wait=True)


def test_serve_stale_without_entry_still_fails(store, origin, clock):
    engine = AnnounceCache(store, origin, max_workers=2, serve_stale=True, clock=clock)
    origin.error = NetworkError("timed out")
    try:
        with pytest.raises(NetworkError):
            engine.announce(TRACKER_URL, INFO_HASH, 600)
    finally:
        engine.shutdown(wait=True)


def test_missing_cache_file_becomes_a_miss(announce_cache, origin, store):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    store.path_for(KEY).unlink()
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert len(origin.calls) == 2


def test_store_write_failure_still_answers(announce_cache, origin, store, monkeypatch):
    def broken_put(entry):
        raise OSError("disk full")

    monkeypatch.setattr(store, 'put', broken_put)
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    assert store.get(KEY) is None


def test_ttl_extension_failure_still_serves_fresh_entry(announce_cache, origin, store, monkeypatch):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 100)

    def broken_write(entry):
        raise OSError("disk full")

    monkeypatch.setattr(store, '_write', broken_write)
    assert announce_cache.announce(TRACKER_URL, INFO_HASH, 1000) == REPLY
    assert len(origin.calls) == 1
    assert store.metadata(KEY).ttl == 100


def test_cache_survives_restart(announce_cache, origin, store, clock):
    announce_cache.announce(TRACKER_URL, INFO_HASH, 600)
    restarted_store = type(store)(store.root)
    restarted_store.load_all()
    engine = AnnounceCache(restarted_store, origin, clock=clock)
    try:
        assert engine.announce(TRACKER_URL, INFO_HASH, 600) == REPLY
    finally:
        engine.shutdown(wait=True)
    assert len(origin.calls) == 1

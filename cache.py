"""Announce cache: serve stored tracker replies, refresh them one fetch at a time.

Every key is either idle or has exactly one origin fetch in flight. Requests
that find a fetch in flight wait on it instead of starting their own, so the
origin sees at most one forged announce per key per refresh.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from functools import partial

from btcodec import decode
from errors import MalformedEncoding, NetworkError, OriginError
from origin import min_interval, normalize_tracker_url
from store import CacheEntry

logger = logging.getLogger(__name__)


def cache_key(tracker_url, info_hash):
    # peer lists are per torrent and per tracker, never per client
    return f"{normalize_tracker_url(tracker_url)} {info_hash.hex()}"


class AnnounceCache:
    def __init__(self, store, client, max_workers=10, serve_stale=False, clock=time.time):
        self.store = store
        self.client = client
        self.serve_stale = serve_stale
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='origin')
        self._flights = {}
        self._lock = threading.Lock()

    def in_flight(self, key):
        with self._lock:
            return key in self._flights

    def announce(self, tracker_url, info_hash, ttl, size=None, numwant=None, compact=None, timeout=None):
        """Return the tracker reply for this torrent, fetching it if the cache can't serve it.

        `timeout` bounds only this caller's wait; the fetch itself keeps
        running for whoever else is waiting on it.
        """
        key = cache_key(tracker_url, info_hash)
        while True:
            with self._lock:
                flight = self._flights.get(key)
                if flight is None:
                    meta = self.store.metadata(key)
                    if meta is None or not meta.is_fresh(self.clock(), ttl):
                        flight = self._start(key, meta, tracker_url, info_hash, ttl, size, numwant, compact)
                        started = True
                else:
                    started = False
                    logger.debug(f"Joining in-flight fetch for {key}")

            if flight is None:
                body = self._serve_fresh(key, meta, ttl)
                if body is not None:
                    return body
                # the entry vanished from disk, go round again as a miss
                continue

            if started:
                flight.add_done_callback(partial(self._land, key))
            return self._wait(key, flight, timeout)

    def _serve_fresh(self, key, meta, ttl):
        if ttl > meta.ttl:
            try:
                self.store.extend_ttl(key, ttl)
            except OSError as e:
                logger.error(f"Failed to extend TTL of cache entry {key}: {e}")
        entry = self.store.get(key)
        if entry is None:
            return None
        logger.debug(f"Cache hit for {key} (age {entry.age(self.clock()):.0f}s, ttl {max(entry.ttl, ttl)}s)")
        return entry.body

    def _start(self, key, meta, tracker_url, info_hash, ttl, size, numwant, compact):
        if size is None and meta is not None:
            size = meta.size
        logger.info(f"Cache {'stale' if meta is not None else 'miss'} for {key}, announcing to origin")
        flight = self._executor.submit(self._fill, key, tracker_url, info_hash, ttl, size, numwant, compact)
        self._flights[key] = flight
        return flight

    def _land(self, key, flight):
        with self._lock:
            if self._flights.get(key) is flight:
                del self._flights[key]

    def _fill(self, key, tracker_url, info_hash, ttl, size, numwant, compact):
        body = self.client.fetch(tracker_url, info_hash, size=size, numwant=numwant, compact=compact)
        # respect the origin's minimum announce interval
        ttl = max(ttl, min_interval(decode(body)) or 0)
        entry = CacheEntry(key, body, self.clock(), ttl, size)
        try:
            self.store.put(entry)
        except OSError as e:
            logger.error(f"Failed to write cache entry for {key}: {e}")
        return body

    def _wait(self, key, flight, timeout):
        try:
            return flight.result(timeout=timeout)
        except FutureTimeout:
            raise NetworkError(f"gave up waiting for origin tracker after {timeout}s") from None
        except (OriginError, MalformedEncoding) as e:
            if not self.serve_stale:
                raise
            entry = self.store.get(key)
            if entry is None:
                raise
            logger.warning(f"Serving stale entry for {key} after origin error: {e}")
            return entry.body

    def shutdown(self, wait=False):
        self._executor.shutdown(wait=wait)

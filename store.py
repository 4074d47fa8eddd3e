"""Disk-backed cache of raw tracker replies.

Each entry lives in its own file under the cache root, named after the
SHA-256 of its key. The file is a bencoded record holding the key, the
fetch time in milliseconds, the TTL, the torrent size when known and the
origin's reply bytes exactly as received.

Only metadata is kept in memory. Bodies are read from disk on lookup.
"""
import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path

from btcodec import decode, encode
from errors import MalformedEncoding

logger = logging.getLogger(__name__)

SUFFIX = '.bt'


@dataclass(frozen=True)
class CacheEntry:
    key: str
    body: bytes
    fetched_at: float
    ttl: int
    size: int = None

    def age(self, now):
        return now - self.fetched_at

    def is_fresh(self, now, ttl=0):
        """Fresh while younger than the longest TTL asked for since the fetch."""
        return self.age(now) < max(self.ttl, ttl)

    def metadata(self):
        return replace(self, body=None)


def entry_filename(key):
    return hashlib.sha256(key.encode('utf-8')).hexdigest() + SUFFIX


def serialize(entry):
    record = {
        b'key': entry.key.encode('utf-8'),
        b'fetched_at': int(round(entry.fetched_at * 1000)),
        b'ttl': int(entry.ttl),
        b'body': entry.body,
    }
    if entry.size is not None:
        record[b'size'] = int(entry.size)
    return encode(record)


def deserialize(data):
    record = decode(data)
    if not isinstance(record, dict):
        raise MalformedEncoding("cache record is not a dictionary")
    key, body = record.get(b'key'), record.get(b'body')
    fetched_at, ttl, size = record.get(b'fetched_at'), record.get(b'ttl'), record.get(b'size')
    if not isinstance(key, bytes) or not isinstance(body, bytes):
        raise MalformedEncoding("cache record is missing key or body")
    if not isinstance(fetched_at, int) or not isinstance(ttl, int):
        raise MalformedEncoding("cache record is missing fetched_at or ttl")
    if size is not None and not isinstance(size, int):
        raise MalformedEncoding("cache record has an invalid size")
    try:
        key = key.decode('utf-8')
    except UnicodeDecodeError:
        raise MalformedEncoding("cache record key is not UTF-8") from None
    try:
        fetched_at = fetched_at / 1000
    except OverflowError:
        raise MalformedEncoding("cache record fetched_at is out of range") from None
    return CacheEntry(key, body, fetched_at, ttl, size)


class CacheStore:
    def __init__(self, root):
        self.root = Path(root)
        self._index = {}
        self._index_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def __len__(self):
        with self._index_lock:
            return len(self._index)

    def __contains__(self, key):
        return self.metadata(key) is not None

    def path_for(self, key):
        return self.root / entry_filename(key)

    def load_all(self):
        """Rebuild the in-memory index from the cache root.

        Files that cannot be parsed are skipped, their keys will simply miss.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        index = {}
        for path in sorted(self.root.glob('*' + SUFFIX)):
            try:
                entry = deserialize(path.read_bytes())
            except (OSError, MalformedEncoding) as e:
                logger.warning(f"Ignoring unreadable cache file {path}: {e}")
                continue
            if path.name != entry_filename(entry.key):
                logger.warning(f"Ignoring cache file {path}: stored key does not match file name")
                continue
            index[entry.key] = entry.metadata()
        with self._index_lock:
            self._index = index
        logger.info(f"Loaded {len(index)} cache entries from {self.root}")
        return len(index)

    def metadata(self, key):
        with self._index_lock:
            return self._index.get(key)

    def get(self, key):
        if self.metadata(key) is None:
            return None
        entry = self._read(key)
        if entry is None:
            self._forget(key)
        return entry

    def put(self, entry):
        with self._write_lock:
            self._write(entry)

    def extend_ttl(self, key, ttl):
        """Raise the TTL of a stored entry; shorter TTLs are ignored."""
        with self._write_lock:
            meta = self.metadata(key)
            if meta is None or ttl <= meta.ttl:
                return meta
            entry = self._read(key)
            if entry is None:
                self._forget(key)
                return None
            entry = replace(entry, ttl=ttl)
            self._write(entry)
            logger.debug(f"Extended TTL of {key} to {ttl}s")
            return entry.metadata()

    def _read(self, key):
        path = self.path_for(key)
        try:
            entry = deserialize(path.read_bytes())
        except FileNotFoundError:
            logger.warning(f"Cache file {path} disappeared")
            return None
        except (OSError, MalformedEncoding) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None
        if entry.key != key:
            logger.warning(f"Ignoring cache file {path}: stored key does not match")
            return None
        return entry

    def _write(self, entry):
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(entry.key)
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix='.tmp-', suffix=SUFFIX + '.part')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(serialize(entry))
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        with self._index_lock:
            self._index[entry.key] = entry.metadata()

    def _forget(self, key):
        with self._index_lock:
            self._index.pop(key, None)

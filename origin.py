import hashlib
import logging
import random
import string
import time
from collections import namedtuple
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import requests

from btcodec import decode
from errors import HTTPStatusError, InvalidAnnounce, MalformedEncoding, NetworkError, TrackerFailure

logger = logging.getLogger(__name__)

# (peer_id prefix, User-Agent) of recent qBittorrent releases
QB_VERSIONS = [
    ('-qB5120-', 'qBittorrent/5.1.2'),
    ('-qB5110-', 'qBittorrent/5.1.1'),
    ('-qB5100-', 'qBittorrent/5.1.0'),
    ('-qB5050-', 'qBittorrent/5.0.5'),
    ('-qB5040-', 'qBittorrent/5.0.4'),
    ('-qB5030-', 'qBittorrent/5.0.3'),
    ('-qB5020-', 'qBittorrent/5.0.2'),
    ('-qB5010-', 'qBittorrent/5.0.1'),
]
PEER_ID_CHARS = string.digits + string.ascii_uppercase + string.ascii_lowercase
KEY_CHARS = '0123456789ABCDEF'

# Sent for `left` when the torrent size was never revealed by a client.
UNKNOWN_SIZE = 1 << 34

# A session that has just started: nothing transferred, nothing to report.
FORGED_PARAMS = {
    'uploaded': 0,
    'downloaded': 0,
    'corrupt': 0,
    'event': 'started',
    'no_peer_id': 1,
    'supportcrypto': 1,
    'redundant': 0,
}

# Client preferences that only shape the reply; a real client's values are honoured.
PASS_THROUGH_DEFAULTS = {
    'numwant': 200,
    'compact': 1,
}

DEFAULT_PORTS = {'http': 80, 'https': 443}

READ_CHUNK_SIZE = 16 * 1024

Fingerprint = namedtuple('Fingerprint', ['peer_id', 'key', 'port', 'user_agent'])


def normalize_tracker_url(tracker_url):
    parts = urlsplit(tracker_url.strip())
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        raise InvalidAnnounce(f"unsupported tracker URL {tracker_url!r}")
    try:
        port = parts.port
    except ValueError:
        raise InvalidAnnounce(f"invalid port in tracker URL {tracker_url!r}") from None
    host = parts.hostname.lower()
    netloc = f"[{host}]" if ':' in host else host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if parts.username is not None:
        userinfo = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((scheme, netloc, parts.path or '/', parts.query, ''))


def client_fingerprint(tracker_url):
    """Derive the fake client identity shown to one origin tracker.

    Seeded from the normalized tracker URL so every announce to the same
    tracker looks like it comes from the same long-running client, however
    the URL was spelled.
    """
    seed_url = normalize_tracker_url(tracker_url)
    seed = int.from_bytes(hashlib.sha256(seed_url.encode('utf-8')).digest()[:8], 'big')
    rng = random.Random(seed)
    prefix, user_agent = rng.choice(QB_VERSIONS)
    peer_id = prefix + ''.join(rng.choice(PEER_ID_CHARS) for _ in range(12))
    key = ''.join(rng.choice(KEY_CHARS) for _ in range(8))
    port = rng.randint(1024, 65535)
    return Fingerprint(peer_id, key, port, user_agent)


def announce_params(tracker_url, info_hash, size=None, numwant=None, compact=None):
    fingerprint = client_fingerprint(tracker_url)
    params = {
        'info_hash': info_hash,
        'peer_id': fingerprint.peer_id,
        'port': fingerprint.port,
    }
    params.update(FORGED_PARAMS)
    params['left'] = size if size is not None else UNKNOWN_SIZE
    params['key'] = fingerprint.key
    params['numwant'] = numwant if numwant is not None else PASS_THROUGH_DEFAULTS['numwant']
    params['compact'] = compact if compact is not None else PASS_THROUGH_DEFAULTS['compact']
    return params


def announce_url(tracker_url, params):
    # info_hash is raw bytes, so the query is encoded here rather than by requests
    separator = '&' if urlsplit(tracker_url).query else '?'
    return f"{tracker_url}{separator}{urlencode(params, quote_via=quote)}"


def min_interval(reply):
    value = reply.get(b'min interval')
    return value if isinstance(value, int) and value > 0 else None


def summarize(reply):
    peers = reply.get(b'peers', b'')
    peers6 = reply.get(b'peers6', b'')
    count = len(peers) // 6 if isinstance(peers, bytes) else len(peers)
    if isinstance(peers6, bytes):
        count += len(peers6) // 18
    return f"{count} peers (interval {reply.get(b'interval')}, complete {reply.get(b'complete')}, incomplete {reply.get(b'incomplete')})"


class OriginClient:
    def __init__(self, proxy=None, timeout=20):
        self.proxies = {'http': proxy, 'https': proxy} if proxy else None
        self.timeout = timeout

    def fetch(self, tracker_url, info_hash, size=None, numwant=None, compact=None):
        """Announce a freshly started session to the origin and return its raw reply.

        `timeout` bounds the whole exchange, body included, not just each read.
        """
        deadline = time.monotonic() + self.timeout
        url = announce_url(tracker_url, announce_params(tracker_url, info_hash, size, numwant, compact))
        headers = {
            'User-Agent': client_fingerprint(tracker_url).user_agent,
            'Connection': 'close',
        }
        logger.debug(f"Tracker URL: {url}")
        try:
            with requests.get(url, headers=headers, proxies=self.proxies, timeout=self.timeout, stream=True) as response:
                if not 200 <= response.status_code < 300:
                    logger.warning(f"HTTP tracker {tracker_url} returned status code {response.status_code}")
                    raise HTTPStatusError(response.status_code, tracker_url)
                body = self._read_body(response, tracker_url, deadline)
        except requests.RequestException as e:
            raise NetworkError(f"announce to {tracker_url} failed: {e}") from e

        reply = decode(body)
        if not isinstance(reply, dict):
            raise MalformedEncoding("tracker response is not a dictionary")
        if b'failure reason' in reply:
            reason = reply[b'failure reason']
            if isinstance(reason, bytes):
                reason = reason.decode('utf-8', 'replace')
            logger.warning(f"Tracker {tracker_url} refused announce: {reason}")
            raise TrackerFailure(str(reason), body)

        logger.info(f"Received {summarize(reply)} from tracker {tracker_url}")
        return body

    def _read_body(self, response, tracker_url, deadline):
        chunks = []
        for chunk in response.iter_content(READ_CHUNK_SIZE):
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise NetworkError(f"announce to {tracker_url} timed out after {self.timeout}s")
        return b''.join(chunks)

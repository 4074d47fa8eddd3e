import hashlib
import logging
from urllib.parse import quote

from btcodec import Encoded, decode, encode, split_dict
from errors import MissingInfoDict, MissingTracker

logger = logging.getLogger(__name__)


def parse_torrent(torrent_data):
    torrent_info = decode(torrent_data)
    if not isinstance(torrent_info, dict) or not isinstance(torrent_info.get(b'info'), dict):
        raise MissingInfoDict()
    return torrent_info


def info_hash(torrent_info):
    return hashlib.sha1(encode(torrent_info[b'info'])).digest()


def torrent_size(torrent_info):
    info = torrent_info[b'info']
    if b'files' in info:
        lengths = [file_info.get(b'length') for file_info in info[b'files'] if isinstance(file_info, dict)]
        return sum(length for length in lengths if isinstance(length, int))
    length = info.get(b'length')
    return length if isinstance(length, int) else None


def announce_urls(torrent_info):
    trackers = [torrent_info.get(b'announce')]
    announce_list = torrent_info.get(b'announce-list', [])
    if isinstance(announce_list, list):
        for tier in announce_list:
            if isinstance(tier, list):
                trackers.extend(tier)
    urls = []
    for tracker in trackers:
        if not isinstance(tracker, bytes) or not tracker:
            continue
        try:
            url = tracker.decode('utf-8')
        except UnicodeDecodeError:
            logger.warning(f"Skipping undecodable tracker URL {tracker[:64]!r}")
            continue
        if url not in urls:
            urls.append(url)
    return urls


def origin_tracker(torrent_info):
    """Pick the tracker the proxied announce should point at.

    Only HTTP(S) trackers can be proxied, so udp:// entries are passed over.
    """
    urls = announce_urls(torrent_info)
    for url in urls:
        if url.startswith(('http://', 'https://')):
            return url
    if urls:
        raise MissingTracker(f"torrent has no HTTP tracker (found {', '.join(urls)})")
    raise MissingTracker()


def proxied_announce_url(base_url, tracker_url, ttl):
    return f"{base_url.rstrip('/')}/announce?tracker_url={quote(tracker_url, safe='')}&ttl={int(ttl)}"


def rewrite(torrent_data, base_url, tracker_url, ttl):
    torrent_info = parse_torrent(torrent_data)
    raw = split_dict(torrent_data)

    # info is spliced back verbatim so the swarm identity never changes
    if raw[b'info'] != encode(torrent_info[b'info']):
        logger.warning("Torrent info dictionary is not canonically encoded, keeping original bytes")

    announce = proxied_announce_url(base_url, tracker_url, ttl)
    logger.info(f"Rewriting torrent {info_hash(torrent_info).hex()}: {tracker_url} -> {announce}")

    rewritten = {key: Encoded(value) for key, value in raw.items()}
    rewritten[b'announce'] = announce.encode('utf-8')
    if b'announce-list' in rewritten:
        rewritten[b'announce-list'] = [[announce.encode('utf-8')]]
    return encode(rewritten)

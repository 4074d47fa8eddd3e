import io
import logging
from urllib.parse import unquote_to_bytes

from flask import Flask, Response, render_template_string, request, send_file

from btcodec import encode, int_to_digits
from errors import AnnounceCacheError, InvalidAnnounce, TrackerFailure
from rewriter import info_hash, origin_tracker, parse_torrent, rewrite, torrent_size

logger = logging.getLogger(__name__)

MAX_UPLOAD_SIZE = 10 * 1024 * 1024

INDEX_PAGE = """<!doctype html>
<html>
<head><title>Tracker cache</title></head>
<body>
  <h2>Announce through the tracker cache</h2>
  <p>Pick a .torrent file. The downloaded copy announces to this service,
     which fetches peers from the original tracker on your behalf without
     reporting any upload or download statistics.</p>
  <form action="/transform" method="post" enctype="multipart/form-data">
    <p><input type="file" name="file" accept=".torrent,application/x-bittorrent" required></p>
    <p><label>Cache TTL (seconds) <input type="number" name="ttl" min="0" value="{{ default_ttl }}"></label></p>
    <p><button type="submit">Rewrite torrent</button></p>
  </form>
</body>
</html>
"""


def failure(reason):
    return encode({b'failure reason': reason})


def parse_query(query_string):
    """Split a raw query string into a dict of percent-decoded byte values.

    info_hash is 20 arbitrary bytes, so it must never pass through a text codec.
    """
    params = {}
    for pair in query_string.split(b'&'):
        if not pair:
            continue
        name, _, value = pair.partition(b'=')
        name = unquote_to_bytes(name.replace(b'+', b' ')).decode('utf-8', 'replace')
        params[name] = unquote_to_bytes(value.replace(b'+', b' '))
    return params


def _text(params, name):
    value = params.get(name)
    if not value:
        raise InvalidAnnounce(f"missing parameter: {name}")
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        raise InvalidAnnounce(f"invalid parameter: {name}") from None


def _number(params, name, default=None):
    value = params.get(name)
    if value is None or value == b'':
        return default
    try:
        number = int(value)
    except ValueError:
        raise InvalidAnnounce(f"invalid parameter: {name}") from None
    if number < 0:
        raise InvalidAnnounce(f"invalid parameter: {name}")
    return number


def create_app(settings, announce_cache):
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_SIZE

    @app.route('/', methods=['GET'])
    def index():
        return render_template_string(INDEX_PAGE, default_ttl=settings.default_ttl)

    @app.route('/announce', methods=['GET'])
    def announce():
        try:
            params = parse_query(request.query_string)
            tracker_url = _text(params, 'tracker_url')
            hash_bytes = params.get('info_hash')
            if hash_bytes is None or len(hash_bytes) != 20:
                raise InvalidAnnounce("missing or invalid parameter: info_hash")
            ttl = _number(params, 'ttl', settings.default_ttl)
            left = _number(params, 'left')
            downloaded = _number(params, 'downloaded')
            # a client that has downloaded nothing reports the full size as `left`
            size = left if downloaded == 0 else None
            body = announce_cache.announce(
                tracker_url,
                hash_bytes,
                ttl,
                size=size,
                numwant=_number(params, 'numwant'),
                compact=_number(params, 'compact'),
            )
        except TrackerFailure as e:
            body = e.body or failure(e.reason)
        except AnnounceCacheError as e:
            logger.warning(f"Announce from {request.remote_addr} failed: {e}")
            body = failure(str(e))
        except Exception:
            logger.exception(f"Unexpected error serving announce from {request.remote_addr}")
            body = failure("internal tracker cache error")
        return Response(body, mimetype='text/plain')

    @app.route('/transform', methods=['POST'])
    def transform():
        upload = request.files.get('file')
        if upload is None:
            return Response("no files are uploaded", status=400, mimetype='text/plain')
        try:
            ttl = int(request.form.get('ttl') or settings.default_ttl)
            if ttl < 0:
                raise ValueError(ttl)
        except ValueError:
            return Response("ttl must be a non-negative integer", status=400, mimetype='text/plain')

        data = upload.read()
        try:
            torrent_info = parse_torrent(data)
            tracker_url = request.form.get('tracker_url') or origin_tracker(torrent_info)
            rewritten = rewrite(data, settings.base_url, tracker_url, ttl)
        except AnnounceCacheError as e:
            logger.warning(f"Rejected upload {upload.filename!r}: {e}")
            return Response(f"Cannot rewrite torrent: {e}", status=400, mimetype='text/plain')

        size = torrent_size(torrent_info)
        # str() refuses integers past 4300 digits
        size = 'unknown' if size is None else int_to_digits(size).decode('ascii')
        logger.info(f"Rewrote torrent {info_hash(torrent_info).hex()} ({upload.filename}, {size} bytes)")
        return send_file(
            io.BytesIO(rewritten),
            mimetype='application/x-bittorrent',
            as_attachment=True,
            download_name=upload.filename or 'rewritten.torrent',
        )

    return app

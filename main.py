import logging

from cache import AnnounceCache
from config import Settings
from origin import OriginClient
from store import CacheStore
from tracker import create_app

logger = logging.getLogger(__name__)


def build_app(settings):
    store = CacheStore(settings.cache_root)
    store.load_all()
    client = OriginClient(proxy=settings.proxy, timeout=settings.origin_timeout)
    announce_cache = AnnounceCache(
        store,
        client,
        max_workers=settings.max_origin_connections,
        serve_stale=settings.serve_stale,
    )
    return create_app(settings, announce_cache), announce_cache


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s - %(levelname)s - %(message)s')
    logger.info("Starting tracker cache")
    logger.info(f"Cache root: {settings.cache_root}, base URL: {settings.base_url}")
    if settings.proxy:
        logger.info("Origin announces go through the configured proxy")

    app, announce_cache = build_app(settings)
    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    finally:
        announce_cache.shutdown()


if __name__ == "__main__":
    main()

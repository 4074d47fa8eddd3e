import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_PORT = 3000
DEFAULT_TTL = 28800
DEFAULT_ORIGIN_TIMEOUT = 20
DEFAULT_MAX_ORIGIN_CONNECTIONS = 10


@dataclass(frozen=True)
class Settings:
    base_url: str
    cache_root: Path
    proxy: str = None
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    default_ttl: int = DEFAULT_TTL
    origin_timeout: float = DEFAULT_ORIGIN_TIMEOUT
    max_origin_connections: int = DEFAULT_MAX_ORIGIN_CONNECTIONS
    serve_stale: bool = False
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        port = _int(env, 'PORT', DEFAULT_PORT)
        return cls(
            base_url=env.get('BASE_URL') or f"http://localhost:{port}",
            cache_root=default_cache_root(env),
            proxy=env.get('PROXY') or None,
            host=env.get('HOST', '0.0.0.0'),
            port=port,
            default_ttl=_int(env, 'DEFAULT_TTL', DEFAULT_TTL),
            origin_timeout=_float(env, 'ORIGIN_TIMEOUT', DEFAULT_ORIGIN_TIMEOUT),
            max_origin_connections=_int(env, 'MAX_ORIGIN_CONNECTIONS', DEFAULT_MAX_ORIGIN_CONNECTIONS),
            serve_stale=env.get('SERVE_STALE', '').strip().lower() in ('1', 'true', 'yes', 'on'),
            log_level=env.get('LOG_LEVEL', 'INFO').upper(),
        )


def default_cache_root(env):
    if env.get('CACHE_ROOT'):
        root = Path(env['CACHE_ROOT'])
    elif env.get('XDG_CACHE_HOME'):
        root = Path(env['XDG_CACHE_HOME'])
    else:
        root = Path(env.get('HOME') or Path.home()) / '.cache'
    return root / 'btc'


def _int(env, name, default):
    value = env.get(name)
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {number}")
    return number


def _float(env, name, default):
    value = env.get(name)
    if value in (None, ''):
        return default
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {number}")
    return number

# db.py — psycopg3 pool + query helpers for the Postgres-backed engine store
#
# Connection resolution order:
#   FORCE_TCP -> DATABASE_URL_LOCAL -> DATABASE_URL -> DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASS

import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_DRIVER_SCHEMES = (
    "postgresql+psycopg://",
    "postgres+psycopg://",
    "postgresql+psycopg2://",
    "postgres+psycopg2://",
)


def _describe(kwargs: Dict[str, Any], origin: str) -> None:
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/"):
        print(f"[DB] {origin}: socket {host}")
    else:
        print(f"[DB] {origin}: {host}:{kwargs.get('port', 5432)}/{kwargs.get('dbname')}")


def parse_database_url(url: str) -> Dict[str, Any]:
    """postgres URL (SQLAlchemy driver suffixes tolerated) -> psycopg connect kwargs."""
    if not url:
        raise ValueError("empty database URL")
    for scheme in _DRIVER_SCHEMES:
        if url.startswith(scheme):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    parsed = urlparse(url)
    if parsed.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"unsupported scheme '{parsed.scheme}'")
    query = parse_qs(parsed.query or "", keep_blank_values=True)

    dbname = (parsed.path or "").lstrip("/") or (query.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("database URL has no database name")
    host = (query.get("host") or [parsed.hostname])[0]

    kwargs: Dict[str, Any] = {
        "dbname": dbname,
        "user": unquote(parsed.username or ""),
        "password": unquote(parsed.password or ""),
        "connect_timeout": 10,
    }
    if host:
        kwargs["host"] = host
    if parsed.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = parsed.port
    if query.get("sslmode"):
        kwargs["sslmode"] = query["sslmode"][0]
    return kwargs


def _discrete_kwargs() -> Dict[str, Any]:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    return {
        "host": DB_HOST or "127.0.0.1",
        "port": int(DB_PORT or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
    }


def connection_kwargs() -> Dict[str, Any]:
    if FORCE_TCP:
        kwargs = _discrete_kwargs()
        _describe(kwargs, "FORCE_TCP")
        return kwargs

    for origin, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = parse_database_url(url)
        except ValueError as e:
            print(f"[DB] ignoring {origin}: {e}")
            continue
        _describe(kwargs, origin)
        return kwargs

    kwargs = _discrete_kwargs()
    _describe(kwargs, "DB_* variables")
    return kwargs


def to_conninfo(kwargs: Dict[str, Any]) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if s == "" or any(ch.isspace() for ch in s) or "'" in s or "\\" in s:
            s = "'" + s.replace("\\", "\\\\").replace("'", "\\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)


# =============================================================================
# Pool + helpers
# =============================================================================
_pool: Optional[ConnectionPool] = None


def init_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(conninfo=to_conninfo(connection_kwargs()), min_size=1, max_size=DB_POOL_MAX)
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None


@contextmanager
def get_conn():
    pool = init_pool()
    with pool.connection() as conn:
        yield conn


def fetch_all(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None) -> None:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(q, params or ())
        conn.commit()


def execute_returning(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


def helper_deps() -> Dict[str, Any]:
    """The deps dict handed to PostgresCourseBackend."""
    return {
        "fetch_one": fetch_one,
        "fetch_all": fetch_all,
        "execute": execute,
        "execute_returning": execute_returning,
    }

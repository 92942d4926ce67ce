"""Database collaborator: active connection, schema introspection, sample rows."""

from __future__ import annotations

import datetime as dt
import logging
import os
import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from errors import ConfigError, DatabaseUnavailableError

logger = logging.getLogger("dbexplorer.database")

DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", "8000"))
SAMPLE_ROW_LIMIT = int(os.getenv("SAMPLE_ROW_LIMIT", "10"))
DB_SCHEMA = os.getenv("DB_SCHEMA", "").strip() or None

# ------------------------------------------------------------
# Config -> URL
# ------------------------------------------------------------
def is_missing_required_config(config: Optional[Dict[str, Any]]) -> bool:
    if not config:
        return True
    if config.get("db_url"):
        return False
    return not (config.get("host") and config.get("user") and config.get("database"))


def db_config_to_url(config: Dict[str, Any]) -> URL:
    """Accept either ``db_url`` or discrete Postgres credentials."""
    if config.get("db_url"):
        return make_url(str(config["db_url"]).strip())

    password = config.get("password")
    if password is not None and not isinstance(password, str):
        raise ConfigError("DB password must be a string")

    port = config.get("port")
    query = {"sslmode": "require"} if _truthy(config.get("ssl")) else {}
    return URL.create(
        "postgresql+psycopg2",
        username=config.get("user"),
        password=password or None,
        host=config.get("host"),
        port=int(port) if port not in (None, "") else None,
        database=config.get("database"),
        query=query,
    )


def demo_config_from_env() -> Dict[str, Any]:
    return {
        "host": os.getenv("DEMO_DB_HOST"),
        "port": os.getenv("DEMO_DB_PORT"),
        "user": os.getenv("DEMO_DB_USER"),
        "password": os.getenv("DEMO_DB_PASSWORD"),
        "database": os.getenv("DEMO_DB_NAME"),
        "ssl": os.getenv("DEMO_DB_SSL", "false"),
        "db_url": os.getenv("DEMO_DATABASE_URL", "").strip() or None,
    }


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


# ------------------------------------------------------------
# Dialect helpers
# ------------------------------------------------------------
def dialect_name(engine: Engine) -> str:
    return (engine.dialect.name or "").lower()


def apply_timeout(conn, dialect: str, timeout_ms: int) -> None:
    """Best-effort statement timeout for the current connection."""
    try:
        if dialect in ("postgresql", "postgres"):
            conn.execute(text(f"SET statement_timeout = {int(timeout_ms)}"))
        elif dialect in ("mysql", "mariadb"):
            conn.execute(text(f"SET SESSION MAX_EXECUTION_TIME={int(timeout_ms)}"))
        # sqlite: no server-side timeout
    except SQLAlchemyError as e:
        logger.debug("statement_timeout_unsupported", extra={"dialect": dialect, "error": str(e)})


# ------------------------------------------------------------
# Introspection
# ------------------------------------------------------------
def list_tables(engine: Engine, schema: Optional[str] = DB_SCHEMA) -> List[str]:
    return sorted(inspect(engine).get_table_names(schema=schema))


def _type_name(col: Dict[str, Any]) -> str:
    try:
        return str(col.get("type"))
    except Exception:  # some dialect types cannot compile without a bound dialect
        return col.get("type").__class__.__name__


def fetch_schema(engine: Engine, schema: Optional[str] = DB_SCHEMA) -> List[Dict[str, Any]]:
    """Column rows for every table: name, declared type, PK/FK flags, FK target."""
    insp = inspect(engine)
    rows: List[Dict[str, Any]] = []
    for table_name in list_tables(engine, schema):
        pk_cols = set(insp.get_pk_constraint(table_name, schema=schema).get("constrained_columns") or [])
        fk_targets: Dict[str, Dict[str, str]] = {}
        for fk in insp.get_foreign_keys(table_name, schema=schema):
            referred_table = fk.get("referred_table")
            for local, remote in zip(fk.get("constrained_columns") or [], fk.get("referred_columns") or []):
                fk_targets.setdefault(local, {"foreign_table": referred_table, "foreign_column": remote})

        for col in insp.get_columns(table_name, schema=schema):
            name = col.get("name")
            target = fk_targets.get(name)
            rows.append(
                {
                    "table_name": table_name,
                    "column_name": name,
                    "data_type": _type_name(col),
                    "is_primary": name in pk_cols,
                    "is_foreign": target is not None,
                    "foreign_table": target["foreign_table"] if target else None,
                    "foreign_column": target["foreign_column"] if target else None,
                }
            )
    return rows


def to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dt.timedelta):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return str(value)


def fetch_sample_rows(
    engine: Engine,
    table_name: str,
    limit: int = SAMPLE_ROW_LIMIT,
    schema: Optional[str] = DB_SCHEMA,
) -> List[Dict[str, Any]]:
    preparer = engine.dialect.identifier_preparer
    target = preparer.quote(table_name)
    if schema:
        target = f"{preparer.quote_schema(schema)}.{target}"

    with engine.connect() as conn:
        apply_timeout(conn, dialect_name(engine), DB_TIMEOUT_MS)
        res = conn.execute(text(f"SELECT * FROM {target} LIMIT :limit"), {"limit": int(limit)})
        cols = list(res.keys())
        return [{c: to_jsonable(v) for c, v in zip(cols, row)} for row in res.fetchall()]


def _target_key(u: URL) -> str:
    return f"{u.drivername}://{u.host or ''}:{u.port or ''}/{u.database or ''}"


def mask_db_url(url: URL) -> str:
    return url.render_as_string(hide_password=True)


# ------------------------------------------------------------
# Active connection registry
# ------------------------------------------------------------
class DatabaseRegistry:
    """Holds the single active engine; replaced only after a successful probe."""

    def __init__(self):
        self._engine: Optional[Engine] = None
        self._url: Optional[URL] = None
        self._lock = threading.Lock()

    def connect(self, config: Dict[str, Any]) -> Engine:
        if is_missing_required_config(config):
            raise ConfigError("Host, user and database are required")

        url = db_config_to_url(config)
        candidate = create_engine(url, pool_pre_ping=True)
        try:
            with candidate.connect() as conn:
                apply_timeout(conn, dialect_name(candidate), min(DB_TIMEOUT_MS, 4000))
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            candidate.dispose()
            raise

        with self._lock:
            previous, self._engine, self._url = self._engine, candidate, url
        if previous is not None and previous is not candidate:
            previous.dispose()

        logger.info("db_connected", extra={"url": mask_db_url(url)})
        return candidate

    def connect_demo(self) -> Engine:
        cfg = demo_config_from_env()
        if is_missing_required_config(cfg):
            raise ConfigError("Demo DB credentials are not configured on the server")
        return self.connect(cfg)

    def is_available(self) -> bool:
        return self._engine is not None

    def status(self) -> Dict[str, bool]:
        return {"available": self.is_available()}

    def get_engine(self) -> Engine:
        engine = self._engine
        if engine is None:
            raise DatabaseUnavailableError("DB connection not available")
        return engine

    def url_string(self) -> str:
        """Connection string with the password, for handing to the worker."""
        if self._url is None:
            raise DatabaseUnavailableError("DB connection not available")
        return self._url.render_as_string(hide_password=False)

    def target_key(self) -> str:
        """Stable identifier of the connected database (no credentials)."""
        if self._url is None:
            raise DatabaseUnavailableError("DB connection not available")
        return _target_key(self._url)

    def health(self) -> Dict[str, Any]:
        engine = self.get_engine()
        with engine.connect() as conn:
            apply_timeout(conn, dialect_name(engine), min(DB_TIMEOUT_MS, 4000))
            now = conn.execute(text("SELECT CURRENT_TIMESTAMP")).scalar()
        return {"status": "ok", "time": to_jsonable(now)}

    def dispose(self) -> None:
        with self._lock:
            engine, self._engine, self._url = self._engine, None, None
        if engine is not None:
            engine.dispose()


def target_key_for_url(db_url: str) -> str:
    return _target_key(make_url(db_url))

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _busy_timeout() -> float:
    raw = (os.environ.get("LENDING_DB_BUSY_TIMEOUT") or "").strip()
    try:
        return float(raw) if raw else 30.0
    except ValueError:
        return 30.0


def build_engine(url: str, **kwargs) -> Engine:
    """Engine for the lending database.

    SQLite connections are shared across request threads and wait on the write lock
    instead of failing fast, so concurrent claims queue behind each other.
    """
    if make_url(url).get_backend_name() == "sqlite":
        connect_args = dict(kwargs.pop("connect_args", {}))
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", _busy_timeout())
        kwargs["connect_args"] = connect_args
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, future=True, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


LENDING_DB_URL = _require_env("LENDING_DB_URL")

engine_lending = build_engine(LENDING_DB_URL)

SessionLocalLending = make_session_factory(engine_lending)

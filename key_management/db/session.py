import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _engine_options(db_url: str) -> dict:
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        # One shared connection, otherwise every session sees an empty database.
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


KEY_MANAGEMENT_DB_URL = _require_env("KEY_MANAGEMENT_DB_URL")

engine_keys = create_engine(
    KEY_MANAGEMENT_DB_URL,
    future=True,
    **_engine_options(KEY_MANAGEMENT_DB_URL),
)

SessionLocalKeys = sessionmaker(
    bind=engine_keys,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def create_schema() -> None:
    from models import key_models  # noqa: F401
    from db.base import Base

    Base.metadata.create_all(engine_keys)

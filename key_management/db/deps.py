from collections.abc import Generator

from .session import SessionLocalKeys


def get_keys_db() -> Generator:
    db = SessionLocalKeys()
    try:
        yield db
    finally:
        db.close()

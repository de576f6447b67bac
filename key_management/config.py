import os


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _bool_env(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


FLEX_MAX_NUMBER = _int_env("KEYS_FLEX_MAX_NUMBER", 3)
FLEX_DEFAULT_COUNT = _int_env("KEYS_FLEX_DEFAULT_COUNT", 3)
DISPOSAL_UNDO_SECONDS = _int_env("KEYS_DISPOSAL_UNDO_SECONDS", 10)

KEYS_API_TIMEOUT_SECONDS = _int_env("KEYS_API_TIMEOUT_SECONDS", 20)

CREATE_SCHEMA_ON_STARTUP = _bool_env("KEY_MANAGEMENT_CREATE_SCHEMA")
CORS_ALLOW_ORIGINS = parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
CORS_ALLOW_CREDENTIALS = _bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    CORS_ALLOW_CREDENTIALS = False

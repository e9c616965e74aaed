from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent


def _resolve_config_dir() -> Path:
    env_override = os.environ.get("TAGDEX_CONFIG_DIR")
    candidates: list[Path] = []

    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(PROJECT_ROOT / "config")
    candidates.append(PROJECT_ROOT.parent / "config")
    candidates.append(Path.cwd() / "config")

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.is_dir():
            return expanded.resolve()

    searched = ", ".join(str(path) for path in candidates)
    message = f"Unable to locate configuration directory. Searched: {searched}."
    if env_override:
        message += " Set TAGDEX_CONFIG_DIR to a valid directory."
    raise RuntimeError(message)


CONFIG_DIR = _resolve_config_dir()


def _cpu_count(default: int = 4) -> int:
    count = os.cpu_count() or default
    return max(count, 1)


DEFAULTS: dict[str, Any] = {
    "APP_NAME": "Tagdex",
    "LOG_LEVEL": "INFO",
    "APP": {
        "host": "127.0.0.1",
        "port": 5000,
    },
    "ADMIN": {
        "key": None,
    },
    "DATABASE": {
        "path": "index.sqlite3",
        "pool_size": 16,
        "pool_acquire_timeout": 10,
        "timeout": 5.0,
        "busy_timeout": 5000,
        "mmap_size": 64 * 1024 * 1024,
    },
    "UPSTREAM": {
        "base_url": "https://e621.net",
        "export_url": "https://e621.net/db_export",
        "user_agent": "Tagdex/1.0",
        "username": None,
        "api_key": None,
        "request_interval": 1.0,
        "queue_backoff": 0.25,
        "timeout": 30.0,
        "export_dir": "exports",
    },
    "SEARCH": {
        "default_limit": 50,
        "max_limit": 320,
        "max_result_window": 10_000,
        "max_query_length": 2048,
        "max_wildcard_expansion": 500,
        "max_relationship_tags": 150,
    },
    "TAG_CACHE": {
        "maxsize": 50_000,
        "ttl": 600,
        "negative_maxsize": 10_000,
        "negative_ttl": 300,
    },
    "RANKING": {
        "reference_epoch": 1116892800,
        "log_base": 3.0,
        "divisor": 35000.0,
        "window_days": 2,
    },
    "SYNC": {
        "enabled": True,
        "interval": 60.0,
        "transient_backoff": 300.0,
        "batch_size": 500,
        "concurrency": _cpu_count(),
        "page_limit": 320,
        "metadata_page_limit": 100,
        "max_update_pages": 750,
        "full_resync_on_empty": True,
        "export_batch_size": 10_000,
    },
    "ASSETS": {
        "base_url": "https://static1.e621.net/data",
    },
}

settings = Dynaconf(
    envvar_prefix="TAGDEX",
    settings_files=[
        CONFIG_DIR / "settings.toml",
        CONFIG_DIR / ".secrets.toml",
        CONFIG_DIR / "settings.local.toml",
    ],
    environments=True,
    env_switcher="TAGDEX_ENV",
    load_dotenv=True,
    envvar_parse_values=True,
    merge_enabled=True,
    defaults=DEFAULTS,
)


_MISSING = object()


def _ensure_defaults(prefix: str, defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        dotted = f"{prefix}.{key}" if prefix else key
        existing = settings.get(dotted, _MISSING)

        if isinstance(value, dict):
            if existing is _MISSING:
                settings.set(dotted, value.copy())
                existing = settings.get(dotted, _MISSING)
                # Only recurse when the stored value looks like a mapping to avoid
                # clobbering user-provided primitives.
            if isinstance(existing, Mapping):
                _ensure_defaults(dotted, value)
            continue

        if existing is _MISSING:
            settings.set(dotted, value)


_ensure_defaults("", DEFAULTS)


def _coerce_positive_int(dotted: str, default: int) -> int:
    raw = settings.get(dotted, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    if value <= 0:
        value = default
    settings.set(dotted, value)
    return value


_coerce_positive_int("SYNC.concurrency", _cpu_count())
_coerce_positive_int("SYNC.batch_size", DEFAULTS["SYNC"]["batch_size"])
_coerce_positive_int("SEARCH.max_limit", DEFAULTS["SEARCH"]["max_limit"])

# The default page size can never exceed the configured maximum.
max_limit = int(settings.get("SEARCH.max_limit"))
default_limit = _coerce_positive_int(
    "SEARCH.default_limit", DEFAULTS["SEARCH"]["default_limit"]
)
if default_limit > max_limit:
    settings.set("SEARCH.default_limit", max_limit)

__all__ = ["settings"]

# =============================================================================
# core/config.py  -  Lazy Configuration Lifecycle
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Owns the process-wide Configuration.  Nothing is read from the environment
#   until the first operation that actually needs the store calls
#   ensure_ready().  Listing tools, opening a session and the liveness endpoint
#   all work with zero configuration.
#
# THE LIFECYCLE:
#
#       (not initialized) --ensure_ready()--> (initialized, Configuration A)
#              ^                                         |
#              +----------- apply_overrides(...) --------+
#
#   - ensure_ready() is idempotent: a second call returns the SAME instance.
#   - apply_overrides() merges request-level values over the environment and
#     drops the current Configuration.  The next ensure_ready() builds a new one
#     from scratch.  Configuration is never patched in place.
#   - current() raises ConfigNotReady until ensure_ready() has run.
#
# DATA SOURCE:
#   Environment variables, plus a .env file loaded with python-dotenv the first
#   time settings are read.  Request overrides (Smithery-style query
#   parameters such as ?pocketbaseUrl=...&defaultCollection=...) layer on top
#   and persist until overridden again.
# =============================================================================

import logging
import os
import re
import threading
from typing import Any, Iterable, Mapping, Optional, Union

from dotenv import load_dotenv

from core.errors import ConfigNotReady, ValidationError
from core.models import Configuration, Credentials

logger = logging.getLogger(__name__)

DEFAULT_STORE_URL = "http://127.0.0.1:8090"
DEFAULT_COLLECTION = "documents"
# Collection names become URL path segments and SQL identifiers (indexes).
COLLECTION_NAME = re.compile(r"^[A-Za-z0-9_]+$")
DEFAULT_PORT = 3000
DEFAULT_FETCH_TIMEOUT = 30.0

# Override key -> environment variable it replaces.  Both the Smithery config
# names and the plain field names are accepted.
_OVERRIDE_KEYS: dict[str, str] = {
    "pocketbaseUrl": "POCKETBASE_URL",
    "storeUrl": "POCKETBASE_URL",
    "storeEndpoint": "POCKETBASE_URL",
    "pocketbaseEmail": "POCKETBASE_EMAIL",
    "pocketbasePassword": "POCKETBASE_PASSWORD",
    "defaultCollection": "DOCUMENTS_COLLECTION",
    "collectionName": "DOCUMENTS_COLLECTION",
    "debugMode": "DEBUG",
    "debugEnabled": "DEBUG",
    "autoCreateCollection": "AUTO_CREATE_COLLECTION",
}

_NESTED_OVERRIDE_KEYS: dict[tuple[str, str], str] = {
    ("credentials", "identity"): "POCKETBASE_EMAIL",
    ("credentials", "secret"): "POCKETBASE_PASSWORD",
}

_TRUTHY = {"1", "true", "yes", "on"}


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUTHY


def _as_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        logger.warning(f"Ignoring non-integer setting {value!r}, using {default}")
        return default


def _as_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value else default
    except ValueError:
        logger.warning(f"Ignoring non-numeric setting {value!r}, using {default}")
        return default


def parse_dotted(pairs: Union[Mapping[str, Any], Iterable[tuple[str, Any]]]) -> dict[str, Any]:
    """Rebuild a nested dict from flattened dotted keys.

    >>> parse_dotted({"a.b": "1", "c": "2"})
    {'a': {'b': '1'}, 'c': '2'}

    A later scalar wins over an earlier nested value with the same prefix.
    """
    items = pairs.items() if isinstance(pairs, Mapping) else pairs
    nested: dict[str, Any] = {}
    for key, value in items:
        parts = key.split(".")
        current = nested
        for part in parts[:-1]:
            child = current.get(part)
            if not isinstance(child, dict):
                child = {}
                current[part] = child
            current = child
        current[parts[-1]] = value
    return nested


def _flatten_overrides(partial: Mapping[str, Any]) -> dict[str, str]:
    """Map a nested override mapping onto environment variable names."""
    updates: dict[str, str] = {}
    for key, value in partial.items():
        if isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                env_name = _NESTED_OVERRIDE_KEYS.get((key, sub_key))
                if env_name and sub_value is not None:
                    updates[env_name] = str(sub_value)
            continue
        env_name = _OVERRIDE_KEYS.get(key)
        if env_name is None:
            logger.debug(f"Ignoring unknown configuration key {key!r}")
            continue
        if value is None:
            continue
        updates[env_name] = str(value).lower() if isinstance(value, bool) else str(value)
    return updates


def _apply_log_level(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    for name in ("core", "tools", "main"):
        logging.getLogger(name).setLevel(level)


class ConfigManager:
    """Explicitly owned, swappable holder for the process Configuration.

    Callers depend on this object, never on module-level settings.

    Args:
        environ: Settings source.  ``None`` means ``os.environ`` (read at
            build time, so late changes are picked up on reload).
        dotenv_path: Optional explicit path for the .env file.
        load_env_file: Load a .env file on first read.  Ignored when an
            explicit ``environ`` is given.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
        load_env_file: bool = True,
    ):
        self._environ = environ
        self._dotenv_path = dotenv_path
        self._load_env_file = load_env_file and environ is None
        self._env_loaded = False
        self._overrides: dict[str, str] = {}
        self._config: Optional[Configuration] = None
        # Single-flight guard: construction never runs twice concurrently.
        self._lock = threading.Lock()
        self.generation = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @property
    def initialized(self) -> bool:
        return self._config is not None

    def ensure_ready(self) -> Configuration:
        """Return the current Configuration, building it on first use."""
        config = self._config
        if config is not None:
            return config
        with self._lock:
            if self._config is None:
                config = self._build()
                if not COLLECTION_NAME.match(config.collection_name):
                    raise ValidationError(
                        f"Invalid collection name {config.collection_name!r}: "
                        "use letters, digits and underscores only"
                    )
                self._config = config
                self.generation += 1
                _apply_log_level(self._config.debug)
                logger.debug(
                    f"Configuration initialized lazily (generation {self.generation}, "
                    f"store={self._config.store_url}, collection={self._config.collection_name})"
                )
            return self._config

    def current(self) -> Configuration:
        """Return the Configuration without building it."""
        config = self._config
        if config is None:
            raise ConfigNotReady("Configuration has not been initialized yet.")
        return config

    def preview(self) -> Configuration:
        """Configuration as it *would* be built now, without initializing.

        Used for decisions that must not count as "touching the store"
        (which tools to register, what the liveness endpoint reports).
        """
        return self._config if self._config is not None else self._build()

    def apply_overrides(self, partial: Mapping[str, Any]) -> bool:
        """Merge overrides and force the next ensure_ready() to rebuild.

        Returns True when at least one recognised key changed.  Repeating the
        same overrides (every request of a session usually carries them) keeps
        the current Configuration.
        """
        updates = _flatten_overrides(partial)
        with self._lock:
            updates = {k: v for k, v in updates.items() if self._overrides.get(k) != v}
            if not updates:
                return False
            self._overrides.update(updates)
            self._config = None
        # Keys only: values may be secrets.
        logger.debug(f"Applied configuration overrides {sorted(updates)}, forcing re-initialization")
        return True

    def reset(self) -> None:
        """Forget overrides and the current Configuration."""
        with self._lock:
            self._overrides.clear()
            self._config = None

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------
    def _settings(self) -> dict[str, str]:
        if self._load_env_file and not self._env_loaded:
            load_dotenv(self._dotenv_path)
            self._env_loaded = True
        source = os.environ if self._environ is None else self._environ
        merged = dict(source)
        merged.update(self._overrides)
        return merged

    def _build(self) -> Configuration:
        env = self._settings()

        identity = env.get("POCKETBASE_EMAIL") or env.get("POCKETBASE_ADMIN_EMAIL")
        secret = env.get("POCKETBASE_PASSWORD") or env.get("POCKETBASE_ADMIN_PASSWORD")
        credentials = Credentials(identity, secret) if identity and secret else None

        transport_mode = (env.get("TRANSPORT_MODE") or "stdio").strip().lower()
        store_backend = (env.get("STORE_BACKEND") or "pocketbase").strip().lower()

        return Configuration(
            store_url=(env.get("POCKETBASE_URL") or DEFAULT_STORE_URL).rstrip("/"),
            collection_name=env.get("DOCUMENTS_COLLECTION") or DEFAULT_COLLECTION,
            credentials=credentials,
            debug=_as_bool(env.get("DEBUG")),
            listen_port=_as_int(env.get("PORT") or env.get("HTTP_PORT"), DEFAULT_PORT),
            read_only=_as_bool(env.get("READ_ONLY_MODE")),
            auto_create_collection=_as_bool(env.get("AUTO_CREATE_COLLECTION"), default=True),
            transport_mode=transport_mode,
            fetch_timeout=_as_float(env.get("FETCH_TIMEOUT_SECONDS"), DEFAULT_FETCH_TIMEOUT),
            store_backend=store_backend,
        )

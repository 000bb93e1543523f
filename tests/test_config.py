# tests/test_config.py
import logging

import pytest

from core.config import ConfigManager, parse_dotted
from core.errors import ConfigNotReady, ValidationError


def test_ensure_ready_is_idempotent():
    manager = ConfigManager(environ={"POCKETBASE_URL": "http://pb:8090/"})

    first = manager.ensure_ready()
    second = manager.ensure_ready()

    assert first is second
    assert first.store_url == "http://pb:8090"
    assert manager.generation == 1


def test_current_before_init_raises():
    manager = ConfigManager(environ={})

    with pytest.raises(ConfigNotReady):
        manager.current()

    assert manager.initialized is False


def test_defaults():
    config = ConfigManager(environ={}).ensure_ready()

    assert config.store_url == "http://127.0.0.1:8090"
    assert config.collection_name == "documents"
    assert config.credentials is None
    assert config.listen_port == 3000
    assert config.auto_create_collection is True
    assert config.read_only is False
    assert config.transport_mode == "stdio"
    assert config.store_backend == "pocketbase"


def test_override_forces_reload():
    manager = ConfigManager(environ={"DOCUMENTS_COLLECTION": "documents"})
    before = manager.ensure_ready()

    assert manager.apply_overrides({"defaultCollection": "x"}) is True
    assert manager.initialized is False

    after = manager.ensure_ready()
    assert after is not before
    assert after.collection_name == "x"
    assert manager.generation == 2


def test_repeated_override_keeps_configuration():
    manager = ConfigManager(environ={})
    manager.apply_overrides({"defaultCollection": "x"})
    config = manager.ensure_ready()

    assert manager.apply_overrides({"defaultCollection": "x"}) is False
    assert manager.ensure_ready() is config


def test_unknown_override_keys_are_ignored():
    manager = ConfigManager(environ={})
    config = manager.ensure_ready()

    assert manager.apply_overrides({"somethingElse": "1"}) is False
    assert manager.ensure_ready() is config


def test_credentials_from_nested_overrides():
    manager = ConfigManager(environ={})
    manager.apply_overrides(parse_dotted({
        "credentials.identity": "admin@example.com",
        "credentials.secret": "s3cret",
    }))

    config = manager.ensure_ready()

    assert config.credentials.identity == "admin@example.com"
    assert config.credentials.secret == "s3cret"
    assert "s3cret" not in repr(config)


def test_credentials_need_both_halves():
    config = ConfigManager(environ={"POCKETBASE_EMAIL": "a@b.c"}).ensure_ready()

    assert config.credentials is None


def test_admin_credential_aliases():
    config = ConfigManager(environ={
        "POCKETBASE_ADMIN_EMAIL": "a@b.c",
        "POCKETBASE_ADMIN_PASSWORD": "pw",
    }).ensure_ready()

    assert config.has_credentials


def test_bool_and_number_parsing():
    config = ConfigManager(environ={
        "DEBUG": "TRUE",
        "READ_ONLY_MODE": "1",
        "AUTO_CREATE_COLLECTION": "false",
        "HTTP_PORT": "8080",
        "FETCH_TIMEOUT_SECONDS": "not-a-number",
    }).ensure_ready()

    assert config.debug is True
    assert config.read_only is True
    assert config.auto_create_collection is False
    assert config.listen_port == 8080
    assert config.fetch_timeout == 30.0


def test_debug_override_raises_log_level():
    manager = ConfigManager(environ={})
    manager.ensure_ready()
    manager.apply_overrides({"debugMode": True})
    manager.ensure_ready()

    assert logging.getLogger("core").level == logging.DEBUG

    manager.apply_overrides({"debugMode": False})
    manager.ensure_ready()
    assert logging.getLogger("core").level == logging.INFO


def test_preview_does_not_initialize():
    manager = ConfigManager(environ={"READ_ONLY_MODE": "true"})

    assert manager.preview().read_only is True
    assert manager.initialized is False


@pytest.mark.parametrize("name", ["../settings", "a b", "notes/records", "docs?x=1"])
def test_invalid_collection_name_is_rejected(name):
    manager = ConfigManager(environ={})
    manager.apply_overrides({"defaultCollection": name})

    with pytest.raises(ValidationError):
        manager.ensure_ready()

    assert manager.initialized is False
    # Liveness and tool discovery still work.
    assert manager.preview().read_only is False


def test_reset_drops_overrides():
    manager = ConfigManager(environ={})
    manager.apply_overrides({"defaultCollection": "x"})
    manager.ensure_ready()

    manager.reset()

    assert manager.initialized is False
    assert manager.ensure_ready().collection_name == "documents"


def test_parse_dotted():
    assert parse_dotted({"a.b": "1", "c": "2"}) == {"a": {"b": "1"}, "c": "2"}
    assert parse_dotted([("a.b.c", "x"), ("a.d", "y")]) == {"a": {"b": {"c": "x"}, "d": "y"}}
    # a later scalar replaces an earlier nested value
    assert parse_dotted([("a.b", "1"), ("a", "2")]) == {"a": "2"}

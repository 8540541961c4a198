"""Tests for configuration loading."""

import pytest

from postgate.config import load_config
from postgate.persistence import InMemoryApprovalStore, SQLiteApprovalStore, get_store
from postgate.transports import get_transport
from postgate.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  max_retries: 5
notifications:
  channels: [in_app, email]
"""
    )
    monkeypatch.setenv("POSTGATE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.max_retries == 5
    assert config.engine.notify_timeout == 5.0
    assert config.notifications.channels == ["in_app", "email"]


def test_missing_config_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("POSTGATE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("POSTGATE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.notifications.channels == ["in_app"]


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("POSTGATE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("POSTGATE_DATABASE_URL", "sqlite://approvals.db")
    monkeypatch.setenv("RESEND_API_KEY", "re_test")

    config = load_config()
    assert config.database_url == "sqlite://approvals.db"
    assert config.notifications.resend_api_key == "re_test"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("POSTGATE_CONFIG", str(config_path))
    monkeypatch.delenv("POSTGATE_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_store_backends(tmp_path, monkeypatch):
    monkeypatch.setenv("POSTGATE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("POSTGATE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert isinstance(get_store(), InMemoryApprovalStore)
    sqlite_store = get_store(f"sqlite://{tmp_path / 'a.db'}")
    assert isinstance(sqlite_store, SQLiteApprovalStore)
    assert (tmp_path / "a.db").exists()
    with pytest.raises(ValueError):
        get_store("mysql://nope")

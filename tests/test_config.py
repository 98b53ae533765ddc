"""
Tests for SecretStoreConfig.
"""

from __future__ import annotations

import base64
from datetime import timedelta

import pytest

from envelope_secrets import ConfigError, KeyEncoding, SecretStoreConfig

ENV_NAMES = [
    "DATABASE_URL",
    "SECRETS_DEFAULT_TTL_SECONDS",
    "SECRETS_MAX_TTL_SECONDS",
    "SECRETS_MAX_DATA_SIZE",
    "SECRETS_KEY_ENCODING",
    "SECRETS_SWEEP_INTERVAL_SECONDS",
    "SECRETS_INTEGRITY_KEY",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Unset config variables; anything load_dotenv adds is removed afterwards."""
    for name in ENV_NAMES:
        # setenv first so teardown restores the original state
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


def test_defaults():
    config = SecretStoreConfig()

    assert config.database_url is None
    assert config.default_ttl == timedelta(days=7)
    assert config.max_ttl == timedelta(days=30)
    assert config.max_data_size == 1024 * 1024
    assert config.key_encoding is KeyEncoding.HEX
    assert config.sweep_interval_seconds == 1.0
    assert config.integrity_key is None


def test_from_mapping():
    config = SecretStoreConfig.from_env(
        {
            "DATABASE_URL": "postgresql://localhost/secrets",
            "SECRETS_DEFAULT_TTL_SECONDS": "30",
            "SECRETS_MAX_TTL_SECONDS": "90",
            "SECRETS_MAX_DATA_SIZE": "2048",
            "SECRETS_KEY_ENCODING": "BASE62",
            "SECRETS_SWEEP_INTERVAL_SECONDS": "0.5",
            "SECRETS_INTEGRITY_KEY": base64.b64encode(b"x" * 32).decode(),
        }
    )

    assert config.database_url == "postgresql://localhost/secrets"
    assert config.default_ttl == timedelta(seconds=30)
    assert config.max_ttl == timedelta(seconds=90)
    assert config.max_data_size == 2048
    assert config.key_encoding is KeyEncoding.BASE62
    assert config.sweep_interval_seconds == 0.5
    assert config.integrity_key == b"x" * 32


def test_empty_values_fall_back_to_defaults():
    config = SecretStoreConfig.from_env({"SECRETS_MAX_TTL_SECONDS": ""})
    assert config.max_ttl == timedelta(days=30)


def test_integrity_key_is_not_in_repr():
    config = SecretStoreConfig(integrity_key=b"s" * 16)
    assert "sss" not in repr(config)


@pytest.mark.parametrize(
    "environ",
    [
        {"SECRETS_MAX_TTL_SECONDS": "soon"},
        {"SECRETS_MAX_TTL_SECONDS": "0"},
        {"SECRETS_KEY_ENCODING": "base64"},
        {"SECRETS_SWEEP_INTERVAL_SECONDS": "0"},
        {"SECRETS_DEFAULT_TTL_SECONDS": "100", "SECRETS_MAX_TTL_SECONDS": "50"},
        {"SECRETS_INTEGRITY_KEY": "not base64!"},
        {"SECRETS_INTEGRITY_KEY": base64.b64encode(b"short").decode()},
    ],
)
def test_invalid_values(environ):
    with pytest.raises(ConfigError):
        SecretStoreConfig.from_env(environ)


def test_dotenv_file(tmp_path, clean_env):
    env_file = tmp_path / ".env"
    env_file.write_text("SECRETS_KEY_ENCODING=base62\nSECRETS_MAX_DATA_SIZE=10\n")

    config = SecretStoreConfig.from_env(dotenv_path=str(env_file))

    assert config.key_encoding is KeyEncoding.BASE62
    assert config.max_data_size == 10


def test_process_environment_wins_over_dotenv(tmp_path, clean_env):
    clean_env.setenv("SECRETS_MAX_DATA_SIZE", "99")
    env_file = tmp_path / ".env"
    env_file.write_text("SECRETS_MAX_DATA_SIZE=10\n")

    config = SecretStoreConfig.from_env(dotenv_path=str(env_file))

    assert config.max_data_size == 99

"""
Secret store configuration.

Reads settings from the environment (a ``.env`` file is loaded first when
present):

    DATABASE_URL                    PostgreSQL DSN (PostgreSQL backend only)
    SECRETS_DEFAULT_TTL_SECONDS     TTL used when a caller gives none
    SECRETS_MAX_TTL_SECONDS         Upper bound for requested TTLs
    SECRETS_MAX_DATA_SIZE           Upper bound for payload size in bytes
    SECRETS_KEY_ENCODING            ``hex`` or ``base62``
    SECRETS_SWEEP_INTERVAL_SECONDS  Period of the expiry sweeper
    SECRETS_INTEGRITY_KEY           Base64 HMAC key for DEK integrity hashes

Security Note:
    Never log the integrity key or the DSN password.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .keys import KeyEncoding

logger = logging.getLogger("envelope_secrets.config")

DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 7
MAX_TTL_SECONDS = 60 * 60 * 24 * 30
MAX_DATA_SIZE = 1024 * 1024


class SecretStoreConfig(BaseModel):
    """Validated secret store settings."""

    database_url: Optional[str] = None
    default_ttl_seconds: int = Field(default=DEFAULT_TTL_SECONDS, ge=1)
    max_ttl_seconds: int = Field(default=MAX_TTL_SECONDS, ge=1)
    max_data_size: int = Field(default=MAX_DATA_SIZE, ge=1)
    key_encoding: KeyEncoding = KeyEncoding.HEX
    sweep_interval_seconds: float = Field(default=1.0, gt=0)
    integrity_key: Optional[bytes] = Field(default=None, repr=False)

    @field_validator("key_encoding", mode="before")
    @classmethod
    def parse_key_encoding(cls, v: object) -> object:
        if isinstance(v, str):
            try:
                return KeyEncoding(v.lower())
            except ValueError:
                raise ValueError(f"Unsupported key encoding: {v}")
        return v

    @field_validator("integrity_key")
    @classmethod
    def validate_integrity_key(cls, v: Optional[bytes]) -> Optional[bytes]:
        if v is not None and len(v) < 16:
            raise ValueError("integrity_key must be at least 16 bytes")
        return v

    @model_validator(mode="after")
    def validate_default_within_max(self) -> "SecretStoreConfig":
        if self.default_ttl_seconds > self.max_ttl_seconds:
            raise ValueError(
                f"default_ttl_seconds ({self.default_ttl_seconds}) exceeds "
                f"max_ttl_seconds ({self.max_ttl_seconds})"
            )
        return self

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(seconds=self.default_ttl_seconds)

    @property
    def max_ttl(self) -> timedelta:
        return timedelta(seconds=self.max_ttl_seconds)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
    ) -> "SecretStoreConfig":
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (skips .env loading)
            dotenv_path: Explicit .env file to load into ``os.environ``

        Raises:
            ConfigError: If a value is missing its expected type or is out of range
        """
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ

        values: dict = {}
        mapping = {
            "DATABASE_URL": "database_url",
            "SECRETS_DEFAULT_TTL_SECONDS": "default_ttl_seconds",
            "SECRETS_MAX_TTL_SECONDS": "max_ttl_seconds",
            "SECRETS_MAX_DATA_SIZE": "max_data_size",
            "SECRETS_KEY_ENCODING": "key_encoding",
            "SECRETS_SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
        }
        for env_name, field_name in mapping.items():
            raw = environ.get(env_name)
            if raw:
                values[field_name] = raw

        raw_key = environ.get("SECRETS_INTEGRITY_KEY")
        if raw_key:
            try:
                values["integrity_key"] = base64.b64decode(raw_key, validate=True)
            except (binascii.Error, ValueError):
                raise ConfigError("SECRETS_INTEGRITY_KEY must be base64") from None

        try:
            config = cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid secret store configuration: {e}") from None

        logger.debug(
            "Loaded config: key_encoding=%s max_ttl=%ss keyed_hash=%s",
            config.key_encoding,
            config.max_ttl_seconds,
            config.integrity_key is not None,
        )
        return config

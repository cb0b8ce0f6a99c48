# =============================================================================
# caseflow_core/offline/config.py
# Sync engine configuration (.env / environment / TOML)
# =============================================================================
"""
SyncSettings - tunables for the store, queue processor and backend client.

Sources, in increasing precedence:
    defaults  ->  [sync] table of a TOML file  ->  CASEFLOW_* environment
                  (a .env file is loaded into the environment first)

Environment variables:
    CASEFLOW_DB_PATH, CASEFLOW_API_BASE_URL, CASEFLOW_REQUEST_TIMEOUT,
    CASEFLOW_BATCH_SIZE, CASEFLOW_MAX_RETRIES, CASEFLOW_BACKOFF_BASE,
    CASEFLOW_BACKOFF_FACTOR, CASEFLOW_BACKOFF_CAP, CASEFLOW_SYNC_INTERVAL,
    CASEFLOW_MAX_WORKERS, CASEFLOW_CACHE_TTL, CASEFLOW_CONNECTION_CHECK_INTERVAL
"""

from __future__ import annotations
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
import logging

from dotenv import load_dotenv

from caseflow_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CASEFLOW_"


@dataclass(frozen=True)
class SyncSettings:
    """Configuration for the offline data service."""
    db_path: Optional[str] = None
    api_base_url: Optional[str] = None
    request_timeout: float = 30.0           # seconds
    batch_size: int = 50
    max_retries: int = 3
    backoff_base: float = 2.0               # seconds
    backoff_factor: float = 2.0
    backoff_cap: float = 300.0              # seconds
    sync_interval: float = 30.0             # seconds
    max_workers: int = 1
    cache_ttl: int = 3_600_000              # ms
    connection_check_interval: float = 30.0 # seconds

    @classmethod
    def _coerce(cls, values: Mapping[str, Any], source: str) -> Dict[str, Any]:
        types = {f.name: f.type for f in fields(cls)}
        coerced: Dict[str, Any] = {}
        for name, raw in values.items():
            if name not in types:
                logger.warning(f"Ignoring unknown sync setting '{name}' from {source}")
                continue
            expected = str(types[name])
            try:
                if raw is None or raw == "":
                    coerced[name] = None if "Optional" in expected else raw
                elif expected.startswith("int"):
                    coerced[name] = int(raw)
                elif expected.startswith("float"):
                    coerced[name] = float(raw)
                else:
                    coerced[name] = str(raw)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid value {raw!r} for '{name}' in {source}",
                    config_key=name,
                    expected_type=expected,
                ) from None
        return coerced

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], source: str = "mapping") -> SyncSettings:
        settings = cls(**cls._coerce(values, source))
        settings.validate()
        return settings

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        base: Optional[SyncSettings] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SyncSettings:
        """
        Load settings from CASEFLOW_* environment variables.

        Args:
            env_file: Optional .env file loaded first (existing variables win)
            base: Settings to override (defaults when None)
            environ: Environment mapping (os.environ when None)
        """
        if environ is None:
            load_dotenv(dotenv_path=env_file)
            environ = os.environ

        values = {
            f.name: environ[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in environ
        }
        settings = replace(base or cls(), **cls._coerce(values, "environment"))
        settings.validate()
        return settings

    @classmethod
    def from_toml(cls, path: Union[str, Path], section: str = "sync") -> SyncSettings:
        """Load settings from the `[sync]` table of a TOML file."""
        path = Path(path)
        try:
            with open(path, "rb") as f:
                document = tomllib.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {path}", config_key=str(path)) from None
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}", config_key=str(path)) from e

        table = document.get(section, {})
        if not isinstance(table, dict):
            raise ConfigurationError(f"[{section}] in {path} must be a table", config_key=section)
        return cls.from_mapping(table, source=str(path))

    @classmethod
    def load(
        cls,
        toml_path: Optional[Union[str, Path]] = None,
        env_file: Optional[Union[str, Path]] = None,
    ) -> SyncSettings:
        """Defaults, then the TOML file (if given), then the environment."""
        base = cls.from_toml(toml_path) if toml_path else cls()
        return cls.from_env(env_file=env_file, base=base)

    def validate(self) -> None:
        """Raise ConfigurationError for values the engine cannot run with."""
        positive = {
            "request_timeout": self.request_timeout,
            "batch_size": self.batch_size,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
            "sync_interval": self.sync_interval,
            "max_workers": self.max_workers,
            "cache_ttl": self.cache_ttl,
            "connection_check_interval": self.connection_check_interval,
        }
        for name, value in positive.items():
            if value is None or value <= 0:
                raise ConfigurationError(f"'{name}' must be positive (got {value})", config_key=name)

        if self.max_retries is None or self.max_retries < 0:
            raise ConfigurationError("'max_retries' cannot be negative", config_key="max_retries")
        if self.backoff_factor < 1:
            raise ConfigurationError("'backoff_factor' must be at least 1", config_key="backoff_factor")
        if self.backoff_cap < self.backoff_base:
            raise ConfigurationError(
                f"'backoff_cap' ({self.backoff_cap}) is below 'backoff_base' ({self.backoff_base})",
                config_key="backoff_cap",
            )

"""
Configuration management for ERP Sync.

Loads engine settings and optional seed integrations from a YAML/JSON
config file, with ``ERP_SYNC_*`` environment variables taking precedence.

Default config location: ~/.erp-sync/config.yaml
Override with the ERP_SYNC_CONFIG env var.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

from erp_sync.core.errors import ConfigurationError

DEFAULT_CONFIG_DIR = Path.home() / ".erp-sync"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DATABASE = DEFAULT_CONFIG_DIR / "erp_sync.db"
ENV_CONFIG_PATH = "ERP_SYNC_CONFIG"
ENV_PREFIX = "ERP_SYNC_"

# ERP_SYNC_<KEY> → (setting, type)
_ENV_SETTINGS: dict[str, tuple[str, type]] = {
    "DATABASE": ("database", str),
    "ENCRYPTION_KEY": ("encryption_key", str),
    "QUEUE_INTERVAL": ("queue_interval", float),
    "SWEEP_INTERVAL": ("sweep_interval", float),
    "QUEUE_BATCH_SIZE": ("queue_batch_size", int),
    "QUEUE_CLAIM_TIMEOUT": ("queue_claim_timeout", float),
    "HTTP_TIMEOUT": ("http_timeout", float),
    "LOG_LEVEL": ("log_level", str),
}

# ERP_SYNC_<INTEGRATION>_<KEY> → connection config key
_ENV_CREDENTIALS = {
    "CLIENT_ID": "client_id",
    "CLIENT_SECRET": "client_secret",
    "TOKEN_URL": "token_url",
    "USERNAME": "username",
    "PASSWORD": "password",
    "API_KEY": "api_key",
    "BASE_URL": "base_url",
}
_OAUTH_KEYS = {"client_id", "client_secret", "token_url"}


def _load_file(path: Path) -> dict[str, Any]:
    text = path.read_text()
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text) or {}


def _env_overrides() -> dict[str, str]:
    """Collect ERP_SYNC_* environment variables."""
    return {
        k[len(ENV_PREFIX):]: v
        for k, v in os.environ.items()
        if k.startswith(ENV_PREFIX) and k != ENV_CONFIG_PATH
    }


class SeedIntegration:
    """An integration defined in the config file, imported with ``erp-sync seed``."""

    def __init__(self, name: str, raw: dict[str, Any]) -> None:
        self.name = name
        try:
            self.tenant_id: str = raw["tenant_id"]
            self.erp_type: str = raw["erp_type"]  # sap | oracle
        except KeyError as exc:
            raise ConfigurationError(f"Integration {name!r} is missing {exc.args[0]!r}") from None
        self.description: str = raw.get("description", "")
        self.connection: dict[str, Any] = raw.get("connection", {})
        self.mappings: dict[str, dict[str, str]] | None = raw.get("mappings")
        self.sync_settings: dict[str, Any] = raw.get("sync_settings", {})
        self.is_active: bool = raw.get("is_active", True)

    def to_create_kwargs(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "erp_type": self.erp_type,
            "name": self.name,
            "connection_config": self.connection,
            "description": self.description,
            "mappings": self.mappings,
            "sync_settings": self.sync_settings,
            "is_active": self.is_active,
        }


class Config:
    """Top-level configuration container."""

    def __init__(self, raw: dict[str, Any] | None = None) -> None:
        self._raw = raw or {}
        self.database: str = str(self._raw.get("database", DEFAULT_DATABASE))
        keys = self._raw.get("encryption_keys") or self._raw.get("encryption_key") or []
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",") if k.strip()]
        self.encryption_keys: list[str] = list(keys)

        scheduler = self._raw.get("scheduler", {})
        self.queue_interval = float(scheduler.get("queue_interval", 300))
        self.sweep_interval = float(scheduler.get("sweep_interval", 3600))
        self.queue_batch_size = int(scheduler.get("queue_batch_size", 50))
        self.queue_claim_timeout = float(scheduler.get("queue_claim_timeout", 900))
        self.http_timeout = float(self._raw.get("http_timeout", 30))
        self.log_level = str(self._raw.get("log_level", "INFO")).upper()

        self.integrations: dict[str, SeedIntegration] = {}
        for name, defn in (self._raw.get("integrations") or {}).items():
            self.integrations[name] = SeedIntegration(name, defn)

    def get_integration(self, name: str) -> SeedIntegration:
        if name not in self.integrations:
            raise KeyError(
                f"Integration {name!r} not found. "
                f"Available: {list(self.integrations.keys())}"
            )
        return self.integrations[name]

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file, with env-var overrides applied.

        Resolution order:
        1. Explicit *path* argument
        2. ERP_SYNC_CONFIG env var
        3. ~/.erp-sync/config.yaml
        """
        if path is None:
            path = os.environ.get(ENV_CONFIG_PATH, str(DEFAULT_CONFIG_FILE))
        path = Path(path).expanduser()

        raw = _load_file(path) if path.exists() else {}
        env = _env_overrides()

        for env_key, (setting, cast) in _ENV_SETTINGS.items():
            if env_key not in env:
                continue
            try:
                value = cast(env[env_key])
            except ValueError:
                raise ConfigurationError(
                    f"{ENV_PREFIX}{env_key} must be a {cast.__name__}, got {env[env_key]!r}"
                ) from None
            if setting in ("queue_interval", "sweep_interval", "queue_batch_size", "queue_claim_timeout"):
                raw.setdefault("scheduler", {})[setting] = value
            else:
                raw[setting] = value
        if "encryption_key" in raw and "ENCRYPTION_KEY" in env:
            raw.pop("encryption_keys", None)

        # Apply ERP_SYNC_<INTEGRATION>_* credential overrides
        for name, defn in (raw.get("integrations") or {}).items():
            prefix = name.upper()
            connection = defn.setdefault("connection", {})
            for suffix, key in _ENV_CREDENTIALS.items():
                env_key = f"{prefix}_{suffix}"
                if env_key not in env:
                    continue
                if key in _OAUTH_KEYS and "oauth" in connection:
                    connection["oauth"][key] = env[env_key]
                else:
                    connection[key] = env[env_key]

        return cls(raw)

    @staticmethod
    def generate_template() -> str:
        """Return a YAML template users can fill in."""
        return """\
# ERP Sync configuration
# Place this file at ~/.erp-sync/config.yaml
# or set ERP_SYNC_CONFIG=/path/to/config.yaml
#
# Settings can be overridden with environment variables:
#   ERP_SYNC_DATABASE, ERP_SYNC_ENCRYPTION_KEY, ERP_SYNC_QUEUE_INTERVAL,
#   ERP_SYNC_SWEEP_INTERVAL, ERP_SYNC_QUEUE_BATCH_SIZE, ERP_SYNC_QUEUE_CLAIM_TIMEOUT,
#   ERP_SYNC_HTTP_TIMEOUT, ERP_SYNC_LOG_LEVEL
# Integration credentials can be supplied the same way:
#   ERP_SYNC_<INTEGRATION_NAME>_CLIENT_ID, ERP_SYNC_<INTEGRATION_NAME>_PASSWORD, etc.

database: ~/.erp-sync/erp_sync.db

# Generate one with: erp-sync init --generate-key
# Several comma-separated keys rotate: the first encrypts, all decrypt.
encryption_key: YOUR_FERNET_KEY

http_timeout: 30
log_level: INFO

scheduler:
  queue_interval: 300     # seconds between retry-queue drains
  sweep_interval: 3600    # seconds between scheduled-sync sweeps
  queue_batch_size: 50
  queue_claim_timeout: 900  # seconds before an abandoned in-flight item is retried

integrations:
  plant_sap:
    tenant_id: acme
    erp_type: sap
    description: SAP S/4HANA plant maintenance
    connection:
      base_url: https://my-sap-instance.s4hana.cloud.sap
      client: "100"
      language: EN
      oauth:
        token_url: https://my-sap-instance.authentication.eu10.hana.ondemand.com/oauth/token
        client_id: YOUR_CLIENT_ID
        client_secret: YOUR_CLIENT_SECRET
    sync_settings:
      sync_assets: true
      sync_inventory: true
      sync_work_orders: true
      sync_interval: 60
      auto_sync: true

  fusion_oracle:
    tenant_id: acme
    erp_type: oracle
    connection:
      base_url: https://myinstance.fa.us2.oraclecloud.com
      api_version: "11.13.18.05"
      username: YOUR_USERNAME
      password: YOUR_PASSWORD
    sync_settings:
      sync_assets: true
      sync_inventory: false
      sync_purchase_orders: true
"""

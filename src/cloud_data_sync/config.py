"""
Configuration system for storage providers, bucket mappings and sync settings.

Provides:
- YAML-based configuration (JSON files are accepted as well)
- Environment variable substitution
- Validation of providers and mappings
- Backend factory and registry
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .backend import StorageBackend
from .engine import Mapping
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = "data.db"
DEFAULT_INTERVAL_SECONDS = 300

PROVIDER_TYPES = ("gcs", "aws", "azure", "minio")

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")
_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z]+)")


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ProviderConfig:
    """Configuration for one storage provider."""
    id: str
    type: str  # 'gcs', 'aws', 'azure', 'minio'
    settings: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"id": self.id, "type": self.type, self.type: dict(self.settings)}


@dataclass
class SyncSettings:
    """Configuration for the sync engine and the periodic loop."""
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    max_workers: int = 1
    strict_target_listing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "interval_seconds": self.interval_seconds,
            "max_workers": self.max_workers,
            "strict_target_listing": self.strict_target_listing,
        }


@dataclass
class AppConfig:
    """Complete application configuration."""
    providers: List[ProviderConfig]
    mappings: List[Mapping]
    database_path: Path = Path(DEFAULT_DATABASE_PATH)
    sync: SyncSettings = field(default_factory=SyncSettings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "database_path": str(self.database_path),
            "sync": self.sync.to_dict(),
            "providers": [p.to_dict() for p in self.providers],
            "mappings": [m.to_dict() for m in self.mappings],
        }


# ============================================================================
# Backend Factory
# ============================================================================

def _create_gcs(settings: Dict[str, Any]) -> StorageBackend:
    from .providers.gcs import GCSBackend
    return GCSBackend(
        project_id=settings.get("project_id"),
        credentials_path=settings.get("credentials_path"),
    )


def _create_aws(settings: Dict[str, Any]) -> StorageBackend:
    from .providers.s3 import S3Backend
    return S3Backend(
        region=settings.get("region") or "us-east-1",
        access_key_id=settings.get("access_key_id"),
        secret_access_key=settings.get("secret_access_key"),
        endpoint=settings.get("endpoint"),
        disable_ssl=_as_bool(settings.get("disable_ssl", False)),
        storage_class=settings.get("storage_class"),
        provider_type="aws",
    )


def _create_minio(settings: Dict[str, Any]) -> StorageBackend:
    from .providers.s3 import S3Backend
    return S3Backend(
        region=settings.get("region") or "us-east-1",
        access_key_id=settings.get("access_key"),
        secret_access_key=settings.get("secret_key"),
        endpoint=settings.get("endpoint"),
        disable_ssl=not _as_bool(settings.get("use_ssl", False)),
        provider_type="minio",
    )


def _create_azure(settings: Dict[str, Any]) -> StorageBackend:
    from .providers.azure import AzureBlobBackend
    return AzureBlobBackend(
        account_name=settings.get("account_name"),
        account_key=settings.get("account_key"),
        endpoint_url=settings.get("endpoint_url"),
        connection_string=settings.get("connection_string"),
    )


class BackendFactory:
    """Factory for creating storage backends from provider config."""

    _creators: Dict[str, Callable[[Dict[str, Any]], StorageBackend]] = {
        "gcs": _create_gcs,
        "aws": _create_aws,
        "minio": _create_minio,
        "azure": _create_azure,
    }

    @classmethod
    def create(cls, config: ProviderConfig) -> StorageBackend:
        """
        Create a storage backend from provider config.

        Args:
            config: ProviderConfig object

        Returns:
            StorageBackend instance

        Raises:
            ConfigurationError: If provider type is unknown or the backend
                cannot be constructed
        """
        creator = cls._creators.get(config.type.lower())
        if creator is None:
            raise ConfigurationError(f"Unknown provider type: {config.type}")

        try:
            backend = creator(config.settings)
        except (ImportError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot create {config.type} provider {config.id}: {e}"
            ) from e

        logger.info(f"Created {config.type} backend for provider {config.id}")
        return backend


class BackendRegistry:
    """Backends keyed by provider ID, built once per process."""

    def __init__(self, backends: Optional[Dict[str, StorageBackend]] = None):
        self._backends: Dict[str, StorageBackend] = dict(backends or {})

    @classmethod
    def from_config(cls, config: AppConfig) -> "BackendRegistry":
        """
        Build one backend per configured provider.

        Backends already created are closed if a later one fails.
        """
        registry = cls()
        try:
            for provider in config.providers:
                registry._backends[provider.id] = BackendFactory.create(provider)
        except Exception:
            registry.close_all()
            raise
        return registry

    def get(self, provider_id: str) -> StorageBackend:
        """
        Get the backend for a provider ID.

        Raises:
            ConfigurationError: If no backend is registered under the ID
        """
        try:
            return self._backends[provider_id]
        except KeyError:
            raise ConfigurationError(f"Provider {provider_id} not found") from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._backends

    def __len__(self) -> int:
        return len(self._backends)

    def close_all(self) -> None:
        """Close every backend, logging (not raising) failures."""
        for provider_id, backend in self._backends.items():
            try:
                backend.close()
            except Exception as e:
                logger.warning(f"Error closing provider {provider_id}: {e}")
        self._backends.clear()


# ============================================================================
# Config Manager
# ============================================================================

class ConfigManager:
    """Manages configuration loading, validation and storage."""

    @staticmethod
    def load_yaml(config_path: Path) -> Dict[str, Any]:
        """
        Load configuration from a YAML (or JSON) file.

        Args:
            config_path: Path to configuration file

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If the file is not valid YAML or not a mapping
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, "r") as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid configuration file {config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

        logger.info(f"Loaded configuration from {config_path}")
        return config

    @staticmethod
    def save_yaml(config: Dict[str, Any], config_path: Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            config: Configuration dictionary
            config_path: Path to write YAML file
        """
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration to {config_path}")

    @staticmethod
    def load(config_path: Path) -> AppConfig:
        """Load, substitute environment variables and validate a config file."""
        return ConfigManager.from_dict(ConfigManager.load_yaml(config_path))

    @staticmethod
    def from_dict(config_dict: Dict[str, Any]) -> AppConfig:
        """
        Create AppConfig from dictionary.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        config_dict = ConfigManager._normalize_keys(
            ConfigManager._substitute_env_vars(config_dict)
        )

        providers = [
            ConfigManager._parse_provider(i, entry)
            for i, entry in enumerate(config_dict.get("providers") or [])
        ]
        mappings = [
            ConfigManager._parse_mapping(i, entry)
            for i, entry in enumerate(config_dict.get("mappings") or [])
        ]

        config = AppConfig(
            providers=providers,
            mappings=mappings,
            database_path=Path(config_dict.get("database_path") or DEFAULT_DATABASE_PATH),
            sync=ConfigManager._parse_sync(config_dict.get("sync") or {}),
        )
        ConfigManager.validate(config)
        return config

    @staticmethod
    def validate(config: AppConfig) -> None:
        """
        Validate providers and mappings.

        Raises:
            ConfigurationError: On the first violation found
        """
        if not config.providers:
            raise ConfigurationError("Configuration must contain at least one provider")

        ids = set()
        for provider in config.providers:
            if not provider.id:
                raise ConfigurationError("Provider ID must not be empty")
            if provider.id in ids:
                raise ConfigurationError(f"Duplicate provider ID: {provider.id}")
            ids.add(provider.id)

        if not config.mappings:
            raise ConfigurationError("Configuration must contain at least one bucket mapping")

        for i, mapping in enumerate(config.mappings):
            if mapping.source_provider_id not in ids:
                raise ConfigurationError(
                    f"Mapping {i} uses non-existent source provider: {mapping.source_provider_id}"
                )
            if mapping.target_provider_id not in ids:
                raise ConfigurationError(
                    f"Mapping {i} uses non-existent target provider: {mapping.target_provider_id}"
                )
            if not mapping.source_bucket or not mapping.target_bucket:
                raise ConfigurationError(f"Mapping {i} must name both a source and a target bucket")

        if config.sync.max_workers < 1:
            raise ConfigurationError("sync.max_workers must be at least 1")
        if config.sync.interval_seconds <= 0:
            raise ConfigurationError("sync.interval_seconds must be positive")

    @staticmethod
    def _parse_provider(index: int, entry: Any) -> ProviderConfig:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Provider {index} must be a mapping")

        provider_id = str(entry.get("id") or "")
        provider_type = str(entry.get("type") or "").lower()

        if provider_type not in PROVIDER_TYPES:
            raise ConfigurationError(f"Unknown provider type: {entry.get('type')}")

        settings = entry.get(provider_type)
        if not isinstance(settings, dict):
            raise ConfigurationError(
                f"{provider_type} provider {provider_id} has no configuration"
            )

        return ProviderConfig(id=provider_id, type=provider_type, settings=settings)

    @staticmethod
    def _parse_mapping(index: int, entry: Any) -> Mapping:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Mapping {index} must be a mapping")

        return Mapping(
            source_provider_id=str(entry.get("source_provider_id") or ""),
            source_bucket=str(entry.get("source_bucket") or ""),
            target_provider_id=str(entry.get("target_provider_id") or ""),
            target_bucket=str(entry.get("target_bucket") or ""),
        )

    @staticmethod
    def _parse_sync(section: Dict[str, Any]) -> SyncSettings:
        try:
            return SyncSettings(
                interval_seconds=int(section.get("interval_seconds", DEFAULT_INTERVAL_SECONDS)),
                max_workers=int(section.get("max_workers", 1)),
                strict_target_listing=_as_bool(section.get("strict_target_listing", False)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid sync settings: {e}") from e

    @staticmethod
    def _normalize_keys(config: Any) -> Any:
        """
        Recursively convert camelCase keys to snake_case.

        Lets JSON files using camelCase field names such as databasePath
        or sourceProviderId load unchanged.
        """
        if isinstance(config, dict):
            return {
                (_CAMEL_RE.sub(r"\1_\2", k).lower() if isinstance(k, str) else k):
                    ConfigManager._normalize_keys(v)
                for k, v in config.items()
            }
        elif isinstance(config, list):
            return [ConfigManager._normalize_keys(item) for item in config]
        else:
            return config

    @staticmethod
    def _substitute_env_vars(config: Any) -> Any:
        """
        Recursively substitute environment variables in config.

        Format: ${VAR_NAME} or ${VAR_NAME:default_value}
        """
        if isinstance(config, dict):
            return {k: ConfigManager._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [ConfigManager._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            def replacer(match):
                var_spec = match.group(1)
                if ":" in var_spec:
                    var_name, default = var_spec.split(":", 1)
                    return os.getenv(var_name.strip(), default.strip())
                return os.getenv(var_spec, match.group(0))

            return _ENV_PATTERN.sub(replacer, config)
        else:
            return config

    @staticmethod
    def default_config() -> Dict[str, Any]:
        """Sample configuration covering every provider type."""
        return {
            "database_path": DEFAULT_DATABASE_PATH,
            "sync": SyncSettings().to_dict(),
            "providers": [
                {
                    "id": "gcp",
                    "type": "gcs",
                    "gcs": {"project_id": "your-gcp-project"},
                },
                {
                    "id": "minio",
                    "type": "minio",
                    "minio": {
                        "endpoint": "localhost:9000",
                        "access_key": "minioadmin",
                        "secret_key": "minioadmin",
                        "use_ssl": False,
                    },
                },
                {
                    "id": "aws",
                    "type": "aws",
                    "aws": {
                        "region": "us-east-1",
                        "access_key_id": "${AWS_ACCESS_KEY_ID:your-access-key-id}",
                        "secret_access_key": "${AWS_SECRET_ACCESS_KEY:your-secret-access-key}",
                    },
                },
                {
                    "id": "azure",
                    "type": "azure",
                    "azure": {
                        "account_name": "your-azure-account",
                        "account_key": "${AZURE_STORAGE_KEY:your-azure-key}",
                    },
                },
            ],
            "mappings": [
                {
                    "source_provider_id": "gcp",
                    "source_bucket": "gcs-source-bucket",
                    "target_provider_id": "minio",
                    "target_bucket": "minio-target-bucket",
                },
            ],
        }

    @staticmethod
    def save_default_config(config_path: Path) -> None:
        """Write the sample configuration to a file."""
        ConfigManager.save_yaml(ConfigManager.default_config(), config_path)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)

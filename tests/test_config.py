"""
Test suite for configuration management.

Tests cover:
- Loading YAML and JSON configuration files
- Environment variable substitution
- Validation errors
- Backend factory and registry
- Default configuration generation
"""

import json
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from cloud_data_sync.config import (
    AppConfig,
    BackendFactory,
    BackendRegistry,
    ConfigManager,
    ProviderConfig,
)
from cloud_data_sync.engine import Mapping
from cloud_data_sync.exceptions import ConfigurationError


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def config_dict():
    return {
        "database_path": "state/sync.db",
        "sync": {"interval_seconds": 60, "max_workers": 4},
        "providers": [
            {"id": "gcp", "type": "gcs", "gcs": {"project_id": "proj"}},
            {
                "id": "minio",
                "type": "minio",
                "minio": {
                    "endpoint": "localhost:9000",
                    "access_key": "ak",
                    "secret_key": "sk",
                    "use_ssl": False,
                },
            },
        ],
        "mappings": [
            {
                "source_provider_id": "gcp",
                "source_bucket": "in",
                "target_provider_id": "minio",
                "target_bucket": "out",
            },
        ],
    }


# ============================================================================
# Loading
# ============================================================================

class TestConfigLoading:
    """Test file loading and parsing."""

    def test_from_dict(self, config_dict):
        config = ConfigManager.from_dict(config_dict)

        assert config.database_path == Path("state/sync.db")
        assert config.sync.interval_seconds == 60
        assert config.sync.max_workers == 4
        assert config.sync.strict_target_listing is False
        assert [p.id for p in config.providers] == ["gcp", "minio"]
        assert config.providers[1].settings["endpoint"] == "localhost:9000"
        assert config.mappings == [Mapping("gcp", "in", "minio", "out")]

    def test_defaults(self, config_dict):
        del config_dict["database_path"]
        del config_dict["sync"]

        config = ConfigManager.from_dict(config_dict)

        assert config.database_path == Path("data.db")
        assert config.sync.interval_seconds == 300
        assert config.sync.max_workers == 1

    def test_load_yaml_file(self, tmp_path, config_dict):
        path = tmp_path / "config.yaml"
        ConfigManager.save_yaml(config_dict, path)

        config = ConfigManager.load(path)

        assert config.mappings[0].target_bucket == "out"

    def test_load_json_file(self, tmp_path, config_dict):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config_dict, indent=2))

        config = ConfigManager.load(path)

        assert config.providers[0].type == "gcs"

    def test_load_camel_case_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "databasePath": "legacy.db",
            "providers": [
                {"id": "gcs-example", "type": "gcs", "gcs": {"projectId": "proj"}},
                {
                    "id": "minio-local",
                    "type": "minio",
                    "minio": {
                        "endpoint": "localhost:9000",
                        "accessKey": "ak",
                        "secretKey": "sk",
                        "useSSL": True,
                    },
                },
                {"id": "aws", "type": "aws", "aws": {"accessKeyId": "AK", "disableSSL": True}},
            ],
            "mappings": [
                {
                    "sourceProviderId": "gcs-example",
                    "sourceBucket": "in",
                    "targetProviderId": "minio-local",
                    "targetBucket": "out",
                },
            ],
        }))

        config = ConfigManager.load(path)

        assert config.database_path == Path("legacy.db")
        assert config.mappings == [Mapping("gcs-example", "in", "minio-local", "out")]
        assert config.providers[0].settings == {"project_id": "proj"}
        assert config.providers[1].settings["use_ssl"] is True
        assert config.providers[1].settings["secret_key"] == "sk"
        assert config.providers[2].settings == {"access_key_id": "AK", "disable_ssl": True}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.load(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("providers: [unclosed")

        with pytest.raises(ConfigurationError):
            ConfigManager.load(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            ConfigManager.load(path)

    def test_env_substitution(self, config_dict, monkeypatch):
        monkeypatch.setenv("MINIO_SECRET", "from-env")
        monkeypatch.delenv("MINIO_KEY", raising=False)
        settings = config_dict["providers"][1]["minio"]
        settings["secret_key"] = "${MINIO_SECRET}"
        settings["access_key"] = "${MINIO_KEY:fallback}"
        settings["region"] = "${UNSET_REGION_VAR}"

        config = ConfigManager.from_dict(config_dict)

        minio = config.providers[1].settings
        assert minio["secret_key"] == "from-env"
        assert minio["access_key"] == "fallback"
        assert minio["region"] == "${UNSET_REGION_VAR}"

    def test_to_dict_round_trip(self, config_dict):
        config = ConfigManager.from_dict(config_dict)
        assert ConfigManager.from_dict(config.to_dict()) == config


# ============================================================================
# Validation
# ============================================================================

class TestValidation:
    """Test configuration validation rules."""

    def test_no_providers(self, config_dict):
        config_dict["providers"] = []
        with pytest.raises(ConfigurationError, match="at least one provider"):
            ConfigManager.from_dict(config_dict)

    def test_duplicate_provider_ids(self, config_dict):
        config_dict["providers"][1]["id"] = "gcp"
        with pytest.raises(ConfigurationError, match="Duplicate provider ID"):
            ConfigManager.from_dict(config_dict)

    def test_unknown_provider_type(self, config_dict):
        config_dict["providers"][0]["type"] = "dropbox"
        with pytest.raises(ConfigurationError, match="Unknown provider type"):
            ConfigManager.from_dict(config_dict)

    def test_missing_provider_section(self, config_dict):
        del config_dict["providers"][0]["gcs"]
        with pytest.raises(ConfigurationError, match="has no configuration"):
            ConfigManager.from_dict(config_dict)

    def test_no_mappings(self, config_dict):
        config_dict["mappings"] = []
        with pytest.raises(ConfigurationError, match="at least one bucket mapping"):
            ConfigManager.from_dict(config_dict)

    def test_mapping_with_unknown_source(self, config_dict):
        config_dict["mappings"][0]["source_provider_id"] = "aws"
        with pytest.raises(ConfigurationError, match="source provider: aws"):
            ConfigManager.from_dict(config_dict)

    def test_mapping_with_unknown_target(self, config_dict):
        config_dict["mappings"][0]["target_provider_id"] = "azure"
        with pytest.raises(ConfigurationError, match="target provider: azure"):
            ConfigManager.from_dict(config_dict)

    def test_mapping_without_bucket(self, config_dict):
        config_dict["mappings"][0]["target_bucket"] = ""
        with pytest.raises(ConfigurationError):
            ConfigManager.from_dict(config_dict)

    def test_invalid_worker_count(self, config_dict):
        config_dict["sync"]["max_workers"] = 0
        with pytest.raises(ConfigurationError):
            ConfigManager.from_dict(config_dict)

    def test_non_numeric_interval(self, config_dict):
        config_dict["sync"]["interval_seconds"] = "soon"
        with pytest.raises(ConfigurationError):
            ConfigManager.from_dict(config_dict)

    def test_strict_listing_from_env_string(self, config_dict, monkeypatch):
        monkeypatch.setenv("STRICT", "true")
        config_dict["sync"]["strict_target_listing"] = "${STRICT}"
        assert ConfigManager.from_dict(config_dict).sync.strict_target_listing is True


# ============================================================================
# Default Config
# ============================================================================

class TestDefaultConfig:
    """Test sample configuration generation."""

    def test_default_config_is_valid(self, tmp_path, monkeypatch):
        for var in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AZURE_STORAGE_KEY"):
            monkeypatch.delenv(var, raising=False)
        path = tmp_path / "conf" / "config.yaml"

        ConfigManager.save_default_config(path)
        config = ConfigManager.load(path)

        assert {p.type for p in config.providers} == {"gcs", "aws", "azure", "minio"}
        assert config.mappings[0].source_provider_id == "gcp"
        assert config.providers[2].settings["access_key_id"] == "your-access-key-id"


# ============================================================================
# Backend Factory and Registry
# ============================================================================

class TestBackendFactory:
    """Test backend creation by provider type."""

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            BackendFactory.create(ProviderConfig(id="x", type="ftp"))

    @patch("cloud_data_sync.providers.s3.S3Backend")
    def test_minio_maps_to_s3_backend(self, mock_backend):
        config = ProviderConfig(
            id="minio",
            type="minio",
            settings={"endpoint": "localhost:9000", "access_key": "ak", "secret_key": "sk"},
        )

        BackendFactory.create(config)

        mock_backend.assert_called_once_with(
            region="us-east-1",
            access_key_id="ak",
            secret_access_key="sk",
            endpoint="localhost:9000",
            disable_ssl=True,
            provider_type="minio",
        )

    @patch("cloud_data_sync.providers.s3.S3Backend")
    def test_aws_settings(self, mock_backend):
        config = ProviderConfig(
            id="aws",
            type="aws",
            settings={"region": "eu-west-1", "access_key_id": "AK", "secret_access_key": "SK"},
        )

        BackendFactory.create(config)

        kwargs = mock_backend.call_args.kwargs
        assert kwargs["region"] == "eu-west-1"
        assert kwargs["access_key_id"] == "AK"
        assert kwargs["disable_ssl"] is False
        assert kwargs["provider_type"] == "aws"

    @patch("cloud_data_sync.providers.gcs.GCSBackend")
    def test_gcs_settings(self, mock_backend):
        BackendFactory.create(ProviderConfig(id="gcp", type="gcs", settings={"project_id": "p"}))
        mock_backend.assert_called_once_with(project_id="p", credentials_path=None)

    @patch("cloud_data_sync.providers.azure.AzureBlobBackend")
    def test_azure_settings(self, mock_backend):
        BackendFactory.create(ProviderConfig(
            id="az", type="azure", settings={"account_name": "acct", "account_key": "key"},
        ))
        mock_backend.assert_called_once_with(
            account_name="acct",
            account_key="key",
            endpoint_url=None,
            connection_string=None,
        )

    @patch("cloud_data_sync.providers.azure.AzureBlobBackend")
    def test_construction_error_becomes_configuration_error(self, mock_backend):
        mock_backend.side_effect = ValueError("no credentials")

        with pytest.raises(ConfigurationError, match="no credentials"):
            BackendFactory.create(ProviderConfig(id="az", type="azure", settings={}))


class TestBackendRegistry:
    """Test backend registry lifecycle."""

    def test_get_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            BackendRegistry().get("missing")

    def test_from_config_builds_every_provider(self, config_dict):
        config = ConfigManager.from_dict(config_dict)
        created = {}

        def fake_create(provider):
            created[provider.id] = Mock()
            return created[provider.id]

        with patch.object(BackendFactory, "create", side_effect=fake_create):
            registry = BackendRegistry.from_config(config)

        assert len(registry) == 2
        assert registry.get("gcp") is created["gcp"]
        assert "minio" in registry

    def test_from_config_closes_built_backends_on_failure(self, config_dict):
        config = ConfigManager.from_dict(config_dict)
        first = Mock()

        with patch.object(
            BackendFactory,
            "create",
            side_effect=[first, ConfigurationError("broken")],
        ):
            with pytest.raises(ConfigurationError):
                BackendRegistry.from_config(config)

        first.close.assert_called_once()

    def test_close_all_logs_failures(self):
        good = Mock()
        bad = Mock()
        bad.close.side_effect = RuntimeError("already closed")
        registry = BackendRegistry({"bad": bad, "good": good})

        registry.close_all()

        good.close.assert_called_once()
        assert len(registry) == 0

    def test_app_config_defaults(self):
        config = AppConfig(providers=[], mappings=[])
        assert config.database_path == Path("data.db")

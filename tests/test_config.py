"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    BindingConfig,
    Config,
    ControllerConfig,
    DatabaseConfig,
    KindConfig,
    LoggingConfig,
    StoreConfig,
    get_config,
    load_bindings,
    load_config,
    register_bindings,
    reset_config,
)
from objects import Claim, Managed, ResourceClass, ResourceKind, new_scheme

BINDINGS_YAML = """
bindings:
  - claim:
      api_version: database.example.org/v1alpha1
      kind: PostgreSQLInstance
    class:
      api_version: database.example.org/v1alpha1
      kind: SQLServerClass
    managed:
      api_version: cloud.example.org/v1beta1
      kind: CloudSQLInstance
    status_subresource: false
    gated: true
"""


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "tether"
        assert cfg.user == "tether"
        assert cfg.password == ""
        assert cfg.min_pool_size == 5
        assert cfg.max_pool_size == 20

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        """Test that missing password raises ValueError."""
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
            assert "DB_PASSWORD" in str(exc_info.value)

    def test_password_not_in_repr(self):
        """Test that password is not exposed in repr."""
        cfg = DatabaseConfig(password="secret123")
        assert "secret123" not in repr(cfg)


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = ControllerConfig()
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.reconcile_timeout == 60
        assert cfg.resync_interval == 30
        assert cfg.short_wait == 30
        assert cfg.defaulting_max_jitter_ms == 1500
        assert cfg.backoff_base_delay == 1
        assert cfg.backoff_max_delay == 300
        assert cfg.backoff_jitter_factor == 0.1

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "MAX_CONCURRENT_RECONCILES": "8",
            "RECONCILE_TIMEOUT": "15",
            "RESYNC_INTERVAL": "5",
            "SHORT_WAIT": "10",
            "DEFAULTING_MAX_JITTER_MS": "250",
            "BACKOFF_BASE_DELAY": "2",
            "BACKOFF_MAX_DELAY": "600",
            "BACKOFF_JITTER_FACTOR": "0.15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
            assert cfg.max_concurrent_reconciles == 8
            assert cfg.reconcile_timeout == 15
            assert cfg.resync_interval == 5
            assert cfg.short_wait == 10
            assert cfg.defaulting_max_jitter_ms == 250
            assert cfg.backoff_base_delay == 2
            assert cfg.backoff_max_delay == 600
            assert cfg.backoff_jitter_factor == 0.15

    def test_from_env_defaults(self):
        """Test that defaults are used when env vars not set."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg.max_concurrent_reconciles == 5
            assert cfg.short_wait == 30


class TestStoreConfig:
    """Tests for StoreConfig class."""

    def test_default_backend(self):
        with patch.dict(os.environ, {}, clear=True):
            assert StoreConfig.from_env().backend == "memory"

    def test_postgres_backend(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "Postgres"}, clear=True):
            assert StoreConfig.from_env().backend == "postgres"

    def test_invalid_backend(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "etcd"}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                StoreConfig.from_env()
            assert "etcd" in str(exc_info.value)


class TestLoggingConfig:
    def test_level_upper_cased(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "debug"}, clear=True):
            assert LoggingConfig.from_env().level == "DEBUG"


class TestBindings:
    """Tests for loading and registering claim bindings."""

    @pytest.fixture
    def bindings_file(self, tmp_path):
        path = tmp_path / "bindings.yaml"
        path.write_text(BINDINGS_YAML)
        return path

    def test_load_bindings(self, bindings_file):
        bindings = load_bindings(str(bindings_file))

        assert len(bindings) == 1
        b = bindings[0]
        assert b.claim == KindConfig("database.example.org/v1alpha1", "PostgreSQLInstance")
        assert b.resource_class.kind == "SQLServerClass"
        assert b.managed.api_version == "cloud.example.org/v1beta1"
        assert b.status_subresource is False
        assert b.gated is True

    def test_binding_defaults(self):
        b = BindingConfig.from_dict(
            {
                "claim": {"api_version": "a/v1", "kind": "C"},
                "class": {"api_version": "a/v1", "kind": "K"},
                "managed": {"api_version": "b/v1", "kind": "M"},
            }
        )
        assert b.status_subresource is True
        assert b.gated is False

    def test_binding_kinds(self, bindings_file):
        binding = load_bindings(str(bindings_file))[0]
        claim_kind, class_kind, managed_kind = binding.kinds()
        assert claim_kind == ResourceKind(
            "database.example.org", "v1alpha1", "PostgreSQLInstance"
        )
        assert class_kind.kind == "SQLServerClass"
        assert managed_kind.group == "cloud.example.org"

    def test_missing_kind_raises(self):
        with pytest.raises(ValueError):
            BindingConfig.from_dict({"claim": {"api_version": "a/v1"}})

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("bindings: not-a-list\n")
        with pytest.raises(ValueError):
            load_bindings(str(path))

    def test_register_bindings(self, bindings_file):
        scheme = new_scheme()
        binding = load_bindings(str(bindings_file))[0]
        register_bindings(scheme, [binding])

        claim_kind, class_kind, managed_kind = binding.kinds()
        assert scheme.model_for(claim_kind) is Claim
        assert scheme.model_for(class_kind) is ResourceClass
        assert scheme.model_for(managed_kind) is Managed
        assert scheme.has_status_subresource(claim_kind)
        assert not scheme.has_status_subresource(managed_kind)


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        """Test default configuration."""
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.store, StoreConfig)
        assert cfg.bindings == []

    def test_from_env_memory_skips_database(self):
        """Test the memory backend needs no database settings."""
        with patch.dict(os.environ, {"SHORT_WAIT": "5"}, clear=True):
            cfg = Config.from_env()
            assert cfg.database is None
            assert cfg.store.backend == "memory"
            assert cfg.controller.short_wait == 5

    def test_from_env_postgres(self):
        """Test loading full configuration from environment."""
        env_vars = {
            "STORE_BACKEND": "postgres",
            "DB_HOST": "testhost",
            "DB_PASSWORD": "testpass",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = Config.from_env()
            assert cfg.database.host == "testhost"
            assert cfg.database.password == "testpass"

    def test_from_env_postgres_requires_password(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "postgres"}, clear=True):
            with pytest.raises(ValueError):
                Config.from_env()

    def test_from_env_bindings_file(self, tmp_path):
        path = tmp_path / "bindings.yaml"
        path.write_text(BINDINGS_YAML)
        with patch.dict(os.environ, {"BINDINGS_FILE": str(path)}, clear=True):
            cfg = Config.from_env()
            assert [b.claim.kind for b in cfg.bindings] == ["PostgreSQLInstance"]


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def setup_method(self):
        """Reset config before each test."""
        reset_config()

    def teardown_method(self):
        """Reset config after each test."""
        reset_config()

    def test_load_config(self):
        """Test load_config function."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = load_config()
            assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        """Test that singleton returns same instance."""
        with patch.dict(os.environ, {}, clear=True):
            cfg1 = load_config()
            cfg2 = get_config()
            assert cfg1 is cfg2

    def test_reset_config(self):
        """Test reset_config clears the singleton."""
        with patch.dict(os.environ, {}, clear=True):
            cfg1 = load_config()
            reset_config()
            assert config.config is None
            cfg2 = load_config()
            assert cfg1 is not cfg2

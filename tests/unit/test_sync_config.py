"""
設定管理のテスト
"""

import json

import pytest
import yaml

from user_data_sync.config.sync_config import ConfigManager, SecurityManager, SyncConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ['USER_DATA_SYNC_DEBUG', 'USER_DATA_SYNC_ENVIRONMENT', 'USER_DATA_SYNC_LOG_LEVEL',
                'USER_DATA_SYNC_STORE_URL', 'USER_DATA_SYNC_INTERVAL', 'USER_DATA_SYNC_TOKEN',
                'USER_DATA_SYNC_ENCRYPTION_KEY']:
        monkeypatch.delenv(key, raising=False)


def write_yaml(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(data, f)


class TestConfigLoading:

    def test_defaults_without_files(self, tmp_path):
        config = ConfigManager(tmp_path / "config").load_config()

        assert config.auto_sync.interval_seconds == 300
        assert config.auto_sync.debounce_ms == 1000
        assert config.auto_sync.max_backoff_multiplier == 60
        assert config.auto_sync.rate_limit_seconds == 10
        assert config.store.url is None
        assert not config.store_configured
        assert config.extensions.ignored_extensions == []

    def test_layered_files(self, tmp_path):
        config_dir = tmp_path / "config"
        write_yaml(config_dir / "main.yaml", {"environment": "staging", "resources": {"extensions": False}})
        write_yaml(config_dir / "auto_sync.yaml", {"interval_seconds": 60})
        write_yaml(config_dir / "store.yaml", {"url": "https://sync.example.com"})
        write_yaml(config_dir / "extensions.yaml", {"ignored_extensions": ["pub.local", "-pub.machine"]})

        config = ConfigManager(config_dir).load_config()

        assert config.environment == "staging"
        assert config.resources["extensions"] is False
        assert config.auto_sync.interval_seconds == 60
        assert config.auto_sync.rate_limit_seconds == 10
        assert config.store_configured
        assert config.extensions.ignored_extensions == ["pub.local", "-pub.machine"]

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv('USER_DATA_SYNC_DEBUG', 'true')
        monkeypatch.setenv('USER_DATA_SYNC_LOG_LEVEL', 'debug')
        monkeypatch.setenv('USER_DATA_SYNC_STORE_URL', 'https://env.example.com')
        monkeypatch.setenv('USER_DATA_SYNC_INTERVAL', '120')

        config = ConfigManager(tmp_path / "config").load_config()

        assert config.debug is True
        assert config.logging["level"] == "DEBUG"
        assert config.store.url == "https://env.example.com"
        assert config.auto_sync.interval_seconds == 120

    def test_unknown_keys_fall_back_to_defaults(self, tmp_path):
        config_dir = tmp_path / "config"
        write_yaml(config_dir / "auto_sync.yaml", {"no_such_option": 1})

        config = ConfigManager(config_dir).load_config()

        assert isinstance(config, SyncConfig)
        assert config.auto_sync.interval_seconds == 300

    def test_config_is_cached(self, tmp_path):
        manager = ConfigManager(tmp_path / "config")

        assert manager.load_config() is manager.load_config()
        assert manager.load_config(reload=True) is not None

    def test_template_roundtrip(self, tmp_path):
        manager = ConfigManager(tmp_path / "config")
        manager.save_config_template()

        assert (tmp_path / "config" / "store.yaml").exists()
        config = manager.load_config(reload=True)
        assert config.store.backup_retention_days == 30
        assert config.logging["file_path"] == "logs/user_data_sync.log"


class TestSecrets:

    def test_token_priority(self, tmp_path, monkeypatch):
        secrets_dir = tmp_path / "config" / "secrets"
        secrets_dir.mkdir(parents=True)
        (secrets_dir / "token.json").write_text(json.dumps({"USER_DATA_SYNC_TOKEN": "from-json"}))
        (secrets_dir / ".env").write_text('USER_DATA_SYNC_TOKEN="from-env-file"\n')

        manager = ConfigManager(tmp_path / "config")
        assert manager.get_token() == "from-env-file"

        monkeypatch.setenv('USER_DATA_SYNC_TOKEN', 'from-env')
        assert manager.get_token(reload=True) == "from-env"

    def test_encrypted_token_is_decrypted(self, tmp_path):
        key = SecurityManager.generate_key()
        security = SecurityManager(key)
        secrets_dir = tmp_path / "config" / "secrets"
        secrets_dir.mkdir(parents=True)
        (secrets_dir / ".env").write_text(f"USER_DATA_SYNC_TOKEN=encrypted:{security.encrypt_value('secret-token')}\n")

        manager = ConfigManager(tmp_path / "config", security_manager=SecurityManager(key))

        assert manager.get_token() == "secret-token"

    def test_missing_token(self, tmp_path):
        assert ConfigManager(tmp_path / "config").get_token() is None

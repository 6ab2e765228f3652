"""
同期設定管理 - 階層化YAML設定と環境変数オーバーライド、秘密情報（認証トークン）の安全な読み込み
"""

import base64
import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from cryptography.fernet import Fernet

from ..utils.enhanced_logger import get_logger

logger = get_logger(__name__)


@dataclass
class AutoSyncConfig:
    """自動同期設定"""
    interval_seconds: int = 300
    debounce_ms: int = 1000
    max_backoff_multiplier: int = 60
    rate_limit_seconds: int = 10


@dataclass
class StoreConfig:
    """リモートストア・ローカル状態の設定"""
    url: Optional[str] = None
    database_path: str = "data/user_data_sync.db"
    backup_retention_days: int = 30
    request_timeout_seconds: int = 30


@dataclass
class ExtensionsSyncConfig:
    """拡張機能同期設定"""
    # "-<id>" で既定の除外（マシン固有の拡張機能）を打ち消す
    ignored_extensions: List[str] = field(default_factory=list)


@dataclass
class SyncConfig:
    """同期設定メインクラス"""
    auto_sync: AutoSyncConfig = field(default_factory=AutoSyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    extensions: ExtensionsSyncConfig = field(default_factory=ExtensionsSyncConfig)

    # リソースごとの初期有効化
    resources: Dict[str, bool] = field(default_factory=lambda: {"extensions": True})
    logging: Dict[str, Any] = field(default_factory=lambda: {"level": "INFO", "file_path": None})

    machine_id: Optional[str] = None
    debug: bool = False
    environment: str = "development"  # development, staging, production
    version: str = "1.0.0"

    @property
    def store_configured(self) -> bool:
        return bool(self.store.url)


class SecurityManager:
    """秘密情報の暗号化・復号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or os.getenv('USER_DATA_SYNC_ENCRYPTION_KEY')
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        if not self.cipher:
            return value

        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化"""
        if not self.cipher:
            logger.warning("Encrypted secret found but no encryption key is configured",
                           operation="secrets_decrypt")
            return encrypted_value

        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except Exception as e:
            logger.error("Decryption failed", error=e, operation="secrets_decrypt")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    LAYER_FILES = {
        'auto_sync': "auto_sync.yaml",
        'store': "store.yaml",
        'extensions': "extensions.yaml",
    }

    SECRET_KEYS = ['USER_DATA_SYNC_TOKEN']

    ENCRYPTED_PREFIX = "encrypted:"

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Optional[Union[str, Path]] = None,
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"
        self.security_manager = security_manager or SecurityManager()

        self._config_cache: Optional[SyncConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    def load_config(self, reload: bool = False) -> SyncConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        try:
            main_config = self._load_yaml_file(self.config_dir / "main.yaml")
            layer_configs = {
                name: self._load_yaml_file(self.config_dir / filename)
                for name, filename in self.LAYER_FILES.items()
            }

            merged_config = self._merge_configs(main_config, layer_configs)
            merged_config = self._apply_env_overrides(merged_config)
            self._config_cache = self._create_config_object(merged_config)

            logger.info(
                "Configuration loaded successfully",
                config_files=len(layer_configs) + 1,
                environment=self._config_cache.environment,
                version=self._config_cache.version,
                operation="config_load"
            )

            return self._config_cache

        except Exception as e:
            logger.error("Failed to load configuration", error=e, operation="config_load")
            # フォールバック：デフォルト設定を使用
            self._config_cache = SyncConfig()
            return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        try:
            self._secrets_cache = {
                **self._load_json_secrets(),
                **self._load_env_file(),
                **self._load_env_secrets()
            }
            self._decrypt_secrets()

            logger.info(
                "Secrets loaded successfully",
                secret_count=len(self._secrets_cache),
                sources=["env", "env_file", "json"],
                operation="secrets_load"
            )

            return self._secrets_cache

        except Exception as e:
            logger.error("Failed to load secrets", error=e, operation="secrets_load")
            return {}

    def get_token(self, reload: bool = False) -> Optional[str]:
        return self.load_secrets(reload).get('USER_DATA_SYNC_TOKEN')

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

    def _load_env_secrets(self) -> Dict[str, str]:
        return {key: os.getenv(key) for key in self.SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    secrets[key.strip()] = value.strip().strip('"\'')
        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        file_path = self.secrets_dir / "token.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except Exception as e:
            logger.error("Failed to load JSON file: token.json", error=e, operation="secrets_load")
            return {}

    def _decrypt_secrets(self):
        """暗号化された秘密情報の復号化"""
        for key, value in self._secrets_cache.items():
            if isinstance(value, str) and value.startswith(self.ENCRYPTED_PREFIX):
                self._secrets_cache[key] = self.security_manager.decrypt_value(value[len(self.ENCRYPTED_PREFIX):])

    def _merge_configs(self, main_config: Dict, layer_configs: Dict) -> Dict:
        merged = main_config.copy()
        for layer_name, layer_config in layer_configs.items():
            if layer_config:
                merged[layer_name] = {**merged.get(layer_name, {}), **layer_config}
        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            'USER_DATA_SYNC_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
            'USER_DATA_SYNC_ENVIRONMENT': ('environment', str),
            'USER_DATA_SYNC_LOG_LEVEL': ('logging.level', str.upper),
            'USER_DATA_SYNC_STORE_URL': ('store.url', str),
            'USER_DATA_SYNC_INTERVAL': ('auto_sync.interval_seconds', int),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error_message=str(e))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current or not isinstance(current[key], dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> SyncConfig:
        """設定辞書から設定オブジェクトを作成"""
        defaults = SyncConfig()
        try:
            return SyncConfig(
                auto_sync=AutoSyncConfig(**config_dict.get('auto_sync', {})),
                store=StoreConfig(**config_dict.get('store', {})),
                extensions=ExtensionsSyncConfig(**config_dict.get('extensions', {})),
                resources={**defaults.resources, **config_dict.get('resources', {})},
                logging={**defaults.logging, **config_dict.get('logging', {})},
                machine_id=config_dict.get('machine_id'),
                debug=bool(config_dict.get('debug', defaults.debug)),
                environment=config_dict.get('environment', defaults.environment),
                version=str(config_dict.get('version', defaults.version)),
            )
        except TypeError as e:
            logger.warning("Failed to create config object, using defaults", error_message=str(e))
            return defaults

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        defaults = SyncConfig()
        templates = {
            "main.yaml": {
                "version": defaults.version,
                "environment": defaults.environment,
                "debug": False,
                "resources": defaults.resources,
                "logging": {"level": "INFO", "file_path": "logs/user_data_sync.log"},
            },
            "auto_sync.yaml": asdict(defaults.auto_sync),
            "store.yaml": asdict(defaults.store),
            "extensions.yaml": asdict(defaults.extensions),
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if not file_path.exists():
                try:
                    with open(file_path, 'w', encoding='utf-8') as f:
                        yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
                    logger.info(f"Created config template: {filename}")
                except OSError as e:
                    logger.error(f"Failed to create template: {filename}", error=e)


# グローバルインスタンス
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Union[str, Path] = "config") -> ConfigManager:
    """グローバル設定マネージャーの取得"""
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(config_dir)

    return _global_config_manager


def get_config(reload: bool = False) -> SyncConfig:
    return get_config_manager().load_config(reload)

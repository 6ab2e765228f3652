from .sync_config import AutoSyncConfig, ConfigManager, ExtensionsSyncConfig, StoreConfig, SyncConfig

__all__ = ['AutoSyncConfig', 'ConfigManager', 'ExtensionsSyncConfig', 'StoreConfig', 'SyncConfig']

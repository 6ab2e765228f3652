"""
ユーザーデータ同期 - 拡張機能の状態をリモートストア経由でマシン間同期
"""

__version__ = "1.0.0"

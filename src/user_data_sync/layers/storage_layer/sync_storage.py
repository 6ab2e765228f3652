"""
同期ストレージ - SQLiteによるローカル同期状態の永続化
最終同期スナップショット・ローカルバックアップ・キー/値状態（有効化フラグ、マシンID）を管理
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ...core.errors import LocalStateCorruptionError
from ...core.models import LastSyncUserData, SyncData, SyncExtension

logger = logging.getLogger(__name__)


@dataclass
class BackupEntry:
    """ローカル状態のバックアップ"""
    id: Optional[int]
    resource: str
    content: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resource": self.resource,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


class SyncStorage:
    """同期状態ストレージ"""

    MACHINE_ID_KEY = "machine.id"

    def __init__(self, database_path: Union[str, Path] = "data/user_data_sync.db"):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> bool:
        """データベース初期化"""
        try:
            await self._create_tables()
            await self._create_indexes()

            logger.info(f"Sync storage initialized: {self.database_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize sync storage: {e}")
            return False

    async def _create_tables(self):
        """テーブル作成"""

        # 最終同期テーブル（リソースごとに1行）
        last_sync_table_sql = """
        CREATE TABLE IF NOT EXISTS last_sync (
            resource TEXT PRIMARY KEY,
            ref TEXT,
            sync_data TEXT,
            skipped TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """

        # バックアップテーブル
        backups_table_sql = """
        CREATE TABLE IF NOT EXISTS backups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            resource TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL
        )
        """

        # キー/値状態テーブル
        state_table_sql = """
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(last_sync_table_sql)
            await db.execute(backups_table_sql)
            await db.execute(state_table_sql)
            await db.commit()

    async def _create_indexes(self):
        """インデックス作成"""
        indexes_sql = [
            "CREATE INDEX IF NOT EXISTS idx_backups_resource ON backups(resource)",
            "CREATE INDEX IF NOT EXISTS idx_backups_created_at ON backups(created_at)",
        ]

        async with aiosqlite.connect(self.database_path) as db:
            for index_sql in indexes_sql:
                await db.execute(index_sql)
            await db.commit()

    # ---- 最終同期 ---------------------------------------------------------
    async def get_last_sync(self, resource: str) -> Optional[LastSyncUserData]:
        """最終同期スナップショット取得"""
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM last_sync WHERE resource = ?", (resource,))
            row = await cursor.fetchone()

        if row is None:
            return None

        try:
            sync_data = SyncData.from_json(row['sync_data']) if row['sync_data'] else None
            skipped = [SyncExtension.from_dict(item) for item in json.loads(row['skipped'] or '[]')]
        except (ValueError, KeyError, TypeError) as e:
            raise LocalStateCorruptionError(f"Last synced {resource} data is corrupted: {e}") from e

        return LastSyncUserData(ref=row['ref'], sync_data=sync_data, skipped_extensions=skipped)

    async def set_last_sync(self, resource: str, last_sync: LastSyncUserData) -> None:
        """最終同期スナップショット保存（リソースごとに上書き）"""
        sql = """
        INSERT OR REPLACE INTO last_sync (resource, ref, sync_data, skipped, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (
                resource,
                last_sync.ref,
                last_sync.sync_data.to_json() if last_sync.sync_data else None,
                json.dumps([e.to_dict() for e in last_sync.skipped_extensions]),
                datetime.now().isoformat(),
            ))
            await db.commit()

        logger.debug(f"Last sync stored: {resource} (ref {last_sync.ref})")

    async def delete_last_sync(self, resource: Optional[str] = None) -> None:
        """最終同期スナップショット削除（resource 省略時は全件）"""
        async with aiosqlite.connect(self.database_path) as db:
            if resource:
                await db.execute("DELETE FROM last_sync WHERE resource = ?", (resource,))
            else:
                await db.execute("DELETE FROM last_sync")
            await db.commit()

    # ---- バックアップ -----------------------------------------------------
    async def add_backup(self, resource: str, content: str) -> Optional[int]:
        """ローカル状態のバックアップ追加"""
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(
                    "INSERT INTO backups (resource, content, created_at) VALUES (?, ?, ?)",
                    (resource, content, datetime.now().isoformat())
                )
                await db.commit()
                logger.debug(f"Backup added for {resource}: {cursor.lastrowid}")
                return cursor.lastrowid

        except Exception as e:
            logger.error(f"Failed to add backup for {resource}: {e}")
            return None

    async def get_backups(self, resource: str, limit: int = 20) -> List[BackupEntry]:
        """バックアップ取得（新しい順）"""
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM backups WHERE resource = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                    (resource, limit)
                )
                rows = await cursor.fetchall()

            return [
                BackupEntry(
                    id=row['id'],
                    resource=row['resource'],
                    content=row['content'],
                    created_at=datetime.fromisoformat(row['created_at'])
                )
                for row in rows
            ]

        except Exception as e:
            logger.error(f"Failed to get backups for {resource}: {e}")
            return []

    async def cleanup_old_backups(self, retention_days: int = 30) -> None:
        """古いバックアップの削除"""
        cutoff_date = datetime.now() - timedelta(days=retention_days)

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute("DELETE FROM backups WHERE created_at < ?", (cutoff_date.isoformat(),))
                await db.commit()
                logger.info(f"Cleaned up backups older than {retention_days} days")

        except Exception as e:
            logger.error(f"Failed to cleanup old backups: {e}")

    # ---- キー/値状態 ------------------------------------------------------
    async def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute("SELECT value FROM state WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0] if row else default

    async def set_state(self, key: str, value: str) -> None:
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute("INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)", (key, value))
            await db.commit()

    async def get_machine_id(self) -> str:
        """このマシンのID（初回に生成して永続化）"""
        machine_id = await self.get_state(self.MACHINE_ID_KEY)
        if not machine_id:
            machine_id = str(uuid.uuid4())
            await self.set_state(self.MACHINE_ID_KEY, machine_id)
            logger.info(f"Generated machine id: {machine_id}")
        return machine_id

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        try:
            stats = {}

            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM last_sync")
                stats['last_sync_entries'] = (await cursor.fetchone())[0]

                cursor = await db.execute("SELECT COUNT(*) FROM backups")
                stats['total_backups'] = (await cursor.fetchone())[0]

                stats['database_size_mb'] = self.database_path.stat().st_size / (1024 * 1024)

            return stats

        except Exception as e:
            logger.error(f"Failed to get storage statistics: {e}")
            return {}

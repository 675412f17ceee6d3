#!/usr/bin/env python
"""
提出単位の実行リース管理
同じ提出を2つのワーカーが同時に処理しないようにする。期限切れのリースは奪取できる
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger


class ExecutionLock:
    """提出ごとのリース（StateStore の leases テーブル）"""

    def __init__(self, store, timeout: int = 120):
        """
        Args:
            store: StateStore
            timeout: リースの有効期間（秒）
        """
        self.store = store
        self.timeout = timeout

    def acquire_lock(self, submission_id: str, worker_id: str) -> bool:
        """リースを取得する。有効な他者のリースがあれば False"""
        now = datetime.utcnow()
        with self.store.transaction() as con:
            row = con.execute(
                "SELECT worker_id, expires_at FROM leases WHERE submission_id=?", (submission_id,)
            ).fetchone()
            if row:
                holder, expires_at = row
                if holder != worker_id and datetime.fromisoformat(expires_at) > now:
                    return False
                if holder != worker_id:
                    logger.warning(
                        "lease for {sid} expired (holder={holder}); taking over as {worker}",
                        sid=submission_id, holder=holder, worker=worker_id,
                    )
            con.execute(
                "INSERT OR REPLACE INTO leases(submission_id, worker_id, expires_at) VALUES (?,?,?)",
                (submission_id, worker_id, (now + timedelta(seconds=self.timeout)).isoformat()),
            )
            return True

    def release_lock(self, submission_id: str, worker_id: str) -> bool:
        """所有者のリースのみ解除する"""
        with self.store.transaction() as con:
            cur = con.execute(
                "DELETE FROM leases WHERE submission_id=? AND worker_id=?", (submission_id, worker_id)
            )
            if cur.rowcount != 1:
                logger.warning("lease for {sid} not held by {worker}", sid=submission_id, worker=worker_id)
                return False
            return True

    def get_lock_info(self, submission_id: str) -> Optional[Dict[str, Any]]:
        with self.store._conn() as con:
            row = con.execute(
                "SELECT worker_id, expires_at FROM leases WHERE submission_id=?", (submission_id,)
            ).fetchone()
        if not row:
            return None
        return {"worker_id": row[0], "expires_at": row[1]}

    @contextmanager
    def hold(self, submission_id: str, worker_id: str):
        """with文用: 取得できたかどうかを返し、抜けるときに解除する"""
        acquired = self.acquire_lock(submission_id, worker_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_lock(submission_id, worker_id)

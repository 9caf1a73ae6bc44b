"""
通知服务：站内通知写入/查询，以及推送 webhook 投递与重试。

核心功能：
- notify: 写入一条站内通知（可在调用方事务内执行）
- send_push: POST 通知到 PUSH_WEBHOOK_URL，2xx 视为成功
- due_for_push: 按 [30, 120, 600] 秒间隔挑选需要（重）投递的通知
推送失败只记录状态，不影响支付流程。
"""

import logging
import os
import sqlite3
from datetime import datetime

import httpx

from omniflow.database import get_db
from omniflow.models.schemas import Notification

logger = logging.getLogger(__name__)

# push_status 取值
PUSH_PENDING = 0
PUSH_SENT = 1
PUSH_FAILED = 2
PUSH_RETRYING = 3


def push_webhook_url() -> str | None:
    return os.getenv("PUSH_WEBHOOK_URL") or None


class NotificationService:
    """站内通知 + 推送投递。"""

    RETRY_INTERVALS = [30, 120, 600]  # 秒

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """写入站内通知，返回通知 ID。传入 conn 时不提交，由调用方事务负责。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        sql = """INSERT INTO notifications (user_id, title, message, created_at)
                 VALUES (?, ?, ?, ?)"""
        if conn is not None:
            return conn.execute(sql, (user_id, title, message, now)).lastrowid

        db = get_db()
        try:
            cursor = db.execute(sql, (user_id, title, message, now))
            db.commit()
            return cursor.lastrowid
        finally:
            db.close()

    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        limit = max(1, min(int(limit), 200))
        db = get_db()
        try:
            sql = "SELECT * FROM notifications WHERE user_id = ?"
            if unread_only:
                sql += " AND is_read = 0"
            sql += " ORDER BY id DESC LIMIT ?"
            rows = db.execute(sql, (user_id, limit)).fetchall()
        finally:
            db.close()
        return [
            Notification(
                id=r["id"],
                user_id=r["user_id"],
                title=r["title"],
                message=r["message"],
                is_read=r["is_read"],
                push_status=r["push_status"],
                push_attempts=r["push_attempts"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def mark_read(self, notification_id: int, user_id: str) -> bool:
        """标记已读，只能操作自己的通知。返回是否有记录被更新。"""
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            db.commit()
            return cursor.rowcount > 0
        finally:
            db.close()

    def _update_push_status(self, notification_id: int, status: int, attempts: int) -> None:
        db = get_db()
        try:
            db.execute(
                "UPDATE notifications SET push_status = ?, push_attempts = ? WHERE id = ?",
                (status, attempts, notification_id),
            )
            db.commit()
        finally:
            db.close()

    def send_push(self, notification_id: int) -> bool:
        """
        向 PUSH_WEBHOOK_URL 投递一条通知。

        Returns:
            True 表示 webhook 返回 2xx。未配置 webhook 时返回 False 且不改状态。
        """
        url = push_webhook_url()
        if not url:
            return False

        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            logger.warning("推送失败：通知不存在 (notification_id=%d)", notification_id)
            return False
        if row["push_status"] in (PUSH_SENT, PUSH_FAILED):
            return row["push_status"] == PUSH_SENT

        attempts = row["push_attempts"] + 1
        payload = {
            "notification_id": row["id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "message": row["message"],
        }

        success = False
        try:
            with httpx.Client(timeout=10.0) as client:
                resp = client.post(url, json=payload)
                success = 200 <= resp.status_code < 300
                if not success:
                    logger.warning(
                        "推送返回非 2xx (notification_id=%d, status=%d)",
                        notification_id, resp.status_code,
                    )
        except Exception as e:
            logger.warning("推送请求异常 (notification_id=%d): %s", notification_id, e)

        if success:
            self._update_push_status(notification_id, PUSH_SENT, attempts)
        elif attempts >= len(self.RETRY_INTERVALS) + 1:
            # 首次 + 3 次重试都失败
            self._update_push_status(notification_id, PUSH_FAILED, attempts)
            logger.warning(
                "推送全部失败 (notification_id=%d, attempts=%d)", notification_id, attempts,
            )
        else:
            self._update_push_status(notification_id, PUSH_RETRYING, attempts)
        return success

    def due_for_push(self, now: datetime | None = None) -> list[int]:
        """
        返回当前应投递的通知 ID：
        从未投递过的立即投递；投递失败的按重试间隔累计时间到期后再投递。
        """
        now = now or datetime.now()
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id, push_attempts, created_at FROM notifications
                   WHERE push_status IN (?, ?) AND push_attempts <= ?
                   ORDER BY id ASC LIMIT 200""",
                (PUSH_PENDING, PUSH_RETRYING, len(self.RETRY_INTERVALS)),
            ).fetchall()
        finally:
            db.close()

        due = []
        for row in rows:
            attempts = row["push_attempts"]
            if attempts == 0:
                due.append(row["id"])
                continue
            try:
                base_time = datetime.strptime(row["created_at"], "%Y-%m-%d %H:%M:%S")
            except (ValueError, TypeError):
                continue
            total_wait = sum(self.RETRY_INTERVALS[:attempts])
            if (now - base_time).total_seconds() >= total_wait:
                due.append(row["id"])
        return due


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "is_read": bool(n.is_read),
        "created_at": n.created_at,
    }

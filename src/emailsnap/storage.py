"""SQLite storage for messages, category rules, projects and settings."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

from pydantic import ValidationError

from emailsnap.config import AppSettings
from emailsnap.models import (
    PROJECT_COLORS,
    CategoryRule,
    MailStats,
    Message,
    Project,
)
from emailsnap.rules_engine import create_default_rules

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time in the fixed ISO format used for stored timestamps."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Storage:
    """SQLite-based store; the sole arbiter of message de-duplication."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        # Serializes multi-statement sections within this process
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema and seed default rules."""
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    color TEXT NOT NULL,
                    keywords TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    sender_name TEXT NOT NULL,
                    sender_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'uncategorized',
                    web_link TEXT,
                    notified INTEGER NOT NULL DEFAULT 0,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
                    message_id TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS category_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    match_type TEXT NOT NULL,
                    match_value TEXT NOT NULL,
                    color TEXT NOT NULL,
                    notify INTEGER NOT NULL DEFAULT 1,
                    is_default INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_messages_received ON messages(received_at);
                CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_project ON messages(project_id);
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            if cursor.fetchone() is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

            cursor = conn.execute("SELECT 1 FROM category_rules LIMIT 1")
            if cursor.fetchone() is None:
                for rule in create_default_rules():
                    self._insert_rule(conn, rule, is_default=True)
                logger.info("Seeded default category rules")

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ----------------------------------------
    # Messages
    # ----------------------------------------

    def insert_message(self, message: Message) -> bool:
        """Insert a message unless its id already exists.

        Returns True only when a new row was written.
        """
        created_at = message.created_at or utc_now_iso()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO messages (
                    id, sender_name, sender_email, subject, received_at,
                    category, web_link, notified, is_read, project_id,
                    message_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.sender_name,
                    message.sender_email,
                    message.subject,
                    message.received_at,
                    message.category,
                    message.web_link,
                    1 if message.notified else 0,
                    1 if message.is_read else 0,
                    message.project_id,
                    message.message_id or "",
                    created_at,
                ),
            )
            inserted = cursor.rowcount == 1

        if inserted:
            message.created_at = created_at
        else:
            logger.debug(f"Message {message.id} already stored, skipping")
        return inserted

    def get_message(self, message_id: str) -> Message | None:
        """Get a single message by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            return self._row_to_message(row) if row else None

    def get_messages(
        self,
        category: str | None = None,
        project_id: int | None = None,
        unassigned: bool = False,
        limit: int | None = None,
    ) -> list[Message]:
        """Get messages newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if unassigned:
            clauses.append("project_id IS NULL")

        query = "SELECT * FROM messages"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY received_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_message(row) for row in rows]

    def get_unassigned_messages(self) -> list[Message]:
        """Messages not yet assigned to any project."""
        return self.get_messages(unassigned=True)

    def mark_as_read(self, message_id: str) -> None:
        """Mark a message as read."""
        with self._get_connection() as conn:
            conn.execute("UPDATE messages SET is_read = 1 WHERE id = ?", (message_id,))

    def mark_notified(self, message_ids: list[str]) -> None:
        """Flag messages whose notification has been dispatched."""
        if not message_ids:
            return
        with self._get_connection() as conn:
            conn.executemany(
                "UPDATE messages SET notified = 1 WHERE id = ?",
                [(mid,) for mid in message_ids],
            )

    def get_last_received_at(self) -> str | None:
        """The fetch watermark: newest received_at across all messages."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(received_at) AS max_time FROM messages"
            ).fetchone()
            return row["max_time"] if row else None

    def cleanup_old_messages(self, days: int, now: datetime | None = None) -> int:
        """Delete messages inserted more than `days` ago. Returns the count."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=days)).isoformat(timespec="seconds")
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE created_at < ?", (cutoff,)
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Retention cleanup removed {deleted} messages older than {days} days")
        return deleted

    def assign_message_to_project(self, message_id: str, project_id: int) -> None:
        """Attach a message to a project."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE messages SET project_id = ? WHERE id = ?",
                (project_id, message_id),
            )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            sender_name=row["sender_name"],
            sender_email=row["sender_email"],
            subject=row["subject"],
            received_at=row["received_at"],
            category=row["category"],
            web_link=row["web_link"] or "",
            notified=bool(row["notified"]),
            is_read=bool(row["is_read"]),
            project_id=row["project_id"],
            message_id=row["message_id"] or "",
            created_at=row["created_at"],
        )

    # ----------------------------------------
    # Category rules
    # ----------------------------------------

    def get_category_rules(self) -> list[CategoryRule]:
        """All rules in evaluation order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM category_rules ORDER BY priority ASC, id ASC"
            ).fetchall()
            return [
                CategoryRule(
                    id=row["id"],
                    name=row["name"],
                    priority=row["priority"],
                    match_type=row["match_type"],
                    match_value=row["match_value"],
                    color=row["color"],
                    notify=bool(row["notify"]),
                    is_default=bool(row["is_default"]),
                )
                for row in rows
            ]

    def upsert_category_rule(self, rule: CategoryRule) -> int:
        """Update a rule when it has an id, otherwise add it. Returns the id."""
        with self._get_connection() as conn:
            if rule.id:
                conn.execute(
                    """
                    UPDATE category_rules
                    SET name = ?, priority = ?, match_type = ?, match_value = ?,
                        color = ?, notify = ?
                    WHERE id = ?
                    """,
                    (
                        rule.name,
                        rule.priority,
                        rule.match_type,
                        rule.match_value,
                        rule.color,
                        1 if rule.notify else 0,
                        rule.id,
                    ),
                )
                return rule.id
            return self._insert_rule(conn, rule, is_default=False)

    def delete_category_rule(self, rule_id: int) -> bool:
        """Delete a rule. Defaults are not protected."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM category_rules WHERE id = ?", (rule_id,))
            return cursor.rowcount > 0

    def _insert_rule(
        self, conn: sqlite3.Connection, rule: CategoryRule, is_default: bool
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO category_rules
            (name, priority, match_type, match_value, color, notify, is_default)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.name,
                rule.priority,
                rule.match_type,
                rule.match_value,
                rule.color,
                1 if rule.notify else 0,
                1 if is_default else 0,
            ),
        )
        return cursor.lastrowid

    # ----------------------------------------
    # Projects
    # ----------------------------------------

    def get_or_create_project(self, name: str) -> int:
        """Return the id of the project called `name`, creating it if needed."""
        with self._lock, self._get_connection() as conn:
            # Write lock up front so the lookup, count and insert are one unit
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT id FROM projects WHERE name = ?", (name,)
            ).fetchone()
            if row:
                return row["id"]

            count = conn.execute("SELECT COUNT(*) AS n FROM projects").fetchone()["n"]
            color = PROJECT_COLORS[count % len(PROJECT_COLORS)]
            cursor = conn.execute(
                "INSERT INTO projects (name, color, keywords, created_at) VALUES (?, ?, '[]', ?)",
                (name, color, utc_now_iso()),
            )
            logger.info(f"Created project '{name}'")
            return cursor.lastrowid

    def get_project_names(self) -> list[str]:
        """Names of all projects in creation order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT name FROM projects ORDER BY id").fetchall()
            return [row["name"] for row in rows]

    def get_projects_for_matching(self) -> list[Project]:
        """Projects with their keywords, without aggregates."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id, name, color, keywords FROM projects ORDER BY id"
            ).fetchall()
            return [
                Project(
                    id=row["id"],
                    name=row["name"],
                    color=row["color"],
                    keywords=self._load_keywords(row["keywords"]),
                )
                for row in rows
            ]

    def update_project_keywords(self, project_id: int, keywords: list[str]) -> None:
        """Persist a project's keyword list (duplicates folded)."""
        unique = list(dict.fromkeys(k for k in keywords if k))
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE projects SET keywords = ? WHERE id = ?",
                (json.dumps(unique, ensure_ascii=False), project_id),
            )

    def get_projects(self) -> list[Project]:
        """Projects with mail aggregates, most recently active first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.name, p.color, p.keywords,
                       COUNT(m.id) AS mail_count,
                       COALESCE(SUM(CASE WHEN m.is_read = 0 THEN 1 ELSE 0 END), 0) AS unread_count,
                       MAX(m.received_at) AS latest_mail_at
                FROM projects p
                LEFT JOIN messages m ON m.project_id = p.id
                GROUP BY p.id
                ORDER BY latest_mail_at DESC, p.id ASC
                """
            ).fetchall()
            return [
                Project(
                    id=row["id"],
                    name=row["name"],
                    color=row["color"],
                    keywords=self._load_keywords(row["keywords"]),
                    mail_count=row["mail_count"],
                    unread_count=row["unread_count"],
                    latest_mail_at=row["latest_mail_at"],
                )
                for row in rows
            ]

    def get_total_stats(self) -> MailStats:
        """Total and unread counts over all messages."""
        return self._stats("")

    def get_unassigned_stats(self) -> MailStats:
        """Total and unread counts over messages without a project."""
        return self._stats("WHERE project_id IS NULL")

    def _stats(self, where_clause: str) -> MailStats:
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0) AS unread
                FROM messages {where_clause}
                """
            ).fetchone()
            return MailStats(total=row["total"], unread=row["unread"])

    def _load_keywords(self, raw: str | None) -> list[str]:
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed keyword list: {raw[:80]}")
            return []
        return [str(k) for k in data] if isinstance(data, list) else []

    # ----------------------------------------
    # Settings
    # ----------------------------------------

    def get_setting(self, key: str) -> str | None:
        """Raw stored value of a setting."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Store a raw setting value."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )

    def load_settings(self) -> AppSettings:
        """Typed settings; missing or invalid keys fall back to defaults."""
        values: dict[str, Any] = {}
        for key in AppSettings.model_fields:
            raw = self.get_setting(key)
            if raw is None:
                continue
            try:
                AppSettings(**{key: raw})
            except ValidationError:
                logger.warning(f"Invalid stored value for setting '{key}', using default")
                continue
            values[key] = raw
        return AppSettings(**values)

    def save_setting(self, key: str, value: Any) -> None:
        """Validate and persist one setting.

        Raises:
            KeyError: If the key is not part of the settings schema
            ValidationError: If the value is invalid for the key
        """
        if key not in AppSettings.model_fields:
            raise KeyError(f"Unknown setting: {key}")

        validated = getattr(AppSettings(**{key: value}), key)
        if isinstance(validated, bool):
            stored = "true" if validated else "false"
        else:
            stored = str(validated)
        self.set_setting(key, stored)

    def close(self) -> None:
        """Close any open connections."""
        pass  # Connections are closed after each operation

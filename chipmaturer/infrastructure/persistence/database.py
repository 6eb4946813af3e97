"""
SQLite Database Repository - Chips, Pairs, Messages and Prompts
================================================================

Every method opens its own connection and commits on exit, so callers always
read what the last write left behind.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ...domain.models import (
    ChipPair,
    Connection,
    Message,
    PairStatus,
    Prompt,
)

logger = logging.getLogger(__name__)

DATABASE_FILE = "chipmaturer.db"

CONNECTION_COLUMNS = {
    "name", "phone", "instance_name", "status", "last_active",
    "qr_code", "profile_name", "profile_picture",
}
PAIR_COLUMNS = {
    "is_active", "messages_count", "last_activity", "status",
    "use_instance_prompt", "instance_prompt",
}
PROMPT_COLUMNS = {"name", "content", "category"}


class Database:
    """
    SQLite database for the chip maturer.

    Usage:
        db = Database()
        db.init()

        db.add_connection(connection)
        pairs = db.get_all_pairs()
        history = db.get_pair_messages(pair_id, limit=5)
    """

    def __init__(self, db_path: str = DATABASE_FILE):
        self.db_path = str(db_path)

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self):
        """Initialize database tables."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    instance_name TEXT NOT NULL,
                    status TEXT DEFAULT 'inactive',
                    last_active TEXT DEFAULT '',
                    qr_code TEXT DEFAULT '',
                    profile_name TEXT DEFAULT '',
                    profile_picture TEXT DEFAULT '',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS chip_pairs (
                    id TEXT PRIMARY KEY,
                    first_connection_id TEXT NOT NULL,
                    second_connection_id TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    messages_count INTEGER DEFAULT 0,
                    last_activity TEXT DEFAULT '',
                    status TEXT DEFAULT 'stopped',
                    use_instance_prompt INTEGER DEFAULT 0,
                    instance_prompt TEXT DEFAULT '',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CHECK (first_connection_id <> second_connection_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    pair_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    model TEXT DEFAULT '',
                    usage TEXT DEFAULT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages (pair_id, seq)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS prompts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    category TEXT DEFAULT 'general',
                    is_global INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            logger.info(f"Database initialized: {self.db_path}")

    def reset_running_pairs(self) -> int:
        """Mark pairs left 'running' by a previous process as stopped."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE chip_pairs SET status = ? WHERE status = ?",
                (PairStatus.STOPPED.value, PairStatus.RUNNING.value)
            )
            if cursor.rowcount:
                logger.info(f"Reset {cursor.rowcount} stale running pair(s) to stopped")
            return cursor.rowcount

    @staticmethod
    def _set_clause(updates: dict, allowed: set) -> str:
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")
        return ", ".join(f"{k} = ?" for k in updates.keys())

    # ── Connection CRUD ────────────────────────────────────────────

    def add_connection(self, connection: Connection) -> Connection:
        """Insert a new connection row."""
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO connections
                   (id, name, phone, instance_name, status, last_active, qr_code,
                    profile_name, profile_picture, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (connection.id, connection.name, connection.phone, connection.instance_name,
                 connection.status, connection.last_active, connection.qr_code,
                 connection.profile_name, connection.profile_picture, connection.created_at)
            )
        return connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Get connection by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return self._row_to_connection(row) if row else None

    def get_connection_by_name(self, name: str) -> Optional[Connection]:
        """Get connection by display name, ignoring case."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE lower(name) = lower(?)", (name.strip(),)
            ).fetchone()
            return self._row_to_connection(row) if row else None

    def get_all_connections(self) -> List[Connection]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM connections ORDER BY created_at, name"
            ).fetchall()
            return [self._row_to_connection(row) for row in rows]

    def update_connection(self, connection_id: str, **updates) -> bool:
        """Update connection fields. Returns False if nothing matched."""
        if not updates:
            return False

        set_clause = self._set_clause(updates, CONNECTION_COLUMNS)
        values = list(updates.values()) + [connection_id]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE connections SET {set_clause} WHERE id = ?",
                values
            )
            return cursor.rowcount > 0

    def delete_connection(self, connection_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
            return cursor.rowcount > 0

    def _row_to_connection(self, row: sqlite3.Row) -> Connection:
        """Convert database row to Connection object."""
        return Connection(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            instance_name=row["instance_name"],
            status=row["status"],
            last_active=row["last_active"] or "",
            qr_code=row["qr_code"] or "",
            profile_name=row["profile_name"] or "",
            profile_picture=row["profile_picture"] or "",
            created_at=row["created_at"] or ""
        )

    # ── Pair CRUD ──────────────────────────────────────────────────

    def add_pair(self, pair: ChipPair) -> ChipPair:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO chip_pairs
                   (id, first_connection_id, second_connection_id, is_active, messages_count,
                    last_activity, status, use_instance_prompt, instance_prompt, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (pair.id, pair.first_connection_id, pair.second_connection_id,
                 int(pair.is_active), pair.messages_count, pair.last_activity, pair.status,
                 int(pair.use_instance_prompt), pair.instance_prompt, pair.created_at)
            )
        return pair

    def get_pair(self, pair_id: str) -> Optional[ChipPair]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM chip_pairs WHERE id = ?", (pair_id,)
            ).fetchone()
            return self._row_to_pair(row) if row else None

    def get_all_pairs(self) -> List[ChipPair]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM chip_pairs ORDER BY created_at").fetchall()
            return [self._row_to_pair(row) for row in rows]

    def find_pair(self, first_id: str, second_id: str) -> Optional[ChipPair]:
        """Find the pair joining two connections, in either order."""
        with self._get_connection() as conn:
            row = conn.execute(
                """SELECT * FROM chip_pairs
                   WHERE (first_connection_id = ? AND second_connection_id = ?)
                      OR (first_connection_id = ? AND second_connection_id = ?)""",
                (first_id, second_id, second_id, first_id)
            ).fetchone()
            return self._row_to_pair(row) if row else None

    def get_pairs_for_connection(self, connection_id: str) -> List[ChipPair]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM chip_pairs
                   WHERE first_connection_id = ? OR second_connection_id = ?""",
                (connection_id, connection_id)
            ).fetchall()
            return [self._row_to_pair(row) for row in rows]

    def update_pair(self, pair_id: str, **updates) -> bool:
        """Update pair fields. Booleans are stored as integers."""
        if not updates:
            return False

        set_clause = self._set_clause(updates, PAIR_COLUMNS)
        values = [int(v) if isinstance(v, bool) else v for v in updates.values()]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE chip_pairs SET {set_clause} WHERE id = ?",
                values + [pair_id]
            )
            return cursor.rowcount > 0

    def delete_pair(self, pair_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM chip_pairs WHERE id = ?", (pair_id,))
            return cursor.rowcount > 0

    def _row_to_pair(self, row: sqlite3.Row) -> ChipPair:
        return ChipPair(
            id=row["id"],
            first_connection_id=row["first_connection_id"],
            second_connection_id=row["second_connection_id"],
            is_active=bool(row["is_active"]),
            messages_count=row["messages_count"] or 0,
            last_activity=row["last_activity"] or "",
            status=row["status"],
            use_instance_prompt=bool(row["use_instance_prompt"]),
            instance_prompt=row["instance_prompt"] or "",
            created_at=row["created_at"] or ""
        )

    # ── Message log ────────────────────────────────────────────────

    def record_turn(self, message: Message) -> bool:
        """
        Append a relayed message and bump its pair's counter in one transaction.

        Returns False (and writes nothing) if the pair no longer exists.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """UPDATE chip_pairs
                   SET messages_count = messages_count + 1, last_activity = ?
                   WHERE id = ?""",
                (message.timestamp, message.pair_id)
            )
            if cursor.rowcount == 0:
                return False

            conn.execute(
                """INSERT INTO messages
                   (id, pair_id, sender_id, receiver_id, content, timestamp, model, usage)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (message.id, message.pair_id, message.sender_id, message.receiver_id,
                 message.content, message.timestamp, message.model,
                 json.dumps(message.usage) if message.usage is not None else None)
            )
            return True

    def get_pair_messages(self, pair_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages of a pair in the order they were recorded (oldest first)."""
        with self._get_connection() as conn:
            if limit is not None:
                rows = conn.execute(
                    """SELECT * FROM (
                           SELECT * FROM messages WHERE pair_id = ? ORDER BY seq DESC LIMIT ?
                       ) ORDER BY seq""",
                    (pair_id, limit)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE pair_id = ? ORDER BY seq", (pair_id,)
                ).fetchall()
            return [self._row_to_message(row) for row in rows]

    def get_last_message(self, pair_id: str) -> Optional[Message]:
        messages = self.get_pair_messages(pair_id, limit=1)
        return messages[0] if messages else None

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            pair_id=row["pair_id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            content=row["content"],
            timestamp=row["timestamp"],
            model=row["model"] or "",
            usage=json.loads(row["usage"]) if row["usage"] else None
        )

    # ── Prompt library ─────────────────────────────────────────────

    def add_prompt(self, prompt: Prompt) -> Prompt:
        with self._get_connection() as conn:
            if prompt.is_global:
                conn.execute("UPDATE prompts SET is_global = 0")
            conn.execute(
                """INSERT INTO prompts (id, name, content, category, is_global, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (prompt.id, prompt.name, prompt.content, prompt.category,
                 int(prompt.is_global), prompt.created_at)
            )
        return prompt

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM prompts WHERE id = ?", (prompt_id,)).fetchone()
            return self._row_to_prompt(row) if row else None

    def get_all_prompts(self) -> List[Prompt]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM prompts ORDER BY created_at, name").fetchall()
            return [self._row_to_prompt(row) for row in rows]

    def get_global_prompt(self) -> Optional[Prompt]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM prompts WHERE is_global = 1 LIMIT 1").fetchone()
            return self._row_to_prompt(row) if row else None

    def update_prompt(self, prompt_id: str, **updates) -> bool:
        if not updates:
            return False

        set_clause = self._set_clause(updates, PROMPT_COLUMNS)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE prompts SET {set_clause} WHERE id = ?",
                list(updates.values()) + [prompt_id]
            )
            return cursor.rowcount > 0

    def set_global_prompt(self, prompt_id: str) -> bool:
        """Flag one prompt as global and clear the flag on every other one."""
        with self._get_connection() as conn:
            exists = conn.execute("SELECT 1 FROM prompts WHERE id = ?", (prompt_id,)).fetchone()
            if not exists:
                return False
            conn.execute("UPDATE prompts SET is_global = (id = ?)", (prompt_id,))
            return True

    def delete_prompt(self, prompt_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM prompts WHERE id = ?", (prompt_id,))
            return cursor.rowcount > 0

    def _row_to_prompt(self, row: sqlite3.Row) -> Prompt:
        return Prompt(
            id=row["id"],
            name=row["name"],
            content=row["content"],
            category=row["category"] or "general",
            is_global=bool(row["is_global"]),
            created_at=row["created_at"] or ""
        )

    # ── Stats ──────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        """Counts shown on the engine dashboard."""
        since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()

        with self._get_connection() as conn:
            total_pairs = conn.execute("SELECT COUNT(*) FROM chip_pairs").fetchone()[0]
            active_pairs = conn.execute(
                "SELECT COUNT(*) FROM chip_pairs WHERE is_active = 1"
            ).fetchone()[0]
            total_messages = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            last_24h = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE timestamp >= ?", (since,)
            ).fetchone()[0]
            active_connections = conn.execute(
                "SELECT COUNT(*) FROM connections WHERE status = 'active'"
            ).fetchone()[0]

            return {
                "total_pairs": total_pairs,
                "active_pairs": active_pairs,
                "total_messages": total_messages,
                "messages_last_24h": last_24h,
                "active_connections": active_connections,
            }


def init_database(db_path: str = DATABASE_FILE) -> Database:
    """Create tables and clear run state left over from a previous process."""
    db = Database(db_path)
    db.init()
    db.reset_running_pairs()
    return db

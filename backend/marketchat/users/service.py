"""UserDirectory: DuckDB-backed mirror of public profile fields."""
import logging
import threading
from typing import Dict, Iterable, List, Optional

import duckdb

from .schemas import ParticipantProfile, ProfileUpsert

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id          VARCHAR PRIMARY KEY,
    name        VARCHAR NOT NULL DEFAULT '',
    email       VARCHAR NOT NULL DEFAULT '',
    avatar_url  VARCHAR,
    role        VARCHAR NOT NULL DEFAULT 'buyer'
)
"""

_COLUMNS = ["id", "name", "email", "avatar_url", "role"]

LOOKUP_LIMIT = 20


class UserDirectory:
    """Singleton lookup of participant profiles.

    Unknown user IDs resolve to a bare profile carrying only the ID, so a
    conversation with a user the directory has not seen yet still lists.
    """

    _instance: Optional["UserDirectory"] = None
    _default_db_path: str = "users.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        self._lock = threading.Lock()
        logger.info("[UserDirectory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UserDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        self._conn.close()

    def upsert(self, user_id: str, profile: ProfileUpsert) -> ParticipantProfile:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO users (id, name, email, avatar_url, role)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    avatar_url = excluded.avatar_url,
                    role = excluded.role
                """,
                [user_id, profile.name, profile.email, profile.avatarUrl, profile.role],
            )
        return ParticipantProfile(id=user_id, **profile.model_dump())

    def get(self, user_id: str) -> ParticipantProfile:
        return self.get_many([user_id])[user_id]

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, ParticipantProfile]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM users WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        found = {row[0]: self._row_to_profile(row) for row in rows}
        return {uid: found.get(uid, ParticipantProfile(id=uid)) for uid in ids}

    def lookup(self, query: str, exclude: Optional[str] = None) -> List[ParticipantProfile]:
        """Case-insensitive substring search over name and email.

        ``%`` and ``_`` in the query match literally.
        """
        escaped = (
            query.strip().lower()
            .replace("\\", "\\\\")
            .replace("%", "\\%")
            .replace("_", "\\_")
        )
        needle = f"%{escaped}%"
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {', '.join(_COLUMNS)} FROM users
                WHERE (lower(name) LIKE ? ESCAPE '\\' OR lower(email) LIKE ? ESCAPE '\\')
                  AND id != ?
                ORDER BY name ASC
                LIMIT {LOOKUP_LIMIT}
                """,
                [needle, needle, exclude or ""],
            ).fetchall()
        return [self._row_to_profile(r) for r in rows]

    @staticmethod
    def _row_to_profile(row) -> ParticipantProfile:
        d = dict(zip(_COLUMNS, row))
        return ParticipantProfile(
            id=d["id"],
            name=d["name"],
            email=d["email"],
            avatarUrl=d["avatar_url"],
            role=d["role"],
        )

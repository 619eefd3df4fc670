"""DuckDB-backed conversation store.

This is the single source of truth for conversations and messages. The
message router and both REST endpoints go through it; nothing else writes
these tables.

Database Schema:
    conversations table:
        - id: UUID primary key
        - user_low / user_high: the participant pair, sorted (unique)
        - created_at / updated_at: seconds since epoch
        - last_message: preview of the newest message
        - last_message_seq: seq of the newest message (0 while empty)

    messages table:
        - id: UUID primary key
        - seq: value from messages_seq, strictly increasing
        - conversation_id, sender_id, text, created_at

Thread Safety:
    The DuckDB connection is NOT thread-safe; every statement runs under
    the store's lock. The lock also makes create-or-get atomic.

Usage:
    store = ConversationStore.get_instance()
    convo = store.create_or_get_conversation("alice", "bob")
    msg = store.append_message(convo.id, "alice", "Hello")
"""
import logging
import threading
import time
import uuid
from typing import Callable, List, Optional

import duckdb

from marketchat.config import get_config
from marketchat.errors import Forbidden, InvalidMessage, InvalidParticipants, NotFound, NotParticipant
from marketchat.users.service import UserDirectory

from .schemas import Conversation, ConversationSummary, Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEXT_LENGTH = 4000
PREVIEW_LENGTH = 200

_CONVERSATION_COLUMNS = [
    "id", "user_low", "user_high", "created_at", "updated_at", "last_message", "last_message_seq",
]
_MESSAGE_COLUMNS = ["id", "seq", "conversation_id", "sender_id", "text", "created_at"]


class ConversationStore:
    """Singleton store for conversations and messages.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ConversationStore"] = None
    _db_path: str = "conversations.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        directory: Optional[UserDirectory] = None,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "conversations.duckdb".
            directory: Profile source for conversation listings.
            max_text_length: Longest accepted message text, after trimming.
            clock: Source of server timestamps.
        """
        if db_path:
            self._db_path = db_path
        self._directory = directory
        self._max_text_length = max_text_length
        self._clock = clock
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None, **kwargs) -> "ConversationStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            **kwargs: Passed to the constructor on first call.
        """
        if cls._instance is None:
            cls._instance = cls(db_path, **kwargs)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and drop the singleton. Used by tests."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id VARCHAR PRIMARY KEY,
                user_low VARCHAR NOT NULL,
                user_high VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL,
                updated_at DOUBLE NOT NULL,
                last_message VARCHAR,
                last_message_seq BIGINT NOT NULL DEFAULT 0,
                UNIQUE (user_low, user_high)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                seq BIGINT NOT NULL,
                conversation_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                text VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation "
            "ON messages(conversation_id, created_at)"
        )
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @property
    def directory(self) -> UserDirectory:
        if self._directory is None:
            self._directory = UserDirectory.get_instance()
        return self._directory

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def create_or_get_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the conversation for the unordered pair, creating it if absent.

        Raises:
            InvalidParticipants: If the users are equal or either is blank.
        """
        if not user_a or not user_b or not user_a.strip() or not user_b.strip():
            raise InvalidParticipants("Both participants must be non-empty user IDs")
        if user_a == user_b:
            raise InvalidParticipants("Cannot start a conversation with yourself")

        low, high = sorted((user_a, user_b))
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations "
                "WHERE user_low = ? AND user_high = ?",
                [low, high],
            ).fetchone()
            if row:
                return self._row_to_conversation(row)

            now = self._clock()
            conversation_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO conversations (id, user_low, user_high, created_at, updated_at, last_message, last_message_seq)
                VALUES (?, ?, ?, ?, ?, NULL, 0)
                """,
                [conversation_id, low, high, now, now],
            )
        logger.info("[Store] Created conversation %s for %s/%s", conversation_id, low, high)
        return Conversation(
            id=conversation_id,
            participantIds=[low, high],
            createdAt=now,
            updatedAt=now,
        )

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Raises NotFound if the conversation does not exist."""
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
        if row is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return self._row_to_conversation(row)

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        """All conversations for ``user_id``, most recently active first.

        Each entry carries the other participant's profile, joined at read
        time from the user directory.
        """
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT {', '.join(_CONVERSATION_COLUMNS)} FROM conversations
                WHERE user_low = ? OR user_high = ?
                ORDER BY updated_at DESC, id ASC
                """,
                [user_id, user_id],
            ).fetchall()
        conversations = [self._row_to_conversation(r) for r in rows]
        profiles = self.directory.get_many(c.other_participant(user_id) for c in conversations)
        return [
            ConversationSummary(
                **c.model_dump(),
                otherParticipant=profiles[c.other_participant(user_id)],
            )
            for c in conversations
        ]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(self, conversation_id: str, sender_id: str, text: str) -> Message:
        """Validate and persist a message.

        Raises:
            InvalidMessage: Empty after trimming, or longer than the limit.
            NotFound: Unknown conversation.
            NotParticipant: Sender is not in the conversation.
        """
        cleaned = self._validate_text(text)
        conversation = self.get_conversation(conversation_id)
        if not conversation.has_participant(sender_id):
            raise NotParticipant(sender_id, conversation_id)

        message_id = str(uuid.uuid4())
        with self._lock:
            conn = self._get_connection()
            now = self._clock()
            seq = conn.execute("SELECT nextval('messages_seq')").fetchone()[0]
            conn.execute(
                """
                INSERT INTO messages (id, seq, conversation_id, sender_id, text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [message_id, seq, conversation_id, sender_id, cleaned, now],
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ?, last_message = ?, last_message_seq = ? "
                "WHERE id = ?",
                [now, cleaned[:PREVIEW_LENGTH], seq, conversation_id],
            )
        logger.debug("[Store] Appended message %s (seq=%s) to %s", message_id, seq, conversation_id)
        return Message(
            id=message_id,
            conversationId=conversation_id,
            senderId=sender_id,
            text=cleaned,
            createdAt=now,
            seq=seq,
        )

    def send_to_recipient(self, sender_id: str, recipient_id: str, text: str) -> Message:
        """Append to the pair's conversation, creating it on first contact.

        The text is validated before anything is written, so a rejected
        message never leaves an empty conversation behind.
        """
        self._validate_text(text)
        conversation = self.create_or_get_conversation(sender_id, recipient_id)
        return self.append_message(conversation.id, sender_id, text)

    def list_messages(
        self,
        conversation_id: str,
        requester_id: str,
        since_seq: Optional[int] = None,
    ) -> List[Message]:
        """Messages in display order, oldest first.

        Args:
            conversation_id: The conversation to read.
            requester_id: Must be a participant.
            since_seq: If given, only messages with a greater ``seq``.

        Raises:
            NotFound: Unknown conversation.
            Forbidden: Requester is not a participant.
        """
        conversation = self.get_conversation(conversation_id)
        if not conversation.has_participant(requester_id):
            raise Forbidden()

        query = f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages WHERE conversation_id = ?"
        params: list = [conversation_id]
        if since_seq is not None:
            query += " AND seq > ?"
            params.append(since_seq)
        query += " ORDER BY created_at ASC, seq ASC"

        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def get_message(self, message_id: str) -> Message:
        """Raises NotFound if no such message was persisted."""
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages WHERE id = ?",
                [message_id],
            ).fetchone()
        if row is None:
            raise NotFound(f"Message {message_id} not found")
        return self._row_to_message(row)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _validate_text(self, text: Optional[str]) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise InvalidMessage("Message text cannot be empty")
        if len(cleaned) > self._max_text_length:
            raise InvalidMessage(
                f"Message text exceeds {self._max_text_length} characters"
            )
        return cleaned

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        d = dict(zip(_CONVERSATION_COLUMNS, row))
        return Conversation(
            id=d["id"],
            participantIds=[d["user_low"], d["user_high"]],
            createdAt=d["created_at"],
            updatedAt=d["updated_at"],
            lastMessage=d["last_message"],
            lastMessageSeq=d["last_message_seq"],
        )

    @staticmethod
    def _row_to_message(row) -> Message:
        d = dict(zip(_MESSAGE_COLUMNS, row))
        return Message(
            id=d["id"],
            conversationId=d["conversation_id"],
            senderId=d["sender_id"],
            text=d["text"],
            createdAt=d["created_at"],
            seq=d["seq"],
        )


def get_store() -> ConversationStore:
    """Return the store singleton, configured from settings on first use."""
    if ConversationStore._instance is None:
        config = get_config()
        directory = UserDirectory.get_instance(config.storage.users_db_path)
        ConversationStore.get_instance(
            config.storage.conversations_db_path,
            directory=directory,
            max_text_length=config.messaging.max_text_length,
        )
    return ConversationStore._instance

"""
Encrypted conversation store.

Conversations and their messages live in a single-connection SQLite database
under the profile's data directory. Message content is encrypted with the
profile's content key before it is written and decrypted on the way out, so
callers only ever see plaintext.

Usage
-----
    store = ConversationStore(settings, logger=configure_logging(settings))
    chat = await store.create_conversation("Trip Planning")
    await store.append_message(chat.id, "user", "Where should I go in March?", token_count=8)
    await store.append_message(chat.id, "model", "Consider Portugal or Morocco.", token_count=6)
    await store.refresh_stats(chat.id)
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatstore.config import Settings
from chatstore.config import settings as default_settings
from chatstore.db import create_engine_for, session_factory
from chatstore.db_init import init_db
from chatstore.errors import DecryptionFailure, InitializationFailure, StorageIOFailure
from chatstore.models.core import MESSAGE_ROLES, Conversation, Message
from chatstore.schemas.chat import ConversationOut, MessageOut
from chatstore.services.init_gate import GateState, InitializationGate
from chatstore.services.keystore import KeyManager
from chatstore.services.message_crypto import ContentCipher
from chatstore.services.secret_protector import SecretProtector
from chatstore.services.timestamps import utcnow


class ConversationStore:
    """Conversation and message persistence with encryption at rest."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        logger: logging.Logger | None = None,
        protector: SecretProtector | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._logger = logger or logging.getLogger(__name__)
        protector = protector or SecretProtector(self.settings, logger=self._logger.getChild("protector"))
        self.key_manager = KeyManager(self.settings.key_path, protector, logger=self._logger.getChild("keystore"))
        self.cipher = ContentCipher(self.key_manager, legacy_max_length=self.settings.legacy_plaintext_max_length)
        self.gate = InitializationGate(self._initialize, name="conversation store", logger=self._logger)
        self.schema_status: str | None = None
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker | None = None
        # Serializes statement sequences on the shared connection.
        self._io_lock = asyncio.Lock()

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def _initialize(self) -> None:
        engine = create_engine_for(self.settings)
        try:
            self.schema_status = await init_db(engine)
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        self._sessions = session_factory(engine)
        self._logger.info("Database opened at %s (%s)", self.settings.database_path, self.schema_status)

    async def ensure_ready(self) -> None:
        await self.gate.ensure_ready()

    async def prepare_encryption(self) -> None:
        """Loads or creates the content key ahead of the first message."""
        await self.key_manager.get_or_create_key()

    async def close(self) -> None:
        if self.gate.state is GateState.INITIALIZING:
            with suppress(InitializationFailure):
                await self.gate.ensure_ready()
        if self._engine is not None:
            await self._engine.dispose()
            self._logger.info("Database closed at %s", self.settings.database_path)
        self._engine = None
        self._sessions = None
        self.gate.reset()
        self.key_manager.forget()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        await self.gate.ensure_ready()
        async with self._io_lock:
            try:
                async with self._sessions() as db:
                    yield db
            except SQLAlchemyError as exc:
                self._logger.error("Storage operation failed: %s", exc)
                raise StorageIOFailure(str(exc)) from exc

    # ── helpers ───────────────────────────────────────────────────────────────

    def _normalize_title(self, title: str | None) -> str:
        cleaned = (title or "").strip()
        if not cleaned:
            return self.settings.default_title
        return cleaned[: self.settings.title_max_length]

    @staticmethod
    def _message_out(row: Message, content: str) -> MessageOut:
        return MessageOut(
            id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,
            content=content,
            created_at=row.created_at,
            token_count=row.token_count or 0,
        )

    # ── conversations ─────────────────────────────────────────────────────────

    async def create_conversation(self, title: str | None) -> ConversationOut:
        now = utcnow()
        row = Conversation(
            title=self._normalize_title(title),
            created_at=now,
            updated_at=now,
            message_count=0,
            total_tokens=0,
        )
        async with self._session() as db:
            db.add(row)
            await db.commit()
        self._logger.info("Created conversation id=%s", row.id)
        return ConversationOut.model_validate(row)

    async def list_conversations(self) -> list[ConversationOut]:
        """All conversations, most recently active first."""
        async with self._session() as db:
            result = await db.execute(
                select(Conversation).order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            )
            rows = result.scalars().all()
        return [ConversationOut.model_validate(r) for r in rows]

    async def get_conversation(self, conversation_id: int) -> ConversationOut | None:
        async with self._session() as db:
            row = await db.get(Conversation, conversation_id)
        return ConversationOut.model_validate(row) if row else None

    async def update_conversation(self, conversation: ConversationOut) -> None:
        """Writes title and counts back; ``updated_at`` is always stamped now."""
        now = utcnow()
        async with self._session() as db:
            await db.execute(
                update(Conversation)
                .where(Conversation.id == conversation.id)
                .values(
                    title=self._normalize_title(conversation.title),
                    updated_at=now,
                    message_count=conversation.message_count,
                    total_tokens=conversation.total_tokens,
                )
            )
            await db.commit()
        conversation.updated_at = now

    async def rename_conversation(self, conversation_id: int, title: str) -> ConversationOut | None:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return None
        conversation.title = title
        await self.update_conversation(conversation)
        return await self.get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: int) -> None:
        async with self._session() as db:
            # Messages go with it through ON DELETE CASCADE.
            await db.execute(delete(Conversation).where(Conversation.id == conversation_id))
            await db.commit()
        self._logger.info("Deleted conversation id=%s", conversation_id)

    async def refresh_stats(self, conversation_id: int) -> ConversationOut | None:
        """Recomputes ``message_count`` and ``total_tokens`` from the message rows."""
        count_q = (
            select(func.count(Message.id))
            .where(Message.conversation_id == conversation_id)
            .scalar_subquery()
        )
        tokens_q = (
            select(func.coalesce(func.sum(Message.token_count), 0))
            .where(Message.conversation_id == conversation_id)
            .scalar_subquery()
        )
        async with self._session() as db:
            await db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(message_count=count_q, total_tokens=tokens_q, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            row = await db.get(Conversation, conversation_id, populate_existing=True)
        return ConversationOut.model_validate(row) if row else None

    # ── messages ──────────────────────────────────────────────────────────────

    async def append_message(
        self,
        conversation_id: int,
        role: str,
        text: str,
        token_count: int = 0,
    ) -> MessageOut:
        """Encrypts and stores one message. Returns it with the original plaintext."""
        if role not in MESSAGE_ROLES:
            raise ValueError(f"role must be one of {MESSAGE_ROLES}, got {role!r}")
        if token_count < 0:
            raise ValueError("token_count must not be negative")

        await self.gate.ensure_ready()
        envelope = await self.cipher.encrypt(text or "")
        row = Message(
            conversation_id=conversation_id,
            role=role,
            content=envelope,
            created_at=utcnow(),
            token_count=token_count,
        )
        async with self._session() as db:
            db.add(row)
            await db.commit()
        self._logger.debug("Stored %s message id=%s in conversation id=%s", role, row.id, conversation_id)
        return self._message_out(row, text or "")

    async def record_turn(
        self,
        conversation_id: int,
        user_text: str,
        model_text: str,
        *,
        user_tokens: int = 0,
        model_tokens: int = 0,
    ) -> tuple[MessageOut, MessageOut]:
        """Stores a user/model exchange and refreshes the statistics once."""
        user_message = await self.append_message(conversation_id, "user", user_text, user_tokens)
        model_message = await self.append_message(conversation_id, "model", model_text, model_tokens)
        await self.refresh_stats(conversation_id)
        return user_message, model_message

    async def list_messages(self, conversation_id: int) -> list[MessageOut]:
        """Messages in conversation order. Rows that fail to decrypt are skipped."""
        async with self._session() as db:
            result = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
            )
            rows = result.scalars().all()

        messages: list[MessageOut] = []
        for row in rows:
            try:
                content = await self.cipher.decrypt(row.content)
            except DecryptionFailure as exc:
                self._logger.error("Failed to decrypt message %s: %s", row.id, exc)
                continue
            messages.append(self._message_out(row, content))

        self._logger.debug(
            "Loaded %s of %s messages for conversation id=%s", len(messages), len(rows), conversation_id
        )
        return messages

    async def get_message(self, message_id: int) -> MessageOut | None:
        """Single-message read; raises DecryptionFailure for an unreadable row."""
        async with self._session() as db:
            row = await db.get(Message, message_id)
        if row is None:
            return None
        try:
            content = await self.cipher.decrypt(row.content)
        except DecryptionFailure as exc:
            raise DecryptionFailure(str(exc), message_id=message_id) from exc
        return self._message_out(row, content)

    async def delete_message(self, message_id: int) -> None:
        async with self._session() as db:
            await db.execute(delete(Message).where(Message.id == message_id))
            await db.commit()

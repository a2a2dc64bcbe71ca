"""Message store -- chat sessions and their text messages.

Public methods accept an optional session for callers that want several
writes in one transaction; without one, each call opens and commits its
own. SQLAlchemy failures surface as DatabaseError.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from carapace.errors import DatabaseError
from carapace.storage.database import Database
from carapace.storage.models import ChatMessage, ChatSession
from carapace.storage.schemas import SessionRecord, StoredMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MessageStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        session: AsyncSession | None,
    ) -> T:
        try:
            if session is None:
                async with self.db.session() as session:
                    result = await work(session)
                    await session.commit()
                    return result
            return await work(session)
        except SQLAlchemyError as e:
            logger.error("Database error during %s: %s", operation, e)
            raise DatabaseError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self, title: str | None = None, session: AsyncSession | None = None
    ) -> SessionRecord:
        async def _create(s: AsyncSession) -> SessionRecord:
            chat = ChatSession(title=title, token_count=0, total_cost=0.0)
            s.add(chat)
            await s.flush()
            await s.refresh(chat)
            return SessionRecord.model_validate(chat)

        return await self._run("create_session", _create, session)

    async def get_session(
        self, session_id: UUID, session: AsyncSession | None = None
    ) -> SessionRecord | None:
        async def _get(s: AsyncSession) -> SessionRecord | None:
            chat = await s.get(ChatSession, session_id)
            return SessionRecord.model_validate(chat) if chat else None

        return await self._run("get_session", _get, session)

    async def update_session_usage(
        self,
        session_id: UUID,
        token_count: int,
        cost: float,
        session: AsyncSession | None = None,
    ) -> None:
        """Add a turn's tokens and cost to the session totals."""

        async def _update(s: AsyncSession) -> None:
            await s.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(
                    token_count=ChatSession.token_count + token_count,
                    total_cost=ChatSession.total_cost + cost,
                )
            )

        await self._run("update_session_usage", _update, session)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        session_id: UUID,
        role: str,
        content: str,
        session: AsyncSession | None = None,
    ) -> StoredMessage:
        async def _append(s: AsyncSession) -> StoredMessage:
            position = await s.scalar(
                select(func.coalesce(func.max(ChatMessage.position), -1) + 1).where(
                    ChatMessage.session_id == session_id
                )
            )
            message = ChatMessage(
                session_id=session_id,
                role=role,
                content=content,
                position=position or 0,
                token_count=0,
                cost=0.0,
            )
            s.add(message)
            await s.flush()
            await s.refresh(message)
            return StoredMessage.model_validate(message)

        return await self._run("append_message", _append, session)

    async def list_messages(
        self, session_id: UUID, session: AsyncSession | None = None
    ) -> list[StoredMessage]:
        """Messages of a session, oldest first."""

        async def _list(s: AsyncSession) -> list[StoredMessage]:
            result = await s.execute(
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.position)
            )
            return [StoredMessage.model_validate(m) for m in result.scalars()]

        return await self._run("list_messages", _list, session)

    async def update_message_usage(
        self,
        message_id: UUID,
        token_count: int,
        cost: float,
        session: AsyncSession | None = None,
    ) -> None:
        async def _update(s: AsyncSession) -> None:
            await s.execute(
                update(ChatMessage)
                .where(ChatMessage.id == message_id)
                .values(token_count=token_count, cost=cost)
            )

        await self._run("update_message_usage", _update, session)

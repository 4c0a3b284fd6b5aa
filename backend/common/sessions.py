"""Discussion session lifecycle: chats, project settings, sessions and captured messages.

Every method opens its own short database session, so no ORM state is shared
between requests. The "one open session per chat" rule is backed by the
partial unique index ``uq_sessions_chat_open``; the check before the insert
only produces a friendlier error in the common case.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from common.errors import (
    InvalidProject, NoActiveSession, ProjectNotSet, SessionAlreadyExists, SessionNotFound
)
from common.models import Chat, ChatSettings, Message, Session, SessionStatus, utc_now

logger = logging.getLogger(__name__)

# Matches both the legacy numeric URLs (/app/projects/2203306141) and the
# slugged ones (/app/project/work-6Jf8VQXxpwv56VQ7).
_PROJECT_URL_RE = re.compile(r"todoist\.com/app/projects?/(?:[\w-]*-)?([A-Za-z0-9]+)")


def extract_project_id(raw: str) -> str:
    """Return the project id from a bare id or a Todoist project URL."""
    value = (raw or "").strip()
    match = _PROJECT_URL_RE.search(value)
    if match:
        return match.group(1)
    return value


class SessionManager:
    def __init__(self, session_factory, todoist):
        self._session_factory = session_factory
        self._todoist = todoist

    async def _find_open_session(self, db, chat_id: int) -> Optional[Session]:
        stmt = (
            select(Session)
            .where(Session.chat_id == chat_id, Session.status == SessionStatus.open)
            .order_by(Session.started_at.desc())
            .limit(1)
        )
        return (await db.execute(stmt)).scalars().first()

    async def ensure_chat_exists(self, chat_id: int) -> None:
        async with self._session_factory() as db:
            if await db.get(Chat, chat_id) is not None:
                return
            db.add(Chat(id=chat_id, created_at=utc_now()))
            try:
                await db.commit()
            except IntegrityError:
                # Another request created it first.
                await db.rollback()

    async def set_project_id(self, chat_id: int, raw_project: str) -> str:
        """Validate a project id (or URL) against Todoist and store it for the chat."""
        project_id = extract_project_id(raw_project)
        if not project_id:
            raise InvalidProject("empty project id")

        projects: List[Dict[str, Any]] = await self._todoist.list_projects()
        if not any(str(p.get("id")) == project_id for p in projects if isinstance(p, dict)):
            raise InvalidProject(project_id)

        await self.ensure_chat_exists(chat_id)
        async with self._session_factory() as db:
            row = await db.get(ChatSettings, chat_id)
            now = utc_now()
            if row is None:
                db.add(ChatSettings(chat_id=chat_id, todoist_project_id=project_id, updated_at=now))
            else:
                row.todoist_project_id = project_id
                row.updated_at = now
            await db.commit()
        logger.info("Project for chat %s set to %s", chat_id, project_id)
        return project_id

    async def get_project_id(self, chat_id: int) -> str:
        async with self._session_factory() as db:
            row = await db.get(ChatSettings, chat_id)
        if row is None or not row.todoist_project_id:
            raise ProjectNotSet(str(chat_id))
        return row.todoist_project_id

    async def start_session(self, chat_id: int, owner_id: int) -> int:
        await self.ensure_chat_exists(chat_id)
        async with self._session_factory() as db:
            if await self._find_open_session(db, chat_id) is not None:
                raise SessionAlreadyExists(str(chat_id))
            session = Session(
                chat_id=chat_id,
                owner_id=owner_id,
                status=SessionStatus.open,
                started_at=utc_now(),
            )
            db.add(session)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise SessionAlreadyExists(str(chat_id)) from None
        logger.info("Session %s started in chat %s by %s", session.id, chat_id, owner_id)
        return session.id

    async def has_active_session(self, chat_id: int) -> bool:
        async with self._session_factory() as db:
            return await self._find_open_session(db, chat_id) is not None

    async def get_active_session(self, chat_id: int) -> Session:
        async with self._session_factory() as db:
            session = await self._find_open_session(db, chat_id)
        if session is None:
            raise NoActiveSession(str(chat_id))
        return session

    async def get_session(self, session_id: int) -> Session:
        async with self._session_factory() as db:
            session = await db.get(Session, session_id)
        if session is None:
            raise SessionNotFound(str(session_id))
        return session

    async def is_session_owner(self, session_id: int, user_id: int) -> bool:
        session = await self.get_session(session_id)
        if session.owner_id is None:
            return False
        return session.owner_id == user_id

    async def close_session(self, chat_id: int) -> int:
        """Close the chat's open session and return its id."""
        async with self._session_factory() as db:
            session = await self._find_open_session(db, chat_id)
            if session is None:
                raise NoActiveSession(str(chat_id))
            closed = await self._close(db, session.id)
        if not closed:
            logger.info("Session %s was already closed concurrently", session.id)
        return session.id

    async def close_session_by_id(self, session_id: int) -> bool:
        """Close a specific session. Returns False when it was not open."""
        async with self._session_factory() as db:
            return await self._close(db, session_id)

    async def _close(self, db, session_id: int) -> bool:
        stmt = (
            update(Session)
            .where(Session.id == session_id, Session.status == SessionStatus.open)
            .values(status=SessionStatus.closed, closed_at=utc_now())
        )
        res = await db.execute(stmt)
        await db.commit()
        if res.rowcount:
            logger.info("Session %s closed", session_id)
            return True
        return False

    async def save_message(
        self,
        chat_id: int,
        message_id: int,
        user_id: Optional[int],
        username: Optional[str],
        text: str,
        sent_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Persist a chat message, attached to the open session if there is one.

        Returns the session id the message was attached to.
        """
        await self.ensure_chat_exists(chat_id)
        async with self._session_factory() as db:
            active = await self._find_open_session(db, chat_id)
            message = Message(
                chat_id=chat_id,
                session_id=active.id if active is not None else None,
                message_id=message_id,
                user_id=user_id or None,
                username=username or None,
                text=text or "",
                ts=sent_at or utc_now(),
            )
            db.add(message)
            await db.commit()
            return message.session_id

    async def get_session_messages(self, session_id: int) -> List[Message]:
        """Messages of a session in capture order (oldest first)."""
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.ts.asc(), Message.id.asc())
        )
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

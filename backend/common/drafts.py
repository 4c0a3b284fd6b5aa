import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from common.errors import DraftNotFound
from common.models import AuditEdit, CreatedTask, DraftTask, utc_now

logger = logging.getLogger(__name__)


class DraftStore:
    """Draft tasks, created-task log and edit audit rows, keyed by session id."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def save_draft(
        self,
        session_id: int,
        title: str,
        description: Optional[str] = None,
        due_iso: Optional[str] = None,
        priority: Optional[int] = None,
        assignee_note: Optional[str] = None,
        labels: Optional[List[str]] = None,
    ) -> DraftTask:
        """Insert or overwrite the session's draft (latest write wins)."""
        async with self._session_factory() as db:
            draft = await db.get(DraftTask, session_id)
            if draft is None:
                draft = DraftTask(session_id=session_id)
                db.add(draft)
            draft.title = title
            draft.description = description or None
            draft.due_iso = due_iso or None
            draft.priority = priority if priority and 1 <= priority <= 4 else None
            draft.assignee_note = assignee_note or None
            draft.labels = list(labels) if labels else None
            draft.updated_at = utc_now()
            await db.commit()
        logger.info("Draft saved for session %s", session_id)
        return draft

    async def get_draft(self, session_id: int) -> DraftTask:
        async with self._session_factory() as db:
            draft = await db.get(DraftTask, session_id)
        if draft is None:
            raise DraftNotFound(str(session_id))
        return draft

    async def save_created_task(self, session_id: int, todoist_task_id: str, url: str) -> CreatedTask:
        async with self._session_factory() as db:
            row = CreatedTask(
                session_id=session_id,
                todoist_task_id=todoist_task_id,
                url=url,
                created_at=utc_now(),
            )
            db.add(row)
            await db.commit()
        return row

    async def get_created_task(self, session_id: int) -> Optional[CreatedTask]:
        stmt = (
            select(CreatedTask)
            .where(CreatedTask.session_id == session_id)
            .order_by(CreatedTask.id.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            return (await db.execute(stmt)).scalars().first()

    async def save_audit_edit(self, session_id: int, instruction_text: str, diff: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            db.add(
                AuditEdit(
                    session_id=session_id,
                    instruction_text=instruction_text,
                    diff_json=diff,
                    created_at=utc_now(),
                )
            )
            await db.commit()

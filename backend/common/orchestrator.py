"""Draft lifecycle: analyze a discussion, revise the draft, commit it to Todoist.

Collaborators are passed in so tests can swap the store, the analysis client
and the Todoist client independently.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from common.adapter import AnalysisError, AnalyzedTask
from common.errors import EmptyDiscussion, NoActiveSession, NotOwner
from common.fields import convert_to_due_iso, extract_assignee, format_message_line, priority_label
from common.models import SessionStatus

logger = logging.getLogger(__name__)

FALLBACK_TITLE_MAX_LEN = 100


class Analyzer(Protocol):
    async def analyze_discussion(self, messages: List[str]) -> AnalyzedTask: ...

    async def revise_draft(self, task: AnalyzedTask, feedback: str) -> AnalyzedTask: ...


class TaskCreator(Protocol):
    async def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        priority: Optional[int] = None,
        due_date: Optional[str] = None,
        labels: Optional[List[str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]: ...


@dataclass
class DraftPreview:
    session_id: int
    title: str
    description: str
    due_iso: Optional[str]
    priority: int
    assignee_note: Optional[str]
    labels: List[str] = field(default_factory=list)

    @property
    def priority_text(self) -> str:
        return priority_label(self.priority)

    @classmethod
    def from_draft(cls, draft) -> "DraftPreview":
        return cls(
            session_id=draft.session_id,
            title=draft.title or "",
            description=draft.description or "",
            due_iso=draft.due_iso,
            priority=draft.priority or 1,
            assignee_note=draft.assignee_note,
            labels=list(draft.labels or []),
        )


@dataclass
class CommitResult:
    session_id: int
    title: str
    todoist_task_id: str
    url: str
    already_created: bool = False


def format_discussion(messages) -> List[str]:
    return [
        format_message_line(m.username, m.ts, m.text)
        for m in messages
        if m.text
    ]


def _fallback_title(messages) -> str:
    for m in messages:
        text = (m.text or "").strip()
        if text:
            return text.splitlines()[0][:FALLBACK_TITLE_MAX_LEN]
    return ""


def _draft_fields(preview: DraftPreview) -> Dict[str, Any]:
    return {
        "title": preview.title,
        "description": preview.description,
        "due_iso": preview.due_iso,
        "priority": preview.priority,
        "assignee_note": preview.assignee_note,
        "labels": preview.labels,
    }


def draft_diff(before: DraftPreview, after: DraftPreview) -> Dict[str, Any]:
    """Changed fields as {"field": {"from": old, "to": new}}."""
    old, new = _draft_fields(before), _draft_fields(after)
    return {
        name: {"from": old[name], "to": new[name]}
        for name in old
        if old[name] != new[name]
    }


class TaskOrchestrator:
    def __init__(self, sessions, drafts, analyzer: Analyzer, todoist: TaskCreator):
        self._sessions = sessions
        self._drafts = drafts
        self._analyzer = analyzer
        self._todoist = todoist

    async def create_task_from_discussion(self, chat_id: int, user_id: int) -> DraftPreview:
        """Analyze the open discussion and store the result as its draft.

        Preconditions are checked in order: open session, caller is the owner,
        at least one message, project configured.
        """
        session = await self._sessions.get_active_session(chat_id)
        if session.owner_id is None or session.owner_id != user_id:
            raise NotOwner(str(session.id))

        messages = await self._sessions.get_session_messages(session.id)
        lines = format_discussion(messages)
        if not lines:
            raise EmptyDiscussion(str(session.id))

        await self._sessions.get_project_id(chat_id)

        analyzed = await self._analyzer.analyze_discussion(lines)
        title = (analyzed.title or "").strip() or _fallback_title(messages)
        if not title:
            raise AnalysisError("analysis returned an empty title")

        draft = await self._drafts.save_draft(
            session.id,
            title=title,
            description=analyzed.description,
            due_iso=convert_to_due_iso(analyzed.due_date),
            priority=analyzed.priority,
            assignee_note=extract_assignee(" ".join(m.text for m in messages if m.text)),
            labels=analyzed.labels,
        )
        logger.info("Draft created for session %s from %d messages", session.id, len(lines))
        return DraftPreview.from_draft(draft)

    async def revise_draft(self, session_id: int, feedback: str) -> DraftPreview:
        """Apply the owner's free-text feedback to the stored draft."""
        session = await self._sessions.get_session(session_id)
        if session.status != SessionStatus.open:
            raise NoActiveSession(str(session.chat_id))

        before = DraftPreview.from_draft(await self._drafts.get_draft(session_id))
        current = AnalyzedTask(
            title=before.title,
            description=before.description,
            due_date=before.due_iso or "",
            priority=before.priority,
            priority_text=before.priority_text,
            labels=before.labels,
        )
        revised = await self._analyzer.revise_draft(current, feedback)

        draft = await self._drafts.save_draft(
            session_id,
            title=(revised.title or "").strip() or before.title,
            description=revised.description,
            due_iso=convert_to_due_iso(revised.due_date),
            priority=revised.priority,
            assignee_note=before.assignee_note,
            labels=revised.labels,
        )
        after = DraftPreview.from_draft(draft)

        try:
            await self._drafts.save_audit_edit(session_id, feedback, draft_diff(before, after))
        except SQLAlchemyError:
            logger.exception("Failed to record edit audit for session %s", session_id)
        return after

    async def commit_draft(self, session_id: int, chat_id: int) -> CommitResult:
        """Create the Todoist task for the session's draft and close the session.

        A session that already produced a task returns that task instead of
        creating another one. Failures after the task exists are logged, not
        raised, since the task itself was created.
        """
        existing = await self._drafts.get_created_task(session_id)
        if existing is not None:
            await self._sessions.close_session_by_id(session_id)
            draft = await self._drafts.get_draft(session_id)
            return CommitResult(
                session_id=session_id,
                title=draft.title or "",
                todoist_task_id=existing.todoist_task_id,
                url=existing.url,
                already_created=True,
            )

        draft = await self._drafts.get_draft(session_id)
        project_id = await self._sessions.get_project_id(chat_id)

        created = await self._todoist.create_task(
            title=draft.title or "",
            description=draft.description,
            project_id=project_id,
            priority=draft.priority,
            due_date=draft.due_iso,
            labels=list(draft.labels or []),
            idempotency_key=f"session-{session_id}",
        )
        task_id = str(created.get("id") or "")
        url = created.get("url") or ""

        try:
            await self._drafts.save_created_task(session_id, task_id, url)
        except SQLAlchemyError:
            logger.exception("Task %s created but not recorded for session %s", task_id, session_id)
        try:
            await self._sessions.close_session_by_id(session_id)
        except SQLAlchemyError:
            logger.exception("Task %s created but session %s was not closed", task_id, session_id)

        logger.info("Session %s committed as Todoist task %s", session_id, task_id)
        return CommitResult(session_id=session_id, title=draft.title or "", todoist_task_id=task_id, url=url)

    async def cancel_session(self, session_id: int) -> bool:
        """Close the session; the draft stays stored as history."""
        return await self._sessions.close_session_by_id(session_id)

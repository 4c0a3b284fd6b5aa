"""Inline-button protocol for draft tasks: confirm, edit and cancel.

Only the user who started the discussion may act on its draft. Everyone
else gets a short notice and nothing changes. Buttons of a session that is
no longer open are reported as stale.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError

from common.adapter import AnalysisError
from common.errors import DraftNotFound, ProjectNotSet, SessionNotFound
from common.models import SessionStatus
from common.telegram import (
    CALLBACK_CANCEL, CALLBACK_CONFIRM, CALLBACK_DATA_SEPARATOR, CALLBACK_EDIT, format_task_created
)

logger = logging.getLogger(__name__)

CALLBACK_ACTIONS = (CALLBACK_CONFIRM, CALLBACK_EDIT, CALLBACK_CANCEL)

INVALID_TEXT = "Invalid request."
STALE_TEXT = "This proposal is no longer active."
FAILED_TEXT = "Something went wrong. Please try again."

NOT_OWNER_TEXT = {
    CALLBACK_CONFIRM: "Only the discussion initiator can confirm this task.",
    CALLBACK_EDIT: "Only the discussion initiator can edit this task.",
    CALLBACK_CANCEL: "Only the discussion initiator can cancel this task.",
}

EDIT_PROMPT_TEXT = (
    "✏️ <b>What should be changed?</b>\n\n"
    "Reply to this message with your changes, for example:\n"
    "• change the title to \"Fix login page\"\n"
    "• set the due date to tomorrow\n"
    "• make it urgent\n"
    "• add the label frontend"
)

CANCELLED_TEXT = "❌ Task creation canceled. The discussion is closed."


@dataclass
class CallbackOutcome:
    answer_text: str
    action: Optional[str] = None
    session_id: Optional[int] = None
    is_owner: bool = False
    clear_keyboard: bool = False
    reply_text: Optional[str] = None
    # reply_text is an edit prompt; the owner's reply to it carries the revision.
    awaiting_edit_reply: bool = False
    session_closed: bool = False


def parse_callback_data(data: str) -> Tuple[Optional[str], Optional[int]]:
    parts = (data or "").split(CALLBACK_DATA_SEPARATOR)
    if len(parts) != 2:
        return None, None
    action, raw_id = parts
    if action not in CALLBACK_ACTIONS or not raw_id.isdigit():
        return None, None
    return action, int(raw_id)


class CallbackHandler:
    def __init__(self, sessions, orchestrator):
        self._sessions = sessions
        self._orchestrator = orchestrator

    async def handle(self, data: str, user_id: Optional[int], chat_id: int) -> CallbackOutcome:
        action, session_id = parse_callback_data(data)
        if action is None or user_id is None:
            return CallbackOutcome(answer_text=INVALID_TEXT)

        try:
            session = await self._sessions.get_session(session_id)
            is_owner = await self._sessions.is_session_owner(session_id, user_id)
        except SessionNotFound:
            return CallbackOutcome(answer_text=STALE_TEXT, action=action, session_id=session_id)
        except SQLAlchemyError:
            logger.exception("Ownership check failed for session %s (%s)", session_id, action)
            return CallbackOutcome(answer_text=FAILED_TEXT, action=action, session_id=session_id)
        if session.chat_id != chat_id:
            logger.warning("Callback for session %s pressed in foreign chat %s", session_id, chat_id)
            return CallbackOutcome(answer_text=INVALID_TEXT, action=action, session_id=session_id)
        if not is_owner:
            logger.info("User %s is not the owner of session %s (%s)", user_id, session_id, action)
            return CallbackOutcome(answer_text=NOT_OWNER_TEXT[action], action=action, session_id=session_id)
        if session.status != SessionStatus.open:
            return CallbackOutcome(
                answer_text=STALE_TEXT, action=action, session_id=session_id, is_owner=True, clear_keyboard=True
            )

        try:
            if action == CALLBACK_CONFIRM:
                return await self._confirm(session_id, chat_id)
            if action == CALLBACK_EDIT:
                return self._edit(session_id)
            return await self._cancel(session_id)
        except (httpx.HTTPError, AnalysisError, SQLAlchemyError, RuntimeError):
            logger.exception("Callback %s failed for session %s", action, session_id)
            return CallbackOutcome(answer_text=FAILED_TEXT, action=action, session_id=session_id, is_owner=True)

    async def _confirm(self, session_id: int, chat_id: int) -> CallbackOutcome:
        try:
            result = await self._orchestrator.commit_draft(session_id, chat_id)
        except DraftNotFound:
            return CallbackOutcome(
                answer_text="Draft not found. Run /create_task again.",
                action=CALLBACK_CONFIRM, session_id=session_id, is_owner=True,
            )
        except ProjectNotSet:
            return CallbackOutcome(
                answer_text="Set the Todoist project with /set_project first.",
                action=CALLBACK_CONFIRM, session_id=session_id, is_owner=True,
            )
        except httpx.HTTPError:
            logger.exception("Todoist task creation failed for session %s", session_id)
            return CallbackOutcome(
                answer_text="Failed to create the task in Todoist. Please try again.",
                action=CALLBACK_CONFIRM, session_id=session_id, is_owner=True,
            )
        answer = "✅ Task already created." if result.already_created else "✅ Great! Creating the task."
        return CallbackOutcome(
            answer_text=answer,
            action=CALLBACK_CONFIRM,
            session_id=session_id,
            is_owner=True,
            clear_keyboard=True,
            reply_text=format_task_created(result.title, result.url),
            session_closed=True,
        )

    def _edit(self, session_id: int) -> CallbackOutcome:
        return CallbackOutcome(
            answer_text="✏️ Reply with your changes.",
            action=CALLBACK_EDIT,
            session_id=session_id,
            is_owner=True,
            reply_text=EDIT_PROMPT_TEXT,
            awaiting_edit_reply=True,
        )

    async def _cancel(self, session_id: int) -> CallbackOutcome:
        await self._orchestrator.cancel_session(session_id)
        return CallbackOutcome(
            answer_text="❌ Task creation canceled.",
            action=CALLBACK_CANCEL,
            session_id=session_id,
            is_owner=True,
            clear_keyboard=True,
            reply_text=CANCELLED_TEXT,
            session_closed=True,
        )

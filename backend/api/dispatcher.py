"""Routes parsed Telegram updates to commands, edit replies, capture and callbacks."""
import logging
from typing import Any, Dict

import httpx
from sqlalchemy.exc import SQLAlchemyError

from api.commands import BotServices, describe_error, handle_telegram_command
from common.adapter import AnalysisError
from common.errors import DiscussionError
from common.telegram import (
    answer_callback_query, build_draft_reply_markup, clear_reply_markup, extract_command,
    format_draft_preview, send_message, sent_message_id
)

logger = logging.getLogger(__name__)

ANALYSIS_FAILED_TEXT = "❌ AI analysis failed. Please try again."
REVISION_FAILED_TEXT = "❌ Could not update the task. Reply to the edit prompt again to retry."
TRACKER_FAILED_TEXT = "❌ Todoist is not reachable right now. Please try again later."


async def dispatch_update(services: BotServices, data: Dict[str, Any]) -> None:
    if data.get("kind") == "callback":
        await handle_callback_update(services, data)
    else:
        await handle_message_update(services, data)


async def handle_message_update(services: BotServices, data: Dict[str, Any]) -> None:
    chat_id = data["chat_id"]
    text = data.get("text") or ""
    command_name, args = extract_command(text)

    if command_name is None:
        reply_to = data.get("reply_to_message_id")
        user_id = data.get("user_id")
        if reply_to is not None and user_id is not None:
            pending = await services.edit_prompts.resolve(chat_id, reply_to, user_id)
            if pending is not None:
                await _apply_edit_reply(services, chat_id, reply_to, pending, text)
                return
        await _capture_message(services, data)
        return

    try:
        reply = await handle_telegram_command(services, command_name, args, data)
    except DiscussionError as exc:
        await send_message(chat_id, describe_error(exc))
        return
    except AnalysisError:
        logger.exception("Analysis failed for chat %s", chat_id)
        await send_message(chat_id, ANALYSIS_FAILED_TEXT)
        return
    except httpx.HTTPError:
        logger.exception("Todoist call failed for %s in chat %s", command_name, chat_id)
        await send_message(chat_id, TRACKER_FAILED_TEXT)
        return
    await send_message(chat_id, reply.text, reply_markup=reply.reply_markup)


async def _capture_message(services: BotServices, data: Dict[str, Any]) -> None:
    chat_id = data["chat_id"]
    if not await services.sessions.has_active_session(chat_id):
        return
    await services.sessions.save_message(
        chat_id,
        data.get("message_id") or 0,
        data.get("user_id"),
        data.get("username"),
        data.get("text") or "",
        sent_at=data.get("sent_at"),
    )


async def _apply_edit_reply(services: BotServices, chat_id: int, prompt_id: int, pending, feedback: str) -> None:
    try:
        preview = await services.orchestrator.revise_draft(pending.session_id, feedback)
    except DiscussionError as exc:
        await send_message(chat_id, describe_error(exc))
        return
    except (AnalysisError, httpx.HTTPError, SQLAlchemyError):
        logger.exception("Draft revision failed for session %s", pending.session_id)
        # Keep the prompt live so the owner can reply again.
        await services.edit_prompts.track(chat_id, prompt_id, pending.session_id, pending.user_id)
        await send_message(chat_id, REVISION_FAILED_TEXT)
        return
    await send_message(
        chat_id,
        format_draft_preview(preview, updated=True),
        reply_markup=build_draft_reply_markup(preview.session_id),
    )


async def handle_callback_update(services: BotServices, data: Dict[str, Any]) -> None:
    chat_id = data["chat_id"]
    outcome = await services.callbacks.handle(data.get("callback_data") or "", data.get("user_id"), chat_id)

    if data.get("callback_query_id"):
        await answer_callback_query(data["callback_query_id"], outcome.answer_text)
    if outcome.clear_keyboard and data.get("message_id"):
        await clear_reply_markup(chat_id, data["message_id"])
    if outcome.session_closed and outcome.session_id is not None:
        await services.edit_prompts.discard_session(outcome.session_id)

    if not outcome.reply_text:
        return
    sent = await send_message(chat_id, outcome.reply_text)
    if outcome.awaiting_edit_reply:
        prompt_id = sent_message_id(sent)
        if prompt_id is None:
            logger.warning("Edit prompt for session %s was not delivered", outcome.session_id)
            return
        await services.edit_prompts.track(chat_id, prompt_id, outcome.session_id, data["user_id"])

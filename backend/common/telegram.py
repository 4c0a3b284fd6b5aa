import logging
import httpx
from datetime import datetime, timezone
from html import escape as _html_escape
from typing import Optional, Tuple, Dict, Any, List
from common.config import settings
from common.fields import format_due_for_display, priority_label


def escape_html(text: str) -> str:
    """Escape <, >, & for Telegram HTML parse mode."""
    return _html_escape(str(text), quote=False)

logger = logging.getLogger(__name__)

TELEGRAM_TEXT_MAX_LEN = 4096

# Inline button payloads are "<action>:<session_id>".
CALLBACK_CONFIRM = "confirm_task"
CALLBACK_EDIT = "edit_task"
CALLBACK_CANCEL = "cancel_task"
CALLBACK_DATA_SEPARATOR = ":"


def verify_telegram_secret(headers: Dict[str, str]) -> bool:
    if not settings.TELEGRAM_WEBHOOK_SECRET:
        return True
    return headers.get("X-Telegram-Bot-Api-Secret-Token") == settings.TELEGRAM_WEBHOOK_SECRET


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.lstrip("-").isdigit():
        return int(value)
    return None


def _sent_at(message: Dict[str, Any]) -> Optional[datetime]:
    raw = message.get("date")
    if isinstance(raw, int) and raw > 0:
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return None


def parse_update(update_json: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract basic update info from Telegram payload.
    Supports text message and callback_query updates.
    """
    update_id = _as_int(update_json.get("update_id"))

    message = update_json.get("message")
    if message:
        chat = message.get("chat")
        text = message.get("text")
        chat_id = _as_int((chat or {}).get("id"))
        if chat_id is not None and text:
            from_user = message.get("from") or {}
            reply_to = message.get("reply_to_message") or {}
            return {
                "kind": "message",
                "update_id": update_id,
                "chat_id": chat_id,
                "chat_type": chat.get("type"),
                "message_id": _as_int(message.get("message_id")),
                "user_id": _as_int(from_user.get("id")),
                "username": from_user.get("username") or from_user.get("first_name"),
                "text": text,
                "sent_at": _sent_at(message),
                "reply_to_message_id": _as_int(reply_to.get("message_id")),
            }

    callback = update_json.get("callback_query")
    if callback and isinstance(callback, dict):
        cb_message = callback.get("message") or {}
        cb_chat = cb_message.get("chat") or {}
        data = callback.get("data")
        chat_id = _as_int(cb_chat.get("id"))
        if chat_id is not None and isinstance(data, str):
            from_user = callback.get("from") or {}
            return {
                "kind": "callback",
                "update_id": update_id,
                "chat_id": chat_id,
                "message_id": _as_int(cb_message.get("message_id")),
                "user_id": _as_int(from_user.get("id")),
                "username": from_user.get("username") or from_user.get("first_name"),
                "callback_query_id": callback.get("id"),
                "callback_data": data,
                "text": cb_message.get("text") or "",
            }

    return None


def build_callback_data(action: str, session_id: int) -> str:
    return f"{action}{CALLBACK_DATA_SEPARATOR}{session_id}"


def build_draft_reply_markup(session_id: int) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Confirm", "callback_data": build_callback_data(CALLBACK_CONFIRM, session_id)},
                {"text": "✏️ Edit", "callback_data": build_callback_data(CALLBACK_EDIT, session_id)},
                {"text": "❌ Cancel", "callback_data": build_callback_data(CALLBACK_CANCEL, session_id)},
            ]
        ]
    }


async def answer_callback_query(callback_query_id: str, text: Optional[str] = None) -> Dict[str, Any]:
    if not settings.TELEGRAM_BOT_TOKEN:
        return {"ok": False, "error": "token_missing"}
    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/answerCallbackQuery"
    payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text[:200]
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.error(
                "Failed to answer callback query (status=%s, body=%s)",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": "telegram_callback_failed"}
    except httpx.HTTPError as e:
        logger.error(f"Failed to answer callback query: {e}")
        return {"ok": False, "error": str(e)}


async def clear_reply_markup(chat_id: int, message_id: int) -> Dict[str, Any]:
    """Remove the inline keyboard from a sent message, keeping its text."""
    if not settings.TELEGRAM_BOT_TOKEN:
        return {"ok": False, "error": "token_missing"}
    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/editMessageReplyMarkup"
    payload: Dict[str, Any] = {
        "chat_id": chat_id,
        "message_id": message_id,
        "reply_markup": {"inline_keyboard": []},
    }
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.warning(
                "Telegram keyboard removal failed (status=%s, body=%s).",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": f"status_{resp.status_code}"}
    except httpx.HTTPError as e:
        logger.error(f"Failed to edit Telegram message: {e}")
        return {"ok": False, "error": str(e)}


async def send_message(chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Sends a message back to Telegram.

    Returns the API response of the last chunk; its result.message_id is the
    id of the message carrying reply_markup, if any.
    """
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}

    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/sendMessage"
    chunks = split_telegram_text(text or "", TELEGRAM_TEXT_MAX_LEN)
    if not chunks:
        chunks = [""]

    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            # Send in chunks to avoid Telegram hard length cap.
            last_json: Dict[str, Any] = {"ok": True}
            total_chunks = len(chunks)
            for idx, chunk in enumerate(chunks):
                payload: Dict[str, Any] = {
                    "chat_id": chat_id,
                    "text": chunk,
                    "parse_mode": "HTML",
                }
                # Keep inline controls on the final chunk only.
                if isinstance(reply_markup, dict) and idx == total_chunks - 1:
                    payload["reply_markup"] = reply_markup
                resp = await client.post(url, json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                # Common 400 case is parse issues; retry once with plain text.
                logger.warning(
                    "Telegram send failed with HTML mode (status=%s, body=%s). Retrying without parse_mode.",
                    resp.status_code,
                    resp.text,
                )
                payload.pop("parse_mode")
                resp = await client.post(url, json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                logger.error(
                    "Failed to send Telegram message (status=%s, body=%s)",
                    resp.status_code,
                    resp.text,
                )
                return {"ok": False, "error": "telegram_send_failed"}
            return last_json
    except httpx.HTTPError as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return {"ok": False, "error": str(e)}


def sent_message_id(response: Dict[str, Any]) -> Optional[int]:
    result = response.get("result") if isinstance(response, dict) else None
    if isinstance(result, dict):
        return _as_int(result.get("message_id"))
    return None


def extract_command(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parses a string for a command like /start arg1 arg2.
    Returns (command, args_string).
    """
    if not text.startswith("/"):
        return None, None

    parts = text.split(maxsplit=1)
    command = parts[0].lower().split("@")[0]  # strip @botname suffix
    args = parts[1].strip() if len(parts) > 1 else None
    return command, args or None


def format_draft_preview(preview: Any, updated: bool = False) -> str:
    """Render a draft task with its fields for the confirmation message."""
    header = "📝 <b>Updated Task Preview</b>" if updated else "📝 <b>Draft Task Preview</b>"
    lines = [
        header,
        "",
        f"<b>Title:</b> {escape_html(preview.title)}",
        "",
        f"<b>Description:</b> {escape_html(preview.description or '')}",
        "",
    ]
    due_display = format_due_for_display(preview.due_iso or "")
    if due_display:
        lines.extend([f"<b>Due:</b> {escape_html(due_display)}", ""])
    lines.extend([f"<b>Priority:</b> {escape_html(priority_label(preview.priority))}", ""])
    if preview.assignee_note:
        lines.extend([f"<b>Assigned to:</b> {escape_html(preview.assignee_note)}", ""])
    if preview.labels:
        lines.extend([f"<b>Labels:</b> {escape_html(', '.join(preview.labels))}", ""])
    lines.append("Please confirm to create this task in Todoist.")
    return "\n".join(lines)


def format_task_created(title: str, url: str) -> str:
    if url:
        return f'✅ <b>Task created:</b> <a href="{_html_escape(url, quote=True)}">{escape_html(title)}</a>'
    return f"✅ <b>Task created:</b> {escape_html(title)}"


def format_projects_list(projects: List[Dict[str, Any]]) -> str:
    if not projects:
        return "No projects found."
    lines = ["📂 <b>Projects</b>", ""]
    for project in projects:
        lines.append(f"• <b>{escape_html(project.get('name') or '')}</b>")
        lines.append(f"  ID: <code>{escape_html(project.get('id') or '')}</code>")
        lines.append(f"  Tasks: <code>/list tasks {escape_html(project.get('id') or '')}</code>")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_tasks_list(tasks: List[Dict[str, Any]], project_label: str) -> str:
    if not tasks:
        return f"No tasks found in {escape_html(project_label)}."
    lines = [f"📝 <b>Tasks in {escape_html(project_label)}</b>", ""]
    for task in tasks:
        mark = "✅" if task.get("is_completed") else "⬜"
        lines.append(f"{mark} <b>{escape_html(task.get('content') or '')}</b>")
        lines.append(f"  ID: <code>{escape_html(task.get('id') or '')}</code>")
        due = task.get("due") or {}
        if due.get("date"):
            lines.append(f"  Due: {escape_html(due['date'])}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_task_details(task: Dict[str, Any]) -> str:
    lines = [
        "📝 <b>Task Details</b>",
        "",
        f"<b>Title:</b> {escape_html(task.get('content') or '')}",
        f"<b>ID:</b> <code>{escape_html(task.get('id') or '')}</code>",
    ]
    if task.get("description"):
        lines.append(f"<b>Description:</b> {escape_html(task['description'])}")
    due = task.get("due") or {}
    if due.get("date"):
        due_text = escape_html(due["date"])
        if due.get("datetime"):
            due_text += f" at {escape_html(due['datetime'])}"
        lines.append(f"<b>Due:</b> {due_text}")
    lines.append(f"<b>Priority:</b> {escape_html(priority_label(task.get('priority')))}")
    if task.get("project_id"):
        lines.append(f"<b>Project:</b> {escape_html(task['project_id'])}")
    if task.get("labels"):
        lines.append(f"<b>Labels:</b> {escape_html(', '.join(task['labels']))}")
    if task.get("url"):
        lines.extend(["", f'<a href="{_html_escape(task["url"], quote=True)}">Open in Todoist</a>'])
    return "\n".join(lines)


def split_telegram_text(text: str, max_len: int = TELEGRAM_TEXT_MAX_LEN) -> List[str]:
    """Split long text into Telegram-safe chunks while preferring line boundaries."""
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]

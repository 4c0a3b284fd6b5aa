"""Chat command handlers.

Each handler receives the bot services, the parsed update and the argument
string, and returns the reply to send. Precondition errors raised by the
core propagate to the dispatcher, which turns them into fixed replies.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from common.errors import DiscussionError, NoActiveSession, ProjectNotSet
from common.telegram import (
    build_draft_reply_markup, escape_html, format_draft_preview, format_projects_list,
    format_task_details, format_tasks_list
)

logger = logging.getLogger(__name__)


@dataclass
class BotServices:
    sessions: Any
    drafts: Any
    orchestrator: Any
    callbacks: Any
    edit_prompts: Any
    todoist: Any


@dataclass
class CommandReply:
    text: str
    reply_markup: Optional[Dict[str, Any]] = None


ERROR_REPLIES = {
    "no_active_session": "No active discussion. Start one with /start_discussion.",
    "session_already_exists": (
        "A discussion is already in progress. Finish it with /create_task or /cancel before starting a new one."
    ),
    "session_not_found": "This discussion no longer exists.",
    "project_not_set": "Set the Todoist project first: /set_project &lt;project id or URL&gt;",
    "invalid_project": "Invalid project ID. Check it with /list projects and try again.",
    "empty_discussion": "No messages in the discussion yet. Talk it over first, then run /create_task.",
    "not_owner": "Only the user who started this discussion can do that.",
    "draft_not_found": "No draft task found. Run /create_task first.",
}


def describe_error(exc: DiscussionError) -> str:
    return ERROR_REPLIES.get(exc.code, "That action is not possible right now.")


Handler = Callable[[BotServices, Dict[str, Any], Optional[str]], Awaitable[CommandReply]]

_COMMANDS: Dict[str, Tuple[Handler, str]] = {}


def command(name: str, description: str):
    def register(func: Handler) -> Handler:
        _COMMANDS[name] = (func, description)
        return func
    return register


def registered_commands() -> List[Tuple[str, str]]:
    return [(name, desc) for name, (_, desc) in _COMMANDS.items()]


async def handle_telegram_command(
    services: BotServices, command_name: str, args: Optional[str], data: Dict[str, Any]
) -> CommandReply:
    entry = _COMMANDS.get(command_name)
    if entry is None:
        return CommandReply("Unknown command. Use /help to see available commands.")
    handler, _ = entry
    return await handler(services, data, args)


# --- Discussion commands ---

@command("/start", "Start interacting with the bot")
async def cmd_start(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    return CommandReply(
        "🤖 <b>Welcome to the discussion-to-task bot!</b>\n\n"
        "I turn group discussions into Todoist tasks:\n"
        "1. <code>/set_project &lt;id or URL&gt;</code> picks the Todoist project\n"
        "2. <code>/start_discussion</code> starts recording the conversation\n"
        "3. <code>/create_task</code> drafts a task from it for you to confirm\n\n"
        "Type /help to see all commands."
    )


@command("/help", "Show available commands")
async def cmd_help(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    lines = ["<b>Available commands</b>", ""]
    for name, description in registered_commands():
        lines.append(f"{name} - {escape_html(description)}")
    return CommandReply("\n".join(lines))


@command("/set_project", "Set the Todoist project for this chat (usage: /set_project <id or URL>)")
async def cmd_set_project(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply(
            "Please provide a project ID or URL. Example: <code>/set_project 2203306141</code>"
        )
    project_id = await services.sessions.set_project_id(data["chat_id"], args)
    return CommandReply(f"✅ Project set: <code>{escape_html(project_id)}</code>")


@command("/start_discussion", "Start recording a discussion")
async def cmd_start_discussion(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    chat_id = data["chat_id"]
    if data.get("user_id") is None:
        # Anonymous admins and channel posts have no sender to own the discussion.
        return CommandReply("I can't tell who is starting this discussion. Send the command from your own account.")
    await services.sessions.get_project_id(chat_id)
    await services.sessions.start_session(chat_id, data["user_id"])
    return CommandReply(
        "🟢 <b>Discussion started.</b>\n\n"
        "I'm recording messages now. When you're done, run /create_task to draft a task, "
        "or /cancel to stop."
    )


async def _draft_from_discussion(services: BotServices, data: Dict[str, Any]) -> CommandReply:
    preview = await services.orchestrator.create_task_from_discussion(data["chat_id"], data["user_id"])
    return CommandReply(format_draft_preview(preview), build_draft_reply_markup(preview.session_id))


@command("/create_task", "Draft a task from the current discussion")
async def cmd_create_task(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    return await _draft_from_discussion(services, data)


@command("/analyze", "Same as /create_task")
async def cmd_analyze(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    return await _draft_from_discussion(services, data)


@command("/cancel", "Cancel the current discussion")
async def cmd_cancel(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    chat_id = data["chat_id"]
    try:
        session = await services.sessions.get_active_session(chat_id)
    except NoActiveSession:
        return CommandReply("No active discussion to cancel.")
    if session.owner_id is None or session.owner_id != data["user_id"]:
        return CommandReply("Only the user who started this discussion can cancel it.")
    await services.sessions.close_session(chat_id)
    await services.edit_prompts.discard_session(session.id)
    return CommandReply("❌ Discussion canceled.")


# --- Todoist commands ---

@command("/list", "List tasks or projects (usage: /list [tasks|projects] [project_id])")
async def cmd_list(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    parts = (args or "").split()
    list_type = "tasks"
    project_id: Optional[str] = None
    if parts:
        if parts[0] in ("tasks", "projects"):
            list_type = parts[0]
        else:
            project_id = parts[0]
        if len(parts) > 1 and list_type == "tasks":
            project_id = parts[1]

    try:
        if list_type == "projects":
            return CommandReply(format_projects_list(await services.todoist.list_projects()))

        if project_id is None:
            try:
                project_id = await services.sessions.get_project_id(data["chat_id"])
            except ProjectNotSet:
                project_id = None
        tasks = await services.todoist.list_tasks(project_id)
        label = "all projects"
        if project_id:
            label = f"project {project_id}"
            for project in await services.todoist.list_projects():
                if str(project.get("id")) == project_id and project.get("name"):
                    label = project["name"]
                    break
        return CommandReply(format_tasks_list(tasks, label))
    except httpx.HTTPError:
        logger.exception("Todoist list failed for chat %s", data["chat_id"])
        return CommandReply("❌ Failed to fetch data from Todoist. Please try again later.")


@command("/view", "Show task details (usage: /view <task_id>)")
async def cmd_view(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply("Please provide a task ID. Example: <code>/view 123456</code>")
    task_id = args.split()[0]
    try:
        task = await services.todoist.get_task(task_id)
    except httpx.HTTPError:
        logger.exception("Todoist get_task failed for %s", task_id)
        return CommandReply("❌ Failed to get the task. Please try again later.")
    if task is None:
        return CommandReply(f"Task <code>{escape_html(task_id)}</code> not found.")
    return CommandReply(format_task_details(task))


@command("/create", "Create a task directly (usage: /create <title>)")
async def cmd_create(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply("Please provide a task title. Example: <code>/create Buy milk</code>")
    try:
        project_id: Optional[str] = await services.sessions.get_project_id(data["chat_id"])
    except ProjectNotSet:
        project_id = None
    try:
        task = await services.todoist.create_task(title=args, project_id=project_id)
    except httpx.HTTPError:
        logger.exception("Todoist create failed for chat %s", data["chat_id"])
        return CommandReply("❌ Failed to create the task. Please try again later.")
    return CommandReply(
        "✅ <b>Task created</b>\n\n"
        f"<b>Task:</b> {escape_html(task.get('content') or args)}\n"
        f"<b>ID:</b> <code>{escape_html(task.get('id') or '')}</code>"
    )


_PRIORITY_VALUES = {
    "1": 1, "normal": 1, "p1": 1,
    "2": 2, "medium": 2, "p2": 2,
    "3": 3, "high": 3, "p3": 3,
    "4": 4, "urgent": 4, "p4": 4,
}


def parse_update_fields(pairs: List[str]) -> Tuple[Dict[str, Any], List[str]]:
    """Turn ["field=value", ...] into a Todoist update payload and the list of updated field names."""
    payload: Dict[str, Any] = {}
    updated: List[str] = []
    for pair in pairs:
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        key, value = key.strip().lower(), value.strip()
        if not value:
            continue
        if key in ("content", "title"):
            payload["content"] = value
            updated.append("content")
        elif key in ("description", "desc"):
            payload["description"] = value
            updated.append("description")
        elif key in ("due", "due_string"):
            payload["due_string"] = value
            updated.append("due date")
        elif key in ("priority", "prio") and value.lower() in _PRIORITY_VALUES:
            payload["priority"] = _PRIORITY_VALUES[value.lower()]
            updated.append("priority")
        elif key in ("labels", "label"):
            payload["labels"] = [label.strip() for label in value.split(",") if label.strip()]
            updated.append("labels")
    return payload, updated


@command("/update", "Update a task (usage: /update <task_id> field=value ...)")
async def cmd_update(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    usage = (
        "Usage: <code>/update task_id field=value [field2=value2...]</code>\n"
        "Supported fields: content, description, due, priority, labels"
    )
    parts = (args or "").split()
    if len(parts) < 2:
        return CommandReply("⚠️ Missing arguments.\n\n" + usage)
    task_id = parts[0]
    payload, updated = parse_update_fields(parts[1:])
    if not payload:
        return CommandReply("⚠️ No valid fields to update.\n\n" + usage)
    try:
        if await services.todoist.get_task(task_id) is None:
            return CommandReply(f"Task <code>{escape_html(task_id)}</code> not found.")
        await services.todoist.update_task(task_id, payload)
    except httpx.HTTPError:
        logger.exception("Todoist update failed for %s", task_id)
        return CommandReply("❌ Failed to update the task. Please try again later.")
    return CommandReply(
        "✅ <b>Task updated</b>\n\n"
        f"<b>Updated fields:</b> {escape_html(', '.join(updated))}\n"
        f"View details with: <code>/view {escape_html(task_id)}</code>"
    )


@command("/complete", "Mark a task as complete (usage: /complete <task_id>)")
async def cmd_complete(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply("Please provide a task ID. Example: <code>/complete 123456</code>")
    task_id = args.split()[0]
    try:
        task = await services.todoist.get_task(task_id)
        if task is None:
            return CommandReply(f"Task <code>{escape_html(task_id)}</code> not found.")
        await services.todoist.close_task(task_id)
    except httpx.HTTPError:
        logger.exception("Todoist close failed for %s", task_id)
        return CommandReply("❌ Failed to complete the task. Please try again later.")
    return CommandReply(f"✅ <b>Task completed:</b> {escape_html(task.get('content') or task_id)}")


@command("/delete", "Delete a task (usage: /delete <task_id>)")
async def cmd_delete(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply("Please provide a task ID. Example: <code>/delete 123456</code>")
    task_id = args.split()[0]
    try:
        task = await services.todoist.get_task(task_id)
    except httpx.HTTPError:
        logger.exception("Todoist get_task failed for %s", task_id)
        return CommandReply("❌ Failed to find the task. Please try again later.")
    if task is None:
        return CommandReply(f"Task <code>{escape_html(task_id)}</code> not found.")
    return CommandReply(
        "🗑️ <b>Confirm delete</b>\n\n"
        f"<b>Task:</b> {escape_html(task.get('content') or '')}\n"
        f"<b>ID:</b> <code>{escape_html(task_id)}</code>\n\n"
        f"To confirm, send <code>/delete_confirm {escape_html(task_id)}</code>\n"
        "To keep the task, ignore this message."
    )


@command("/delete_confirm", "Confirm task deletion (usage: /delete_confirm <task_id>)")
async def cmd_delete_confirm(services: BotServices, data: Dict[str, Any], args: Optional[str]) -> CommandReply:
    if not args:
        return CommandReply("Please provide a task ID. Example: <code>/delete_confirm 123456</code>")
    task_id = args.split()[0]
    try:
        await services.todoist.delete_task(task_id)
    except httpx.HTTPError:
        logger.exception("Todoist delete failed for %s", task_id)
        return CommandReply("❌ Failed to delete the task. Please try again later.")
    return CommandReply(f"✅ Task <code>{escape_html(task_id)}</code> deleted.")

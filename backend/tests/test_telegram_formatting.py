"""Telegram parsing and formatting tests."""
from datetime import datetime, timezone

from common.orchestrator import DraftPreview
from common.telegram import (
    build_draft_reply_markup, escape_html, extract_command, format_draft_preview, format_projects_list,
    format_task_created, format_task_details, format_tasks_list, parse_update, sent_message_id,
    split_telegram_text
)


class TestParseUpdate:
    def test_message_fields(self):
        data = parse_update({
            "update_id": 900,
            "message": {
                "message_id": 15,
                "from": {"id": 42, "first_name": "Alice"},
                "chat": {"id": -1001, "type": "supergroup"},
                "date": 1740819600,
                "text": "hello",
                "reply_to_message": {"message_id": 14},
            },
        })
        assert data["kind"] == "message"
        assert data["update_id"] == 900
        assert data["chat_id"] == -1001
        assert data["chat_type"] == "supergroup"
        assert data["user_id"] == 42
        assert data["username"] == "Alice"
        assert data["reply_to_message_id"] == 14
        assert data["sent_at"] == datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_message_without_sender_or_date(self):
        data = parse_update({"update_id": 1, "message": {"message_id": 2, "chat": {"id": 5}, "text": "hi"}})
        assert data["user_id"] is None
        assert data["username"] is None
        assert data["sent_at"] is None
        assert data["reply_to_message_id"] is None

    def test_callback_fields(self):
        data = parse_update({
            "update_id": 901,
            "callback_query": {
                "id": "cbq_9",
                "from": {"id": 77, "username": "bob"},
                "message": {"message_id": 30, "chat": {"id": -1001}, "text": "preview"},
                "data": "confirm_task:3",
            },
        })
        assert data["kind"] == "callback"
        assert data["chat_id"] == -1001
        assert data["message_id"] == 30
        assert data["user_id"] == 77
        assert data["callback_query_id"] == "cbq_9"
        assert data["callback_data"] == "confirm_task:3"

    def test_unsupported_updates(self):
        assert parse_update({"update_id": 1}) is None
        assert parse_update({"update_id": 1, "message": {"chat": {"id": 5}}}) is None
        assert parse_update({"update_id": 1, "callback_query": {"id": "x", "message": {}}}) is None


class TestExtractCommand:
    def test_plain_text_is_not_a_command(self):
        assert extract_command("hello /start") == (None, None)

    def test_command_and_args(self):
        assert extract_command("/set_project  https://todoist.com/app/projects/1 ") == (
            "/set_project", "https://todoist.com/app/projects/1"
        )
        assert extract_command("/Create_Task@TasksBot") == ("/create_task", None)
        assert extract_command("/view ") == ("/view", None)


class TestDraftPreview:
    def _preview(self, **overrides):
        fields = dict(
            session_id=12,
            title="Fix <login> page",
            description="Users & admins",
            due_iso="2026-01-05",
            priority=3,
            assignee_note="@ivan",
            labels=["frontend", "bug"],
        )
        fields.update(overrides)
        return DraftPreview(**fields)

    def test_preview_shows_all_fields_escaped(self):
        text = format_draft_preview(self._preview())
        assert text.startswith("📝 <b>Draft Task Preview</b>")
        assert "Fix &lt;login&gt; page" in text
        assert "Users &amp; admins" in text
        assert "<b>Due:</b> 5 января (Понедельник)" in text
        assert "<b>Priority:</b> High" in text
        assert "<b>Assigned to:</b> @ivan" in text
        assert "<b>Labels:</b> frontend, bug" in text

    def test_optional_lines_are_omitted(self):
        text = format_draft_preview(self._preview(due_iso=None, assignee_note=None, labels=[]), updated=True)
        assert text.startswith("📝 <b>Updated Task Preview</b>")
        assert "Due:" not in text
        assert "Assigned to:" not in text
        assert "Labels:" not in text

    def test_free_text_due_is_shown_verbatim(self):
        assert "<b>Due:</b> next week" in format_draft_preview(self._preview(due_iso="next week"))

    def test_keyboard_carries_session_id(self):
        row = build_draft_reply_markup(12)["inline_keyboard"][0]
        assert [b["callback_data"] for b in row] == ["confirm_task:12", "edit_task:12", "cancel_task:12"]
        assert all(len(b["callback_data"].encode()) <= 64 for b in row)


class TestTodoistFormatting:
    def test_task_created_links_title(self):
        text = format_task_created("A & B", "https://todoist.com/showTask?id=1&x=2")
        assert '<a href="https://todoist.com/showTask?id=1&amp;x=2">A &amp; B</a>' in text
        assert format_task_created("Plain", "") == "✅ <b>Task created:</b> Plain"

    def test_lists(self):
        assert format_projects_list([]) == "No projects found."
        projects = format_projects_list([{"id": "9", "name": "<Team>"}])
        assert "&lt;Team&gt;" in projects
        assert "/list tasks 9" in projects

        tasks = format_tasks_list(
            [{"id": "1", "content": "Open", "due": {"date": "2026-01-05"}}, {"id": "2", "content": "Done", "is_completed": True}],
            "Team",
        )
        assert "⬜ <b>Open</b>" in tasks
        assert "✅ <b>Done</b>" in tasks
        assert "Due: 2026-01-05" in tasks
        assert format_tasks_list([], "Team") == "No tasks found in Team."

    def test_task_details(self):
        text = format_task_details({
            "id": "5", "content": "Ship", "priority": 4, "labels": ["release"],
            "due": {"date": "2026-01-05", "datetime": "2026-01-05T10:00:00Z"}, "url": "https://todoist.com/t/5",
        })
        assert "<b>Priority:</b> Urgent" in text
        assert "2026-01-05 at 2026-01-05T10:00:00Z" in text
        assert "Open in Todoist" in text


def test_escape_html_covers_required_chars():
    assert escape_html("<") == "&lt;"
    assert escape_html(">") == "&gt;"
    assert escape_html("&") == "&amp;"


def test_sent_message_id():
    assert sent_message_id({"ok": True, "result": {"message_id": 5}}) == 5
    assert sent_message_id({"ok": False}) is None
    assert sent_message_id(None) is None


def test_split_telegram_text_prefers_line_boundaries():
    text = "\n".join(["line %02d" % i for i in range(30)])
    chunks = split_telegram_text(text, max_len=50)
    assert all(len(chunk) <= 50 for chunk in chunks)
    assert "\n".join(chunks).replace("\n", "") == text.replace("\n", "")
    assert all(not chunk.startswith("\n") for chunk in chunks)
    assert split_telegram_text("short") == ["short"]

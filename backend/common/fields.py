"""Field helpers for draft tasks: assignee hints, relative due dates, display text."""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.config import settings

MESSAGE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
UNKNOWN_AUTHOR = "Unknown Author"

PRIORITY_LABELS = {1: "Normal", 2: "Medium", 3: "High", 4: "Urgent"}

# Checked in this order; the first phrase present wins.
ASSIGNEE_PHRASES = (
    "назначить",
    "ответственный",
    "исполнитель",
    "поручить",
    "assign to",
    "responsible",
    "assignee",
)

_WEEKDAYS = {
    "monday": 0, "mon": 0, "понедельник": 0,
    "tuesday": 1, "tue": 1, "вторник": 1,
    "wednesday": 2, "wed": 2, "среда": 2,
    "thursday": 3, "thu": 3, "четверг": 3,
    "friday": 4, "fri": 4, "пятница": 4,
    "saturday": 5, "sat": 5, "суббота": 5,
    "sunday": 6, "sun": 6, "воскресенье": 6,
}

_MONTHS_GENITIVE = (
    "января", "февраля", "марта", "апреля", "мая", "июня",
    "июля", "августа", "сентября", "октября", "ноября", "декабря",
)
_WEEKDAY_NAMES = ("Понедельник", "Вторник", "Среда", "Четверг", "Пятница", "Суббота", "Воскресенье")

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def local_timezone():
    try:
        return ZoneInfo(settings.APP_TIMEZONE)
    except ZoneInfoNotFoundError:
        return timezone.utc


def local_now() -> datetime:
    return datetime.now(local_timezone())


def is_iso_date(value: str) -> bool:
    return bool(_ISO_DATE_RE.match(value or ""))


def priority_label(priority: Optional[int]) -> str:
    return PRIORITY_LABELS.get(priority or 1, PRIORITY_LABELS[1])


def extract_assignee(text: str) -> str:
    """Best-effort assignee hint from discussion text, or "" if none."""
    if not text:
        return ""
    if "@" in text:
        for word in text.split():
            if word.startswith("@"):
                return word
    for phrase in ASSIGNEE_PHRASES:
        match = re.search(re.escape(phrase), text, re.IGNORECASE)
        if match is None:
            continue
        words = text[match.end():].split()
        if words:
            return words[0]
    return ""


def _next_weekday(today: date, weekday: int) -> date:
    days_ahead = (weekday - today.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return today + timedelta(days=days_ahead)


def convert_to_due_iso(due: str, now: Optional[datetime] = None) -> str:
    """Resolve relative due tokens to YYYY-MM-DD in the reference timezone.

    Unknown values (ISO dates included) are returned unchanged.
    """
    if not due:
        return ""
    token = due.strip().lower()
    today = (now or local_now()).date()

    if token in ("today", "сегодня"):
        return today.isoformat()
    if token in ("tomorrow", "завтра"):
        return (today + timedelta(days=1)).isoformat()
    if token in _WEEKDAYS:
        return _next_weekday(today, _WEEKDAYS[token]).isoformat()
    return due


def format_due_for_display(due_iso: str) -> str:
    """Render 2025-12-31 as "31 декабря (Среда)"; other values pass through."""
    if not due_iso:
        return ""
    try:
        day = date.fromisoformat(due_iso)
    except ValueError:
        return due_iso
    return "%d %s (%s)" % (day.day, _MONTHS_GENITIVE[day.month - 1], _WEEKDAY_NAMES[day.weekday()])


def _as_local(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(local_timezone())


def format_message_line(username: Optional[str], ts: datetime, text: str) -> str:
    author = username or UNKNOWN_AUTHOR
    return "%s, [%s]: %s" % (author, _as_local(ts).strftime(MESSAGE_TIMESTAMP_FORMAT), text)

"""Precondition errors raised by the discussion core.

These are expected outcomes of user actions (wrong order of commands, wrong
user pressing a button). Handlers turn them into chat replies; they are not
logged as failures.
"""


class DiscussionError(Exception):
    """Base class for user-facing precondition errors."""

    code = "discussion_error"


class NoActiveSession(DiscussionError):
    """The chat has no open discussion."""

    code = "no_active_session"


class SessionAlreadyExists(DiscussionError):
    """The chat already has an open discussion."""

    code = "session_already_exists"


class SessionNotFound(DiscussionError):
    """No session row with the given id."""

    code = "session_not_found"


class ProjectNotSet(DiscussionError):
    """No Todoist project configured for the chat."""

    code = "project_not_set"


class InvalidProject(DiscussionError):
    """The given project id is not in the Todoist project list."""

    code = "invalid_project"


class EmptyDiscussion(DiscussionError):
    """The open discussion has no captured messages."""

    code = "empty_discussion"


class NotOwner(DiscussionError):
    """The acting user did not start the discussion."""

    code = "not_owner"


class DraftNotFound(DiscussionError):
    """No draft task stored for the session."""

    code = "draft_not_found"

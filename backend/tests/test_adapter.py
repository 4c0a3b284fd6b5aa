import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from common.adapter import DEFAULT_DESCRIPTION, AnalysisError, AnalyzedTask, LLMAdapter
from common.config import settings


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


def _completion(content):
    return {"choices": [{"message": {"content": content}}]}


def _set_provider_settings():
    original = {
        "LLM_API_BASE_URL": settings.LLM_API_BASE_URL,
        "LLM_API_KEY": settings.LLM_API_KEY,
        "LLM_MODEL_ANALYZE": settings.LLM_MODEL_ANALYZE,
        "LLM_MAX_RETRIES": settings.LLM_MAX_RETRIES,
        "LLM_TIMEOUT_SECONDS": settings.LLM_TIMEOUT_SECONDS,
        "LLM_RETRY_BACKOFF_SECONDS": settings.LLM_RETRY_BACKOFF_SECONDS,
    }
    settings.LLM_API_BASE_URL = "https://provider.example/v1"
    settings.LLM_API_KEY = "test_api_key"
    settings.LLM_MODEL_ANALYZE = "test-model"
    settings.LLM_MAX_RETRIES = 2
    settings.LLM_TIMEOUT_SECONDS = 5
    settings.LLM_RETRY_BACKOFF_SECONDS = 0
    return original


def _restore_provider_settings(original):
    for key, value in original.items():
        setattr(settings, key, value)


def test_analyze_discussion_parses_task_and_sends_dialog():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            content = json.dumps({
                "title": "Fix login page",
                "description": "Mobile users cannot log in",
                "due_date": "tomorrow",
                "priority": 3,
                "priority_text": "High",
                "labels": ["frontend", " bug ", ""],
            })
            post = AsyncMock(return_value=_FakeResponse(_completion(content)))
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                task = await adapter.analyze_discussion(["alice, [2025-03-01 12:00:00]: login broken"])

            assert task == AnalyzedTask(
                title="Fix login page",
                description="Mobile users cannot log in",
                due_date="tomorrow",
                priority=3,
                priority_text="High",
                labels=["frontend", "bug"],
            )
            assert post.await_args.args[0] == "https://provider.example/v1/chat/completions"
            body = post.await_args.kwargs["json"]
            assert body["model"] == "test-model"
            assert body["response_format"] == {"type": "json_object"}
            assert "alice, [2025-03-01 12:00:00]: login broken" in body["messages"][-1]["content"]
            assert post.await_args.kwargs["headers"]["Authorization"] == "Bearer test_api_key"
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_json_wrapped_in_prose_is_extracted():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            content = 'Sure! Here is the task:\n```json\n{"title": "Ship release", "priority": "4"}\n```\nAnything else?'
            with patch("common.adapter.httpx.AsyncClient.post", new=AsyncMock(return_value=_FakeResponse(_completion(content)))):
                task = await adapter.analyze_discussion(["bob: ship it"])
            assert task.title == "Ship release"
            assert task.priority == 4
            assert task.priority_text == "Urgent"
            assert task.description == DEFAULT_DESCRIPTION
            assert task.due_date == ""
            assert task.labels == []
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_out_of_range_priority_falls_back_to_normal():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            content = '{"title": "Tidy docs", "priority": 9, "description": "  "}'
            with patch("common.adapter.httpx.AsyncClient.post", new=AsyncMock(return_value=_FakeResponse(_completion(content)))):
                task = await adapter.analyze_discussion(["tidy docs"])
            assert task.priority == 1
            assert task.priority_text == "Normal"
            assert task.description == DEFAULT_DESCRIPTION
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


@pytest.mark.parametrize(
    "content",
    [
        "I could not find a task here.",
        '{"title": "broken", ',
        '{"description": "no title"}',
        '{"title": "   "}',
    ],
)
def test_unusable_output_raises_analysis_error(content):
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            with patch("common.adapter.httpx.AsyncClient.post", new=AsyncMock(return_value=_FakeResponse(_completion(content)))):
                with pytest.raises(AnalysisError):
                    await adapter.analyze_discussion(["something"])
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_transient_failures_are_retried():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            post = AsyncMock(side_effect=[
                httpx.ConnectError("down"),
                _FakeResponse(_completion('{"title": "Retry worked"}')),
            ])
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                task = await adapter.analyze_discussion(["ping"])
            assert task.title == "Retry worked"
            assert post.await_count == 2
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_exhausted_retries_raise_analysis_error():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            post = AsyncMock(side_effect=httpx.ConnectError("down"))
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                with pytest.raises(AnalysisError):
                    await adapter.analyze_discussion(["ping"])
            assert post.await_count == 3
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())


def test_empty_input_is_rejected_without_a_request():
    async def _run():
        adapter = LLMAdapter()
        post = AsyncMock()
        with patch("common.adapter.httpx.AsyncClient.post", new=post):
            with pytest.raises(AnalysisError):
                await adapter.analyze_discussion([])
            with pytest.raises(AnalysisError):
                await adapter.revise_draft(AnalyzedTask(title="x"), "   ")
        post.assert_not_awaited()

    asyncio.run(_run())


def test_revise_draft_sends_current_task_and_feedback():
    async def _run():
        adapter = LLMAdapter()
        original = _set_provider_settings()
        try:
            current = AnalyzedTask(title="Fix login page", description="Mobile", priority=2, labels=["bug"])
            post = AsyncMock(return_value=_FakeResponse(_completion(
                '{"title": "Fix login page", "description": "Mobile", "priority": 4, "labels": ["bug"]}'
            )))
            with patch("common.adapter.httpx.AsyncClient.post", new=post):
                revised = await adapter.revise_draft(current, "make it urgent")

            assert revised.priority == 4
            assert revised.labels == ["bug"]
            user_text = post.await_args.kwargs["json"]["messages"][-1]["content"]
            assert '"title": "Fix login page"' in user_text
            assert user_text.endswith("make it urgent")
        finally:
            _restore_provider_settings(original)

    asyncio.run(_run())

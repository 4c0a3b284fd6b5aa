import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from common.config import settings
from common.fields import PRIORITY_LABELS

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "No description provided"

ANALYZE_PROMPT = """You are a task management assistant. Analyze the dialog and extract information for a Todoist task.

Response requirements:
1. Response must be a single JSON object
2. All fields are required
3. Use the language of the dialog for text fields

JSON format:
{
  "title": "Brief, informative task title (max 100 characters)",
  "description": "Detailed task description, including all important details from the discussion",
  "due_date": "Due date in YYYY-MM-DD format or a relative word (today, tomorrow, monday, tuesday, etc.). Empty string if no due date was mentioned",
  "priority": 1,
  "priority_text": "Normal, Medium, High or Urgent",
  "labels": ["list", "of", "relevant", "tags"]
}

Rules:
- Priority is an integer from 1 to 4, where 1 is normal and 4 is urgent; use 4 only for truly urgent tasks
- Title should be specific and informative
- Description should include all technical details mentioned in the discussion
- Tags should be relevant to context (e.g.: frontend, backend, bug, feature, meeting)
"""

REVISE_PROMPT = """You are a task management assistant. Edit an existing task based on user feedback.

Requirements:
1. Change only the fields mentioned in the feedback
2. Keep all other fields unchanged
3. Response must be a single JSON object with the same fields as the current task
4. Use the language of the task for text fields
"""


class AnalysisError(Exception):
    """The analysis service failed or returned something unusable."""


class AnalyzedTask(BaseModel):
    title: str
    description: str = DEFAULT_DESCRIPTION
    due_date: str = ""
    priority: int = 1
    priority_text: str = PRIORITY_LABELS[1]
    labels: List[str] = Field(default_factory=list)


class LLMAdapter:
    def _base_url(self) -> str:
        base = settings.LLM_API_BASE_URL.strip()
        if not base:
            raise RuntimeError("LLM_API_BASE_URL is not configured")
        return base.rstrip("/")

    async def _post_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        retries = max(0, settings.LLM_MAX_RETRIES)
        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
                    response = await client.post(
                        f"{self._base_url()}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {settings.LLM_API_KEY}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    body = response.json()
                    if not isinstance(body, dict):
                        raise ValueError("Provider response is not a JSON object")
                    return body
            except (httpx.RequestError, httpx.HTTPStatusError, httpx.TimeoutException, ValueError) as exc:
                last_error = exc
                if attempt >= retries:
                    break
                delay = max(0.0, settings.LLM_RETRY_BACKOFF_SECONDS) * (2 ** attempt)
                logger.warning("LLM request failed (attempt %s), retrying in %.1fs: %s", attempt + 1, delay, exc)
                if delay > 0:
                    await asyncio.sleep(delay)
        assert last_error is not None
        raise last_error

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Provider response missing choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise ValueError("Provider choice is invalid")
        message = first.get("message")
        if not isinstance(message, dict):
            raise ValueError("Provider message is invalid")
        content = message.get("content")
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, dict):
                    text_value = part.get("text")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            content = "\n".join(parts).strip()
        if not isinstance(content, str):
            raise ValueError("Provider content is not text")
        return content

    @staticmethod
    def _parse_content_object(content: str) -> Dict[str, Any]:
        """Decode the JSON object embedded in the model output.

        Models sometimes wrap the object in prose or fences, so only the text
        between the first "{" and the last "}" is decoded.
        """
        start = content.find("{")
        end = content.rfind("}")
        if start < 0 or end <= start:
            raise AnalysisError("no JSON object found in analysis response")
        try:
            parsed = json.loads(content[start:end + 1])
        except json.JSONDecodeError as exc:
            raise AnalysisError(f"invalid JSON in analysis response: {exc}") from exc
        if not isinstance(parsed, dict):
            raise AnalysisError("analysis response is not a JSON object")
        return parsed

    @staticmethod
    def _normalize_task(payload: Dict[str, Any]) -> AnalyzedTask:
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise AnalysisError("task title is required")

        description = payload.get("description")
        if not isinstance(description, str) or not description.strip():
            description = DEFAULT_DESCRIPTION

        due_date = payload.get("due_date")
        if not isinstance(due_date, str):
            due_date = ""

        priority = payload.get("priority")
        if isinstance(priority, str) and priority.strip().isdigit():
            priority = int(priority.strip())
        if not isinstance(priority, int) or isinstance(priority, bool) or priority not in PRIORITY_LABELS:
            priority = 1

        priority_text = payload.get("priority_text")
        if not isinstance(priority_text, str) or not priority_text.strip():
            priority_text = PRIORITY_LABELS[priority]

        labels = payload.get("labels")
        if not isinstance(labels, list):
            labels = []

        return AnalyzedTask(
            title=title.strip(),
            description=description.strip(),
            due_date=due_date.strip(),
            priority=priority,
            priority_text=priority_text.strip(),
            labels=[str(label).strip() for label in labels if str(label).strip()],
        )

    def _build_payload(self, prompt: str, user_text: str) -> Dict[str, Any]:
        return {
            "model": settings.LLM_MODEL_ANALYZE,
            "temperature": settings.LLM_TEMPERATURE,
            "max_tokens": settings.LLM_MAX_TOKENS,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": "Return only valid JSON. Do not include markdown fences.",
                },
                {"role": "system", "content": prompt},
                {"role": "user", "content": user_text},
            ],
        }

    async def _invoke(self, prompt: str, user_text: str) -> AnalyzedTask:
        try:
            response = await self._post_with_retry(self._build_payload(prompt, user_text))
            content = self._extract_content(response)
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            raise AnalysisError(f"analysis request failed: {exc}") from exc
        return self._normalize_task(self._parse_content_object(content))

    async def analyze_discussion(self, messages: List[str]) -> AnalyzedTask:
        """Turn formatted discussion lines into a structured task proposal."""
        if not messages:
            raise AnalysisError("no messages to analyze")
        dialog = "Dialog to analyze:\n" + "\n".join(messages)
        task = await self._invoke(ANALYZE_PROMPT, dialog)
        logger.info("Discussion analyzed: %d messages -> %r", len(messages), task.title)
        return task

    async def revise_draft(self, task: AnalyzedTask, feedback: str) -> AnalyzedTask:
        """Apply free-text feedback to an existing proposal."""
        if not feedback or not feedback.strip():
            raise AnalysisError("feedback is empty")
        user_text = (
            "Current task:\n"
            + json.dumps(task.model_dump(), ensure_ascii=False, indent=2)
            + "\n\nUser feedback:\n"
            + feedback.strip()
        )
        return await self._invoke(REVISE_PROMPT, user_text)


adapter = LLMAdapter()

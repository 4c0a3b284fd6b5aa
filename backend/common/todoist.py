import logging
import uuid
import httpx
from typing import Dict, Any, Optional, List
from common.config import settings
from common.fields import is_iso_date

logger = logging.getLogger(__name__)

class TodoistAdapter:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.TODOIST_API_BASE.rstrip("/")
        self.token = settings.TODOIST_TOKEN
        self.timeout = settings.TODOIST_TIMEOUT_SECONDS
        self._transport = transport

    def _get_headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        if not self.token:
            raise RuntimeError("TODOIST_TOKEN not configured")
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }
        if request_id:
            headers["X-Request-Id"] = request_id
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        priority: Optional[int] = None,
        due_date: Optional[str] = None,
        labels: Optional[List[str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Creates a task in Todoist.

        `due_date` may be an ISO date or natural language ("next week"); the
        idempotency key is sent as X-Request-Id so retries do not duplicate.
        """
        if not title or not title.strip():
            raise ValueError("task content is required")
        payload: Dict[str, Any] = {"content": title.strip()}
        if description:
            payload["description"] = description
        if project_id:
            payload["project_id"] = project_id
        if priority and 1 <= priority <= 4:
            payload["priority"] = priority
        if due_date:
            payload["due_date" if is_iso_date(due_date) else "due_string"] = due_date
        if labels:
            payload["labels"] = list(labels)

        url = f"{self.base_url}/tasks"
        async with self._client() as client:
            resp = await client.post(
                url,
                headers=self._get_headers(idempotency_key or str(uuid.uuid4())),
                json=payload,
            )
            resp.raise_for_status()
            task = resp.json()
        logger.info("Todoist task created: %s", task.get("id"))
        return task

    async def update_task(self, todoist_task_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Updates a task in Todoist.
        """
        url = f"{self.base_url}/tasks/{todoist_task_id}"
        async with self._client() as client:
            resp = await client.post(url, headers=self._get_headers(str(uuid.uuid4())), json=payload)
            resp.raise_for_status()
            if resp.status_code == 204:
                return {}
            return resp.json()

    async def close_task(self, todoist_task_id: str) -> bool:
        """
        Completes a task in Todoist.
        """
        url = f"{self.base_url}/tasks/{todoist_task_id}/close"
        async with self._client() as client:
            resp = await client.post(url, headers=self._get_headers())
            resp.raise_for_status()
            return True

    async def delete_task(self, todoist_task_id: str) -> bool:
        url = f"{self.base_url}/tasks/{todoist_task_id}"
        async with self._client() as client:
            resp = await client.delete(url, headers=self._get_headers())
            resp.raise_for_status()
            return True

    async def get_task(self, todoist_task_id: str) -> Optional[Dict[str, Any]]:
        """Fetches a single Todoist task by id.

        Returns None when the remote task is not found.
        """
        url = f"{self.base_url}/tasks/{todoist_task_id}"
        async with self._client() as client:
            resp = await client.get(url, headers=self._get_headers())
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def list_tasks(self, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lists active Todoist tasks, optionally limited to one project."""
        url = f"{self.base_url}/tasks"
        params = {"project_id": project_id} if project_id else None
        async with self._client() as client:
            resp = await client.get(url, headers=self._get_headers(), params=params)
            resp.raise_for_status()
            payload = resp.json()
            if isinstance(payload, list):
                return payload
            return []

    async def list_projects(self) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/projects"
        async with self._client() as client:
            resp = await client.get(url, headers=self._get_headers())
            resp.raise_for_status()
            payload = resp.json()
            if isinstance(payload, list):
                return payload
            return []

todoist_adapter = TodoistAdapter()

"""
HTTP client for the agent task service.

All calls are blocking; the update loop only ever invokes them from
background units started by the spawner.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from ..core.config import NeodeckConfig, RetryConfig, ServiceConfig
from ..core.exceptions import (
    NoAccessTokenError,
    ServiceConnectionError,
    ServiceError,
    ServiceParseError,
    ServiceResponseError,
)
from .retry import RetryController
from .types import (
    Message,
    Task,
    parse_events,
    parse_task,
    parse_tasks,
    user_message_payload,
)

logger = logging.getLogger(__name__)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, ServiceConnectionError):
        return True
    if isinstance(error, ServiceResponseError):
        return error.retryable
    return False


class TaskServiceClient:
    """Client for the preview agents API."""

    def __init__(
        self,
        config: ServiceConfig,
        retry_config: RetryConfig | None = None,
        session: requests.Session | None = None,
    ):
        if not config.access_token:
            raise NoAccessTokenError()

        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.retry = RetryController(retry_config)
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"token {config.access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_config(cls, config: NeodeckConfig) -> "TaskServiceClient":
        return cls(config.service, config.retry)

    @property
    def organization(self) -> str | None:
        return self.config.organization

    def _resolve_org(self, org: str | None) -> str:
        resolved = org or self.config.organization
        if not resolved:
            raise ServiceError("No organization specified")
        return resolved

    def _tasks_url(self, org: str) -> str:
        return f"{self.base_url}/api/preview/agents/{org}/tasks"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method, url, timeout=self.config.request_timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ServiceConnectionError(str(e)) from e
        except requests.RequestException as e:
            raise ServiceError(str(e)) from e

        if response.status_code >= 400:
            raise ServiceResponseError(response.status_code, response.text or response.reason or "")
        return response

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        def call() -> Any:
            response = self._request("GET", url, params=params)
            try:
                return response.json()
            except ValueError as e:
                raise ServiceParseError(f"{url}: {e}") from e

        return self.retry.execute_sync_with_retry(
            call, operation_name=f"GET {url}", should_retry=_is_transient
        )

    def _paginate(
        self,
        url: str,
        items_key: str,
        on_parse_error: Callable[[ServiceParseError], Any] | None = None,
    ) -> list[Any]:
        """Collect every page of a list endpoint until the token runs out."""
        collected: list[Any] = []
        token: str | None = None

        while True:
            params: dict[str, Any] = {"pageSize": self.config.page_size}
            if token:
                params["continuationToken"] = token

            try:
                data = self._get_json(url, params=params)
            except ServiceParseError as e:
                if on_parse_error is None:
                    raise
                on_parse_error(e)
                break

            if isinstance(data, list):
                # Unpaginated bare array.
                collected.extend(data)
                break
            if not isinstance(data, dict):
                raise ServiceParseError(f"unexpected {type(data).__name__} from {url}")

            page = data.get(items_key)
            if isinstance(page, list):
                collected.extend(page)

            token = data.get("continuationToken")
            logger.debug(f"{url}: page of {len(page or [])} {items_key}, continuation={token!r}")
            if not token:
                break
            if len(collected) >= self.config.max_list_items:
                logger.warning(f"{url}: pagination safety limit reached")
                break

        return collected

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_tasks(self, org: str | None = None) -> list[Task]:
        org = self._resolve_org(org)
        tasks = parse_tasks(self._paginate(self._tasks_url(org), "tasks"))
        logger.info(f"Fetched {len(tasks)} tasks for {org}")
        return tasks

    def get_task(self, org: str | None, task_id: str) -> Task:
        org = self._resolve_org(org)
        data = self._get_json(f"{self._tasks_url(org)}/{task_id}")
        task = parse_task(data)
        if task is None:
            raise ServiceParseError(f"task {task_id} payload has no id")
        return task

    def create_task(self, org: str | None, content: str) -> Task:
        org = self._resolve_org(org)
        response = self._request(
            "POST", self._tasks_url(org), json={"message": user_message_payload(content)}
        )
        try:
            data = response.json()
        except ValueError as e:
            raise ServiceParseError(f"create task: {e}") from e

        task = parse_task(data)
        if task is None:
            raise ServiceParseError("create task response has no taskId")
        logger.info(f"Created task {task.id}")
        return task

    def send_message(self, org: str | None, task_id: str, content: str) -> None:
        org = self._resolve_org(org)
        # 202 Accepted with an empty body.
        self._request(
            "POST", f"{self._tasks_url(org)}/{task_id}", json={"event": user_message_payload(content)}
        )
        logger.info(f"Sent message to task {task_id}")

    def list_events(self, org: str | None, task_id: str) -> list[Message]:
        org = self._resolve_org(org)

        def degrade(error: ServiceParseError) -> None:
            logger.warning(f"Undecodable events page for task {task_id}: {error}")

        raw = self._paginate(f"{self._tasks_url(org)}/{task_id}/events", "events", degrade)
        return parse_events(raw)

    def close(self) -> None:
        self.session.close()

"""
Todoist Integration

Talks to the Todoist REST API (v1) over HTTPS.

Architecture:
- Every call goes through `TodoistClient.request(operation, parameters)`
- Remote failures never raise: callers get a `RemoteResult` and branch on it
- Rate limits (429 + Retry-After) and transient failures are retried with
  exponential backoff up to `RetryConfig.max_attempts`
- Paged collections are assembled transparently, up to `max_pages` pages
"""

import logging
import os
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from models import Label, Project, Section, Task, TaskFilter


TODOIST_API_BASE = "https://api.todoist.com/api/v1"
RATE_LIMIT_DELAY = 1  # seconds to wait after a 429 without Retry-After
AUTH_FAILURE_CODES = (401, 403)


class RemoteErrorKind(Enum):
    REJECTED = 'rejected'
    RATE_LIMITED = 'rate_limited'
    UNAVAILABLE = 'unavailable'
    TOO_MANY_PAGES = 'too_many_pages'


@dataclass
class RemoteError:
    """Why a remote call failed"""
    kind: RemoteErrorKind
    message: str
    code: Optional[int] = None  # HTTP status code, when there was a response
    attempts: int = 1

    @property
    def is_auth_failure(self) -> bool:
        return self.kind == RemoteErrorKind.REJECTED and self.code in AUTH_FAILURE_CODES

    def __str__(self) -> str:
        if self.code:
            return f"{self.kind.value} ({self.code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass
class RemoteResult:
    """Result of a Todoist API call"""
    success: bool
    data: Any = None
    error: Optional[RemoteError] = None
    http_status: Optional[int] = None

    @classmethod
    def failure(cls, error: RemoteError) -> 'RemoteResult':
        return cls(success=False, error=error, http_status=error.code)


@dataclass
class RetryConfig:
    """Bounds for retrying rate-limited and transient failures"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    rate_limit_delay: float = RATE_LIMIT_DELAY

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-indexed): base * 2^attempt, capped"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class Operation(Enum):
    """Logical Todoist operations: (HTTP method, path template, safe to retry, paged)"""
    LIST_TASKS = ('GET', 'tasks', True, True)
    FILTER_TASKS = ('GET', 'tasks/filter', True, True)
    GET_TASK = ('GET', 'tasks/{task_id}', True, False)
    CREATE_TASK = ('POST', 'tasks', False, False)
    UPDATE_TASK = ('POST', 'tasks/{task_id}', True, False)
    CLOSE_TASK = ('POST', 'tasks/{task_id}/close', True, False)
    REOPEN_TASK = ('POST', 'tasks/{task_id}/reopen', True, False)
    MOVE_TASK = ('POST', 'tasks/{task_id}/move', True, False)
    LIST_PROJECTS = ('GET', 'projects', True, True)
    CREATE_PROJECT = ('POST', 'projects', False, False)
    LIST_SECTIONS = ('GET', 'sections', True, True)
    LIST_LABELS = ('GET', 'labels', True, True)

    def __init__(self, method: str, path: str, idempotent: bool, paged: bool):
        self.method = method
        self.path = path
        self.idempotent = idempotent
        self.paged = paged

    def path_fields(self) -> List[str]:
        return [name for _, name, _, _ in string.Formatter().parse(self.path) if name]


class TodoistClient:
    """Remote access layer for the Todoist REST API"""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: str = TODOIST_API_BASE,
        retry: Optional[RetryConfig] = None,
        max_pages: int = 50,
        page_size: int = 200,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the Todoist client

        Args:
            api_token: Todoist API token. If None, uses TODOIST_API_TOKEN env var.
            base_url: API root, overridable for tests and proxies
            retry: Retry bounds (defaults to 3 attempts)
            max_pages: Upper bound on pages followed for one collection
            page_size: `limit` sent with paged requests
            timeout: Per-request timeout in seconds
            http_client: Preconfigured httpx.Client (tests pass a MockTransport)
            sleep: Called with the delay before each retry
        """
        self.api_token = api_token or os.environ.get("TODOIST_API_TOKEN")
        if not self.api_token:
            raise ValueError(
                "No Todoist API token provided. Set TODOIST_API_TOKEN or todoist.api_token in config."
            )
        self.logger = logging.getLogger("TriageManager.Todoist")
        self.base_url = base_url.rstrip('/')
        self.retry = retry or RetryConfig()
        self.max_pages = max_pages
        self.page_size = page_size
        self.timeout = timeout
        self._sleep = sleep
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    # ==================== Core request path ====================

    def request(
        self,
        operation: Operation,
        parameters: Optional[Dict[str, Any]] = None,
        idempotency_token: Optional[str] = None,
    ) -> RemoteResult:
        """
        Perform a logical operation against Todoist

        Path fields (e.g. `task_id`) are taken out of `parameters`; the rest
        goes into the query string for GET and the JSON body otherwise.

        Create operations are only retried when an idempotency token is
        supplied, since a retried create could otherwise duplicate the task.

        Returns:
            RemoteResult with the decoded payload (the fully assembled list
            for paged operations)
        """
        params = dict(parameters or {})
        path_values = {name: params.pop(name) for name in operation.path_fields()}
        path = operation.path.format(**path_values)

        headers = {}
        if idempotency_token:
            headers['X-Request-Id'] = idempotency_token
        retryable = operation.idempotent or idempotency_token is not None

        if operation.paged:
            return self._collect_pages(operation, path, params, headers)

        if operation.method == 'GET':
            send = lambda: self._send(operation.method, path, params=params, headers=headers)
        else:
            send = lambda: self._send(operation.method, path, json_data=params, headers=headers)

        return self._with_retries(operation, send, retryable)

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        all_headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Accept": "application/json",
        }
        all_headers.update(headers or {})
        return self._http.request(
            method,
            f"{self.base_url}/{path}",
            params=params or None,
            json=json_data if method != 'GET' else None,
            headers=all_headers,
            timeout=self.timeout,
        )

    def _with_retries(
        self,
        operation: Operation,
        send: Callable[[], httpx.Response],
        retryable: bool,
    ) -> RemoteResult:
        """
        Bounded retry loop around a single request

        - 429: wait Retry-After (or the default) and retry → RATE_LIMITED when exhausted
        - request errors (timeouts, connection, decoding, redirects) and 5xx:
          exponential backoff → UNAVAILABLE when exhausted
        - other 4xx: REJECTED immediately, never retried
        """
        max_attempts = self.retry.max_attempts if retryable else 1
        last_error = None

        for attempt in range(max_attempts):
            delay = None
            try:
                response = send()
            except httpx.RequestError as e:
                last_error = RemoteError(
                    RemoteErrorKind.UNAVAILABLE,
                    f"{type(e).__name__}: {e}",
                    attempts=attempt + 1,
                )
                delay = self.retry.backoff(attempt)
            else:
                status = response.status_code
                if status == 429:
                    last_error = RemoteError(
                        RemoteErrorKind.RATE_LIMITED,
                        "Todoist API rate limit exceeded",
                        code=status,
                        attempts=attempt + 1,
                    )
                    delay = self._retry_after(response, self.retry.rate_limit_delay)
                elif status >= 500:
                    last_error = RemoteError(
                        RemoteErrorKind.UNAVAILABLE,
                        f"Todoist API error {status}: {response.text[:200]}",
                        code=status,
                        attempts=attempt + 1,
                    )
                    delay = self._retry_after(response, self.retry.backoff(attempt))
                elif status >= 400:
                    error = RemoteError(
                        RemoteErrorKind.REJECTED,
                        self._error_message(response),
                        code=status,
                        attempts=attempt + 1,
                    )
                    self.logger.error(f"{operation.name} rejected: {error}")
                    return RemoteResult.failure(error)
                else:
                    return self._decode(response)

            if attempt < max_attempts - 1:
                self.logger.warning(
                    f"{operation.name} failed ({last_error}), "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{max_attempts})"
                )
                self._sleep(delay)

        self.logger.error(f"{operation.name} gave up after {max_attempts} attempt(s): {last_error}")
        return RemoteResult.failure(last_error)

    def _collect_pages(
        self,
        operation: Operation,
        path: str,
        params: Dict[str, Any],
        headers: Dict[str, str],
    ) -> RemoteResult:
        """Follow `next_cursor` until exhausted and return every item in one list"""
        items = []
        cursor = None

        for page in range(self.max_pages):
            page_params = dict(params, limit=self.page_size)
            if cursor:
                page_params['cursor'] = cursor

            result = self._with_retries(
                operation,
                lambda: self._send('GET', path, params=page_params, headers=headers),
                retryable=True,
            )
            if not result.success:
                return result

            body = result.data
            if isinstance(body, list):
                # Unpaged endpoint: the whole collection in one response
                return RemoteResult(success=True, data=body, http_status=result.http_status)

            items.extend(body.get('results', []))
            cursor = body.get('next_cursor')
            self.logger.debug(f"{operation.name} page {page + 1}: {len(items)} items so far")
            if not cursor:
                return RemoteResult(success=True, data=items, http_status=result.http_status)

        error = RemoteError(
            RemoteErrorKind.TOO_MANY_PAGES,
            f"{operation.name} still had more results after {self.max_pages} pages",
        )
        self.logger.error(str(error))
        return RemoteResult.failure(error)

    def _decode(self, response: httpx.Response) -> RemoteResult:
        if response.status_code == 204 or not response.content:
            return RemoteResult(success=True, data=None, http_status=response.status_code)
        try:
            data = response.json()
        except ValueError:
            return RemoteResult.failure(RemoteError(
                RemoteErrorKind.REJECTED,
                f"Malformed JSON in response: {response.text[:200]}",
                code=response.status_code,
            ))
        return RemoteResult(success=True, data=data, http_status=response.status_code)

    @staticmethod
    def _retry_after(response: httpx.Response, default: float) -> float:
        value = response.headers.get("Retry-After")
        if value is None:
            return default
        try:
            return max(float(value), 0.0)
        except ValueError:
            return default

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get('error') or body.get('message') or body)
        return str(body)

    # ==================== Logical operations ====================

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> RemoteResult:
        """List active tasks, optionally filtered by project/section/label or a filter query"""
        task_filter = task_filter or TaskFilter()
        if task_filter.query:
            result = self.request(Operation.FILTER_TASKS, {'query': task_filter.query})
        else:
            result = self.request(Operation.LIST_TASKS, task_filter.to_params())
        return self._map(result, Task.from_todoist)

    def get_task(self, task_id: str) -> RemoteResult:
        return self._map(self.request(Operation.GET_TASK, {'task_id': task_id}), Task.from_todoist)

    def create_task(self, content: str, idempotency_token: Optional[str] = None, **fields) -> RemoteResult:
        """
        Create a task

        Args:
            content: Task title
            idempotency_token: Lets a retried create be recognized as the same request
            **fields: Any other Todoist task field (project_id, due_date, priority, ...)
        """
        params = dict(fields, content=content)
        result = self.request(Operation.CREATE_TASK, params, idempotency_token=idempotency_token)
        return self._map(result, Task.from_todoist)

    def update_task(self, task_id: str, **fields) -> RemoteResult:
        """Update content, description, due, priority or labels of a task"""
        params = dict(fields, task_id=task_id)
        return self._map(self.request(Operation.UPDATE_TASK, params), Task.from_todoist)

    def close_task(self, task_id: str) -> RemoteResult:
        return self.request(Operation.CLOSE_TASK, {'task_id': task_id})

    def reopen_task(self, task_id: str) -> RemoteResult:
        return self.request(Operation.REOPEN_TASK, {'task_id': task_id})

    def move_task(self, task_id: str, project_id: Optional[str] = None, section_id: Optional[str] = None) -> RemoteResult:
        """Move a task to a section (when given) or to the root of a project"""
        if section_id:
            params = {'task_id': task_id, 'section_id': section_id}
        elif project_id:
            params = {'task_id': task_id, 'project_id': project_id}
        else:
            raise ValueError("move_task needs a project_id or a section_id")
        return self._map(self.request(Operation.MOVE_TASK, params), Task.from_todoist)

    def list_projects(self) -> RemoteResult:
        return self._map(self.request(Operation.LIST_PROJECTS), Project.from_todoist)

    def create_project(self, name: str, idempotency_token: Optional[str] = None) -> RemoteResult:
        result = self.request(Operation.CREATE_PROJECT, {'name': name}, idempotency_token=idempotency_token)
        return self._map(result, Project.from_todoist)

    def list_sections(self, project_id: Optional[str] = None) -> RemoteResult:
        params = {'project_id': project_id} if project_id else {}
        return self._map(self.request(Operation.LIST_SECTIONS, params), Section.from_todoist)

    def list_labels(self) -> RemoteResult:
        return self._map(self.request(Operation.LIST_LABELS), Label.from_todoist)

    @staticmethod
    def _map(result: RemoteResult, parse: Callable[[Dict[str, Any]], Any]) -> RemoteResult:
        """Parse raw payload(s) into model objects, leaving failures untouched"""
        if not result.success or result.data is None:
            return result
        if isinstance(result.data, list):
            data = [parse(raw) for raw in result.data]
        elif isinstance(result.data, dict) and 'id' in result.data:
            data = parse(result.data)
        else:
            data = result.data
        return RemoteResult(success=True, data=data, http_status=result.http_status)

"""
Shared fixtures

Puts src/ on sys.path the same way tod-triage.py does, and provides an
in-memory stand-in for TodoistClient so the engine can be tested without HTTP.
"""

import copy
import dataclasses
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from due_dates import DueDateResolver  # noqa: E402
from integrations.cache import MetadataCache  # noqa: E402
from integrations.todoist import RemoteError, RemoteErrorKind, RemoteResult  # noqa: E402
from models import DueSpec, Label, Project, Section, Task  # noqa: E402
from triage import TriageEngine  # noqa: E402


# Wednesday
REFERENCE = datetime(2024, 1, 10, 9, 0)


class FakeTodoist:
    """Records calls and keeps task state the way Todoist would after each write"""

    def __init__(self, tasks: List[Task]):
        self.tasks: Dict[str, Task] = {t.id: copy.deepcopy(t) for t in tasks}
        self.order = [t.id for t in tasks]
        self.closed = set()
        self.projects = [Project('inbox', 'Inbox'), Project('work', 'Work')]
        self.sections = [Section('backlog', 'Backlog', 'work')]
        self.labels = [Label('l1', 'errand')]
        self.calls = []
        self.failures: Dict[str, List[RemoteError]] = {}

    def fail(self, method: str, kind: RemoteErrorKind = RemoteErrorKind.UNAVAILABLE, code: Optional[int] = None):
        self.failures.setdefault(method, []).append(RemoteError(kind, "injected failure", code=code))

    def _record(self, method: str, *args, **kwargs) -> Optional[RemoteResult]:
        self.calls.append((method, args, kwargs))
        pending = self.failures.get(method)
        if pending:
            return RemoteResult.failure(pending.pop(0))
        return None

    def calls_to(self, method: str):
        return [call for call in self.calls if call[0] == method]

    def list_tasks(self, task_filter=None):
        failed = self._record('list_tasks', task_filter)
        if failed:
            return failed
        open_tasks = [copy.deepcopy(self.tasks[i]) for i in self.order if i not in self.closed]
        return RemoteResult(success=True, data=open_tasks)

    def close_task(self, task_id):
        failed = self._record('close_task', task_id)
        if failed:
            return failed
        task = self.tasks[task_id]
        if task.due is not None and task.due.is_recurring:
            # recurring tasks stay open and move on to their next occurrence
            task.due = dataclasses.replace(task.due, date=task.due.date + timedelta(days=7))
        else:
            self.closed.add(task_id)
        return RemoteResult(success=True, http_status=204)

    def reopen_task(self, task_id):
        failed = self._record('reopen_task', task_id)
        if failed:
            return failed
        self.closed.discard(task_id)
        return RemoteResult(success=True, http_status=204)

    def update_task(self, task_id, **fields):
        failed = self._record('update_task', task_id, **fields)
        if failed:
            return failed
        task = self.tasks[task_id]
        if 'priority' in fields:
            task.priority = fields['priority']
        if 'labels' in fields:
            task.labels = list(fields['labels'])
        if fields.get('due_string') == 'no date':
            task.due = None
        elif 'due_string' in fields:
            # a bare rule is scheduled from today; "<rule> starting|ab <date>" from that date
            rule, anchor = fields['due_string'], REFERENCE.date()
            for word in (' starting ', ' ab '):
                if word in rule:
                    rule, _, first = rule.rpartition(word)
                    anchor = date.fromisoformat(first)
            task.due = DueSpec(date=anchor, recurrence=rule, lang=fields.get('due_lang'))
        elif 'due_date' in fields:
            task.due = DueSpec(date=date.fromisoformat(fields['due_date']))
        elif 'due_datetime' in fields:
            moment = datetime.fromisoformat(fields['due_datetime'])
            task.due = DueSpec(date=moment.date(), time=moment.time())
        return RemoteResult(success=True, data=copy.deepcopy(task))

    def move_task(self, task_id, project_id=None, section_id=None):
        failed = self._record('move_task', task_id, project_id=project_id, section_id=section_id)
        if failed:
            return failed
        task = self.tasks[task_id]
        if section_id:
            task.section_id = section_id
            task.project_id = next(s.project_id for s in self.sections if s.id == section_id)
        else:
            task.project_id, task.section_id = project_id, None
        return RemoteResult(success=True, data=copy.deepcopy(task))

    def list_projects(self):
        return self._record('list_projects') or RemoteResult(success=True, data=list(self.projects))

    def list_sections(self, project_id=None):
        return self._record('list_sections') or RemoteResult(success=True, data=list(self.sections))

    def list_labels(self):
        return self._record('list_labels') or RemoteResult(success=True, data=list(self.labels))

    def create_project(self, name, idempotency_token=None):
        failed = self._record('create_project', name)
        if failed:
            return failed
        project = Project(f"p{len(self.projects) + 1}", name)
        self.projects.append(project)
        return RemoteResult(success=True, data=project)

    def create_task(self, content, idempotency_token=None, **fields):
        failed = self._record('create_task', content, idempotency_token=idempotency_token, **fields)
        if failed:
            return failed
        task = Task(id=f"t{len(self.tasks) + 1}", content=content, project_id=fields.get('project_id'))
        self.tasks[task.id] = task
        self.order.append(task.id)
        return RemoteResult(success=True, data=copy.deepcopy(task))


@pytest.fixture
def reference():
    return REFERENCE


@pytest.fixture
def resolver():
    return DueDateResolver(locale='en', clock=lambda: REFERENCE)


@pytest.fixture
def sample_tasks():
    return [
        Task(id='1', content='Call the bank', project_id='inbox', priority=1),
        Task(id='2', content='Renew passport', project_id='inbox', priority=3,
             due=DueSpec(date=date(2024, 1, 17))),
        Task(id='3', content='Buy milk', project_id='work', section_id='backlog', priority=2,
             labels=['errand'], due=DueSpec(date=date(2024, 1, 12), time=datetime(2024, 1, 12, 9).time())),
    ]


@pytest.fixture
def fake_todoist(sample_tasks):
    return FakeTodoist(sample_tasks)


@pytest.fixture
def make_engine(resolver):
    def factory(client, skip_policies=None, clock=None):
        cache = MetadataCache(ttl_seconds=300, clock=clock or (lambda: 0.0))
        return TriageEngine(client, cache, resolver, skip_policies=skip_policies)
    return factory

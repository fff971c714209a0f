"""
Triage Engine

Walks the operator through a queue of tasks one decision at a time.

Session lifecycle:
    IDLE → PRESENTING → AWAITING_DECISION → (MUTATING → ADVANCING | SKIPPING | UNDOING)
         → PRESENTING ... → COMPLETED | ABORTED

Mutations are write-through: nothing is considered applied until Todoist
accepted it. Each applied mutation pushes its inverse onto the undo stack.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from due_dates import DueDateError, DueDateResolver, get_locale
from integrations.cache import CacheKind, MetadataCache
from integrations.todoist import RemoteError, RemoteErrorKind, RemoteResult, TodoistClient
from models import PRIORITY_HIGH, PRIORITY_NONE, DueSpec, Task, TaskFilter
from ordering import TriageMode, filter_not_in_future, order, sort_by_value


class SessionState(Enum):
    IDLE = 'idle'
    PRESENTING = 'presenting'
    AWAITING_DECISION = 'awaiting_decision'
    MUTATING = 'mutating'
    ADVANCING = 'advancing'
    SKIPPING = 'skipping'
    UNDOING = 'undoing'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


class SkipPolicy(Enum):
    DEFER = 'defer'  # skipped task goes to the back of the queue
    DISMISS = 'dismiss'  # skipped task leaves the session


class OutcomeStatus(Enum):
    CONTINUING = 'continuing'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


# ==================== Decisions ====================

@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Skip:
    dismiss: bool = False


@dataclass(frozen=True)
class Reschedule:
    text: str


@dataclass(frozen=True)
class ClearDue:
    pass


@dataclass(frozen=True)
class SetPriority:
    priority: int

    def __post_init__(self):
        if not PRIORITY_NONE <= self.priority <= PRIORITY_HIGH:
            raise ValueError(f"Priority must be between {PRIORITY_NONE} and {PRIORITY_HIGH}, got {self.priority}")


@dataclass(frozen=True)
class AddLabel:
    label: str


@dataclass(frozen=True)
class RemoveLabel:
    label: str


@dataclass(frozen=True)
class MoveToProject:
    project_id: str
    section_id: Optional[str] = None


@dataclass(frozen=True)
class MoveToNewProject:
    """Create a project named `name` and move the task to it"""
    name: str


@dataclass(frozen=True)
class Undo:
    pass


@dataclass(frozen=True)
class Quit:
    pass


Decision = Union[
    Complete, Skip, Reschedule, ClearDue, SetPriority, AddLabel, RemoveLabel, MoveToProject,
    MoveToNewProject, Undo, Quit,
]


# ==================== Session data ====================

@dataclass
class TriageError:
    """An error surfaced to the operator, tied to the task being acted on"""
    message: str
    task_id: Optional[str] = None
    cause: Optional[Union[RemoteError, DueDateError]] = None

    def __str__(self) -> str:
        if self.task_id:
            return f"[task {self.task_id}] {self.message}"
        return self.message


@dataclass
class UndoEntry:
    task_id: str
    snapshot: Task  # task as it was before the mutation
    operation: str  # inverse remote call: close, reopen, update or move
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskView:
    """Everything the presentation layer needs to render the current task"""
    task: Task
    project_name: Optional[str] = None
    section_name: Optional[str] = None
    remaining: int = 0


@dataclass
class SessionOutcome:
    status: OutcomeStatus
    view: Optional[TaskView] = None
    processed: int = 0
    error: Optional[TriageError] = None

    @property
    def task(self) -> Optional[Task]:
        return self.view.task if self.view else None


@dataclass
class TriageSession:
    mode: TriageMode
    task_filter: TaskFilter
    skip_policy: SkipPolicy = SkipPolicy.DEFER
    queue: List[Task] = field(default_factory=list)
    processed: int = 0
    undo_stack: List[UndoEntry] = field(default_factory=list)
    dismissed: List[str] = field(default_factory=list)
    state: SessionState = SessionState.IDLE
    error: Optional[TriageError] = None
    opening: Optional[SessionOutcome] = None  # what start_session presented first

    @property
    def current(self) -> Optional[Task]:
        return self.queue[0] if self.queue else None

    @property
    def is_terminal(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)


def due_fields(due: Optional[DueSpec], tz=None) -> Dict[str, Any]:
    """
    Todoist update fields that set a task's due date to `due`

    Recurring specs are sent as text so Todoist stores the rule itself.
    Timed specs are converted to UTC when their zone (or `tz`) is known,
    otherwise sent as floating local time.
    """
    if due is None:
        return {'due_string': 'no date'}
    if due.recurrence:
        fields = {'due_string': due.recurrence}
        if due.lang:
            fields['due_lang'] = due.lang
        return fields
    if due.time is not None:
        moment = due.as_datetime()
        zone = due.tz or tz
        if zone is not None:
            moment = moment.replace(tzinfo=zone).astimezone(dt_timezone.utc)
            return {'due_datetime': moment.strftime('%Y-%m-%dT%H:%M:%SZ')}
        return {'due_datetime': moment.strftime('%Y-%m-%dT%H:%M:%S')}
    return {'due_date': due.date.isoformat()}


def restore_fields(due: Optional[DueSpec], tz=None) -> Dict[str, Any]:
    """
    Fields that put a task's due date back to `due`

    A bare recurrence rule would make Todoist pick the next occurrence from
    today, so recurring specs are anchored to their original next date.
    """
    if due is None or not due.recurrence:
        return due_fields(due, tz)
    fields = due_fields(due, tz)
    starting = get_locale(due.lang).starting_word
    fields['due_string'] = f"{due.recurrence} {starting} {due.date.isoformat()}"
    return fields


class TriageEngine:
    """Runs triage sessions against Todoist through the client and metadata cache"""

    def __init__(
        self,
        client: TodoistClient,
        cache: MetadataCache,
        resolver: DueDateResolver,
        skip_policies: Optional[Dict[TriageMode, SkipPolicy]] = None,
    ):
        self.logger = logging.getLogger("TriageManager.Triage")
        self.client = client
        self.cache = cache
        self.resolver = resolver
        self.skip_policies = skip_policies or {}

    # ==================== Session interface ====================

    def start_session(self, mode: Union[TriageMode, str], task_filter: Optional[TaskFilter] = None) -> TriageSession:
        """
        Load and order the tasks for a session and present the first one

        A session whose tasks cannot be loaded starts out ABORTED; one with
        nothing to do starts out COMPLETED.
        """
        mode = TriageMode(mode)
        task_filter = task_filter or TaskFilter()
        session = TriageSession(
            mode=mode,
            task_filter=task_filter,
            skip_policy=self.skip_policies.get(mode, SkipPolicy.DEFER),
        )

        result = self.client.list_tasks(task_filter)
        if not result.success:
            self.abort(session, TriageError(f"Could not load tasks: {result.error}", cause=result.error))
            session.opening = self._terminal_outcome(session)
            return session

        tasks = self._localize(result.data)
        session.queue = order(tasks, mode, today=self.resolver.today())
        self.logger.info(
            f"Started {mode.value} session: {len(session.queue)} of {len(tasks)} tasks queued"
        )

        if not session.queue:
            self._complete(session)
            session.opening = self._terminal_outcome(session)
        else:
            session.opening = self.present(session)
        return session

    def present(self, session: TriageSession, error: Optional[TriageError] = None) -> SessionOutcome:
        """Expose the current task (with project/section names) and wait for a decision"""
        if session.is_terminal:
            return self._terminal_outcome(session)

        session.state = SessionState.PRESENTING
        view, lookup_error = self._view(session)
        session.state = SessionState.AWAITING_DECISION
        return SessionOutcome(
            status=OutcomeStatus.CONTINUING,
            view=view,
            processed=session.processed,
            error=error or lookup_error,
        )

    def step(self, session: TriageSession, decision: Decision) -> SessionOutcome:
        """Apply one operator decision to the current task"""
        if session.is_terminal:
            return self._terminal_outcome(session)
        if session.state != SessionState.AWAITING_DECISION:
            raise RuntimeError(f"Session is {session.state.value}, not awaiting a decision")

        task = session.current

        if isinstance(decision, Quit):
            self.abort(session)
            return self._terminal_outcome(session)
        if isinstance(decision, Undo):
            return self._undo(session)
        if isinstance(decision, Skip):
            return self._skip(session, decision)
        if isinstance(decision, MoveToNewProject):
            created = self.create_project(decision.name)
            if not created.success:
                return self._remote_failure(session, task.id, f"create project '{decision.name}'", created.error)
            decision = MoveToProject(created.data.id)

        try:
            operation, params, inverse, invalidates = self._plan(task, decision)
        except DueDateError as e:
            self.logger.info(f"Could not read due date for {task.id}: {e}")
            return self.present(session, TriageError(str(e), task.id, e))
        except ValueError as e:
            return self.present(session, TriageError(str(e), task.id))

        return self._mutate(session, task, operation, params, inverse, invalidates)

    def abort(self, session: TriageSession, error: Optional[TriageError] = None) -> None:
        """End the session; mutations already applied in Todoist stay applied"""
        session.state = SessionState.ABORTED
        session.error = error
        session.undo_stack.clear()
        if error:
            self.logger.error(f"Session aborted after {session.processed} task(s): {error}")
        else:
            self.logger.info(f"Session aborted by operator after {session.processed} task(s)")

    # ==================== Transitions ====================

    def _plan(self, task: Task, decision: Decision) -> Tuple[str, Dict[str, Any], Tuple[str, Dict[str, Any]], Tuple[CacheKind, ...]]:
        """Remote call for a decision plus the call that reverses it"""
        tz = self.resolver.timezone

        if isinstance(decision, Complete):
            if task.due is not None and task.due.is_recurring:
                # Todoist keeps recurring tasks open and moves them to the next occurrence
                return 'close', {}, ('update', restore_fields(task.due, tz)), ()
            return 'close', {}, ('reopen', {}), ()

        if isinstance(decision, Reschedule):
            due = self.resolver.resolve(decision.text)
            return 'update', due_fields(due, tz), ('update', restore_fields(task.due, tz)), ()

        if isinstance(decision, ClearDue):
            return 'update', due_fields(None), ('update', restore_fields(task.due, tz)), ()

        if isinstance(decision, SetPriority):
            return 'update', {'priority': decision.priority}, ('update', {'priority': task.priority}), ()

        if isinstance(decision, AddLabel):
            if decision.label in task.labels:
                raise ValueError(f"'{task.content}' already has label '{decision.label}'")
            labels = task.labels + [decision.label]
            # Todoist creates unknown labels on the fly
            return 'update', {'labels': labels}, ('update', {'labels': list(task.labels)}), (CacheKind.LABELS,)

        if isinstance(decision, RemoveLabel):
            if decision.label not in task.labels:
                raise ValueError(f"'{task.content}' has no label '{decision.label}'")
            labels = [label for label in task.labels if label != decision.label]
            return 'update', {'labels': labels}, ('update', {'labels': list(task.labels)}), ()

        if isinstance(decision, MoveToProject):
            params = {'project_id': decision.project_id, 'section_id': decision.section_id}
            previous = {'project_id': task.project_id, 'section_id': task.section_id}
            return 'move', params, ('move', previous), ()

        raise TypeError(f"Unknown decision: {decision!r}")

    def _call(self, operation: str, task_id: str, params: Dict[str, Any]) -> RemoteResult:
        if operation == 'close':
            return self.client.close_task(task_id)
        if operation == 'reopen':
            return self.client.reopen_task(task_id)
        if operation == 'update':
            return self.client.update_task(task_id, **params)
        if operation == 'move':
            return self.client.move_task(task_id, **params)
        raise ValueError(f"Unknown remote operation: {operation}")

    def _mutate(
        self,
        session: TriageSession,
        task: Task,
        operation: str,
        params: Dict[str, Any],
        inverse: Tuple[str, Dict[str, Any]],
        invalidates: Tuple[CacheKind, ...],
    ) -> SessionOutcome:
        session.state = SessionState.MUTATING
        result = self._call(operation, task.id, params)
        if not result.success:
            return self._remote_failure(session, task.id, f"{operation} '{task.content}'", result.error)

        snapshot = dataclasses.replace(task, labels=list(task.labels))
        session.undo_stack.append(UndoEntry(task.id, snapshot, inverse[0], inverse[1]))
        for kind in invalidates:
            self.cache.invalidate(kind)

        session.processed += 1
        self.logger.info(f"✅ {operation} applied to {task.id} ({session.processed} processed)")
        return self._advance(session)

    def _advance(self, session: TriageSession) -> SessionOutcome:
        session.state = SessionState.ADVANCING
        session.queue.pop(0)
        if not session.queue:
            self._complete(session)
            return self._terminal_outcome(session)
        return self.present(session)

    def _skip(self, session: TriageSession, decision: Skip) -> SessionOutcome:
        session.state = SessionState.SKIPPING
        task = session.queue.pop(0)

        if decision.dismiss or session.skip_policy == SkipPolicy.DISMISS:
            session.dismissed.append(task.id)
            self.logger.debug(f"Dismissed {task.id}")
        else:
            session.queue.append(task)
            self.logger.debug(f"Deferred {task.id} to the back of the queue")

        if not session.queue:
            self._complete(session)
            return self._terminal_outcome(session)
        return self.present(session)

    def _undo(self, session: TriageSession) -> SessionOutcome:
        session.state = SessionState.UNDOING
        if not session.undo_stack:
            self.logger.debug("Nothing to undo")
            return self.present(session)

        entry = session.undo_stack.pop()
        result = self._call(entry.operation, entry.task_id, entry.params)
        if not result.success:
            session.undo_stack.append(entry)
            return self._remote_failure(session, entry.task_id, f"undo on '{entry.snapshot.content}'", result.error)

        session.queue.insert(0, entry.snapshot)
        session.processed -= 1
        self.logger.info(f"↩️  Undid last change to {entry.task_id}")
        return self.present(session)

    def _remote_failure(self, session: TriageSession, task_id: str, action: str, error: RemoteError) -> SessionOutcome:
        """Auth failures and unassemblable data end the session; anything else keeps the task current"""
        triage_error = TriageError(f"Could not {action}: {error}", task_id, error)
        if error.is_auth_failure or error.kind == RemoteErrorKind.TOO_MANY_PAGES:
            self.abort(session, triage_error)
            return self._terminal_outcome(session)

        self.logger.warning(str(triage_error))
        return self.present(session, triage_error)

    def _complete(self, session: TriageSession) -> None:
        session.state = SessionState.COMPLETED
        session.undo_stack.clear()
        self.logger.info(f"Session complete: {session.processed} task(s) processed")

    def _localize(self, tasks: List[Task]) -> List[Task]:
        """Express fixed-zone due times in the resolver's timezone"""
        for task in tasks:
            if task.due is not None:
                task.due = task.due.astimezone(self.resolver.timezone)
        return tasks

    def _terminal_outcome(self, session: TriageSession) -> SessionOutcome:
        status = OutcomeStatus.COMPLETED if session.state == SessionState.COMPLETED else OutcomeStatus.ABORTED
        return SessionOutcome(status=status, processed=session.processed, error=session.error)

    def _view(self, session: TriageSession) -> Tuple[TaskView, Optional[TriageError]]:
        task = session.current
        view = TaskView(task=task, remaining=len(session.queue))

        projects = self.cache.get_or_fetch(CacheKind.PROJECTS, self.client.list_projects)
        if not projects.success:
            return view, TriageError(f"Could not load project names: {projects.error}", task.id, projects.error)
        view.project_name = next((p.name for p in projects.data if p.id == task.project_id), None)

        if task.section_id:
            sections = self.cache.get_or_fetch(CacheKind.SECTIONS, self.client.list_sections)
            if not sections.success:
                return view, TriageError(f"Could not load section names: {sections.error}", task.id, sections.error)
            view.section_name = next((s.name for s in sections.data if s.id == task.section_id), None)

        return view, None

    # ==================== Lookups and one-shot helpers ====================

    def projects(self) -> RemoteResult:
        return self.cache.get_or_fetch(CacheKind.PROJECTS, self.client.list_projects)

    def labels(self) -> RemoteResult:
        return self.cache.get_or_fetch(CacheKind.LABELS, self.client.list_labels)

    def sections(self) -> RemoteResult:
        return self.cache.get_or_fetch(CacheKind.SECTIONS, self.client.list_sections)

    def create_project(self, name: str, idempotency_token: Optional[str] = None) -> RemoteResult:
        """Create a project as a move destination; only the project list goes stale"""
        result = self.client.create_project(name, idempotency_token=idempotency_token)
        if result.success:
            self.cache.invalidate(CacheKind.PROJECTS)
            self.logger.info(f"Created project '{name}'")
        return result

    def create_task(
        self,
        content: str,
        due_text: Optional[str] = None,
        idempotency_token: Optional[str] = None,
        **fields,
    ) -> RemoteResult:
        """
        Non-interactive creation path sharing the due date resolver

        Raises:
            DueDateError: `due_text` could not be resolved (nothing is sent)
        """
        if due_text:
            fields.update(due_fields(self.resolver.resolve_due_text(due_text), self.resolver.timezone))
        return self.client.create_task(content, idempotency_token=idempotency_token, **fields)

    def next_task(self, task_filter: Optional[TaskFilter] = None) -> RemoteResult:
        """
        The most pressing task that is not scheduled in the future

        Returns:
            RemoteResult whose data is (task or None, number of candidate tasks)
        """
        result = self.client.list_tasks(task_filter or TaskFilter())
        if not result.success:
            return result

        now = self.resolver.now()
        tasks = self._localize(result.data)
        candidates = sort_by_value(filter_not_in_future(tasks, now.date()), now)
        top = candidates[0] if candidates else None
        return RemoteResult(success=True, data=(top, len(candidates)), http_status=result.http_status)

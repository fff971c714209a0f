#!/usr/bin/env python3
"""
TriageManager

Command-line companion for Todoist that:
1. Loads tasks for a project, section, label or filter query
2. Orders them for the chosen triage mode (schedule, overdue, prioritize, process)
3. Walks through them one at a time, applying each decision in Todoist
4. Resolves natural-language due dates ("next fri at 3pm", "every monday")
5. Lets the operator undo any decision made during the session
"""

import logging
import signal
import sys
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from due_dates import DueDateError, DueDateResolver, describe_due, format_due
from integrations import MetadataCache, RetryConfig, TodoistClient
from models import PRIORITY_HIGH, Project, Section, TaskFilter
from ordering import TriageMode
from triage import (
    AddLabel,
    ClearDue,
    Complete,
    Decision,
    MoveToNewProject,
    MoveToProject,
    OutcomeStatus,
    Quit,
    RemoveLabel,
    Reschedule,
    SessionOutcome,
    SetPriority,
    Skip,
    SkipPolicy,
    TaskView,
    TriageError,
    TriageEngine,
    Undo,
)


# Todoist sends 4 for urgent; people say "P1"
PRIORITY_LABELS = {4: 'P1', 3: 'P2', 2: 'P3', 1: 'P4'}

DECISION_HELP = (
    "(c)omplete  (s)kip  (d)ismiss  (r) <date>  (x) clear date  (p) <1-4>  "
    "+label  -label  (m) <project[/section]> or +<new project>  (u)ndo  (q)uit"
)


class TriageManager:
    """
    Composition root: reads config and wires the Todoist client, metadata
    cache, due date resolver and triage engine together.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        verbose: bool = False,
        **client_options,
    ):
        """
        Initialize TriageManager with configuration

        Args:
            config_path: YAML config file (default: config/config.yaml)
            config: Already-loaded config dict; skips reading a file
            verbose: Log at DEBUG instead of INFO
            **client_options: Extra TodoistClient arguments (http_client, sleep)
        """
        self.logger = self._setup_logging(verbose)
        self.project_root = self._detect_project_root()
        self.config = config if config is not None else self._load_config(config_path)

        todoist = self.config.get('todoist') or {}
        cache = self.config.get('cache') or {}
        due_dates = self.config.get('due_dates') or {}

        self.client = TodoistClient(
            api_token=todoist.get('api_token'),
            base_url=todoist.get('base_url', 'https://api.todoist.com/api/v1'),
            retry=RetryConfig(
                max_attempts=todoist.get('max_attempts', 3),
                base_delay=todoist.get('base_delay', 1.0),
                max_delay=todoist.get('max_delay', 30.0),
                rate_limit_delay=todoist.get('rate_limit_delay', 1.0),
            ),
            max_pages=todoist.get('max_pages', 50),
            page_size=todoist.get('page_size', 200),
            timeout=todoist.get('timeout', 30.0),
            **client_options,
        )
        self.cache = MetadataCache(
            ttl_seconds=cache.get('ttl_seconds', 300),
            ttl_overrides=cache.get('ttl_overrides'),
        )
        self.resolver = DueDateResolver(
            locale=due_dates.get('locale', 'en'),
            timezone=due_dates.get('timezone'),
            allow_past=due_dates.get('allow_past', False),
        )
        self.engine = TriageEngine(
            self.client,
            self.cache,
            self.resolver,
            skip_policies=self._skip_policies(),
        )

        self.logger.info("✅ TriageManager initialized successfully")

    def _setup_logging(self, verbose: bool = False) -> logging.Logger:
        """Setup logging for the CLI"""
        logger = logging.getLogger("TriageManager")

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - TriageManager - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)

        return logger

    def _detect_project_root(self) -> Path:
        """Detect project root directory"""
        current_path = Path(__file__).resolve()

        for parent in current_path.parents:
            if (parent / 'pyproject.toml').exists() or (parent / 'config').is_dir():
                return parent

        return Path.cwd()

    def _load_config(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if config_path is None:
            config_path = self.project_root / 'config' / 'config.yaml'
        else:
            config_path = Path(config_path).expanduser()

        if not config_path.exists():
            example_config = self.project_root / 'config' / 'config.example.yaml'
            if example_config.exists():
                self.logger.warning(
                    f"Config not found at {config_path}. "
                    f"Please copy {example_config} to {config_path} and customize."
                )
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _skip_policies(self) -> Dict[TriageMode, SkipPolicy]:
        configured = (self.config.get('triage') or {}).get('skip') or {}
        return {TriageMode(mode): SkipPolicy(policy) for mode, policy in configured.items()}

    # ==================== Lookups ====================

    def resolve_project(self, name_or_id: str) -> Optional[Project]:
        """Find a project by exact id or case-insensitive name"""
        result = self.engine.projects()
        if not result.success:
            self.logger.error(f"Could not load projects: {result.error}")
            return None
        for project in result.data:
            if project.id == name_or_id or project.name.lower() == name_or_id.lower():
                return project
        return None

    def task_filter(
        self,
        project: Optional[str] = None,
        section: Optional[str] = None,
        label: Optional[str] = None,
        query: Optional[str] = None,
    ) -> TaskFilter:
        project_id = None
        if project:
            match = self.resolve_project(project)
            if match is None:
                raise ValueError(f"Project '{project}' not found")
            project_id = match.id
        return TaskFilter(project_id=project_id, section_id=section, label=label, query=query)


# ==================== Decision parsing and rendering ====================

def _find_destination(target: str, projects: Sequence[Project], sections: Sequence[Section]) -> MoveToProject:
    project_name, _, section_name = target.partition('/')
    project = next(
        (p for p in projects if p.name.lower() == project_name.strip().lower() or p.id == project_name.strip()),
        None,
    )
    if project is None:
        raise ValueError(f"No project named '{project_name.strip()}'")
    if not section_name.strip():
        return MoveToProject(project.id)

    section = next(
        (s for s in sections
         if s.project_id == project.id and s.name.lower() == section_name.strip().lower()),
        None,
    )
    if section is None:
        raise ValueError(f"No section '{section_name.strip()}' in {project.name}")
    return MoveToProject(project.id, section.id)


def parse_decision(
    text: str,
    projects: Sequence[Project] = (),
    sections: Sequence[Section] = (),
    default_reschedule: bool = False,
) -> Decision:
    """
    Turn one line of operator input into a decision

    Priorities are typed the way Todoist shows them: p1 is urgent.
    With `default_reschedule`, unrecognized input is treated as a due date.

    Raises:
        ValueError: input is not a decision
    """
    line = text.strip()
    if not line:
        raise ValueError("Empty input")

    command, _, argument = line.partition(' ')
    command, argument = command.lower(), argument.strip()

    simple = {'c': Complete, 's': Skip, 'x': ClearDue, 'u': Undo, 'q': Quit}
    if command in simple and not argument:
        return simple[command]()
    if command == 'd' and not argument:
        return Skip(dismiss=True)
    if line.startswith('+') and len(line) > 1:
        return AddLabel(line[1:].strip())
    if line.startswith('-') and len(line) > 1:
        return RemoveLabel(line[1:].strip())
    if command == 'r' and argument:
        return Reschedule(argument)
    if command in ('p', 'p1', 'p2', 'p3', 'p4'):
        level = argument or command[1:]
        if level not in ('1', '2', '3', '4'):
            raise ValueError("Priority must be 1 (urgent) to 4 (none)")
        return SetPriority(PRIORITY_HIGH + 1 - int(level))
    if command == 'm' and argument.startswith('+') and argument[1:].strip():
        return MoveToNewProject(argument[1:].strip())
    if command == 'm' and argument:
        return _find_destination(argument, projects, sections)

    if default_reschedule:
        return Reschedule(line)
    raise ValueError(f"Unknown decision '{line}'")


def render_view(view: TaskView, today) -> str:
    task = view.task
    location = view.project_name or task.project_id or '?'
    if view.section_name:
        location += f" / {view.section_name}"

    lines = [f"\n[{PRIORITY_LABELS.get(task.priority, 'P4')}] {task.content}"]
    if task.description:
        lines.append(f"   {task.description}")
    lines.append(f"   Due: {describe_due(task.due, today)}")
    if task.labels:
        lines.append(f"   Labels: {', '.join('@' + label for label in task.labels)}")
    lines.append(f"   Project: {location}")
    lines.append(f"   ({view.remaining} task(s) remaining)")
    return '\n'.join(lines)


@contextmanager
def deferred_interrupt():
    """Hold Ctrl-C while a decision is being applied; the caller checks the list afterwards"""
    received: List[int] = []
    if threading.current_thread() is not threading.main_thread():
        yield received
        return

    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        yield received
    finally:
        signal.signal(signal.SIGINT, previous)


def _move_targets(engine: TriageEngine, line: str, task_id: str):
    """Projects and sections needed to parse a move, or the error that stopped loading them"""
    words = line.strip().lower()
    if not words.startswith('m ') or words[2:].strip().startswith('+'):
        return [], [], None

    projects = engine.projects()
    if not projects.success:
        return [], [], TriageError(f"Could not load projects: {projects.error}", task_id, projects.error)
    if '/' not in line:
        return projects.data, [], None

    sections = engine.sections()
    if not sections.success:
        return [], [], TriageError(f"Could not load sections: {sections.error}", task_id, sections.error)
    return projects.data, sections.data, None


def run_session(
    manager: TriageManager,
    mode: TriageMode,
    task_filter: TaskFilter,
    read: Callable[[str], str] = input,
    write: Callable[[str], None] = print,
) -> int:
    """Interactive loop over one triage session. Returns the process exit code."""
    engine = manager.engine
    session = engine.start_session(mode, task_filter)
    outcome = session.opening
    default_reschedule = mode in (TriageMode.SCHEDULE, TriageMode.OVERDUE)

    while outcome.status == OutcomeStatus.CONTINUING:
        write(render_view(outcome.view, manager.resolver.today()))
        if outcome.error:
            write(f"⚠️  {outcome.error}")

        try:
            line = read(f"{DECISION_HELP}\n> ")
            projects, sections, lookup_error = _move_targets(engine, line, outcome.task.id)
        except (KeyboardInterrupt, EOFError):
            engine.abort(session)
            outcome = engine.present(session)
            break

        if lookup_error:
            outcome = engine.present(session, lookup_error)
            continue
        try:
            decision = parse_decision(line, projects, sections, default_reschedule=default_reschedule)
        except ValueError as e:
            write(f"❌ {e}")
            continue

        with deferred_interrupt() as interrupted:
            outcome = engine.step(session, decision)
        if interrupted and outcome.status == OutcomeStatus.CONTINUING:
            engine.abort(session)
            outcome = engine.present(session)

    return report_outcome(outcome, write)


def report_outcome(outcome: SessionOutcome, write: Callable[[str], None] = print) -> int:
    if outcome.status == OutcomeStatus.COMPLETED:
        write(f"\n✅ Done: {outcome.processed} task(s) processed")
        return 0
    if outcome.error:
        write(f"\n❌ Session aborted: {outcome.error}")
        write(f"   {outcome.processed} task(s) were already updated in Todoist")
        return 1
    write(f"\n⚪ Exited: {outcome.processed} task(s) processed")
    return 0


# ==================== CLI Interface ====================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point"""
    import argparse

    parser = argparse.ArgumentParser(
        description="TriageManager: interactive Todoist triage"
    )
    parser.add_argument(
        'command',
        choices=[mode.value for mode in TriageMode] + ['next', 'resolve', 'add'],
        help='Triage mode to run, `next` for the most pressing task, `resolve` to test a date, `add` to create a task'
    )
    parser.add_argument(
        'text',
        nargs='*',
        help='Date text (for resolve) or task content (for add)'
    )
    parser.add_argument('--due', help='Due date in natural language (for add command)')
    parser.add_argument('--project', help='Project name or id to triage')
    parser.add_argument('--section', help='Section id to triage')
    parser.add_argument('--label', help='Only tasks with this label')
    parser.add_argument('--filter', dest='query', help='Todoist filter query, e.g. "today | overdue"')
    parser.add_argument('--config', help='Path to config file')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)

    try:
        manager = TriageManager(config_path=args.config, verbose=args.verbose)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        print(f"❌ Failed to initialize TriageManager: {e}")
        return 1

    try:
        if args.command == 'resolve':
            try:
                due = manager.resolver.resolve_due_text(' '.join(args.text))
            except DueDateError as e:
                print(f"❌ {e}")
                return 1
            print(f"{format_due(due)}  ({describe_due(due, manager.resolver.today())})")
            return 0

        try:
            task_filter = manager.task_filter(args.project, args.section, args.label, args.query)
        except ValueError as e:
            print(f"❌ {e}")
            return 1

        if args.command == 'add':
            if not args.text:
                print("❌ Task content required for add command")
                return 1
            extra = {'project_id': task_filter.project_id} if task_filter.project_id else {}
            try:
                result = manager.engine.create_task(
                    ' '.join(args.text),
                    due_text=args.due,
                    idempotency_token=new_idempotency_token(),
                    **extra,
                )
            except DueDateError as e:
                print(f"❌ {e}")
                return 1
            if not result.success:
                print(f"❌ Failed to create task: {result.error}")
                return 1
            print(f"✅ Created task {result.data.id}")
            return 0

        if args.command == 'next':
            result = manager.engine.next_task(task_filter)
            if not result.success:
                print(f"❌ {result.error}")
                return 1
            task, remaining = result.data
            if task is None:
                print("✅ No tasks on list")
            else:
                print(f"[{PRIORITY_LABELS.get(task.priority, 'P4')}] {task.content}")
                print(f"   Due: {describe_due(task.due, manager.resolver.today())}")
                print(f"   ID: {task.id}")
                print(f"{remaining} task(s) remaining")
            return 0

        return run_session(manager, TriageMode(args.command), task_filter)
    finally:
        manager.client.close()


def new_idempotency_token() -> str:
    return str(uuid.uuid4())


if __name__ == '__main__':
    sys.exit(main())

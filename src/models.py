"""
Triage data model

Plain dataclasses shared by the Todoist client, the due date resolver,
the ordering policy and the triage engine.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, tzinfo
from typing import Any, Dict, List, Optional


# Todoist priorities: 1 is the default ("no priority"), 4 is urgent
PRIORITY_NONE = 1
PRIORITY_LOW = 2
PRIORITY_MEDIUM = 3
PRIORITY_HIGH = 4


@dataclass(frozen=True)
class DueSpec:
    """Normalized due date: calendar date, optional time, optional recurrence rule"""
    date: date
    time: Optional[time] = None
    recurrence: Optional[str] = None
    lang: Optional[str] = None
    # Set when date/time are wall-clock values in a fixed zone; None means floating local time
    tz: Optional[tzinfo] = None

    def __post_init__(self):
        if self.recurrence is not None and self.date is None:
            raise ValueError("recurring due date needs a next occurrence date")

    @property
    def all_day(self) -> bool:
        return self.time is None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    def as_datetime(self) -> datetime:
        return datetime.combine(self.date, self.time or time.min)

    def astimezone(self, zone: Optional[tzinfo] = None) -> 'DueSpec':
        """
        Same instant expressed as wall-clock time in `zone` (system local time when None)

        Floating and all-day specs are returned unchanged.
        """
        if self.tz is None or self.time is None:
            return self
        moment = datetime.combine(self.date, self.time, tzinfo=self.tz).astimezone(zone)
        return replace(self, date=moment.date(), time=moment.time(), tz=moment.tzinfo)

    @classmethod
    def from_todoist(cls, due: Optional[Dict[str, Any]]) -> Optional['DueSpec']:
        """
        Build a DueSpec from a Todoist `due` object

        Todoist sends `date` as either YYYY-MM-DD, a floating ISO datetime,
        or a fixed-zone datetime in UTC with a trailing Z.
        """
        if not due or not due.get('date'):
            return None

        raw = due['date']
        due_zone = None
        if len(raw) == 10:
            due_date, due_time = date.fromisoformat(raw), None
        else:
            parsed = datetime.fromisoformat(raw.replace('Z', '+00:00'))
            due_date, due_time, due_zone = parsed.date(), parsed.time(), parsed.tzinfo

        recurrence = due.get('string') if due.get('is_recurring') else None
        return cls(date=due_date, time=due_time, recurrence=recurrence, lang=due.get('lang'), tz=due_zone)


@dataclass
class Task:
    """A Todoist task as seen by the triage engine"""
    id: str
    content: str
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    description: str = ''
    due: Optional[DueSpec] = None
    priority: int = PRIORITY_NONE
    labels: List[str] = field(default_factory=list)
    order: int = 0  # child_order in Todoist
    added_at: Optional[str] = None
    url: Optional[str] = None

    @property
    def has_priority(self) -> bool:
        return self.priority != PRIORITY_NONE

    @classmethod
    def from_todoist(cls, raw: Dict[str, Any]) -> 'Task':
        return cls(
            id=str(raw['id']),
            content=raw.get('content', '').strip(),
            project_id=raw.get('project_id'),
            section_id=raw.get('section_id'),
            description=raw.get('description') or '',
            due=DueSpec.from_todoist(raw.get('due')),
            priority=raw.get('priority') or PRIORITY_NONE,
            labels=list(raw.get('labels') or []),
            order=raw.get('child_order') or 0,
            added_at=raw.get('added_at'),
            url=raw.get('url'),
        )


@dataclass(frozen=True)
class Project:
    id: str
    name: str

    @classmethod
    def from_todoist(cls, raw: Dict[str, Any]) -> 'Project':
        return cls(id=str(raw['id']), name=raw.get('name', ''))


@dataclass(frozen=True)
class Section:
    id: str
    name: str
    project_id: Optional[str] = None

    @classmethod
    def from_todoist(cls, raw: Dict[str, Any]) -> 'Section':
        return cls(id=str(raw['id']), name=raw.get('name', ''), project_id=raw.get('project_id'))


@dataclass(frozen=True)
class Label:
    id: str
    name: str

    @classmethod
    def from_todoist(cls, raw: Dict[str, Any]) -> 'Label':
        return cls(id=str(raw['id']), name=raw.get('name', ''))


@dataclass(frozen=True)
class TaskFilter:
    """Which tasks a session walks through. `query` uses Todoist filter syntax."""
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    label: Optional[str] = None
    query: Optional[str] = None

    def to_params(self) -> Dict[str, str]:
        params = {}
        if self.project_id:
            params['project_id'] = self.project_id
        if self.section_id:
            params['section_id'] = self.section_id
        if self.label:
            params['label'] = self.label
        return params

"""
Due Date Resolver

Turns free text such as "tomorrow at 3pm", "next fri", "15/1" or
"every 2 weeks" into a DueSpec.

The grammar is deliberately bounded:
- relative days (today, tomorrow, yesterday, in 3 days, next week)
- weekdays, optionally with "next"
- ISO dates and locale dependent calendar dates
- an optional time suffix ("at 3pm", "at 15:00")
- an optional recurrence prefix ("every ...")

`resolve` is a pure function of (text, reference, locale): no clock reads.
"""

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from models import DueSpec


logger = logging.getLogger("TriageManager.DueDates")


class DueDateError(ValueError):
    """Free text could not be turned into a due date"""

    reason = "not a recognized date"

    def __init__(self, text: str, detail: Optional[str] = None):
        self.text = text
        self.detail = detail
        message = f"'{text}' is {self.reason}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class UnrecognizedDueDate(DueDateError):
    reason = "not a recognized date"


class PastDueDate(DueDateError):
    reason = "in the past"


class AmbiguousDueDate(DueDateError):
    reason = "ambiguous"


@dataclass(frozen=True)
class Locale:
    """Word tables and numeric date layout for one language"""
    code: str
    lang: str
    relative_days: Dict[str, int]
    weekdays: Dict[str, int]
    months: Dict[str, int]
    units: Dict[str, str]
    recurrence_aliases: Dict[str, str]
    every_words: Tuple[str, ...]
    other_words: Tuple[str, ...]
    next_words: Tuple[str, ...]
    in_words: Tuple[str, ...]
    at_words: Tuple[str, ...]
    and_words: Tuple[str, ...]
    workday_words: Tuple[str, ...]
    noon_words: Tuple[str, ...]
    midnight_words: Tuple[str, ...]
    date_order: str = 'mdy'
    date_separator: str = '/'
    ordinal_suffix: str = r'(?:st|nd|rd|th)?'
    starting_word: str = 'starting'  # anchors a recurrence to a first date
    _patterns: Dict[str, 're.Pattern'] = field(default_factory=dict, compare=False, repr=False)

    def pattern(self, name: str, builder: Callable[['Locale'], str]) -> 're.Pattern':
        if name not in self._patterns:
            self._patterns[name] = re.compile(builder(self))
        return self._patterns[name]


_EN_WEEKDAYS = {
    'monday': 0, 'mon': 0, 'tuesday': 1, 'tue': 1, 'tues': 1, 'wednesday': 2, 'wed': 2,
    'thursday': 3, 'thu': 3, 'thur': 3, 'thurs': 3, 'friday': 4, 'fri': 4,
    'saturday': 5, 'sat': 5, 'sunday': 6, 'sun': 6,
}
_EN_MONTHS = {
    'january': 1, 'jan': 1, 'february': 2, 'feb': 2, 'march': 3, 'mar': 3, 'april': 4, 'apr': 4,
    'may': 5, 'june': 6, 'jun': 6, 'july': 7, 'jul': 7, 'august': 8, 'aug': 8,
    'september': 9, 'sep': 9, 'sept': 9, 'october': 10, 'oct': 10, 'november': 11, 'nov': 11,
    'december': 12, 'dec': 12,
}
_EN_UNITS = {
    'day': 'day', 'days': 'day', 'week': 'week', 'weeks': 'week',
    'month': 'month', 'months': 'month', 'year': 'year', 'years': 'year',
}
_EN_COMMON = dict(
    relative_days={'today': 0, 'tod': 0, 'tomorrow': 1, 'tom': 1, 'day after tomorrow': 2, 'yesterday': -1},
    weekdays=_EN_WEEKDAYS,
    months=_EN_MONTHS,
    units=_EN_UNITS,
    recurrence_aliases={'daily': 'day', 'weekly': 'week', 'monthly': 'month', 'yearly': 'year', 'annually': 'year'},
    every_words=('every', 'each'),
    other_words=('other',),
    next_words=('next',),
    in_words=('in',),
    at_words=('at', '@'),
    and_words=('and', ','),
    workday_words=('weekday', 'workday'),
    noon_words=('noon', 'midday'),
    midnight_words=('midnight',),
)

LOCALES = {
    'en': Locale(code='en', lang='en', **_EN_COMMON),
    'en-gb': Locale(code='en-gb', lang='en', date_order='dmy', **_EN_COMMON),
    'de': Locale(
        code='de',
        lang='de',
        relative_days={'heute': 0, 'morgen': 1, 'übermorgen': 2, 'gestern': -1},
        weekdays={
            'montag': 0, 'mo': 0, 'dienstag': 1, 'di': 1, 'mittwoch': 2, 'mi': 2,
            'donnerstag': 3, 'do': 3, 'freitag': 4, 'fr': 4, 'samstag': 5, 'sa': 5,
            'sonntag': 6, 'so': 6,
        },
        months={
            'januar': 1, 'jan': 1, 'februar': 2, 'feb': 2, 'märz': 3, 'mär': 3, 'april': 4, 'apr': 4,
            'mai': 5, 'juni': 6, 'jun': 6, 'juli': 7, 'jul': 7, 'august': 8, 'aug': 8,
            'september': 9, 'sep': 9, 'sept': 9, 'oktober': 10, 'okt': 10, 'november': 11, 'nov': 11,
            'dezember': 12, 'dez': 12,
        },
        units={
            'tag': 'day', 'tage': 'day', 'tagen': 'day', 'woche': 'week', 'wochen': 'week',
            'monat': 'month', 'monate': 'month', 'monaten': 'month',
            'jahr': 'year', 'jahre': 'year', 'jahren': 'year',
        },
        recurrence_aliases={'täglich': 'tag', 'wöchentlich': 'woche', 'monatlich': 'monat', 'jährlich': 'jahr'},
        every_words=('jeden', 'jede', 'jedes', 'alle'),
        other_words=('zweiten', 'zweite'),
        next_words=('nächsten', 'nächste', 'nächster', 'kommenden'),
        in_words=('in',),
        at_words=('um', '@'),
        and_words=('und', ','),
        workday_words=('werktag', 'wochentag'),
        noon_words=('mittag',),
        midnight_words=('mitternacht',),
        date_order='dmy',
        date_separator='.',
        ordinal_suffix=r'\.?',
        starting_word='ab',
    ),
}
DEFAULT_LOCALE = 'en'


def get_locale(code: Optional[str]) -> Locale:
    """Look up a locale by code, falling back to the language and then to English"""
    if not code:
        return LOCALES[DEFAULT_LOCALE]
    key = code.lower().replace('_', '-')
    if key in LOCALES:
        return LOCALES[key]
    language = key.split('-')[0]
    if language in LOCALES:
        return LOCALES[language]
    logger.warning(f"Unknown locale '{code}', falling back to '{DEFAULT_LOCALE}'")
    return LOCALES[DEFAULT_LOCALE]


# ==================== Regex builders ====================

def _alt(words) -> str:
    return '|'.join(re.escape(w) for w in sorted(words, key=len, reverse=True))


_TIME = r'\d{1,2}(?::\d{2})?\s*(?:am|pm)?(?:\s*uhr)?'
_BARE_TIME = r'\d{1,2}:\d{2}\s*(?:am|pm)?(?:\s*uhr)?|\d{1,2}\s*(?:am|pm|uhr)'
_ISO_DATE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')
_ISO_DATETIME = re.compile(r'^(\d{4}-\d{2}-\d{2})t(\d{2}:\d{2})(?::\d{2})?$')


def _at_time_pattern(loc: Locale) -> str:
    words = _alt(loc.noon_words + loc.midnight_words)
    return rf'^(?:(?P<rest>.*?)\s+)?(?:{_alt(loc.at_words)})\s*(?P<time>{_TIME}|{words})$'


def _bare_time_pattern(loc: Locale) -> str:
    words = _alt(loc.noon_words + loc.midnight_words)
    return rf'^(?:(?P<rest>.*?)\s+)?(?P<time>{_BARE_TIME}|{words})$'


def _every_pattern(loc: Locale) -> str:
    return rf'^(?:{_alt(loc.every_words)})\s+(?P<rule>.+)$'


def _weekday_pattern(loc: Locale) -> str:
    return rf'^(?:(?P<next>{_alt(loc.next_words)})\s+)?(?P<day>{_alt(loc.weekdays)})$'


def _next_unit_pattern(loc: Locale) -> str:
    return rf'^(?:{_alt(loc.next_words)})\s+(?P<unit>{_alt(loc.units)})$'


def _in_units_pattern(loc: Locale) -> str:
    return rf'^(?:{_alt(loc.in_words)})\s+(?P<n>\d+)\s+(?P<unit>{_alt(loc.units)})$'


def _numeric_pattern(loc: Locale) -> str:
    sep = re.escape(loc.date_separator)
    trailing = f'{sep}?' if loc.date_separator == '.' else ''
    return rf'^(?P<a>\d{{1,2}}){sep}(?P<b>\d{{1,2}})(?:{sep}(?P<y>\d{{2}}|\d{{4}})|{trailing})$'


def _month_day_pattern(loc: Locale) -> str:
    return rf'^(?P<month>{_alt(loc.months)})\.?\s+(?P<day>\d{{1,2}}){loc.ordinal_suffix}(?:,?\s+(?P<y>\d{{4}}))?$'


def _day_month_pattern(loc: Locale) -> str:
    return rf'^(?P<day>\d{{1,2}}){loc.ordinal_suffix}\s+(?:of\s+)?(?P<month>{_alt(loc.months)})\.?(?:,?\s+(?P<y>\d{{4}}))?$'


def _interval_pattern(loc: Locale) -> str:
    return rf'^(?:(?P<n>\d+)\s+|(?P<other>{_alt(loc.other_words)})\s+)?(?P<unit>{_alt(loc.units)})$'


def _other_weekday_pattern(loc: Locale) -> str:
    return rf'^(?:{_alt(loc.other_words)})\s+(?P<day>{_alt(loc.weekdays)})$'


def _day_of_month_pattern(loc: Locale) -> str:
    return rf'^(?P<day>\d{{1,2}}){loc.ordinal_suffix}$'


def _list_split_pattern(loc: Locale) -> str:
    words = [w for w in loc.and_words if w != ',']
    return rf'\s*,\s*|\s+(?:{_alt(words)})\s+'


# ==================== Date arithmetic ====================

def _next_weekday(start: date, weekday: int, inclusive: bool) -> date:
    """First `weekday` on or after `start` (inclusive) or strictly after it"""
    days_ahead = (weekday - start.weekday()) % 7
    if days_ahead == 0 and not inclusive:
        days_ahead = 7
    return start + timedelta(days=days_ahead)


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _add(start: date, n: int, unit: str) -> date:
    if unit == 'day':
        return start + timedelta(days=n)
    if unit == 'week':
        return start + timedelta(weeks=n)
    if unit == 'month':
        return _add_months(start, n)
    return _add_months(start, 12 * n)


def _first_matching(start: date, predicate: Callable[[date], bool], horizon: int = 400) -> Optional[date]:
    for offset in range(horizon):
        candidate = start + timedelta(days=offset)
        if predicate(candidate):
            return candidate
    return None


def _calendar_date(text: str, month: int, day: int, year: Optional[str], start: date) -> date:
    """
    A literal calendar date; without a year it is the next occurrence on or after `start`
    """
    if year:
        y = int(year)
        if y < 100:
            y += 2000
        try:
            return date(y, month, day)
        except ValueError:
            raise UnrecognizedDueDate(text, "no such calendar date")

    found = None
    if 1 <= month <= 12 and 1 <= day <= 31:
        found = _first_matching(
            start,
            lambda d: d.month == month and d.day == day,
            horizon=366 * 8,
        )
    if found is None:
        raise UnrecognizedDueDate(text, "no such calendar date")
    return found


def _parse_time(token: str, loc: Locale, text: str) -> time:
    if token in loc.noon_words:
        return time(12, 0)
    if token in loc.midnight_words:
        return time(0, 0)

    m = re.fullmatch(r'(\d{1,2})(?::(\d{2}))?\s*(am|pm)?(?:\s*uhr)?', token)
    if not m:
        raise UnrecognizedDueDate(text, f"bad time '{token}'")
    hour, minute, meridiem = int(m.group(1)), int(m.group(2) or 0), m.group(3)
    if meridiem:
        if not 1 <= hour <= 12:
            raise UnrecognizedDueDate(text, f"bad time '{token}'")
        hour = hour % 12 + (12 if meridiem == 'pm' else 0)
    if hour > 23 or minute > 59:
        raise UnrecognizedDueDate(text, f"bad time '{token}'")
    return time(hour, minute)


# ==================== Grammar ====================

def _split_time(lowered: str, loc: Locale, text: str) -> Tuple[str, Optional[time]]:
    """Peel an optional time-of-day suffix off the end of the text"""
    m = _ISO_DATETIME.match(lowered)
    if m:
        return m.group(1), _parse_time(m.group(2), loc, text)

    for name, builder in (('at_time', _at_time_pattern), ('bare_time', _bare_time_pattern)):
        m = loc.pattern(name, builder).match(lowered)
        if m:
            return (m.group('rest') or '').strip(), _parse_time(m.group('time').strip(), loc, text)
    return lowered, None


def _match_date(expr: str, loc: Locale, today: date, text: str) -> Optional[date]:
    """One non-recurring date expression, or None when no rule matches"""
    if expr in loc.relative_days:
        return today + timedelta(days=loc.relative_days[expr])

    m = _ISO_DATE.match(expr)
    if m:
        return _calendar_date(text, int(m.group(2)), int(m.group(3)), m.group(1), today)

    m = loc.pattern('weekday', _weekday_pattern).match(expr)
    if m:
        due = _next_weekday(today, loc.weekdays[m.group('day')], inclusive=False)
        return due + timedelta(weeks=1) if m.group('next') else due

    m = loc.pattern('next_unit', _next_unit_pattern).match(expr)
    if m:
        unit = loc.units[m.group('unit')]
        if unit == 'day':
            return today + timedelta(days=1)
        if unit == 'week':
            return _next_weekday(today, 0, inclusive=False)
        if unit == 'month':
            return _add_months(today.replace(day=1), 1)
        return date(today.year + 1, 1, 1)

    m = loc.pattern('in_units', _in_units_pattern).match(expr)
    if m:
        return _add(today, int(m.group('n')), loc.units[m.group('unit')])

    m = loc.pattern('numeric', _numeric_pattern).match(expr)
    if m:
        a, b = int(m.group('a')), int(m.group('b'))
        month, day = (a, b) if loc.date_order == 'mdy' else (b, a)
        return _calendar_date(text, month, day, m.group('y'), today)

    for name, builder in (('month_day', _month_day_pattern), ('day_month', _day_month_pattern)):
        m = loc.pattern(name, builder).match(expr)
        if m:
            return _calendar_date(text, loc.months[m.group('month')], int(m.group('day')), m.group('y'), today)

    return None


def _resolve_date(expr: str, loc: Locale, today: date, text: str) -> date:
    due = _match_date(expr, loc, today, text)
    if due is not None:
        return due

    # Two complete date expressions side by side ("tomorrow friday") cannot both hold
    words = expr.split()
    for i in range(1, len(words)):
        left = _match_date(' '.join(words[:i]), loc, today, text)
        right = _match_date(' '.join(words[i:]), loc, today, text) if left else None
        if left and right:
            if left == right:
                return left
            raise AmbiguousDueDate(text, f"{left.isoformat()} or {right.isoformat()}")

    raise UnrecognizedDueDate(text)


def _resolve_recurrence(rule: str, loc: Locale, start: date, text: str) -> date:
    """Next occurrence on or after `start` of an "every ..." rule"""
    if loc.pattern('interval', _interval_pattern).match(rule):
        return start

    if rule in loc.workday_words:
        return _first_matching(start, lambda d: d.weekday() < 5)

    m = loc.pattern('other_weekday', _other_weekday_pattern).match(rule)
    if m:
        return _next_weekday(start, loc.weekdays[m.group('day')], inclusive=True)

    parts = [p for p in loc.pattern('list_split', _list_split_pattern).split(rule) if p]
    if parts and all(p in loc.weekdays for p in parts):
        return min(_next_weekday(start, loc.weekdays[p], inclusive=True) for p in parts)

    m = loc.pattern('day_of_month', _day_of_month_pattern).match(rule)
    if m:
        day = int(m.group('day'))
        if 1 <= day <= 31:
            return _first_matching(start, lambda d: d.day == day)

    for name, builder in (('month_day', _month_day_pattern), ('day_month', _day_month_pattern)):
        m = loc.pattern(name, builder).match(rule)
        if m and not m.group('y'):
            return _calendar_date(text, loc.months[m.group('month')], int(m.group('day')), None, start)

    raise UnrecognizedDueDate(text, "unknown recurrence")


def resolve(
    text: str,
    reference: datetime,
    locale: str = DEFAULT_LOCALE,
    allow_past: bool = False,
) -> DueSpec:
    """
    Resolve free text into a DueSpec relative to `reference`

    Args:
        text: What the operator typed, e.g. "next monday at 9am"
        reference: The instant "today" and "now" refer to
        locale: Locale code (en, en-gb, de); unknown codes fall back to English
        allow_past: Accept dates before the reference day instead of raising PastDueDate

    Returns:
        DueSpec; recurring specs carry the rule text and their next occurrence

    Raises:
        UnrecognizedDueDate: no grammar rule matches
        PastDueDate: the date is before the reference day
        AmbiguousDueDate: the text names two different dates
    """
    loc = get_locale(locale)
    original = ' '.join((text or '').split())
    if not original:
        raise UnrecognizedDueDate(text or '', "empty")

    today = reference.date()
    now = reference.time().replace(second=0, microsecond=0, tzinfo=None)
    lowered = original.lower()

    rest, due_time = _split_time(lowered, loc, original)

    if not rest:
        if due_time is None:
            raise UnrecognizedDueDate(original)
        due_date = today if due_time >= now else today + timedelta(days=1)
        return DueSpec(date=due_date, time=due_time, lang=loc.lang)

    m = loc.pattern('every', _every_pattern).match(rest)
    rule = m.group('rule') if m else None
    if rule is None and rest in loc.recurrence_aliases:
        rule = loc.recurrence_aliases[rest]

    if rule is not None:
        # Today's occurrence counts unless its time has already passed
        start = today if due_time is None or due_time >= now else today + timedelta(days=1)
        due_date = _resolve_recurrence(rule.strip(), loc, start, original)
        return DueSpec(date=due_date, time=due_time, recurrence=original, lang=loc.lang)

    due_date = _resolve_date(rest, loc, today, original)
    if due_date < today and not allow_past:
        raise PastDueDate(original, f"{due_date.isoformat()} is before {today.isoformat()}")
    return DueSpec(date=due_date, time=due_time, lang=loc.lang)


def format_due(due: DueSpec) -> str:
    """Canonical text for a DueSpec that `resolve` reads back to the same spec"""
    if due.recurrence:
        return due.recurrence
    if due.time is not None:
        return f"{due.date.isoformat()} {due.time.strftime('%H:%M')}"
    return due.date.isoformat()


def describe_due(due: Optional[DueSpec], today: date) -> str:
    """Short human label: Today / Tomorrow / ISO date, time and a ↻ for recurring"""
    if due is None:
        return "no date"
    if due.date == today:
        label = "Today"
    elif due.date == today + timedelta(days=1):
        label = "Tomorrow"
    else:
        label = due.date.isoformat()
    if due.time is not None:
        label += f" {due.time.strftime('%H:%M')}"
    if due.is_recurring:
        label += f" ↻ {due.recurrence}"
    return label


class DueDateResolver:
    """Resolver bound to a locale, a timezone and a clock"""

    def __init__(
        self,
        locale: str = DEFAULT_LOCALE,
        timezone: Optional[str] = None,
        allow_past: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.locale = get_locale(locale).code
        self.timezone = ZoneInfo(timezone) if timezone else None
        self.allow_past = allow_past
        self._clock = clock or (lambda: datetime.now(self.timezone))

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return self.now().date()

    def resolve(self, text: str, reference: Optional[datetime] = None) -> DueSpec:
        return resolve(text, reference or self.now(), self.locale, self.allow_past)

    def resolve_due_text(self, text: str) -> DueSpec:
        """Resolve against the current time; used by the non-interactive create path"""
        return self.resolve(text)

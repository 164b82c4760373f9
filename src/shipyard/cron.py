"""Five-field cron expressions evaluated on local wall-clock time.

Fields are ``minute hour day-of-month month day-of-week``. Each field accepts
``*``, ``*/n``, ``a-b``, ``a-b/n``, ``a/n`` and comma lists; months and
weekdays also accept three-letter names. Weekday ``7`` is Sunday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shipyard.errors import InputValidationError

MAX_LOOKAHEAD = timedelta(days=366)
MAX_PREVIEW_RUNS = 100

_MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ('jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec'),
        start=1,
    )
}
_WEEKDAY_NAMES = {name: index for index, name in enumerate(('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat'))}

MACROS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * 0',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    minimum: int
    maximum: int
    names: dict[str, int]


_FIELDS = (
    _FieldSpec('minute', 0, 59, {}),
    _FieldSpec('hour', 0, 23, {}),
    _FieldSpec('day_of_month', 1, 31, {}),
    _FieldSpec('month', 1, 12, _MONTH_NAMES),
    _FieldSpec('day_of_week', 0, 7, _WEEKDAY_NAMES),
)


def _invalid(message: str) -> InputValidationError:
    return InputValidationError(message, field='schedule', code='invalid_cron')


@dataclass(frozen=True)
class CronExpression:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    def day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days
        dow = moment.isoweekday() % 7 in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dom or dow
        if self.day_restricted:
            return dom
        if self.weekday_restricted:
            return dow
        return True

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self.day_matches(moment)
        )


def _parse_value(text: str, spec: _FieldSpec) -> int:
    key = text.strip().lower()
    if key in spec.names:
        return spec.names[key]
    if not key.isdigit():
        raise _invalid(f'invalid {spec.name} value: {text!r}')
    value = int(key)
    if value < spec.minimum or value > spec.maximum:
        raise _invalid(f'{spec.name} value {value} out of range {spec.minimum}-{spec.maximum}')
    return value


def _parse_field(raw: str, spec: _FieldSpec) -> tuple[frozenset[int], bool]:
    text = raw.strip()
    if not text:
        raise _invalid(f'empty {spec.name} field')
    values: set[int] = set()
    for part in text.split(','):
        if not part:
            raise _invalid(f'empty list item in {spec.name} field')
        base, sep, step_text = part.partition('/')
        step = 1
        if sep:
            if not step_text.isdigit() or int(step_text) <= 0:
                raise _invalid(f'invalid step in {spec.name} field: {part!r}')
            step = int(step_text)
        if base == '*':
            start, end = spec.minimum, spec.maximum
        elif '-' in base:
            low, _, high = base.partition('-')
            start, end = _parse_value(low, spec), _parse_value(high, spec)
            if start > end:
                raise _invalid(f'reversed range in {spec.name} field: {part!r}')
        else:
            start = _parse_value(base, spec)
            end = spec.maximum if sep else start
        values.update(range(start, end + 1, step))
    if spec.name == 'day_of_week' and 7 in values:
        values.discard(7)
        values.add(0)
    # a field starting with '*' counts as unrestricted for the day-of-month OR day-of-week rule
    return frozenset(values), not text.startswith('*')


def parse_cron(expression: str) -> CronExpression:
    text = ' '.join(str(expression or '').split())
    source = MACROS.get(text.lower(), text)
    parts = source.split(' ') if source else []
    if len(parts) != len(_FIELDS):
        raise _invalid(f'cron expression needs 5 fields, got {len(parts)}: {expression!r}')
    parsed = [_parse_field(part, spec) for part, spec in zip(parts, _FIELDS)]
    (minutes, _), (hours, _), (days, day_restricted), (months, _), (weekdays, weekday_restricted) = parsed
    return CronExpression(
        expression=text,
        minutes=minutes,
        hours=hours,
        days=days,
        months=months,
        weekdays=weekdays,
        day_restricted=day_restricted,
        weekday_restricted=weekday_restricted,
    )


def resolve_timezone(name: str | None) -> ZoneInfo:
    text = str(name or 'UTC').strip() or 'UTC'
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InputValidationError(f'unknown timezone: {text}', field='timezone') from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_run(expression: str | CronExpression, after: datetime, tz: str | None = 'UTC') -> datetime | None:
    """First matching minute strictly after *after*, as an aware UTC datetime.

    Returns ``None`` when nothing matches within a year (e.g. ``0 0 30 2 *``).
    Local times skipped by a DST jump never match.
    """
    cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
    zone = resolve_timezone(tz)
    after_utc = _as_utc(after)
    start = after_utc.astimezone(zone).replace(tzinfo=None, second=0, microsecond=0) + timedelta(minutes=1)
    limit = start + MAX_LOOKAHEAD
    candidate = start
    while candidate <= limit:
        if candidate.month not in cron.months:
            first = candidate.replace(day=1, hour=0, minute=0)
            candidate = (first + timedelta(days=32)).replace(day=1)
            continue
        if not cron.day_matches(candidate):
            candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if candidate.hour not in cron.hours:
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
            continue
        if candidate.minute not in cron.minutes:
            candidate += timedelta(minutes=1)
            continue
        resolved = candidate.replace(tzinfo=zone).astimezone(timezone.utc)
        if resolved.astimezone(zone).replace(tzinfo=None) != candidate or resolved <= after_utc:
            candidate += timedelta(minutes=1)
            continue
        return resolved
    return None


def upcoming_runs(
    expression: str | CronExpression,
    *,
    count: int = 5,
    tz: str | None = 'UTC',
    after: datetime | None = None,
) -> list[datetime]:
    cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
    cursor = after or datetime.now(timezone.utc)
    runs: list[datetime] = []
    for _ in range(max(1, min(MAX_PREVIEW_RUNS, int(count)))):
        found = next_run(cron, cursor, tz)
        if found is None:
            break
        runs.append(found)
        cursor = found
    return runs

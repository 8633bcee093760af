"""Natural-language task parser.

Turns a line such as "remind me to call mom tomorrow at 7pm" into a title,
an optional scheduled instant and an optional recurrence rule.

The pipeline is a fixed sequence of stages. Every stage is a matcher with
`match(text, now) -> StageMatch | None`; when it matches, its span is cut out
of the working text before the next stage runs, so later stages never see
(and the title never keeps) text an earlier stage already consumed. Stage
order and the order of the phrase tables are significant: "tomorrow morning"
must be tried before "tomorrow", "every weekday" before "every week", etc.

The parser never raises. Unparseable input degrades to a title equal to the
trimmed text with no date and no recurrence.
"""
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable, NamedTuple, Optional
import logging
import re

import dateparser.search
from dateutil.relativedelta import relativedelta

from .models import ParsedInput
from .recurrence import (
    FRIDAY, MONDAY, SATURDAY, SUNDAY, THURSDAY, TUESDAY, WEDNESDAY,
    RecurrenceRule,
)
from .utils import local_tz, now_local, start_of_day

logger = logging.getLogger(__name__)


class StageMatch(NamedTuple):
    """A stage hit: the (start, end) span in the working text and its value."""
    span: tuple[int, int]
    value: Any


class DateHit(NamedTuple):
    date: datetime
    has_time: bool


def _phrase_regex(phrase: str) -> re.Pattern:
    # hyphens count as part of a word so "weekly" does not fire inside "bi-weekly".
    # A trailing "*" lets the last word run on: "every tue*" covers "every tues".
    tail = ''
    if phrase.endswith('*'):
        phrase, tail = phrase[:-1], r'[a-z]*'
    return re.compile(r'(?<![\w-])' + re.escape(phrase) + tail + r'(?![\w-])', re.IGNORECASE)


def remove_span(text: str, span: tuple[int, int]) -> str:
    start, end = span
    return text[:start] + ' ' + text[end:]


# --- stage tables ---

# Longest first; only the first matching prefix is stripped.
REMIND_PREFIXES = [
    r'^remind\s+me\s+to\s+',
    r'^remind\s+me\s+',
    r'^reminder\s+to\s+',
    r'^reminder\s+',
    r'^remind\s+',
]

RECURRENCE_PATTERNS: list[tuple[str, RecurrenceRule]] = [
    ('every day', RecurrenceRule.daily()),
    ('everyday', RecurrenceRule.daily()),
    ('daily', RecurrenceRule.daily()),
    ('every weekday', RecurrenceRule.weekdays()),
    ('weekdays', RecurrenceRule.weekdays()),
    ('every weekend', RecurrenceRule.weekends()),
    ('weekends', RecurrenceRule.weekends()),
    ('every week', RecurrenceRule.weekly()),
    ('weekly', RecurrenceRule.weekly()),
    ('biweekly', RecurrenceRule.biweekly()),
    ('bi-weekly', RecurrenceRule.biweekly()),
    ('every month', RecurrenceRule.monthly()),
    ('monthly', RecurrenceRule.monthly()),
    ('every year', RecurrenceRule.yearly()),
    ('yearly', RecurrenceRule.yearly()),
    ('annually', RecurrenceRule.yearly()),
    ('every monday', RecurrenceRule.every(MONDAY)),
    ('every tuesday', RecurrenceRule.every(TUESDAY)),
    ('every wednesday', RecurrenceRule.every(WEDNESDAY)),
    ('every thursday', RecurrenceRule.every(THURSDAY)),
    ('every friday', RecurrenceRule.every(FRIDAY)),
    ('every saturday', RecurrenceRule.every(SATURDAY)),
    ('every sunday', RecurrenceRule.every(SUNDAY)),
    ('every mon*', RecurrenceRule.every(MONDAY)),
    ('every tue*', RecurrenceRule.every(TUESDAY)),
    ('every wed*', RecurrenceRule.every(WEDNESDAY)),
    ('every thu*', RecurrenceRule.every(THURSDAY)),
    ('every fri*', RecurrenceRule.every(FRIDAY)),
    ('every sat*', RecurrenceRule.every(SATURDAY)),
    ('every sun*', RecurrenceRule.every(SUNDAY)),
]


def _at_hour(hour: int, days: int = 0) -> Callable[[datetime], DateHit]:
    def resolve(now: datetime) -> DateHit:
        day = now + timedelta(days=days)
        return DateHit(day.replace(hour=hour, minute=0, second=0, microsecond=0), True)
    return resolve


RELATIVE_PATTERNS: list[tuple[str, Callable[[datetime], DateHit]]] = [
    ('tonight', _at_hour(20)),
    ('this evening', _at_hour(18)),
    ('this afternoon', _at_hour(14)),
    ('this morning', _at_hour(9)),
    ('tomorrow morning', _at_hour(9, days=1)),
    ('tomorrow evening', _at_hour(18, days=1)),
    ('tomorrow night', _at_hour(20, days=1)),
    ('tomorrow', lambda now: DateHit(start_of_day(now) + timedelta(days=1), False)),
    ('today', lambda now: DateHit(start_of_day(now), False)),
    ('next week', lambda now: DateHit(now + relativedelta(weeks=1), False)),
    ('next month', lambda now: DateHit(now + relativedelta(months=1), False)),
]

WORD_NUMBERS = {
    'one': 1, 'two': 2, 'three': 3, 'four': 4, 'five': 5,
    'six': 6, 'seven': 7, 'eight': 8, 'nine': 9, 'ten': 10,
    'fifteen': 15, 'twenty': 20, 'thirty': 30, 'forty': 40,
    'forty-five': 45, 'half': 30, 'a': 1, 'an': 1,
}

DURATION_RE = re.compile(
    r'\bin\s+(\d+)\s*(minutes?|mins?|hours?|hrs?|seconds?|secs?)\b',
    re.IGNORECASE,
)
WORD_DURATION_RE = re.compile(
    r'\bin\s+(forty-five|one|two|three|four|five|six|seven|eight|nine|ten|fifteen'
    r'|twenty|thirty|forty|half|an|a)(?:\s+an)?\s*(minutes?|mins?|hours?|hrs?)\b',
    re.IGNORECASE,
)
CLOCK_RE = re.compile(
    r'(?:\bat\s+)?\b(\d{1,2})(?::(\d{2}))?\s*(a\.m\.|p\.m\.|am|pm)(?!\w)',
    re.IGNORECASE,
)

TIME_INDICATORS = ('am', 'pm', ':', "o'clock", 'noon', 'midnight')

# Single tokens the generic recognizer happily turns into dates but which are
# almost never meant as one in a task title ("buy 2 apples", "call one").
NUMBER_WORDS = {
    'zero', 'one', 'two', 'three', 'four', 'five', 'six', 'seven', 'eight',
    'nine', 'ten', 'eleven', 'twelve',
}
GENERIC_ANCHORS = {'now'}

MONTHS_EN = [
    'january', 'february', 'march', 'april', 'may', 'june', 'july',
    'august', 'september', 'october', 'november', 'december',
]
_FULL_WEEKDAY_RE = re.compile(
    r'\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?\b',
    re.IGNORECASE,
)
# Month names and weekday abbreviations double as ordinary words ("I may
# call", "march in the parade", "sat nav"); they only count as a date next
# to a number or right after a qualifier such as "on" or "next".
_AMBIGUOUS_WORDS = (
    '|'.join(MONTHS_EN) + '|' + '|'.join(m[:3] for m in MONTHS_EN)
    + r'|sept|mon|tue|tues|wed|weds|thu|thur|thurs|fri|sat|sun'
)
_AMBIGUOUS_RE = re.compile(r'\b(' + _AMBIGUOUS_WORDS + r')\b', re.IGNORECASE)
_QUALIFIED_RE = re.compile(
    r'\b(on|next|this|last|every|by|until|till|in|before|after|from|since)\s+(' + _AMBIGUOUS_WORDS + r')\b',
    re.IGNORECASE,
)
_TIME_TOKEN_RE = re.compile(
    r'\d{1,2}:\d{2}|\b\d{1,2}\s*(am|pm|a\.m\.|p\.m\.)|\b(noon|midnight|morning|evening|afternoon|o\'clock)\b',
    re.IGNORECASE,
)
_NUMERIC_DATE_RE = re.compile(r'\b\d{1,4}[./-]\d{1,2}([./-]\d{2,4})?\b|\b\d{1,2}(st|nd|rd|th)\b', re.IGNORECASE)
_RELATIVE_WORD_RE = re.compile(r'\b(next|last|this|ago|week|weeks|month|months|year|years|day|days|fortnight)\b', re.IGNORECASE)


def _has_date_anchor(s: str, lead: str = '') -> bool:
    """True if s carries something a person would write to mean a date or time.

    `lead` is the word just before s in the original text, so "on sat" is
    recognised even when the recognizer only reports "sat".
    """
    if (
        _FULL_WEEKDAY_RE.search(s)
        or _TIME_TOKEN_RE.search(s)
        or _NUMERIC_DATE_RE.search(s)
        or _RELATIVE_WORD_RE.search(s)
    ):
        return True
    if _AMBIGUOUS_RE.search(s):
        return bool(re.search(r'\d', s) or _QUALIFIED_RE.search(f'{lead} {s}'))
    return False


def _is_noise_match(matched: str, lead: str = '') -> bool:
    token = matched.strip().lower()
    if not token:
        return True
    if token in NUMBER_WORDS or token in GENERIC_ANCHORS:
        return True
    if re.fullmatch(r'\d{1,4}', token):
        return True
    return not _has_date_anchor(token, lead.lower())


# --- generic recognizer ---

class DateRecognizer:
    """Finds date/time expressions in free text.

    `search` returns (matched_text, datetime) pairs in order of appearance;
    datetimes must be aware and expressed in `now`'s zone.
    """

    def search(self, text: str, now: datetime) -> list[tuple[str, datetime]]:
        raise NotImplementedError


class DateparserRecognizer(DateRecognizer):
    """dateparser-backed recognizer restricted to English."""

    def __init__(self, languages: tuple[str, ...] = ('en',)):
        self.languages = list(languages)

    def search(self, text: str, now: datetime) -> list[tuple[str, datetime]]:
        if not text.strip():
            return []
        settings = {
            # dateparser compares against naive wall time
            'RELATIVE_BASE': now.replace(tzinfo=None),
            'PREFER_DATES_FROM': 'future',
            'RETURN_AS_TIMEZONE_AWARE': False,
        }
        results = dateparser.search.search_dates(text, languages=self.languages, settings=settings)
        out: list[tuple[str, datetime]] = []
        for matched, dt in results or []:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=now.tzinfo)
            else:
                dt = dt.astimezone(now.tzinfo)
            out.append((matched, dt))
        return out


# --- matchers ---

class PrefixMatcher:
    def __init__(self, patterns: list[str]):
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        for regex in self.patterns:
            m = regex.search(text)
            if m:
                return StageMatch(m.span(), None)
        return None


class PhraseTableMatcher:
    """First entry of an ordered (phrase, value) table found in the text wins."""

    def __init__(self, table: list[tuple[str, Any]]):
        self.table = [(phrase, _phrase_regex(phrase), value) for phrase, value in table]

    def lookup(self, text: str) -> Optional[tuple[tuple[int, int], Any]]:
        for _phrase, regex, value in self.table:
            m = regex.search(text)
            if m:
                return m.span(), value
        return None

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        hit = self.lookup(text)
        if hit is None:
            return None
        span, value = hit
        return StageMatch(span, value)


class RecurrenceMatcher(PhraseTableMatcher):
    pass


class RelativePhraseMatcher(PhraseTableMatcher):
    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        hit = self.lookup(text)
        if hit is None:
            return None
        span, resolve = hit
        return StageMatch(span, resolve(now))


class DurationMatcher:
    """"in 5 mins", "in 2 hours", "in 30 seconds"."""

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        m = DURATION_RE.search(text)
        if not m:
            return None
        number = int(m.group(1))
        unit = m.group(2).lower()
        if unit.startswith(('hour', 'hr')):
            delta = timedelta(hours=number)
        elif unit.startswith('sec'):
            delta = timedelta(seconds=number)
        else:
            delta = timedelta(minutes=number)
        return StageMatch(m.span(), DateHit(now + delta, True))


class WordDurationMatcher:
    """"in five minutes", "in an hour", "in half an hour"."""

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        m = WORD_DURATION_RE.search(text)
        if not m:
            return None
        word = m.group(1).lower()
        unit = m.group(2).lower()
        number = WORD_NUMBERS.get(word, 1)
        if word == 'half' and unit.startswith(('hour', 'hr')):
            delta = timedelta(minutes=30)
        elif unit.startswith(('hour', 'hr')):
            delta = timedelta(hours=number)
        else:
            delta = timedelta(minutes=number)
        return StageMatch(m.span(), DateHit(now + delta, True))


class GeneralDateMatcher:
    """Wraps a DateRecognizer; value is DateHit(date, contains_time)."""

    def __init__(self, recognizer: DateRecognizer):
        self.recognizer = recognizer

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        lowered = text.lower()
        for matched, dt in self.recognizer.search(text, now):
            idx = lowered.find(matched.lower())
            if idx == -1:
                continue
            before = text[:idx].split()
            if _is_noise_match(matched, before[-1] if before else ''):
                continue
            contains_time = any(tok in matched.lower() for tok in TIME_INDICATORS)
            return StageMatch((idx, idx + len(matched)), DateHit(dt, contains_time))
        return None


class ClockTimeMatcher:
    """"at 7pm", "3:30 pm", "9 a.m."; value is (hour, minute) on a 24h clock."""

    def match(self, text: str, now: datetime) -> Optional[StageMatch]:
        m = CLOCK_RE.search(text)
        if not m:
            return None
        hour = int(m.group(1))
        minute = int(m.group(2) or 0)
        meridiem = m.group(3).lower()
        if 'p' in meridiem and hour < 12:
            hour += 12
        elif 'a' in meridiem and hour == 12:
            hour = 0
        if hour > 23 or minute > 59:
            return None
        return StageMatch(m.span(), (hour, minute))


# --- title cleanup ---

TITLE_PREFIX_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'^\s*remind\s+me\s+to\s+',
        r'^\s*remind\s+me\s+',
        r'^\s*reminder\s+to\s+',
        r'^\s*reminder\s+',
        r'^\s*set\s+a?\s*reminder\s+to\s+',
        r'^\s*set\s+a?\s*reminder\s+for\s+',
    )
]
PREPOSITIONS = ['at', 'on', 'by', 'for', 'the', 'in', 'to']
_LEADING_PREP = [re.compile(r'^\s*' + p + r'\s+', re.IGNORECASE) for p in PREPOSITIONS]
_TRAILING_PREP = [re.compile(r'\s+' + p + r'\s*$', re.IGNORECASE) for p in PREPOSITIONS]


def clean_title(text: str) -> str:
    """Strip leftover reminder phrases and dangling prepositions, collapse
    whitespace and capitalise the first letter. Running it twice is a no-op.
    """
    cleaned = text or ''
    while True:
        before = cleaned
        for regex in TITLE_PREFIX_PATTERNS:
            cleaned = regex.sub('', cleaned)
        for lead, trail in zip(_LEADING_PREP, _TRAILING_PREP):
            cleaned = lead.sub('', cleaned)
            cleaned = trail.sub('', cleaned)
        if cleaned == before:
            break
    cleaned = ' '.join(cleaned.split())
    if cleaned:
        cleaned = cleaned[0].upper() + cleaned[1:]
    return cleaned


# --- pipeline ---

class NaturalLanguageParser:
    def __init__(
        self,
        now: Optional[Callable[[], datetime]] = None,
        recognizer: Optional[DateRecognizer] = None,
        tz: Optional[tzinfo] = None,
    ):
        self._now = now or now_local
        self._tz = tz
        self.prefix_stage = PrefixMatcher(REMIND_PREFIXES)
        self.recurrence_stage = RecurrenceMatcher(RECURRENCE_PATTERNS)
        self.duration_stage = DurationMatcher()
        self.word_duration_stage = WordDurationMatcher()
        self.relative_stage = RelativePhraseMatcher(RELATIVE_PATTERNS)
        self.general_stage = GeneralDateMatcher(recognizer or DateparserRecognizer())
        self.clock_stage = ClockTimeMatcher()

    def current_time(self) -> datetime:
        now = self._now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tz or local_tz())
        elif self._tz is not None:
            now = now.astimezone(self._tz)
        return now

    def _run(self, stage, text: str, now: datetime) -> tuple[str, Any]:
        try:
            m = stage.match(text, now)
        except Exception:
            logger.exception('parser stage %s failed on %r', type(stage).__name__, text)
            return text, None
        if m is None:
            return text, None
        logger.debug('%s matched %r', type(stage).__name__, text[m.span[0]:m.span[1]])
        return remove_span(text, m.span), m.value

    def parse(self, text: str) -> ParsedInput:
        trimmed = (text or '').strip()
        if not trimmed:
            return ParsedInput(title='', scheduled_date=None, has_specific_time=False, recurrence_rule=None)

        now = self.current_time()

        working, _ = self._run(self.prefix_stage, trimmed, now)
        working, rule = self._run(self.recurrence_stage, working, now)
        working, found, has_time = self._extract_datetime(working, now)
        title = clean_title(working)

        if rule is not None and found is None:
            found = rule.next_occurrence(now)

        return ParsedInput(
            title=title,
            scheduled_date=found,
            has_specific_time=has_time,
            recurrence_rule=rule,
        )

    def _extract_datetime(self, working: str, now: datetime) -> tuple[str, Optional[datetime], bool]:
        found: Optional[datetime] = None
        has_time = False

        working, hit = self._run(self.duration_stage, working, now)
        if hit is None:
            working, hit = self._run(self.word_duration_stage, working, now)
        if hit is not None:
            found, has_time = hit

        working, hit = self._run(self.relative_stage, working, now)
        if hit is not None:
            found, has_time = hit

        working, hit = self._run(self.general_stage, working, now)
        if hit is not None:
            detected, contains_time = hit
            if contains_time:
                has_time = True
            if found is not None and contains_time:
                # keep the earlier date, take only the clock time
                found = found.replace(hour=detected.hour, minute=detected.minute, second=0, microsecond=0)
            elif found is None:
                found = detected
                has_time = contains_time

        working, clock = self._run(self.clock_stage, working, now)
        if clock is not None:
            hour, minute = clock
            base = found if found is not None else now
            found = base.replace(hour=hour, minute=minute, second=0, microsecond=0)
            has_time = True

        return working, found, has_time


_default_parser: Optional[NaturalLanguageParser] = None


def parse(text: str) -> ParsedInput:
    """Parse with a shared default parser (wall clock, dateparser recognizer)."""
    global _default_parser
    if _default_parser is None:
        _default_parser = NaturalLanguageParser()
    return _default_parser.parse(text)

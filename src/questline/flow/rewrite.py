"""Title/Description Rewriter for follow-up sessions of Meetup events.

Pure text transformations, no I/O. Description rewriting is a declarative
list of rules applied in order; each rule either strips a shortcode or
ensures one is present.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from questline import shortcodes
from questline.sources.meetup import MAX_EVENT_NAME_UTF16_LEN, NewEvent

ELLIPSIS = "…"


def utf16_len(text: str) -> int:
    """Length of *text* in UTF-16 code units."""
    return sum(2 if ord(char) > 0xFFFF else 1 for char in text)


def truncate_utf16(text: str, max_units: int) -> str:
    """Cut *text* to at most *max_units* UTF-16 code units without splitting a character."""
    units = 0
    for index, char in enumerate(text):
        units += 2 if ord(char) > 0xFFFF else 1
        if units > max_units:
            return text[:index]
    return text


def session_title_parts(title: str) -> tuple[str, int]:
    """Split *title* into its base and current session number.

    Only the rightmost ``" Session N"`` counts. Without one, the whole title
    is the base and the number is 1.
    """
    matches = list(shortcodes.SESSION.finditer(title))
    if not matches:
        return title, 1
    last = matches[-1]
    return title[: last.start()], int(last.group("number"))


def next_session_title(title: str, max_utf16_len: int = MAX_EVENT_NAME_UTF16_LEN) -> str:
    """Title of the session following *title*, fitting into *max_utf16_len* units.

    >>> next_session_title("Curse of Strahd Session 3")
    'Curse of Strahd Session 4'
    """
    base, number = session_title_parts(title)
    suffix = f" Session {number + 1}"
    if utf16_len(base) + utf16_len(suffix) <= max_utf16_len:
        return base + suffix
    room = max_utf16_len - utf16_len(suffix) - utf16_len(ELLIPSIS)
    return truncate_utf16(base, max(room, 0)) + ELLIPSIS + suffix


@dataclass(frozen=True)
class RewriteContext:
    original_event_id: str
    is_open_event: bool = False


def _always(_: RewriteContext) -> bool:
    return True


@dataclass(frozen=True)
class StripRule:
    """Remove every match of ``pattern`` when ``when(context)`` holds."""

    pattern: re.Pattern[str]
    when: Callable[[RewriteContext], bool] = _always

    def apply(self, text: str, context: RewriteContext) -> str:
        if not self.when(context):
            return text
        return self.pattern.sub("", text)


@dataclass(frozen=True)
class EnsureRule:
    """Append ``template`` (formatted with the context) unless ``pattern`` matches."""

    pattern: re.Pattern[str]
    template: str

    def apply(self, text: str, context: RewriteContext) -> str:
        if self.pattern.search(text):
            return text
        return text + self.template.format(event_id=context.original_event_id)


RewriteRule = StripRule | EnsureRule

# [online] stays so the free-spots listing can still tell online games apart
DESCRIPTION_RULES: tuple[RewriteRule, ...] = (
    StripRule(shortcodes.NEW_ADVENTURE),
    StripRule(shortcodes.NEW_CAMPAIGN),
    StripRule(shortcodes.CHANNEL),
    StripRule(shortcodes.CLOSED, when=lambda context: context.is_open_event),
    EnsureRule(shortcodes.EVENT_SERIES, "\n[campaign {event_id}]"),
)


def rewrite_description(
    description: str,
    context: RewriteContext,
    rules: Sequence[RewriteRule] = DESCRIPTION_RULES,
) -> str:
    for rule in rules:
        description = rule.apply(description, context)
    return description


def rewrite_new_event(
    new_event: NewEvent,
    *,
    start: datetime,
    original_event_id: str,
    is_open_event: bool,
) -> NewEvent:
    """Turn a copy of the previous session into the next one."""
    context = RewriteContext(original_event_id=original_event_id, is_open_event=is_open_event)
    return new_event.model_copy(
        update={
            "title": next_session_title(new_event.title),
            "description": rewrite_description(new_event.description, context),
            "start_date_time": start,
        }
    )

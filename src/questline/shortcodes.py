"""Description shortcodes organisers put into Meetup event descriptions.

All shortcodes are case-insensitive and may be delimited by brackets or
parentheses, e.g. ``[new adventure]`` or ``(Channel 1234)``.
"""

from __future__ import annotations

import re

NEW_ADVENTURE = re.compile(r"(?i)[\[\(]\s*new\s*adventure\s*[\]\)]")
NEW_CAMPAIGN = re.compile(r"(?i)[\[\(]\s*new\s*campaign\s*[\]\)]")
CHANNEL = re.compile(r"(?i)[\[\(]\s*channel\s*(?P<channel_id>[0-9]+)\s*[\]\)]")
EVENT_SERIES = re.compile(r"(?i)[\[\(]\s*campaign\s*(?P<event_id>[0-9a-z]+)\s*[\]\)]")
ONLINE = re.compile(r"(?i)[\[\(]\s*online\s*[\]\)]")
CLOSED = re.compile(r"(?i)[\[\(]\s*closed\s*[\]\)]")
SESSION = re.compile(r"(?i)\s+session\s*(?P<number>[0-9]+)")


def series_type(description: str) -> str | None:
    """Return ``"adventure"`` or ``"campaign"`` if the description starts a new series."""
    if NEW_CAMPAIGN.search(description):
        return "campaign"
    if NEW_ADVENTURE.search(description):
        return "adventure"
    return None


def linked_event_id(description: str) -> str | None:
    """Return the event id referenced by a ``[campaign X]`` shortcode, if any."""
    match = EVENT_SERIES.search(description)
    return match.group("event_id") if match else None


def channel_id(description: str) -> int | None:
    match = CHANNEL.search(description)
    return int(match.group("channel_id")) if match else None

"""Tests for follow-up session title and description rewriting."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from questline import shortcodes
from questline.flow.rewrite import (
    ELLIPSIS,
    RewriteContext,
    StripRule,
    next_session_title,
    rewrite_description,
    rewrite_new_event,
    session_title_parts,
    truncate_utf16,
    utf16_len,
)
from questline.sources.meetup import NewEvent

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------------


class TestSessionTitle:
    def test_increments_existing_number(self):
        assert next_session_title("Curse of Strahd Session 3") == "Curse of Strahd Session 4"

    def test_appends_session_two_when_unnumbered(self):
        assert next_session_title("Curse of Strahd") == "Curse of Strahd Session 2"

    def test_case_insensitive_and_normalized(self):
        assert next_session_title("Tomb of Horrors session 7") == "Tomb of Horrors Session 8"

    def test_only_rightmost_number_counts(self):
        assert session_title_parts("Act Session 2 - finale Session 9") == (
            "Act Session 2 - finale",
            9,
        )
        assert next_session_title("Act Session 2 - finale Session 9") == (
            "Act Session 2 - finale Session 10"
        )

    def test_long_title_is_truncated_with_ellipsis(self):
        title = "A" * 78 + " Session 9"
        result = next_session_title(title)

        assert result == "A" * 68 + ELLIPSIS + " Session 10"
        assert utf16_len(result) == 80

    def test_title_exactly_at_limit_is_kept(self):
        base = "B" * 70
        result = next_session_title(base)
        assert result == base + " Session 2"
        assert utf16_len(result) == 80

    def test_astral_characters_are_never_split(self):
        title = "\U0001F409" * 40  # 80 UTF-16 units
        result = next_session_title(title)

        assert result.endswith(ELLIPSIS + " Session 2")
        assert utf16_len(result) <= 80
        assert result.startswith("\U0001F409" * 34)


class TestUtf16:
    def test_counts_surrogate_pairs(self):
        assert utf16_len("ab") == 2
        assert utf16_len("\U0001F3B2") == 2

    def test_truncate_stops_before_a_pair_that_does_not_fit(self):
        assert truncate_utf16("a\U0001F3B2b", 2) == "a"
        assert truncate_utf16("a\U0001F3B2b", 3) == "a\U0001F3B2"
        assert truncate_utf16("abc", 10) == "abc"


# ---------------------------------------------------------------------------
# Descriptions
# ---------------------------------------------------------------------------


class TestRewriteDescription:
    def test_strips_series_markers_and_links_original(self):
        description = "[new campaign] Dragons! (channel 1234)"
        result = rewrite_description(description, RewriteContext(original_event_id="555"))

        assert "new campaign" not in result
        assert "channel" not in result
        assert result.endswith("\n[campaign 555]")
        assert shortcodes.linked_event_id(result) == "555"

    def test_existing_link_is_kept_not_duplicated(self):
        description = "Session two [campaign 42]"
        result = rewrite_description(description, RewriteContext(original_event_id="555"))

        assert result == description

    def test_closed_marker_removed_only_for_open_games(self):
        description = "Private table [closed] [campaign 1]"

        kept = rewrite_description(description, RewriteContext("1", is_open_event=False))
        stripped = rewrite_description(description, RewriteContext("1", is_open_event=True))

        assert "[closed]" in kept
        assert "[closed]" not in stripped

    def test_online_marker_survives(self):
        result = rewrite_description("[online] [new adventure]", RewriteContext("9"))
        assert shortcodes.ONLINE.search(result)
        assert shortcodes.series_type(result) is None

    def test_custom_rule_list(self):
        rules = [StripRule(shortcodes.ONLINE)]
        assert rewrite_description("[online] x", RewriteContext("1"), rules) == " x"


class TestRewriteNewEvent:
    def test_rewrites_title_description_and_start(self):
        original = NewEvent(
            group_urlname="swissrpg-zurich",
            title="Waterdeep Session 1",
            description="[new adventure] Heist",
            start_date_time=datetime(2030, 1, 1, 18, 0, tzinfo=UTC),
            venue_id="v1",
            hosts=["h1"],
        )
        start = datetime(2030, 1, 8, 18, 0, tzinfo=UTC)

        result = rewrite_new_event(
            original, start=start, original_event_id="12345", is_open_event=False
        )

        assert result.title == "Waterdeep Session 2"
        assert result.description == " Heist\n[campaign 12345]"
        assert result.start_date_time == start
        assert result.venue_id == "v1"
        assert result.hosts == ["h1"]
        # The input is left untouched
        assert original.title == "Waterdeep Session 1"

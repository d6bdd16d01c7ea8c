"""
header_phrases.py — Canonical header-phrase table
==================================================
Every heuristic that maps a messy export header onto a semantic column reads
its phrases from here, so the header-row detector and the column resolver can
never disagree about what a "created date" or an "owner" column looks like.

Adding support for a new report layout means adding phrases to this table,
not new conditionals in the parser.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


class Target(str, Enum):
    """Semantic columns the resolver knows how to find."""
    AGENT = "agent"
    CREATED_DATE = "created_date"
    QUOTE_SENT_DATE = "quote_sent_date"
    PASSTHROUGH_DATE = "passthrough_date"
    BOOKING_DATE = "booking_date"
    NON_CONVERTED_DATE = "non_converted_date"
    TRIP_NAME = "trip_name"
    HOT_PASS_DATE = "hot_pass_date"
    QUOTE_STARTED_DATE = "quote_started_date"
    LEAD_OWNER = "lead_owner"
    NON_VALIDATED_REASON = "non_validated_reason"
    REPEAT_SEGMENT = "repeat_segment"
    B2B_SEGMENT = "b2b_segment"
    TRIP_PASSTHROUGH_FLAG = "trip_passthrough_flag"


@dataclass(frozen=True)
class TargetPhrases:
    phrases: Tuple[str, ...] = ()       # tier 1: containment, phrase order wins
    synonyms: Tuple[str, ...] = ()      # tier 2: exact header match
    tokens: Tuple[str, ...] = ()        # tier 3: generic substring
    excluded: Tuple[str, ...] = ()      # tier 3: headers containing these never match
    first_column_fallback: bool = False


# Reserved row key holding an agent inferred from grouped-report labels.
AGENT_SENTINEL = "_agent"


# ══════════════════════════════════════════════════════════════════════════════
# Per-target phrase table
# ══════════════════════════════════════════════════════════════════════════════

PHRASE_TABLE: Dict[Target, TargetPhrases] = {
    Target.AGENT: TargetPhrases(
        phrases=("gtt owner", "owner name", "last gtt action by", "lead owner", "agent name"),
        synonyms=(
            "agent", "agentname", "agent_name", "name", "rep", "representative",
            "sales rep", "salesrep", "employee", "user", "username",
        ),
        tokens=("agent", "owner", "rep"),
        excluded=("repeat", "report"),
        first_column_fallback=True,
    ),
    Target.LEAD_OWNER: TargetPhrases(
        phrases=("lead owner",),
        synonyms=("owner", "agent"),
        tokens=("owner",),
    ),
    Target.CREATED_DATE: TargetPhrases(
        phrases=("trip created date", "trip: created date", "created date", "date created"),
        synonyms=("created", "date"),
        tokens=("created",),
    ),
    Target.QUOTE_SENT_DATE: TargetPhrases(
        phrases=("quote first sent", "quote sent date", "first sent", "quote date", "created date"),
        synonyms=("sent", "date"),
        tokens=("sent",),
    ),
    Target.PASSTHROUGH_DATE: TargetPhrases(
        phrases=("passthrough to sales date", "passthrough date", "created date"),
        synonyms=("date",),
        tokens=("passthrough",),
    ),
    Target.HOT_PASS_DATE: TargetPhrases(
        phrases=("hot pass date", "passthrough to sales date", "passthrough date", "created date"),
        synonyms=("date",),
        tokens=("hot pass",),
    ),
    Target.BOOKING_DATE: TargetPhrases(
        phrases=("booking date", "booked date", "close date", "closed date", "created date"),
        synonyms=("date",),
        tokens=("book",),
    ),
    Target.NON_CONVERTED_DATE: TargetPhrases(
        phrases=("non validated date", "lead created date", "created date"),
        synonyms=("date",),
        tokens=("created",),
    ),
    Target.QUOTE_STARTED_DATE: TargetPhrases(
        phrases=("quote started date", "started date", "created date"),
        synonyms=("date",),
        tokens=("date", "created"),
    ),
    Target.TRIP_NAME: TargetPhrases(
        phrases=("trip name", "trip:", "opportunity name", "lead name"),
        synonyms=("trip", "name"),
        tokens=("opportunity",),
    ),
    Target.NON_VALIDATED_REASON: TargetPhrases(
        phrases=("non validated reason", "non-validated reason", "status reason"),
        synonyms=("reason",),
        tokens=("reason",),
    ),
    Target.REPEAT_SEGMENT: TargetPhrases(
        phrases=("repeat/new", "repeat", "client type", "customer type"),
    ),
    Target.B2B_SEGMENT: TargetPhrases(
        phrases=("b2b/b2c", "b2b", "business type", "client category", "lead channel"),
    ),
    Target.TRIP_PASSTHROUGH_FLAG: TargetPhrases(
        phrases=("passthrough to sales date", "passthrough date"),
    ),
}


# ══════════════════════════════════════════════════════════════════════════════
# Header-row discovery and row classification
# ══════════════════════════════════════════════════════════════════════════════

HEADER_ROW_PHRASES: Tuple[str, ...] = (
    "owner name", "last gtt action by", "trip name", "account name",
    "created date", "quote first sent", "passthrough", "lead owner",
)

# Report builders print the active filters above the table ("Owner contains X").
FILTER_ROW_MARKERS: Tuple[str, ...] = ("contains ", "equals ")

HEADER_SCAN_ROWS = 50
HEADER_MIN_CELLS = 4

NON_CONVERTED_HEADER_PHRASES: Tuple[str, ...] = ("lead owner", "non validated reason")
NON_CONVERTED_SCAN_ROWS = 30

SUMMARY_AGENT_VALUES: Tuple[str, ...] = ("total", "subtotal")
GRAND_TOTAL_MARKER = "grand total"

# Segment indicator values found in trip reports
REPEAT_VALUES: Tuple[str, ...] = ("repeat", "returning", "existing")
B2B_VALUES: Tuple[str, ...] = ("b2b", "business")


def phrases_for(target: Target) -> TargetPhrases:
    return PHRASE_TABLE[target]

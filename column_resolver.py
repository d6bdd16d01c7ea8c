"""
column_resolver.py — Map inconsistent export headers to semantic columns
=========================================================================
Tiered lookup over ``header_phrases.PHRASE_TABLE``; the first tier that
produces a match wins:

  0. the grouped-report sentinel (owner targets only)
  1. domain phrases, in phrase order
  2. exact generic synonyms
  3. generic substring tokens
  4. first header (agent target only, non-strict)

Tier 3 skips headers carrying an excluded word, so the "rep" token never
claims a "Repeat/New" segment column.

Domain phrases run before the generic tiers because a generic "date" match
would otherwise pick "last updated date" over "created date".
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from header_phrases import AGENT_SENTINEL, PHRASE_TABLE, Target

_SENTINEL_TARGETS = (Target.AGENT, Target.LEAD_OWNER)


def _norm(h: str) -> str:
    return str(h).strip().lower()


def resolve_column(
    headers: Iterable[str],
    target: Target,
    strict: bool = False,
) -> Optional[str]:
    """Return the header best matching ``target`` or None.

    ``strict`` skips the first-column fallback: the row extractor must find
    no owner column at all in grouped reports, not their first column.
    """
    keys: List[str] = [h for h in headers if h is not None and str(h) != ""]
    if not keys:
        return None
    entry = PHRASE_TABLE[target]

    if target in _SENTINEL_TARGETS and AGENT_SENTINEL in keys:
        return AGENT_SENTINEL

    lowered = [(k, _norm(k)) for k in keys if k != AGENT_SENTINEL]

    for phrase in entry.phrases:
        for key, low in lowered:
            if phrase in low:
                return key

    for syn in entry.synonyms:
        for key, low in lowered:
            if low == syn:
                return key

    for key, low in lowered:
        if any(word in low for word in entry.excluded):
            continue
        if any(tok in low for tok in entry.tokens):
            return key

    if entry.first_column_fallback and lowered and not strict:
        return lowered[0][0]
    return None


def resolve_in_rows(
    rows: Sequence[Mapping[str, str]],
    target: Target,
    strict: bool = False,
) -> Optional[str]:
    """Resolve against the key set shared by an extracted row set."""
    if not rows:
        return None
    return resolve_column(list(rows[0].keys()), target, strict=strict)


def resolve_all(headers: Iterable[str], targets: Iterable[Target]) -> Dict[Target, Optional[str]]:
    hs = list(headers)
    return {t: resolve_column(hs, t) for t in targets}

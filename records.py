"""
records.py — Best-ever daily performance per agent and metric
===============================================================
Store layout (JSON-serialisable, persisted under ``RECORDS_KEY``)::

    {
        "Jane Doe": {
            "trips": {"best_value": 12, "best_date": "2024-03-04",
                      "last_updated": "2024-03-05T09:12:44+00:00"},
            ...
        },
        ...
    }

Only single-day values are compared. Agents that disappear from later
uploads keep their entries; the store is never pruned.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from metrics import GROUP_KEYS, TimeSeries

logger = logging.getLogger(__name__)

RECORDS_KEY = "agent-records"

RecordsStore = Dict[str, Dict[str, Dict]]


@dataclass
class RecordEvent:
    agent: str
    metric: str
    new_value: int
    previous_value: Optional[int]
    date: str

    def to_dict(self) -> Dict:
        return asdict(self)


def update_records(
    time_series: TimeSeries,
    store: Optional[RecordsStore],
    now: Optional[datetime] = None,
) -> Tuple[RecordsStore, List[RecordEvent]]:
    """
    Compare every (agent, metric, date) value against the stored best.

    Returns a new store and the new-record events ordered by agent, then
    metric, then date. Ties never produce an event, so feeding the same
    series twice yields nothing the second time.

    Only single-day volumes are tracked. Week, month and quarter volume
    bests and period conversion-rate bests (T>Q, T>P, P>Q) are not kept.
    """
    updated: RecordsStore = copy.deepcopy(store) if store else {}
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    events: List[RecordEvent] = []

    for iso in sorted(time_series):
        for metric, per_agent in time_series[iso].items():
            for agent, value in per_agent.items():
                if agent in GROUP_KEYS or not value or value <= 0:
                    continue
                current = updated.get(agent, {}).get(metric)
                best = current.get("best_value") if current else None
                if best is not None and value <= best:
                    continue
                updated.setdefault(agent, {})[metric] = {
                    "best_value": value,
                    "best_date": iso,
                    "last_updated": stamp,
                }
                events.append(RecordEvent(agent, metric, value, best, iso))

    # dates were walked in order; a stable sort keeps that within agent/metric
    events.sort(key=lambda e: (e.agent, e.metric))
    if events:
        logger.info("%d new record(s) across %d agent(s)", len(events), len({e.agent for e in events}))
    return updated, events


def load_store(kv_store) -> RecordsStore:
    stored = kv_store.get(RECORDS_KEY)
    return stored if isinstance(stored, dict) else {}


def save_store(kv_store, store: RecordsStore) -> bool:
    return kv_store.set(RECORDS_KEY, store)


def clear_store(kv_store) -> None:
    kv_store.clear(RECORDS_KEY)

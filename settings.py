"""
settings.py — Environment-driven configuration
===============================================
Values come from the process environment, optionally seeded from a ``.env``
file. The agent roster can additionally be kept in a JSON file::

    {"seniors": ["Jane Doe", "Sam Lee"], "new_hires": ["Alex Kim"]}

Roster names are matched exactly (case-sensitive) against report names.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

from metrics import DATING_CHOICES, DATING_OWN_FIRST, AggregationOptions

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _split_names(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [n.strip() for n in raw.split(",") if n.strip()]


def _merge(*lists: List[str]) -> List[str]:
    out: List[str] = []
    for names in lists:
        for n in names:
            if n not in out:
                out.append(n)
    return out


def load_roster_file(path: Optional[str]) -> dict:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as e:
        logger.warning("Could not read roster file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class Settings:
    database_url: Optional[str] = None
    secret_key: str = field(default_factory=lambda: "kpi-dashboard-" + uuid.uuid4().hex[:8])
    app_password: str = "changeme"
    max_upload_mb: int = 50
    seniors: List[str] = field(default_factory=list)
    new_hires: List[str] = field(default_factory=list)
    non_converted_dating: str = DATING_OWN_FIRST
    log_level: str = "INFO"

    def aggregation_options(self) -> AggregationOptions:
        return AggregationOptions(non_converted_dating=self.non_converted_dating)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        roster = load_roster_file(os.getenv("ROSTER_FILE"))
        dating = os.getenv("NON_CONVERTED_DATING", DATING_OWN_FIRST).strip().lower()
        if dating not in DATING_CHOICES:
            logger.warning("Ignoring NON_CONVERTED_DATING=%r; using %s", dating, DATING_OWN_FIRST)
            dating = DATING_OWN_FIRST
        kwargs = dict(
            database_url=os.getenv("DATABASE_URL") or None,
            app_password=os.getenv("APP_PASSWORD", "changeme"),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "50")),
            seniors=_merge(_split_names(os.getenv("SENIOR_AGENTS")), roster.get("seniors") or []),
            new_hires=_merge(_split_names(os.getenv("NEW_HIRE_AGENTS")), roster.get("new_hires") or []),
            non_converted_dating=dating,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        if os.getenv("FLASK_SECRET_KEY"):
            kwargs["secret_key"] = os.environ["FLASK_SECRET_KEY"]
        return cls(**kwargs)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_LOG_FORMAT)

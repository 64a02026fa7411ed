"""Engine settings from the environment (.env supported)."""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from engine import DEFAULT_SECTION_TIMERS, EXAM_TYPE_TOEFL, EXAM_TYPE_UNIT, SECTION_KINDS, TIME_WARNING_SECONDS

logger = logging.getLogger(__name__)

load_dotenv()


def parse_section_timers(value: str | None) -> Dict[str, int]:
    """Parse "listening=35,structure=40,reading=40" into {kind: minutes}. Bad entries are skipped."""
    timers: Dict[str, int] = {}
    for item in (value or "").split(","):
        if not item.strip():
            continue
        kind, _, minutes = item.partition("=")
        kind = kind.strip().lower()
        try:
            timers[kind] = int(minutes)
        except ValueError:
            logger.warning(f"Ignoring section timer {item!r}: minutes must be an integer")
            continue
        if kind not in SECTION_KINDS:
            logger.warning(f"Section timer for unknown kind {kind!r}")
    return timers


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    section_timers: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SECTION_TIMERS))
    warning_seconds: int = TIME_WARNING_SECONDS
    generic_results_table: str = "exam_results"
    results_tables: Dict[str, str] = field(
        default_factory=lambda: {
            EXAM_TYPE_UNIT: "unit_exam_results",
            EXAM_TYPE_TOEFL: "toefl_exam_results",
        }
    )
    repair_schema: bool = False
    retry_backoff_seconds: float = 0.5
    pending_spool: str = "pending_results.jsonl"
    write_workers: int = 2

    def results_table(self, exam_type: str) -> str:
        return self.results_tables.get(exam_type, self.results_tables[EXAM_TYPE_UNIT])

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            section_timers={**DEFAULT_SECTION_TIMERS, **parse_section_timers(env.get("EXAM_SECTION_TIMERS"))},
            warning_seconds=int(env.get("EXAM_WARNING_SECONDS", TIME_WARNING_SECONDS)),
            generic_results_table=env.get("EXAM_GENERIC_RESULTS_TABLE", "exam_results"),
            results_tables={
                EXAM_TYPE_UNIT: env.get("EXAM_UNIT_RESULTS_TABLE", "unit_exam_results"),
                EXAM_TYPE_TOEFL: env.get("EXAM_TOEFL_RESULTS_TABLE", "toefl_exam_results"),
            },
            repair_schema=_env_flag("EXAM_WRITER_REPAIR_SCHEMA"),
            retry_backoff_seconds=float(env.get("EXAM_RETRY_BACKOFF_SECONDS", 0.5)),
            pending_spool=env.get("EXAM_PENDING_SPOOL", "pending_results.jsonl"),
            write_workers=int(env.get("EXAM_WRITE_WORKERS", 2)),
        )

"""JSONL spool for results that no write tier could store. Re-submitted by retry_pending.py."""
import logging
import threading
from pathlib import Path
from typing import Iterable, List

from examengine.models import ResultRecord

logger = logging.getLogger(__name__)


class PendingSpool:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: ResultRecord) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(record.to_json() + "\n")
        logger.warning(f"Result {record.record_id} spooled to {self.path} (pending save)")

    def load(self) -> List[ResultRecord]:
        """Spooled records, deduplicated by record_id (latest line wins)."""
        if not self.path.exists():
            return []
        by_id = {}
        with self.path.open("r", encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = ResultRecord.from_json(line)
                except (ValueError, TypeError) as e:
                    logger.error(f"Skipping unreadable spool line {n} in {self.path}: {e}")
                    continue
                by_id[record.record_id] = record
        return list(by_id.values())

    def rewrite(self, records: Iterable[ResultRecord]) -> None:
        records = list(records)
        with self._lock:
            if not records:
                self.path.unlink(missing_ok=True)
                return
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                for record in records:
                    f.write(record.to_json() + "\n")
            tmp.replace(self.path)

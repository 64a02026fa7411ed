"""Re-submit results spooled as pending save through the tiered result writer."""
import argparse
import logging
from pathlib import Path
from typing import Dict

from db import get_supabase_uncached
from examengine.config import Settings
from examengine.database import ExamDatabase
from examengine.pending import PendingSpool
from examengine.result_writer import ResultWriter

logger = logging.getLogger(__name__)


def run_retry(spool: PendingSpool, writer: ResultWriter | None = None, dry_run: bool = False) -> Dict[str, int]:
    """
    Write every spooled record; records that still fail stay in the spool.

    Returns:
        {"pending": n, "saved": n, "failed": n}
    """
    records = spool.load()
    stats = {"pending": len(records), "saved": 0, "failed": 0}
    if dry_run:
        print(f"Dry run: {len(records)} pending result(s) in {spool.path}")
        for record in records:
            print(f"  {record.record_id} student={record.student_id} exam={record.exam_id} "
                  f"type={record.exam_type} score={record.total_score}")
        return stats

    writer = writer or ResultWriter(ExamDatabase(get_supabase_uncached()))
    still_pending = []
    for record in records:
        outcome = writer.write(record)
        if outcome.success:
            stats["saved"] += 1
        else:
            stats["failed"] += 1
            still_pending.append(record)
    spool.rewrite(still_pending)
    logger.info(f"Pending results: {stats['saved']} saved, {stats['failed']} still pending")
    return stats


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    default_spool = Settings.from_env().pending_spool
    parser = argparse.ArgumentParser(description="Retry exam results that could not be saved.")
    parser.add_argument(
        "spool",
        nargs="?",
        default=None,
        help=f"Path to the pending .jsonl spool (default: {default_spool})",
    )
    parser.add_argument("--dry-run", action="store_true", help="List pending results, do not write")
    args = parser.parse_args()
    path = Path(args.spool) if args.spool else Path(default_spool)
    result = run_retry(PendingSpool(path), dry_run=args.dry_run)
    if result["failed"]:
        raise SystemExit(1)

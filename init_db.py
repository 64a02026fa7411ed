"""Initialize the exam engine's result tables, relationships and SQL helpers in Supabase."""
import argparse
import logging

from db import get_supabase_uncached
from examengine.config import Settings
from examengine.database import ExamDatabase
from examengine.schema import full_schema_sql

logger = logging.getLogger(__name__)


def run_init(apply: bool = False, settings: Settings | None = None) -> str:
    """Build the schema script; execute it through exec_sql when apply is set."""
    settings = settings or Settings.from_env()
    script = full_schema_sql(*sorted(set(settings.results_tables.values())))
    if not apply:
        return script

    store = ExamDatabase(get_supabase_uncached())
    # exec_sql itself must exist first; if it doesn't, run the printed script in the SQL Editor once.
    store.exec_sql(script)
    logger.info("Schema applied")
    return script


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description="Create result tables, foreign keys and the run_sql/exec_sql helpers.")
    parser.add_argument("--apply", action="store_true", help="Execute via the exec_sql RPC instead of printing")
    args = parser.parse_args()
    try:
        sql = run_init(apply=args.apply)
    except Exception as e:
        logger.error(f"Schema initialization failed: {e}")
        print("\nRun the SQL below manually in the Supabase SQL Editor (SQL Editor > New Query):")
        print(run_init(apply=False))
        raise SystemExit(1)
    if not args.apply:
        print(sql)

"""
Record store operations for the exam engine.
Wraps the Supabase client: exam content reads, answer/progress writes, result
tables, and the run_sql / exec_sql RPC escape hatches.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from examengine.models import utc_now_iso

logger = logging.getLogger(__name__)


class ExamDatabase:
    """Wrapper around a Supabase client with exam-engine specific operations.

    Content reads and the raw write primitives (upsert/run_sql/exec_sql) raise;
    callers decide how to handle failure. Progress bookkeeping methods are
    best-effort: they log and return False/empty instead.
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            from db import get_supabase_uncached
            client = get_supabase_uncached()
        self.client: Client = client

    # ============= Content =============

    def get_exam_schedule(self, exam_id: str) -> Optional[Dict]:
        """Scheduled exam joined with its test (id, title, type) and the test's own questions."""
        response = (
            self.client.table("exam_schedule")
            .select(
                "*, test:test_id (id, title, type, questions (id, type, text, choices, correct_answer, "
                "passage_title, passage_content, audio_url))"
            )
            .eq("id", exam_id)
            .maybe_single()
            .execute()
        )
        return response.data if response is not None and response.data else None

    def get_section_tests(self, parent_test_id: str) -> List[Dict]:
        """Child tests (one per TOEFL section) with their questions, oldest first."""
        response = (
            self.client.table("tests")
            .select(
                "id, title, type, section, audio_url, section_duration, "
                "questions (id, type, text, choices, correct_answer, passage_title, passage_content, audio_url)"
            )
            .eq("parent_test_id", parent_test_id)
            .order("created_at", desc=False)
            .execute()
        )
        return response.data or []

    # ============= Answers & progress =============

    def save_answer(self, student_id: str, exam_id: str, question_id: str, answer: str) -> bool:
        """Upsert one answer keyed by (student_id, exam_id, question_id)."""
        row = {
            "student_id": student_id,
            "exam_id": exam_id,
            "question_id": question_id,
            "answer": answer,
            "updated_at": utc_now_iso(),
        }
        try:
            self.client.table("student_answers").upsert(row, on_conflict="student_id,exam_id,question_id").execute()
            return True
        except Exception as e:
            logger.error(f"Error saving answer {question_id} for exam {exam_id}: {e}")
            return False

    def get_answers(self, student_id: str, exam_id: str) -> Dict[str, str]:
        """{question_id: answer} already stored for this attempt."""
        try:
            response = (
                self.client.table("student_answers")
                .select("question_id, answer")
                .eq("student_id", student_id)
                .eq("exam_id", exam_id)
                .execute()
            )
            return {row["question_id"]: row.get("answer") or "" for row in response.data or []}
        except Exception as e:
            logger.error(f"Error loading answers for exam {exam_id}: {e}")
            return {}

    def save_progress(self, student_id: str, exam_id: str, sections_completed: Sequence[str]) -> bool:
        row = {
            "student_id": student_id,
            "exam_id": exam_id,
            "sections_completed": list(sections_completed),
            "last_activity": utc_now_iso(),
        }
        try:
            self.client.table("student_progress").upsert(row, on_conflict="student_id,exam_id").execute()
            return True
        except Exception as e:
            logger.error(f"Error saving progress for exam {exam_id}: {e}")
            return False

    def get_progress(self, student_id: str, exam_id: str) -> List[str]:
        """Section ids already completed in an earlier visit."""
        try:
            response = (
                self.client.table("student_progress")
                .select("sections_completed")
                .eq("student_id", student_id)
                .eq("exam_id", exam_id)
                .maybe_single()
                .execute()
            )
            if response is None or not response.data:
                return []
            return list(response.data.get("sections_completed") or [])
        except Exception as e:
            logger.error(f"Error loading progress for exam {exam_id}: {e}")
            return []

    # ============= Results =============

    def upsert_exam_result(self, row: Dict[str, Any]) -> bool:
        """Upsert into exam_results keyed by (student_id, exam_id, exam_type); last write wins."""
        try:
            self.upsert("exam_results", row, on_conflict="student_id,exam_id,exam_type")
            return True
        except Exception as e:
            logger.error(f"Error upserting exam result for exam {row.get('exam_id')}: {e}")
            return False

    def get_completed_result(
        self, student_id: str, exam_id: str, results_table: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Completed result for this student/exam, if any. Raises on store errors.

        Looks in exam_results first, then in the exam type's dedicated
        results table when one is given.
        """
        tables = ["exam_results"] + ([results_table] if results_table else [])
        for table in tables:
            response = (
                self.client.table(table)
                .select("id, total_score, status")
                .eq("student_id", student_id)
                .eq("exam_id", exam_id)
                .eq("status", "completed")
                .limit(1)
                .execute()
            )
            rows = response.data or []
            if rows:
                return rows[0]
        return None

    def mark_exam_schedule(self, exam_id: str, status: str) -> bool:
        try:
            self.client.table("exam_schedule").update({"status": status}).eq("id", exam_id).execute()
            return True
        except Exception as e:
            logger.error(f"Error updating exam schedule {exam_id} to {status}: {e}")
            return False

    # ============= Raw primitives (raise on failure) =============

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict:
        response = self.client.table(table).upsert(row, on_conflict=on_conflict).execute()
        return (response.data or [{}])[0]

    def run_sql(self, query: str, params: Optional[Sequence[Any]] = None) -> List[Dict]:
        """Parameterized statement via the run_sql helper; $1[n] refers to params[n-1]."""
        text_params = [None if p is None else str(p) for p in (params or [])]
        response = self.client.rpc("run_sql", {"query": query, "params": text_params}).execute()
        data = response.data
        if isinstance(data, dict):
            return [data]
        return data or []

    def exec_sql(self, query: str) -> None:
        """DDL / multi-statement script via the exec_sql helper. No result."""
        self.client.rpc("exec_sql", {"query": query}).execute()

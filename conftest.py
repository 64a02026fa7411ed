"""Shared fixtures: an in-memory record store with failure injection, an inline executor, sample exams."""
from collections import defaultdict
from concurrent.futures import Executor, Future
from uuid import uuid4

import pytest

from examengine.config import Settings
from examengine.session import ExamSession

TOEFL_EXAM_ID = "exam-toefl"
UNIT_EXAM_ID = "exam-unit"


def _questions(prefix, n, correct="A"):
    return [
        {"id": f"{prefix}{i}", "type": "multiple", "text": f"Question {prefix}{i}",
         "choices": ["A", "B", "C", "D"], "correct_answer": correct}
        for i in range(1, n + 1)
    ]


class FakeStore:
    """
    In-memory stand-in for ExamDatabase.

    fail(name, error, times=None) makes the named operation raise (or, for the
    best-effort methods, return False/empty) either always or for the next
    ``times`` calls. Upserts can also be failed per table as
    "upsert:<table>".
    """

    def __init__(self, schedules=None, section_tests=None):
        self.schedules = dict(schedules or {})
        self.section_tests = dict(section_tests or {})
        self.tables = defaultdict(dict)
        self.answers = {}
        self.progress = {}
        self.exam_results = {}
        self.schedule_status = {}
        self.sql = []
        self.ddl = []
        self.calls = []
        self._failures = {}

    def fail(self, name, error, times=None):
        self._failures[name] = [error, times]

    def _check(self, *names):
        self.calls.append(names[0])
        for name in names:
            entry = self._failures.get(name)
            if not entry:
                continue
            error, times = entry
            if times is not None:
                if times <= 0:
                    continue
                entry[1] = times - 1
            raise error

    def _best_effort(self, name):
        try:
            self._check(name)
        except Exception:
            return False
        return True

    # content
    def get_exam_schedule(self, exam_id):
        self._check("get_exam_schedule")
        return self.schedules.get(exam_id)

    def get_section_tests(self, parent_test_id):
        self._check("get_section_tests")
        return self.section_tests.get(parent_test_id, [])

    # answers & progress
    def save_answer(self, student_id, exam_id, question_id, answer):
        if not self._best_effort("save_answer"):
            return False
        self.answers[(student_id, exam_id, question_id)] = answer
        return True

    def get_answers(self, student_id, exam_id):
        if not self._best_effort("get_answers"):
            return {}
        return {q: a for (s, e, q), a in self.answers.items() if (s, e) == (student_id, exam_id)}

    def save_progress(self, student_id, exam_id, sections_completed):
        if not self._best_effort("save_progress"):
            return False
        self.progress[(student_id, exam_id)] = list(sections_completed)
        return True

    def get_progress(self, student_id, exam_id):
        if not self._best_effort("get_progress"):
            return []
        return list(self.progress.get((student_id, exam_id), []))

    # results
    def upsert_exam_result(self, row):
        if not self._best_effort("upsert_exam_result"):
            return False
        key = (row["student_id"], row["exam_id"], row["exam_type"])
        self.exam_results.setdefault(key, {}).update(row)
        return True

    def get_completed_result(self, student_id, exam_id, results_table=None):
        self._check("get_completed_result")
        rows = list(self.exam_results.values())
        if results_table:
            rows += list(self.tables.get(results_table, {}).values())
        for row in rows:
            if (row.get("student_id"), row.get("exam_id")) == (student_id, exam_id) and row.get("status") == "completed":
                return row
        return None

    def mark_exam_schedule(self, exam_id, status):
        if not self._best_effort("mark_exam_schedule"):
            return False
        self.schedule_status[exam_id] = status
        return True

    # raw primitives
    def upsert(self, table, row, on_conflict):
        self._check("upsert", f"upsert:{table}")
        key = tuple(row.get(c) for c in on_conflict.split(","))
        stored = self.tables[table].setdefault(key, {"id": row.get("id") or str(uuid4())})
        stored.update(row)
        return dict(stored)

    def run_sql(self, query, params=None):
        self._check("run_sql")
        self.sql.append((query, list(params or [])))
        return [{"id": f"sql-{len(self.sql)}"}]

    def exec_sql(self, query):
        self._check("exec_sql")
        self.ddl.append(query)


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.shutdown_called = False

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True, *, cancel_futures=False):
        self.shutdown_called = True


@pytest.fixture
def toefl_content():
    schedule = {
        "id": TOEFL_EXAM_ID,
        "test_id": "test-toefl",
        "duration": 115,
        "test": {"id": "test-toefl", "title": "TOEFL Practice 1", "type": "TOEFL"},
    }
    sections = [
        {"id": "sec-listening", "section": "listening", "section_duration": 35,
         "audio_url": "https://cdn.example.com/l.mp3", "questions": _questions("l", 4)},
        {"id": "sec-structure", "section": "structure", "section_duration": None,
         "questions": _questions("s", 4)},
        {"id": "sec-reading", "section": "reading", "section_duration": 40,
         "questions": _questions("r", 4)},
    ]
    return schedule, sections


@pytest.fixture
def unit_content():
    return {
        "id": UNIT_EXAM_ID,
        "test_id": "test-unit",
        "duration": 20,
        "test": {"id": "test-unit", "title": "Unit 3 Quiz", "type": "Unit", "questions": _questions("u", 4, "B")},
    }


@pytest.fixture
def store(toefl_content, unit_content):
    schedule, sections = toefl_content
    return FakeStore(
        schedules={TOEFL_EXAM_ID: schedule, UNIT_EXAM_ID: unit_content},
        section_tests={"test-toefl": sections},
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        section_timers={"structure": 25},
        retry_backoff_seconds=0,
        pending_spool=str(tmp_path / "pending_results.jsonl"),
        write_workers=1,
    )


@pytest.fixture
def make_session(store, settings):
    """ExamSession factory with inline writes and a hand-driven clock."""
    sessions = []

    def _make(student_id="student-1", **kwargs):
        kwargs.setdefault("executor", InlineExecutor())
        kwargs.setdefault("threaded_timer", False)
        session = ExamSession(student_id, store=store, settings=settings, **kwargs)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.dispose()

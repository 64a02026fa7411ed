"""
Exam Session Engine: sequences sections under per-section timers, scores on
completion, and hands the final result to the Resilient Result Writer.

One ExamSession per in-progress attempt. All transitions are serialized by a
re-entrant lock; store writes run on the session's executor so navigation and
answering never wait on the network.
"""
import json
import logging
import math
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from engine import DEFAULT_SECTION_MINUTES, EXAM_TYPE_TOEFL
from examengine.config import Settings
from examengine.content import ContentLoader
from examengine.database import ExamDatabase
from examengine.errors import ConfigurationError, ExamAlreadyCompleted, ValidationError
from examengine.models import (
    CompositeScore,
    ExamData,
    RawSectionScore,
    ResultRecord,
    Section,
    result_record_id,
    utc_now_iso,
)
from examengine.pending import PendingSpool
from examengine.result_writer import ResultWriter, WriteOutcome
from examengine.scoring import coerce_answer, score_exam, score_unit, tally_answers, update_realtime_score
from examengine.timer import SectionTimer

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    NOT_STARTED = "not_started"
    SECTION_SELECTION = "section_selection"
    SECTION_ACTIVE = "section_active"
    EXIT_REQUESTED = "exit_requested"
    EXAM_COMPLETE = "exam_complete"
    FAILED = "failed"


class ExamSession:
    """Drives one exam attempt for one student."""

    ANSWER_TYPES = (str, int, float, bool)
    MAX_ANSWER_LENGTH = 10000

    def __init__(
        self,
        student_id: str,
        store: Optional[ExamDatabase] = None,
        loader: Optional[ContentLoader] = None,
        writer: Optional[ResultWriter] = None,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        spool: Optional[PendingSpool] = None,
        threaded_timer: bool = True,
    ):
        """
        Args:
            student_id: id of the test-taker
            store: record store wrapper (defaults to a Supabase-backed ExamDatabase)
            loader / writer / spool: collaborators; built from store and settings when omitted
            executor: runs store writes; the session owns and shuts down the default one
            threaded_timer: False leaves the section clock to be driven by timer.tick()
        """
        self.student_id = str(student_id)
        self.settings = settings or Settings.from_env()
        self.store = store if store is not None else ExamDatabase()
        self.loader = loader or ContentLoader(self.store)
        self.writer = writer or ResultWriter(self.store, self.settings)
        self.spool = spool or PendingSpool(self.settings.pending_spool)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.write_workers, thread_name_prefix="exam-writes"
        )
        self._futures: Set[Future] = set()
        # last future per write key; a write waits for its predecessor so same-key writes land in order
        self._lanes: Dict[Any, Future] = {}
        self._accepting_writes = True
        self._lock = threading.RLock()

        self.timer = SectionTimer(
            on_expire=self._on_time_expired,
            on_warning=self._on_time_warning,
            warning_seconds=self.settings.warning_seconds,
            threaded=threaded_timer,
        )

        self.state = SessionPhase.NOT_STARTED
        self.exam: Optional[ExamData] = None
        self.exam_id: Optional[str] = None
        self.current_section_id: Optional[str] = None
        self._completed: List[str] = []
        self._resume_state: Optional[SessionPhase] = None
        self.answers: Dict[str, str] = {}
        self.section_scores: Dict[str, RawSectionScore] = {}
        self.composite: Optional[CompositeScore] = None
        self.time_warning = False
        self.exited = False
        self.error: Optional[str] = None

        self.result_record: Optional[ResultRecord] = None
        self.last_outcome: Optional[WriteOutcome] = None
        self.save_status = "idle"
        self.pending_record: Optional[ResultRecord] = None
        self.persistence_error: Optional[Exception] = None

    # ============= Observers =============

    @property
    def remaining_seconds(self) -> Optional[int]:
        if self.current_section_id is None:
            return None
        remaining = self.timer.remaining_seconds
        # clock already halted, completion not yet applied
        return 0 if remaining is None else remaining

    @property
    def completed_section_ids(self) -> FrozenSet[str]:
        return frozenset(self._completed)

    @property
    def exam_type(self) -> Optional[str]:
        return self.exam.exam_type if self.exam else None

    @property
    def current_section(self) -> Optional[Section]:
        if self.exam is None or self.current_section_id is None:
            return None
        return self.exam.section(self.current_section_id)

    def summary(self) -> Dict[str, Any]:
        """Snapshot for display during the exam."""
        with self._lock:
            return {
                "exam_id": self.exam_id,
                "exam_type": self.exam_type,
                "state": self.state.value,
                "current_section_id": self.current_section_id,
                "remaining_seconds": self.remaining_seconds,
                "completed_section_ids": sorted(self._completed),
                "questions_answered": len(self.answers),
                "time_warning": self.time_warning,
                "final_score": self.composite.final_score if self.composite else None,
                "save_status": self.save_status,
                "exited": self.exited,
            }

    # ============= Transitions =============

    def start(self, exam_id: str) -> ExamData:
        """
        Load the exam and enter section selection.

        Raises:
            ConfigurationError: exam missing, not configured, or already
                completed. The session is left in FAILED; no automatic retry.
        """
        with self._lock:
            if self.state is not SessionPhase.NOT_STARTED:
                raise ConfigurationError(f"Session already {self.state.value}")
            self.exam_id = str(exam_id) if exam_id else exam_id
            try:
                exam = self.loader.load_exam(exam_id)
                self._check_not_completed(exam)
            except ConfigurationError as e:
                self.state = SessionPhase.FAILED
                self.error = str(e)
                logger.error(f"Exam {exam_id} cannot start: {e}")
                raise

            self.exam = exam
            self._restore_progress()
            self.state = SessionPhase.SECTION_SELECTION
            logger.info(f"Session started: student={self.student_id} exam={exam.id} type={exam.exam_type}")
            if self._all_sections_completed():
                self._finish_exam()
            return exam

    def select_section(self, section_id: str) -> bool:
        """Enter a section and start its clock. Rejected (state unchanged) for completed or unknown sections."""
        with self._lock:
            if self.state is not SessionPhase.SECTION_SELECTION:
                logger.warning(f"Cannot select section {section_id} while {self.state.value}")
                return False
            section = self.exam.section(section_id)
            if section is None:
                logger.warning(f"Unknown section {section_id} for exam {self.exam_id}")
                return False
            if section_id in self._completed:
                logger.warning(f"Section {section_id} already completed; re-entry rejected")
                return False

            minutes = self._duration_for(section)
            self.current_section_id = section_id
            self.time_warning = False
            self.state = SessionPhase.SECTION_ACTIVE
            self.timer.start(section_id, minutes)
            return True

    def record_answer(self, question_id: str, value: Any) -> bool:
        """Upsert an answer in the active section. Malformed answers are rejected and logged."""
        with self._lock:
            try:
                section = self._require_active_section()
                if question_id not in section.question_ids():
                    raise ValidationError(f"Question {question_id} is not in the active section")
                answer = self._validate_answer(value)
            except ValidationError as e:
                logger.warning(f"Answer rejected: {e}")
                return False

            self.answers[question_id] = answer
            snapshot = dict(self.answers)
            self._dispatch(
                ("answer", question_id),
                self.store.save_answer, self.student_id, self.exam_id, question_id, answer,
            )
            if self.exam_type == EXAM_TYPE_TOEFL:
                self.composite = score_exam(self.exam.sections, snapshot)
                self._dispatch(
                    "statistics",
                    update_realtime_score, self.store, self.student_id, self.exam_id, self.exam.sections, snapshot
                )
            return True

    def submit_section(self) -> bool:
        """Manual submit of the active section."""
        return self.complete_section()

    def complete_section(self, section_id: Optional[str] = None) -> bool:
        """
        Complete the active section (manual submit or timer expiry).

        At most once per section: when expiry and a manual submit race, the
        first call wins and the second returns False without side effects.
        """
        with self._lock:
            if self.current_section_id is None or self.state not in (
                SessionPhase.SECTION_ACTIVE, SessionPhase.EXIT_REQUESTED
            ):
                logger.debug(f"Completion of {section_id or 'active section'} ignored: no active section")
                return False
            if section_id is not None and section_id != self.current_section_id:
                logger.debug(f"Completion of {section_id} ignored: active section is {self.current_section_id}")
                return False

            self.timer.stop()
            completed_id = self.current_section_id
            self._completed.append(completed_id)
            self.current_section_id = None
            self.time_warning = False

            section = self.exam.section(completed_id)
            self.section_scores[completed_id] = tally_answers([section], self.answers)[section.kind]
            if self.exam_type == EXAM_TYPE_TOEFL:
                self.composite = score_exam(self.exam.sections, self.answers)
            logger.info(f"Section {completed_id} completed "
                        f"({self.section_scores[completed_id].correct_count}/"
                        f"{self.section_scores[completed_id].total_count} correct)")

            self._dispatch("progress", self.store.save_progress, self.student_id, self.exam_id, list(self._completed))

            if self._all_sections_completed():
                self._finish_exam()
            else:
                if self.state is SessionPhase.EXIT_REQUESTED:
                    self._resume_state = SessionPhase.SECTION_SELECTION
                else:
                    self.state = SessionPhase.SECTION_SELECTION
                if self.exam_type == EXAM_TYPE_TOEFL:
                    self._dispatch(
                        "statistics",
                        update_realtime_score, self.store, self.student_id, self.exam_id,
                        self.exam.sections, dict(self.answers),
                    )
            return True

    def request_exit(self) -> bool:
        with self._lock:
            if self.state not in (SessionPhase.SECTION_SELECTION, SessionPhase.SECTION_ACTIVE):
                return False
            self._resume_state = self.state
            self.state = SessionPhase.EXIT_REQUESTED
            return True

    def cancel_exit(self) -> bool:
        with self._lock:
            if self.state is not SessionPhase.EXIT_REQUESTED:
                return False
            self.state = self._resume_state or SessionPhase.SECTION_SELECTION
            self._resume_state = None
            return True

    def confirm_exit(self) -> bool:
        """
        Leave the exam early: keeps answers and completed sections, leaves the
        rest uncompleted, marks the attempt inactive. Terminal.
        """
        with self._lock:
            if self.state is not SessionPhase.EXIT_REQUESTED:
                return False
            self.timer.stop()
            self.current_section_id = None
            self._resume_state = None
            self.state = SessionPhase.EXAM_COMPLETE
            self.exited = True
            logger.info(f"Student {self.student_id} exited exam {self.exam_id} "
                        f"with {len(self._completed)}/{len(self.exam.sections)} sections completed")

            self._dispatch("progress", self.store.save_progress, self.student_id, self.exam_id, list(self._completed))
            self._dispatch("statistics", self.store.upsert_exam_result, {
                "student_id": self.student_id,
                "exam_id": self.exam_id,
                "exam_type": self.exam_type,
                "status": "inactive",
                "updated_at": utc_now_iso(),
            })
            self._accepting_writes = False
            return True

    def exit(self) -> bool:
        """request_exit() + confirm_exit()."""
        with self._lock:
            if self.state is not SessionPhase.EXIT_REQUESTED and not self.request_exit():
                return False
            return self.confirm_exit()

    def dispose(self) -> None:
        """Stop the clock and future writes. Writes already dispatched still run."""
        with self._lock:
            self.timer.stop()
            self._accepting_writes = False
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def wait_for_writes(self, timeout: Optional[float] = None) -> bool:
        """Block until dispatched writes finish. True if none are still running."""
        with self._lock:
            futures = list(self._futures)
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # ============= Internals =============

    def _finish_exam(self) -> None:
        self.state = SessionPhase.EXAM_COMPLETE
        if self.result_record is not None:
            return
        record = self._build_result_record()
        self.result_record = record
        logger.info(f"Exam {self.exam_id} complete for {self.student_id}: "
                    f"points={record.total_points} score={record.total_score}")
        if self.exam_type == EXAM_TYPE_TOEFL:
            self._dispatch(
                "statistics",
                update_realtime_score, self.store, self.student_id, self.exam_id,
                self.exam.sections, dict(self.answers), "completed",
            )
        else:
            self._dispatch("statistics", self.store.upsert_exam_result, {
                "student_id": self.student_id,
                "exam_id": self.exam_id,
                "test_id": self.exam.test_id,
                "exam_type": self.exam_type,
                "total_score": record.total_score,
                "status": "completed",
                "completion_time": record.completion_time,
                "taken_at": record.completion_time,
                "updated_at": record.completion_time,
            })
        self.save_status = "saving"
        self._dispatch("result", self._write_result, record)
        self._dispatch("schedule", self.store.mark_exam_schedule, self.exam_id, "completed")

    def _build_result_record(self) -> ResultRecord:
        if self.exam_type == EXAM_TYPE_TOEFL:
            self.composite = score_exam(self.exam.sections, self.answers)
            total_points, total_score = self.composite.total_converted, self.composite.final_score
        else:
            total_points, total_score = score_unit(self.exam.sections, self.answers)
        return ResultRecord(
            student_id=self.student_id,
            exam_id=self.exam_id,
            exam_type=self.exam_type,
            test_id=self.exam.test_id,
            total_points=total_points,
            total_score=total_score,
            status="completed",
            answers=json.dumps(self.answers, sort_keys=True),
            record_id=result_record_id(self.student_id, self.exam_id, self.exam_type),
        )

    def _write_result(self, record: ResultRecord) -> WriteOutcome:
        outcome = self.writer.write(record)
        with self._lock:
            self.last_outcome = outcome
            if outcome.success:
                self.save_status = "saved"
                self.pending_record = None
                self.persistence_error = None
                return outcome
            self.save_status = "pending"
            self.pending_record = record
            self.persistence_error = outcome.error
        try:
            self.spool.append(record)
        except OSError as e:
            logger.error(f"Could not spool pending result {record.record_id}: {e}")
        return outcome

    def _dispatch(self, lane: Any, fn: Callable, *args) -> Optional[Future]:
        """Queue a store write. Writes sharing a lane run in submission order."""
        if not self._accepting_writes:
            logger.debug(f"Write {getattr(fn, '__name__', fn)} skipped: session closed")
            return None
        with self._lock:
            previous = self._lanes.get(lane)
            future = self._executor.submit(self._run_write, previous, fn, *args)
            self._lanes[lane] = future
            self._futures.add(future)
        future.add_done_callback(lambda f: self._forget(lane, f))
        return future

    def _forget(self, lane: Any, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)
            if self._lanes.get(lane) is future:
                del self._lanes[lane]

    @staticmethod
    def _run_write(previous: Optional[Future], fn: Callable, *args):
        # The executor queue is FIFO, so the predecessor is already running or done.
        if previous is not None:
            wait([previous])
        try:
            return fn(*args)
        except Exception as e:
            logger.error(f"Background write {getattr(fn, '__name__', fn)} failed: {e}")
            return None

    def _require_active_section(self) -> Section:
        if self.state is not SessionPhase.SECTION_ACTIVE or self.current_section_id is None:
            raise ValidationError("No section is active")
        return self.exam.section(self.current_section_id)

    def _validate_answer(self, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            if not all(isinstance(v, self.ANSWER_TYPES) for v in value):
                raise ValidationError("Answer list may only hold text, numbers or booleans")
        elif not isinstance(value, self.ANSWER_TYPES):
            raise ValidationError(f"Unsupported answer type {type(value).__name__}")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError("Answer must be a finite number")
        answer = coerce_answer(value)
        if len(answer) > self.MAX_ANSWER_LENGTH:
            raise ValidationError("Answer is too long")
        return answer

    def _duration_for(self, section: Section) -> int:
        return section.duration_minutes or self.settings.section_timers.get(section.kind) or DEFAULT_SECTION_MINUTES

    def _all_sections_completed(self) -> bool:
        return bool(self.exam.sections) and all(s.id in self._completed for s in self.exam.sections)

    def _check_not_completed(self, exam: ExamData) -> None:
        try:
            existing = self.store.get_completed_result(
                self.student_id, exam.id, results_table=self.settings.results_table(exam.exam_type)
            )
        except Exception as e:
            logger.warning(f"Could not check for an earlier result of exam {exam.id}: {e}")
            return
        if existing:
            raise ExamAlreadyCompleted("You have already completed this exam.")

    def _restore_progress(self) -> None:
        """Bring back answers and completed sections from an earlier visit. Timers are not restored."""
        known_sections = {s.id for s in self.exam.sections}
        known_questions = {q.id for s in self.exam.sections for q in s.questions}
        completed = [sid for sid in self.store.get_progress(self.student_id, self.exam.id) if sid in known_sections]
        answers = {
            qid: ans for qid, ans in self.store.get_answers(self.student_id, self.exam.id).items()
            if qid in known_questions
        }
        self._completed = list(dict.fromkeys(completed))
        self.answers.update(answers)
        if self._completed or answers:
            logger.info(f"Restored {len(self._completed)} completed section(s) and {len(answers)} answer(s)")

    def _on_time_expired(self, section_id: str) -> None:
        if not self.complete_section(section_id):
            logger.debug(f"Expiry of section {section_id} arrived after completion")

    def _on_time_warning(self, section_id: str, remaining: int) -> None:
        with self._lock:
            if self.current_section_id == section_id:
                self.time_warning = True

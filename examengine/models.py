"""Exam content, scores and result records. Content and results are immutable once built."""
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import NAMESPACE_DNS, uuid4, uuid5

from engine import EXAM_TYPE_TOEFL, EXAM_TYPE_UNIT, TOEFL_SECTIONS


@dataclass(frozen=True)
class Question:
    id: str
    type: str
    prompt: str
    choices: Tuple[str, ...] = ()
    correct_answer: Any = None
    passage_title: Optional[str] = None
    passage_content: Optional[str] = None
    audio_url: Optional[str] = None


@dataclass(frozen=True)
class Section:
    id: str
    kind: str
    title: str
    questions: Tuple[Question, ...] = ()
    duration_minutes: Optional[int] = None
    audio_url: Optional[str] = None

    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]


@dataclass(frozen=True)
class ExamData:
    id: str
    title: str
    sections: Tuple[Section, ...]
    duration: Optional[int] = None
    test_id: Optional[str] = None

    @property
    def exam_type(self) -> str:
        """TOEFL when every section is listening/structure/reading, Unit otherwise."""
        if self.sections and all(s.kind in TOEFL_SECTIONS for s in self.sections):
            return EXAM_TYPE_TOEFL
        return EXAM_TYPE_UNIT

    def section(self, section_id: str) -> Optional[Section]:
        return next((s for s in self.sections if s.id == section_id), None)


@dataclass(frozen=True)
class RawSectionScore:
    correct_count: int
    total_count: int


@dataclass(frozen=True)
class SectionScore:
    raw: int
    converted: int


@dataclass(frozen=True)
class CompositeScore:
    per_section: Dict[str, SectionScore]
    total_converted: int
    average: float
    final_score: int


def result_record_id(student_id: str, exam_id: str, exam_type: str) -> str:
    """Stable id for one student's result of one exam; every rebuild of the record maps to the same row."""
    return str(uuid5(NAMESPACE_DNS, f"exam-result:{student_id}:{exam_id}:{exam_type}"))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ResultRecord:
    """
    Finalized result for one exam attempt.

    record_id is the logical identity: retries of the same attempt reuse it so
    a re-submission overwrites instead of duplicating.
    """

    student_id: str
    exam_id: str
    exam_type: str
    total_points: int
    total_score: int
    status: str = "completed"
    test_id: Optional[str] = None
    completion_time: str = field(default_factory=utc_now_iso)
    answers: Optional[str] = None
    record_id: str = field(default_factory=lambda: str(uuid4()))

    def to_row(self) -> Dict[str, Any]:
        """Row for the dedicated results table (answers as jsonb)."""
        return {
            "id": self.record_id,
            "student_id": self.student_id,
            "test_id": self.test_id,
            "exam_id": self.exam_id,
            "total_points": self.total_points,
            "total_score": self.total_score,
            "status": self.status,
            "completion_time": self.completion_time,
            "answers": json.loads(self.answers) if self.answers else None,
        }

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> "ResultRecord":
        return cls(**json.loads(line))

"""Content Loader: exam schedule + section tests -> ExamData with ordered questions."""
import logging
from typing import Dict, List, Optional

from engine import EXAM_TYPE_TOEFL, SECTION_KINDS, TOEFL_SECTIONS, UNIT
from examengine.errors import ConfigurationError
from examengine.models import ExamData, Question, Section

logger = logging.getLogger(__name__)


def _question(row: Dict) -> Question:
    return Question(
        id=str(row["id"]),
        type=row.get("type") or "multiple",
        prompt=row.get("text") or "",
        choices=tuple(row.get("choices") or ()),
        correct_answer=row.get("correct_answer"),
        passage_title=row.get("passage_title"),
        passage_content=row.get("passage_content"),
        audio_url=row.get("audio_url"),
    )


def _section_kind(raw: Optional[str]) -> str:
    kind = (raw or "").strip().lower()
    return kind if kind in SECTION_KINDS else UNIT


class ContentLoader:
    """
    Loads exam definitions from the record store.

    Any failure (missing schedule, missing test, no sections, no questions,
    store error) is a ConfigurationError; it is not retried.
    """

    def __init__(self, store):
        self.store = store

    def load_exam(self, exam_id: str) -> ExamData:
        if not exam_id:
            raise ConfigurationError("No exam selected.")
        try:
            schedule = self.store.get_exam_schedule(exam_id)
        except Exception as e:
            logger.error(f"Error loading exam {exam_id}: {e}")
            raise ConfigurationError(f"Could not load exam {exam_id}: {e}") from e

        if not schedule:
            raise ConfigurationError("Exam not found. Please return to the dashboard and try again.")
        test = schedule.get("test")
        if not test:
            raise ConfigurationError("Test not found. Please contact your administrator.")

        test_id = str(test.get("id") or schedule.get("test_id") or "")
        title = test.get("title") or "Exam"
        if (test.get("type") or "").upper() == EXAM_TYPE_TOEFL:
            sections = self._toefl_sections(test_id)
        else:
            sections = self._unit_sections(test, schedule)

        if not sections:
            raise ConfigurationError("This exam has not been configured yet. Please contact your administrator.")
        if not any(s.questions for s in sections):
            raise ConfigurationError("This exam has no questions configured. Please contact your administrator.")

        logger.info(f"Loaded exam {exam_id}: {len(sections)} section(s), "
                    f"{sum(len(s.questions) for s in sections)} question(s)")
        return ExamData(
            id=str(exam_id),
            title=title,
            sections=tuple(sections),
            duration=schedule.get("duration"),
            test_id=test_id or None,
        )

    def _toefl_sections(self, parent_test_id: str) -> List[Section]:
        try:
            rows = self.store.get_section_tests(parent_test_id)
        except Exception as e:
            logger.error(f"Error loading sections for test {parent_test_id}: {e}")
            raise ConfigurationError(f"Could not load exam sections: {e}") from e

        sections = []
        for row in rows:
            kind = _section_kind(row.get("section"))
            if kind not in TOEFL_SECTIONS:
                logger.warning(f"Skipping section test {row.get('id')} with unknown section {row.get('section')!r}")
                continue
            sections.append(Section(
                id=str(row["id"]),
                kind=kind,
                title=row.get("section") or row.get("title") or kind.capitalize(),
                questions=tuple(_question(q) for q in row.get("questions") or []),
                duration_minutes=row.get("section_duration"),
                audio_url=row.get("audio_url"),
            ))
        return sections

    def _unit_sections(self, test: Dict, schedule: Dict) -> List[Section]:
        questions = tuple(_question(q) for q in test.get("questions") or [])
        if not questions:
            return []
        return [Section(
            id=str(test.get("id") or schedule.get("test_id")),
            kind=UNIT,
            title=test.get("title") or "Unit",
            questions=questions,
            duration_minutes=schedule.get("duration"),
        )]

"""
Score Converter: raw section tallies -> TOEFL composite score.

Conversion (every step rounded half-up, intermediate rounding is part of the scale):
    raw_k       = round(correct_k / max(total_k, 1) * max_raw_k)      max_raw = 50 / 40 / 50
    converted_k = round(raw_k / max_raw_k * 140)
    total       = sum(converted_k)                                     max 420
    average     = total / 3                                            max 140
    final       = round(total / 420 * 677)                             max 677

Unit exams score correct / total as a percentage.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Mapping, Optional

from engine import (
    EXAM_TYPE_TOEFL,
    FINAL_SCORE_MAX,
    SECTION_CONVERTED_MAX,
    SECTION_MAX_RAW,
    TOEFL_SECTIONS,
    TOTAL_CONVERTED_MAX,
    UNIT_SCORE_MAX,
)
from examengine.models import CompositeScore, RawSectionScore, Section, SectionScore, utc_now_iso

logger = logging.getLogger(__name__)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_answer(value: Any) -> str:
    """String form used for storage and correctness checks (None -> "", True -> "true", 2.0 -> "2")."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(coerce_answer(v) for v in value)
    return str(value)


def is_correct(answer: Any, correct_answer: Any) -> bool:
    # Both sides compared as strings: a numeric index vs "B"-style key never matches.
    if correct_answer is None:
        return False
    return coerce_answer(answer) == coerce_answer(correct_answer)


def tally_answers(sections: Iterable[Section], answers: Mapping[str, Any]) -> Dict[str, RawSectionScore]:
    """Batch mode: count correct / total per section kind over all questions."""
    counts: Dict[str, list] = {}
    for section in sections:
        correct, total = counts.setdefault(section.kind, [0, 0])
        for question in section.questions:
            total += 1
            if question.id in answers and is_correct(answers[question.id], question.correct_answer):
                correct += 1
        counts[section.kind] = [correct, total]
    return {kind: RawSectionScore(correct_count=c, total_count=t) for kind, (c, t) in counts.items()}


def normalize_raw(tally: Optional[RawSectionScore], max_raw: int) -> int:
    """Scale a correct/total tally onto the section's raw band. Empty sections score 0."""
    if tally is None:
        return 0
    denominator = max(tally.total_count, 1)
    return round_half_up(Decimal(tally.correct_count) / Decimal(denominator) * max_raw)


def convert_section(raw: int, max_raw: int) -> int:
    raw = min(max(0, raw), max_raw)
    return round_half_up(Decimal(raw) / Decimal(max_raw) * SECTION_CONVERTED_MAX)


def calculate_toefl_scores(raw_scores: Mapping[str, int]) -> CompositeScore:
    """
    Convert raw listening/structure/reading scores into the composite.

    Args:
        raw_scores: {kind: raw points}; missing kinds count as 0. Values are
            clamped to [0, max_raw].

    Returns:
        CompositeScore. ``average`` is computed from the already-rounded
        converted values.
    """
    per_section: Dict[str, SectionScore] = {}
    for kind in TOEFL_SECTIONS:
        max_raw = SECTION_MAX_RAW[kind]
        raw = min(max(0, int(raw_scores.get(kind, 0))), max_raw)
        per_section[kind] = SectionScore(raw=raw, converted=convert_section(raw, max_raw))

    total_converted = sum(s.converted for s in per_section.values())
    final_score = round_half_up(Decimal(total_converted) / Decimal(TOTAL_CONVERTED_MAX) * FINAL_SCORE_MAX)
    return CompositeScore(
        per_section=per_section,
        total_converted=total_converted,
        average=total_converted / len(TOEFL_SECTIONS),
        final_score=final_score,
    )


def score_tallies(tallies: Mapping[str, RawSectionScore]) -> CompositeScore:
    raw = {kind: normalize_raw(tallies.get(kind), SECTION_MAX_RAW[kind]) for kind in TOEFL_SECTIONS}
    return calculate_toefl_scores(raw)


def score_exam(sections: Iterable[Section], answers: Mapping[str, Any]) -> CompositeScore:
    """Full recomputation from every known answer; never incremental."""
    return score_tallies(tally_answers(sections, answers))


def score_unit(sections: Iterable[Section], answers: Mapping[str, Any]) -> tuple[int, int]:
    """Returns (total_points, total_score) for a unit exam: correct count and percentage."""
    tallies = tally_answers(sections, answers)
    correct = sum(t.correct_count for t in tallies.values())
    total = sum(t.total_count for t in tallies.values())
    return correct, round_half_up(Decimal(correct) / Decimal(max(total, 1)) * UNIT_SCORE_MAX)


def build_statistics_row(student_id: str, exam_id: str, composite: CompositeScore, status: str = "active") -> Dict[str, Any]:
    """Row for exam_results, upserted on (student_id, exam_id, exam_type)."""
    now = utc_now_iso()
    row = {
        "student_id": student_id,
        "exam_id": exam_id,
        "exam_type": EXAM_TYPE_TOEFL,
        "listening_score": composite.per_section["listening"].raw,
        "structure_score": composite.per_section["structure"].raw,
        "reading_score": composite.per_section["reading"].raw,
        "total_score": composite.final_score,
        "status": status,
        "taken_at": now,
        "updated_at": now,
    }
    if status == "completed":
        row["completion_time"] = now
    return row


def update_realtime_score(store, student_id: str, exam_id: str, sections: Iterable[Section],
                          answers: Mapping[str, Any], status: str = "active") -> CompositeScore:
    """
    Real-time mode: recompute from all answers and upsert the statistics row.

    Storage failures are logged only; the test-taker keeps going.
    """
    composite = score_exam(sections, answers)
    row = build_statistics_row(student_id, exam_id, composite, status=status)
    if store.upsert_exam_result(row):
        logger.debug(f"Statistics updated for exam {exam_id}: final={composite.final_score}")
    else:
        logger.warning(f"Statistics update failed for exam {exam_id}; will be recomputed on next answer")
    return composite


def format_score_display(raw: int, converted: int) -> str:
    return f"{raw} ({converted})"


def format_score_report(composite: CompositeScore) -> str:
    lines = ["TOEFL Score Breakdown:", "-" * 21]
    for kind in TOEFL_SECTIONS:
        s = composite.per_section[kind]
        lines.append(
            f"{kind.capitalize()}: {s.converted}/{SECTION_CONVERTED_MAX} (Raw: {s.raw}/{SECTION_MAX_RAW[kind]})"
        )
    lines.append("-" * 21)
    lines.append(f"Total Converted: {composite.total_converted}/{TOTAL_CONVERTED_MAX}")
    lines.append(f"Average: {composite.average:.2f}/{SECTION_CONVERTED_MAX}")
    lines.append(f"Final TOEFL Score: {composite.final_score}/{FINAL_SCORE_MAX}")
    return "\n".join(lines)

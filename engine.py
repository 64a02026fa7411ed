"""Fixed exam constants: TOEFL conversion scale, section kinds, timing. No UI."""
# Converted = round(raw / max_raw * 140) per section; final = round(total / 420 * 677)

LISTENING = "listening"
STRUCTURE = "structure"
READING = "reading"
UNIT = "unit"

TOEFL_SECTIONS = (LISTENING, STRUCTURE, READING)
SECTION_KINDS = TOEFL_SECTIONS + (UNIT,)

SECTION_MAX_RAW = {LISTENING: 50, STRUCTURE: 40, READING: 50}
SECTION_CONVERTED_MAX = 140
TOTAL_CONVERTED_MAX = SECTION_CONVERTED_MAX * len(TOEFL_SECTIONS)  # 420
FINAL_SCORE_MAX = 677
UNIT_SCORE_MAX = 100

EXAM_TYPE_TOEFL = "TOEFL"
EXAM_TYPE_UNIT = "Unit"

DEFAULT_SECTION_MINUTES = 35
TIME_WARNING_SECONDS = 300
# Per-kind section minutes when a section carries no duration of its own
DEFAULT_SECTION_TIMERS = {LISTENING: 35, STRUCTURE: 40, READING: 40}

"""Environment settings and schema script generation."""
from examengine.config import Settings, parse_section_timers
from init_db import run_init


def test_parse_section_timers():
    assert parse_section_timers("listening=35, structure=40,reading=40") == {
        "listening": 35, "structure": 40, "reading": 40,
    }
    assert parse_section_timers("listening=abc,reading=30,") == {"reading": 30}
    assert parse_section_timers(None) == {}


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("EXAM_SECTION_TIMERS", "structure=25")
    monkeypatch.setenv("EXAM_WARNING_SECONDS", "120")
    monkeypatch.setenv("EXAM_WRITER_REPAIR_SCHEMA", "yes")
    monkeypatch.setenv("EXAM_TOEFL_RESULTS_TABLE", "toefl_results_v2")
    settings = Settings.from_env()
    assert settings.section_timers == {"listening": 35, "structure": 25, "reading": 40}
    assert settings.warning_seconds == 120
    assert settings.repair_schema
    assert settings.results_table("TOEFL") == "toefl_results_v2"
    assert settings.results_table("Unit") == "unit_exam_results"


def test_defaults(monkeypatch):
    for name in ("EXAM_SECTION_TIMERS", "EXAM_WRITER_REPAIR_SCHEMA", "EXAM_WARNING_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.section_timers == {"listening": 35, "structure": 40, "reading": 40}
    assert Settings().section_timers == settings.section_timers
    assert settings.warning_seconds == 300
    assert not settings.repair_schema
    assert settings.results_table("Other") == "unit_exam_results"


def test_schema_script_covers_result_tables():
    sql = run_init(apply=False, settings=Settings())
    for name in ("unit_exam_results", "toefl_exam_results", "exam_results", "student_answers",
                 "student_progress", "FUNCTION public.run_sql", "FUNCTION public.exec_sql"):
        assert name in sql
    assert "toefl_exam_results_exam_id_fkey" in sql

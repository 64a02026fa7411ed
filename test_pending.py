"""Pending-result spool and the retry_pending CLI."""
from conftest import FakeStore
from examengine.models import ResultRecord
from examengine.pending import PendingSpool
from examengine.result_writer import ResultWriter
from retry_pending import run_retry


def _record(score=75, **kwargs):
    return ResultRecord(student_id="student-1", exam_id="exam-1", exam_type="Unit",
                        total_points=3, total_score=score, **kwargs)


def test_append_and_load(tmp_path):
    spool = PendingSpool(tmp_path / "spool" / "pending.jsonl")
    first, second = _record(), _record(score=50)
    spool.append(first)
    spool.append(second)
    loaded = spool.load()
    assert [r.record_id for r in loaded] == [first.record_id, second.record_id]
    assert loaded[0] == first


def test_load_dedupes_and_skips_bad_lines(tmp_path):
    path = tmp_path / "pending.jsonl"
    spool = PendingSpool(path)
    record = _record()
    spool.append(record)
    with path.open("a", encoding="utf-8") as f:
        f.write("not json\n\n")
    spool.append(record)
    assert spool.load() == [record]


def test_missing_spool_is_empty(tmp_path):
    assert PendingSpool(tmp_path / "nope.jsonl").load() == []


def test_rewrite_empty_removes_file(tmp_path):
    spool = PendingSpool(tmp_path / "pending.jsonl")
    spool.append(_record())
    spool.rewrite([])
    assert not spool.path.exists()


def test_retry_saves_and_clears(tmp_path, settings):
    spool = PendingSpool(tmp_path / "pending.jsonl")
    spool.append(_record())
    spool.append(_record(score=50))
    store = FakeStore()
    stats = run_retry(spool, writer=ResultWriter(store, settings))
    assert stats == {"pending": 2, "saved": 2, "failed": 0}
    assert len(store.tables["unit_exam_results"]) == 2
    assert not spool.path.exists()


def test_retry_keeps_failures(tmp_path, settings):
    spool = PendingSpool(tmp_path / "pending.jsonl")
    record = _record()
    spool.append(record)
    store = FakeStore()
    store.fail("upsert", RuntimeError("down"))
    store.fail("run_sql", RuntimeError("down"))
    stats = run_retry(spool, writer=ResultWriter(store, settings))
    assert stats["failed"] == 1
    assert spool.load() == [record]


def test_dry_run_writes_nothing(tmp_path, capsys):
    spool = PendingSpool(tmp_path / "pending.jsonl")
    record = _record()
    spool.append(record)
    stats = run_retry(spool, dry_run=True)
    assert stats == {"pending": 1, "saved": 0, "failed": 0}
    assert record.record_id in capsys.readouterr().out
    assert spool.load() == [record]

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from bulk_reconcile.staging_store import Scope, StagingStore
from bulk_reconcile.submission_store import (
    SinkPolicy,
    SubmissionStore,
    human_bytes,
    load_roster,
    parse_size_to_bytes,
)


@pytest.fixture
def sink(tmp_path: Path):
    s = SubmissionStore(tmp_path / "db" / "sink.db", tmp_path / "sink")
    yield s
    s.close()


def test_load_roster_builds_full_names(tmp_path: Path) -> None:
    path = tmp_path / "roster.json"
    path.write_text(
        json.dumps(
            {
                "recipients": [
                    {"id": 1, "username": "ann", "firstname": "Ann", "lastname": "Lee"},
                    {"id": "2", "username": "bo", "fullname": "Bo Diaz"},
                    {"id": "3", "username": "cy"},
                ]
            }
        ),
        encoding="utf-8",
    )

    recipients = load_roster(path)

    assert [r.id for r in recipients] == ["1", "2", "3"]
    assert [r.full_name for r in recipients] == ["Ann Lee", "Bo Diaz", "3"]
    assert recipients[0].field("username") == "ann"
    assert recipients[0].field("id") == "1"


def test_load_roster_rejects_bad_input(tmp_path: Path) -> None:
    path = tmp_path / "roster.json"

    path.write_text(json.dumps([{"username": "no-id"}]), encoding="utf-8")
    with pytest.raises(ValueError, match="without an id"):
        load_roster(path)

    path.write_text(json.dumps([{"id": "1"}, {"id": "1"}]), encoding="utf-8")
    with pytest.raises(ValueError, match="Duplicate recipient id"):
        load_roster(path)

    path.write_text(json.dumps("nope"), encoding="utf-8")
    with pytest.raises(ValueError, match="JSON list"):
        load_roster(path)

    with pytest.raises(FileNotFoundError):
        load_roster(tmp_path / "missing.json")


def test_replace_submission_stores_files_with_digests(
    sink: SubmissionStore, store: StagingStore, stage_files
) -> None:
    files = stage_files(store, Scope("k").bucket("4"), {"essay.txt": "words", "img/fig.png": b"\x89PNG"})

    assert sink.replace_submission("4", files) == []

    stored = sink.get_submission("4")
    assert stored["file_count"] == 2
    assert stored["total_bytes"] == 9
    by_path = {f["path"]: f for f in stored["files"]}
    assert by_path["essay.txt"]["sha256"] == hashlib.sha256(b"words").hexdigest()
    assert Path(by_path["img/fig.png"]["stored_path"]).read_bytes() == b"\x89PNG"


def test_replace_submission_drops_previous_files(
    sink: SubmissionStore, store: StagingStore, stage_files
) -> None:
    sink.replace_submission("4", stage_files(store, Scope("a").bucket("4"), {"v1.txt": "1"}))
    sink.replace_submission("4", stage_files(store, Scope("b").bucket("4"), {"v2.txt": "2"}))

    stored = sink.get_submission("4")
    assert [f["path"] for f in stored["files"]] == ["v2.txt"]
    assert sorted(p.name for p in (sink.sink_dir / "4").iterdir()) == ["v2.txt"]


def test_policy_violations_are_notices_and_nothing_is_replaced(
    tmp_path: Path, store: StagingStore, stage_files
) -> None:
    policy = SinkPolicy(max_files=1, max_file_bytes=4, accepted_extensions={"pdf"})
    sink = SubmissionStore(tmp_path / "db" / "sink.db", tmp_path / "sink", policy)
    files = stage_files(store, Scope("k").bucket("5"), {"big.txt": "123456", "ok.pdf": "1"})

    notices = sink.replace_submission("5", files)
    sink.close()

    assert notices == [
        "Too many files: 2 submitted, at most 1 allowed",
        "big.txt is larger than the maximum file size (4 B)",
        "big.txt has a file type that is not accepted",
    ]
    assert not (tmp_path / "sink" / "5").exists()


def test_get_submission_unknown_is_none(sink: SubmissionStore) -> None:
    assert sink.get_submission("404") is None


def test_run_history_filters_by_scope(sink: SubmissionStore) -> None:
    for run_id, scope in [("r1", "a"), ("r2", "b"), ("r3", "a")]:
        sink.record_run(
            {
                "run_id": run_id,
                "scope_key": scope,
                "commit": scope == "b",
                "state": "cleaned",
                "recipients": [],
                "unmatched_paths": [],
            },
            "username",
        )

    assert [r["run_id"] for r in sink.list_runs("a")] == ["r3", "r1"]
    assert sink.list_runs("b")[0]["commit"] is True
    assert len(sink.list_runs(limit=2)) == 2


def test_size_helpers() -> None:
    assert parse_size_to_bytes("20MB") == 20 * 1024 * 1024
    assert parse_size_to_bytes("1.5kb") == 1536
    assert parse_size_to_bytes("100") == 100
    assert human_bytes(512) == "512 B"
    assert human_bytes(2048) == "2.00 KB"

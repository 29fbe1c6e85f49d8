from __future__ import annotations

import io
import json
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Iterable

import pytest

from bulk_reconcile.reconcile_engine import Engine, setup_logger
from bulk_reconcile.staging_store import Scope, StagedItem, StagingStore
from bulk_reconcile.submission_store import Recipient, SinkPolicy, recipient_from_row


def roster_rows(count: int = 20) -> list[dict[str, object]]:
    return [
        {
            "id": str(i),
            "username": f"user{i:02d}",
            "idnumber": f"{i:03d}",
            "firstname": "Student",
            "lastname": f"{i:02d}",
            "email": f"user{i:02d}@example.com",
        }
        for i in range(1, count + 1)
    ]


def _entries(entries: dict[str, str | bytes] | Iterable[tuple[str, str | bytes]]):
    return entries.items() if isinstance(entries, dict) else entries


def _as_bytes(content: str | bytes) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


@pytest.fixture
def roster() -> list[Recipient]:
    return [recipient_from_row(row) for row in roster_rows()]


@pytest.fixture
def roster_file(tmp_path: Path) -> Path:
    path = tmp_path / "roster.json"
    path.write_text(json.dumps(roster_rows()), encoding="utf-8")
    return path


@pytest.fixture
def logger(tmp_path: Path) -> logging.Logger:
    return setup_logger(tmp_path / "actions.log")


@pytest.fixture
def store(tmp_path: Path) -> StagingStore:
    return StagingStore(tmp_path / "work")


@pytest.fixture
def engine(tmp_path: Path):
    eng = Engine(
        work_dir=tmp_path / "work",
        db_path=tmp_path / "db" / "bulk_reconcile.db",
        sink_dir=tmp_path / "sink",
        log_file=tmp_path / "actions.log",
    )
    yield eng
    eng.close()


@pytest.fixture
def make_engine(tmp_path: Path):
    opened: list[Engine] = []

    def _make(policy: SinkPolicy | None = None, post_commit_hook=None) -> Engine:
        eng = Engine(
            work_dir=tmp_path / "work",
            db_path=tmp_path / "db" / "bulk_reconcile.db",
            sink_dir=tmp_path / "sink",
            log_file=tmp_path / "actions.log",
            policy=policy,
            post_commit_hook=post_commit_hook,
        )
        opened.append(eng)
        return eng

    yield _make
    for eng in opened:
        eng.close()


@pytest.fixture
def write_tree():
    def _write(root: Path, files: dict[str, str | bytes]) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(_as_bytes(content))
        return root

    return _write


@pytest.fixture
def make_zip():
    def _make(path: Path, entries) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            for name, content in _entries(entries):
                zf.writestr(name, _as_bytes(content))
        return path

    return _make


@pytest.fixture
def make_tar():
    def _make(path: Path, entries, mode: str = "w:gz") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(path, mode) as tf:
            for name, content in _entries(entries):
                data = _as_bytes(content)
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tf.addfile(info, io.BytesIO(data))
        return path

    return _make


@pytest.fixture
def stage_files(write_tree):
    def _stage(store: StagingStore, scope: Scope, files: dict[str, str | bytes]) -> list[StagedItem]:
        write_tree(store.scope_root(scope), files)
        return store.list_files(scope)

    return _stage

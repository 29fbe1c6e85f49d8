from __future__ import annotations

import logging

from bulk_reconcile.reconcile_engine import Bucket, EmptyDirectoryPruner
from bulk_reconcile.staging_store import Scope, StagingStore
from bulk_reconcile.submission_store import Recipient


def test_prune_removes_only_unused_directories(
    store: StagingStore,
    stage_files,
    roster: list[Recipient],
    logger: logging.Logger,
) -> None:
    scope = Scope("k").bucket("1")
    files = stage_files(store, scope, {"keep/inner/f.txt": "x", "top.txt": "y"})
    root = store.scope_root(scope)
    (root / "old" / "deeper").mkdir(parents=True)
    (root / "keep" / "empty").mkdir()
    bucket = Bucket(recipient=roster[0], token="user01", scope=scope, files=files)

    removed = EmptyDirectoryPruner(store, logger).prune(bucket)

    assert sorted(removed) == ["/keep/empty/", "/old/", "/old/deeper/"]
    assert removed.index("/old/deeper/") < removed.index("/old/")
    assert [d.display_path for d in store.list_directories(scope)] == ["/keep/", "/keep/inner/"]
    assert (root / "keep" / "inner" / "f.txt").read_text() == "x"


def test_prune_after_flattening_removes_emptied_folders(
    store: StagingStore,
    stage_files,
    roster: list[Recipient],
    logger: logging.Logger,
) -> None:
    scope = Scope("k").bucket("1")
    stage_files(store, scope, {"q/user01/a.txt": "a"})
    moved = store.rename(store.list_files(scope)[0], (), "a.txt")
    bucket = Bucket(recipient=roster[0], token="user01", scope=scope, files=[moved])

    EmptyDirectoryPruner(store, logger).prune(bucket)

    assert store.list_directories(scope) == []
    assert [f.display_path for f in store.list_files(scope)] == ["/a.txt"]

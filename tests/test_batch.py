"""Tests for batched version loading and deletion."""

import asyncio
import logging
from pathlib import Path

import pytest
from fakes import FakeRemoteStore

from historypurge.batch import BatchProcessor
from historypurge.checkpoint import Checkpoint, CheckpointStore
from historypurge.errors import FatalError, TransientError

logger = logging.getLogger("historypurge")


def make_processor(store, tmp_path: Path, batch_size=50, dry_run=False):
    checkpoints = CheckpointStore(tmp_path / "checkpoint.json", Checkpoint.fresh(), logger=logger, autosave_interval=3600)
    abort = asyncio.Event()
    processor = BatchProcessor(
        store.client(), checkpoints, abort, logger=logger, batch_size=batch_size, dry_run=dry_run
    )
    return processor, checkpoints, abort


def folder_with_files(count, sizes=(10, 20)):
    store = FakeRemoteStore()
    store.add_folder("/D")
    paths = [store.add_file("/D", f"/D/file{i}", sizes) for i in range(count)]
    return store, paths


@pytest.mark.asyncio
async def test_batch_threshold_three_three_one(tmp_path):
    """Seven files with versions and a batch size of three flush in 3, 3 and 1."""
    store, paths = folder_with_files(7)
    processor, checkpoints, _ = make_processor(store, tmp_path, batch_size=3)

    result = await processor.process_files(paths)

    deletions = store.calls_to("delete_all_versions")
    assert [len(batch) for batch in deletions] == [3, 3, 1]
    assert [len(batch) for batch in store.calls_to("load_versions")] == [3, 3, 1]
    assert result.files_processed == 7
    assert result.versions_deleted == 14
    assert result.bytes_freed == 7 * 30
    assert result.files_unfinished == 0
    assert all(checkpoints.is_processed(p) for p in paths)


@pytest.mark.asyncio
async def test_files_without_versions_need_no_deletion(tmp_path):
    store, paths = folder_with_files(3, sizes=())
    processor, checkpoints, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    assert store.calls_to("delete_all_versions") == []
    assert result.files_processed == 3
    assert result.versions_deleted == 0
    assert all(checkpoints.is_processed(p) for p in paths)


@pytest.mark.asyncio
async def test_already_processed_files_are_skipped(tmp_path):
    store, paths = folder_with_files(4)
    processor, checkpoints, _ = make_processor(store, tmp_path)
    await checkpoints.record_file(paths[0])
    await checkpoints.record_file(paths[1])

    result = await processor.process_files(paths)

    assert store.calls_to("load_versions") == [tuple(paths[2:])]
    assert result.files_processed == 2


@pytest.mark.asyncio
async def test_transient_batch_failure_is_retried_once(tmp_path):
    store, paths = folder_with_files(3)
    store.batch_load_errors = [TransientError("throttled")]
    processor, _, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    assert store.calls_to("load_versions") == [tuple(paths), tuple(paths)]
    assert processor.stats["batch_retries"] == 1
    assert processor.stats["batch_fallbacks"] == 0
    assert result.files_processed == 3


@pytest.mark.asyncio
async def test_batch_load_failure_falls_back_to_individual_requests(tmp_path, caplog):
    """A file whose batch and individual requests both fail stays unprocessed."""
    store, paths = folder_with_files(3)
    store.broken_load_files = {paths[1]}
    processor, checkpoints, _ = make_processor(store, tmp_path)
    caplog.set_level(logging.WARNING, logger="historypurge")

    result = await processor.process_files(paths)

    loads = store.calls_to("load_versions")
    assert loads[0] == tuple(paths)
    assert sorted(loads[1:]) == sorted((p,) for p in paths)
    assert result.files_processed == 2
    assert result.files_unfinished == 1
    assert not checkpoints.is_processed(paths[1])
    assert checkpoints.is_processed(paths[0])
    assert checkpoints.is_processed(paths[2])
    assert store.versions[paths[1]] != []

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert any(getattr(r, "extra_fields", {}).get("path") == paths[1] for r in warnings)
    assert any(getattr(r, "extra_fields", {}).get("error_kind") == "FatalError" for r in warnings)


@pytest.mark.asyncio
async def test_batch_delete_failure_falls_back_to_individual_deletes(tmp_path):
    store, paths = folder_with_files(3)
    store.broken_delete_files = {paths[2]}
    processor, checkpoints, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    deletes = store.calls_to("delete_all_versions")
    assert deletes[0] == tuple(paths)
    assert sorted(deletes[1:]) == sorted((p,) for p in paths)
    assert result.files_processed == 2
    assert result.versions_deleted == 4
    assert not checkpoints.is_processed(paths[2])
    assert processor.stats["batch_fallbacks"] == 1


@pytest.mark.asyncio
async def test_transient_then_fatal_batch_delete_degrades_to_individual(tmp_path):
    store, paths = folder_with_files(2)
    store.batch_delete_errors = [TransientError("throttled"), FatalError("server error")]
    processor, checkpoints, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    deletes = store.calls_to("delete_all_versions")
    assert deletes[:2] == [tuple(paths), tuple(paths)]
    assert len(deletes) == 4
    assert result.files_processed == 2
    assert all(checkpoints.is_processed(p) for p in paths)


@pytest.mark.asyncio
async def test_not_initialized_versions_count_as_zero(tmp_path, caplog):
    store, paths = folder_with_files(2)
    store.force_not_initialized = {paths[0]}
    processor, checkpoints, _ = make_processor(store, tmp_path)
    caplog.set_level(logging.WARNING, logger="historypurge")

    result = await processor.process_files(paths)

    assert checkpoints.is_processed(paths[0])
    assert checkpoints.is_processed(paths[1])
    assert result.files_processed == 2
    # Only the second file actually had its versions deleted
    assert result.versions_deleted == 2

    # Uninitialised history is not a batch failure
    assert processor.stats["batch_fallbacks"] == 0
    assert processor.stats["files_skipped"] == 0
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
    assert sorted(store.calls_to("delete_all_versions")[1:]) == sorted((p,) for p in paths)


@pytest.mark.asyncio
async def test_missing_version_data_is_left_for_later(tmp_path):
    store, paths = folder_with_files(2)
    store.missing_version_data = {paths[0]}
    processor, checkpoints, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    assert not checkpoints.is_processed(paths[0])
    assert checkpoints.is_processed(paths[1])
    assert result.files_unfinished == 1


@pytest.mark.asyncio
async def test_file_requiring_permission_is_skipped(tmp_path):
    store, paths = folder_with_files(3)
    store.denied_files = {paths[0]}
    processor, checkpoints, _ = make_processor(store, tmp_path)

    result = await processor.process_files(paths)

    assert not checkpoints.is_processed(paths[0])
    assert result.files_processed == 2
    assert processor.stats["files_skipped"] == 1


@pytest.mark.asyncio
async def test_abort_after_accepted_deletion_keeps_it_recorded(tmp_path):
    """Files whose deletion was accepted before an abort stay recorded."""
    store, paths = folder_with_files(6)
    processor, checkpoints, abort = make_processor(store, tmp_path, batch_size=2)

    def abort_after_first_delete(method, args):
        if method == "delete_all_versions":
            abort.set()

    store.after_call = abort_after_first_delete

    result = await processor.process_files(paths)

    assert store.calls_to("delete_all_versions") == [tuple(paths[:2])]
    assert len(store.calls_to("load_versions")) == 1
    assert checkpoints.is_processed(paths[0])
    assert checkpoints.is_processed(paths[1])
    assert not any(checkpoints.is_processed(p) for p in paths[2:])
    assert result.versions_deleted == 4
    assert checkpoints.checkpoint.run.versions == 4


@pytest.mark.asyncio
async def test_abort_stops_individual_fallback(tmp_path):
    store, paths = folder_with_files(4)
    store.batch_delete_errors = [FatalError("server error")]
    processor, checkpoints, abort = make_processor(store, tmp_path)

    def abort_after_first_single_delete(method, args):
        if method == "delete_all_versions" and len(args) == 1:
            abort.set()

    store.after_call = abort_after_first_single_delete

    result = await processor.process_files(paths)

    single_deletes = [c for c in store.calls_to("delete_all_versions") if len(c) == 1]
    assert len(single_deletes) == 1
    assert result.files_processed == 1
    assert checkpoints.is_processed(single_deletes[0][0])


@pytest.mark.asyncio
async def test_abort_before_start_issues_no_calls(tmp_path):
    store, paths = folder_with_files(3)
    processor, _, abort = make_processor(store, tmp_path)
    abort.set()

    result = await processor.process_files(paths)

    assert store.calls == []
    assert result.files_processed == 0


@pytest.mark.asyncio
async def test_dry_run_counts_without_deleting(tmp_path):
    store, paths = folder_with_files(3, sizes=(5, 5, 5))
    processor, checkpoints, _ = make_processor(store, tmp_path, dry_run=True)

    result = await processor.process_files(paths)

    assert store.calls_to("delete_all_versions") == []
    assert result.versions_to_delete == 9
    assert result.bytes_to_free == 45
    assert result.files_processed == 0
    assert not any(checkpoints.is_processed(p) for p in paths)
    assert store.remaining_versions() == 9


@pytest.mark.asyncio
async def test_batch_summary_is_logged(tmp_path, caplog):
    store, paths = folder_with_files(2, sizes=(1024, 512))
    processor, _, _ = make_processor(store, tmp_path)
    caplog.set_level(logging.INFO, logger="historypurge")

    await processor.process_files(paths)

    assert any("Batch deleted 4 past versions (3.0 KB)" in r.message for r in caplog.records)


def test_batch_size_validation(tmp_path):
    store, _ = folder_with_files(1)
    with pytest.raises(ValueError, match="batch_size must be between"):
        make_processor(store, tmp_path, batch_size=0)

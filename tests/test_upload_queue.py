"""Tests for the upload queue: enqueue on failure, retry, clear."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stratum.checkpoints.store import CheckpointStore
from stratum.context import ExecContext
from stratum.errors import StoreError
from stratum.executor import Executor, TaskRegistry, TaskStatus
from stratum.model import task
from stratum.planner import build_plan

from conftest import FakeBackend, doc_from

CONFIG = """
[build]
x = 1
y = "a"

[checkpoints]
enabled = true
default_upload_policy = "on_success"

[checkpoints.backends.http.cache]
base_url = "http://checkpoints.invalid"

[[checkpoints.points]]
id = "base"
anchor_task = "A"
fingerprint_from = ["build.x"]
backend = "cache"
targets = { out = "@build/a.txt" }

[[checkpoints.points]]
id = "extra"
anchor_task = "E"
fingerprint_from = ["build.y"]
backend = "http:cache"
targets = { out = "@build/e.txt" }
"""


def make_store(tmp_path: Path, fake: FakeBackend) -> CheckpointStore:
    doc = doc_from(tmp_path, CONFIG)
    store = CheckpointStore.from_doc(doc, backends={"cache": fake, "http:cache": fake})
    store.workspace.build_dir.mkdir(parents=True, exist_ok=True)
    (store.workspace.build_dir / "a.txt").write_text("a")
    (store.workspace.build_dir / "e.txt").write_text("e")
    return store


def queue_entries(store: CheckpointStore) -> list:
    return json.loads(store.queue_path.read_text())["entries"]


class TestEnqueue:
    def test_failed_upload_is_queued_then_retried(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        point = store.point("base")

        result = store.capture(point)
        assert not result.uploaded
        assert result.queued

        [entry] = queue_entries(store)
        assert entry["status"] == "pending"
        assert entry["attempts"] == 1
        assert entry["id"] == "base"
        assert entry["fingerprint"] == result.fingerprint
        assert entry["last_error"] == "connection reset"
        assert store.decide(point).pending_upload

        report = store.retry_uploads()
        assert (report.attempted, report.uploaded, report.failed) == (1, 1, 0)
        [entry] = queue_entries(store)
        assert entry["status"] == "done"
        assert entry["last_error"] is None
        assert ("base", result.fingerprint) in fake.objects
        assert not store.decide(point).pending_upload

    def test_successful_upload_leaves_no_entry(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        store = make_store(tmp_path, fake)
        result = store.capture(store.point("base"))
        assert result.uploaded
        assert store.load_queue() == []

        index = json.loads(store.index_path.read_text())
        assert index["points"]["base"]["fingerprints"][result.fingerprint]["remote"] is True

    def test_repeated_failure_refreshes_the_same_entry(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 2
        store = make_store(tmp_path, fake)
        point = store.point("base")
        store.capture(point)
        store.capture(point)

        [entry] = queue_entries(store)
        assert entry["status"] == "pending"
        assert entry["attempts"] == 2


class TestRetry:
    def test_failed_retry_keeps_entry_with_attempts(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 2
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))

        report = store.retry_uploads()
        assert (report.attempted, report.uploaded, report.failed) == (1, 0, 1)
        assert "connection reset" in report.errors[0]

        [entry] = queue_entries(store)
        assert entry["status"] == "failed"
        assert entry["attempts"] == 2
        assert entry["transient"] is True

        # transient failures stay eligible
        report = store.retry_uploads()
        assert report.uploaded == 1
        assert queue_entries(store)[0]["attempts"] == 3

    def test_permanent_failures_need_include_permanent(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 2
        fake.fail_transient = False
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))

        report = store.retry_uploads()
        assert report.failed == 1
        assert queue_entries(store)[0]["transient"] is False

        report = store.retry_uploads()
        assert (report.attempted, report.skipped) == (0, 1)

        report = store.retry_uploads(include_permanent=True)
        assert (report.attempted, report.uploaded) == (1, 1)

    def test_max_count(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 2
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))
        store.capture(store.point("extra"))
        assert len(store.load_queue()) == 2

        report = store.retry_uploads(1)
        assert (report.attempted, report.uploaded, report.skipped) == (1, 1, 1)
        assert [e.status for e in store.load_queue()] == ["done", "pending"]

    def test_zero_max_count_attempts_nothing(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))

        report = store.retry_uploads(0)
        assert (report.attempted, report.uploaded, report.skipped) == (0, 0, 1)
        assert [e.status for e in store.load_queue()] == ["pending"]

        with pytest.raises(ValueError):
            store.retry_uploads(-1)

    def test_missing_local_object_fails_permanently(self, tmp_path: Path) -> None:
        import shutil

        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))
        shutil.rmtree(store.point_dir("base"))

        report = store.retry_uploads()
        assert report.failed == 1
        [entry] = queue_entries(store)
        assert entry["status"] == "failed"
        assert entry["transient"] is False
        assert "no longer exists" in entry["last_error"]


class TestClear:
    def test_clear_done_then_all(self, tmp_path: Path) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 2
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))
        store.capture(store.point("extra"))
        store.retry_uploads(1)

        assert store.clear_uploads() == 1
        assert [e.id for e in store.load_queue()] == ["extra"]
        assert store.clear_uploads(all_entries=True) == 1
        assert store.load_queue() == []


class TestExecutorUploads:
    def test_upload_failure_does_not_fail_the_anchor(self, tmp_path: Path, console) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        doc = store.doc

        plan = build_plan([task("A", module="m", phase="p"), task("E", module="m", phase="p")])
        report = Executor(plan, ExecContext(doc, console=console), TaskRegistry(), store).run_sequential()

        assert report.ok
        assert report.results["A"].status == TaskStatus.OK
        assert "upload queued" in report.results["A"].checkpoint
        assert "uploaded" in report.results["E"].checkpoint
        assert [e.id for e in store.load_queue()] == ["base"]

    def test_always_policy_syncs_restored_checkpoint(self, tmp_path: Path, console) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))
        assert ("base", store.fingerprint(store.point("base"))[0]) not in fake.objects

        doc = store.doc.with_overrides({"checkpoints.default_upload_policy": "always"})
        store = CheckpointStore.from_doc(doc, backends={"cache": fake, "http:cache": fake})
        plan = build_plan([task("A", module="m", phase="p"), task("E", module="m", phase="p")])
        report = Executor(plan, ExecContext(doc, console=console), TaskRegistry(), store).run_sequential()

        assert report.results["A"].status == TaskStatus.RESTORED
        assert "uploaded" in report.results["A"].checkpoint
        assert ("base", store.fingerprint(store.point("base"))[0]) in fake.objects

    def test_sync_error_after_restore_keeps_the_anchor_restored(self, tmp_path: Path, console, monkeypatch) -> None:
        fake = FakeBackend("cache")
        fake.fail_uploads = 1
        store = make_store(tmp_path, fake)
        store.capture(store.point("base"))

        doc = store.doc.with_overrides({"checkpoints.default_upload_policy": "always"})
        store = CheckpointStore.from_doc(doc, backends={"cache": fake, "http:cache": fake})

        def locked_out(point, fingerprint):
            raise StoreError("timed out waiting for checkpoint store lock")

        monkeypatch.setattr(store, "upload_or_enqueue", locked_out)
        plan = build_plan([task("A", module="m", phase="p"), task("E", module="m", phase="p")])
        report = Executor(plan, ExecContext(doc, console=console), TaskRegistry(), store).run_sequential()

        assert report.results["A"].status == TaskStatus.RESTORED
        assert "upload failed" in report.results["A"].checkpoint
        assert (tmp_path / "build" / "a.txt").read_text() == "a"

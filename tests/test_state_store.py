"""Tests for the JSON-file state store and pending-handle index."""

import threading

import pytest

from stripforge.errors import JobNotFound, StateStoreError
from stripforge.jobs.schemas import (
    Character,
    HandleRecord,
    ItemState,
    Job,
    JobStatus,
    PhaseName,
)


def make_job(**kwargs):
    return Job(
        story="A hero saves the city.",
        characters=[Character(id="c1", name="Hero", image="data:image/png;base64,AAAA")],
        **kwargs,
    )


class TestJobs:
    def test_put_then_get_roundtrip(self, store):
        job = make_job()
        store.put(job)

        loaded = store.get(job.id)
        assert loaded.id == job.id
        assert loaded.story == job.story
        assert loaded.characters[0].name == "Hero"
        assert set(loaded.phases) == set(PhaseName)
        assert store.exists(job.id)

    def test_get_missing_raises(self, store):
        with pytest.raises(JobNotFound):
            store.get("job-doesnotexist")

    @pytest.mark.parametrize("job_id", ["", "../escape", "a/b", ".hidden"])
    def test_unsafe_ids_are_rejected(self, store, job_id):
        with pytest.raises(JobNotFound):
            store.get(job_id)
        assert not store.exists(job_id)

    def test_corrupt_record_raises(self, store):
        job = make_job()
        store.put(job)
        (store.jobs_dir / f"{job.id}.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StateStoreError):
            store.get(job.id)

    def test_no_temp_files_left_behind(self, store):
        job = make_job()
        store.put(job)
        store.put(job)
        assert [p.name for p in store.jobs_dir.iterdir()] == [f"{job.id}.json"]

    def test_update_skips_write_when_mutator_returns_none(self, store):
        job = make_job()
        store.put(job)
        stamp = store.get(job.id).updated_at

        result = store.update(job.id, lambda j: None)
        assert result.updated_at == stamp
        assert store.get(job.id).updated_at == stamp

    def test_concurrent_item_updates_are_not_lost(self, store):
        job = make_job()
        phase = job.phase(PhaseName.BACKGROUNDS)
        phase.items = {f"panel-{i}": ItemState(id=f"panel-{i}") for i in range(1, 21)}
        store.put(job)

        def touch(item_id):
            def mutate(j):
                j.phase(PhaseName.BACKGROUNDS).items[item_id].attempts += 1
                return j
            store.update(job.id, mutate)

        threads = [
            threading.Thread(target=touch, args=(f"panel-{i}",))
            for i in range(1, 21)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        items = store.get(job.id).phase(PhaseName.BACKGROUNDS).items
        assert all(item.attempts == 1 for item in items.values())

    def test_list_jobs_newest_first_and_filtered(self, store):
        older = make_job(created_at="2026-01-01T00:00:00+00:00")
        newer = make_job(created_at="2026-02-01T00:00:00+00:00", status=JobStatus.FAILED)
        store.put(older)
        store.put(newer)
        (store.jobs_dir / "garbage.json").write_text("[]", encoding="utf-8")

        assert [j.id for j in store.list_jobs()] == [newer.id, older.id]
        assert [j.id for j in store.list_jobs(status=JobStatus.FAILED)] == [newer.id]
        assert [j.id for j in store.list_jobs(limit=1)] == [newer.id]

    def test_list_jobs_on_empty_store(self, store):
        assert store.list_jobs() == []


class TestHandleIndex:
    def test_put_get_delete(self, store):
        record = HandleRecord(handle="pred-123", job_id="job-abc", phase=PhaseName.NLP, item_id="story")
        store.put_handle(record)

        loaded = store.get_handle("pred-123")
        assert loaded.job_id == "job-abc"
        assert loaded.phase == PhaseName.NLP
        assert store.count_handles() == 1

        assert store.delete_handle("pred-123") is True
        assert store.delete_handle("pred-123") is False
        assert store.get_handle("pred-123") is None
        assert store.count_handles() == 0

    def test_handles_with_path_characters_are_safe(self, store):
        record = HandleRecord(handle="../../etc/passwd", job_id="job-abc", phase=PhaseName.NLP, item_id="story")
        store.put_handle(record)
        assert store.get_handle("../../etc/passwd").item_id == "story"
        assert all(p.parent == store.handles_dir for p in store.handles_dir.iterdir())

    def test_lock_registry_stays_bounded(self, store):
        for n in range(1000):
            handle = f"pred-{n}"
            store.put_handle(HandleRecord(handle=handle, job_id="job-abc", phase=PhaseName.NLP, item_id="story"))
            store.get_handle(handle)
            store.delete_handle(handle)
        assert len(store._locks) < 10

    def test_lock_is_shared_while_held(self, store):
        with store.job_lock("job-abc"):
            assert store._lock_for("job:job-abc") is store._lock_for("job:job-abc")
            assert "job:job-abc" in store._locks

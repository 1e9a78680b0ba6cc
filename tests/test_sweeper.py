import threading
import uuid
from dataclasses import dataclass, field

import pytest

from lakerunner.storageprofile import FileProvider, StorageProfile
from lakerunner.sweeper import (
    Sweeper,
    cleanup_object,
    run_inqueue_expiry,
    run_object_cleaner,
    run_workqueue_expiry,
)

ORG = uuid.UUID("11111111-2222-3333-4444-555555555555")


@dataclass
class Obj:
    id: str
    organization_id: uuid.UUID
    instance_num: int
    object_id: str


@dataclass
class FakeStore:
    objects: list = field(default_factory=list)
    get_error: Exception | None = None
    complete_error: Exception | None = None
    expire_result: list = field(default_factory=list)
    expire_error: Exception | None = None
    inqueue_error: Exception | None = None
    completed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    calls: list = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def object_cleanup_get(self):
        self.calls.append("get")
        if self.get_error:
            raise self.get_error
        return self.objects

    def object_cleanup_complete(self, item_id):
        if self.complete_error:
            raise self.complete_error
        with self.lock:
            self.completed.append(item_id)

    def object_cleanup_fail(self, item_id):
        with self.lock:
            self.failed.append(item_id)

    def work_queue_cleanup(self):
        self.calls.append("expire")
        if self.expire_error:
            raise self.expire_error
        return self.expire_result

    def cleanup_inqueue_work(self):
        self.calls.append("inqueue")
        if self.inqueue_error:
            raise self.inqueue_error


class RecordingDeleter:
    def __init__(self, error=None):
        self.deleted = []
        self.error = error
        self.lock = threading.Lock()

    def __call__(self, profile, bucket, key):
        if self.error:
            raise self.error
        with self.lock:
            self.deleted.append((bucket, key))


def hosted_profiles():
    return FileProvider.from_contents(
        "p.yaml",
        f"- organization_id: {ORG}\n  instance_num: 1\n  bucket: my-bucket\n",
    )


def test_cleanup_object_success():
    store, deleter = FakeStore(), RecordingDeleter()
    ok = cleanup_object(hosted_profiles(), store, deleter, Obj("a", ORG, 1, "path/x"))
    assert ok is True
    assert deleter.deleted == [("my-bucket", "path/x")]
    assert store.completed == ["a"]
    assert store.failed == []


def test_cleanup_object_missing_profile_fails():
    store, deleter = FakeStore(), RecordingDeleter()
    ok = cleanup_object(hosted_profiles(), store, deleter, Obj("a", ORG, 2, "k"))
    assert ok is False
    assert store.failed == ["a"]
    assert deleter.deleted == []


def test_cleanup_object_non_hosted_without_role_fails():
    profiles = FileProvider([StorageProfile(organization_id=ORG, instance_num=1, bucket="b")])
    store, deleter = FakeStore(), RecordingDeleter()
    ok = cleanup_object(profiles, store, deleter, Obj("a", ORG, 1, "k"))
    assert ok is False
    assert store.failed == ["a"]
    assert deleter.deleted == []


def test_cleanup_object_with_role_not_hosted_succeeds():
    profiles = FileProvider(
        [StorageProfile(organization_id=ORG, instance_num=1, bucket="b", role="role-arn")]
    )
    store, deleter = FakeStore(), RecordingDeleter()
    assert cleanup_object(profiles, store, deleter, Obj("a", ORG, 1, "k")) is True
    assert deleter.deleted == [("b", "k")]


def test_cleanup_object_delete_error_fails():
    store, deleter = FakeStore(), RecordingDeleter(error=RuntimeError("boom"))
    ok = cleanup_object(hosted_profiles(), store, deleter, Obj("a", ORG, 1, "k"))
    assert ok is False
    assert store.failed == ["a"]
    assert store.completed == []


def test_cleanup_object_complete_error_fails():
    store = FakeStore(complete_error=RuntimeError("db down"))
    deleter = RecordingDeleter()
    ok = cleanup_object(hosted_profiles(), store, deleter, Obj("a", ORG, 1, "k"))
    assert ok is False
    assert store.failed == ["a"]


def test_run_object_cleaner_processes_all():
    objs = [Obj(str(i), ORG, 1, f"k{i}") for i in range(5)] + [Obj("bad", ORG, 9, "kb")]
    store, deleter = FakeStore(objects=objs), RecordingDeleter()
    count = run_object_cleaner(hosted_profiles(), store, deleter)
    assert count == 5
    assert sorted(store.completed) == [str(i) for i in range(5)]
    assert store.failed == ["bad"]


def test_run_object_cleaner_empty_and_no_rows():
    assert run_object_cleaner(hosted_profiles(), FakeStore(), RecordingDeleter()) == 0
    store = FakeStore(get_error=LookupError("no rows"))
    assert run_object_cleaner(hosted_profiles(), store, RecordingDeleter()) == 0


def test_run_object_cleaner_propagates_store_error():
    store = FakeStore(get_error=RuntimeError("db down"))
    with pytest.raises(RuntimeError, match="db down"):
        run_object_cleaner(hosted_profiles(), store, RecordingDeleter())


def test_run_workqueue_expiry():
    assert run_workqueue_expiry(FakeStore(expire_result=["w1", "w2"])) == ["w1", "w2"]
    assert run_workqueue_expiry(FakeStore(expire_error=LookupError())) == []
    with pytest.raises(RuntimeError):
        run_workqueue_expiry(FakeStore(expire_error=RuntimeError("x")))


def test_run_inqueue_expiry():
    store = FakeStore()
    run_inqueue_expiry(store)
    assert store.calls == ["inqueue"]
    run_inqueue_expiry(FakeStore(inqueue_error=LookupError()))
    with pytest.raises(RuntimeError):
        run_inqueue_expiry(FakeStore(inqueue_error=RuntimeError("x")))


def test_sweep_runs_cleaner_then_expiry():
    store = FakeStore(objects=[Obj("a", ORG, 1, "k")])
    sweeper = Sweeper(7, hosted_profiles(), store, RecordingDeleter())
    sweeper.sweep()
    assert store.calls == ["get", "expire"]
    assert store.completed == ["a"]


def test_sweep_stops_on_cleaner_error():
    store = FakeStore(get_error=RuntimeError("db down"))
    sweeper = Sweeper(7, hosted_profiles(), store, RecordingDeleter())
    with pytest.raises(RuntimeError):
        sweeper.sweep()
    assert "expire" not in store.calls


def test_run_returns_when_stopped():
    store = FakeStore()
    stop = threading.Event()
    stop.set()
    Sweeper(7, hosted_profiles(), store, RecordingDeleter()).run(stop, interval=0.01)
    assert store.calls == ["get", "expire"]


def test_run_propagates_sweep_error():
    store = FakeStore(expire_error=RuntimeError("x"))
    with pytest.raises(RuntimeError):
        Sweeper(7, hosted_profiles(), store, RecordingDeleter()).run(threading.Event(), 0.01)
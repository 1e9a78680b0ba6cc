"""Periodic cleanup: delete objects queued for removal and expire stale work-queue entries."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Protocol, Sequence

from lakerunner.storageprofile import StorageProfile

__all__ = [
    "Sweeper",
    "run_object_cleaner",
    "cleanup_object",
    "run_workqueue_expiry",
    "run_inqueue_expiry",
]

log = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0
_MAX_CLEANUP_WORKERS = 32

# Deletes one object: called with the storage profile, the bucket and the object key.
Deleter = Callable[[StorageProfile, str, str], Any]


class _ProfileProvider(Protocol):
    def get(self, organization_id: Any, instance_num: int) -> StorageProfile: ...


class _CleanupObject(Protocol):
    id: Any
    organization_id: Any
    instance_num: int
    object_id: str


class _SweeperStore(Protocol):
    def object_cleanup_get(self) -> Sequence[_CleanupObject]: ...

    def object_cleanup_complete(self, item_id: Any) -> Any: ...

    def object_cleanup_fail(self, item_id: Any) -> Any: ...

    def work_queue_cleanup(self) -> Sequence[Any]: ...

    def cleanup_inqueue_work(self) -> Any: ...


def _fail_work(store: _SweeperStore, item_id: Any) -> None:
    try:
        store.object_cleanup_fail(item_id)
    except Exception as err:
        log.error("Failed to mark object cleanup failed for %s: %s", item_id, err)


def cleanup_object(
    profiles: _ProfileProvider, store: _SweeperStore, deleter: Deleter, obj: _CleanupObject
) -> bool:
    """Delete one queued object and mark it done; on any failure mark it failed.

    Returns True when the object was deleted and marked complete.
    """
    try:
        profile = profiles.get(obj.organization_id, obj.instance_num)
    except Exception as err:
        log.error("Failed to get storage profile for %s: %s", obj.object_id, err)
        _fail_work(store, obj.id)
        return False

    if not profile.role and not profile.hosted:
        log.error("No role on non-hosted profile for %s", obj.object_id)
        _fail_work(store, obj.id)
        return False

    try:
        deleter(profile, profile.bucket, obj.object_id)
    except Exception as err:
        log.error("Failed to delete object %s: %s", obj.object_id, err)
        _fail_work(store, obj.id)
        return False

    try:
        store.object_cleanup_complete(obj.id)
    except Exception as err:
        log.error("Failed to mark object cleanup complete for %s: %s", obj.object_id, err)
        _fail_work(store, obj.id)
        return False

    log.info("Successfully cleaned up object %s", obj.object_id)
    return True


def run_object_cleaner(profiles: _ProfileProvider, store: _SweeperStore, deleter: Deleter) -> int:
    """Clean up every object queued for removal, concurrently; return how many succeeded.

    A LookupError from the store means there is nothing to do.
    """
    try:
        objs = list(store.object_cleanup_get())
    except LookupError:
        return 0
    if not objs:
        return 0

    workers = min(len(objs), _MAX_CLEANUP_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda obj: cleanup_object(profiles, store, deleter, obj), objs))
    return sum(results)


def run_workqueue_expiry(store: _SweeperStore) -> list[Any]:
    """Expire stale work-queue entries and locks; return what was expired."""
    try:
        expired = list(store.work_queue_cleanup())
    except LookupError:
        return []
    except Exception as err:
        log.error("Failed to expire objects: %s", err)
        raise
    for item in expired:
        log.info("Expired work/lock: %r", item)
    return expired


def run_inqueue_expiry(store: _SweeperStore) -> None:
    """Release stale claims on inqueue work."""
    try:
        store.cleanup_inqueue_work()
    except LookupError:
        return
    except Exception as err:
        log.error("Failed to expire objects: %s", err)
        raise


class Sweeper:
    """Runs the cleanup tasks on a fixed interval until told to stop."""

    def __init__(
        self,
        instance_id: int,
        profiles: _ProfileProvider,
        store: _SweeperStore,
        deleter: Deleter,
    ) -> None:
        self.instance_id = instance_id
        self.profiles = profiles
        self.store = store
        self.deleter = deleter

    def sweep(self) -> None:
        """Run one round of object cleanup followed by work-queue expiry."""
        try:
            run_object_cleaner(self.profiles, self.store, self.deleter)
        except Exception as err:
            log.error("Failed to run object cleaner: %s", err)
            raise
        try:
            run_workqueue_expiry(self.store)
        except Exception as err:
            log.error("Failed to run expiry: %s", err)
            raise

    def run(
        self, stop_event: threading.Event, interval: float = DEFAULT_SWEEP_INTERVAL
    ) -> None:
        """Sweep, then wait ``interval`` seconds, until ``stop_event`` is set."""
        log.info("Starting sweeper, instance %d", self.instance_id)
        while True:
            self.sweep()
            if stop_event.wait(interval):
                return
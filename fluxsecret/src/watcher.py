from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from fluxsecret.src.config import ControllerOptions
from fluxsecret.src.kube import VCI_RESOURCE, CallContext, Cancelled
from fluxsecret.src.reconciler import VciReconciler
from fluxsecret.src.selector import selector_admits
from fluxsecret.src.workqueue import Key, WorkQueue

WATCH_TIMEOUT_SECONDS = 30
WORKER_POLL_SECONDS = 1.0
WORKER_JOIN_TIMEOUT_SECONDS = 30


def _metadata(obj: Any) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        return {}
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


class VciWatcher:
    """Feeds VirtualClusterInstance events into a work queue and drains it.

    The watch side lists every VCI cluster-wide, enqueues the admitted ones,
    then streams changes from the list's ``resourceVersion``.  Worker threads
    take keys off the queue and call :meth:`VciReconciler.reconcile`; a failed
    pass is re-queued with per-key exponential backoff.

    Admission uses the configured label selector on the event object's
    labels.  DELETED events go through the same filter, and the reconciler
    notices the VCI is gone and garbage-collects.  Every list also queues
    previously admitted keys missing from the listing, so a deletion that
    fell into a watch gap is still collected.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        reconciler: VciReconciler,
        options: ControllerOptions,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.reconciler = reconciler
        self.options = options
        self.queue = queue or WorkQueue()
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._known: set[Key] = set()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def admits(self, obj: Any) -> bool:
        labels = _metadata(obj).get("labels")
        return selector_admits(self.options.label_selector, labels if isinstance(labels, Mapping) else {})

    def handle_event(self, event_type: str, obj: Any) -> Key | None:
        """Enqueue the key for one watch event.  Returns the key when queued."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        metadata = _metadata(obj)
        namespace = metadata.get("namespace")
        name = metadata.get("name")
        if not isinstance(namespace, str) or not isinstance(name, str) or not namespace or not name:
            self.logger.warning("Skipping %s event for VCI without namespace/name", event_type)
            return None
        key = (namespace, name)
        if not self.admits(obj):
            self._known.discard(key)
            return None
        if event_type == "DELETED":
            self._known.discard(key)
        else:
            self._known.add(key)
        self.queue.add(key)
        return key

    def _list(self) -> tuple[str | None, int]:
        """List every VCI and enqueue the admitted ones.

        Keys admitted by an earlier list or watch event that are missing from
        this listing were deleted while no watch was open.  They are queued as
        well so the reconciler garbage-collects them.
        """
        resource = VCI_RESOURCE
        listing = self.custom_api.list_cluster_custom_object(
            group=resource.group,
            version=resource.version,
            plural=resource.plural,
        )
        previously_known = set(self._known)
        listed: set[Key] = set()
        queued = 0
        for item in listing.get("items") or []:
            metadata = _metadata(item)
            listed.add((str(metadata.get("namespace")), str(metadata.get("name"))))
            if self.handle_event("ADDED", item) is not None:
                queued += 1
        for key in sorted(previously_known - listed):
            self.logger.info(
                "VCI %s/%s disappeared while unwatched; queueing cleanup", key[0], key[1]
            )
            self._known.discard(key)
            self.queue.add(key)
            queued += 1
        resource_version = _metadata(listing).get("resourceVersion")
        return resource_version, queued

    def process_next(self, stop_event: threading.Event, timeout: float = WORKER_POLL_SECONDS) -> bool:
        """Run one reconcile for the next queued key.  Returns False when none was available."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        namespace, name = key
        ctx = CallContext(
            stop_event=stop_event,
            deadline=time.monotonic() + self.options.reconcile_timeout_seconds,
            request_timeout=self.options.request_timeout_seconds,
        )
        try:
            self.reconciler.reconcile(namespace, name, ctx)
        except Cancelled:
            if self._should_stop(stop_event):
                self.logger.info("Reconcile of VCI %s/%s cancelled", namespace, name)
            else:
                delay = self.queue.add_rate_limited(key)
                self.logger.warning(
                    "Reconcile of VCI %s/%s exceeded its deadline; retrying in %.1fs",
                    namespace,
                    name,
                    delay,
                )
        except Exception:
            delay = self.queue.add_rate_limited(key)
            self.logger.exception(
                "Reconcile of VCI %s/%s failed; retrying in %.1fs", namespace, name, delay
            )
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not self._should_stop(stop_event) and not self.queue.shutting_down:
            try:
                self.process_next(stop_event)
            except Exception:
                self.logger.exception("Unexpected error in reconcile worker")

    def _start_workers(self, stop_event: threading.Event) -> list[threading.Thread]:
        threads = []
        for index in range(self.options.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(stop_event,),
                name=f"reconcile-worker-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def _initial_list(self, stop: threading.Event) -> str | None:
        """List VCIs with jittered backoff until it succeeds.

        Returns the resourceVersion to watch from, or raises :class:`Cancelled`
        on shutdown or an RBAC/auth failure.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version, queued = self._list()
                self.ready.set()
                self.logger.info(
                    "Listed VirtualClusterInstances (%d queued); watching from resourceVersion %s",
                    queued,
                    resource_version,
                )
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing VirtualClusterInstances (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    raise Cancelled("access denied") from exc
                self.logger.exception("Initial VirtualClusterInstance list failed")
            except Exception:
                self.logger.exception("Unexpected error during initial VirtualClusterInstance list")

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        raise Cancelled("stopped before initial list")

    def _watch(self, stop: threading.Event, resource_version: str | None) -> None:
        """Stream VCI events until stopped, re-listing on ``410 Gone``.

        ``401`` / ``403`` end the loop: RBAC problems do not fix themselves.
        Other errors back off exponentially with jitter, capped at 30 s.
        """
        resource = VCI_RESOURCE
        backoff_seconds = 1
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    self.custom_api.list_cluster_custom_object,
                    group=resource.group,
                    version=resource.version,
                    plural=resource.plural,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, Mapping) else None
                        raise ApiException(status=code or 500, reason="watch error event")
                    version = _metadata(obj).get("resourceVersion")
                    if version:
                        resource_version = version
                    self.handle_event(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    # The stored resourceVersion was compacted away.  Re-list,
                    # which also re-queues every admitted VCI as a resync.
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version, _ = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return

                self.logger.exception("Kubernetes API watch error")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch VCIs and reconcile them until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        workers = self._start_workers(stop)
        try:
            resource_version = self._initial_list(stop)
            self._watch(stop, resource_version)
        except Cancelled:
            pass
        finally:
            self.ready.clear()
            self.queue.shut_down()
            for worker in workers:
                worker.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)

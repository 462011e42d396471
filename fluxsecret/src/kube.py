from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "vcluster-platform-flux-secret-controller"
FLUX_KUBECONFIG_LABEL = "fluxcd.io/kubeconfig"
VCI_NAME_LABEL = "vci.flux.loft.sh/name"
VCI_NAMESPACE_LABEL = "vci.flux.loft.sh/namespace"
KUBECONFIG_HASH_ANNOTATION = "vci.flux.loft.sh/kcfg-sha256"
VCI_REF_ANNOTATION = "vci.flux.loft.sh/vci"


@dataclass(frozen=True)
class CustomResource:
    """Group/version/plural coordinates for a custom resource."""

    group: str
    version: str
    plural: str


VCI_RESOURCE = CustomResource("management.loft.sh", "v1", "virtualclusterinstances")
ACCESS_KEY_RESOURCE = CustomResource("storage.loft.sh", "v1", "accesskeys")


class Cancelled(Exception):
    """The caller stopped the pass or its deadline expired."""


class CallContext:
    """Cancellation and deadline carried through one reconcile pass.

    Every API call goes through :meth:`call`, which refuses to start once the
    stop event is set or the deadline has passed.  The client receives
    ``_request_timeout`` set to the remaining time, capped at
    ``request_timeout``, so a hung call cannot outlive the pass.
    """

    def __init__(
        self,
        stop_event: threading.Event | None = None,
        deadline: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        request_timeout: float | None = None,
    ) -> None:
        self.stop_event = stop_event
        self.deadline = deadline
        self.request_timeout = request_timeout
        self._monotonic = monotonic

    @classmethod
    def background(cls) -> CallContext:
        return cls()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - self._monotonic()

    def check(self) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise Cancelled("reconcile cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise Cancelled("reconcile deadline exceeded")

    def call(self, fn: Callable[..., T], **kwargs: Any) -> T:
        self.check()
        timeout = self.remaining()
        if self.request_timeout is not None:
            timeout = self.request_timeout if timeout is None else min(timeout, self.request_timeout)
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        return fn(**kwargs)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    """409 covers both AlreadyExists on create and resourceVersion conflicts on update."""
    return isinstance(exc, ApiException) and exc.status == 409


is_already_exists = is_conflict


def labels_selector(labels: dict[str, str]) -> str:
    """Render an equality-based label selector (``k=v,k2=v2``) with stable ordering."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()

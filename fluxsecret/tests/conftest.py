from __future__ import annotations

import base64
import copy
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException, V1ObjectMeta, V1Secret

from fluxsecret.src.config import ControllerOptions


def _selector_matches(selector: str | None, labels: dict[str, str] | None) -> bool:
    labels = labels or {}
    for clause in (selector or "").split(","):
        if not clause.strip():
            continue
        key, _, value = clause.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class _Failures:
    def __init__(self) -> None:
        self._queued: dict[str, list[BaseException]] = {}

    def fail_next(self, method: str, *errors: BaseException) -> None:
        self._queued.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        queued = self._queued.get(method)
        if queued:
            raise queued.pop(0)


class FakeCoreApi(_Failures):
    """In-memory stand-in for ``CoreV1Api`` covering Secrets and Namespaces."""

    def __init__(self, namespaces: list[str] | None = None) -> None:
        super().__init__()
        self.namespaces = list(namespaces or [])
        self.secrets: dict[tuple[str, str], V1Secret] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.list_namespace_calls = 0
        self._resource_version = 0

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    # helpers for tests
    def put_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, bytes],
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        self.secrets[(namespace, name)] = V1Secret(
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=dict(labels or {}),
                annotations=dict(annotations or {}),
                resource_version=self._next_version(),
            ),
            type="Opaque",
            data={key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
        )

    def secret_bytes(self, namespace: str, name: str, key: str) -> bytes:
        return base64.b64decode(self.secrets[(namespace, name)].data[key])

    # CoreV1Api surface
    def read_namespaced_secret(self, name: str, namespace: str, **_: Any) -> V1Secret:
        self._maybe_fail("read_namespaced_secret")
        secret = self.secrets.get((namespace, name))
        if secret is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(secret)

    def create_namespaced_secret(self, namespace: str, body: V1Secret, **_: Any) -> V1Secret:
        self._maybe_fail("create_namespaced_secret")
        name = body.metadata.name
        if (namespace, name) in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(body)
        stored.metadata.namespace = namespace
        stored.metadata.resource_version = self._next_version()
        self.secrets[(namespace, name)] = stored
        self.writes.append(("create", namespace, name))
        return copy.deepcopy(stored)

    def replace_namespaced_secret(
        self, name: str, namespace: str, body: V1Secret, **_: Any
    ) -> V1Secret:
        self._maybe_fail("replace_namespaced_secret")
        current = self.secrets.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        stored = copy.deepcopy(body)
        stored.metadata.resource_version = self._next_version()
        self.secrets[(namespace, name)] = stored
        self.writes.append(("replace", namespace, name))
        return copy.deepcopy(stored)

    def delete_namespaced_secret(self, name: str, namespace: str, **_: Any) -> None:
        self._maybe_fail("delete_namespaced_secret")
        if self.secrets.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")
        self.writes.append(("delete", namespace, name))

    def list_secret_for_all_namespaces(
        self, label_selector: str | None = None, **_: Any
    ) -> SimpleNamespace:
        self._maybe_fail("list_secret_for_all_namespaces")
        items = [
            copy.deepcopy(secret)
            for secret in self.secrets.values()
            if _selector_matches(label_selector, secret.metadata.labels)
        ]
        return SimpleNamespace(items=items)

    def list_namespace(self, **_: Any) -> SimpleNamespace:
        self._maybe_fail("list_namespace")
        self.list_namespace_calls += 1
        return SimpleNamespace(
            items=[SimpleNamespace(metadata=SimpleNamespace(name=name)) for name in self.namespaces]
        )


class FakeCustomObjectsApi(_Failures):
    """In-memory stand-in for ``CustomObjectsApi``."""

    def __init__(self) -> None:
        super().__init__()
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.list_resource_version = "100"

    def put(self, plural: str, obj: dict[str, Any]) -> None:
        metadata = obj["metadata"]
        self.objects[(plural, metadata.get("namespace"), metadata["name"])] = copy.deepcopy(obj)

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("get_namespaced_custom_object")
        obj = self.objects.get((plural, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def get_cluster_custom_object(
        self, group: str, version: str, plural: str, name: str, **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("get_cluster_custom_object")
        obj = self.objects.get((plural, None, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def create_cluster_custom_object(
        self, group: str, version: str, plural: str, body: dict[str, Any], **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("create_cluster_custom_object")
        name = body["metadata"]["name"]
        if (plural, None, name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[(plural, None, name)] = copy.deepcopy(body)
        self.writes.append(("create", plural, name))
        return copy.deepcopy(body)

    def replace_cluster_custom_object(
        self, group: str, version: str, plural: str, name: str, body: dict[str, Any], **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("replace_cluster_custom_object")
        if (plural, None, name) not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.objects[(plural, None, name)] = copy.deepcopy(body)
        self.writes.append(("replace", plural, name))
        return copy.deepcopy(body)

    def delete_cluster_custom_object(
        self, group: str, version: str, plural: str, name: str, **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("delete_cluster_custom_object")
        if self.objects.pop((plural, None, name), None) is None:
            raise ApiException(status=404, reason="Not Found")
        self.writes.append(("delete", plural, name))
        return {}

    def list_cluster_custom_object(
        self, group: str, version: str, plural: str, **_: Any
    ) -> dict[str, Any]:
        self._maybe_fail("list_cluster_custom_object")
        items = [
            copy.deepcopy(obj)
            for (obj_plural, _, _), obj in self.objects.items()
            if obj_plural == plural
        ]
        return {"metadata": {"resourceVersion": self.list_resource_version}, "items": items}


def build_vci(
    namespace: str,
    name: str,
    phase: str | None = "Ready",
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "apiVersion": "management.loft.sh/v1",
        "kind": "VirtualClusterInstance",
        "metadata": {
            "namespace": namespace,
            "name": name,
            "labels": dict(labels or {"vcluster.com/import-fluxcd": "true"}),
            "resourceVersion": "1",
        },
    }
    if phase is not None:
        obj["status"] = {"phase": phase}
    return obj


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi(namespaces=["flux-system", "flux-apps", "other"])


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def options() -> ControllerOptions:
    return ControllerOptions(
        server_template="https://${Domain}/kubernetes/project/${Project}/virtualcluster/${Name}",
        loft_domain="loft.example.com",
        controller_namespace="vci-flux-secret-controller",
        flux_namespace_patterns=("flux-system",),
    )


@pytest.fixture
def make_vci() -> Callable[..., dict[str, Any]]:
    return build_vci

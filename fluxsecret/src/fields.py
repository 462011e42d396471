from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

READY_PHASE = "Ready"


class FieldTypeError(TypeError):
    """A field exists in an unstructured object but has an unexpected type."""


def nested_field(obj: Mapping[str, Any], *path: str) -> tuple[Any, bool]:
    """Look up ``path`` in a nested mapping.

    Returns ``(value, True)`` when every segment exists and ``(None, False)``
    as soon as one is missing.  Traversing through a non-mapping raises
    :class:`FieldTypeError` instead of pretending the field is absent.
    """
    current: Any = obj
    for depth, key in enumerate(path):
        if not isinstance(current, Mapping):
            dotted = ".".join(path[:depth])
            raise FieldTypeError(f"{dotted} is {type(current).__name__}, not an object")
        if key not in current:
            return None, False
        current = current[key]
    return current, True


def nested_string(obj: Mapping[str, Any], *path: str) -> tuple[str | None, bool]:
    value, found = nested_field(obj, *path)
    if not found or value is None:
        return None, found
    if not isinstance(value, str):
        raise FieldTypeError(f"{'.'.join(path)} is {type(value).__name__}, not a string")
    return value, True


def nested_string_map(obj: Mapping[str, Any], *path: str) -> tuple[dict[str, str], bool]:
    value, found = nested_field(obj, *path)
    if not found or value is None:
        return {}, found
    if not isinstance(value, Mapping):
        raise FieldTypeError(f"{'.'.join(path)} is {type(value).__name__}, not an object")
    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            raise FieldTypeError(f"{'.'.join(path)} must map strings to strings")
        result[key] = item
    return result, True


@dataclass(frozen=True)
class VirtualClusterInstance:
    """Read-only view of the VirtualClusterInstance fields the controller uses."""

    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    phase: str | None = None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> VirtualClusterInstance:
        name, _ = nested_string(obj, "metadata", "name")
        namespace, _ = nested_string(obj, "metadata", "namespace")
        if not name or not namespace:
            raise FieldTypeError("VirtualClusterInstance is missing metadata.name or metadata.namespace")
        labels, _ = nested_string_map(obj, "metadata", "labels")
        phase, _ = nested_string(obj, "status", "phase")
        return cls(namespace=namespace, name=name, labels=labels, phase=phase)

    @property
    def ready(self) -> bool:
        return self.phase == READY_PHASE

    @property
    def project(self) -> str:
        return project_from_namespace(self.namespace)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


def project_from_namespace(namespace: str) -> str:
    """Derive the Loft project from a VCI namespace.

    Loft places project workloads in ``p-<project>``; anything else maps to
    the ``default`` project.
    """
    if len(namespace) > 2 and namespace.startswith("p-"):
        return namespace[2:]
    return "default"

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

_KEY = r"[A-Za-z0-9](?:[A-Za-z0-9._/-]*[A-Za-z0-9])?"
_VALUE = r"(?:[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?)?"

_EQUALITY = re.compile(rf"^({_KEY})\s*(==|=|!=)\s*({_VALUE})$")
_SET = re.compile(rf"^({_KEY})\s+(in|notin)\s*\(([^()]*)\)$")
_EXISTS = re.compile(rf"^(!?)\s*({_KEY})$")
_SET_VALUE = re.compile(rf"^{_VALUE}$")


class SelectorError(ValueError):
    """Raised for a label selector that cannot be parsed."""


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == "exists":
            return self.key in labels
        if self.operator == "!":
            return self.key not in labels
        if self.operator in {"=", "==", "in"}:
            return self.key in labels and labels[self.key] in self.values
        # != and notin also match when the key is absent
        return labels.get(self.key) not in self.values


def _split_requirements(selector: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced parenthesis in {selector!r}")
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorError(f"unbalanced parenthesis in {selector!r}")
    parts.append("".join(current))
    return parts


def _parse_requirement(raw: str) -> Requirement:
    text = raw.strip()
    if not text:
        raise SelectorError("empty requirement")

    match = _SET.match(text)
    if match:
        key, operator, raw_values = match.groups()
        values = [value.strip() for value in raw_values.split(",")]
        if not all(_SET_VALUE.match(value) for value in values):
            raise SelectorError(f"invalid value in {text!r}")
        return Requirement(key, operator, frozenset(values))

    match = _EQUALITY.match(text)
    if match:
        key, operator, value = match.groups()
        return Requirement(key, operator, frozenset({value}))

    match = _EXISTS.match(text)
    if match:
        negated, key = match.groups()
        return Requirement(key, "!" if negated else "exists")

    raise SelectorError(f"invalid requirement {text!r}")


def parse_selector(selector: str) -> tuple[Requirement, ...]:
    """Parse a Kubernetes label selector.

    Supports equality (``=``, ``==``, ``!=``), set (``in``, ``notin``) and
    existence (``key``, ``!key``) requirements.  An empty selector yields no
    requirements and therefore matches everything.
    """
    if not selector.strip():
        return ()
    return tuple(_parse_requirement(part) for part in _split_requirements(selector))


def selector_matches(requirements: tuple[Requirement, ...], labels: Mapping[str, str]) -> bool:
    return all(requirement.matches(labels) for requirement in requirements)


def selector_admits(selector: str, labels: Mapping[str, str] | None) -> bool:
    """Admission predicate for watch events.

    A selector that fails to parse admits the object so a typo in
    configuration never silently drops relevant events.
    """
    try:
        requirements = parse_selector(selector)
    except SelectorError as exc:
        LOGGER.warning("Ignoring invalid label selector %r: %s", selector, exc)
        return True
    return selector_matches(requirements, labels or {})

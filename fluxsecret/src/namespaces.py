from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from kubernetes.client import CoreV1Api

from fluxsecret.src.kube import CallContext

LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE_PATTERNS = ("flux-system",)
GLOB_CHARACTERS = frozenset("*?[]")


def is_glob(pattern: str) -> bool:
    return any(char in GLOB_CHARACTERS for char in pattern)


def normalize_patterns(patterns: Iterable[str]) -> list[str]:
    """Trim, drop blanks and de-duplicate while keeping first-seen order."""
    seen: list[str] = []
    for raw in patterns:
        pattern = raw.strip()
        if pattern and pattern not in seen:
            seen.append(pattern)
    return seen


def _class_char(pattern: str, index: int) -> tuple[str | None, int]:
    """Read one character of a bracket class, honouring backslash escapes."""
    if index >= len(pattern) or pattern[index] in "-]":
        return None, index
    if pattern[index] == "\\":
        index += 1
        if index >= len(pattern):
            return None, index
    return pattern[index], index + 1


def compile_glob(pattern: str) -> re.Pattern[str] | None:
    """Compile a ``filepath.Match`` style glob, or return None when it is malformed.

    ``*`` and ``?`` never cross ``/``.  Bracket classes take ranges, a leading
    ``^`` for negation and backslash escapes; an unterminated or empty class
    is malformed.  Outside a class a backslash escapes the next character.
    """
    parts: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        index += 1
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "\\":
            if index >= length:
                return None
            parts.append(re.escape(pattern[index]))
            index += 1
        elif char == "[":
            negate = index < length and pattern[index] == "^"
            if negate:
                index += 1
            ranges: list[str] = []
            while True:
                if index >= length:
                    return None
                if pattern[index] == "]" and ranges:
                    index += 1
                    break
                low, index = _class_char(pattern, index)
                if low is None:
                    return None
                if index < length and pattern[index] == "-":
                    high, index = _class_char(pattern, index + 1)
                    if high is None or high < low:
                        return None
                    ranges.append(f"{re.escape(low)}-{re.escape(high)}")
                else:
                    ranges.append(re.escape(low))
            body = "".join(ranges)
            parts.append(f"[^{body}]" if negate else f"[{body}]")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts))


def resolve_namespaces(
    core_api: CoreV1Api,
    patterns: Iterable[str],
    ctx: CallContext | None = None,
) -> list[str]:
    """Resolve namespace patterns into concrete target namespace names.

    Exact names pass through unconditionally.  Globs are matched against a
    single namespace listing, which is only requested when at least one glob
    is configured.  The result is de-duplicated and sorted.
    """
    ctx = ctx or CallContext.background()
    normalized = normalize_patterns(patterns) or list(DEFAULT_NAMESPACE_PATTERNS)
    exact = [pattern for pattern in normalized if not is_glob(pattern)]
    globs = [pattern for pattern in normalized if is_glob(pattern)]
    if not globs:
        return sorted(set(exact))

    compiled: list[re.Pattern[str]] = []
    for pattern in globs:
        regex = compile_glob(pattern)
        if regex is None:
            LOGGER.warning(
                "Namespace pattern %r is not a valid glob; treating as non-matching", pattern
            )
            continue
        compiled.append(regex)

    namespaces = ctx.call(core_api.list_namespace)
    resolved = set(exact)
    for namespace in namespaces.items or []:
        name = getattr(getattr(namespace, "metadata", None), "name", None)
        if not name or name in resolved:
            continue
        if any(regex.fullmatch(name) for regex in compiled):
            resolved.add(name)

    LOGGER.debug("Resolved namespace patterns %s to %s", normalized, sorted(resolved))
    return sorted(resolved)

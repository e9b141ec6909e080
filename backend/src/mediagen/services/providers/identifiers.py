"""Ordered-fallback extraction of identifiers and values from provider JSON.

Provider responses do not guarantee one canonical field name for the task id. A
parser holds an ordered list of dotted paths (``data.0.taskUUID``) and returns the
first non-empty match as a typed result, falling back to the id generated on the
client before submission.
"""

from dataclasses import dataclass
from typing import Any

CLIENT_SOURCE = "client"

_MISSING = object()


def lookup_path(payload: Any, path: str) -> Any:
    """Walk ``payload`` along a dotted path; integer segments index into lists.

    Returns None when any segment is absent.
    """
    current = payload
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            return None
        if current is _MISSING:
            return None
    return current


def first_value(payload: Any, paths: tuple[str, ...] | list[str]) -> Any:
    """Return the first non-empty value found along ``paths``."""
    for path in paths:
        value = lookup_path(payload, path)
        if value not in (None, "", [], {}):
            return value
    return None


@dataclass(frozen=True, slots=True)
class ExtractedIdentifier:
    """Identifier value and the field it came from (``client`` for the fallback)."""

    value: str
    source: str

    @property
    def from_client(self) -> bool:
        return self.source == CLIENT_SOURCE


class IdentifierParser:
    """Ordered list of candidate fields for a provider-issued identifier."""

    def __init__(self, *paths: str):
        if not paths:
            raise ValueError("IdentifierParser needs at least one candidate path")
        self.paths = paths

    def find(self, payload: Any) -> ExtractedIdentifier | None:
        for path in self.paths:
            value = lookup_path(payload, path)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return ExtractedIdentifier(value=str(value), source=path)
        return None

    def find_all(self, payload: Any) -> list[ExtractedIdentifier]:
        """Every distinct candidate present, in priority order."""
        found: list[ExtractedIdentifier] = []
        seen: set[str] = set()
        for path in self.paths:
            value = lookup_path(payload, path)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                if str(value) not in seen:
                    seen.add(str(value))
                    found.append(ExtractedIdentifier(value=str(value), source=path))
        return found

    def parse(self, payload: Any, fallback: str) -> ExtractedIdentifier:
        """Return the first matching identifier, or ``fallback`` tagged as client-generated."""
        return self.find(payload) or ExtractedIdentifier(value=fallback, source=CLIENT_SOURCE)

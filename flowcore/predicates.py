"""Filter rules applied to event data when routing and emitting."""

from __future__ import annotations

import re
from functools import cached_property
from typing import Any, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

PredicateType = Literal["equals", "notEquals", "matches", "in"]

_MISSING = object()


def extract_field(data: Any, path: Optional[str]) -> Any:
    """Walk a dotted ``path`` through nested mappings in ``data``.

    Returns a sentinel when any segment is missing so that callers can tell
    "absent" apart from an explicit ``None`` value.
    """
    if not path:
        return data
    current = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


class Predicate(BaseModel):
    """A single routing or filtering rule.

    ``equals``/``notEquals`` compare against ``value``, ``matches`` applies
    ``value`` as a regular expression (search semantics) and ``in`` tests
    membership in ``values``. ``field`` optionally selects a dotted path inside
    the event data; without it the whole payload is compared.
    """

    model_config = ConfigDict(frozen=True)

    type: PredicateType
    value: Any = None
    values: List[Any] = Field(default_factory=list)
    field: Optional[str] = None

    @model_validator(mode="after")
    def _check_operands(self) -> "Predicate":
        if self.type == "matches":
            if not isinstance(self.value, str):
                raise ValueError("matches predicate requires a string pattern")
            try:
                re.compile(self.value)
            except re.error as exc:
                raise ValueError(f"invalid regular expression {self.value!r}: {exc}")
        if self.type == "in" and not self.values:
            raise ValueError("in predicate requires at least one value")
        return self

    @cached_property
    def compiled_pattern(self) -> re.Pattern[str]:
        return re.compile(self.value)

    def evaluate(self, data: Any) -> bool:
        candidate = extract_field(data, self.field)
        if candidate is _MISSING:
            return False

        if self.type == "equals":
            return candidate == self.value
        if self.type == "notEquals":
            return candidate != self.value
        if self.type == "matches":
            return isinstance(candidate, str) and self.compiled_pattern.search(candidate) is not None
        return candidate in self.values


def equals(value: Any, field: Optional[str] = None) -> Predicate:
    return Predicate(type="equals", value=value, field=field)


def not_equals(value: Any, field: Optional[str] = None) -> Predicate:
    return Predicate(type="notEquals", value=value, field=field)


def matches(pattern: str, field: Optional[str] = None) -> Predicate:
    return Predicate(type="matches", value=pattern, field=field)


def one_of(values: Iterable[Any], field: Optional[str] = None) -> Predicate:
    return Predicate(type="in", values=list(values), field=field)


def matches_any(predicates: Iterable[Predicate], data: Any) -> bool:
    """Return ``True`` when at least one predicate accepts ``data``."""
    return any(p.evaluate(data) for p in predicates)

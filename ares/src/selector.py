from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ares.src.errors import ConfigError


class Operator(str, Enum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True)
class Expression:
    """A set-based label requirement (``matchExpressions`` entry)."""

    key: str
    operator: Operator
    values: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Expression:
        key = raw.get("key")
        if not isinstance(key, str) or not key:
            raise ConfigError(f"matchExpressions entry is missing a key: {raw!r}")
        try:
            operator = Operator(raw.get("operator"))
        except ValueError as exc:
            raise ConfigError(
                f"matchExpressions entry for {key!r} has unknown operator {raw.get('operator')!r}"
            ) from exc
        values = raw.get("values") or []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigError(f"matchExpressions values for {key!r} must be a list of strings")
        return cls(key=key, operator=operator, values=frozenset(values))

    def match_value(self, observed: str | None) -> bool:
        return matches_expression(self, observed)


def matches_expression(expr: Expression, observed: str | None) -> bool:
    """Evaluate one expression against the label value observed for ``expr.key``.

    ``NotIn`` requires the key to be present, matching Kubernetes
    set-based selector semantics.
    """
    if expr.operator is Operator.IN:
        return observed is not None and observed in expr.values
    if expr.operator is Operator.NOT_IN:
        return observed is not None and observed not in expr.values
    if expr.operator is Operator.EXISTS:
        return observed is not None
    return observed is None


def matches_all(expressions: Iterable[Expression], labels: Mapping[str, str]) -> bool:
    """Return True only if every expression holds for *labels*."""
    return all(matches_expression(expr, labels.get(expr.key)) for expr in expressions)


def matches_labels(selector: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    """Return True if *labels* contain every key-value pair in *selector*."""
    return all(labels.get(k) == v for k, v in selector.items())


def label_selector_string(selector: Mapping[str, str]) -> str:
    """Render an equality selector as a Kubernetes ``labelSelector`` query (``k=v,k2=v2``)."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))

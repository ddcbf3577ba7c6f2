"""Kubernetes LabelSelector parsing and matching for the pod filter."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import yaml


OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: Tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        # NotIn also matches when the label is absent
        return labels.get(self.key) not in self.values


@dataclass(frozen=True)
class LabelSelector:
    """
    A parsed LabelSelector with matchLabels and matchExpressions.

    An empty selector matches every object.
    """

    match_labels: Dict[str, str] = field(default_factory=dict)
    requirements: Tuple[Requirement, ...] = ()

    @classmethod
    def parse(cls, text: Optional[str]) -> "LabelSelector":
        """
        Parses a selector from JSON or YAML text.

        Args:
            text: The selector document. Empty text yields a match-all selector.

        Returns:
            The parsed selector.

        Raises:
            ValueError: If the document is not a valid LabelSelector.
        """
        if not text or not text.strip():
            return cls()
        try:
            # JSON is a subset of YAML, so one loader covers both
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Label selector is not valid JSON/YAML: {e}")
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("Label selector must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping) -> "LabelSelector":
        unknown = set(data) - {"matchLabels", "matchExpressions"}
        if unknown:
            raise ValueError(f"Unknown label selector fields: {sorted(unknown)}")

        match_labels = data.get("matchLabels") or {}
        if not isinstance(match_labels, dict):
            raise ValueError("matchLabels must be a mapping")
        # YAML turns `true` into a bool, labels are always strings
        labels = {str(k): _label_value(v) for k, v in match_labels.items()}

        expressions = data.get("matchExpressions") or []
        if not isinstance(expressions, list):
            raise ValueError("matchExpressions must be a list")
        requirements: List[Requirement] = []
        for expr in expressions:
            if not isinstance(expr, dict) or "key" not in expr or "operator" not in expr:
                raise ValueError(f"Invalid matchExpressions entry: {expr!r}")
            operator = str(expr["operator"])
            if operator not in OPERATORS:
                raise ValueError(f"Unsupported selector operator '{operator}'")
            values = tuple(_label_value(v) for v in (expr.get("values") or []))
            if operator in ("In", "NotIn") and not values:
                raise ValueError(f"Operator '{operator}' requires values")
            if operator in ("Exists", "DoesNotExist") and values:
                raise ValueError(f"Operator '{operator}' does not take values")
            requirements.append(Requirement(str(expr["key"]), operator, values))

        return cls(match_labels=labels, requirements=tuple(requirements))

    @property
    def empty(self) -> bool:
        return not self.match_labels and not self.requirements

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(req.matches(labels) for req in self.requirements)


def _label_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

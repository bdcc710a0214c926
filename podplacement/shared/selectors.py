"""
podplacement/shared/selectors.py
─────────────────────────────────
Label selector evaluation for namespaceSelector / labelSelector fields.

Semantics follow the orchestrator's own selectors:
  • matchLabels and matchExpressions are ANDed.
  • An absent (None) or empty selector matches every label set.
  • In / NotIn require a non-empty values list; Exists / DoesNotExist
    require an empty one. validate_label_selector() enforces that at
    admission so matches_label_selector() can assume well-formed input.
"""

from __future__ import annotations

from typing import List, Mapping, Optional

from podplacement.shared.models import LabelSelector, LabelSelectorRequirement

SELECTOR_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def matches_label_selector(
    selector: Optional[LabelSelector],
    labels: Optional[Mapping[str, str]],
) -> bool:
    """
    True if `labels` satisfy every requirement in `selector`.

    Raises:
        ValueError: on an operator outside SELECTOR_OPERATORS.
    """
    if selector is None:
        return True
    labels = labels or {}
    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False
    return all(_matches_requirement(req, labels) for req in selector.match_expressions)


def _matches_requirement(req: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    present = req.key in labels
    if req.operator == "In":
        return present and labels[req.key] in req.values
    if req.operator == "NotIn":
        return not present or labels[req.key] not in req.values
    if req.operator == "Exists":
        return present
    if req.operator == "DoesNotExist":
        return not present
    raise ValueError(f"unsupported label selector operator {req.operator!r}")


def validate_label_selector(selector: Optional[LabelSelector]) -> List[str]:
    """Return a list of problems with `selector` (empty list = valid)."""
    problems: List[str] = []
    if selector is None:
        return problems
    for i, req in enumerate(selector.match_expressions):
        if not req.key:
            problems.append(f"matchExpressions[{i}].key must not be empty")
        if req.operator not in SELECTOR_OPERATORS:
            problems.append(
                f"matchExpressions[{i}].operator {req.operator!r} is not one of "
                f"{', '.join(SELECTOR_OPERATORS)}"
            )
        elif req.operator in ("In", "NotIn") and not req.values:
            problems.append(
                f"matchExpressions[{i}].values must be non-empty for operator {req.operator}"
            )
        elif req.operator in ("Exists", "DoesNotExist") and req.values:
            problems.append(
                f"matchExpressions[{i}].values must be empty for operator {req.operator}"
            )
    return problems

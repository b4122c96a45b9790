# Overview: Attribute-combination signatures and allocation across combinations.

"""
Attribute combinations partition a tracked product's units by their variant
axes (size, color, ...). Each combination is identified by a signature:

    lower-cased, trimmed, sorted "key:value" pairs joined by "|"
    e.g. {"Size": " M ", "color": "Red"} -> "color:red|size:m"

An empty selection (or a product without axes) maps to DEFAULT_COMBINATION_KEY.

Allocation spreads a requested quantity over the combinations matching a
(possibly partial) selection. It is all-or-nothing: a strategy returns a full
{signature: quantity} plan or None, never a partial fill.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

DEFAULT_COMBINATION_KEY = "__default"
MAX_BOOKING_ATTRIBUTE_AXES = 3


@dataclass(frozen=True)
class CombinationCapacity:
    key: str
    attributes: dict
    remaining: int


def _normalize(value) -> str:
    return " ".join(str(value).split()).lower()


def axis_keys(axes: Optional[Sequence[dict]]) -> list[str]:
    return [axis["key"] for axis in (axes or []) if axis.get("key")]


def canonicalize_attributes(axes: Optional[Sequence[dict]], attributes: Optional[Mapping]) -> dict:
    """Keep only values for the product's axes, normalized; drop blanks."""
    source = attributes or {}
    keys = axis_keys(axes)
    if not keys:
        return {}
    normalized = {}
    for key in keys:
        raw = source.get(key)
        if raw is None:
            continue
        value = _normalize(raw)
        if value:
            normalized[_normalize(key)] = value
    return normalized


def build_combination_key(attributes: Optional[Mapping]) -> str:
    pairs = sorted(
        f"{_normalize(k)}:{_normalize(v)}"
        for k, v in (attributes or {}).items()
        if v is not None and _normalize(v) and _normalize(k)
    )
    return "|".join(pairs) if pairs else DEFAULT_COMBINATION_KEY


def unit_combination_key(axes: Optional[Sequence[dict]], attributes: Optional[Mapping]) -> str:
    return build_combination_key(canonicalize_attributes(axes, attributes))


def matches_selected_attributes(selected: Optional[Mapping], candidate: Optional[Mapping]) -> bool:
    """Partial match: every non-blank selected axis must agree with the candidate."""
    candidate_norm = {_normalize(k): _normalize(v) for k, v in (candidate or {}).items() if v is not None}
    for key, value in (selected or {}).items():
        if value is None or not _normalize(value):
            continue
        if candidate_norm.get(_normalize(key), "") != _normalize(value):
            return False
    return True


def resolved_attributes(selected: Optional[Mapping], combination_attributes: Optional[Mapping]) -> dict:
    """Combination attributes overlaid with the customer's explicit choices."""
    merged = dict(combination_attributes or {})
    for key, value in (selected or {}).items():
        if value is not None and _normalize(value):
            merged[_normalize(key)] = _normalize(value)
    return merged


# =============================================================================
# ALLOCATION STRATEGIES
# =============================================================================

def _fill(ordered: Sequence[CombinationCapacity], quantity: int) -> Optional[dict]:
    plan: dict[str, int] = {}
    needed = quantity
    for combination in ordered:
        if needed <= 0:
            break
        take = min(max(combination.remaining, 0), needed)
        if take > 0:
            plan[combination.key] = take
            needed -= take
    if needed > 0:
        return None
    return plan


def allocate_most_capacity(candidates: Sequence[CombinationCapacity], quantity: int) -> Optional[dict]:
    """Greedy: exhaust the combination with the most remaining capacity first."""
    ordered = sorted(candidates, key=lambda c: (-c.remaining, c.key))
    return _fill(ordered, quantity)


def allocate_deterministic(candidates: Sequence[CombinationCapacity], quantity: int) -> Optional[dict]:
    """First combination (by signature order) that fits the whole quantity."""
    for combination in sorted(candidates, key=lambda c: c.key):
        if combination.remaining >= quantity:
            return {combination.key: quantity}
    return None


AllocationStrategy = Callable[[Sequence[CombinationCapacity], int], Optional[dict]]

ALLOCATION_STRATEGIES: dict[str, AllocationStrategy] = {
    "most_capacity": allocate_most_capacity,
    "deterministic": allocate_deterministic,
}


def get_allocation_strategy(name: Optional[str]) -> AllocationStrategy:
    if not name:
        return allocate_most_capacity
    try:
        return ALLOCATION_STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown allocation strategy '{name}'. Must be one of: {', '.join(sorted(ALLOCATION_STRATEGIES))}"
        )


def allocate_across_combinations(
    combinations: Sequence[CombinationCapacity],
    selected: Optional[Mapping],
    quantity: int,
    strategy: Optional[AllocationStrategy] = None,
) -> Optional[dict]:
    """Allocate `quantity` over combinations matching `selected`; None if impossible."""
    if quantity <= 0:
        return {}
    matching = [c for c in combinations if matches_selected_attributes(selected, c.attributes)]
    return (strategy or allocate_most_capacity)(matching, quantity)

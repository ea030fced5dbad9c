"""Integer resource-list arithmetic shared by the simulator and the planners."""
from fractions import Fraction
from typing import Dict, Iterable, Mapping, Optional

from normalize.quantity import CPU, MEMORY, PODS, Number, normalize_resource

ResourceList = Dict[str, int]


def parse_resource_list(raw: Optional[Mapping[str, Number]]) -> ResourceList:
    """Normalize a raw {name: quantity} mapping; zero entries are dropped.

    Raises InvalidQuantityError for malformed or negative values.
    """
    result: ResourceList = {}
    for name, value in (raw or {}).items():
        amount = normalize_resource(name, value)
        if amount:
            result[name] = amount
    return result


def add(a: Mapping[str, int], b: Mapping[str, int]) -> ResourceList:
    out = dict(a)
    for name, amount in b.items():
        out[name] = out.get(name, 0) + amount
    return out


def subtract(a: Mapping[str, int], b: Mapping[str, int]) -> ResourceList:
    """a - b per resource; may go negative, callers decide what that means"""
    out = dict(a)
    for name, amount in b.items():
        out[name] = out.get(name, 0) - amount
    return out


def scale(a: Mapping[str, int], factor: int) -> ResourceList:
    return {name: amount * factor for name, amount in a.items()}


def total(lists: Iterable[Mapping[str, int]]) -> ResourceList:
    out: ResourceList = {}
    for item in lists:
        for name, amount in item.items():
            out[name] = out.get(name, 0) + amount
    return out


def first_insufficient(request: Mapping[str, int], free: Mapping[str, int]) -> Optional[str]:
    """Name of the first resource (sorted) whose request exceeds what is free"""
    for name in sorted(request):
        amount = request[name]
        if amount > 0 and amount > free.get(name, 0):
            return name
    return None


def fits(request: Mapping[str, int], free: Mapping[str, int]) -> bool:
    return first_insufficient(request, free) is None


def utilization(requested: Mapping[str, int], allocatable: Mapping[str, int]) -> Fraction:
    """Max of the CPU and memory requested fractions.

    A resource the node does not declare is skipped; a node declaring neither
    counts as fully utilized so that it is never mistaken for an idle node.
    """
    fractions = []
    for name in (CPU, MEMORY):
        cap = allocatable.get(name, 0)
        if cap > 0:
            fractions.append(Fraction(requested.get(name, 0), cap))
    if not fractions:
        return Fraction(1)
    return max(fractions)


def pod_slot(allocatable: Mapping[str, int]) -> ResourceList:
    """Implicit one-pod request, only when the node declares pod capacity"""
    if PODS in allocatable:
        return {PODS: 1}
    return {}

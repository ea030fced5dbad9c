"""
Expanders: pick one pool among those whose estimates cover pending pods.

Each strategy narrows the options to its best-scoring set; ties are broken
by a seeded random choice so a given tick is reproducible. Exactly one
strategy is active per engine.
"""
import functools
import logging
import random
import re
from enum import Enum
from fractions import Fraction
from typing import Callable, Dict, List, Optional, Pattern

from scaleup.binpacking import Estimate

logger = logging.getLogger(__name__)


class ExpanderKind(str, Enum):
    LEAST_WASTE = 'least-waste'
    MOST_PODS = 'most-pods'
    PRIORITY = 'priority'
    RANDOM = 'random'


def _best(options: List[Estimate], key: Callable[[Estimate], object]) -> List[Estimate]:
    if not options:
        return []
    best = max(key(o) for o in options)
    return [o for o in options if key(o) == best]


def least_waste(options: List[Estimate], priorities=None) -> List[Estimate]:
    """Least unused cpu+memory share on the nodes that would be added"""
    return _best(options, lambda o: -o.waste)


def most_pods(options: List[Estimate], priorities=None) -> List[Estimate]:
    """Most pods helped per added node"""
    return _best(options, lambda o: Fraction(len(o.pods), max(o.node_count, 1)))


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[Pattern]:
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Ignoring invalid priority pattern {pattern!r}: {e}")
        return None


def pool_priority(pool_id: str, priorities: Dict[int, List[str]]) -> Optional[int]:
    """Highest priority whose pattern fully matches the pool id; invalid patterns match nothing"""
    matched = None
    for prio, patterns in priorities.items():
        compiled = [_compile(p) for p in patterns]
        if any(c is not None and c.fullmatch(pool_id) for c in compiled):
            if matched is None or prio > matched:
                matched = prio
    return matched


def priority(options: List[Estimate], priorities: Optional[Dict[int, List[str]]] = None) -> List[Estimate]:
    """Operator ranking; pools no rule mentions only win when nothing else is ranked"""
    priorities = priorities or {}
    ranked = [(pool_priority(o.pool_id, priorities), o) for o in options]
    if all(p is None for p, _ in ranked):
        return list(options)
    top = max(p for p, _ in ranked if p is not None)
    return [o for p, o in ranked if p == top]


def random_choice(options: List[Estimate], priorities=None) -> List[Estimate]:
    return list(options)


STRATEGIES = {
    ExpanderKind.LEAST_WASTE: least_waste,
    ExpanderKind.MOST_PODS: most_pods,
    ExpanderKind.PRIORITY: priority,
    ExpanderKind.RANDOM: random_choice,
}


def choose(kind: ExpanderKind, options: List[Estimate], rng: random.Random,
           priorities: Optional[Dict[int, List[str]]] = None) -> Optional[Estimate]:
    """Winning option, or None when nothing can help"""
    usable = [o for o in options if o.node_count > 0 and o.pods]
    if not usable:
        return None
    best = STRATEGIES[ExpanderKind(kind)](usable, priorities)
    best = sorted(best, key=lambda o: o.pool_id)
    if len(best) == 1:
        return best[0]
    return rng.choice(best)

"""Balanced scaling across pools with the same similarity fingerprint."""
from typing import Dict, List, Tuple


def split_proportionally(total: int, groups: List[Tuple[str, int, int]]) -> Dict[str, int]:
    """Split `total` new nodes over (pool_id, current_size, headroom) groups.

    Shares follow current sizes (all-zero sizes split evenly) using the
    largest-remainder method, ties going to the lower pool id. A pool never
    receives more than its headroom; whatever it cannot take is spread over
    the others in another round. The result may sum to less than `total`
    when the family as a whole runs out of headroom.
    """
    result = {pool_id: 0 for pool_id, _, _ in groups}
    sizes = {pool_id: size for pool_id, size, _ in groups}
    room = {pool_id: max(0, headroom) for pool_id, _, headroom in groups}
    remaining = total

    while remaining > 0:
        open_pools = sorted(p for p in result if room[p] > 0)
        if not open_pools:
            break
        weights = {p: sizes[p] + result[p] for p in open_pools}
        if sum(weights.values()) == 0:
            weights = {p: 1 for p in open_pools}
        weight_sum = sum(weights.values())

        shares = {}
        remainders = []
        for p in open_pools:
            whole, rem = divmod(remaining * weights[p], weight_sum)
            shares[p] = whole
            remainders.append((-rem, p))
        leftover = remaining - sum(shares.values())
        for _, p in sorted(remainders)[:leftover]:
            shares[p] += 1

        granted = 0
        for p in open_pools:
            take = min(shares[p], room[p])
            result[p] += take
            room[p] -= take
            granted += take
        remaining -= granted
        if granted == 0:
            break

    return {p: n for p, n in result.items() if n > 0}

"""Status document written after every tick and served by ui.py."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from registry.cluster_state import ClusterStateRegistry
from registry.events import StatusEvent

STATUS_VERSION = 1


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace('+00:00', 'Z')


def build_status(cluster_name: str, registry: ClusterStateRegistry, tick: Dict[str, Any],
                 events: List[StatusEvent], now: float) -> Dict[str, Any]:
    """JSON-serializable view of pool health, in-flight work and the last tick"""
    pools = {}
    for pool_id, state in registry.pool_states(now).items():
        doc = state.to_dict()
        doc['backoff_until'] = iso(state.backoff_until)
        doc['last_scale_up'] = iso(state.last_scale_up)
        doc['last_scale_down'] = iso(state.last_scale_down)
        pools[pool_id] = doc

    return {
        'version': STATUS_VERSION,
        'cluster_name': cluster_name,
        'generated_at': iso(now),
        'generated_at_epoch': now,
        'pools': pools,
        'in_flight': {
            'scale_ups': [
                {'attempt_id': r.attempt_id, 'pool_id': r.pool_id, 'delta': r.delta,
                 'expires_at': iso(r.expires_at)}
                for r in registry.scale_ups_in_flight()
            ],
            'deletions': [
                {'node_name': d.node_name, 'pool_id': d.pool_id, 'phase': d.phase,
                 'started_at': iso(d.started_at)}
                for d in registry.deletions_in_flight()
            ],
            'unregistered': [
                {'pool_id': u.pool_id, 'instance_id': u.instance_id, 'since': iso(u.since)}
                for u in registry.unregistered_nodes(now=now)
            ],
        },
        'last_tick': tick,
        'events': [e.to_dict() for e in events],
    }

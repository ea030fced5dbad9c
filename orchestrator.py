"""Control loop: snapshot -> registry update -> scale-up -> scale-down -> apply -> status.

One tick never overlaps another. Planning is side-effect free apart from the
registry bookkeeping; every provider call happens here, bounded by a timeout,
and its outcome is fed back into the registry.
"""
import abc
import json
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import yaml

from config import (
    setup_logging, validate_config, ConfigValidationError,
    AutoscalingOptions, options_from_config, get_status_output_path,
    NODE_POOLS_CONFIG, SNAPSHOT_SOURCE, SNAPSHOT_FILE, OUTPUT_DIR, RUN_MODE,
)
from cluster.model import Pod
from cluster.node_pool import NodePool, NodePoolError, load_node_pools
from cluster.snapshot import ClusterSnapshot, SnapshotError
from registry import events
from registry.cluster_state import ClusterStateRegistry
from registry.events import EventRecorder, StatusEvent
from scaledown.planner import ScaleDownDecision, ScaleDownResult, plan_scale_down
from scaleup.planner import ScaleUpResult, plan_scale_up
from sources.kube_api import KubeAPIError, fetch_snapshot, load_snapshot_file
from status import build_status

logger = logging.getLogger(__name__)


class EvictionBlockedError(Exception):
    """A disruption budget refused an eviction while draining a node"""
    pass


class Drainer(abc.ABC):
    """Evicts a node's pods before the provider deletes it"""

    @abc.abstractmethod
    def drain(self, node_name: str, pods: List[str], grace_period_seconds: int) -> None:
        """Raises EvictionBlockedError when an eviction is refused"""
        ...


class NoopDrainer(Drainer):
    """Dry-run drainer: trusts the simulation"""

    def drain(self, node_name: str, pods: List[str], grace_period_seconds: int) -> None:
        logger.info(f"Would drain {node_name} ({len(pods)} pod(s), grace {grace_period_seconds}s)")


@dataclass
class TickResult:
    started_at: float
    finished_at: float = 0.0
    error: Optional[str] = None
    scale_up: Optional[ScaleUpResult] = None
    scale_down: Optional[ScaleDownResult] = None
    scale_down_skipped: Optional[str] = None
    excluded_nodes: List[str] = field(default_factory=list)
    forced_removals: Dict[str, int] = field(default_factory=dict)
    # scale-up attempt id / node name -> provider error
    failures: Dict[str, str] = field(default_factory=dict)
    events: List[StatusEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'error': self.error,
            'scale_up': self.scale_up.to_dict() if self.scale_up else None,
            'scale_down': self.scale_down.to_dict() if self.scale_down else None,
            'scale_down_skipped': self.scale_down_skipped,
            'excluded_nodes': list(self.excluded_nodes),
            'forced_removals': dict(self.forced_removals),
            'failures': dict(self.failures),
        }


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    os.makedirs(dirp, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix='.tmp_status_', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        # Atomic replace
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def default_snapshot_source(options: AutoscalingOptions) -> Callable[[float], ClusterSnapshot]:
    if SNAPSHOT_SOURCE == 'api':
        return lambda now: fetch_snapshot(pool_label_key=options.pool_label_key, now=now)
    return lambda now: load_snapshot_file(SNAPSHOT_FILE, pool_label_key=options.pool_label_key, now=now)


class ControlLoop:

    def __init__(
        self,
        pools: Dict[str, NodePool],
        snapshot_source: Callable[[float], ClusterSnapshot],
        options: Optional[AutoscalingOptions] = None,
        registry: Optional[ClusterStateRegistry] = None,
        drainer: Optional[Drainer] = None,
        status_path: Optional[str] = None,
    ):
        self.pools = dict(pools)
        self.snapshot_source = snapshot_source
        self.options = options or AutoscalingOptions()
        self.registry = registry or ClusterStateRegistry(self.options, EventRecorder())
        self.drainer = drainer or NoopDrainer()
        self.status_path = status_path
        self._tick_lock = threading.Lock()
        self._provider = ThreadPoolExecutor(max_workers=max(1, self.options.worker_pool_size),
                                            thread_name_prefix='provider')
        self.last_result: Optional[TickResult] = None

    @property
    def cluster(self) -> str:
        return self.options.cluster_name

    def close(self) -> None:
        self._provider.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------
    def _call_provider(self, fn: Callable, *args):
        """Run a provider call with the configured timeout.

        Raises:
            NodePoolError: provider failure, or TIMEOUT when the call hangs
        """
        future = self._provider.submit(fn, *args)
        try:
            return future.result(timeout=self.options.provider_call_timeout_seconds)
        except FutureTimeout:
            future.cancel()
            name = getattr(fn, '__name__', 'provider call')
            raise NodePoolError(f"{name} timed out after {self.options.provider_call_timeout_seconds}s",
                                kind=NodePoolError.TIMEOUT)

    # ------------------------------------------------------------------
    # Tick steps
    # ------------------------------------------------------------------
    def _check_pool_membership(self, snapshot: ClusterSnapshot, now: float, result: TickResult) -> None:
        for node in snapshot.nodes():
            if node.pool_id is not None and node.pool_id not in self.pools:
                result.excluded_nodes.append(node.name)
                self.registry.recorder.record(
                    events.INVARIANT_VIOLATION, node.name,
                    f"node references unknown pool {node.pool_id}; not managed", now,
                    pool_id=node.pool_id,
                )

    def _remove_unregistered(self, now: float, result: TickResult) -> None:
        for pool_id, pool in sorted(self.pools.items()):
            entries = self.registry.unregistered_nodes(pool_id, now=now)
            if not entries:
                continue
            ids = [u.instance_id for u in entries if u.instance_id is not None]
            synthetic = len(entries) - len(ids)
            try:
                if ids:
                    self._call_provider(pool.delete_nodes, ids)
                if synthetic:
                    current = self._call_provider(pool.target_size)
                    self._call_provider(pool.set_target_size, max(pool.min_size(), current - synthetic))
            except NodePoolError as e:
                logger.warning(f"[{self.cluster}] Could not remove unregistered nodes of {pool_id}: {e}")
                result.failures[f"unregistered:{pool_id}"] = str(e)
                continue
            self.registry.record_forced_removal(pool_id, ids, synthetic, now)
            result.forced_removals[pool_id] = len(entries)
            logger.info(f"[{self.cluster}] Removed {len(entries)} unregistered node(s) from {pool_id}")

    def _apply_scale_up(self, plan: ScaleUpResult, now: float, result: TickResult) -> None:
        for decision in plan.decisions:
            pool = self.pools[decision.pool_id]
            try:
                current = self._call_provider(pool.target_size)
                self._call_provider(pool.set_target_size, current + decision.delta)
            except NodePoolError as e:
                logger.error(f"[{self.cluster}] Scale-up of {decision.pool_id} failed ({e.kind}): {e}")
                result.failures[decision.attempt_id] = str(e)
                self.registry.record_scale_up_result(decision.attempt_id, e, now)
                continue
            self.registry.record_scale_up_result(decision.attempt_id, None, now)
            logger.info(f"[{self.cluster}] Scaled up {decision.pool_id} by {decision.delta} "
                        f"to {current + decision.delta}")

    def _apply_scale_down(self, decision: ScaleDownDecision, now: float, result: TickResult) -> None:
        pool = self.pools[decision.pool_id]
        try:
            self.drainer.drain(decision.node_name, decision.pods, decision.grace_period_seconds)
        except EvictionBlockedError as e:
            logger.warning(f"[{self.cluster}] Drain of {decision.node_name} blocked: {e}")
            self.registry.abandon_scale_down(decision.node_name, f"eviction blocked: {e}", now)
            return
        try:
            self._call_provider(pool.delete_nodes, [decision.node_name])
        except NodePoolError as e:
            logger.error(f"[{self.cluster}] Deleting {decision.node_name} failed ({e.kind}): {e}")
            result.failures[decision.node_name] = str(e)
            self.registry.record_scale_down_result(decision.node_name, e, now)
            return
        self.registry.record_scale_down_result(decision.node_name, None, now)
        logger.info(f"[{self.cluster}] Removed node {decision.node_name} from {decision.pool_id} "
                    f"({decision.reason})")

    def _scale_down_blocker(self, result: TickResult, now: float, deadline: float) -> Optional[str]:
        if not self.options.scale_down_enabled:
            return 'disabled'
        if result.scale_up is not None and result.scale_up.decisions:
            return 'scaled_up_this_tick'
        last_up = self.registry.last_scale_up_time()
        if last_up is not None and now - last_up < self.options.scale_down_delay_after_add_seconds:
            return 'recent_scale_up'
        if time.monotonic() >= deadline:
            return 'deadline_exceeded'
        return None

    def _log_events(self, tick_events: List[StatusEvent]) -> None:
        for event in tick_events:
            line = f"[{self.cluster}] {event.kind} {event.subject}: {event.message}"
            if event.kind in events.WARNING_KINDS:
                logger.warning(line)
            else:
                logger.info(line)

    def _pending_pods(self, snapshot: ClusterSnapshot) -> List[Pod]:
        return [p for p in snapshot.pending_pods() if not p.is_daemonset and not p.is_mirror]

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def run_once(self, now: Optional[float] = None) -> TickResult:
        with self._tick_lock:
            now = time.time() if now is None else now
            deadline = time.monotonic() + self.options.tick_deadline_seconds
            result = TickResult(started_at=now)
            try:
                self._tick(now, deadline, result)
            except Exception as e:
                logger.error(f"[{self.cluster}] Tick failed: {e}", exc_info=True)
                result.error = f"tick: {e}"
                self.registry.recorder.record(events.TICK_FAILED, self.cluster, str(e), now)
            finally:
                result.finished_at = time.time()
                result.events = self.registry.recorder.drain()
                self._log_events(result.events)
                self.last_result = result
                self._write_status(result, now)
            return result

    def _tick(self, now: float, deadline: float, result: TickResult) -> None:
        try:
            snapshot = self.snapshot_source(now)
        except (KubeAPIError, SnapshotError, OSError, ValueError) as e:
            logger.error(f"[{self.cluster}] Could not build cluster snapshot: {e}")
            result.error = f"snapshot: {e}"
            self.registry.recorder.record(events.INVALID_INPUT, self.cluster, str(e), now)
            return

        self._check_pool_membership(snapshot, now, result)
        self.registry.update(snapshot, self.pools, now)
        self._remove_unregistered(now, result)

        pending = self._pending_pods(snapshot)
        if pending:
            logger.info(f"[{self.cluster}] {len(pending)} pending pod(s)")
        result.scale_up = plan_scale_up(pending, self.pools, snapshot, self.registry,
                                        self.options, now=now, deadline=deadline)
        self._apply_scale_up(result.scale_up, now, result)

        blocker = self._scale_down_blocker(result, now, deadline)
        if blocker is not None:
            result.scale_down_skipped = blocker
            logger.debug(f"[{self.cluster}] Scale-down skipped: {blocker}")
            return
        result.scale_down = plan_scale_down(snapshot, self.registry, self.pools, self.options,
                                            now=now, deadline=deadline)
        for decision in result.scale_down.decisions:
            self._apply_scale_down(decision, now, result)

    def _write_status(self, result: TickResult, now: float) -> None:
        if not self.status_path:
            return
        doc = build_status(self.cluster, self.registry, result.to_dict(), result.events, now)
        try:
            _atomic_write(self.status_path, json.dumps(doc, indent=2))
        except OSError as e:
            logger.warning(f"[{self.cluster}] Failed to write status to {self.status_path}: {e}")

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        interval = self.options.scan_interval_seconds
        logger.info(f"[{self.cluster}] Control loop started (interval {interval}s)")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"[{self.cluster}] Tick bookkeeping failed: {e}", exc_info=True)
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, interval - elapsed))
        logger.info(f"[{self.cluster}] Control loop stopped")


def main() -> int:
    # Setup logging first
    setup_logging()

    # Validate configuration
    try:
        validate_config()
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    os.makedirs(OUTPUT_DIR, exist_ok=True)
    options = options_from_config()
    try:
        pools = load_node_pools(NODE_POOLS_CONFIG)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Could not load node pools from {NODE_POOLS_CONFIG}: {e}")
        return 1

    loop = ControlLoop(
        pools=pools,
        snapshot_source=default_snapshot_source(options),
        options=options,
        status_path=get_status_output_path(options.cluster_name),
    )
    logger.info("=" * 60)
    logger.info(f"Cluster scaling agent for {options.cluster_name} "
                f"(mode={RUN_MODE}, expander={options.expander}, pools={len(pools)})")
    logger.info(f"Started at {datetime.now(timezone.utc).isoformat()}")
    logger.info("=" * 60)
    try:
        if RUN_MODE == 'once':
            result = loop.run_once()
            return 0 if result.error is None else 1
        loop.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        loop.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())

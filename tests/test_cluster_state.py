"""
Tests for ClusterStateRegistry
"""
from cluster.node_pool import NodePoolError
from cluster.snapshot import ClusterSnapshot
from registry import events
from registry.cluster_state import ClusterStateRegistry, PoolState


def _fail_scale_up(registry, pool_id, now, error="boom"):
    attempt = registry.record_scale_up_attempt(pool_id, 1, now)
    registry.record_scale_up_result(attempt, error, now)
    return attempt


def _backoff_durations(recorder):
    return [e.details["duration_seconds"] for e in recorder.peek() if e.kind == events.POOL_BACKOFF]


class TestUpdate:
    """Tests for reconciliation with snapshots and providers"""

    def test_counts_registered_and_ready(self, registry, make_pool, make_node, now):
        pools = {"general": make_pool(target_size=2)}
        snap = ClusterSnapshot([make_node("n1"), make_node("n2", ready=False)])
        registry.update(snap, pools, now)
        state = registry.pool_state("general", now)
        assert (state.registered, state.ready, state.target_size) == (2, 1, 2)
        assert state.state == PoolState.STABLE

    def test_nodes_of_unknown_pools_ignored(self, registry, make_pool, make_node, now):
        pools = {"general": make_pool(target_size=1)}
        snap = ClusterSnapshot([make_node("n1"), make_node("x1", pool_id="ghost")])
        registry.update(snap, pools, now)
        assert registry.pool_state("general", now).registered == 1

    def test_unhealthy_when_too_many_unready(self, registry, recorder, make_pool, make_node, now):
        pools = {"general": make_pool(target_size=5)}
        nodes = [make_node(f"n{i}", ready=(i == 0)) for i in range(5)]
        registry.update(ClusterSnapshot(nodes), pools, now)
        assert not registry.is_healthy("general")
        assert registry.pool_state("general", now).state == PoolState.UNHEALTHY
        assert any(e.kind == events.POOL_UNHEALTHY for e in recorder.peek())

    def test_few_unready_nodes_tolerated(self, registry, make_pool, make_node, now):
        pools = {"general": make_pool(target_size=4)}
        nodes = [make_node(f"n{i}", ready=(i == 0)) for i in range(4)]
        registry.update(ClusterSnapshot(nodes), pools, now)
        assert registry.is_healthy("general")

    def test_low_utilization_history(self, registry, make_pool, make_node, make_pod, now):
        pools = {"general": make_pool(target_size=2)}
        idle = ClusterSnapshot([make_node("n1"), make_node("n2")],
                               [make_pod("busy", cpu="3", node="n2")])
        registry.update(idle, pools, now)
        registry.update(idle, pools, now + 60)
        assert registry.low_utilization_since("n1") == now
        assert registry.low_utilization_since("n2") is None

        busy = ClusterSnapshot([make_node("n1"), make_node("n2")],
                               [make_pod("busy", cpu="3", node="n1")])
        registry.update(busy, pools, now + 120)
        assert registry.low_utilization_since("n1") is None
        assert registry.low_utilization_since("n2") == now + 120

    def test_provider_read_failure_keeps_last_target(self, registry, make_pool, now):
        pool = make_pool(target_size=3)
        registry.update(ClusterSnapshot(), {"general": pool}, now)

        def broken():
            raise NodePoolError("api down")
        pool.target_size = broken
        registry.update(ClusterSnapshot(), {"general": pool}, now + 10)
        assert registry.target_size("general") == 3


class TestScaleUpBookkeeping:
    """Tests for scale-up attempts and results"""

    def test_attempt_raises_target_optimistically(self, registry, make_pool, now):
        registry.update(ClusterSnapshot(), {"general": make_pool(target_size=1)}, now)
        registry.record_scale_up_attempt("general", 2, now)
        assert registry.target_size("general") == 3
        assert registry.pool_state("general", now).state == PoolState.SCALING_UP
        assert registry.upcoming_nodes() == {"general": 3}

    def test_success_keeps_target(self, registry, now):
        attempt = registry.record_scale_up_attempt("general", 2, now)
        assert registry.record_scale_up_result(attempt, None, now)
        assert registry.target_size("general") == 2

    def test_no_double_count(self, registry, recorder, now):
        """Applying the same failed result twice equals applying it once"""
        registry.record_scale_up_attempt("general", 1, now)
        attempt = registry.record_scale_up_attempt("general", 2, now)
        assert registry.record_scale_up_result(attempt, "quota", now)
        target_once = registry.target_size("general")
        backoff_once = len(_backoff_durations(recorder))

        assert not registry.record_scale_up_result(attempt, "quota", now)
        assert registry.target_size("general") == target_once == 1
        assert len(_backoff_durations(recorder)) == backoff_once == 1

    def test_unknown_attempt_ignored(self, registry, now):
        assert not registry.record_scale_up_result("nope-1", None, now)

    def test_completed_request_clears_scaling_up(self, registry, make_pool, make_node, now):
        pool = make_pool(target_size=0)
        registry.update(ClusterSnapshot(), {"general": pool}, now)
        attempt = registry.record_scale_up_attempt("general", 1, now)
        pool.set_target_size(1)
        registry.record_scale_up_result(attempt, None, now)

        registry.update(ClusterSnapshot([make_node("n1")]), {"general": pool}, now + 60)
        assert registry.pool_state("general", now + 60).state == PoolState.STABLE
        assert registry.upcoming_nodes() == {}


class TestBackoff:
    """Tests for backoff growth, reset and permanent failure"""

    def test_backoff_growth(self, registry, recorder, now):
        """Consecutive failures back off for strictly longer periods"""
        for _ in range(3):
            _fail_scale_up(registry, "general", now)
        durations = _backoff_durations(recorder)
        assert durations == [300, 600, 1200]
        assert registry.is_in_backoff("general", now + 1)

    def test_backoff_capped(self, options, recorder, now):
        options.backoff_max_seconds = 500
        registry = ClusterStateRegistry(options, recorder)
        for _ in range(3):
            _fail_scale_up(registry, "general", now)
        assert _backoff_durations(recorder) == [300, 500, 500]

    def test_backoff_expires(self, registry, now):
        _fail_scale_up(registry, "general", now)
        assert registry.is_in_backoff("general", now + 299)
        assert not registry.is_in_backoff("general", now + 300)

    def test_streak_resets_after_stable_period(self, registry, recorder, now):
        _fail_scale_up(registry, "general", now)
        _fail_scale_up(registry, "general", now)
        later = now + 600 + 10800
        _fail_scale_up(registry, "general", later)
        assert _backoff_durations(recorder) == [300, 600, 300]

    def test_permanent_error(self, registry, recorder, now):
        _fail_scale_up(registry, "general", now, NodePoolError("bad", kind=NodePoolError.PERMANENT))
        assert registry.is_permanently_failed("general")
        assert registry.is_in_backoff("general", now + 10 ** 6)
        assert any(e.kind == events.POOL_PERMANENTLY_FAILED for e in recorder.peek())


class TestUnregisteredNodes:
    """Tests for nodes that never register"""

    def test_expired_request_counts_shortfall(self, registry, recorder, make_pool, now):
        pool = make_pool(target_size=0)
        registry.update(ClusterSnapshot(), {"general": pool}, now)
        attempt = registry.record_scale_up_attempt("general", 2, now)
        pool.set_target_size(2)
        registry.record_scale_up_result(attempt, None, now)

        registry.update(ClusterSnapshot(), {"general": pool}, now + 100)
        assert registry.unregistered_nodes("general", now=now + 100) == []

        later = now + 1000
        registry.update(ClusterSnapshot(), {"general": pool}, later)
        unregistered = registry.unregistered_nodes("general", now=later)
        assert len(unregistered) == 2
        assert all(u.instance_id is None for u in unregistered)
        assert registry.is_in_backoff("general", later)
        assert sum(e.kind == events.NODE_UNREGISTERED for e in recorder.peek()) == 2

    def test_listed_instance_without_node(self, registry, make_pool, make_node, now):
        pool = make_pool(target_size=2, instances=["n1", "n2"])
        snap = ClusterSnapshot([make_node("n1")])
        registry.update(snap, {"general": pool}, now)
        assert registry.unregistered_nodes("general", now=now) == []

        registry.update(snap, {"general": pool}, now + 901)
        unregistered = registry.unregistered_nodes("general", now=now + 901)
        assert [u.instance_id for u in unregistered] == ["n2"]
        assert registry.is_in_backoff("general", now + 901)

    def test_backoff_not_repeated_for_same_instance(self, registry, recorder, make_pool, make_node, now):
        pool = make_pool(target_size=2, instances=["n1", "n2"])
        snap = ClusterSnapshot([make_node("n1")])
        for offset in (0, 901, 1000, 1100):
            registry.update(snap, {"general": pool}, now + offset)
        assert len(_backoff_durations(recorder)) == 1

    def test_forced_removal_forgets_entries(self, registry, make_pool, make_node, now):
        pool = make_pool(target_size=2, instances=["n1", "n2"])
        snap = ClusterSnapshot([make_node("n1")])
        registry.update(snap, {"general": pool}, now)
        registry.update(snap, {"general": pool}, now + 901)
        registry.record_forced_removal("general", ["n2"], 0, now + 901)
        assert registry.unregistered_nodes("general", now=now + 901) == []
        assert registry.target_size("general") == 1


class TestScaleDownBookkeeping:
    """Tests for scale-down attempts and results"""

    def test_success_decrements_target_once(self, registry, make_pool, make_node, now):
        registry.update(ClusterSnapshot([make_node("n1"), make_node("n2")]),
                        {"general": make_pool(target_size=2)}, now)
        assert registry.record_scale_down_attempt("n1", "general", now)
        assert registry.is_being_deleted("n1")
        assert registry.record_scale_down_result("n1", None, now)
        assert not registry.record_scale_down_result("n1", None, now)
        assert registry.target_size("general") == 1

    def test_failure_backs_off_pool(self, registry, now):
        registry.record_scale_down_attempt("n1", "general", now)
        registry.record_scale_down_result("n1", NodePoolError("api"), now)
        assert not registry.is_being_deleted("n1")
        assert registry.is_in_backoff("general", now)

    def test_abandon_does_not_back_off(self, registry, recorder, now):
        registry.record_scale_down_attempt("n1", "general", now)
        assert registry.abandon_scale_down("n1", "pdb", now)
        assert not registry.is_being_deleted("n1")
        assert not registry.is_in_backoff("general", now)
        assert any(e.kind == events.SCALE_DOWN_SKIPPED for e in recorder.peek())

    def test_deletion_cleared_when_node_gone(self, registry, make_pool, make_node, now):
        pools = {"general": make_pool(target_size=2)}
        registry.update(ClusterSnapshot([make_node("n1"), make_node("n2")]), pools, now)
        registry.record_scale_down_attempt("n1", "general", now)
        registry.record_scale_down_result("n1", None, now)
        registry.update(ClusterSnapshot([make_node("n2")]), pools, now + 30)
        assert registry.deletions_in_flight() == []


class TestProviderErrors:
    """Tests for read-only provider failures reported by the planners"""

    def test_backs_off_once_per_window(self, registry, recorder, now):
        registry.record_provider_error("general", NodePoolError("describe template: 503"), now)
        registry.record_provider_error("general", NodePoolError("describe template: 503"), now + 1)
        assert registry.is_in_backoff("general", now + 1)
        assert len(_backoff_durations(recorder)) == 1
        kinds = [e.kind for e in recorder.peek()]
        assert kinds.count(events.PROVIDER_ERROR) == 2

    def test_permanent_error_fails_pool(self, registry, now):
        error = NodePoolError("instance template deleted", kind=NodePoolError.PERMANENT)
        registry.record_provider_error("general", error, now)
        assert registry.is_permanently_failed("general")


class TestQueries:
    """Tests for read-only queries"""

    def test_pool_state_of_unknown_pool(self, registry, now):
        state = registry.pool_state("ghost", now)
        assert state.target_size == 0
        assert state.state == PoolState.STABLE
        assert registry.target_size("ghost") == 0
        assert registry.pool_states(now) == {}

    def test_resolved_attempts_are_forgotten(self, registry, make_pool, make_node, now):
        pool = make_pool(target_size=0)
        registry.update(ClusterSnapshot(), {"general": pool}, now)
        ok = registry.record_scale_up_attempt("general", 1, now)
        failed = registry.record_scale_up_attempt("general", 1, now)
        registry.record_scale_up_result(ok, None, now)
        registry.record_scale_up_result(failed, "quota", now)
        pool.set_target_size(1)

        registry.update(ClusterSnapshot([make_node("n1")]), {"general": pool}, now + 60)
        assert registry.scale_ups_in_flight() == []
        assert not registry.record_scale_up_result(ok, None, now + 60)
        assert not registry.record_scale_up_result(failed, "quota", now + 60)

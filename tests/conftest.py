"""
Test fixtures and configuration for pytest
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from cluster.model import Node, Pod, Taint, Toleration
from cluster.node_pool import NodeTemplate, StaticNodePool
from cluster.snapshot import ClusterSnapshot
from config import AutoscalingOptions
from normalize.resources import parse_resource_list
from registry.cluster_state import ClusterStateRegistry
from registry.events import EventRecorder

GIB = 2 ** 30
NOW = 1_700_000_000.0


@pytest.fixture
def now():
    """Fixed tick time"""
    return NOW


@pytest.fixture
def make_node():
    """Build a Node from human-readable quantities"""
    def _make(name, cpu="4", memory="8Gi", pool_id="general", pods=None, labels=None,
              taints=(), ready=True, unschedulable=False, annotations=None):
        allocatable = {"cpu": cpu, "memory": memory}
        if pods is not None:
            allocatable["pods"] = pods
        return Node(
            name=name,
            allocatable=parse_resource_list(allocatable),
            labels=dict(labels or {}),
            taints=tuple(taints),
            pool_id=pool_id,
            ready=ready,
            unschedulable=unschedulable,
            annotations=dict(annotations or {}),
        )
    return _make


@pytest.fixture
def make_pod():
    """Build a Pod owned by a ReplicaSet unless told otherwise"""
    def _make(name, cpu="100m", memory="128Mi", node=None, namespace="default",
              labels=None, owner_kind="ReplicaSet", annotations=None, **kwargs):
        return Pod(
            name=name,
            namespace=namespace,
            requests=parse_resource_list({"cpu": cpu, "memory": memory}),
            labels=dict(labels or {}),
            node_name=node,
            owner_kind=owner_kind,
            owner_name=f"{name}-owner" if owner_kind else None,
            annotations=dict(annotations or {}),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_pool():
    """Build an in-memory StaticNodePool"""
    def _make(pool_id="general", cpu="4", memory="8Gi", min_size=0, max_size=10,
              target_size=0, labels=None, taints=(), instances=None):
        template = NodeTemplate(
            allocatable=parse_resource_list({"cpu": cpu, "memory": memory}),
            labels=dict(labels or {}),
            taints=tuple(taints),
        )
        return StaticNodePool(pool_id, template, min_size=min_size, max_size=max_size,
                              target_size=target_size, instances=instances)
    return _make


@pytest.fixture
def options():
    """Deterministic options, independent of the environment"""
    return AutoscalingOptions(
        cluster_name="test",
        worker_pool_size=2,
        tick_deadline_seconds=30,
        provider_call_timeout_seconds=5,
        pool_label_key="autoscaler.io/node-pool",
        expander="least-waste",
        priorities={},
        balance_similar_pools=True,
        max_node_provision_seconds=900,
        unregistered_node_threshold=0,
        ok_total_unready_count=3,
        max_total_unready_percentage=45,
        backoff_initial_seconds=300,
        backoff_max_seconds=1800,
        backoff_reset_seconds=10800,
        max_total_nodes=0,
        max_total_cores=0,
        max_total_memory_gib=0,
        scale_down_enabled=True,
        scale_down_utilization_threshold=0.5,
        scale_down_unneeded_seconds=600,
        scale_down_delay_after_add_seconds=600,
        max_scale_down_batch=10,
        max_scale_down_per_pool=1,
        drain_grace_period_seconds=600,
    )


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def registry(options, recorder):
    return ClusterStateRegistry(options, recorder)


@pytest.fixture
def empty_snapshot():
    return ClusterSnapshot()


@pytest.fixture
def gpu_taint():
    return Taint("nvidia.com/gpu", "present", "NoSchedule")


@pytest.fixture
def gpu_toleration():
    return Toleration("nvidia.com/gpu", "Equal", "present", "NoSchedule")

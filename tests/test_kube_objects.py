"""
Tests for Kubernetes object parsing and snapshot sources
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from cluster.kube_objects import build_snapshot, parse_node, parse_pdb, parse_pod, parse_timestamp, pod_requests
from cluster.model import Taint
from sources.kube_api import KubeAPIError, list_objects, load_snapshot_file

POOL_KEY = "autoscaler.io/node-pool"


def node_obj(name, cpu="4", memory="8Gi", ready="True", pool="general", **spec):
    return {
        "kind": "Node",
        "metadata": {"name": name, "labels": {POOL_KEY: pool},
                     "creationTimestamp": "2024-01-01T00:00:00Z"},
        "spec": spec,
        "status": {
            "allocatable": {"cpu": cpu, "memory": memory, "pods": "110"},
            "conditions": [{"type": "MemoryPressure", "status": "False"},
                           {"type": "Ready", "status": ready}],
        },
    }


def pod_obj(name, node=None, cpu="250m", memory="256Mi", phase="Running", owner="ReplicaSet"):
    meta = {"name": name, "namespace": "apps", "labels": {"app": name}}
    if owner:
        meta["ownerReferences"] = [{"kind": owner, "name": f"{name}-rs", "controller": True}]
    spec = {"containers": [{"name": "main", "resources": {"requests": {"cpu": cpu, "memory": memory}}}]}
    if node:
        spec["nodeName"] = node
    return {"kind": "Pod", "metadata": meta, "spec": spec, "status": {"phase": phase}}


class TestParseNode:
    """Tests for v1.Node parsing"""

    def test_basic_fields(self):
        node = parse_node(node_obj("n1"), pool_label_key=POOL_KEY)
        assert node.allocatable == {"cpu": 4000, "memory": 8 * 2 ** 30, "pods": 110}
        assert node.pool_id == "general"
        assert node.ready
        assert node.created_at == parse_timestamp("2024-01-01T00:00:00+00:00")

    def test_not_ready(self):
        assert not parse_node(node_obj("n1", ready="Unknown")).ready

    def test_no_pool_label_key(self):
        assert parse_node(node_obj("n1")).pool_id is None

    def test_taints_with_unknown_effect_skipped(self):
        obj = node_obj("n1", taints=[{"key": "a", "value": "b", "effect": "NoSchedule"},
                                     {"key": "c", "effect": "Whatever"}],
                       unschedulable=True)
        node = parse_node(obj)
        assert node.taints == (Taint("a", "b", "NoSchedule"),)
        assert node.unschedulable

    def test_capacity_fallback(self):
        obj = node_obj("n1")
        obj["status"]["capacity"] = obj["status"].pop("allocatable")
        assert parse_node(obj).allocatable["cpu"] == 4000


class TestParsePod:
    """Tests for v1.Pod parsing"""

    def test_owner_and_requests(self):
        pod = parse_pod(pod_obj("web", node="n1"))
        assert pod.uid == "apps/web"
        assert pod.owner_kind == "ReplicaSet"
        assert pod.node_name == "n1"
        assert pod.requests == {"cpu": 250, "memory": 256 * 2 ** 20}

    def test_init_container_max_and_overhead(self):
        spec = {
            "containers": [{"resources": {"requests": {"cpu": "100m"}}},
                           {"resources": {"requests": {"cpu": "200m", "memory": "1Gi"}}}],
            "initContainers": [{"resources": {"requests": {"cpu": "500m", "memory": "512Mi"}}}],
            "overhead": {"cpu": "50m"},
        }
        assert pod_requests(spec) == {"cpu": 550, "memory": 2 ** 30}

    def test_affinity_and_tolerations(self):
        obj = pod_obj("web")
        obj["spec"]["nodeSelector"] = {"disk": "ssd"}
        obj["spec"]["tolerations"] = [{"key": "gpu", "operator": "Exists"}]
        obj["spec"]["affinity"] = {
            "nodeAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": {"nodeSelectorTerms": [
                    {"matchExpressions": [{"key": "zone", "operator": "In", "values": ["a", "b"]}]},
                ]},
                "preferredDuringSchedulingIgnoredDuringExecution": [
                    {"weight": 20, "preference": {"matchExpressions": [{"key": "spot", "operator": "DoesNotExist"}]}},
                ],
            },
            "podAntiAffinity": {"preferredDuringSchedulingIgnoredDuringExecution": [
                {"weight": 10, "podAffinityTerm": {"labelSelector": {"matchLabels": {"app": "web"}},
                                                   "topologyKey": "zone"}},
            ]},
        }
        obj["spec"]["topologySpreadConstraints"] = [
            {"topologyKey": "zone", "maxSkew": 2, "labelSelector": {"matchLabels": {"app": "web"}}},
        ]
        pod = parse_pod(obj)
        assert pod.node_selector == {"disk": "ssd"}
        assert pod.required_node_terms[0].match_expressions[0].values == ("a", "b")
        assert pod.preferred_node_terms[0].weight == 20
        assert pod.pod_affinity[0].anti and pod.pod_affinity[0].weight == 10
        assert pod.topology_spread[0].max_skew == 2
        assert pod.tolerations[0].operator == "Exists"

    def test_bare_pod_has_no_owner(self):
        pod = parse_pod(pod_obj("bare", owner=None))
        assert pod.owner_kind is None and not pod.has_controller


class TestBuildSnapshot:
    """Tests for snapshot construction from raw objects"""

    def test_finished_pods_and_bad_objects_skipped(self):
        pods = [pod_obj("live", node="n1"), pod_obj("done", node="n1", phase="Succeeded"),
                pod_obj("broken", cpu="lots")]
        snap = build_snapshot([node_obj("n1"), {"metadata": {}}], pods, pool_label_key=POOL_KEY)
        assert snap.node_names() == ["n1"]
        assert [p.uid for p in snap.pods()] == ["apps/live"]
        assert snap.requested("n1")["cpu"] == 250

    def test_pdb(self):
        obj = {"metadata": {"name": "web", "namespace": "apps"},
               "spec": {"selector": {"matchLabels": {"app": "web"}}},
               "status": {"disruptionsAllowed": 1}}
        pdb = parse_pdb(obj)
        assert pdb.selector.match_labels == {"app": "web"}
        assert pdb.disruptions_allowed == 1
        assert build_snapshot([], [], [obj]).disruptions_allowed("apps/web") == 1


class TestListObjects:
    """Tests for Kubernetes API list calls"""

    @patch('sources.kube_api.requests.get')
    def test_follows_continue_tokens(self, mock_get):
        first = MagicMock(status_code=200)
        first.json.return_value = {"metadata": {"continue": "abc"}, "items": [{"a": 1}]}
        second = MagicMock(status_code=200)
        second.json.return_value = {"metadata": {}, "items": [{"b": 2}]}
        mock_get.side_effect = [first, second]

        items = list_objects("/api/v1/nodes", base_url="https://kube:6443/", token="secret")

        assert items == [{"a": 1}, {"b": 2}]
        assert mock_get.call_args_list[0].args[0] == "https://kube:6443/api/v1/nodes"
        assert mock_get.call_args_list[0].kwargs["headers"]["Authorization"] == "Bearer secret"
        assert mock_get.call_args_list[1].kwargs["params"] == {"continue": "abc"}

    @patch('sources.kube_api.requests.get')
    def test_error_status(self, mock_get):
        mock_get.return_value.status_code = 403
        mock_get.return_value.text = "Forbidden"
        with pytest.raises(KubeAPIError):
            list_objects("/api/v1/pods", base_url="https://kube")

    @patch('sources.kube_api.requests.get')
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(KubeAPIError):
            list_objects("/api/v1/pods", base_url="https://kube")


class TestLoadSnapshotFile:
    """Tests for JSON snapshot files"""

    def test_sectioned_document(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({"nodes": [node_obj("n1")], "pods": [pod_obj("p", node="n1")]}))
        snap = load_snapshot_file(str(path), pool_label_key=POOL_KEY, now=123.0)
        assert snap.node_names() == ["n1"]
        assert snap.pod_node("apps/p") == "n1"
        assert snap.taken_at == 123.0

    def test_kubectl_list(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text(json.dumps({"kind": "List", "items": [
            node_obj("n1"), pod_obj("p"),
            {"kind": "PodDisruptionBudget", "metadata": {"name": "b"}, "status": {"disruptionsAllowed": 2}},
            {"kind": "Service", "metadata": {"name": "ignored"}},
        ]}))
        snap = load_snapshot_file(str(path))
        assert snap.node_names() == ["n1"]
        assert [p.uid for p in snap.pending_pods()] == ["apps/p"]
        assert snap.disruptions_allowed("default/b") == 2

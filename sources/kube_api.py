"""
Cluster snapshot sources: the Kubernetes API (list calls over `requests`)
or a JSON file in `kubectl get -o json` shape.
"""
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests

from cluster.kube_objects import build_snapshot
from cluster.snapshot import ClusterSnapshot
from config import KUBE_API_URL, KUBE_CA_PATH, KUBE_TIMEOUT_SECONDS, KUBE_TOKEN_PATH

logger = logging.getLogger(__name__)

NODES_PATH = "/api/v1/nodes"
PODS_PATH = "/api/v1/pods"
PDBS_PATH = "/apis/policy/v1/poddisruptionbudgets"


class KubeAPIError(Exception):
    pass


def _read_token(path: str) -> Optional[str]:
    if not path or not os.path.exists(path):
        return None
    with open(path, 'r') as f:
        return f.read().strip()


def list_objects(path: str, base_url: Optional[str] = None, token: Optional[str] = None,
                 verify: Any = True, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
    """GET a list endpoint and return its `items`, following `continue` tokens"""
    base_url = base_url or KUBE_API_URL
    timeout = timeout or KUBE_TIMEOUT_SECONDS
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    url = f"{base_url.rstrip('/')}{path}"
    items: List[Dict[str, Any]] = []
    params: Dict[str, str] = {}
    while True:
        try:
            r = requests.get(url, headers=headers, params=params, verify=verify, timeout=timeout)
        except requests.RequestException as e:
            raise KubeAPIError(f"request to {path} failed: {e}")
        if r.status_code != 200:
            raise KubeAPIError(f"{path} returned status {r.status_code}: {r.text}")
        data = r.json()
        items.extend(data.get("items") or [])
        cont = (data.get("metadata") or {}).get("continue")
        if not cont:
            return items
        params = {"continue": cont}


def fetch_snapshot(pool_label_key: Optional[str] = None, base_url: Optional[str] = None,
                   now: Optional[float] = None) -> ClusterSnapshot:
    """List nodes, pods and PDBs from the API server"""
    token = _read_token(KUBE_TOKEN_PATH)
    verify: Any = KUBE_CA_PATH if KUBE_CA_PATH and os.path.exists(KUBE_CA_PATH) else True
    kwargs = dict(base_url=base_url, token=token, verify=verify)
    nodes = list_objects(NODES_PATH, **kwargs)
    pods = list_objects(PODS_PATH, **kwargs)
    pdbs = list_objects(PDBS_PATH, **kwargs)
    logger.debug(f"Fetched {len(nodes)} nodes, {len(pods)} pods, {len(pdbs)} PDBs")
    return build_snapshot(nodes, pods, pdbs, pool_label_key=pool_label_key,
                          taken_at=time.time() if now is None else now)


def load_snapshot_file(path: str, pool_label_key: Optional[str] = None,
                       now: Optional[float] = None) -> ClusterSnapshot:
    """Build a snapshot from a JSON document.

    Either {"nodes": [...], "pods": [...], "pdbs": [...]} or a single
    `kubectl get nodes,pods,pdb -A -o json` List whose items carry `kind`.
    """
    with open(path, 'r') as f:
        doc = json.load(f)

    if isinstance(doc, dict) and 'items' in doc:
        nodes, pods, pdbs = [], [], []
        for item in doc.get('items') or []:
            kind = item.get('kind')
            if kind == 'Node':
                nodes.append(item)
            elif kind == 'Pod':
                pods.append(item)
            elif kind == 'PodDisruptionBudget':
                pdbs.append(item)
    else:
        nodes = doc.get('nodes') or []
        pods = doc.get('pods') or []
        pdbs = doc.get('pdbs') or []

    return build_snapshot(nodes, pods, pdbs, pool_label_key=pool_label_key,
                          taken_at=time.time() if now is None else now)

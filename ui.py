#!/usr/bin/env python3
"""
Status server for the cluster scaling agent

Serves the status documents the control loop writes after every tick:
- /api/clusters: clusters with a status file
- /api/status?cluster=<name>: full status document for one cluster
- /health: healthy while the last tick is recent, 503 once it goes stale
"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, request

from config import (
    setup_logging,
    CLUSTER_NAME,
    OUTPUT_DIR,
    SCAN_INTERVAL_SECONDS,
    get_status_output_path,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)

STATUS_SUFFIX = '_status.json'
# A tick older than this many scan intervals means the loop is stuck
STALE_INTERVALS = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def load_json(filepath):
    """Load JSON file safely"""
    try:
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        with open(filepath, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {filepath}: {e}")
        return None


def get_available_clusters():
    """Clusters that have a status file in OUTPUT_DIR"""
    if not os.path.isdir(OUTPUT_DIR):
        return []
    return sorted(
        name[:-len(STATUS_SUFFIX)]
        for name in os.listdir(OUTPUT_DIR)
        if name.endswith(STATUS_SUFFIX)
    )


def is_stale(status, now=None, interval=None) -> bool:
    now = time.time() if now is None else now
    interval = SCAN_INTERVAL_SECONDS if interval is None else interval
    generated = (status or {}).get('generated_at_epoch')
    if generated is None:
        return True
    return now - generated > STALE_INTERVALS * interval


@app.route('/api/clusters')
def get_clusters():
    """API endpoint to list clusters with status"""
    return jsonify({
        'clusters': get_available_clusters(),
        'active_cluster': CLUSTER_NAME,
    })


@app.route('/api/status')
def get_status():
    """API endpoint for the latest status of a cluster"""
    cluster = request.args.get('cluster', CLUSTER_NAME)
    if cluster not in get_available_clusters():
        return jsonify({"error": f"No status for cluster '{cluster}'"}), 404
    data = load_json(get_status_output_path(cluster))
    if data:
        return jsonify(data)
    return jsonify({"error": f"No status for cluster '{cluster}'"}), 404


@app.route('/health')
def health():
    """Health check endpoint for liveness probes"""
    cluster = request.args.get('cluster', CLUSTER_NAME)
    status = None
    if cluster in get_available_clusters():
        status = load_json(get_status_output_path(cluster))
    if status is None:
        return jsonify({
            "status": "unknown",
            "reason": "no status written yet",
            "timestamp": _now_iso(),
        }), 503
    if is_stale(status):
        return jsonify({
            "status": "stale",
            "last_tick": status.get('generated_at'),
            "timestamp": _now_iso(),
        }), 503
    return jsonify({
        "status": "healthy",
        "last_tick": status.get('generated_at'),
        "timestamp": _now_iso(),
    })


if __name__ == '__main__':
    setup_logging()
    logger.info("Cluster scaling agent status server")
    logger.info("Status: http://127.0.0.1:8080/api/status")
    logger.info("Health: http://127.0.0.1:8080/health")
    app.run(debug=False, host='127.0.0.1', port=8080)

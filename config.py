import os
import logging
import re
import sys
from dataclasses import dataclass, field
from typing import List, Dict
from urllib.parse import urlparse

import yaml


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


# =============================================================================
# Cluster & Loop Configuration
# =============================================================================
CLUSTER_NAME: str = os.getenv("CLUSTER_NAME", "local-kind")
SCAN_INTERVAL_SECONDS: int = int(os.getenv("SCAN_INTERVAL_SECONDS", "10"))
TICK_DEADLINE_SECONDS: int = int(os.getenv("TICK_DEADLINE_SECONDS", "30"))
PROVIDER_CALL_TIMEOUT_SECONDS: int = int(os.getenv("PROVIDER_CALL_TIMEOUT_SECONDS", "15"))
WORKER_POOL_SIZE: int = int(os.getenv("WORKER_POOL_SIZE", "4"))

# Label carrying the owning pool id on nodes and templates
POOL_LABEL_KEY: str = os.getenv("POOL_LABEL_KEY", "autoscaler.io/node-pool")
NODE_POOLS_CONFIG: str = os.getenv("NODE_POOLS_CONFIG", "node-pools.yaml")

# "file" reads SNAPSHOT_FILE, "api" lists objects from the Kubernetes API
SNAPSHOT_SOURCE: str = os.getenv("SNAPSHOT_SOURCE", "file")
SNAPSHOT_FILE: str = os.getenv("SNAPSHOT_FILE", "snapshot.json")
KUBE_API_URL: str = os.getenv("KUBE_API_URL", "https://kubernetes.default.svc")
KUBE_TOKEN_PATH: str = os.getenv("KUBE_TOKEN_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/token")
KUBE_CA_PATH: str = os.getenv("KUBE_CA_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
KUBE_TIMEOUT_SECONDS: int = int(os.getenv("KUBE_TIMEOUT_SECONDS", "30"))

OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "output")
# "loop" runs until interrupted, "once" runs a single tick and exits
RUN_MODE: str = os.getenv("RUN_MODE", "loop")

# =============================================================================
# Scale-Up Configuration
# =============================================================================
EXPANDER: str = os.getenv("EXPANDER", "least-waste")
PRIORITY_EXPANDER_CONFIG: str = os.getenv("PRIORITY_EXPANDER_CONFIG", "priority-expander.yaml")
BALANCE_SIMILAR_POOLS: bool = _env_bool("BALANCE_SIMILAR_POOLS", True)
MAX_NODE_PROVISION_SECONDS: int = int(os.getenv("MAX_NODE_PROVISION_SECONDS", "900"))
# A pool backs off once its unregistered count exceeds this
UNREGISTERED_NODE_THRESHOLD: int = int(os.getenv("UNREGISTERED_NODE_THRESHOLD", "0"))
OK_TOTAL_UNREADY_COUNT: int = int(os.getenv("OK_TOTAL_UNREADY_COUNT", "3"))
MAX_TOTAL_UNREADY_PERCENTAGE: float = float(os.getenv("MAX_TOTAL_UNREADY_PERCENTAGE", "45"))
BACKOFF_INITIAL_SECONDS: int = int(os.getenv("BACKOFF_INITIAL_SECONDS", "300"))
BACKOFF_MAX_SECONDS: int = int(os.getenv("BACKOFF_MAX_SECONDS", "1800"))
BACKOFF_RESET_SECONDS: int = int(os.getenv("BACKOFF_RESET_SECONDS", "10800"))
# 0 disables the corresponding cluster-wide limit
MAX_TOTAL_NODES: int = int(os.getenv("MAX_TOTAL_NODES", "0"))
MAX_TOTAL_CORES: int = int(os.getenv("MAX_TOTAL_CORES", "0"))
MAX_TOTAL_MEMORY_GIB: int = int(os.getenv("MAX_TOTAL_MEMORY_GIB", "0"))

# =============================================================================
# Scale-Down Configuration
# =============================================================================
SCALE_DOWN_ENABLED: bool = _env_bool("SCALE_DOWN_ENABLED", True)
SCALE_DOWN_UTILIZATION_THRESHOLD: float = float(os.getenv("SCALE_DOWN_UTILIZATION_THRESHOLD", "0.5"))
SCALE_DOWN_UNNEEDED_SECONDS: int = int(os.getenv("SCALE_DOWN_UNNEEDED_SECONDS", "600"))
SCALE_DOWN_DELAY_AFTER_ADD_SECONDS: int = int(os.getenv("SCALE_DOWN_DELAY_AFTER_ADD_SECONDS", "600"))
MAX_SCALE_DOWN_BATCH: int = int(os.getenv("MAX_SCALE_DOWN_BATCH", "10"))
MAX_SCALE_DOWN_PER_POOL: int = int(os.getenv("MAX_SCALE_DOWN_PER_POOL", "1"))
DRAIN_GRACE_PERIOD_SECONDS: int = int(os.getenv("DRAIN_GRACE_PERIOD_SECONDS", "600"))

EXPANDER_CHOICES = ("least-waste", "most-pods", "priority", "random")


def get_status_output_path(cluster_name: str) -> str:
    """Get cluster-specific status output path: {cluster_name}_status.json"""
    return os.path.join(OUTPUT_DIR, f"{cluster_name}_status.json")


def load_priority_config(path: str) -> Dict[int, List[str]]:
    """Load priority-expander rules: {priority: [pool id regex, ...]}

    Accepts YAML (or JSON, which YAML parses) in the form:

        priorities:
          10: ["gpu-.*"]
          50: ["spot-.*", "general"]

    A missing file yields no rules.

    Raises:
        ValueError: If a pattern is not a valid regular expression
    """
    if not path or not os.path.exists(path):
        return {}
    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or {}
    rules = raw.get('priorities', raw)
    priorities: Dict[int, List[str]] = {}
    for prio, patterns in (rules or {}).items():
        if isinstance(patterns, str):
            patterns = [patterns]
        priorities[int(prio)] = [str(p) for p in patterns]
    for patterns in priorities.values():
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid pool pattern {pattern!r}: {e}")
    return priorities


@dataclass
class AutoscalingOptions:
    """Knobs for one engine instance; defaults come from the environment"""
    cluster_name: str = CLUSTER_NAME
    scan_interval_seconds: int = SCAN_INTERVAL_SECONDS
    tick_deadline_seconds: float = TICK_DEADLINE_SECONDS
    provider_call_timeout_seconds: float = PROVIDER_CALL_TIMEOUT_SECONDS
    worker_pool_size: int = WORKER_POOL_SIZE
    pool_label_key: str = POOL_LABEL_KEY

    expander: str = EXPANDER
    priorities: Dict[int, List[str]] = field(default_factory=dict)
    balance_similar_pools: bool = BALANCE_SIMILAR_POOLS
    max_node_provision_seconds: float = MAX_NODE_PROVISION_SECONDS
    unregistered_node_threshold: int = UNREGISTERED_NODE_THRESHOLD
    ok_total_unready_count: int = OK_TOTAL_UNREADY_COUNT
    max_total_unready_percentage: float = MAX_TOTAL_UNREADY_PERCENTAGE
    backoff_initial_seconds: float = BACKOFF_INITIAL_SECONDS
    backoff_max_seconds: float = BACKOFF_MAX_SECONDS
    backoff_reset_seconds: float = BACKOFF_RESET_SECONDS
    max_total_nodes: int = MAX_TOTAL_NODES
    max_total_cores: int = MAX_TOTAL_CORES
    max_total_memory_gib: int = MAX_TOTAL_MEMORY_GIB

    scale_down_enabled: bool = SCALE_DOWN_ENABLED
    scale_down_utilization_threshold: float = SCALE_DOWN_UTILIZATION_THRESHOLD
    scale_down_unneeded_seconds: float = SCALE_DOWN_UNNEEDED_SECONDS
    scale_down_delay_after_add_seconds: float = SCALE_DOWN_DELAY_AFTER_ADD_SECONDS
    max_scale_down_batch: int = MAX_SCALE_DOWN_BATCH
    max_scale_down_per_pool: int = MAX_SCALE_DOWN_PER_POOL
    drain_grace_period_seconds: int = DRAIN_GRACE_PERIOD_SECONDS


def options_from_config() -> AutoscalingOptions:
    """Build options from module-level values, loading priority rules from disk"""
    return AutoscalingOptions(priorities=load_priority_config(PRIORITY_EXPANDER_CONFIG))


__all__ = [
    "CLUSTER_NAME",
    "SCAN_INTERVAL_SECONDS",
    "TICK_DEADLINE_SECONDS",
    "PROVIDER_CALL_TIMEOUT_SECONDS",
    "WORKER_POOL_SIZE",
    "POOL_LABEL_KEY",
    "NODE_POOLS_CONFIG",
    "SNAPSHOT_SOURCE",
    "SNAPSHOT_FILE",
    "KUBE_API_URL",
    "KUBE_TOKEN_PATH",
    "KUBE_CA_PATH",
    "KUBE_TIMEOUT_SECONDS",
    "OUTPUT_DIR",
    "RUN_MODE",
    "EXPANDER",
    "EXPANDER_CHOICES",
    "PRIORITY_EXPANDER_CONFIG",
    "BALANCE_SIMILAR_POOLS",
    "MAX_NODE_PROVISION_SECONDS",
    "UNREGISTERED_NODE_THRESHOLD",
    "OK_TOTAL_UNREADY_COUNT",
    "MAX_TOTAL_UNREADY_PERCENTAGE",
    "BACKOFF_INITIAL_SECONDS",
    "BACKOFF_MAX_SECONDS",
    "BACKOFF_RESET_SECONDS",
    "MAX_TOTAL_NODES",
    "MAX_TOTAL_CORES",
    "MAX_TOTAL_MEMORY_GIB",
    "SCALE_DOWN_ENABLED",
    "SCALE_DOWN_UTILIZATION_THRESHOLD",
    "SCALE_DOWN_UNNEEDED_SECONDS",
    "SCALE_DOWN_DELAY_AFTER_ADD_SECONDS",
    "MAX_SCALE_DOWN_BATCH",
    "MAX_SCALE_DOWN_PER_POOL",
    "DRAIN_GRACE_PERIOD_SECONDS",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "validate_config",
    "get_status_output_path",
    "load_priority_config",
    "AutoscalingOptions",
    "options_from_config",
]


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ConfigValidationError(f"{name} must not be negative, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_expander(value: str) -> None:
    if value not in EXPANDER_CHOICES:
        raise ConfigValidationError(
            f"EXPANDER must be one of {', '.join(EXPANDER_CHOICES)}, got '{value}'"
        )


def _validate_fraction(name: str, value: float) -> None:
    if not (0 < value <= 1):
        raise ConfigValidationError(f"{name} must be in (0, 1], got {value}")


def _validate_snapshot_source(value: str) -> None:
    if value not in ('file', 'api'):
        raise ConfigValidationError(
            f"SNAPSHOT_SOURCE must be 'file' or 'api', got '{value}'"
        )


def validate_config() -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    for name, value in (
        ("SCAN_INTERVAL_SECONDS", SCAN_INTERVAL_SECONDS),
        ("TICK_DEADLINE_SECONDS", TICK_DEADLINE_SECONDS),
        ("PROVIDER_CALL_TIMEOUT_SECONDS", PROVIDER_CALL_TIMEOUT_SECONDS),
        ("WORKER_POOL_SIZE", WORKER_POOL_SIZE),
        ("MAX_NODE_PROVISION_SECONDS", MAX_NODE_PROVISION_SECONDS),
        ("BACKOFF_INITIAL_SECONDS", BACKOFF_INITIAL_SECONDS),
        ("BACKOFF_MAX_SECONDS", BACKOFF_MAX_SECONDS),
        ("MAX_SCALE_DOWN_BATCH", MAX_SCALE_DOWN_BATCH),
        ("MAX_SCALE_DOWN_PER_POOL", MAX_SCALE_DOWN_PER_POOL),
        ("KUBE_TIMEOUT_SECONDS", KUBE_TIMEOUT_SECONDS),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    for name, value in (
        ("UNREGISTERED_NODE_THRESHOLD", UNREGISTERED_NODE_THRESHOLD),
        ("SCALE_DOWN_UNNEEDED_SECONDS", SCALE_DOWN_UNNEEDED_SECONDS),
        ("SCALE_DOWN_DELAY_AFTER_ADD_SECONDS", SCALE_DOWN_DELAY_AFTER_ADD_SECONDS),
        ("DRAIN_GRACE_PERIOD_SECONDS", DRAIN_GRACE_PERIOD_SECONDS),
        ("MAX_TOTAL_NODES", MAX_TOTAL_NODES),
        ("MAX_TOTAL_CORES", MAX_TOTAL_CORES),
        ("MAX_TOTAL_MEMORY_GIB", MAX_TOTAL_MEMORY_GIB),
    ):
        try:
            _validate_non_negative(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    if BACKOFF_MAX_SECONDS < BACKOFF_INITIAL_SECONDS:
        errors.append(
            f"BACKOFF_MAX_SECONDS ({BACKOFF_MAX_SECONDS}) must be >= "
            f"BACKOFF_INITIAL_SECONDS ({BACKOFF_INITIAL_SECONDS})"
        )

    try:
        _validate_fraction("SCALE_DOWN_UTILIZATION_THRESHOLD", SCALE_DOWN_UTILIZATION_THRESHOLD)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_expander(EXPANDER)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_snapshot_source(SNAPSHOT_SOURCE)
    except ConfigValidationError as e:
        errors.append(str(e))

    if RUN_MODE not in ('loop', 'once'):
        errors.append(f"RUN_MODE must be 'loop' or 'once', got '{RUN_MODE}'")

    if SNAPSHOT_SOURCE == 'api':
        try:
            _validate_url("KUBE_API_URL", KUBE_API_URL)
        except ConfigValidationError as e:
            errors.append(str(e))

    try:
        rules = load_priority_config(PRIORITY_EXPANDER_CONFIG)
        if EXPANDER == 'priority' and not rules:
            errors.append(
                f"EXPANDER=priority requires rules in {PRIORITY_EXPANDER_CONFIG}"
            )
    except (OSError, yaml.YAMLError, ValueError) as e:
            errors.append(f"PRIORITY_EXPANDER_CONFIG is invalid: {e}")

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )

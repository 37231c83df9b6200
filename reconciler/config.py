"""Settings and declarative node/workload files."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from reconciler.errors import ConfigError
from reconciler.state import (
    AccessMode,
    ExposureType,
    Node,
    NodeStatus,
    PUBLIC_IP_LABEL,
    StorageRequirement,
    WorkloadSpec,
    safe_float,
    safe_int,
)

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([KMGT]i?)?\s*$")
_SIZE_UNITS_GB = {
    None: 1.0,
    "Ki": 1.0 / (1024 ** 2), "Mi": 1.0 / 1024, "Gi": 1.0, "Ti": 1024.0,
    "K": 1e-6, "M": 1e-3, "G": 1.0, "T": 1000.0,
}


@dataclass
class Settings:
    namespace: str = "default"
    grace_period_s: float = 300.0
    attach_timeout_s: float = 120.0
    backoff_base_s: float = 10.0
    backoff_cap_s: float = 300.0
    sweep_interval_s: float = 60.0
    tick_interval_s: float = 1.0
    max_workers: int = 4
    event_buffer: int = 512
    label_prefix: str = "reconciler.io/"
    orchestrator: str = "memory"   # memory | kubernetes
    watch_nodes: bool = False


@dataclass
class ReconcilerConfig:
    settings: Settings = field(default_factory=Settings)
    nodes: List[Node] = field(default_factory=list)
    workloads: List[WorkloadSpec] = field(default_factory=list)
    path: Optional[str] = None


def parse_size_gb(value: Any) -> float:
    """Parse a Kubernetes-style quantity ("10Gi", "512Mi", 20) into GiB."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _SIZE_RE.match(str(value or ""))
    if not match:
        raise ConfigError(f"Invalid storage size: {value!r}")
    number, unit = match.groups()
    return float(number) * _SIZE_UNITS_GB[unit]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_labels(value: Any) -> frozenset:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(v.strip() for v in value.split(",") if v.strip())
    return frozenset(str(v) for v in value)


def _as_count(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Workload '{name}': replicaCount must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ConfigError(f"Workload '{name}': replicaCount must be an integer, got {value!r}") from e


def workload_from_dict(name: str, data: Dict[str, Any]) -> WorkloadSpec:
    """Build a WorkloadSpec from one entry of the `workloads` mapping."""
    data = data or {}
    try:
        exposure = ExposureType(data.get("exposureType", ExposureType.INTERNAL.value))
    except ValueError as e:
        raise ConfigError(f"Workload '{name}': unknown exposureType {data.get('exposureType')!r}") from e

    storage = None
    if data.get("storageSize") is not None:
        try:
            access_mode = AccessMode(data.get("accessMode", AccessMode.SINGLE_WRITER.value))
        except ValueError as e:
            raise ConfigError(f"Workload '{name}': unknown accessMode {data.get('accessMode')!r}") from e
        storage = StorageRequirement(
            size_gb=parse_size_gb(data["storageSize"]),
            access_mode=access_mode,
            volume_id=data.get("volumeId"),
        )

    return WorkloadSpec(
        name=name,
        exposure=exposure,
        required_labels=_as_labels(data.get("requiredLabels")),
        storage=storage,
        replicas=_as_count(name, data.get("replicaCount", 1)),
        anti_affinity=_as_bool(data.get("antiAffinity", False)),
    )


def node_from_dict(data: Dict[str, Any]) -> Node:
    if not data.get("name"):
        raise ConfigError(f"Node entry without a name: {data!r}")
    labels = _as_labels(data.get("labels"))
    try:
        status = NodeStatus(data.get("status", NodeStatus.UNKNOWN.value))
    except ValueError as e:
        raise ConfigError(f"Node '{data['name']}': unknown status {data.get('status')!r}") from e
    return Node(
        name=str(data["name"]),
        labels=labels,
        zone=str(data.get("zone", "default")),
        status=status,
        public=_as_bool(data.get("public", PUBLIC_IP_LABEL in labels)),
    )


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    settings = Settings()
    for f in fields(Settings):
        if f.name not in (data or {}):
            continue
        raw = data[f.name]
        default = getattr(settings, f.name)
        if isinstance(default, bool):
            value: Any = _as_bool(raw)
        elif isinstance(default, int):
            value = safe_int(raw, default)
        elif isinstance(default, float):
            value = safe_float(raw, default)
        else:
            value = str(raw)
        setattr(settings, f.name, value)
    return settings


def apply_env_overrides(settings: Settings, environ: Optional[Dict[str, str]] = None) -> Settings:
    """RECONCILER_<FIELD> environment variables win over the file."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for f in fields(Settings):
        key = f"RECONCILER_{f.name.upper()}"
        if key in environ:
            overrides[f.name] = environ[key]
    if not overrides:
        return settings
    merged = {f.name: getattr(settings, f.name) for f in fields(Settings)}
    merged.update(overrides)
    logger.info(f"Applied environment overrides: {sorted(overrides)}")
    return settings_from_dict(merged)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> ReconcilerConfig:
    """
    Load settings, static nodes and workload specs from a YAML file.

    A missing path yields defaults (plus environment overrides).

    Raises:
        ConfigError: If the file cannot be parsed
    """
    if not path:
        return ReconcilerConfig(settings=apply_env_overrides(Settings(), environ))

    try:
        with open(Path(path), "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    settings = apply_env_overrides(settings_from_dict(data.get("settings") or {}), environ)
    nodes = [node_from_dict(n) for n in data.get("nodes") or []]
    workloads_raw = data.get("workloads") or {}
    if not isinstance(workloads_raw, dict):
        raise ConfigError(f"{path}: 'workloads' must map workload names to specs")
    workloads = [workload_from_dict(name, spec) for name, spec in sorted(workloads_raw.items())]

    logger.info(f"Loaded {len(nodes)} nodes and {len(workloads)} workloads from {path}")
    return ReconcilerConfig(settings=settings, nodes=nodes, workloads=workloads, path=str(path))

"""Controller configuration loaded from YAML with RECON_* environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from recon.errors import ConfigError
from recon.state import NodeRole

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "recon.yaml"


@dataclass
class NodeConfig:
    node_id: str
    role: NodeRole = NodeRole.WORKER
    address: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ControllerSection:
    controller_id: str = "recon-controller"
    api_endpoint: str = "127.0.0.1:6443"
    ca_cert_path: Optional[str] = None
    ca_cert_hash: Optional[str] = None
    namespace: str = "default"
    kubeconfig: Optional[str] = None


@dataclass
class JoinConfig:
    token_ttl_s: float = 900.0
    handshake_attempts: int = 5
    backoff_base_s: float = 2.0
    backoff_max_s: float = 30.0
    ssh_user: str = "root"
    ssh_options: List[str] = field(default_factory=lambda: ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"])
    kubeadm_path: str = "kubeadm"


@dataclass
class SyncConfig:
    concurrency: int = 4
    max_retries: int = 3
    backoff_base_s: float = 0.5
    backoff_max_s: float = 10.0
    readiness_timeout_s: float = 120.0
    readiness_poll_s: float = 2.0
    prune: bool = False
    self_heal: bool = True
    rollback: bool = True


@dataclass
class WatcherConfig:
    interval_s: float = 30.0
    heartbeat_stale_s: float = 120.0
    auto_start: bool = True


@dataclass
class SourceConfig:
    kind: str = "directory"  # directory | git
    root: str = "manifests"
    path: str = ""
    ref: str = "HEAD"


@dataclass
class ChartRelease:
    name: str
    chart: str
    version: str
    namespace: str = "default"
    repo: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)
    wait: bool = True
    timeout: str = "10m"


@dataclass
class ControllerConfig:
    controller: ControllerSection = field(default_factory=ControllerSection)
    nodes: List[NodeConfig] = field(default_factory=list)
    join: JoinConfig = field(default_factory=JoinConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    charts: List[ChartRelease] = field(default_factory=list)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ControllerConfig":
        data = dict(data or {})
        try:
            cfg = cls(
                controller=_section(ControllerSection, data.get("controller")),
                nodes=[_node(entry) for entry in data.get("nodes") or []],
                join=_section(JoinConfig, data.get("join")),
                sync=_section(SyncConfig, data.get("sync")),
                watcher=_section(WatcherConfig, data.get("watcher")),
                source=_section(SourceConfig, data.get("source")),
                charts=[_section(ChartRelease, entry) for entry in data.get("charts") or []],
                log_level=str(data.get("log_level", "INFO")).upper(),
            )
        except TypeError as e:
            raise ConfigError(f"invalid configuration: {e}")
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.sync.concurrency < 1:
            raise ConfigError(f"sync.concurrency must be >= 1, got {self.sync.concurrency}")
        if self.sync.max_retries < 0:
            raise ConfigError(f"sync.max_retries must be >= 0, got {self.sync.max_retries}")
        if self.join.handshake_attempts < 1:
            raise ConfigError(f"join.handshake_attempts must be >= 1, got {self.join.handshake_attempts}")
        if self.join.token_ttl_s <= 0:
            raise ConfigError("join.token_ttl_s must be positive")
        if self.watcher.interval_s <= 0:
            raise ConfigError("watcher.interval_s must be positive")
        if self.source.kind not in ("directory", "git"):
            raise ConfigError(f"unknown source kind: {self.source.kind}")
        seen = set()
        for node in self.nodes:
            if node.node_id in seen:
                raise ConfigError(f"duplicate node id in topology: {node.node_id}")
            seen.add(node.node_id)


def _section(cls, raw: Optional[Mapping[str, Any]]):
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigError(f"expected a mapping for {cls.__name__}, got {type(raw).__name__}")
    return cls(**dict(raw))


def _node(raw: Any) -> NodeConfig:
    if isinstance(raw, str):
        return NodeConfig(node_id=raw)
    if not isinstance(raw, Mapping) or "node_id" not in raw:
        raise ConfigError(f"node entries need a node_id: {raw!r}")
    try:
        role = NodeRole(str(raw.get("role", "worker")).lower())
    except ValueError:
        raise ConfigError(f"unknown role for node {raw['node_id']}: {raw.get('role')}")
    return NodeConfig(
        node_id=str(raw["node_id"]),
        role=role,
        address=raw.get("address"),
        labels={str(k): str(v) for k, v in (raw.get("labels") or {}).items()},
    )


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(cfg: ControllerConfig, env: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    """Apply RECON_* overrides in place and return the config."""
    env = os.environ if env is None else env
    try:
        if "RECON_NAMESPACE" in env:
            cfg.controller.namespace = env["RECON_NAMESPACE"]
        if "RECON_KUBECONFIG" in env:
            cfg.controller.kubeconfig = env["RECON_KUBECONFIG"]
        if "RECON_POLL_INTERVAL" in env:
            cfg.watcher.interval_s = float(env["RECON_POLL_INTERVAL"])
        if "RECON_AUTO_START" in env:
            cfg.watcher.auto_start = _as_bool(env["RECON_AUTO_START"])
        if "RECON_CONCURRENCY" in env:
            cfg.sync.concurrency = int(env["RECON_CONCURRENCY"])
        if "RECON_PRUNE" in env:
            cfg.sync.prune = _as_bool(env["RECON_PRUNE"])
        if "RECON_SELF_HEAL" in env:
            cfg.sync.self_heal = _as_bool(env["RECON_SELF_HEAL"])
        if "RECON_SOURCE_KIND" in env:
            cfg.source.kind = env["RECON_SOURCE_KIND"]
        if "RECON_SOURCE_ROOT" in env:
            cfg.source.root = env["RECON_SOURCE_ROOT"]
        if "RECON_LOG_LEVEL" in env:
            cfg.log_level = env["RECON_LOG_LEVEL"].upper()
    except ValueError as e:
        raise ConfigError(f"invalid RECON_* override: {e}")
    cfg.validate()
    return cfg


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    """
    Load controller configuration.

    Args:
        path: YAML file; defaults to $RECON_CONFIG, then ./recon.yaml
        env: Environment mapping for overrides (defaults to os.environ)

    Returns:
        Validated ControllerConfig. A missing file yields defaults.

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values
    """
    env = os.environ if env is None else env
    config_path = Path(path or env.get("RECON_CONFIG", DEFAULT_CONFIG_PATH))
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to parse {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        logger.info(f"Loaded controller config from {config_path}")
    else:
        logger.info(f"Config {config_path} not found, using defaults")
    cfg = ControllerConfig.from_dict(data)
    return apply_env_overrides(cfg, env)

"""Controller: wires the components and runs the bootstrap sequence."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from recon.cluster import ClusterSurface, KubernetesCluster
from recon.config import ControllerConfig
from recon.desired import DesiredState, DesiredStateStore
from recon.diff import DiffEngine
from recon.errors import ConfigError
from recon.executor import SyncExecutor
from recon.installer import ChartInstaller, InstallResult
from recon.join import JoinCoordinator, JoinOutcome, JoinTransport, SSHJoinTransport, ca_cert_hash_from_file
from recon.retry import Backoff
from recon.source import DeclarativeSource, build_source
from recon.state import ApplyReport, JoinState, Node, SyncPlan
from recon.topology import TopologyModel
from recon.watcher import DriftWatcher

logger = logging.getLogger(__name__)


class Controller:
    """
    One reconciliation controller instance.

    Bootstrap order: topology, node joins, base charts, desired state, diff,
    apply, then the drift watcher takes over.
    """

    def __init__(
        self,
        config: ControllerConfig,
        cluster: ClusterSurface,
        source: DeclarativeSource,
        installer: Optional[ChartInstaller] = None,
        transport: Optional[JoinTransport] = None,
        ca_cert_hash: Optional[str] = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.source = source
        self.installer = installer or ChartInstaller()
        self.transport = transport or SSHJoinTransport(
            user=config.join.ssh_user,
            options=config.join.ssh_options,
            kubeadm_path=config.join.kubeadm_path,
        )

        self.topology = TopologyModel()
        self.join = JoinCoordinator(
            self.topology,
            cluster,
            controller_id=config.controller.controller_id,
            api_endpoint=config.controller.api_endpoint,
            ca_cert_hash=ca_cert_hash or config.controller.ca_cert_hash or "",
            token_ttl_s=config.join.token_ttl_s,
            handshake=Backoff(
                attempts=config.join.handshake_attempts,
                base_delay_s=config.join.backoff_base_s,
                max_delay_s=config.join.backoff_max_s,
            ),
        )
        self.store = DesiredStateStore(source, path=config.source.path)
        self.diff = DiffEngine(prune=config.sync.prune)
        self.executor = SyncExecutor(
            cluster,
            topology=self.topology,
            concurrency=config.sync.concurrency,
            retry=Backoff(
                attempts=config.sync.max_retries + 1,
                base_delay_s=config.sync.backoff_base_s,
                max_delay_s=config.sync.backoff_max_s,
            ),
            readiness_timeout_s=config.sync.readiness_timeout_s,
            readiness_poll_s=config.sync.readiness_poll_s,
            rollback=config.sync.rollback,
        )
        self.watcher = DriftWatcher(
            self.store,
            self.diff,
            self.executor,
            cluster,
            topology=self.topology,
            join=self.join,
            interval_s=config.watcher.interval_s,
            self_heal=config.sync.self_heal,
            heartbeat_stale_s=config.watcher.heartbeat_stale_s,
        )
        self._recovered = False
        self._recover_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ControllerConfig,
        cluster: Optional[ClusterSurface] = None,
        source: Optional[DeclarativeSource] = None,
    ) -> "Controller":
        """Build a controller against the real cluster and the configured source."""
        cluster = cluster or KubernetesCluster(
            namespace=config.controller.namespace,
            kubeconfig=config.controller.kubeconfig,
        )
        source = source or build_source(config.source.kind, config.source.root, ref=config.source.ref)
        ca_hash = config.controller.ca_cert_hash
        if not ca_hash and config.controller.ca_cert_path:
            try:
                ca_hash = ca_cert_hash_from_file(config.controller.ca_cert_path)
            except (OSError, ValueError) as e:
                raise ConfigError(f"cannot read CA certificate {config.controller.ca_cert_path}: {e}")
        if not ca_hash:
            logger.warning("No CA certificate hash configured; join commands will not pin the CA")
        return cls(config, cluster, source, ca_cert_hash=ca_hash)

    # -------- bootstrap steps --------

    def populate_topology(self) -> List[Node]:
        return self.topology.populate(self.config.nodes)

    def join_nodes(
        self,
        node_ids: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, JoinOutcome]:
        """Join declared nodes; by default every unjoined node with an address."""
        if node_ids is None:
            node_ids = [
                n.node_id for n in self.topology.list_nodes(include_decommissioned=False)
                if n.join_state == JoinState.UNJOINED and n.address
            ]
        node_ids = list(node_ids)
        if not node_ids:
            return {}
        outcomes = self.join.join_all(self.transport, node_ids, cancel=cancel)
        failed = [n for n, o in outcomes.items() if not o.ok]
        if failed:
            logger.warning(f"Nodes failed to join: {', '.join(sorted(failed))}")
        return outcomes

    def install_charts(self) -> List[InstallResult]:
        return self.installer.ensure_all(self.config.charts)

    def recover(self) -> None:
        """Adopt managed workloads already on the cluster and seed generations from them."""
        with self._recover_lock:
            if self._recovered:
                return
            self.executor.observe(self.cluster.list_workloads())
            self.store.seed(self.executor.snapshot())
            self._recovered = True
            logger.info(f"Recovered applied state for {len(self.executor.snapshot())} workloads")

    def load_desired(self) -> DesiredState:
        self.recover()
        return self.store.load()

    def plan(self, prune: Optional[bool] = None) -> SyncPlan:
        """Observe the cluster, reload desired state and diff."""
        desired = self.load_desired()
        self.executor.observe(self.cluster.list_workloads())
        return self.diff.compute(
            desired.specs,
            self.executor.snapshot(),
            prune=prune,
            in_flight=self.executor.in_flight(),
            revision=desired.revision,
        )

    def sync(self, dry_run: bool = False, prune: Optional[bool] = None) -> Tuple[SyncPlan, Optional[ApplyReport]]:
        plan = self.plan(prune=prune)
        if dry_run:
            return plan, None
        return plan, self.watcher.apply_plan(plan)

    def bootstrap(self, join: bool = True, charts: bool = True, start_watcher: Optional[bool] = None) -> Dict[str, Any]:
        """Run the whole bring-up sequence and return a summary."""
        summary: Dict[str, Any] = {"nodes": {}, "charts": [], "plan": None, "report": None}
        self.populate_topology()
        if join:
            summary["nodes"] = {n: o.state.value for n, o in self.join_nodes().items()}
        if charts and self.config.charts:
            summary["charts"] = [r.to_dict() for r in self.install_charts()]
        plan, report = self.sync()
        summary["plan"] = plan.to_dict()
        summary["report"] = report.to_dict() if report else None
        if start_watcher is None:
            start_watcher = self.config.watcher.auto_start
        if start_watcher:
            self.start()
        return summary

    # -------- lifecycle --------

    def start(self) -> None:
        self.watcher.start()

    def stop(self, cancel_in_flight: bool = False, timeout: Optional[float] = 30.0) -> None:
        self.watcher.stop(cancel_in_flight=cancel_in_flight, timeout=timeout)

    def status(self) -> Dict[str, Any]:
        desired = self.store.current
        return {
            "controller_id": self.config.controller.controller_id,
            "namespace": self.config.controller.namespace,
            "revision": desired.revision if desired else None,
            "nodes": {n.node_id: n.join_state.value for n in self.topology.list_nodes()},
            "workloads": len(self.executor.snapshot()),
            "in_flight": self.executor.in_flight(),
            "watcher": self.watcher.status(),
        }

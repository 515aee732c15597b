import json
import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

os.environ.setdefault("RECON_AUTO_START", "0")
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import yaml

from recon.cluster import ClusterSurface
from recon.errors import TransientInfraError
from recon.retry import Backoff
from recon.state import LiveWorkload, NodeHealth, WorkloadSpec


class FakeCluster(ClusterSurface):
    """In-memory cluster API. Workloads become ready immediately unless listed in `unready`."""

    def __init__(self) -> None:
        self.workloads: Dict[str, LiveWorkload] = {}
        self.specs: Dict[str, WorkloadSpec] = {}
        self.nodes: Dict[str, NodeHealth] = {}
        self.unready = set()
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    # -------- test helpers --------

    def fail(self, name: str, *errors: Exception) -> None:
        self.failures.setdefault(name, []).extend(errors)

    def add_node(self, name: str, ready: bool = True, heartbeat: Optional[float] = None) -> None:
        self.nodes[name] = NodeHealth(name=name, ready=ready, last_heartbeat=heartbeat)

    def drift(self, name: str) -> None:
        self.workloads[name].template_hash = "edited-by-hand"

    def ops(self, kind: Optional[str] = None) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if kind is None or c[0] == kind]

    def _record(self, op: str, name: str) -> None:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.calls.append((op, name))
            queued = self.failures.get(name)
            if queued:
                raise queued.pop(0)

    def _put(self, spec: WorkloadSpec) -> None:
        self.specs[spec.name] = spec
        self.workloads[spec.name] = LiveWorkload(
            name=spec.name,
            replicas=spec.replicas,
            ready_replicas=0 if spec.name in self.unready else spec.replicas,
            generation=spec.generation,
            template_hash=spec.template_hash(),
            depends_on=tuple(spec.depends_on),
        )

    # -------- ClusterSurface --------

    def list_workloads(self) -> Dict[str, LiveWorkload]:
        return {name: LiveWorkload(**vars(w)) for name, w in self.workloads.items()}

    def read_workload(self, name: str) -> Optional[LiveWorkload]:
        w = self.workloads.get(name)
        return LiveWorkload(**vars(w)) if w else None

    def create_workload(self, spec: WorkloadSpec) -> None:
        self._record("create", spec.name)
        self._put(spec)

    def update_workload(self, spec: WorkloadSpec) -> None:
        self._record("update", spec.name)
        self._put(spec)

    def scale_workload(self, name: str, replicas: int) -> None:
        self._record("scale", name)
        w = self.workloads[name]
        w.replicas = replicas
        w.ready_replicas = 0 if name in self.unready else replicas

    def delete_workload(self, name: str) -> None:
        self._record("delete", name)
        self.workloads.pop(name, None)
        self.specs.pop(name, None)

    def list_nodes(self) -> Dict[str, NodeHealth]:
        return dict(self.nodes)

    def read_node(self, name: str) -> Optional[NodeHealth]:
        return self.nodes.get(name)

    def label_node(self, name: str, labels: Dict[str, str]) -> None:
        self._record("label", name)
        self.nodes[name].labels.update(labels)


class FakeHelm:
    """Stands in for subprocess.run when the installer shells out to helm."""

    def __init__(self) -> None:
        self.releases: Dict[str, dict] = {}
        self.commands: List[List[str]] = []
        self.values_seen: List[str] = []
        self.upgrade_errors: List[BaseException] = []

    def __call__(self, cmd, check=False, capture_output=True, text=True, timeout=None):
        self.commands.append(list(cmd))
        args = cmd[1:]
        if args[0] == "status":
            release = self.releases.get(args[1])
            if release is None:
                return subprocess.CompletedProcess(cmd, 1, "", "Error: release: not found")
            body = {"name": args[1], "info": {"status": release["status"]}, "chart": {"metadata": {"version": release["version"]}}}
            return subprocess.CompletedProcess(cmd, 0, json.dumps(body), "")
        if args[0] == "get":
            release = self.releases[args[2]]
            return subprocess.CompletedProcess(cmd, 0, json.dumps(release["values"] or None), "")
        if args[0] == "upgrade":
            if self.upgrade_errors:
                error = self.upgrade_errors.pop(0)
                if isinstance(error, subprocess.CompletedProcess):
                    return error
                raise error
            name = args[2]
            version = args[args.index("--version") + 1]
            values_path = args[args.index("-f") + 1]
            with open(values_path) as f:
                values = yaml.safe_load(f) or {}
            self.values_seen.append(values_path)
            self.releases[name] = {"status": "deployed", "version": version, "values": values}
            return subprocess.CompletedProcess(cmd, 0, "", "")
        return subprocess.CompletedProcess(cmd, 1, "", f"unexpected helm command {args}")


def spec(name, image=None, replicas=1, depends_on=(), generation=1, **kwargs):
    return WorkloadSpec(
        name=name,
        image=image or f"registry.example.com/{name}:1.0",
        replicas=replicas,
        depends_on=tuple(depends_on),
        generation=generation,
        **kwargs,
    )


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def fast_retry():
    return Backoff(attempts=3, base_delay_s=0.001, max_delay_s=0.005)


@pytest.fixture
def helm():
    return FakeHelm()


@pytest.fixture
def transient():
    return lambda msg="api server unavailable": TransientInfraError(msg)

from __future__ import annotations

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import copy
import hashlib
import json
import re
import time

from recon.errors import SpecValidationError


# ----------------------------- helpers -----------------------------

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_IMAGE_RE = re.compile(
    r"^(?:(?P<registry>[a-zA-Z0-9.-]+(?::[0-9]+)?)/)?"
    r"(?P<repository>[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*)"
    r"(?::(?P<tag>[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}))?"
    r"(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
)

_MEMORY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "K": 1000,
    "k": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
}


def parse_cpu(cpu_str: str) -> float:
    """Parse a CPU quantity ('250m' -> 0.25, '2' -> 2.0)."""
    cpu_str = str(cpu_str).strip()
    if not cpu_str:
        raise ValueError("empty cpu quantity")
    if cpu_str.endswith("m"):
        value = float(cpu_str[:-1]) / 1000.0
    else:
        value = float(cpu_str)
    if value < 0:
        raise ValueError(f"negative cpu quantity: {cpu_str}")
    return value


def parse_memory(memory_str: str) -> float:
    """Parse a memory quantity into bytes ('512Mi' -> 536870912.0)."""
    memory_str = str(memory_str).strip()
    if not memory_str:
        raise ValueError("empty memory quantity")
    for suffix in ("Ki", "Mi", "Gi", "Ti", "K", "k", "M", "G", "T"):
        if memory_str.endswith(suffix):
            value = float(memory_str[: -len(suffix)]) * _MEMORY_SUFFIXES[suffix]
            break
    else:
        value = float(memory_str)
    if value < 0:
        raise ValueError(f"negative memory quantity: {memory_str}")
    return value


def _digest(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# ----------------------------- topology -----------------------------

class NodeRole(Enum):
    CONTROLLER = "controller"
    WORKER = "worker"


class JoinState(Enum):
    UNJOINED = "unjoined"
    JOINING = "joining"
    READY = "ready"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


@dataclass
class Node:
    node_id: str
    role: NodeRole
    address: Optional[str] = None
    join_state: JoinState = JoinState.UNJOINED
    last_heartbeat: Optional[float] = None
    decommissioned: bool = False
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "address": self.address,
            "join_state": self.join_state.value,
            "last_heartbeat": self.last_heartbeat,
            "decommissioned": self.decommissioned,
            "labels": dict(self.labels),
        }


@dataclass
class NodeEvent:
    """A node join-state transition."""
    node_id: str
    previous: Optional[JoinState]
    current: JoinState
    reason: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "previous": self.previous.value if self.previous else None,
            "current": self.current.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


@dataclass
class JoinToken:
    value: str
    node_id: str
    issuer: str
    expires_at: float
    used: bool = False

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class NodeHealth:
    """Live view of a node as reported by the cluster API."""
    name: str
    ready: bool
    last_heartbeat: Optional[float] = None
    labels: Dict[str, str] = field(default_factory=dict)


# ----------------------------- workloads -----------------------------

@dataclass(frozen=True)
class ResourceBounds:
    cpu_request: Optional[str] = None
    cpu_limit: Optional[str] = None
    memory_request: Optional[str] = None
    memory_limit: Optional[str] = None

    def validate(self) -> None:
        pairs = (
            ("cpu", self.cpu_request, self.cpu_limit, parse_cpu),
            ("memory", self.memory_request, self.memory_limit, parse_memory),
        )
        for kind, request, limit, parse in pairs:
            parsed: Dict[str, float] = {}
            for label, raw in (("request", request), ("limit", limit)):
                if raw is None:
                    continue
                try:
                    parsed[label] = parse(raw)
                except ValueError:
                    raise SpecValidationError(
                        f"invalid {kind} {label} quantity: {raw!r}",
                        field=f"resources.{kind}_{label}",
                        value=raw,
                    )
            if "request" in parsed and "limit" in parsed and parsed["request"] > parsed["limit"]:
                raise SpecValidationError(
                    f"{kind} request {request} exceeds limit {limit}",
                    field=f"resources.{kind}_request",
                    value=request,
                )

    def canonical(self) -> Dict[str, Optional[str]]:
        """Quantities in one spelling so '0.5' and '500m' hash alike."""
        out: Dict[str, Optional[str]] = {}
        for key, raw in asdict(self).items():
            if raw is None:
                out[key] = None
                continue
            try:
                if key.startswith("cpu"):
                    out[key] = f"{round(parse_cpu(raw) * 1000)}m"
                else:
                    out[key] = str(int(parse_memory(raw)))
            except ValueError:
                out[key] = str(raw)
        return out

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


@dataclass(frozen=True)
class WorkloadSpec:
    """One immutable revision of a declared workload.

    A change to any field is expressed as a new WorkloadSpec carrying a larger
    generation; instances are never mutated in place.
    """

    name: str
    image: str
    replicas: int = 1
    resources: ResourceBounds = field(default_factory=ResourceBounds)
    node_role: Optional[NodeRole] = None
    depends_on: Tuple[str, ...] = ()
    ports: Tuple[int, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    generation: int = 0

    def template_dict(self) -> Dict[str, Any]:
        """Fields that end up in the pod template (replicas excluded)."""
        return {
            "image": self.image,
            "resources": self.resources.canonical(),
            "node_role": self.node_role.value if self.node_role else None,
            "depends_on": sorted(self.depends_on),
            "ports": sorted(self.ports),
            "env": sorted([list(item) for item in self.env]),
        }

    def template_hash(self) -> str:
        return _digest(self.template_dict())

    def fingerprint(self) -> str:
        """Content identity of this revision, independent of its generation."""
        payload = self.template_dict()
        payload["name"] = self.name
        payload["replicas"] = self.replicas
        return _digest(payload)

    def with_generation(self, generation: int) -> "WorkloadSpec":
        return replace(self, generation=generation)

    def validate(self) -> None:
        if not self.name or len(self.name) > 63 or not _NAME_RE.match(self.name):
            raise SpecValidationError(f"invalid workload name: {self.name!r}", field="name", value=self.name)
        if not self.image or not _IMAGE_RE.match(self.image):
            raise SpecValidationError(f"invalid image reference: {self.image!r}", field="image", value=self.image)
        if self.replicas < 0:
            raise SpecValidationError(f"replicas must be >= 0, got {self.replicas}", field="replicas", value=self.replicas)
        for port in self.ports:
            if not 0 < int(port) < 65536:
                raise SpecValidationError(f"port out of range: {port}", field="ports", value=port)
        if self.name in self.depends_on:
            raise SpecValidationError(f"workload {self.name} depends on itself", field="depends_on", value=self.name)
        self.resources.validate()

    def to_dict(self) -> Dict[str, Any]:
        data = self.template_dict()
        data.update({"name": self.name, "replicas": self.replicas, "generation": self.generation})
        data["env"] = dict(self.env)
        data["resources"] = self.resources.to_dict()
        return data


@dataclass
class LiveWorkload:
    """A managed workload as currently seen on the cluster API."""
    name: str
    replicas: int
    ready_replicas: int = 0
    generation: int = 0
    template_hash: Optional[str] = None
    depends_on: Tuple[str, ...] = ()


@dataclass
class WorkloadStatus:
    name: str
    generation: int
    replicas: int
    template_hash: Optional[str] = None
    ready_replicas: int = 0
    present: bool = True
    drifted: bool = False
    depends_on: Tuple[str, ...] = ()
    updated_at: float = field(default_factory=time.time)

    @property
    def ready(self) -> bool:
        return self.present and self.ready_replicas >= self.replicas

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["depends_on"] = list(self.depends_on)
        data["ready"] = self.ready
        return data


class AppliedState:
    """Workload name -> status of the generation currently running.

    Only the sync executor mutates this record; everybody else works on the
    deep copies returned by ``snapshot``.
    """

    def __init__(self, workloads: Optional[Dict[str, WorkloadStatus]] = None) -> None:
        self.workloads: Dict[str, WorkloadStatus] = dict(workloads or {})

    def get(self, name: str) -> Optional[WorkloadStatus]:
        return self.workloads.get(name)

    def present(self) -> Dict[str, WorkloadStatus]:
        return {name: status for name, status in self.workloads.items() if status.present}

    def copy(self) -> "AppliedState":
        return AppliedState(copy.deepcopy(self.workloads))

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: status.to_dict() for name, status in sorted(self.workloads.items())}

    def __len__(self) -> int:
        return len(self.workloads)


# ----------------------------- plans -----------------------------

class ActionType(Enum):
    CREATE = "create"
    UPDATE = "update"
    SCALE = "scale"
    DELETE = "delete"


@dataclass(frozen=True)
class Action:
    type: ActionType
    workload: str
    to_generation: int
    from_generation: int = 0
    replicas: int = 0
    spec: Optional[WorkloadSpec] = None
    depends_on: Tuple[str, ...] = ()
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "workload": self.workload,
            "from_generation": self.from_generation,
            "to_generation": self.to_generation,
            "replicas": self.replicas,
            "depends_on": list(self.depends_on),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class SyncPlan:
    plan_id: str
    actions: Tuple[Action, ...] = ()
    revision: Optional[str] = None
    orphans: Tuple[str, ...] = ()
    blocked: Tuple[Tuple[str, str], ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def action_for(self, workload: str) -> Optional[Action]:
        for action in self.actions:
            if action.workload == workload:
                return action
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "revision": self.revision,
            "actions": [a.to_dict() for a in self.actions],
            "orphans": list(self.orphans),
            "blocked": [{"workload": name, "reason": reason} for name, reason in self.blocked],
            "created_at": self.created_at,
        }


class ActionStatus(Enum):
    APPLIED = "applied"
    NOOP = "noop"
    FAILED = "failed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


@dataclass
class ActionResult:
    action: Action
    status: ActionStatus
    attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    rolled_back: bool = False
    finished_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status in (ActionStatus.APPLIED, ActionStatus.NOOP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "error_type": self.error_type,
            "rolled_back": self.rolled_back,
            "finished_at": self.finished_at,
        }


_NOT_APPLIED = (ActionStatus.FAILED, ActionStatus.ABORTED, ActionStatus.CANCELLED)


@dataclass
class ApplyReport:
    plan_id: str
    results: List[ActionResult] = field(default_factory=list)
    orphans: Tuple[str, ...] = ()
    blocked: Tuple[Tuple[str, str], ...] = ()
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def failures(self) -> List[ActionResult]:
        return [r for r in self.results if r.status in _NOT_APPLIED]

    @property
    def applied(self) -> List[ActionResult]:
        return [r for r in self.results if r.status == ActionStatus.APPLIED]

    @property
    def status(self) -> str:
        """noop | synced | degraded | failed."""
        failures = self.failures
        succeeded = [r for r in self.results if r.succeeded]
        if failures:
            return "degraded" if succeeded else "failed"
        if self.applied:
            return "synced"
        return "noop"

    def result_for(self, workload: str) -> Optional[ActionResult]:
        for result in self.results:
            if result.action.workload == workload:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "orphans": list(self.orphans),
            "blocked": [{"workload": name, "reason": reason} for name, reason in self.blocked],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

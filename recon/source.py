"""Declarative sources of workload specs (YAML trees and git revisions)."""

from __future__ import annotations

import hashlib
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from k8s_executor.deployment_gen import DEPENDS_ON_ANNOTATION, ROLE_LABEL
from recon.errors import SpecValidationError, TransientInfraError
from recon.state import NodeRole, ResourceBounds, WorkloadSpec

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


# ----------------------------- parsing -----------------------------

def _role(value: Any, name: str) -> Optional[NodeRole]:
    if value in (None, ""):
        return None
    try:
        return NodeRole(str(value).lower())
    except ValueError:
        raise SpecValidationError(f"workload {name}: unknown node role {value!r}", field="node_role", value=value)


def _split_deps(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return tuple(sorted({str(item).strip() for item in items if str(item).strip()}))


def spec_from_workload(entry: Mapping[str, Any]) -> WorkloadSpec:
    """Build a WorkloadSpec from the compact `workloads:` schema."""
    name = entry.get("name")
    if not name:
        raise SpecValidationError(f"workload entry without a name: {dict(entry)!r}", field="name")
    resources = entry.get("resources") or {}
    try:
        return WorkloadSpec(
            name=str(name),
            image=str(entry.get("image", "")),
            replicas=int(entry.get("replicas", 1)),
            resources=ResourceBounds(
                cpu_request=resources.get("cpu_request"),
                cpu_limit=resources.get("cpu_limit"),
                memory_request=resources.get("memory_request"),
                memory_limit=resources.get("memory_limit"),
            ),
            node_role=_role(entry.get("role", entry.get("node_role")), name),
            depends_on=_split_deps(entry.get("depends_on")),
            ports=tuple(sorted(int(p) for p in entry.get("ports") or [])),
            env=tuple(sorted((str(k), str(v)) for k, v in (entry.get("env") or {}).items())),
        )
    except (TypeError, ValueError) as e:
        raise SpecValidationError(f"workload {name}: {e}", field="workload", value=name)


def spec_from_deployment(manifest: Mapping[str, Any]) -> WorkloadSpec:
    """Build a WorkloadSpec from an apps/v1 Deployment manifest (camelCase keys)."""
    metadata = manifest.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise SpecValidationError("Deployment manifest without metadata.name", field="metadata.name")
    spec = manifest.get("spec") or {}
    pod_spec = ((spec.get("template") or {}).get("spec")) or {}
    containers = pod_spec.get("containers") or []
    if not containers:
        raise SpecValidationError(f"Deployment {name} declares no containers", field="containers", value=name)
    container = containers[0]
    resources = container.get("resources") or {}
    requests = resources.get("requests") or {}
    limits = resources.get("limits") or {}
    annotations = metadata.get("annotations") or {}
    env = tuple(sorted(
        (str(item["name"]), str(item.get("value", "")))
        for item in container.get("env") or []
        if "name" in item and "valueFrom" not in item
    ))
    try:
        return WorkloadSpec(
            name=str(name),
            image=str(container.get("image", "")),
            replicas=int(spec["replicas"]) if spec.get("replicas") is not None else 1,
            resources=ResourceBounds(
                cpu_request=_quantity(requests.get("cpu")),
                cpu_limit=_quantity(limits.get("cpu")),
                memory_request=_quantity(requests.get("memory")),
                memory_limit=_quantity(limits.get("memory")),
            ),
            node_role=_role((pod_spec.get("nodeSelector") or {}).get(ROLE_LABEL), name),
            depends_on=_split_deps(annotations.get(DEPENDS_ON_ANNOTATION)),
            ports=tuple(sorted(int(p["containerPort"]) for p in container.get("ports") or [] if "containerPort" in p)),
            env=env,
        )
    except (TypeError, ValueError) as e:
        raise SpecValidationError(f"Deployment {name}: {e}", field="spec", value=name)


def _quantity(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def parse_documents(documents: Iterable[Any], origin: str = "<memory>") -> List[WorkloadSpec]:
    """Extract workload specs from parsed YAML documents; other kinds are ignored."""
    specs: List[WorkloadSpec] = []
    for doc in documents:
        if not isinstance(doc, Mapping):
            continue
        if "workloads" in doc:
            for entry in doc.get("workloads") or []:
                specs.append(spec_from_workload(entry))
        elif doc.get("kind") == "Deployment":
            specs.append(spec_from_deployment(doc))
        else:
            logger.debug(f"Skipping {doc.get('kind', 'unknown')} document in {origin}")
    return specs


def _load_yaml(text: str, origin: str) -> List[Any]:
    try:
        return list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise SpecValidationError(f"invalid YAML in {origin}: {e}", field="source", value=origin)


# ----------------------------- sources -----------------------------

class DeclarativeSource(ABC):
    """A versioned store of workload declarations."""

    @abstractmethod
    def get_latest(self, path: str = "") -> Tuple[str, List[WorkloadSpec]]:
        """Return (revision, specs) for the newest revision under `path`."""
        raise NotImplementedError


class InMemorySource(DeclarativeSource):
    """Revision log held in memory; each publish appends a revision."""

    def __init__(self) -> None:
        self._revisions: List[Tuple[str, List[WorkloadSpec]]] = []

    def publish(self, specs: Iterable[WorkloadSpec], revision: Optional[str] = None) -> str:
        specs = list(specs)
        revision = revision or f"r{len(self._revisions) + 1}"
        self._revisions.append((revision, specs))
        return revision

    def get_latest(self, path: str = "") -> Tuple[str, List[WorkloadSpec]]:
        if not self._revisions:
            raise TransientInfraError("no revision published yet")
        revision, specs = self._revisions[-1]
        return revision, list(specs)


def _read_manifest(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise SpecValidationError(f"{path} is not valid UTF-8: {e}", field="manifest", value=str(path))
    except OSError as e:
        raise TransientInfraError(f"cannot read {path}: {e}")


class DirectorySource(DeclarativeSource):
    """YAML manifests on disk; the revision is a digest of their contents."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def get_latest(self, path: str = "") -> Tuple[str, List[WorkloadSpec]]:
        base = self.root / path if path else self.root
        if not base.exists():
            raise TransientInfraError(f"manifest path {base} does not exist")
        files = [base] if base.is_file() else sorted(
            f for f in base.rglob("*") if f.is_file() and f.suffix in MANIFEST_SUFFIXES
        )
        digest = hashlib.sha256()
        specs: List[WorkloadSpec] = []
        for f in files:
            text = _read_manifest(f)
            digest.update(str(f.relative_to(self.root)).encode("utf-8"))
            digest.update(text.encode("utf-8"))
            specs.extend(parse_documents(_load_yaml(text, str(f)), origin=str(f)))
        revision = digest.hexdigest()[:12]
        logger.debug(f"Loaded {len(specs)} workloads from {base} at revision {revision}")
        return revision, specs


Runner = Callable[..., subprocess.CompletedProcess]


class GitSource(DeclarativeSource):
    """Manifests read straight out of a git revision (no checkout needed)."""

    def __init__(self, repo: str, ref: str = "HEAD", fetch: bool = False, runner: Optional[Runner] = None) -> None:
        self.repo = repo
        self.ref = ref
        self.fetch = fetch
        self._run = runner or subprocess.run

    def _git(self, *args: str) -> str:
        cmd = ["git", "-C", self.repo, *args]
        try:
            result = self._run(cmd, check=True, capture_output=True, text=True, timeout=60)
        except subprocess.CalledProcessError as e:
            raise TransientInfraError(f"{' '.join(cmd)} failed: {(e.stderr or '').strip()}")
        except (subprocess.TimeoutExpired, OSError) as e:
            raise TransientInfraError(f"{' '.join(cmd)} failed: {e}")
        except UnicodeDecodeError as e:
            raise SpecValidationError(f"{' '.join(cmd)} returned non-UTF-8 output: {e}", field="manifest")
        return result.stdout

    def get_latest(self, path: str = "") -> Tuple[str, List[WorkloadSpec]]:
        if self.fetch:
            self._git("fetch", "--quiet")
        revision = self._git("rev-parse", self.ref).strip()
        listing = self._git("ls-tree", "-r", "--name-only", revision, "--", path or ".")
        files = sorted(
            line.strip() for line in listing.splitlines()
            if line.strip().endswith(MANIFEST_SUFFIXES)
        )
        specs: List[WorkloadSpec] = []
        for name in files:
            text = self._git("show", f"{revision}:{name}")
            specs.extend(parse_documents(_load_yaml(text, name), origin=f"{revision[:8]}:{name}"))
        return revision, specs


def build_source(kind: str, root: str, ref: str = "HEAD") -> DeclarativeSource:
    if kind == "git":
        return GitSource(root, ref=ref)
    return DirectorySource(root)


def manifests_by_name(specs: Iterable[WorkloadSpec]) -> Dict[str, WorkloadSpec]:
    """Index specs by name, rejecting duplicates."""
    out: Dict[str, WorkloadSpec] = {}
    for spec in specs:
        if spec.name in out:
            raise SpecValidationError(f"workload {spec.name} declared more than once", field="name", value=spec.name)
        out[spec.name] = spec
    return out

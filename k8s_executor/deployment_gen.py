"""Generate Kubernetes Deployment and Service objects from workload specs."""

from __future__ import annotations

from typing import Dict, Optional

from kubernetes.client import (
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from recon.state import ResourceBounds, WorkloadSpec

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "recon"
NAME_LABEL = "app.kubernetes.io/name"
ROLE_LABEL = "recon.io/node-role"
GENERATION_ANNOTATION = "recon.io/generation"
TEMPLATE_HASH_ANNOTATION = "recon.io/template-hash"
DEPENDS_ON_ANNOTATION = "recon.io/depends-on"


def managed_selector() -> str:
    """Label selector matching every object this controller owns."""
    return f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"


def _get_resource_requirements(bounds: ResourceBounds) -> Optional[V1ResourceRequirements]:
    """Create resource requirements from declared bounds; None when nothing is set."""
    requests: Dict[str, str] = {}
    limits: Dict[str, str] = {}
    if bounds.cpu_request:
        requests["cpu"] = bounds.cpu_request
    if bounds.memory_request:
        requests["memory"] = bounds.memory_request
    if bounds.cpu_limit:
        limits["cpu"] = bounds.cpu_limit
    if bounds.memory_limit:
        limits["memory"] = bounds.memory_limit
    if not requests and not limits:
        return None
    return V1ResourceRequirements(requests=requests or None, limits=limits or None)


def _labels(spec: WorkloadSpec) -> Dict[str, str]:
    return {
        "app": spec.name,
        NAME_LABEL: spec.name,
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
    }


def _annotations(spec: WorkloadSpec) -> Dict[str, str]:
    annotations = {
        GENERATION_ANNOTATION: str(spec.generation),
        TEMPLATE_HASH_ANNOTATION: spec.template_hash(),
    }
    if spec.depends_on:
        annotations[DEPENDS_ON_ANNOTATION] = ",".join(sorted(spec.depends_on))
    return annotations


def generate_deployment(spec: WorkloadSpec, namespace: str = "default") -> V1Deployment:
    """
    Generate a V1Deployment from a workload spec.

    Args:
        spec: Workload revision to render
        namespace: Kubernetes namespace

    Returns:
        V1Deployment carrying the generation and template-hash annotations
        the controller reads back when observing the cluster
    """
    labels = _labels(spec)

    container = V1Container(
        name=spec.name,
        image=spec.image,
        image_pull_policy="IfNotPresent",
        resources=_get_resource_requirements(spec.resources),
        env=[V1EnvVar(name=key, value=value) for key, value in spec.env] or None,
        ports=[V1ContainerPort(container_port=int(port)) for port in spec.ports] or None,
    )

    pod_spec = V1PodSpec(
        containers=[container],
        node_selector={ROLE_LABEL: spec.node_role.value} if spec.node_role else None,
    )

    template = V1PodTemplateSpec(
        metadata=V1ObjectMeta(
            labels=labels,
            annotations={TEMPLATE_HASH_ANNOTATION: spec.template_hash()},
        ),
        spec=pod_spec,
    )

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=spec.name,
            namespace=namespace,
            labels=labels,
            annotations=_annotations(spec),
        ),
        spec=V1DeploymentSpec(
            replicas=spec.replicas,
            selector=V1LabelSelector(match_labels={"app": spec.name}),
            template=template,
        ),
    )


def generate_service(spec: WorkloadSpec, namespace: str = "default") -> Optional[V1Service]:
    """Generate a ClusterIP service exposing the workload's ports, if it declares any."""
    if not spec.ports:
        return None
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=spec.name,
            namespace=namespace,
            labels=_labels(spec),
        ),
        spec=V1ServiceSpec(
            selector={"app": spec.name},
            ports=[
                V1ServicePort(name=f"port-{port}", port=int(port), target_port=int(port))
                for port in sorted(spec.ports)
            ],
        ),
    )

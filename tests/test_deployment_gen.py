from kubernetes.client import ApiClient

from conftest import spec

from k8s_executor.deployment_gen import (
    DEPENDS_ON_ANNOTATION,
    GENERATION_ANNOTATION,
    MANAGED_BY_LABEL,
    ROLE_LABEL,
    generate_deployment,
    generate_service,
    managed_selector,
)
from recon.cluster import _live_from_deployment, translate_api_error
from recon.errors import ReconcileError, SpecValidationError, TransientInfraError
from recon.source import spec_from_deployment
from recon.state import NodeRole, ResourceBounds

from kubernetes.client.exceptions import ApiException


def full_spec():
    return spec(
        "movie",
        replicas=3,
        generation=4,
        depends_on=["rating", "discovery-server"],
        node_role=NodeRole.WORKER,
        ports=(8081,),
        env=(("EUREKA_URI", "http://discovery-server:8761/eureka"),),
        resources=ResourceBounds(cpu_request="0.25", cpu_limit="1", memory_request="256Mi", memory_limit="512Mi"),
    )


def test_deployment_carries_controller_metadata():
    deployment = generate_deployment(full_spec(), namespace="apps")
    meta = deployment.metadata
    assert meta.namespace == "apps"
    assert meta.labels[MANAGED_BY_LABEL] == "recon"
    assert meta.annotations[GENERATION_ANNOTATION] == "4"
    assert meta.annotations[DEPENDS_ON_ANNOTATION] == "discovery-server,rating"
    assert deployment.spec.replicas == 3
    pod = deployment.spec.template.spec
    assert pod.node_selector == {ROLE_LABEL: "worker"}
    container = pod.containers[0]
    assert container.resources.requests == {"cpu": "0.25", "memory": "256Mi"}
    assert container.ports[0].container_port == 8081


def test_managed_selector():
    assert managed_selector() == "app.kubernetes.io/managed-by=recon"


def test_service_only_when_ports_declared():
    assert generate_service(spec("worker")) is None
    service = generate_service(full_spec())
    assert service.spec.ports[0].port == 8081
    assert service.spec.selector == {"app": "movie"}


def test_rendered_deployment_reads_back_to_same_template():
    original = full_spec()
    manifest = ApiClient().sanitize_for_serialization(generate_deployment(original))
    parsed = spec_from_deployment(manifest)
    assert parsed.template_hash() == original.template_hash()
    assert parsed.replicas == original.replicas


def test_live_view_recovers_generation_and_dependencies():
    live = _live_from_deployment(ApiClient(), generate_deployment(full_spec()))
    assert live.generation == 4
    assert live.depends_on == ("discovery-server", "rating")
    assert live.template_hash == full_spec().template_hash()
    assert live.ready_replicas == 0


def test_api_error_translation():
    assert isinstance(translate_api_error(ApiException(status=503, reason="Unavailable"), "x"), TransientInfraError)
    assert isinstance(translate_api_error(ApiException(status=429, reason="Too Many"), "x"), TransientInfraError)
    assert isinstance(translate_api_error(ApiException(status=422, reason="Invalid"), "x"), SpecValidationError)
    quota = ApiException(status=403, reason="Forbidden")
    quota.body = "pods is forbidden: exceeded quota: compute"
    assert isinstance(translate_api_error(quota, "x"), SpecValidationError)
    other = translate_api_error(ApiException(status=401, reason="Unauthorized"), "x")
    assert type(other) is ReconcileError

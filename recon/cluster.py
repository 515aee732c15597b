"""Cluster API surface: what the controller reads from and writes to Kubernetes."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from k8s_executor.deployment_gen import (
    GENERATION_ANNOTATION,
    TEMPLATE_HASH_ANNOTATION,
    generate_deployment,
    generate_service,
    managed_selector,
)
from recon.errors import ReconcileError, SpecValidationError, TransientInfraError
from recon.source import spec_from_deployment
from recon.state import LiveWorkload, NodeHealth, WorkloadSpec

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {0, 408, 425, 429, 500, 502, 503, 504}


class ClusterSurface(ABC):
    """Operations the controller needs from the cluster API."""

    @abstractmethod
    def list_workloads(self) -> Dict[str, LiveWorkload]:
        raise NotImplementedError

    @abstractmethod
    def read_workload(self, name: str) -> Optional[LiveWorkload]:
        raise NotImplementedError

    @abstractmethod
    def create_workload(self, spec: WorkloadSpec) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_workload(self, spec: WorkloadSpec) -> None:
        raise NotImplementedError

    @abstractmethod
    def scale_workload(self, name: str, replicas: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_workload(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_nodes(self) -> Dict[str, NodeHealth]:
        raise NotImplementedError

    @abstractmethod
    def read_node(self, name: str) -> Optional[NodeHealth]:
        raise NotImplementedError

    @abstractmethod
    def label_node(self, name: str, labels: Dict[str, str]) -> None:
        raise NotImplementedError


def translate_api_error(e: ApiException, context: str) -> ReconcileError:
    """Map an ApiException onto the controller's error taxonomy."""
    status = e.status or 0
    body = (e.body or "") if isinstance(e.body, str) else ""
    message = f"{context}: status={status}, reason={e.reason}"
    if status in TRANSIENT_STATUSES:
        return TransientInfraError(message)
    if status in (400, 422):
        return SpecValidationError(message, field="spec")
    if status == 403 and "exceeded quota" in body:
        return SpecValidationError(f"{context}: resource quota exceeded", field="resources")
    return ReconcileError(message)


def _live_from_deployment(api_client: ApiClient, deployment) -> LiveWorkload:
    manifest = api_client.sanitize_for_serialization(deployment)
    annotations = (manifest.get("metadata") or {}).get("annotations") or {}
    try:
        generation = int(annotations.get(GENERATION_ANNOTATION, 0))
    except ValueError:
        generation = 0
    try:
        live_spec = spec_from_deployment(manifest)
        template_hash = live_spec.template_hash()
        depends_on = live_spec.depends_on
    except SpecValidationError:
        template_hash = annotations.get(TEMPLATE_HASH_ANNOTATION)
        depends_on = ()
    status = deployment.status
    return LiveWorkload(
        name=deployment.metadata.name,
        replicas=deployment.spec.replicas if deployment.spec.replicas is not None else 1,
        ready_replicas=(status.ready_replicas or 0) if status else 0,
        generation=generation,
        template_hash=template_hash,
        depends_on=depends_on,
    )


def _node_health(node) -> NodeHealth:
    ready = False
    heartbeat = None
    for condition in (node.status.conditions if node.status else None) or []:
        if condition.type == "Ready":
            ready = condition.status == "True"
            if condition.last_heartbeat_time is not None:
                heartbeat = condition.last_heartbeat_time.timestamp()
    return NodeHealth(
        name=node.metadata.name,
        ready=ready,
        last_heartbeat=heartbeat,
        labels=dict(node.metadata.labels or {}),
    )


class KubernetesCluster(ClusterSurface):
    """ClusterSurface backed by the official Kubernetes Python client."""

    def __init__(
        self,
        namespace: str = "default",
        kubeconfig: Optional[str] = None,
        api_client: Optional[ApiClient] = None,
    ) -> None:
        """
        Initialize API clients.

        Args:
            namespace: Namespace managed workloads live in
            kubeconfig: Explicit kubeconfig path; otherwise in-cluster config,
                then the default kubeconfig
            api_client: Pre-built ApiClient (skips config loading)
        """
        self.namespace = namespace
        if api_client is None:
            if kubeconfig:
                config.load_kube_config(config_file=kubeconfig)
                logger.info(f"Loaded kubeconfig from {kubeconfig}")
            else:
                try:
                    config.load_incluster_config()
                    logger.info("Loaded in-cluster Kubernetes config")
                except config.ConfigException:
                    try:
                        config.load_kube_config()
                        logger.info("Loaded kubeconfig")
                    except Exception as e:
                        logger.warning(f"Could not load Kubernetes config: {e}")
            api_client = ApiClient()
        self.api_client = api_client
        self.apps = client.AppsV1Api(api_client)
        self.core = client.CoreV1Api(api_client)

    def _call(self, context: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise translate_api_error(e, context)
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"{context}: {e}")

    # -------- workloads --------

    def list_workloads(self) -> Dict[str, LiveWorkload]:
        result = self._call(
            "list deployments",
            self.apps.list_namespaced_deployment,
            self.namespace,
            label_selector=managed_selector(),
        )
        return {d.metadata.name: _live_from_deployment(self.api_client, d) for d in result.items}

    def read_workload(self, name: str) -> Optional[LiveWorkload]:
        try:
            deployment = self.apps.read_namespaced_deployment(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read deployment {name}")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"read deployment {name}: {e}")
        return _live_from_deployment(self.api_client, deployment)

    def create_workload(self, spec: WorkloadSpec) -> None:
        body = generate_deployment(spec, namespace=self.namespace)
        try:
            self.apps.create_namespaced_deployment(namespace=self.namespace, body=body)
            logger.info(f"Created deployment {spec.name} (generation {spec.generation})")
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create deployment {spec.name}")
            # already there from an earlier attempt; converge it instead
            self._call(
                f"replace deployment {spec.name}",
                self.apps.replace_namespaced_deployment,
                spec.name, self.namespace, body,
            )
            logger.info(f"Deployment {spec.name} already existed, replaced (generation {spec.generation})")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"create deployment {spec.name}: {e}")
        self._ensure_service(spec)

    def update_workload(self, spec: WorkloadSpec) -> None:
        body = generate_deployment(spec, namespace=self.namespace)
        try:
            self.apps.replace_namespaced_deployment(spec.name, self.namespace, body)
            logger.info(f"Replaced deployment {spec.name} (generation {spec.generation})")
        except ApiException as e:
            if e.status != 404:
                raise translate_api_error(e, f"replace deployment {spec.name}")
            self._call(
                f"create deployment {spec.name}",
                self.apps.create_namespaced_deployment,
                namespace=self.namespace, body=body,
            )
            logger.info(f"Deployment {spec.name} was missing, created (generation {spec.generation})")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"replace deployment {spec.name}: {e}")
        self._ensure_service(spec)

    def scale_workload(self, name: str, replicas: int) -> None:
        self._call(
            f"scale deployment {name}",
            self.apps.patch_namespaced_deployment_scale,
            name, self.namespace, {"spec": {"replicas": replicas}},
        )
        logger.info(f"Scaled deployment {name} to {replicas} replicas")

    def delete_workload(self, name: str) -> None:
        for kind, fn in (
            ("deployment", self.apps.delete_namespaced_deployment),
            ("service", self.core.delete_namespaced_service),
        ):
            try:
                fn(name, self.namespace)
                logger.info(f"Deleted {kind} {name}")
            except ApiException as e:
                if e.status == 404:
                    continue
                raise translate_api_error(e, f"delete {kind} {name}")
            except (Urllib3HTTPError, OSError) as e:
                raise TransientInfraError(f"delete {kind} {name}: {e}")

    def _ensure_service(self, spec: WorkloadSpec) -> None:
        service = generate_service(spec, namespace=self.namespace)
        if service is None:
            return
        try:
            self.core.patch_namespaced_service(spec.name, self.namespace, service)
        except ApiException as e:
            if e.status != 404:
                raise translate_api_error(e, f"patch service {spec.name}")
            self._call(
                f"create service {spec.name}",
                self.core.create_namespaced_service,
                self.namespace, service,
            )
            logger.info(f"Created service {spec.name}")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"patch service {spec.name}: {e}")

    # -------- nodes --------

    def list_nodes(self) -> Dict[str, NodeHealth]:
        result = self._call("list nodes", self.core.list_node)
        return {n.metadata.name: _node_health(n) for n in result.items}

    def read_node(self, name: str) -> Optional[NodeHealth]:
        try:
            node = self.core.read_node(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read node {name}")
        except (Urllib3HTTPError, OSError) as e:
            raise TransientInfraError(f"read node {name}: {e}")
        return _node_health(node)

    def label_node(self, name: str, labels: Dict[str, str]) -> None:
        self._call(
            f"label node {name}",
            self.core.patch_node,
            name, {"metadata": {"labels": labels}},
        )
        logger.info(f"Labeled node {name}: {labels}")

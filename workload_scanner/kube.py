"""
Kubernetes Helpers for Workload Scanner Operator

This module is the only place that knows how workloads, scan Jobs and
VulnerabilityReports are labelled and annotated. It provides:
- Kubernetes client initialization
- Label / annotation keys shared by scan Jobs and reports
- Workload resolution from Pods and scan Jobs
- Container image digest extraction
- ApiException classification (not found / conflict)
"""

import json
import logging
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from workload_scanner.exceptions import MalformedDataError, MissingAnnotationError
from workload_scanner.schemas import WorkloadRef

logger = logging.getLogger(__name__)

# =============================================================================
# Labels and Annotations
# =============================================================================

LABEL_RESOURCE_KIND = "starboard.resource.kind"
LABEL_RESOURCE_NAME = "starboard.resource.name"
LABEL_RESOURCE_NAMESPACE = "starboard.resource.namespace"
LABEL_CONTAINER_NAME = "starboard.container.name"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"

ANNOTATION_CONTAINER_IMAGES = "starboard.container-images"
ANNOTATION_IMAGE_HASH = "starboard.container.imagehash"

# Set by the Job controller on the Job selector and its Pods
CONTROLLER_UID_LABELS = ("controller-uid", "batch.kubernetes.io/controller-uid")

KIND_POD = "Pod"

# Container name -> image digest
ContainerImages = Dict[str, str]


# =============================================================================
# Client Initialization
# =============================================================================

def load_kube_config():
    """
    Configure the Kubernetes client.

    Attempts in-cluster config first (for running inside K8s),
    falls back to local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.info("Loaded local kubeconfig")
        except config.ConfigException as e:
            logger.error(f"Could not configure Kubernetes client: {e}")
            raise


def is_not_found(error: ApiException) -> bool:
    return error.status == 404


def is_conflict(error: ApiException) -> bool:
    return error.status == 409


def to_label_selector(labels: Dict[str, str]) -> str:
    """Render a MatchingLabels map as a label selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


# =============================================================================
# Workload Resolution
# =============================================================================

def resolve_owner(pod: client.V1Pod) -> WorkloadRef:
    """
    Return the immediate owner of the specified Pod.

    For a Pod controlled by a Deployment this is the active ReplicaSet,
    whereas for an unmanaged Pod the immediate owner is the Pod itself.
    """
    for ref in pod.metadata.owner_references or []:
        if ref.controller:
            return WorkloadRef(kind=ref.kind, namespace=pod.metadata.namespace, name=ref.name)
    return WorkloadRef(kind=KIND_POD, namespace=pod.metadata.namespace, name=pod.metadata.name)


def workload_labels(workload: WorkloadRef) -> Dict[str, str]:
    return {
        LABEL_RESOURCE_NAMESPACE: workload.namespace,
        LABEL_RESOURCE_KIND: workload.kind,
        LABEL_RESOURCE_NAME: workload.name,
    }


def workload_from_labels(labels: Optional[Dict[str, str]]) -> WorkloadRef:
    """
    Rebuild the workload a scan Job was created for from the Job labels.
    """
    labels = labels or {}
    missing = [
        key for key in (LABEL_RESOURCE_KIND, LABEL_RESOURCE_NAMESPACE, LABEL_RESOURCE_NAME)
        if not labels.get(key)
    ]
    if missing:
        raise MalformedDataError(
            f"required labels not found: {', '.join(missing)}",
            details={"labels": missing},
        )
    return WorkloadRef(
        kind=labels[LABEL_RESOURCE_KIND],
        namespace=labels[LABEL_RESOURCE_NAMESPACE],
        name=labels[LABEL_RESOURCE_NAME],
    )


# =============================================================================
# Container Images
# =============================================================================

def get_container_images_from_pod_status(status: client.V1PodStatus) -> ContainerImages:
    """
    Map each container of a Pod to the digest of the image it runs.

    The digest is the part of the resolved image ID after the last colon,
    e.g. `docker.io/library/nginx@sha256:abc` gives `abc`. Returns an empty
    map while any container image has not been resolved yet, so a Pod is
    never scanned with only part of its containers.
    """
    images = {}
    for container in (status.container_statuses if status else None) or []:
        if not container.image_id:
            return {}
        images[container.name] = container.image_id.split(":")[-1]
    return images


def get_container_images_from_job(job: client.V1Job) -> ContainerImages:
    """
    Read the container images annotation set on a scan Job at creation.

    Raises:
        MissingAnnotationError: annotation absent
        MalformedDataError: annotation is not a JSON object of strings
    """
    annotations = job.metadata.annotations or {}
    if ANNOTATION_CONTAINER_IMAGES not in annotations:
        raise MissingAnnotationError(job.metadata.name, ANNOTATION_CONTAINER_IMAGES)
    try:
        images = json.loads(annotations[ANNOTATION_CONTAINER_IMAGES])
    except json.JSONDecodeError as e:
        raise MalformedDataError(
            f"parsing job annotation: {ANNOTATION_CONTAINER_IMAGES}: {e}",
            details={"job": job.metadata.name},
        ) from e
    if not isinstance(images, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in images.items()
    ):
        raise MalformedDataError(
            f"job annotation {ANNOTATION_CONTAINER_IMAGES} is not a map of strings",
            details={"job": job.metadata.name},
        )
    return images


def container_images_to_json(images: ContainerImages) -> str:
    return json.dumps(images, sort_keys=True)


# =============================================================================
# Pod State
# =============================================================================

def has_containers_ready_condition(pod: client.V1Pod) -> bool:
    """
    Check whether the Pod reports the ContainersReady condition.
    """
    for condition in (pod.status.conditions if pod.status else None) or []:
        if condition.type == "ContainersReady":
            return True
    return False


def is_managed_by(obj_labels: Optional[Dict[str, str]], operator_name: str) -> bool:
    return (obj_labels or {}).get(LABEL_MANAGED_BY) == operator_name


def get_terminated_container_statuses(
    pod: client.V1Pod,
) -> Dict[str, client.V1ContainerStateTerminated]:
    """
    Return the terminated state of every terminated container of the Pod,
    keyed by container name.
    """
    statuses = {}
    for status in (pod.status.container_statuses if pod.status else None) or []:
        if status.state and status.state.terminated:
            statuses[status.name] = status.state.terminated
    return statuses


def get_container_names(pod: client.V1Pod) -> List[str]:
    return [container.name for container in pod.spec.containers]

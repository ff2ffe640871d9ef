"""
VulnerabilityReport Store

Reports are stored as `aquasecurity.github.io/v1alpha1` VulnerabilityReport
custom objects in the namespace of the workload they describe:

- name:        <lower(kind)>-<workload name>-<container name>
- labels:      workload kind / name / namespace and container name
- annotation:  digest of the scanned image
- owner:       the live workload object, so reports are garbage collected
               together with the workload

The deterministic name makes writes idempotent: writing a report that
already exists is a 409 Conflict, which is treated as success.

A 409 does not always mean the same scan result. When the stored report
carries a different image digest (the container image changed), the report
is overwritten in place rather than left alone. The name has room for only
one report per container, so keeping the stale record would leave the new
digest uncovered forever and every Pod event would schedule another scan.
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_scanner import kube
from workload_scanner.exceptions import UnknownWorkloadKindError
from workload_scanner.schemas import VulnerabilityScanResult, WorkloadRef

logger = logging.getLogger(__name__)

REPORT_GROUP = "aquasecurity.github.io"
REPORT_VERSION = "v1alpha1"
REPORT_PLURAL = "vulnerabilityreports"
REPORT_KIND = "VulnerabilityReport"


def report_name(workload: WorkloadRef, container_name: str) -> str:
    return f"{workload.kind.lower()}-{workload.name}-{container_name}"


class ReportStore:
    """
    Read / write access to VulnerabilityReports keyed by workload and
    container.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        batch_api: client.BatchV1Api,
        custom_api: client.CustomObjectsApi,
    ):
        self.custom_api = custom_api
        # Workload kind -> (apiVersion, fetch(name, namespace))
        self.owner_fetchers: Dict[str, Tuple[str, Callable]] = {
            "Pod": ("v1", core_api.read_namespaced_pod),
            "ReplicationController": ("v1", core_api.read_namespaced_replication_controller),
            "ReplicaSet": ("apps/v1", apps_api.read_namespaced_replica_set),
            "Deployment": ("apps/v1", apps_api.read_namespaced_deployment),
            "StatefulSet": ("apps/v1", apps_api.read_namespaced_stateful_set),
            "DaemonSet": ("apps/v1", apps_api.read_namespaced_daemon_set),
            "CronJob": ("batch/v1", batch_api.read_namespaced_cron_job),
            "Job": ("batch/v1", batch_api.read_namespaced_job),
        }

    # =========================================================================
    # Write
    # =========================================================================

    def write(
        self,
        workload: WorkloadRef,
        reports: Dict[str, VulnerabilityScanResult],
        images: kube.ContainerImages,
    ):
        """
        Create one VulnerabilityReport per container.

        Every container is attempted; reports written before a failure are
        kept. The first failure is raised once all containers were tried.
        """
        owner_reference = self._get_owner_reference(workload)

        first_error = None
        for container_name, report in sorted(reports.items()):
            body = self._new_report(
                workload, container_name, images.get(container_name, ""), report, owner_reference
            )
            try:
                self._create_or_replace(body)
            except ApiException as e:
                logger.error(
                    f"Failed to write VulnerabilityReport {body['metadata']['name']} "
                    f"for {workload}: {e.status} {e.reason}"
                )
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def _get_owner_reference(self, workload: WorkloadRef) -> Dict[str, str]:
        if workload.kind not in self.owner_fetchers:
            raise UnknownWorkloadKindError(workload.kind)
        api_version, fetch = self.owner_fetchers[workload.kind]
        owner = fetch(name=workload.name, namespace=workload.namespace)
        return {
            "apiVersion": owner.api_version or api_version,
            "kind": workload.kind,
            "name": owner.metadata.name,
            "uid": owner.metadata.uid,
        }

    def _new_report(
        self,
        workload: WorkloadRef,
        container_name: str,
        image_digest: str,
        report: VulnerabilityScanResult,
        owner_reference: Dict[str, str],
    ) -> dict:
        return {
            "apiVersion": f"{REPORT_GROUP}/{REPORT_VERSION}",
            "kind": REPORT_KIND,
            "metadata": {
                "name": report_name(workload, container_name),
                "namespace": workload.namespace,
                "labels": {
                    kube.LABEL_RESOURCE_KIND: workload.kind,
                    kube.LABEL_RESOURCE_NAME: workload.name,
                    kube.LABEL_RESOURCE_NAMESPACE: workload.namespace,
                    kube.LABEL_CONTAINER_NAME: container_name,
                },
                "annotations": {
                    kube.ANNOTATION_IMAGE_HASH: image_digest,
                },
                "ownerReferences": [owner_reference],
            },
            "report": report.to_report(),
        }

    def _create_or_replace(self, body: dict):
        """
        Create the report; on a name conflict keep the existing record if it
        describes the same digest, otherwise replace it in place.
        """
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        digest = body["metadata"]["annotations"][kube.ANNOTATION_IMAGE_HASH]

        try:
            self._create(body)
            logger.info(f"Created VulnerabilityReport {namespace}/{name}")
            return
        except ApiException as e:
            if not kube.is_conflict(e):
                raise

        try:
            existing = self.custom_api.get_namespaced_custom_object(
                group=REPORT_GROUP,
                version=REPORT_VERSION,
                namespace=namespace,
                plural=REPORT_PLURAL,
                name=name,
            )
        except ApiException as e:
            if not kube.is_not_found(e):
                raise
            # Deleted since the conflict, create it again
            try:
                self._create(body)
                logger.info(f"Created VulnerabilityReport {namespace}/{name}")
            except ApiException as e:
                if not kube.is_conflict(e):
                    raise
            return

        existing_digest = (existing["metadata"].get("annotations") or {}).get(kube.ANNOTATION_IMAGE_HASH)
        if existing_digest == digest:
            logger.debug(f"VulnerabilityReport {namespace}/{name} already exists")
            return

        body["metadata"]["resourceVersion"] = existing["metadata"].get("resourceVersion")
        try:
            self.custom_api.replace_namespaced_custom_object(
                group=REPORT_GROUP,
                version=REPORT_VERSION,
                namespace=namespace,
                plural=REPORT_PLURAL,
                name=name,
                body=body,
            )
            logger.info(
                f"Replaced VulnerabilityReport {namespace}/{name} "
                f"(image digest {existing_digest} -> {digest})"
            )
        except ApiException as e:
            if not kube.is_conflict(e):
                raise
            logger.debug(f"VulnerabilityReport {namespace}/{name} was updated concurrently")

    def _create(self, body: dict):
        self.custom_api.create_namespaced_custom_object(
            group=REPORT_GROUP,
            version=REPORT_VERSION,
            namespace=body["metadata"]["namespace"],
            plural=REPORT_PLURAL,
            body=body,
        )

    # =========================================================================
    # Read
    # =========================================================================

    def read(
        self, workload: WorkloadRef, image_digest: str, container_name: Optional[str] = None
    ) -> Optional[dict]:
        """
        Return the stored findings of the workload for the given image digest,
        or None when no report matches.

        Reports are selected by the workload labels (and the container label
        when given); the digest annotation must match exactly.
        """
        selector = {
            kube.LABEL_RESOURCE_KIND: workload.kind,
            kube.LABEL_RESOURCE_NAME: workload.name,
        }
        if container_name is not None:
            selector[kube.LABEL_CONTAINER_NAME] = container_name

        report_list = self.custom_api.list_namespaced_custom_object(
            group=REPORT_GROUP,
            version=REPORT_VERSION,
            namespace=workload.namespace,
            plural=REPORT_PLURAL,
            label_selector=kube.to_label_selector(selector),
        )

        for item in report_list.get("items", []):
            annotations = item.get("metadata", {}).get("annotations") or {}
            if annotations.get(kube.ANNOTATION_IMAGE_HASH) == image_digest:
                return item.get("report")
        return None

    def has_vulnerability_reports(self, workload: WorkloadRef, images: kube.ContainerImages) -> bool:
        """
        True only when every container image of the workload has a report
        for its current digest.
        """
        for container_name, image_digest in images.items():
            if self.read(workload, image_digest, container_name) is None:
                return False
        return True

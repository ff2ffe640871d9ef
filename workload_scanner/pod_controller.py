"""
Pod Reconciler

The desired state is that every container image of the workload managing a
Pod has a VulnerabilityReport. Since scanning is asynchronous, a pending scan
Job for the workload also counts as the desired state.

Kubernetes delivers events for a Pod many times over its lifecycle, so
reconcile() must be idempotent: it never creates a second scan Job for the
same workload and never scans a workload that is already covered.
"""

import logging
from typing import Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_scanner import kube
from workload_scanner.config import InstallMode, OperatorConfig
from workload_scanner.reports import ReportStore
from workload_scanner.scan_jobs import ScanJobManager

logger = logging.getLogger(__name__)


def ignore_pod_in_operator_namespace(operator_config: OperatorConfig, namespace: str) -> bool:
    """
    Decide whether Pods of the given namespace are excluded by the install mode.

    The operator namespace is always watched because scan Jobs run there, but
    workloads running in it are only scanned when it is a target namespace
    itself (or the operator watches everything).
    """
    if namespace != operator_config.namespace:
        return False

    install_mode = operator_config.get_install_mode()
    if install_mode == InstallMode.SINGLE_NAMESPACE:
        return True
    if install_mode == InstallMode.MULTI_NAMESPACE:
        return operator_config.namespace not in operator_config.get_target_namespaces()
    return False


def admit_pod(operator_config: OperatorConfig, pod: client.V1Pod) -> Optional[str]:
    """
    Return the reason to skip the Pod, or None when it should be scanned.
    """
    if ignore_pod_in_operator_namespace(operator_config, pod.metadata.namespace):
        return "Pod runs in the operator namespace"
    # Pods of scan Jobs created by this operator
    if kube.is_managed_by(pod.metadata.labels, operator_config.name):
        return "Pod is managed by this operator"
    if pod.metadata.deletion_timestamp is not None:
        return "Pod is being terminated"
    if not kube.has_containers_ready_condition(pod):
        return "Pod is being scheduled"
    return None


class PodReconciler:

    def __init__(
        self,
        core_api: client.CoreV1Api,
        store: ReportStore,
        scan_jobs: ScanJobManager,
        operator_config: OperatorConfig,
    ):
        self.core_api = core_api
        self.store = store
        self.scan_jobs = scan_jobs
        self.config = operator_config

    def reconcile(self, namespace: str, name: str):
        """
        Reconcile a single Pod.

        Raises:
            ApiException: transport errors, for the caller to redeliver
        """
        pod_key = f"{namespace}/{name}"

        if ignore_pod_in_operator_namespace(self.config, namespace):
            logger.debug(f"Ignoring Pod {pod_key} run in the operator namespace")
            return

        try:
            pod = self.core_api.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if kube.is_not_found(e):
                logger.debug(f"Ignoring Pod {pod_key} that must have been deleted")
                return
            raise

        reason = admit_pod(self.config, pod)
        if reason:
            logger.debug(f"Ignoring Pod {pod_key}: {reason}")
            return

        workload = kube.resolve_owner(pod)
        logger.debug(f"Resolved immediate owner of Pod {pod_key}: {workload}")

        images = kube.get_container_images_from_pod_status(pod.status)
        if not images:
            logger.debug(f"Ignoring Pod {pod_key} without resolved container images")
            return

        if self.store.has_vulnerability_reports(workload, images):
            logger.debug(f"Ignoring Pod {pod_key} that already has VulnerabilityReports")
            return

        self.scan_jobs.ensure_scan_job(workload, pod, images)

"""
Scan Job Lifecycle

At most one scan Job runs per workload. This is achieved without locks:
- before creating a Job, existing Jobs are looked up by the workload labels
- the Job name is derived from the workload, so a concurrent create of the
  same Job fails with 409 Conflict, which counts as success
"""

import logging

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_scanner import kube
from workload_scanner.config import OperatorConfig
from workload_scanner.exceptions import MissingSelectorError, PodResolutionError
from workload_scanner.scanner import TrivyScanner
from workload_scanner.schemas import WorkloadRef

logger = logging.getLogger(__name__)


class ScanJobManager:

    def __init__(
        self,
        batch_api: client.BatchV1Api,
        core_api: client.CoreV1Api,
        scanner: TrivyScanner,
        operator_config: OperatorConfig,
    ):
        self.batch_api = batch_api
        self.core_api = core_api
        self.scanner = scanner
        self.config = operator_config

    def ensure_scan_job(self, workload: WorkloadRef, pod: client.V1Pod, images: kube.ContainerImages):
        """
        Make sure a scan Job exists for the workload.

        Raises:
            ApiException: listing or creating Jobs failed (retryable)
        """
        job_list = self.batch_api.list_namespaced_job(
            namespace=self.config.namespace,
            label_selector=kube.to_label_selector(kube.workload_labels(workload)),
        )
        if job_list.items:
            existing = job_list.items[0]
            logger.debug(
                f"Scan job already exists: {existing.metadata.namespace}/{existing.metadata.name}"
            )
            return

        scan_job = self.scanner.new_scan_job(workload, pod, images)
        logger.info(
            f"Creating scan job {scan_job.metadata.namespace}/{scan_job.metadata.name} for {workload}"
        )
        try:
            self.batch_api.create_namespaced_job(namespace=self.config.namespace, body=scan_job)
        except ApiException as e:
            if not kube.is_conflict(e):
                raise
            logger.debug(f"Scan job {scan_job.metadata.name} was created concurrently")

    def get_pod_controlled_by(self, job: client.V1Job) -> client.V1Pod:
        """
        Return the single Pod created by the scan Job.

        Raises:
            MissingSelectorError: the Job selector has no controller-uid label
            PodResolutionError: zero or several Pods match the selector
        """
        job_name = f"{job.metadata.namespace}/{job.metadata.name}"
        match_labels = {}
        if job.spec and job.spec.selector and job.spec.selector.match_labels:
            match_labels = job.spec.selector.match_labels

        for label in kube.CONTROLLER_UID_LABELS:
            if label in match_labels:
                selector = {label: match_labels[label]}
                break
        else:
            raise MissingSelectorError(job_name)

        pod_list = self.core_api.list_namespaced_pod(
            namespace=job.metadata.namespace,
            label_selector=kube.to_label_selector(selector),
        )
        if len(pod_list.items) != 1:
            raise PodResolutionError(job_name, len(pod_list.items))
        return pod_list.items[0]

    def delete_scan_job(self, job: client.V1Job):
        """Delete the Job and, in the background, its Pods."""
        logger.info(f"Deleting scan job {job.metadata.namespace}/{job.metadata.name}")
        try:
            self.batch_api.delete_namespaced_job(
                name=job.metadata.name,
                namespace=job.metadata.namespace,
                propagation_policy="Background",
            )
        except ApiException as e:
            if not kube.is_not_found(e):
                raise
            logger.debug(f"Scan job {job.metadata.name} already deleted")

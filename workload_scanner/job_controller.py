"""
Scan Job Reconciler

Harvests finished scan Jobs:
- Complete: read the Trivy report from each container log, write one
  VulnerabilityReport per container, delete the Job
- Failed:   log why each scan container failed, delete the Job

Every finished Job is deleted once processed, whatever the outcome. A Job
that cannot be processed (malformed labels or annotations, no single Pod)
is deleted as well, since redelivery cannot fix it. When a scan is lost
this way the workload still has no reports, so the next Pod event
schedules a new scan.
"""

import logging
from typing import Dict, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_scanner import kube
from workload_scanner.config import OperatorConfig
from workload_scanner.exceptions import (
    MalformedDataError,
    MissingAnnotationError,
    MissingSelectorError,
    PodResolutionError,
    ScanOperatorError,
    ScanReportParseError,
)
from workload_scanner.logs import LogsReader
from workload_scanner.reports import ReportStore
from workload_scanner.scan_jobs import ScanJobManager
from workload_scanner.scanner import TrivyScanner
from workload_scanner.schemas import VulnerabilityScanResult

logger = logging.getLogger(__name__)

JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"


def get_terminal_condition(job: client.V1Job) -> Optional[str]:
    """
    Return Complete or Failed when the Job reached that condition, else None.
    """
    for condition in (job.status.conditions if job.status else None) or []:
        if condition.type in (JOB_COMPLETE, JOB_FAILED) and condition.status == "True":
            return condition.type
    return None


class JobReconciler:

    def __init__(
        self,
        batch_api: client.BatchV1Api,
        store: ReportStore,
        scan_jobs: ScanJobManager,
        scanner: TrivyScanner,
        logs_reader: LogsReader,
        operator_config: OperatorConfig,
    ):
        self.batch_api = batch_api
        self.store = store
        self.scan_jobs = scan_jobs
        self.scanner = scanner
        self.logs_reader = logs_reader
        self.config = operator_config

    def reconcile(self, namespace: str, name: str):
        """
        Reconcile a single scan Job.

        Raises:
            ApiException: transport errors, for the caller to redeliver
        """
        job_key = f"{namespace}/{name}"

        if namespace != self.config.namespace:
            logger.debug(f"Ignoring Job {job_key} not managed by this operator")
            return

        try:
            job = self.batch_api.read_namespaced_job(name=name, namespace=namespace)
        except ApiException as e:
            if kube.is_not_found(e):
                logger.debug(f"Ignoring Job {job_key} that must have been deleted")
                return
            raise

        if not kube.is_managed_by(job.metadata.labels, self.config.name):
            logger.debug(f"Ignoring Job {job_key} not managed by this operator")
            return

        condition = get_terminal_condition(job)
        if condition == JOB_COMPLETE:
            self.process_complete_scan_job(job)
        elif condition == JOB_FAILED:
            self.process_failed_scan_job(job)
        else:
            logger.debug(f"Ignoring Job {job_key} without a terminal condition")

    def process_complete_scan_job(self, job: client.V1Job):
        job_key = f"{job.metadata.namespace}/{job.metadata.name}"

        try:
            workload = kube.workload_from_labels(job.metadata.labels)
            images = kube.get_container_images_from_job(job)
        except (MalformedDataError, MissingAnnotationError) as e:
            logger.error(f"Discarding scan job {job_key}: {e.message}")
            self.scan_jobs.delete_scan_job(job)
            return

        if self.store.has_vulnerability_reports(workload, images):
            logger.debug(f"VulnerabilityReports already exist for {workload}")
            self.scan_jobs.delete_scan_job(job)
            return

        try:
            pod = self.scan_jobs.get_pod_controlled_by(job)
        except (MissingSelectorError, PodResolutionError) as e:
            logger.warning(f"Getting pod controlled by {job_key}: {e.message}")
            self.scan_jobs.delete_scan_job(job)
            return

        reports = self._harvest(pod, images)
        if reports is None:
            self.scan_jobs.delete_scan_job(job)
            return

        logger.info(f"Writing VulnerabilityReports for {workload}")
        try:
            self.store.write(workload, reports, images)
        except (ApiException, ScanOperatorError) as e:
            # The workload stays uncovered and is scanned again on the next Pod event
            logger.error(f"Error writing VulnerabilityReports for {workload}: {e}")

        self.scan_jobs.delete_scan_job(job)

    def _harvest(
        self, pod: client.V1Pod, images: kube.ContainerImages
    ) -> Optional[Dict[str, VulnerabilityScanResult]]:
        """
        Parse the report of every scan container, or return None when any
        container cannot be read or parsed.
        """
        pod_key = f"{pod.metadata.namespace}/{pod.metadata.name}"
        reports = {}
        for container_name in kube.get_container_names(pod):
            try:
                log_stream = self.logs_reader.get_logs_for_pod(
                    pod.metadata.namespace, pod.metadata.name, container_name
                )
            except ApiException as e:
                logger.warning(
                    f"Error getting logs of container {container_name} in pod {pod_key}: "
                    f"{e.status} {e.reason}"
                )
                return None

            try:
                reports[container_name] = self.scanner.parse_vulnerability_report(
                    images.get(container_name, ""), log_stream
                )
            except ScanReportParseError as e:
                logger.warning(
                    f"Error generating vulnerability report from logs of container "
                    f"{container_name} in pod {pod_key}: {e.message}"
                )
                return None
            finally:
                log_stream.close()
        return reports

    def process_failed_scan_job(self, job: client.V1Job):
        job_key = f"{job.metadata.namespace}/{job.metadata.name}"

        try:
            pod = self.scan_jobs.get_pod_controlled_by(job)
        except (MissingSelectorError, PodResolutionError) as e:
            logger.warning(f"Getting pod controlled by {job_key}: {e.message}")
            self.scan_jobs.delete_scan_job(job)
            return

        labels = pod.metadata.labels or {}
        statuses = kube.get_terminated_container_statuses(pod)
        for container_name, status in sorted(statuses.items()):
            if status.exit_code == 0:
                continue
            logger.error(
                f"Scan job container {container_name} failed: "
                f"workload={labels.get(kube.LABEL_RESOURCE_KIND)}/{labels.get(kube.LABEL_RESOURCE_NAME)} "
                f"namespace={labels.get(kube.LABEL_RESOURCE_NAMESPACE)} "
                f"exit_code={status.exit_code} reason={status.reason} message={status.message}"
            )

        self.scan_jobs.delete_scan_job(job)

"""
Trivy Scanner for Workload Scanner Operator

The scanner has two halves:
1. new_scan_job() builds the Kubernetes Job that runs Trivy once per
   container of a workload. Each Trivy container prints its JSON report on
   stdout, so the report ends up in the container log.
2. parse_vulnerability_report() turns one container log back into the
   findings payload stored in a VulnerabilityReport.

Security Design Decisions:
- Scan Jobs run under a dedicated service account
- Resource limits prevent a large image from starving the node
- Job is never retried by Kubernetes (backoffLimit 0); failures are
  reported by the operator and the Job is deleted
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from kubernetes import client
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from workload_scanner import kube
from workload_scanner.config import OperatorConfig
from workload_scanner.exceptions import ScanReportParseError
from workload_scanner.schemas import (
    Artifact,
    Registry,
    Scanner,
    Severity,
    Vulnerability,
    VulnerabilityScanResult,
    VulnerabilitySummary,
    WorkloadRef,
)

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "index.docker.io"


def scan_job_name(workload: WorkloadRef) -> str:
    """
    Deterministic Job name for a workload.

    Two reconcilers racing to create the scan Job for the same workload
    compute the same name, so the loser gets a 409 Conflict.
    """
    key = f"{workload.namespace}/{workload.kind}/{workload.name}"
    return f"scan-vulnerabilityreport-{hashlib.sha256(key.encode()).hexdigest()[:10]}"


class TrivyScanner:
    """
    Builds Trivy scan Jobs and parses their output.
    """

    def __init__(self, operator_config: OperatorConfig):
        self.config = operator_config

    @property
    def version(self) -> str:
        image = self.config.trivy_image.rsplit("/", 1)[-1]
        return image.split(":", 1)[1] if ":" in image else ""

    def new_scan_job(
        self, workload: WorkloadRef, pod: client.V1Pod, images: kube.ContainerImages
    ) -> client.V1Job:
        """
        Create the Job spec scanning the images of the given Pod.

        Args:
            workload: Owner the scan is attributed to
            pod: Pod whose container statuses give the image references
            images: Container name -> image digest, stored on the Job so the
                completion handler knows which digests were scanned
        """
        job_labels = dict(kube.workload_labels(workload))
        job_labels[kube.LABEL_MANAGED_BY] = self.config.name

        image_refs = {
            status.name: status.image
            for status in (pod.status.container_statuses or [])
        }

        containers = [
            self._new_scan_container(container_name, image_refs[container_name])
            for container_name in sorted(images)
            if image_refs.get(container_name)
        ]

        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(
                name=scan_job_name(workload),
                namespace=self.config.namespace,
                labels=job_labels,
                annotations={
                    kube.ANNOTATION_CONTAINER_IMAGES: kube.container_images_to_json(images),
                },
            ),
            spec=client.V1JobSpec(
                # Don't retry failed jobs (the operator deletes them)
                backoff_limit=0,
                active_deadline_seconds=self.config.scan_job_timeout,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=job_labels),
                    spec=client.V1PodSpec(
                        restart_policy="Never",
                        service_account_name=self.config.service_account,
                        automount_service_account_token=False,
                        containers=containers,
                        volumes=[
                            client.V1Volume(
                                name="tmp",
                                empty_dir=client.V1EmptyDirVolumeSource(),
                            ),
                        ],
                    ),
                ),
            ),
        )

    def _new_scan_container(self, container_name: str, image_ref: str) -> client.V1Container:
        # --format json: report goes to stdout, read back from the container log
        # --quiet / --no-progress: nothing else on stdout
        return client.V1Container(
            name=container_name,
            image=self.config.trivy_image,
            image_pull_policy="IfNotPresent",
            command=["trivy"],
            args=[
                "--quiet",
                "image",
                "--format", "json",
                "--severity", self.config.trivy_severity,
                "--timeout", f"{self.config.trivy_timeout}s",
                "--cache-dir", "/tmp/trivy/.cache",
                "--no-progress",
                image_ref,
            ],
            resources=client.V1ResourceRequirements(
                requests={"memory": "256Mi", "cpu": "100m"},
                limits={"memory": "1Gi", "cpu": "500m"},
            ),
            volume_mounts=[client.V1VolumeMount(name="tmp", mount_path="/tmp")],
        )

    def parse_vulnerability_report(self, image_digest: str, log_stream) -> VulnerabilityScanResult:
        """
        Parse the Trivy JSON report read from a scan container log.

        Args:
            image_digest: Digest of the scanned image
            log_stream: File-like object with the container log

        Returns:
            Findings for the image

        Raises:
            ScanReportParseError: If the log cannot be read or is not a
                Trivy JSON report
        """
        try:
            raw = log_stream.read()
        except (HTTPError, OSError) as e:
            raise ScanReportParseError(image_digest, f"reading container log: {e}") from e
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        if not raw.strip():
            # Empty output means no vulnerabilities found
            logger.warning(f"Trivy returned empty output for image {image_digest}")
            trivy_output = {"Results": []}
        else:
            try:
                trivy_output = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.error(f"Raw output: {raw[:500]}")
                raise ScanReportParseError(image_digest, str(e)) from e

        if not isinstance(trivy_output, dict):
            raise ScanReportParseError(image_digest, "report is not a JSON object")

        # Valid JSON may still not have the Trivy report shape
        try:
            vulnerabilities = parse_vulnerabilities(trivy_output)
            server, repository, tag = parse_artifact_name(trivy_output.get("ArtifactName") or "")

            return VulnerabilityScanResult(
                update_timestamp=datetime.now(timezone.utc),
                scanner=Scanner(version=self.version),
                registry=Registry(server=server),
                artifact=Artifact(repository=repository, tag=tag, digest=image_digest),
                summary=summarize(vulnerabilities),
                vulnerabilities=vulnerabilities,
            )
        except (ValidationError, TypeError, AttributeError) as e:
            raise ScanReportParseError(image_digest, f"unexpected report structure: {e}") from e


def parse_vulnerabilities(trivy_output: Dict) -> List[Vulnerability]:
    """
    Extract vulnerability records from Trivy JSON output.

    Trivy output structure:
    {
        "ArtifactName": "nginx:1.16",
        "Results": [
            {
                "Target": "nginx:1.16 (debian 10.3)",
                "Type": "debian",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2021-44228",
                        "PkgName": "log4j",
                        "InstalledVersion": "2.14.0",
                        "FixedVersion": "2.17.0",
                        "Severity": "CRITICAL",
                        "Title": "...",
                        "Description": "...",
                        "PrimaryURL": "...",
                        "References": ["..."]
                    }
                ]
            }
        ]
    }
    """
    vulnerabilities = []

    for result in trivy_output.get("Results") or []:
        target = result.get("Target", "")
        pkg_type = result.get("Type", "")

        for vuln in result.get("Vulnerabilities") or []:
            severity = vuln.get("Severity", "UNKNOWN")
            if severity not in Severity.__members__:
                severity = "UNKNOWN"
            vulnerabilities.append(Vulnerability(
                vulnerability_id=vuln.get("VulnerabilityID", "UNKNOWN"),
                resource=vuln.get("PkgName", ""),
                installed_version=vuln.get("InstalledVersion", ""),
                fixed_version=vuln.get("FixedVersion", ""),
                severity=Severity(severity),
                title=vuln.get("Title")[:500] if vuln.get("Title") else None,
                description=vuln.get("Description")[:2000] if vuln.get("Description") else None,
                primary_link=vuln.get("PrimaryURL") or None,
                links=vuln.get("References") or [],
                target=target[:500] if target else None,
                pkg_type=pkg_type[:64] if pkg_type else None,
            ))

    logger.debug(f"Parsed {len(vulnerabilities)} vulnerabilities from Trivy output")
    return vulnerabilities


def summarize(vulnerabilities: List[Vulnerability]) -> VulnerabilitySummary:
    counts = {severity: 0 for severity in Severity}
    for vuln in vulnerabilities:
        counts[vuln.severity] += 1

    return VulnerabilitySummary(
        critical_count=counts[Severity.CRITICAL],
        high_count=counts[Severity.HIGH],
        medium_count=counts[Severity.MEDIUM],
        low_count=counts[Severity.LOW],
        unknown_count=counts[Severity.UNKNOWN],
    )


def parse_artifact_name(artifact_name: str) -> Tuple[str, str, str]:
    """
    Split an image reference into (registry server, repository, tag).

    nginx:1.16                     -> (index.docker.io, library/nginx, 1.16)
    quay.io/org/app@sha256:abc     -> (quay.io, org/app, "")
    """
    if not artifact_name:
        return "", "", ""

    name = artifact_name.split("@", 1)[0]
    tag = ""
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1:]

    server = DEFAULT_REGISTRY
    first, _, rest = name.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        server, name = first, rest
    elif not rest:
        name = f"library/{name}"

    return server, name, tag

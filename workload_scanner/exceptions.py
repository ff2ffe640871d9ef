"""
Operator Exceptions

Errors raised by the reconcilers for input that cannot be fixed by
redelivering the same event (malformed scan Jobs, missing selectors,
unparsable scanner output). Transport errors from the Kubernetes API are
left as kubernetes.client.exceptions.ApiException.
"""

from typing import Any, Dict, Optional


class ScanOperatorError(Exception):
    """
    Base exception for all operator errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code for log records
        details: Additional context (e.g., job name, container name)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "OPERATOR_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class MissingAnnotationError(ScanOperatorError):
    """Raised when a scan Job lacks a required annotation."""

    def __init__(self, job_name: str, annotation: str):
        super().__init__(
            message=f"job {job_name} does not have required annotation: {annotation}",
            error_code="MISSING_ANNOTATION",
            details={"job": job_name, "annotation": annotation},
        )
        self.annotation = annotation


class MalformedDataError(ScanOperatorError):
    """Raised when labels or annotations of a scan Job cannot be parsed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, error_code="MALFORMED_DATA", details=details)


class MissingSelectorError(ScanOperatorError):
    """Raised when a scan Job has no controller-uid selector label."""

    def __init__(self, job_name: str):
        super().__init__(
            message=f"controller-uid not found for job {job_name}",
            error_code="MISSING_SELECTOR",
            details={"job": job_name},
        )


class PodResolutionError(ScanOperatorError):
    """Raised when a scan Job does not control exactly one Pod."""

    def __init__(self, job_name: str, pod_count: int):
        super().__init__(
            message=f"expected 1 Pod controlled by job {job_name}, but got {pod_count}",
            error_code="POD_RESOLUTION_FAILED",
            details={"job": job_name, "pod_count": pod_count},
        )
        self.pod_count = pod_count


class UnknownWorkloadKindError(ScanOperatorError):
    """Raised when a report owner has a kind the operator cannot fetch."""

    def __init__(self, kind: str):
        super().__init__(
            message=f"unknown workload kind: {kind}",
            error_code="UNKNOWN_WORKLOAD_KIND",
            details={"kind": kind},
        )
        self.kind = kind


class ScanReportParseError(ScanOperatorError):
    """Raised when scanner output read from a container log is not a report."""

    def __init__(self, image_digest: str, reason: str):
        super().__init__(
            message=f"failed to parse scan report for image {image_digest}: {reason}",
            error_code="SCAN_REPORT_PARSE_FAILED",
            details={"image_digest": image_digest},
        )

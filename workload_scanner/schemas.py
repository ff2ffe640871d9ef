"""
Pydantic Schemas for Workload Scanner Operator

This module defines:
- WorkloadRef, the key scan Jobs and reports are attributed to
- The findings payload stored in the `report` field of VulnerabilityReport
  objects (serialized with camelCase aliases)
- Response schemas of the health endpoints
"""

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Severity(str, enum.Enum):
    """
    CVE severity levels as reported by Trivy.
    """
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"


class WorkloadRef(BaseModel):
    """
    Identifies the workload (Pod, ReplicaSet, StatefulSet, ...) a scan Job
    or a VulnerabilityReport belongs to.
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


# =============================================================================
# Report Payload
# =============================================================================

class ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Scanner(ReportModel):
    name: str = "Trivy"
    vendor: str = "Aqua Security"
    version: str = ""


class Registry(ReportModel):
    server: str = ""


class Artifact(ReportModel):
    repository: str = ""
    tag: str = ""
    digest: str = ""


class VulnerabilitySummary(ReportModel):
    """
    Vulnerability counts by severity, denormalized for quick listing.
    """
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    unknown_count: int = 0


class Vulnerability(ReportModel):
    """
    A single CVE found in one package of the scanned image.
    """
    vulnerability_id: str = Field(..., alias="vulnerabilityID")
    resource: str = Field(..., description="Name of the vulnerable package")
    installed_version: str = ""
    fixed_version: str = ""
    severity: Severity = Severity.UNKNOWN
    title: Optional[str] = None
    description: Optional[str] = None
    primary_link: Optional[str] = None
    links: List[str] = []
    target: Optional[str] = None
    pkg_type: Optional[str] = None


class VulnerabilityScanResult(ReportModel):
    """
    Findings for one container image, as stored in a VulnerabilityReport.
    """
    update_timestamp: datetime
    scanner: Scanner = Scanner()
    registry: Registry = Registry()
    artifact: Artifact = Artifact()
    summary: VulnerabilitySummary = VulnerabilitySummary()
    vulnerabilities: List[Vulnerability] = []

    def to_report(self) -> dict:
        """Serialize to the JSON shape of the custom object `report` field."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Health Schemas
# =============================================================================

class HealthResponse(BaseModel):
    status: str = "healthy"
    kubernetes: str = "connected"
    version: str = "0.1.0"


class ReadinessResponse(BaseModel):
    status: str = "ready"

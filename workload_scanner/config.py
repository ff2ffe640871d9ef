"""
Operator Configuration for Workload Scanner

All settings are loaded from environment variables so the operator can be
configured from its Deployment manifest (ConfigMaps / Secrets mounted as env
vars). This follows the 12-factor app methodology for configuration.

The install mode is not configured directly; it is derived from the operator
namespace and the list of target namespaces:

- AllNamespaces:   no target namespaces, watch the whole cluster
- OwnNamespace:    the only target namespace is the operator namespace
- SingleNamespace: exactly one target namespace, other than the operator's
- MultiNamespace:  several target namespaces
"""

import enum
import os
from typing import List

from pydantic import BaseModel, Field

# Load configuration from environment variables
OPERATOR_NAME = os.getenv("OPERATOR_NAME", "workload-scanner-operator")
OPERATOR_NAMESPACE = os.getenv("OPERATOR_NAMESPACE", "workload-scanner")
OPERATOR_TARGET_NAMESPACES = os.getenv("OPERATOR_TARGET_NAMESPACES", "")
OPERATOR_SERVICE_ACCOUNT = os.getenv("OPERATOR_SERVICE_ACCOUNT", "workload-scanner")
OPERATOR_SCAN_JOB_TIMEOUT = os.getenv("OPERATOR_SCAN_JOB_TIMEOUT", "300")
OPERATOR_LOG_LEVEL = os.getenv("OPERATOR_LOG_LEVEL", "INFO")
OPERATOR_HEALTH_PORT = os.getenv("OPERATOR_HEALTH_PORT", "8080")

# Trivy configuration
TRIVY_IMAGE = os.getenv("TRIVY_IMAGE", "aquasec/trivy:0.50.1")
TRIVY_SEVERITY = os.getenv("TRIVY_SEVERITY", "CRITICAL,HIGH,MEDIUM,LOW,UNKNOWN")
TRIVY_TIMEOUT = os.getenv("TRIVY_TIMEOUT", "600")


class InstallMode(str, enum.Enum):
    OWN_NAMESPACE = "OwnNamespace"
    SINGLE_NAMESPACE = "SingleNamespace"
    MULTI_NAMESPACE = "MultiNamespace"
    ALL_NAMESPACES = "AllNamespaces"


class OperatorConfig(BaseModel):
    """
    Settings shared by the reconcilers, the scan Job builder and the
    entry point.
    """
    name: str = OPERATOR_NAME
    namespace: str = Field(default=OPERATOR_NAMESPACE, min_length=1)
    target_namespaces: str = OPERATOR_TARGET_NAMESPACES
    service_account: str = OPERATOR_SERVICE_ACCOUNT
    scan_job_timeout: int = Field(default=int(OPERATOR_SCAN_JOB_TIMEOUT), gt=0)
    log_level: str = OPERATOR_LOG_LEVEL
    health_port: int = int(OPERATOR_HEALTH_PORT)
    trivy_image: str = TRIVY_IMAGE
    trivy_severity: str = TRIVY_SEVERITY
    trivy_timeout: int = Field(default=int(TRIVY_TIMEOUT), gt=0)

    @classmethod
    def from_env(cls) -> "OperatorConfig":
        """Build the configuration from the current process environment."""
        return cls(
            name=os.getenv("OPERATOR_NAME", OPERATOR_NAME),
            namespace=os.getenv("OPERATOR_NAMESPACE", OPERATOR_NAMESPACE),
            target_namespaces=os.getenv("OPERATOR_TARGET_NAMESPACES", OPERATOR_TARGET_NAMESPACES),
            service_account=os.getenv("OPERATOR_SERVICE_ACCOUNT", OPERATOR_SERVICE_ACCOUNT),
            scan_job_timeout=os.getenv("OPERATOR_SCAN_JOB_TIMEOUT", OPERATOR_SCAN_JOB_TIMEOUT),
            log_level=os.getenv("OPERATOR_LOG_LEVEL", OPERATOR_LOG_LEVEL),
            health_port=os.getenv("OPERATOR_HEALTH_PORT", OPERATOR_HEALTH_PORT),
            trivy_image=os.getenv("TRIVY_IMAGE", TRIVY_IMAGE),
            trivy_severity=os.getenv("TRIVY_SEVERITY", TRIVY_SEVERITY),
            trivy_timeout=os.getenv("TRIVY_TIMEOUT", TRIVY_TIMEOUT),
        )

    def get_target_namespaces(self) -> List[str]:
        return [ns.strip() for ns in self.target_namespaces.split(",") if ns.strip()]

    def get_install_mode(self) -> InstallMode:
        target_namespaces = self.get_target_namespaces()
        if not target_namespaces:
            return InstallMode.ALL_NAMESPACES
        if len(target_namespaces) == 1:
            if target_namespaces[0] == self.namespace:
                return InstallMode.OWN_NAMESPACE
            return InstallMode.SINGLE_NAMESPACE
        return InstallMode.MULTI_NAMESPACE

    def get_watched_namespaces(self) -> List[str]:
        """
        Namespaces the operator must watch: the target namespaces plus the
        operator namespace, where scan Jobs run. Empty means cluster-wide.
        """
        target_namespaces = self.get_target_namespaces()
        if not target_namespaces:
            return []
        if self.namespace not in target_namespaces:
            target_namespaces.append(self.namespace)
        return target_namespaces

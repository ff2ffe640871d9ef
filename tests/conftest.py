"""
Pytest Configuration and Shared Fixtures
========================================
In-memory stand-ins for the Kubernetes API groups used by the operator.
They keep objects in dicts and enforce the API server semantics the
reconcilers depend on: 404 for missing objects, 409 for duplicate names.
"""

import copy
import io
import json
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_scanner import kube
from workload_scanner.config import OperatorConfig
from workload_scanner.job_controller import JobReconciler
from workload_scanner.logs import LogsReader
from workload_scanner.pod_controller import PodReconciler
from workload_scanner.reports import ReportStore
from workload_scanner.scan_jobs import ScanJobManager
from workload_scanner.scanner import TrivyScanner

OPERATOR_NAMESPACE = "scanner-system"
OPERATOR_NAME = "workload-scanner-operator"


def parse_selector(label_selector: Optional[str]) -> Dict[str, str]:
    selector = {}
    for term in (label_selector or "").split(","):
        if term:
            key, _, value = term.partition("=")
            selector[key] = value
    return selector


def matches(labels: Optional[Dict[str, str]], label_selector: Optional[str]) -> bool:
    labels = labels or {}
    return all(labels.get(k) == v for k, v in parse_selector(label_selector).items())


def not_found():
    return ApiException(status=404, reason="Not Found")


def conflict():
    return ApiException(status=409, reason="Conflict")


class FakeCluster:
    """
    Shared object storage behind the fake API clients.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.pods: Dict[Tuple[str, str], client.V1Pod] = {}
        self.jobs: Dict[Tuple[str, str], client.V1Job] = {}
        # (kind, namespace, name) -> workload object
        self.workloads: Dict[Tuple[str, str, str], object] = {}
        self.reports: Dict[Tuple[str, str], dict] = {}
        # (namespace, pod, container) -> log bytes or exception
        self.logs: Dict[Tuple[str, str, str], object] = {}
        self.opened_logs = []
        self.resource_version = 0
        # When set, list_namespaced_job waits until every caller has listed
        self.list_jobs_barrier: Optional[threading.Barrier] = None
        # Report names whose create call fails with 500
        self.failing_reports = set()

    def next_resource_version(self) -> str:
        self.resource_version += 1
        return str(self.resource_version)

    def add_pod(self, pod: client.V1Pod):
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = pod

    def add_workload(self, kind: str, obj):
        self.workloads[(kind, obj.metadata.namespace, obj.metadata.name)] = obj

    def add_job(self, job: client.V1Job):
        self.jobs[(job.metadata.namespace, job.metadata.name)] = job

    def get_workload(self, kind, name, namespace):
        if (kind, namespace, name) not in self.workloads:
            raise not_found()
        return self.workloads[(kind, namespace, name)]


class FakeCoreV1Api:

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster

    def read_namespaced_pod(self, name, namespace, **_):
        if (namespace, name) not in self.cluster.pods:
            raise not_found()
        return self.cluster.pods[(namespace, name)]

    def list_namespaced_pod(self, namespace, label_selector=None, **_):
        items = [
            pod for (ns, _name), pod in self.cluster.pods.items()
            if ns == namespace and matches(pod.metadata.labels, label_selector)
        ]
        return client.V1PodList(items=items)

    def read_namespaced_pod_log(self, name, namespace, container=None, **_):
        log = self.cluster.logs.get((namespace, name, container))
        if log is None:
            raise not_found()
        if isinstance(log, Exception):
            raise log
        stream = io.BytesIO(log)
        self.cluster.opened_logs.append(stream)
        return stream

    def read_namespaced_replication_controller(self, name, namespace, **_):
        return self.cluster.get_workload("ReplicationController", name, namespace)


class FakeAppsV1Api:

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster

    def read_namespaced_replica_set(self, name, namespace, **_):
        return self.cluster.get_workload("ReplicaSet", name, namespace)

    def read_namespaced_deployment(self, name, namespace, **_):
        return self.cluster.get_workload("Deployment", name, namespace)

    def read_namespaced_stateful_set(self, name, namespace, **_):
        return self.cluster.get_workload("StatefulSet", name, namespace)

    def read_namespaced_daemon_set(self, name, namespace, **_):
        return self.cluster.get_workload("DaemonSet", name, namespace)


class FakeBatchV1Api:

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.create_calls = 0
        self.deleted = []

    def read_namespaced_job(self, name, namespace, **_):
        if (namespace, name) not in self.cluster.jobs:
            raise not_found()
        return self.cluster.jobs[(namespace, name)]

    def list_namespaced_job(self, namespace, label_selector=None, **_):
        items = [
            job for (ns, _name), job in list(self.cluster.jobs.items())
            if ns == namespace and matches(job.metadata.labels, label_selector)
        ]
        if self.cluster.list_jobs_barrier is not None:
            self.cluster.list_jobs_barrier.wait(timeout=5)
        return client.V1JobList(items=items)

    def create_namespaced_job(self, namespace, body, **_):
        with self.cluster.lock:
            self.create_calls += 1
            key = (namespace, body.metadata.name)
            if key in self.cluster.jobs:
                raise conflict()
            self.cluster.jobs[key] = body
        return body

    def delete_namespaced_job(self, name, namespace, propagation_policy=None, **_):
        with self.cluster.lock:
            if (namespace, name) not in self.cluster.jobs:
                raise not_found()
            del self.cluster.jobs[(namespace, name)]
            self.deleted.append((namespace, name, propagation_policy))

    def read_namespaced_cron_job(self, name, namespace, **_):
        return self.cluster.get_workload("CronJob", name, namespace)


class FakeCustomObjectsApi:

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.create_calls = 0
        self.replace_calls = 0

    def create_namespaced_custom_object(self, group, version, namespace, plural, body, **_):
        with self.cluster.lock:
            self.create_calls += 1
            name = body["metadata"]["name"]
            if name in self.cluster.failing_reports:
                raise ApiException(status=500, reason="Internal Server Error")
            if (namespace, name) in self.cluster.reports:
                raise conflict()
            stored = copy.deepcopy(body)
            stored["metadata"]["resourceVersion"] = self.cluster.next_resource_version()
            self.cluster.reports[(namespace, name)] = stored
            return copy.deepcopy(stored)

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **_):
        if (namespace, name) not in self.cluster.reports:
            raise not_found()
        return copy.deepcopy(self.cluster.reports[(namespace, name)])

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body, **_):
        with self.cluster.lock:
            self.replace_calls += 1
            existing = self.cluster.reports.get((namespace, name))
            if existing is None:
                raise not_found()
            if existing["metadata"]["resourceVersion"] != body["metadata"].get("resourceVersion"):
                raise conflict()
            stored = copy.deepcopy(body)
            stored["metadata"]["resourceVersion"] = self.cluster.next_resource_version()
            self.cluster.reports[(namespace, name)] = stored
            return copy.deepcopy(stored)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, **_):
        items = [
            copy.deepcopy(report) for (ns, _name), report in self.cluster.reports.items()
            if ns == namespace and matches(report["metadata"].get("labels"), label_selector)
        ]
        return {"items": items}


# =============================================================================
# Object Builders
# =============================================================================

def make_pod(
    namespace: str,
    name: str,
    containers: Dict[str, Tuple[str, str]],
    owner: Optional[Tuple[str, str]] = None,
    labels: Optional[Dict[str, str]] = None,
    ready: bool = True,
    deleting: bool = False,
    terminated: Optional[Dict[str, Tuple[int, str, str]]] = None,
) -> client.V1Pod:
    """
    Build a Pod.

    Args:
        containers: container name -> (image, image ID)
        owner: (kind, name) of the controller owner reference
        terminated: container name -> (exit code, reason, message)
    """
    owner_references = None
    if owner:
        owner_references = [client.V1OwnerReference(
            api_version="apps/v1", kind=owner[0], name=owner[1], uid=f"uid-{owner[1]}", controller=True,
        )]

    terminated = terminated or {}
    statuses = []
    for container_name, (image, image_id) in containers.items():
        state = None
        if container_name in terminated:
            exit_code, reason, message = terminated[container_name]
            state = client.V1ContainerState(terminated=client.V1ContainerStateTerminated(
                exit_code=exit_code, reason=reason, message=message,
            ))
        statuses.append(client.V1ContainerStatus(
            name=container_name, image=image, image_id=image_id, ready=ready, restart_count=0, state=state,
        ))

    conditions = [client.V1PodCondition(type="PodScheduled", status="True")]
    if ready:
        conditions.append(client.V1PodCondition(type="ContainersReady", status="True"))

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            labels=labels or {},
            owner_references=owner_references,
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        spec=client.V1PodSpec(containers=[
            client.V1Container(name=container_name, image=image)
            for container_name, (image, _) in containers.items()
        ]),
        status=client.V1PodStatus(conditions=conditions, container_statuses=statuses),
    )


def make_replica_set(namespace: str, name: str) -> client.V1ReplicaSet:
    return client.V1ReplicaSet(
        api_version="apps/v1",
        kind="ReplicaSet",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=f"uid-{name}"),
    )


def make_scan_job(
    workload_labels: Optional[Dict[str, str]],
    images: Optional[Dict[str, str]],
    condition: Optional[str] = "Complete",
    name: str = "scan-vulnerabilityreport-abc",
    controller_uid: Optional[str] = "job-uid-1",
    annotations: Optional[Dict[str, str]] = None,
) -> client.V1Job:
    labels = dict(workload_labels or {})
    labels[kube.LABEL_MANAGED_BY] = OPERATOR_NAME
    if annotations is None:
        annotations = {}
        if images is not None:
            annotations[kube.ANNOTATION_CONTAINER_IMAGES] = json.dumps(images)

    match_labels = {"controller-uid": controller_uid} if controller_uid else {}
    conditions = [client.V1JobCondition(type=condition, status="True")] if condition else None

    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=name, namespace=OPERATOR_NAMESPACE, labels=labels, annotations=annotations,
        ),
        spec=client.V1JobSpec(
            selector=client.V1LabelSelector(match_labels=match_labels),
            template=client.V1PodTemplateSpec(),
        ),
        status=client.V1JobStatus(conditions=conditions),
    )


def make_scan_pod(job_name: str, containers, controller_uid: str = "job-uid-1", terminated=None) -> client.V1Pod:
    return make_pod(
        OPERATOR_NAMESPACE,
        f"{job_name}-x7k2p",
        containers,
        labels={"controller-uid": controller_uid, kube.LABEL_MANAGED_BY: OPERATOR_NAME},
        terminated=terminated,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_trivy_output():
    """Sample Trivy output for nginx:1.16."""
    return {
        "SchemaVersion": 2,
        "ArtifactName": "nginx:1.16",
        "ArtifactType": "container_image",
        "Results": [
            {
                "Target": "nginx:1.16 (debian 10.3)",
                "Class": "os-pkgs",
                "Type": "debian",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2021-3711",
                        "PkgName": "openssl",
                        "InstalledVersion": "1.1.1d-0+deb10u3",
                        "FixedVersion": "1.1.1d-0+deb10u7",
                        "Severity": "CRITICAL",
                        "Title": "openssl: SM2 Decryption Buffer Overflow",
                        "PrimaryURL": "https://avd.aquasec.com/nvd/cve-2021-3711",
                        "References": ["https://www.openssl.org/news/secadv/20210824.txt"],
                    },
                    {
                        "VulnerabilityID": "CVE-2022-1292",
                        "PkgName": "openssl",
                        "InstalledVersion": "1.1.1d-0+deb10u3",
                        "FixedVersion": "1.1.1n-0+deb10u2",
                        "Severity": "HIGH",
                    },
                    {
                        "VulnerabilityID": "CVE-2019-18276",
                        "PkgName": "bash",
                        "InstalledVersion": "5.0-4",
                        "Severity": "LOW",
                    },
                ],
            },
            {
                "Target": "usr/local/bin/app",
                "Class": "lang-pkgs",
                "Type": "gobinary",
                "Vulnerabilities": None,
            },
        ],
    }


@pytest.fixture
def operator_config():
    return OperatorConfig(
        name=OPERATOR_NAME,
        namespace=OPERATOR_NAMESPACE,
        target_namespaces="",
        service_account="scanner",
        scan_job_timeout=300,
        trivy_image="aquasec/trivy:0.50.1",
    )


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def core_api(cluster):
    return FakeCoreV1Api(cluster)


@pytest.fixture
def apps_api(cluster):
    return FakeAppsV1Api(cluster)


@pytest.fixture
def batch_api(cluster):
    return FakeBatchV1Api(cluster)


@pytest.fixture
def custom_api(cluster):
    return FakeCustomObjectsApi(cluster)


@pytest.fixture
def scanner(operator_config):
    return TrivyScanner(operator_config)


@pytest.fixture
def store(core_api, apps_api, batch_api, custom_api):
    return ReportStore(core_api, apps_api, batch_api, custom_api)


@pytest.fixture
def scan_jobs(batch_api, core_api, scanner, operator_config):
    return ScanJobManager(batch_api, core_api, scanner, operator_config)


@pytest.fixture
def pod_reconciler(core_api, store, scan_jobs, operator_config):
    return PodReconciler(core_api, store, scan_jobs, operator_config)


@pytest.fixture
def job_reconciler(batch_api, store, scan_jobs, scanner, core_api, operator_config):
    return JobReconciler(batch_api, store, scan_jobs, scanner, LogsReader(core_api), operator_config)

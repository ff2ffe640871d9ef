"""
Workload Scanner Operator - Entry Point

Runs two things in one event loop:
- the kopf operator, which turns Pod and scan Job watch events into calls
  to PodReconciler.reconcile() and JobReconciler.reconcile()
- a FastAPI app with health endpoints for the Kubernetes probes

kopf never re-invokes an event handler that raised, so the handlers requeue
the object themselves: a transport error from the Kubernetes API is logged
and the same object is reconciled again after a growing delay, until a
reconcile succeeds. Newer events for the object queue up behind the retry,
and every reconcile reads the object afresh. The reconcilers keep no state
between calls.

DevOps Design Decisions:
- Health endpoints for Kubernetes probes
- Structured logging for observability
- Namespaced or cluster-wide watching derived from the target namespaces
"""

import asyncio
import logging
import threading
from typing import Callable, Sequence, Tuple

import kopf
import uvicorn
from fastapi import FastAPI, HTTPException
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_scanner import __version__, kube
from workload_scanner.config import OperatorConfig
from workload_scanner.job_controller import JobReconciler
from workload_scanner.logs import LogsReader
from workload_scanner.pod_controller import PodReconciler
from workload_scanner.reports import ReportStore
from workload_scanner.scan_jobs import ScanJobManager
from workload_scanner.scanner import TrivyScanner
from workload_scanner.schemas import HealthResponse, ReadinessResponse

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Seconds to wait before each redelivery; the last delay repeats
RETRY_BACKOFF = (1, 2, 5, 10, 30, 60)


# =============================================================================
# Health Endpoints
# =============================================================================

def create_app(ready_flag: threading.Event, version_api: client.VersionApi) -> FastAPI:
    """
    Build the FastAPI app serving the liveness and readiness probes.
    """
    app = FastAPI(
        title="Workload Scanner Operator",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check():
        """
        Liveness probe: the operator can reach the Kubernetes API server.
        """
        try:
            version_api.get_code()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            raise HTTPException(status_code=503, detail="Kubernetes API unreachable")
        return HealthResponse(status="healthy", kubernetes="connected", version=__version__)

    @app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
    def readiness_check():
        """
        Readiness probe: returns 200 only once the watchers are running.
        """
        if not ready_flag.is_set():
            raise HTTPException(status_code=503, detail="Not ready")
        return ReadinessResponse(status="ready")

    return app


# =============================================================================
# Operator Wiring
# =============================================================================

def build_reconcilers(operator_config: OperatorConfig) -> Tuple[PodReconciler, JobReconciler]:
    core_api = client.CoreV1Api()
    apps_api = client.AppsV1Api()
    batch_api = client.BatchV1Api()
    custom_api = client.CustomObjectsApi()

    scanner = TrivyScanner(operator_config)
    store = ReportStore(core_api, apps_api, batch_api, custom_api)
    scan_jobs = ScanJobManager(batch_api, core_api, scanner, operator_config)

    pod_reconciler = PodReconciler(core_api, store, scan_jobs, operator_config)
    job_reconciler = JobReconciler(
        batch_api, store, scan_jobs, scanner, LogsReader(core_api), operator_config
    )
    return pod_reconciler, job_reconciler


async def reconcile_with_retry(
    reconcile: Callable[[str, str], None],
    namespace: str,
    name: str,
    backoff: Sequence[float] = RETRY_BACKOFF,
):
    """
    Run a blocking reconcile in a worker thread, redelivering the object
    after a transport error from the Kubernetes API.
    """
    attempt = 0
    while True:
        try:
            await asyncio.to_thread(reconcile, namespace, name)
            return
        except (ApiException, HTTPError) as e:
            delay = backoff[min(attempt, len(backoff) - 1)]
            attempt += 1
            logger.warning(
                f"Reconciling {namespace}/{name} failed (attempt {attempt}): {e}; "
                f"retrying in {delay}s"
            )
            await asyncio.sleep(delay)


def create_registry(
    operator_config: OperatorConfig,
    pod_reconciler: PodReconciler,
    job_reconciler: JobReconciler,
) -> kopf.OperatorRegistry:
    """
    Register the kopf handlers delivering Pod and scan Job events.
    """
    registry = kopf.OperatorRegistry()

    @kopf.on.startup(registry=registry)
    def configure(settings: kopf.OperatorSettings, **_):
        settings.watching.server_timeout = 60
        # Handlers only log through module loggers, never to Kubernetes Events
        settings.posting.enabled = False
        logger.info(f"Workload Scanner Operator {__version__} starting up...")

    @kopf.on.event("pods", registry=registry)
    async def pod_changed(name, namespace, event, **_):
        if event.get("type") == "DELETED":
            return
        await reconcile_with_retry(pod_reconciler.reconcile, namespace, name)

    @kopf.on.event(
        "batch", "v1", "jobs",
        labels={kube.LABEL_MANAGED_BY: operator_config.name},
        registry=registry,
    )
    async def job_changed(name, namespace, event, **_):
        if event.get("type") == "DELETED":
            return
        await reconcile_with_retry(job_reconciler.reconcile, namespace, name)

    return registry


async def run(operator_config: OperatorConfig):
    pod_reconciler, job_reconciler = build_reconcilers(operator_config)
    registry = create_registry(operator_config, pod_reconciler, job_reconciler)

    ready_flag = threading.Event()
    app = create_app(ready_flag, client.VersionApi())
    server = uvicorn.Server(uvicorn.Config(
        app,
        host="0.0.0.0",
        port=operator_config.health_port,
        log_level=operator_config.log_level.lower(),
    ))

    namespaces = operator_config.get_watched_namespaces()
    logger.info(
        f"Install mode: {operator_config.get_install_mode().value}, "
        f"operator namespace: {operator_config.namespace}, "
        f"watching: {', '.join(namespaces) if namespaces else 'all namespaces'}"
    )

    await asyncio.gather(
        kopf.operator(
            registry=registry,
            standalone=True,
            clusterwide=not namespaces,
            namespaces=namespaces,
            ready_flag=ready_flag,
        ),
        server.serve(),
    )


def main():
    operator_config = OperatorConfig.from_env()
    logging.basicConfig(level=operator_config.log_level.upper(), format=LOG_FORMAT)

    kube.load_kube_config()
    asyncio.run(run(operator_config))


if __name__ == "__main__":
    main()

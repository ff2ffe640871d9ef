"""
Container log access for finished scan Jobs.
"""

import logging

from kubernetes import client

logger = logging.getLogger(__name__)


class LogsReader:
    """
    Opens the log stream of a single container.

    The returned object is the raw urllib3 response: it supports read()
    and must be released with close() once consumed.
    """

    def __init__(self, core_api: client.CoreV1Api):
        self.core_api = core_api

    def get_logs_for_pod(self, namespace: str, name: str, container: str):
        logger.debug(f"Reading logs of container {container} in pod {namespace}/{name}")
        return self.core_api.read_namespaced_pod_log(
            name=name,
            namespace=namespace,
            container=container,
            follow=True,
            _preload_content=False,
        )

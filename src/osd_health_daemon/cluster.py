"""
Identity of the monitored Ceph cluster and the handles used to reach it.
"""

import os
from dataclasses import dataclass
from typing import Any, Optional

DEFAULT_CONFIG_DIR = "/var/lib/rook"
DEFAULT_CEPH_USER = "client.admin"


@dataclass(frozen=True)
class ClusterInfo:
    """
    Names the Ceph cluster a monitor is bound to.

    Attributes:
        namespace: Kubernetes namespace holding the CephCluster and OSD Deployments.
        name: Ceph cluster name, also the CephCluster resource name.
        config_dir: Root directory of the per-namespace ceph config and keyring.
        user: Ceph auth entity used for CLI calls.
    """
    namespace: str
    name: str = "rook-ceph"
    config_dir: str = DEFAULT_CONFIG_DIR
    user: str = DEFAULT_CEPH_USER

    @property
    def config_path(self) -> str:
        return os.path.join(self.config_dir, self.namespace, f"{self.name}.config")

    @property
    def keyring_path(self) -> str:
        return os.path.join(self.config_dir, self.namespace, f"{self.user}.keyring")


@dataclass
class ClusterContext:
    """
    Handles to the two external systems.

    `executor` runs Ceph CLI commands. The three API objects are instances of
    kubernetes.client.CoreV1Api / AppsV1Api / CustomObjectsApi (or anything
    with the same methods).
    """
    executor: Any = None
    core_v1: Any = None
    apps_v1: Any = None
    custom_objects: Optional[Any] = None
    ceph_binary: str = "ceph"
    connect_timeout: int = 15

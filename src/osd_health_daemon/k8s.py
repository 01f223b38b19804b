"""
Kubernetes Integration Module for OSD Health Monitoring

This module wraps the parts of the Kubernetes API the OSD health monitor acts
on. It reads and conditionally deletes resources that Rook created; it never
creates resources or edits their spec.

Resources Touched:
    - Deployments (apps/v1): one per OSD, found by label, deleted once Ceph
      reports the OSD safe-to-destroy
    - Pods (v1): OSD pods stuck terminating are force-deleted when their node
      is confirmed NotReady
    - Nodes (v1): read only, to evaluate the Ready condition
    - CephCluster (ceph.rook.io/v1): the status subresource receives the list
      of device classes

Label Contract:
    Rook labels every OSD Deployment and Pod with
        app=rook-ceph-osd, rook_cluster=<namespace>, ceph-osd-id=<id>
    The keys are module constants so the writer and the reader of the labels
    cannot drift apart. Selectors are built from a LabelQuery object rather than
    by string formatting at the call site.

Error Handling Strategy:
    - 404 on a delete: the resource is already gone, which was the goal
    - 404 on a list: treated as an empty result
    - Any other ApiException: wrapped in OrchestrationError and raised
    - Transport errors (urllib3 HTTPError) on the evictor delete: wrapped the same way
    - Node lookups that fail never authorise an eviction (fail closed)

Concurrency:
    Every function is stateless. force_delete_pod_if_stuck may be called from
    several threads for different pods; the delete carries a UID precondition
    so the API server rejects it if the pod was replaced since it was read.

Example Usage:
    context = build_cluster_context(CommandExecutor(), kubeconfig=None)
    query = osd_label_query(ClusterInfo(namespace="rook-ceph"), osd_id=3)
    for deployment in list_deployments(context, "rook-ceph", query):
        delete_deployment(context, "rook-ceph", deployment.metadata.name)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .cluster import ClusterContext, ClusterInfo
from .errors import OrchestrationError
from .structured_events import ActionResult, StructuredEventLogger

logger = logging.getLogger(os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR"))

# Label keys written by Rook on OSD resources
APP_ATTR = "app"
CLUSTER_ATTR = "rook_cluster"
OSD_ID_LABEL_KEY = "ceph-osd-id"
OSD_APP_NAME = "rook-ceph-osd"

# CephCluster custom resource coordinates
CEPH_GROUP = "ceph.rook.io"
CEPH_VERSION = "v1"
CEPH_CLUSTER_PLURAL = "cephclusters"

NODE_READY_CONDITION = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

NOT_FOUND = 404


@dataclass(frozen=True)
class LabelQuery:
    """
    Label selector for OSD resources.

    Attributes:
        app: Value of the `app` label.
        cluster: Value of the `rook_cluster` label (the cluster namespace).
        osd_id: When set, restricts the query to one OSD.
    """
    app: str
    cluster: str
    osd_id: Optional[int] = None

    def labels(self) -> Dict[str, str]:
        labels = {APP_ATTR: self.app, CLUSTER_ATTR: self.cluster}
        if self.osd_id is not None:
            labels[OSD_ID_LABEL_KEY] = str(self.osd_id)
        return labels

    def selector(self) -> str:
        return ",".join(f"{k}={v}" for k, v in self.labels().items())


def osd_label_query(cluster_info: ClusterInfo, osd_id: Optional[int] = None) -> LabelQuery:
    """Selector for the OSD resources of a cluster, optionally for a single OSD."""
    return LabelQuery(app=OSD_APP_NAME, cluster=cluster_info.namespace, osd_id=osd_id)


def build_cluster_context(executor, kubeconfig: Optional[str] = None, kube_context: Optional[str] = None,
                          ceph_binary: str = "ceph", connect_timeout: int = 15) -> ClusterContext:
    """
    Load Kubernetes credentials and build the API handles the monitor uses.

    An explicit kubeconfig wins; otherwise the in-cluster service account is
    used, falling back to the default kubeconfig when not running in a pod.

    Raises:
        kubernetes.config.ConfigException: if no usable configuration is found.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig, context=kube_context)
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.info("Not running in a cluster, loading default kubeconfig")
            config.load_kube_config(context=kube_context)

    return ClusterContext(
        executor=executor,
        core_v1=client.CoreV1Api(),
        apps_v1=client.AppsV1Api(),
        custom_objects=client.CustomObjectsApi(),
        ceph_binary=ceph_binary,
        connect_timeout=connect_timeout,
    )


def validate_kubernetes_connectivity(context: ClusterContext, namespace: str) -> None:
    """
    Make one cheap read against the namespace to prove credentials and RBAC work.

    Raises:
        OrchestrationError: if the API server rejects or cannot serve the call.
    """
    try:
        context.apps_v1.list_namespaced_deployment(namespace, limit=1)
    except ApiException as e:
        raise OrchestrationError(
            f"cannot list deployments in namespace {namespace}: {e.reason}", status=e.status
        ) from e


def list_deployments(context: ClusterContext, namespace: str, query: LabelQuery) -> List[Any]:
    """Return the Deployments in `namespace` matching `query`."""
    try:
        result = context.apps_v1.list_namespaced_deployment(namespace, label_selector=query.selector())
    except ApiException as e:
        if e.status == NOT_FOUND:
            return []
        raise OrchestrationError(
            f"failed to list deployments with selector {query.selector()!r}: {e.reason}", status=e.status
        ) from e
    return list(result.items or [])


def delete_deployment(context: ClusterContext, namespace: str, name: str) -> bool:
    """
    Delete a Deployment and its pods.

    Returns:
        bool: True if the delete was issued, False if it was already gone.
    """
    try:
        context.apps_v1.delete_namespaced_deployment(
            name,
            namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
    except ApiException as e:
        if e.status == NOT_FOUND:
            logger.debug(f"Deployment {namespace}/{name} already deleted")
            return False
        raise OrchestrationError(f"failed to delete deployment {namespace}/{name}: {e.reason}", status=e.status) from e
    return True


def deployment_age_seconds(deployment, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds since the Deployment was created, or None when unknown."""
    created = deployment.metadata.creation_timestamp if deployment.metadata else None
    if created is None:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - created).total_seconds()


def _ready_condition_status(node) -> Optional[str]:
    conditions: Sequence[Any] = (node.status.conditions or []) if node.status else []
    for condition in conditions:
        if condition.type == NODE_READY_CONDITION:
            return condition.status
    return None


def node_is_ready(node) -> bool:
    """True when the node's Ready condition is "True"."""
    return _ready_condition_status(node) == CONDITION_TRUE


def node_is_not_ready(node) -> bool:
    """
    True only when the node's Ready condition is explicitly "False".

    "Unknown", a missing condition, or no status at all are not a confirmed
    NotReady and must not authorise a forced deletion.
    """
    return _ready_condition_status(node) == CONDITION_FALSE


def force_delete_pod_if_stuck(context: ClusterContext, pod,
                              log: Optional[logging.Logger] = None,
                              structured_logger: Optional[StructuredEventLogger] = None) -> bool:
    """
    Force-delete a pod that is stuck terminating on a NotReady node.

    The pod must already carry a deletion timestamp: someone else asked for the
    graceful deletion, and this function only finishes the job when the kubelet
    that would do it is confirmed down. The node must report Ready=False;
    a failed or ambiguous node lookup leaves the pod alone.

    Args:
        context: Cluster handles; only `core_v1` is used.
        pod: A V1Pod as last seen by the caller.
        log: Logger to use; defaults to the daemon logger.
        structured_logger: Optional structured event sink.

    Returns:
        bool: True if a forced delete was issued (or the pod was already gone),
            False if no action was needed.

    Raises:
        OrchestrationError: if the delete call fails for a reason other than 404,
            including a lost connection to the API server.
    """
    log = log or logger
    namespace = pod.metadata.namespace
    name = pod.metadata.name
    log.debug(f"Checking if pod {namespace}/{name} is stuck and should be force deleted")

    if pod.metadata.deletion_timestamp is None:
        log.debug(f"Pod {namespace}/{name} is not scheduled for deletion")
        return False

    node_name = pod.spec.node_name if pod.spec else None
    if not node_name:
        log.debug(f"Pod {namespace}/{name} is not scheduled on a node, nothing to force")
        return False

    try:
        node = context.core_v1.read_node(node_name)
    except ApiException as e:
        log.warning(f"Could not read node {node_name} for pod {namespace}/{name}, not forcing deletion: {e.reason}")
        return False
    except HTTPError as e:
        log.warning(f"Could not reach the API server to read node {node_name} for pod {namespace}/{name}, "
                    f"not forcing deletion: {e}")
        return False

    if not node_is_not_ready(node):
        log.info(f"Pod {namespace}/{name} is terminating but node {node_name} is not confirmed NotReady, "
                 f"leaving graceful termination to the kubelet")
        return False

    log.info(f"Force deleting pod {namespace}/{name} stuck terminating on NotReady node {node_name}")
    preconditions = client.V1Preconditions(uid=pod.metadata.uid) if pod.metadata.uid else None
    try:
        context.core_v1.delete_namespaced_pod(
            name,
            namespace,
            body=client.V1DeleteOptions(grace_period_seconds=0, preconditions=preconditions),
        )
    except ApiException as e:
        if e.status == NOT_FOUND:
            log.debug(f"Pod {namespace}/{name} was already deleted")
            return True
        if structured_logger:
            structured_logger.log_pod_force_delete(namespace, name, node_name, ActionResult.FAILURE,
                                                   error_message=str(e.reason))
        raise OrchestrationError(f"failed to force delete pod {namespace}/{name}: {e.reason}", status=e.status) from e
    except HTTPError as e:
        if structured_logger:
            structured_logger.log_pod_force_delete(namespace, name, node_name, ActionResult.FAILURE,
                                                   error_message=str(e))
        raise OrchestrationError(f"failed to force delete pod {namespace}/{name}: {e}") from e

    if structured_logger:
        structured_logger.log_pod_force_delete(namespace, name, node_name, ActionResult.SUCCESS)
    log.info(f"Pod {namespace}/{name} force deletion succeeded")
    return True


def update_device_classes_status(context: ClusterContext, cluster_info: ClusterInfo,
                                 device_classes: Sequence[str]) -> bool:
    """
    Record the device classes in the CephCluster status.

    The status is only patched when it differs from what is already stored.

    Returns:
        bool: True if the status was patched, False if it was already current
            or the CephCluster does not exist.

    Raises:
        OrchestrationError: if reading or patching the resource fails.
    """
    desired = [{"name": device_class} for device_class in device_classes]
    try:
        cluster = context.custom_objects.get_namespaced_custom_object(
            CEPH_GROUP, CEPH_VERSION, cluster_info.namespace, CEPH_CLUSTER_PLURAL, cluster_info.name
        )
    except ApiException as e:
        if e.status == NOT_FOUND:
            logger.debug(f"CephCluster {cluster_info.namespace}/{cluster_info.name} not found, "
                         f"ignoring since it must be deleted")
            return False
        raise OrchestrationError(
            f"failed to get CephCluster {cluster_info.namespace}/{cluster_info.name}: {e.reason}", status=e.status
        ) from e

    current = ((cluster.get("status") or {}).get("storage") or {}).get("deviceClasses")
    if current == desired:
        return False

    body = {"status": {"storage": {"deviceClasses": desired}}}
    try:
        context.custom_objects.patch_namespaced_custom_object_status(
            CEPH_GROUP, CEPH_VERSION, cluster_info.namespace, CEPH_CLUSTER_PLURAL, cluster_info.name, body
        )
    except ApiException as e:
        raise OrchestrationError(
            f"failed to update CephCluster {cluster_info.namespace}/{cluster_info.name} status: {e.reason}",
            status=e.status,
        ) from e
    return True

"""
Main Daemon Module for the Rook Ceph OSD Health Monitor

This module wires the OSD health monitor into a long-running process. It
validates configuration, connects to Kubernetes and the Ceph CLI, then runs
two loops until a shutdown signal arrives:

    1. OSD health monitor (main thread)
       Every interval, reads `ceph osd dump`, removes deployments of OSDs that
       are down, out and safe-to-destroy, and reports the CRUSH device classes
       into the CephCluster status. See monitor.py.

    2. Stuck pod watcher (background thread, optional)
       Watches the OSD pods of the cluster. A pod that is terminating on a node
       whose Ready condition is False is force-deleted so its replacement can
       be scheduled. See k8s.force_delete_pod_if_stuck().

Startup Sequence:
    Phase 1: Configuration validation (fatal on error)
    Phase 2: Kubernetes client initialization and connectivity test (fatal)
    Phase 3: Ceph CLI connectivity test (warning only; the monitor retries
             every interval anyway)
    Phase 4: Signal handler registration

Shutdown:
    SIGTERM and SIGINT set the global shutdown_event. The monitor wakes from its
    wait immediately, the watcher stops after the current watch call returns
    (at most WATCH_TIMEOUT_SECONDS), and run_loop() returns.

Observability:
    Lifecycle events (startup, config validation, shutdown) are logged as
    structured DAEMON_LIFECYCLE events next to the regular log lines.
"""

import logging
import os
import signal
import threading
import time
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from kubernetes import watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from . import ceph
from . import k8s
from .cluster import ClusterContext, ClusterInfo
from .config import Config, validate_configuration
from .errors import OSDHealthError
from .executor import CommandExecutor
from .monitor import OSDHealthMonitor
from .structured_events import ActionResult, EventType, StructuredEventLogger

# Load environment variables from a .env file into the runtime environment
load_dotenv()

DAEMON_VERSION = "0.1.0"
DAEMON_NAME = "Rook Ceph OSD health monitor"

# Server-side timeout of one pod watch call
WATCH_TIMEOUT_SECONDS = 60
# Pause before re-opening a watch that failed
WATCH_RETRY_SECONDS = 5

# Global event used to signal graceful shutdown across the application
shutdown_event = threading.Event()


def _logger() -> logging.Logger:
    return logging.getLogger(os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR"))


def signal_handler(signum: int, frame) -> None:
    """
    Set the shutdown event on SIGTERM or SIGINT.

    Both loops observe the event, so in-flight Ceph commands and API calls
    finish before the process exits.
    """
    signal_names = {
        signal.SIGTERM: 'SIGTERM',
        signal.SIGINT: 'SIGINT'
    }
    signal_name = signal_names.get(signum, f'Signal-{signum}')
    _logger().info(f"Received {signal_name}, initiating graceful shutdown...")
    shutdown_event.set()


def setup_signal_handlers() -> None:
    """Register signal_handler for SIGTERM and SIGINT."""
    try:
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
        _logger().debug("Signal handlers registered for SIGTERM and SIGINT")
    except Exception as e:
        _logger().warning(f"Failed to register signal handlers: {e}")


def build_cluster_info(cfg: Config) -> ClusterInfo:
    return ClusterInfo(
        namespace=cfg.cluster_namespace,
        name=cfg.cluster_name,
        config_dir=cfg.ceph_config_dir,
        user=cfg.ceph_user,
    )


def startup(cfg: Config) -> Tuple[ClusterContext, ClusterInfo]:
    """
    Bootstrap and validate the daemon environment before starting the loops.

    Follows a fail-fast approach for everything the daemon cannot work without:
    invalid configuration or an unreachable Kubernetes API exit immediately.
    A Ceph cluster that does not answer yet is only a warning, since the
    monitor keeps trying every interval.

    Args:
        cfg (Config): Configuration populated from environment variables.

    Returns:
        tuple: (ClusterContext, ClusterInfo) ready to hand to run_loop().

    Raises:
        SystemExit: with code 1 when configuration or Kubernetes validation fails.
    """
    logger = _logger()
    structured_logger = StructuredEventLogger(cfg.logger_name)

    logger.info(f"{DAEMON_NAME} v{DAEMON_VERSION} startup initiated")

    # Phase 1: configuration
    logger.info("Phase 1: Validating configuration")
    errors = validate_configuration(cfg)
    if errors:
        logger.error("Configuration validation failed with the following errors:")
        for i, error in enumerate(errors, 1):
            logger.error(f"  {i}. {error}")
        structured_logger.log_event({
            "event_type": EventType.DAEMON_LIFECYCLE.value,
            "timestamp": time.time(),
            "result": ActionResult.FAILURE.value,
            "component": "daemon",
            "operation": "config_validation",
            "details": {
                "validation_errors": errors,
                "error_count": len(errors)
            },
            "error_message": f"Configuration validation failed with {len(errors)} errors"
        })
        logger.critical("Cannot start daemon with invalid configuration. Please fix the above errors.")
        raise SystemExit(1)
    logger.info("Configuration validation passed")

    cluster_info = build_cluster_info(cfg)

    # Phase 2: Kubernetes
    logger.info("Phase 2: Initializing Kubernetes clients and testing connectivity")
    try:
        executor = CommandExecutor(timeout=cfg.command_timeout)
        context = k8s.build_cluster_context(
            executor,
            kubeconfig=cfg.kubeconfig,
            kube_context=cfg.kube_context,
            ceph_binary=cfg.ceph_binary,
            connect_timeout=cfg.ceph_connect_timeout,
        )
        k8s.validate_kubernetes_connectivity(context, cluster_info.namespace)
    except Exception as e:
        error_msg = f"Kubernetes connectivity validation failed: {e}"
        logger.error(error_msg)
        structured_logger.log_event({
            "event_type": EventType.DAEMON_LIFECYCLE.value,
            "timestamp": time.time(),
            "result": ActionResult.FAILURE.value,
            "component": "kubernetes",
            "operation": "connectivity_validation",
            "details": {
                "namespace": cluster_info.namespace,
                "kubeconfig": cfg.kubeconfig,
                "error_type": type(e).__name__
            },
            "error_message": error_msg
        })
        logger.critical("Cannot start daemon without Kubernetes connectivity")
        raise SystemExit(1)
    logger.info(f"Kubernetes connectivity validated for namespace {cluster_info.namespace}")

    # Phase 3: Ceph
    logger.info("Phase 3: Testing Ceph CLI connectivity")
    ceph_reachable = True
    try:
        ceph.validate_ceph_connectivity(context, cluster_info)
        logger.info(f"Ceph cluster {cluster_info.name} is reachable")
    except OSDHealthError as e:
        ceph_reachable = False
        logger.warning(f"Ceph cluster {cluster_info.name} is not reachable yet, "
                       f"health checks will keep retrying: {e}")

    # Phase 4: signals
    logger.info("Phase 4: Setting up signal handlers for graceful shutdown")
    setup_signal_handlers()

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "startup_complete",
        "details": {
            "namespace": cluster_info.namespace,
            "cluster": cluster_info.name,
            "ceph_reachable": ceph_reachable,
            "remove_osds_if_out_and_safe_to_remove": cfg.remove_osds_if_out_and_safe_to_remove,
            "osd_health_check_interval": cfg.osd_health_check_interval,
            "osd_health_check_disabled": cfg.osd_health_check_disabled,
            "watch_stuck_pods": cfg.watch_stuck_pods,
        }
    })
    logger.info("Daemon startup completed successfully")
    if not cfg.remove_osds_if_out_and_safe_to_remove:
        logger.warning("Automatic OSD removal is disabled, safe-to-destroy OSDs will only be logged. "
                       "Set REMOVE_OSDS_IF_OUT_AND_SAFE_TO_REMOVE=true to enable it")

    return context, cluster_info


def handle_pod_event(context: ClusterContext, event: Dict[str, Any],
                     structured_logger: Optional[StructuredEventLogger] = None) -> bool:
    """
    React to one pod watch event.

    Only ADDED and MODIFIED events for pods carrying a deletion timestamp are
    considered. Errors are logged; the watch keeps going.

    Returns:
        bool: True if a forced delete was issued.
    """
    logger = _logger()
    if event.get("type") not in ("ADDED", "MODIFIED"):
        return False
    pod = event.get("object")
    if pod is None or pod.metadata is None or pod.metadata.deletion_timestamp is None:
        return False
    try:
        return k8s.force_delete_pod_if_stuck(context, pod, log=logger, structured_logger=structured_logger)
    except OSDHealthError as e:
        logger.error(f"Failed to force delete stuck pod {pod.metadata.namespace}/{pod.metadata.name}: {e}")
        return False
    except HTTPError as e:
        logger.error(f"Lost the API server while handling stuck pod {pod.metadata.namespace}/{pod.metadata.name}: {e}")
        return False


def watch_stuck_osd_pods(context: ClusterContext, cluster_info: ClusterInfo, stop_event: threading.Event,
                         structured_logger: Optional[StructuredEventLogger] = None,
                         retry_seconds: float = WATCH_RETRY_SECONDS) -> None:
    """
    Watch the OSD pods of a cluster and force-delete those stuck terminating.

    Each watch call lasts at most WATCH_TIMEOUT_SECONDS and is then re-opened,
    so the stop event is observed at least that often. A watch that fails
    with an API error or a dropped connection is re-opened after
    `retry_seconds`.
    """
    logger = _logger()
    selector = k8s.osd_label_query(cluster_info).selector()
    logger.info(f"Watching OSD pods in namespace {cluster_info.namespace} ({selector}) for stuck terminations")

    while not stop_event.is_set():
        w = watch.Watch()
        try:
            for event in w.stream(context.core_v1.list_namespaced_pod, cluster_info.namespace,
                                  label_selector=selector, timeout_seconds=WATCH_TIMEOUT_SECONDS):
                if stop_event.is_set():
                    w.stop()
                    break
                handle_pod_event(context, event, structured_logger)
        except ApiException as e:
            logger.warning(f"OSD pod watch failed in namespace {cluster_info.namespace}: {e.reason}, "
                           f"retrying in {retry_seconds}s")
            if stop_event.wait(retry_seconds):
                break
        except HTTPError as e:
            logger.warning(f"OSD pod watch connection lost in namespace {cluster_info.namespace}: {e}, "
                           f"retrying in {retry_seconds}s")
            if stop_event.wait(retry_seconds):
                break

    logger.info(f"Stopped watching OSD pods in namespace {cluster_info.namespace}")


def run_loop(cfg: Config, context: ClusterContext, cluster_info: ClusterInfo,
             stop_event: Optional[threading.Event] = None) -> None:
    """
    Run the OSD health monitor until shutdown is requested.

    Blocks on the calling thread. The stuck pod watcher, when enabled, runs on
    a daemon thread and is joined on the way out.
    """
    logger = _logger()
    stop_event = stop_event or shutdown_event
    structured_logger = StructuredEventLogger(cfg.logger_name)
    health_check = cfg.health_check_spec()

    if health_check.disabled:
        logger.info(f"Skipping OSD health monitor for namespace {cluster_info.namespace}, "
                    f"OSD_HEALTH_CHECK_DISABLED is set")
        return

    watcher: Optional[threading.Thread] = None
    if cfg.watch_stuck_pods:
        watcher = threading.Thread(
            target=watch_stuck_osd_pods,
            args=(context, cluster_info, stop_event, structured_logger),
            name="stuck-osd-pod-watcher",
            daemon=True,
        )
        watcher.start()

    monitor = OSDHealthMonitor(
        context,
        cluster_info,
        cfg.remove_osds_if_out_and_safe_to_remove,
        health_check,
        removal_grace_period=cfg.osd_removal_grace_period,
        logger=logger,
        structured_logger=structured_logger,
    )
    try:
        monitor.start(stop_event)
    finally:
        # The monitor may have returned because of an exception; stop the watcher too
        stop_event.set()
        if watcher is not None:
            watcher.join(timeout=WATCH_TIMEOUT_SECONDS + 5)
        structured_logger.log_event({
            "event_type": EventType.DAEMON_LIFECYCLE.value,
            "timestamp": time.time(),
            "result": ActionResult.SUCCESS.value,
            "component": "daemon",
            "operation": "shutdown",
            "details": {"namespace": cluster_info.namespace}
        })
        logger.info("Daemon shutdown complete")


def get_daemon_info() -> Dict[str, Any]:
    """Daemon name, version and whether shutdown has been requested."""
    return {
        "name": DAEMON_NAME,
        "version": DAEMON_VERSION,
        "shutdown_requested": shutdown_event.is_set(),
        "constants": {
            "watch_timeout_seconds": WATCH_TIMEOUT_SECONDS,
            "watch_retry_seconds": WATCH_RETRY_SECONDS,
        }
    }


def request_shutdown() -> None:
    """
    Programmatically request daemon shutdown, equivalent to sending SIGTERM.

    The monitor stops after the check it is running, if any.
    """
    _logger().info("Programmatic shutdown requested")
    shutdown_event.set()

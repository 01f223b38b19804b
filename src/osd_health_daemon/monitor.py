"""
OSD Health Monitor

A long-running control loop that reconciles the Ceph OSD membership ledger with
the Kubernetes resources Rook created for each OSD.

Each health check cycle runs two checks, one after the other:

    1. OSD dump check
       Reads `ceph osd dump`. For every OSD that is both down and out, asks
       `ceph osd safe-to-destroy <id>`. When the OSD is safe to destroy and the
       removal policy is enabled, the OSD's Deployment is deleted. With the
       policy disabled the query and the Deployment lookup still run and the
       decision is logged, but no delete is issued.

    2. Device class check
       Reads `ceph osd crush class ls`, remembers the list and writes it into the
       CephCluster status so the operator can surface it.

Safety Invariant:
    A Deployment is deleted only when the same cycle saw the OSD as down+out AND
    saw its id in the safe_to_destroy list. Nothing is cached between cycles.

Error Handling:
    Each check raises the first OSDHealthError it meets. The loop logs it and
    moves on to the other check and to the next cycle; no check failure stops
    the monitor. The interval itself is the retry mechanism.

Threading:
    start() blocks until the stop event is set and is meant to run on its own
    thread. It waits with Event.wait(), so setting the event wakes it
    immediately. The stop flag is checked before each check as well.

Usage:
    monitor = OSDHealthMonitor(context, ClusterInfo(namespace="rook-ceph"),
                               remove_osds_if_out_and_safe_to_remove=True,
                               health_check=HealthCheckSpec(interval="30s"))
    stop = threading.Event()
    threading.Thread(target=monitor.start, args=(stop,), daemon=True).start()
    ...
    stop.set()
"""

import logging
import os
import threading
import time
import uuid
from typing import List, Optional

from . import ceph
from . import k8s
from .cluster import ClusterContext, ClusterInfo
from .config import HealthCheckSpec, resolve_health_check_interval
from .errors import OrchestrationError, OSDHealthError
from .structured_events import ActionResult, EventType, StructuredEventLogger


class OSDHealthMonitor:
    """Periodically removes retired OSD deployments and reports device classes."""

    def __init__(self,
                 context: ClusterContext,
                 cluster_info: ClusterInfo,
                 remove_osds_if_out_and_safe_to_remove: bool,
                 health_check: Optional[HealthCheckSpec] = None,
                 *,
                 removal_grace_period: float = 0,
                 logger: Optional[logging.Logger] = None,
                 structured_logger: Optional[StructuredEventLogger] = None):
        """
        Build a monitor. Performs no I/O; only the check interval is resolved.

        Args:
            context: Command executor and Kubernetes API handles.
            cluster_info: The Ceph cluster to watch.
            remove_osds_if_out_and_safe_to_remove: Whether safe-to-destroy OSD
                deployments are actually deleted.
            health_check: Optional interval override.
            removal_grace_period: Deployments younger than this many seconds are
                kept until a later cycle.
            logger: Logger to use; defaults to the daemon logger.
            structured_logger: Structured event sink; one is created when omitted.
        """
        logger_name = os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR")
        self.context = context
        self.cluster_info = cluster_info
        self.remove_osds_if_out_and_safe_to_remove = remove_osds_if_out_and_safe_to_remove
        self.interval = resolve_health_check_interval(health_check)
        self.removal_grace_period = removal_grace_period
        self.logger = logger or logging.getLogger(logger_name)
        self.structured_logger = structured_logger or StructuredEventLogger(logger_name)
        # Last list reported by check_device_classes; None until the first report
        self.device_classes: Optional[List[str]] = None

    def __repr__(self) -> str:
        return (f"OSDHealthMonitor(namespace={self.cluster_info.namespace!r}, "
                f"remove_osds_if_out_and_safe_to_remove={self.remove_osds_if_out_and_safe_to_remove}, "
                f"interval={self.interval})")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self, stop_event: threading.Event) -> None:
        """
        Run health check cycles until `stop_event` is set.

        The first cycle runs immediately, then one every `self.interval` seconds.
        """
        self.logger.info(f"Starting OSD health monitor for namespace {self.cluster_info.namespace} "
                         f"(interval {self.interval}s, removal "
                         f"{'enabled' if self.remove_osds_if_out_and_safe_to_remove else 'disabled'})")
        while not stop_event.is_set():
            self.check_osd_health(stop_event)
            if stop_event.wait(self.interval):
                break
        self.logger.info(f"Stopping monitoring of OSDs in namespace {self.cluster_info.namespace}")

    def check_osd_health(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Run one health check cycle.

        Returns:
            bool: True if every check that ran succeeded. A cycle cut short
                before any check ran returns False and is logged as skipped.
        """
        correlation_id = f"osd-hc-{int(time.time())}-{str(uuid.uuid4())[:8]}"
        self.structured_logger.set_correlation_id(correlation_id)
        cycle_start = time.time()
        results = {}

        for name, check in (("osd_dump", self.check_osd_dump),
                            ("device_classes", self.check_device_classes)):
            if stop_event is not None and stop_event.is_set():
                self.logger.debug(f"[{correlation_id}] Stop requested, skipping {name} check")
                break
            results[name] = self._run_check(name, check, correlation_id)

        healthy = bool(results) and all(results.values())
        if not results:
            cycle_result = ActionResult.SKIPPED
        else:
            cycle_result = ActionResult.SUCCESS if healthy else ActionResult.FAILURE
        self.structured_logger.log_event({
            "event_type": EventType.HEALTH_CHECK_CYCLE.value,
            "timestamp": time.time(),
            "result": cycle_result.value,
            "component": "osd_health_monitor",
            "operation": "health_check_cycle",
            "details": {
                "namespace": self.cluster_info.namespace,
                "checks": results,
                "removal_enabled": self.remove_osds_if_out_and_safe_to_remove,
            },
            "duration_ms": int((time.time() - cycle_start) * 1000),
        })
        self.structured_logger.set_correlation_id(None)
        return healthy

    def _run_check(self, name: str, check, correlation_id: str) -> bool:
        started = time.time()
        try:
            check()
        except OSDHealthError as e:
            self.logger.warning(f"[{correlation_id}] Failed to check {name}: {e}")
            self.structured_logger.log_health_check(name, False,
                                                    duration_ms=int((time.time() - started) * 1000),
                                                    error_message=str(e))
            return False
        except Exception as e:
            self.logger.exception(f"[{correlation_id}] Unexpected error in {name} check: {e}")
            self.structured_logger.log_health_check(name, False,
                                                    duration_ms=int((time.time() - started) * 1000),
                                                    error_message=str(e))
            return False
        self.structured_logger.log_health_check(name, True, duration_ms=int((time.time() - started) * 1000))
        return True

    # ------------------------------------------------------------------
    # OSD removal
    # ------------------------------------------------------------------

    def check_osd_dump(self) -> None:
        """
        Remove deployments of OSDs that Ceph has retired.

        Raises:
            CommandError, ParseError, OrchestrationError: the first failure hit.
        """
        osd_statuses = ceph.get_osd_dump(self.context, self.cluster_info)
        self.logger.debug(f"osd dump reported {len(osd_statuses)} OSDs")
        for status in osd_statuses:
            if not status.down_and_out:
                continue
            self.logger.debug(f"osd.{status.osd_id} is down and out")
            self.remove_osd_deployment_if_safe_to_destroy(status.osd_id)

    def remove_osd_deployment_if_safe_to_destroy(self, osd_id: int) -> bool:
        """
        Delete the deployment of a down+out OSD if Ceph says it is safe.

        Returns:
            bool: True if at least one deployment delete was issued.
        """
        namespace = self.cluster_info.namespace
        report = ceph.osd_safe_to_destroy(self.context, self.cluster_info, osd_id)
        if not report.is_safe(osd_id):
            self.logger.debug(f"osd.{osd_id} is not yet safe-to-destroy "
                              f"(active={list(report.active)}, stored_pgs={list(report.stored_pgs)}, "
                              f"missing_stats={list(report.missing_stats)})")
            return False

        query = k8s.osd_label_query(self.cluster_info, osd_id)
        deployments = k8s.list_deployments(self.context, namespace, query)
        if not deployments:
            self.logger.debug(f"No deployment found for osd.{osd_id} ({query.selector()}), nothing to remove")
            return False

        if not self.remove_osds_if_out_and_safe_to_remove:
            for deployment in deployments:
                self.logger.info(f"osd.{osd_id} is 'safe-to-destroy' but automatic removal is disabled, "
                                 f"keeping deployment {deployment.metadata.name}")
                self.structured_logger.log_osd_removal(namespace, osd_id, ActionResult.SKIPPED,
                                                       deployment=deployment.metadata.name,
                                                       reason="removal disabled")
            return False

        removed = False
        for deployment in deployments:
            name = deployment.metadata.name
            age = k8s.deployment_age_seconds(deployment)
            if self.removal_grace_period and age is not None and age < self.removal_grace_period:
                self.logger.info(f"osd.{osd_id} is 'safe-to-destroy' but deployment {name} is only "
                                 f"{age:.0f}s old (grace period {self.removal_grace_period:.0f}s), keeping it")
                self.structured_logger.log_osd_removal(namespace, osd_id, ActionResult.NO_CHANGE,
                                                       deployment=name, reason="within grace period")
                continue

            self.logger.info(f"osd.{osd_id} is 'safe-to-destroy'. removing the osd deployment {name}")
            try:
                deleted = k8s.delete_deployment(self.context, namespace, name)
            except OrchestrationError as e:
                self.structured_logger.log_osd_removal(namespace, osd_id, ActionResult.FAILURE,
                                                       deployment=name, error_message=str(e))
                raise
            if deleted:
                removed = True
                self.structured_logger.log_osd_removal(namespace, osd_id, ActionResult.SUCCESS,
                                                       deployment=name, reason="down, out and safe-to-destroy")
        return removed

    # ------------------------------------------------------------------
    # Device classes
    # ------------------------------------------------------------------

    def check_device_classes(self) -> List[str]:
        """
        Fetch the CRUSH device classes and report them.

        Returns:
            list[str]: The device classes, in the order Ceph listed them.
        """
        device_classes = ceph.get_device_classes(self.context, self.cluster_info)
        self.device_classes = device_classes
        self.logger.debug(f"Device classes in use: {device_classes}")
        if device_classes:
            self.update_ceph_status(device_classes)
        return device_classes

    def update_ceph_status(self, device_classes: List[str]) -> None:
        """Write device classes to the CephCluster status; failures are logged only."""
        if self.context.custom_objects is None:
            self.logger.debug("No custom objects client configured, not updating CephCluster status")
            return
        namespace, name = self.cluster_info.namespace, self.cluster_info.name
        try:
            changed = k8s.update_device_classes_status(self.context, self.cluster_info, device_classes)
        except OrchestrationError as e:
            self.logger.error(f"Failed to update CephCluster {namespace}/{name} device classes: {e}")
            self.structured_logger.log_device_classes(namespace, name, device_classes, ActionResult.FAILURE,
                                                      error_message=str(e))
            return
        result = ActionResult.SUCCESS if changed else ActionResult.NO_CHANGE
        self.structured_logger.log_device_classes(namespace, name, device_classes, result)

import logging
import time
from typing import Dict, Any, List, Optional
from enum import Enum
from dataclasses import dataclass, asdict

class EventType(Enum):
    """Standard event types for structured logging"""
    OSD_REMOVAL = "osd_removal"
    POD_FORCE_DELETE = "pod_force_delete"
    DEVICE_CLASS_REPORT = "device_class_report"
    HEALTH_CHECK_RESULT = "health_check_result"
    HEALTH_CHECK_CYCLE = "health_check_cycle"
    DAEMON_LIFECYCLE = "daemon_lifecycle"

class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"

@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None

class StructuredEventLogger:
    """Emits structured events for OSD removals, pod evictions and health check cycles"""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None

    def set_correlation_id(self, correlation_id: Optional[str]):
        """Set correlation ID for tracking related events across a health check cycle"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {
                "structured_event": True,
                **asdict(event)
            }
            result = event.result
            component, operation = event.component, event.operation
            error_message = event.error_message
        elif isinstance(event, dict):
            log_data = {
                "structured_event": True,
                **event
            }
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
            result = event.get("result")
            component = event.get("component", "unknown")
            operation = event.get("operation", "unknown")
            error_message = event.get("error_message")
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        level = logging.INFO
        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        message = f"{component}.{operation}: {result if result is not None else 'unknown'}"
        if error_message:
            message += f" - {error_message}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_osd_removal(self,
                        namespace: str,
                        osd_id: int,
                        result: ActionResult,
                        deployment: Optional[str] = None,
                        reason: Optional[str] = None,
                        error_message: Optional[str] = None) -> None:
        """Log the outcome of removing (or declining to remove) an OSD deployment"""

        event = StructuredEvent(
            event_type=EventType.OSD_REMOVAL.value,
            timestamp=time.time(),
            result=result.value,
            component="osd_removal",
            operation="remove_osd_deployment",
            details={
                "namespace": namespace,
                "osd_id": osd_id,
                "deployment": deployment,
                "reason": reason
            },
            error_message=error_message
        )

        self.log_event(event)

    def log_pod_force_delete(self,
                             namespace: str,
                             pod: str,
                             node: Optional[str],
                             result: ActionResult,
                             error_message: Optional[str] = None) -> None:
        """Log a forced deletion of a pod stuck terminating on a NotReady node"""

        event = StructuredEvent(
            event_type=EventType.POD_FORCE_DELETE.value,
            timestamp=time.time(),
            result=result.value,
            component="stuck_pod_evictor",
            operation="force_delete_pod",
            details={
                "namespace": namespace,
                "pod": pod,
                "node": node,
                "grace_period_seconds": 0
            },
            error_message=error_message
        )

        self.log_event(event)

    def log_device_classes(self,
                           namespace: str,
                           cluster: str,
                           device_classes: List[str],
                           result: ActionResult,
                           error_message: Optional[str] = None) -> None:
        """Log the device classes reported into the CephCluster status"""

        event = StructuredEvent(
            event_type=EventType.DEVICE_CLASS_REPORT.value,
            timestamp=time.time(),
            result=result.value,
            component="device_classes",
            operation="update_ceph_status",
            details={
                "namespace": namespace,
                "cluster": cluster,
                "device_classes": list(device_classes)
            },
            error_message=error_message
        )

        self.log_event(event)

    def log_health_check(self,
                         check: str,  # "osd_dump" or "device_classes"
                         healthy: bool,
                         details: Dict[str, Any] = None,
                         duration_ms: int = None,
                         error_message: str = None) -> None:
        """Log the result of one check inside a health check cycle"""

        result = ActionResult.SUCCESS if healthy else ActionResult.FAILURE

        event = StructuredEvent(
            event_type=EventType.HEALTH_CHECK_RESULT.value,
            timestamp=time.time(),
            result=result.value,
            component="health_check",
            operation=f"check_{check}",
            details={
                "check": check,
                "healthy": healthy,
                **(details or {})
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

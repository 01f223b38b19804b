"""
Unit Tests for the OSD Health Monitor

The Ceph CLI and the Kubernetes API are replaced by the fakes from
test_helpers, so every test counts the exact commands and API calls made.

Test Coverage:
    - Removal of a down+out, safe-to-destroy OSD deployment
    - Removal policy disabled: decision logged, deployment kept
    - OSDs that are up, in, or not yet safe are never touched
    - Removal grace period
    - Device class reporting and CephCluster status update
    - Error propagation out of a check and isolation between checks
    - Interval resolution and start/stop behaviour
"""

import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from . import ceph
from . import k8s
from .config import DEFAULT_HEALTH_CHECK_INTERVAL, HealthCheckSpec
from .errors import CommandError, OrchestrationError, ParseError
from .monitor import OSDHealthMonitor
from .structured_events import ActionResult
from .test_helpers import (
    NAMESPACE,
    FakeCustomObjectsApi,
    FakeExecutor,
    api_error,
    build_context,
    cluster_info,
    make_deployment,
    osd_dump_json,
    safe_to_destroy_json,
)

OSD_DUMP = ("osd", "dump")
SAFE_TO_DESTROY = ("osd", "safe-to-destroy")
CLASS_LS = ("osd", "crush", "class", "ls")


def make_monitor(context, remove=True, health_check=None, **kwargs):
    kwargs.setdefault("structured_logger", Mock())
    return OSDHealthMonitor(context, cluster_info(), remove, health_check, **kwargs)


class TestOSDRemoval(unittest.TestCase):
    """Test suite for the OSD dump check."""

    def test_down_out_safe_osd_deployment_removed(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[0]),
        })
        context = build_context(executor, nodes=3, deployments=[make_deployment(0)])
        monitor = make_monitor(context, remove=True)

        monitor.check_osd_dump()

        self.assertEqual(len(executor.calls), 2)
        self.assertEqual(executor.subcommands(), [OSD_DUMP, ("osd", "safe-to-destroy", "0")])
        self.assertEqual(context.apps_v1.deleted(), ["rook-ceph-osd-0"])
        self.assertEqual(context.apps_v1.deployments, {})
        monitor.structured_logger.log_osd_removal.assert_called_once()
        self.assertEqual(monitor.structured_logger.log_osd_removal.call_args[0][2], ActionResult.SUCCESS)

    def test_policy_disabled_keeps_deployment(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[0]),
        })
        context = build_context(executor, nodes=3, deployments=[make_deployment(0)])
        monitor = make_monitor(context, remove=False)

        monitor.check_osd_dump()

        self.assertEqual(len(executor.calls), 2)
        self.assertEqual(context.apps_v1.deleted(), [])
        self.assertIn(("rook-ceph", "rook-ceph-osd-0"), context.apps_v1.deployments)
        self.assertEqual(monitor.structured_logger.log_osd_removal.call_args[0][2], ActionResult.SKIPPED)

    def test_not_safe_osd_kept(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(active=[0]),
        })
        context = build_context(executor, deployments=[make_deployment(0)])
        monitor = make_monitor(context)

        monitor.check_osd_dump()

        self.assertEqual(context.apps_v1.deleted(), [])
        self.assertEqual(context.apps_v1.calls, [], "no deployment lookup when the OSD is not safe")

    def test_safe_list_for_other_osd_does_not_count(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[1]),
        })
        context = build_context(executor, deployments=[make_deployment(0)])

        make_monitor(context).check_osd_dump()

        self.assertEqual(context.apps_v1.deleted(), [])

    def test_up_or_in_osds_not_queried(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json((0, 1, 1), (1, 1, 0), (2, 0, 1))})
        context = build_context(executor, deployments=[make_deployment(i) for i in range(3)])

        make_monitor(context).check_osd_dump()

        self.assertEqual(executor.subcommands(), [OSD_DUMP])
        self.assertEqual(context.apps_v1.deleted(), [])

    def test_zero_osds(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json()})
        context = build_context(executor)

        make_monitor(context).check_osd_dump()

        self.assertEqual(len(executor.calls), 1)

    def test_only_matching_deployment_removed(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 1, 1), (1, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[1]),
        })
        context = build_context(executor, deployments=[make_deployment(0), make_deployment(1)])

        make_monitor(context).check_osd_dump()

        self.assertEqual(context.apps_v1.deleted(), ["rook-ceph-osd-1"])
        self.assertIn(("rook-ceph", "rook-ceph-osd-0"), context.apps_v1.deployments)

    def test_no_deployment_found(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((4, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[4]),
        })
        context = build_context(executor)

        self.assertFalse(make_monitor(context).remove_osd_deployment_if_safe_to_destroy(4))
        self.assertEqual(context.apps_v1.deleted(), [])

    def test_grace_period_keeps_young_deployment(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[0]),
        })
        young = make_deployment(0, created=datetime.now(timezone.utc) - timedelta(seconds=30))
        context = build_context(executor, deployments=[young])
        monitor = make_monitor(context, removal_grace_period=3600)

        monitor.check_osd_dump()

        self.assertEqual(context.apps_v1.deleted(), [])
        self.assertEqual(monitor.structured_logger.log_osd_removal.call_args[0][2], ActionResult.NO_CHANGE)

    def test_grace_period_allows_old_deployment(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[0]),
        })
        old = make_deployment(0, created=datetime.now(timezone.utc) - timedelta(hours=2))
        context = build_context(executor, deployments=[old])

        make_monitor(context, removal_grace_period=3600).check_osd_dump()

        self.assertEqual(context.apps_v1.deleted(), ["rook-ceph-osd-0"])

    def test_dump_failure_raises(self):
        executor = FakeExecutor({OSD_DUMP: CommandError("ceph osd dump failed", exit_code=1)})
        context = build_context(executor, deployments=[make_deployment(0)])

        with self.assertRaises(CommandError):
            make_monitor(context).check_osd_dump()
        self.assertEqual(context.apps_v1.calls, [])

    def test_safe_to_destroy_parse_failure_raises(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0)),
            SAFE_TO_DESTROY: '{"active": []}',
        })
        context = build_context(executor, deployments=[make_deployment(0)])

        with self.assertRaises(ParseError):
            make_monitor(context).check_osd_dump()
        self.assertEqual(context.apps_v1.deleted(), [])

    def test_first_error_stops_the_check(self):
        executor = FakeExecutor({
            OSD_DUMP: osd_dump_json((0, 0, 0), (1, 0, 0)),
            SAFE_TO_DESTROY: safe_to_destroy_json(safe=[0, 1]),
        })
        context = build_context(executor, deployments=[make_deployment(0), make_deployment(1)])
        context.apps_v1.errors["delete_namespaced_deployment"] = api_error(500, "Internal Server Error")
        monitor = make_monitor(context)

        with self.assertRaises(OrchestrationError):
            monitor.check_osd_dump()

        self.assertEqual(executor.subcommands(), [OSD_DUMP, ("osd", "safe-to-destroy", "0")])
        self.assertEqual(monitor.structured_logger.log_osd_removal.call_args[0][2], ActionResult.FAILURE)


class TestDeviceClasses(unittest.TestCase):
    """Test suite for the device class check."""

    def test_device_classes_recorded(self):
        executor = FakeExecutor({CLASS_LS: '["ssd"]'})
        monitor = make_monitor(build_context(executor))

        self.assertIsNone(monitor.device_classes)
        self.assertEqual(monitor.check_device_classes(), ["ssd"])

        self.assertEqual(monitor.device_classes, ["ssd"])
        self.assertEqual(len(executor.calls), 1)

    def test_status_updated_when_custom_objects_available(self):
        custom_objects = FakeCustomObjectsApi()
        custom_objects.add(k8s.CEPH_GROUP, k8s.CEPH_VERSION, NAMESPACE, k8s.CEPH_CLUSTER_PLURAL,
                           "rook-ceph", {"status": {}})
        executor = FakeExecutor({CLASS_LS: '["hdd", "ssd"]'})
        monitor = make_monitor(build_context(executor, custom_objects=custom_objects))

        monitor.check_device_classes()

        self.assertEqual(custom_objects.patches(), [
            {"status": {"storage": {"deviceClasses": [{"name": "hdd"}, {"name": "ssd"}]}}}
        ])
        self.assertEqual(monitor.structured_logger.log_device_classes.call_args[0][3], ActionResult.SUCCESS)

    def test_empty_list_not_reported(self):
        custom_objects = FakeCustomObjectsApi()
        executor = FakeExecutor({CLASS_LS: "[]"})
        monitor = make_monitor(build_context(executor, custom_objects=custom_objects))

        self.assertEqual(monitor.check_device_classes(), [])
        self.assertEqual(custom_objects.calls, [])

    def test_status_update_failure_is_logged_only(self):
        custom_objects = FakeCustomObjectsApi()
        custom_objects.errors["get_namespaced_custom_object"] = api_error(403, "Forbidden")
        executor = FakeExecutor({CLASS_LS: '["ssd"]'})
        monitor = make_monitor(build_context(executor, custom_objects=custom_objects))

        self.assertEqual(monitor.check_device_classes(), ["ssd"])
        self.assertEqual(monitor.structured_logger.log_device_classes.call_args[0][3], ActionResult.FAILURE)

    def test_command_failure_raises(self):
        executor = FakeExecutor({CLASS_LS: CommandError("ceph osd crush class ls failed", exit_code=1)})
        monitor = make_monitor(build_context(executor))

        with self.assertRaises(CommandError):
            monitor.check_device_classes()
        self.assertIsNone(monitor.device_classes)


class TestHealthCheckCycle(unittest.TestCase):
    """Test suite for one full health check cycle."""

    def test_both_checks_run(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json((0, 1, 1)), CLASS_LS: '["hdd"]'})
        monitor = make_monitor(build_context(executor))

        self.assertTrue(monitor.check_osd_health())
        self.assertEqual(executor.subcommands(), [OSD_DUMP, CLASS_LS])

    def test_failing_check_does_not_block_the_other(self):
        executor = FakeExecutor({OSD_DUMP: "garbage", CLASS_LS: '["hdd"]'})
        monitor = make_monitor(build_context(executor))

        self.assertFalse(monitor.check_osd_health())

        self.assertEqual(monitor.device_classes, ["hdd"])
        failed = [c for c in monitor.structured_logger.log_health_check.call_args_list if c[0][1] is False]
        self.assertEqual([c[0][0] for c in failed], ["osd_dump"])

    def test_unexpected_exception_is_contained(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json(), CLASS_LS: '["hdd"]'})
        monitor = make_monitor(build_context(executor))

        with patch.object(ceph, "get_osd_dump", side_effect=RuntimeError("boom")):
            self.assertFalse(monitor.check_osd_health())
        self.assertEqual(monitor.device_classes, ["hdd"])

    def test_correlation_id_set_and_cleared(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json(), CLASS_LS: "[]"})
        monitor = make_monitor(build_context(executor))

        monitor.check_osd_health()

        calls = monitor.structured_logger.set_correlation_id.call_args_list
        self.assertTrue(calls[0][0][0].startswith("osd-hc-"))
        self.assertIsNone(calls[-1][0][0])

    def test_stop_requested_skips_checks(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json(), CLASS_LS: "[]"})
        monitor = make_monitor(build_context(executor))
        stop = threading.Event()
        stop.set()

        self.assertFalse(monitor.check_osd_health(stop))
        self.assertEqual(executor.calls, [])
        event = monitor.structured_logger.log_event.call_args[0][0]
        self.assertEqual(event["result"], "skipped")
        self.assertEqual(event["details"]["checks"], {})


class TestMonitorLoop(unittest.TestCase):
    """Test suite for interval resolution and the start/stop loop."""

    def test_interval_resolution(self):
        context = build_context()
        cases = {
            None: DEFAULT_HEALTH_CHECK_INTERVAL,
            HealthCheckSpec(): DEFAULT_HEALTH_CHECK_INTERVAL,
            HealthCheckSpec(interval="30s"): 30.0,
            HealthCheckSpec(interval="1m30s"): 90.0,
            HealthCheckSpec(interval="not-a-duration"): DEFAULT_HEALTH_CHECK_INTERVAL,
            HealthCheckSpec(interval="0s"): DEFAULT_HEALTH_CHECK_INTERVAL,
            HealthCheckSpec(interval="-5s"): DEFAULT_HEALTH_CHECK_INTERVAL,
        }
        for spec, expected in cases.items():
            with self.subTest(spec=spec):
                self.assertEqual(make_monitor(context, health_check=spec).interval, expected)

    def test_constructor_does_no_io(self):
        executor = FakeExecutor()
        context = build_context(executor)
        make_monitor(context)
        self.assertEqual(executor.calls, [])
        self.assertEqual(context.apps_v1.calls, [])

    def test_start_runs_first_tick_immediately_and_stops(self):
        executor = FakeExecutor({OSD_DUMP: osd_dump_json(), CLASS_LS: "[]"})
        monitor = make_monitor(build_context(executor), health_check=HealthCheckSpec(interval="1h"))
        stop = threading.Event()
        ticked = threading.Event()
        original = monitor.check_osd_health

        def tick(stop_event=None):
            result = original(stop_event)
            ticked.set()
            return result

        monitor.check_osd_health = tick
        thread = threading.Thread(target=monitor.start, args=(stop,), daemon=True)
        thread.start()

        self.assertTrue(ticked.wait(5), "first tick should not wait for the interval")
        stop.set()
        thread.join(5)
        self.assertFalse(thread.is_alive(), "setting the stop event should end the loop promptly")
        self.assertEqual(executor.subcommands(), [OSD_DUMP, CLASS_LS])

    def test_start_returns_when_already_stopped(self):
        executor = FakeExecutor()
        monitor = make_monitor(build_context(executor))
        stop = threading.Event()
        stop.set()

        monitor.start(stop)

        self.assertEqual(executor.calls, [])

    def test_repr(self):
        monitor = make_monitor(build_context(), health_check=HealthCheckSpec(interval="10s"))
        self.assertIn("interval=10.0", repr(monitor))


if __name__ == "__main__":
    unittest.main()

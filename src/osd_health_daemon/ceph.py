"""
Ceph CLI Integration Module

Builds and runs the handful of `ceph` commands the OSD health monitor needs and
hands their output to the status decoders:

    osd dump                   -> list of OSDStatus (membership ledger)
    osd safe-to-destroy <id>   -> SafeToDestroyReport
    osd crush class ls         -> list of device class names
    status                     -> connectivity check used at startup

Every command is run against the cluster described by a ClusterInfo, with the
admin keyring and config file Rook writes under
`<config_dir>/<namespace>/`. Structured results are always requested as JSON
and read back from an output file (`--out-file`) rather than stdout, because
the CLI prints warnings on stdout when monitors are slow to answer.

Error Handling:
    - CommandError from the executor propagates unchanged
    - Output that does not decode raises ParseError
    - Nothing here retries; the monitor's next tick does

Example:
    context = ClusterContext(executor=CommandExecutor())
    info = ClusterInfo(namespace="rook-ceph")
    for osd in get_osd_dump(context, info):
        if osd.down_and_out:
            report = osd_safe_to_destroy(context, info, osd.osd_id)
"""

import logging
import os
from typing import List, Sequence

from .cluster import ClusterContext, ClusterInfo
from .status import (
    OSDStatus,
    SafeToDestroyReport,
    parse_device_classes,
    parse_osd_dump,
    parse_safe_to_destroy,
)

logger = logging.getLogger(os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR"))

# The CLI writes structured results here when asked
OUT_FILE_ARG = "--out-file"


def final_ceph_command_args(context: ClusterContext, cluster_info: ClusterInfo,
                            args: Sequence[str]) -> List[str]:
    """
    Append the connection and format flags every Ceph call needs.

    The subcommand words stay first so `args[0:2]` is always e.g. ["osd", "dump"].
    """
    return [
        *args,
        f"--connect-timeout={context.connect_timeout}",
        f"--cluster={cluster_info.name}",
        f"--conf={cluster_info.config_path}",
        f"--name={cluster_info.user}",
        f"--keyring={cluster_info.keyring_path}",
        "--format", "json",
    ]


def run_ceph_command(context: ClusterContext, cluster_info: ClusterInfo, *args: str) -> str:
    """Run a ceph subcommand and return the JSON it wrote to its output file."""
    final_args = final_ceph_command_args(context, cluster_info, args)
    logger.debug(f"Running ceph {' '.join(args)} for cluster {cluster_info.namespace}/{cluster_info.name}")
    return context.executor.execute_command_with_output_file(context.ceph_binary, OUT_FILE_ARG, *final_args)


def get_osd_dump(context: ClusterContext, cluster_info: ClusterInfo) -> List[OSDStatus]:
    """Return the up/in state of every OSD known to the cluster."""
    output = run_ceph_command(context, cluster_info, "osd", "dump")
    return parse_osd_dump(output)


def osd_safe_to_destroy(context: ClusterContext, cluster_info: ClusterInfo, osd_id: int) -> SafeToDestroyReport:
    """Ask the monitors whether destroying `osd_id` keeps all data durable."""
    output = run_ceph_command(context, cluster_info, "osd", "safe-to-destroy", str(osd_id))
    return parse_safe_to_destroy(output)


def get_device_classes(context: ClusterContext, cluster_info: ClusterInfo) -> List[str]:
    """List the CRUSH device classes (e.g. hdd, ssd, nvme) currently in use."""
    output = run_ceph_command(context, cluster_info, "osd", "crush", "class", "ls")
    return parse_device_classes(output)


def validate_ceph_connectivity(context: ClusterContext, cluster_info: ClusterInfo) -> str:
    """
    Check that the CLI can reach the monitors.

    Uses plain stdout rather than an output file; the text is only logged.

    Raises:
        CommandError: if the CLI cannot be run or cannot reach the cluster.
    """
    final_args = final_ceph_command_args(context, cluster_info, ["status"])
    output = context.executor.execute_command_with_output(context.ceph_binary, *final_args)
    logger.debug(f"ceph status for {cluster_info.namespace}/{cluster_info.name}: {output.strip()[:200]}")
    return output

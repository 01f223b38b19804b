import os
import re
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from a .env file into the runtime environment
load_dotenv()

# Interval used when no override is configured, or the override is unusable
DEFAULT_HEALTH_CHECK_INTERVAL = 60.0

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
# Longer unit names first so "ms" is not read as "m" followed by "s"
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """
    Parse a Go-style duration string into seconds.

    Accepts one or more <number><unit> pairs, e.g. "10s", "1m30s", "1.5h",
    "250ms", with an optional leading sign. A bare "0" is allowed.

    Raises:
        ValueError: if the string is not a valid duration.
    """
    if value is None:
        raise ValueError("duration is not set")
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


@dataclass(frozen=True)
class HealthCheckSpec:
    """
    Per-cluster health check settings for the OSD monitor.

    Attributes:
        interval: Go-style duration string overriding the default check interval.
        disabled: When true the OSD monitor is not started at all.
    """
    interval: Optional[str] = None
    disabled: bool = False


def resolve_health_check_interval(spec: Optional[HealthCheckSpec],
                                  default: float = DEFAULT_HEALTH_CHECK_INTERVAL) -> float:
    """
    Effective check interval in seconds.

    Unset, unparseable, zero or negative overrides fall back to `default`.
    validate_configuration() reports the unparseable case at startup.
    """
    if spec is None or not spec.interval:
        return default
    try:
        interval = parse_duration(spec.interval)
    except ValueError:
        return default
    return interval if interval > 0 else default


@dataclass
class Config:
    """
    Central configuration class that loads and stores all environment-defined
    parameters for the OSD health daemon.

    All fields are populated from environment variables and type-cast as needed.

    Attributes:
        Logging:
            - logger_name: Name the daemon logs as.
            - log_level: Log verbosity (e.g., DEBUG, INFO, WARNING).
            - log_file: Path to optional log file (empty disables file logging).
            - log_max_bytes: Log file size before rotation.
            - log_backup_count: Number of rotated backups to retain.
            - enable_structured_console: Output JSON to console for structured events.
            - enable_structured_file: Output JSON lines to a separate structured log file.
            - structured_log_file: Path to structured JSON log file.

        Ceph Cluster:
            - cluster_namespace: Namespace of the CephCluster and its OSD deployments.
            - cluster_name: Ceph cluster name (also the CephCluster resource name).
            - ceph_config_dir: Root of <namespace>/<cluster>.config and the keyring.
            - ceph_user: Ceph auth entity for CLI calls.
            - ceph_binary: Ceph CLI executable.
            - ceph_connect_timeout: Value passed as --connect-timeout.
            - command_timeout: Subprocess timeout in seconds (0 disables it).

        Kubernetes:
            - kubeconfig: Path to a kubeconfig; in-cluster config when unset.
            - kube_context: Context to select from the kubeconfig.

        OSD Health Check:
            - remove_osds_if_out_and_safe_to_remove: Delete deployments of OSDs that
              are down, out and safe-to-destroy. When false the checks still run.
            - osd_health_check_interval: Go duration string (e.g. "60s", "5m").
            - osd_health_check_disabled: Do not start the OSD monitor.
            - osd_removal_grace_period: Minimum deployment age in seconds before removal.
            - watch_stuck_pods: Run the watcher that force-deletes stuck OSD pods.
    """
    # Logging
    logger_name: str = os.getenv('LOGGER_NAME', 'OSD_HEALTH_MONITOR').upper()
    log_level: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_file: str | None = os.getenv('LOG_FILE') or None
    log_max_bytes: int = int(os.getenv('LOG_MAX_BYTES', 10 * 1024 * 1024))
    log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', 5))
    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'false').lower() == 'true'
    structured_log_file: str | None = os.getenv('STRUCTURED_LOG_FILE', '/var/log/osd-health/structured.json')

    # Ceph cluster identity and CLI
    cluster_namespace: str = os.getenv('CLUSTER_NAMESPACE', 'rook-ceph')
    cluster_name: str = os.getenv('CEPH_CLUSTER_NAME', 'rook-ceph')
    ceph_config_dir: str = os.getenv('CEPH_CONFIG_DIR', '/var/lib/rook')
    ceph_user: str = os.getenv('CEPH_USER', 'client.admin')
    ceph_binary: str = os.getenv('CEPH_BINARY', 'ceph')
    ceph_connect_timeout: int = int(os.getenv('CEPH_CONNECT_TIMEOUT', 15))
    command_timeout: float = float(os.getenv('COMMAND_TIMEOUT_SECONDS', 0))

    # Kubernetes access
    kubeconfig: str | None = os.getenv('KUBECONFIG') or None
    kube_context: str | None = os.getenv('KUBE_CONTEXT') or None

    # OSD health check behaviour
    remove_osds_if_out_and_safe_to_remove: bool = os.getenv('REMOVE_OSDS_IF_OUT_AND_SAFE_TO_REMOVE', 'false').lower() == 'true'
    osd_health_check_interval: str | None = os.getenv('OSD_HEALTH_CHECK_INTERVAL') or None
    osd_health_check_disabled: bool = os.getenv('OSD_HEALTH_CHECK_DISABLED', 'false').lower() == 'true'
    osd_removal_grace_period: float = float(os.getenv('OSD_REMOVAL_GRACE_PERIOD', 0))
    watch_stuck_pods: bool = os.getenv('WATCH_STUCK_PODS', 'true').lower() == 'true'

    def health_check_spec(self) -> HealthCheckSpec:
        return HealthCheckSpec(interval=self.osd_health_check_interval,
                               disabled=self.osd_health_check_disabled)


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for completeness, correctness, and consistency.

    This includes:
    - Checking that the cluster namespace and name are set.
    - Validating the OSD health check interval as a duration.
    - Validating numeric ranges.
    - Verifying the kubeconfig file exists when one is given.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: A list of human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    if not cfg.cluster_namespace:
        errors.append("CLUSTER_NAMESPACE must not be empty")
    if not cfg.cluster_name:
        errors.append("CEPH_CLUSTER_NAME must not be empty")

    # The monitor falls back to the default interval, but an operator who set
    # a value should hear that it was ignored
    if cfg.osd_health_check_interval:
        try:
            interval = parse_duration(cfg.osd_health_check_interval)
            if interval <= 0:
                errors.append(f"OSD_HEALTH_CHECK_INTERVAL must be positive, got '{cfg.osd_health_check_interval}'")
        except ValueError:
            errors.append(f"OSD_HEALTH_CHECK_INTERVAL is not a valid duration: '{cfg.osd_health_check_interval}'")

    numeric_ranges = {
        'CEPH_CONNECT_TIMEOUT': (1, 300),
        'COMMAND_TIMEOUT_SECONDS': (0, 3600),
        'OSD_REMOVAL_GRACE_PERIOD': (0, 7 * 24 * 3600),
        'LOG_MAX_BYTES': (1024, 1073741824),  # 1 KB to 1 GB
        'LOG_BACKUP_COUNT': (1, 100),
    }

    for var, (mn, mx) in numeric_ranges.items():
        raw = os.getenv(var)
        if raw:
            try:
                val = float(raw)
                if val < mn or val > mx:
                    errors.append(f"{var} must be between {mn} and {mx}, got {val}")
            except ValueError:
                errors.append(f"{var} must be numeric, got '{raw}'")

    if cfg.kubeconfig:
        if not os.path.isfile(cfg.kubeconfig):
            errors.append(f"Kubeconfig file not found: {cfg.kubeconfig}")
        elif not os.access(cfg.kubeconfig, os.R_OK):
            errors.append(f"Kubeconfig file not readable: {cfg.kubeconfig}")

    if cfg.enable_structured_file and cfg.structured_log_file:
        structured_log_dir = os.path.dirname(cfg.structured_log_file)
        if structured_log_dir and not os.path.exists(structured_log_dir):
            try:
                os.makedirs(structured_log_dir, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create structured log directory {structured_log_dir}: {e}")

    return errors

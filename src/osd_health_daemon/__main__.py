"""
Entry point: `python -m osd_health_daemon` or the `osd-health-daemon` script.

Exit codes: 0 after a requested shutdown, 1 on a fatal startup or runtime
error, 130 on keyboard interrupt.
"""

import sys
from .config import Config
from .logging_setup import setup_logger
from .daemon import DAEMON_NAME, DAEMON_VERSION, startup, run_loop


def main():

    cfg = Config()

    logger = setup_logger(
        name=cfg.logger_name,
        level=cfg.log_level,
        log_file=cfg.log_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
        enable_structured_console=cfg.enable_structured_console,
        enable_structured_file=cfg.enable_structured_file,
        structured_log_file=cfg.structured_log_file
    )
    logger.info(f"Starting {DAEMON_NAME} v{DAEMON_VERSION} for CephCluster "
                f"{cfg.cluster_namespace}/{cfg.cluster_name}")

    exit_code = 0
    try:
        context, cluster_info = startup(cfg)
        run_loop(cfg, context, cluster_info)
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        logger.info(f"{DAEMON_NAME} exiting with code {exit_code}")
        for h in logger.handlers:
            try:
                h.flush()
            except Exception:
                pass
        sys.exit(exit_code)


if __name__ == "__main__":
    main()

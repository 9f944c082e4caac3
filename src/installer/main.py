"""Run driver for the installer.

Loads the configuration and the plan, builds one adapter per platform the
plan touches and runs the tasks. Exit codes:

- 0: plan applied
- 1: reconciliation failed (timeout, platform unavailable, conflict ...)
- 2: configuration or plan error, nothing was touched
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from .config import Config, ConfigurationError
from .errors import InstallerError
from .plan import InstallPlan
from .plan_loader import PlanLoadError, load_plan
from .platform import Platform
from .platforms import (
    KeycloakAdminPlatform,
    KubernetesPlatform,
    OpenStackPlatform,
    RancherPlatform,
)
from .poller import StatusPoller
from .reconciler import Reconciler
from .sequencer import Sequencer
from .tasks import run_plan

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Install the JSON formatter on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # SDK request logging is noisy at INFO
    for noisy in ("openstack", "keystoneauth", "urllib3", "httpx", "httpcore", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_platforms(config: Config, plan: InstallPlan) -> dict[str, Platform]:
    """Create an adapter for every platform the plan touches."""
    platforms: dict[str, Platform] = {}
    needed = plan.platforms()

    if "openstack" in needed:
        platforms["openstack"] = OpenStackPlatform(cloud=config.os_cloud)

    if "rancher" in needed and config.rancher_url and config.rancher_password:
        platforms["rancher"] = RancherPlatform(
            config.rancher_url,
            config.rancher_username,
            config.rancher_password,
            verify_tls=config.rancher_verify_tls,
            cluster_namespace=plan.rancher.cluster.namespace if plan.rancher else "fleet-default",
        )

    # With a Rancher section the kubeconfig is generated during the run
    if "kubernetes" in needed and (config.kubeconfig is not None or plan.rancher is None):
        platforms["kubernetes"] = KubernetesPlatform.from_kubeconfig(config.kubeconfig)

    if "keycloak" in needed and config.keycloak_url and config.keycloak_password:
        platforms["keycloak"] = KeycloakAdminPlatform(
            config.keycloak_url,
            config.keycloak_username,
            config.keycloak_password,
            realm=config.keycloak_realm,
        )

    return platforms


async def apply(plan_path: Path, config: Config | None = None) -> int:
    """Apply the plan at ``plan_path``.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    try:
        config = config or Config.from_env()
        plan = load_plan(plan_path)
    except (ConfigurationError, PlanLoadError) as e:
        logger.error("Invalid configuration or plan", extra={"error": str(e)})
        return EXIT_INVALID

    missing = config.missing_for(plan.platforms())
    if missing:
        logger.error(
            "Plan needs settings that are not configured",
            extra={"plan": plan.name, "missing": missing},
        )
        return EXIT_INVALID

    logger.info(
        "Starting installer",
        extra={"plan": plan.name, "platforms": sorted(plan.platforms())},
    )

    try:
        platforms = build_platforms(config, plan)
    except Exception as e:
        # Unusable kubeconfig or cloud entry
        logger.error(
            "Failed to initialize platform adapters",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_INVALID

    reconciler = Reconciler(
        platforms,
        poller=StatusPoller(
            interval=config.poll_interval_seconds, timeout=config.wait_timeout_seconds
        ),
        sequencer=Sequencer(planned=plan.kinds(), strict=config.strict_ordering),
    )

    try:
        summary = await run_plan(plan, config, reconciler)
    except InstallerError as e:
        logger.error(
            "Installation failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILED
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Installer failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILED
    finally:
        for platform in reconciler.platforms.values():
            await platform.close()

    logger.info(
        "Installation complete",
        extra={
            "plan": summary.plan,
            "outcomes": summary.counts,
            "duration_seconds": summary.duration_seconds,
        },
    )
    return EXIT_OK


def run(plan_path: Path) -> int:
    """Entry point used by the CLI."""
    setup_logging()
    return asyncio.run(apply(plan_path))

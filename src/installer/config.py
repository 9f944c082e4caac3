"""Configuration management with validation.

Connection settings and timing knobs come from the environment; the
desired state itself lives in the plan file (see ``plan_loader``).
Every value is validated at load time so a bad setting fails the run
before any remote call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60

DEFAULT_WAIT_TIMEOUT_SECONDS = 300
DEFAULT_CLUSTER_POLL_INTERVAL_SECONDS = 10
DEFAULT_CLUSTER_WAIT_TIMEOUT_SECONDS = 600
MAX_WAIT_TIMEOUT_SECONDS = 3600

# Front object -> back id lookup (Rancher status.clusterName)
DEFAULT_BRIDGE_ATTEMPTS = 5
MAX_BRIDGE_ATTEMPTS = 30
DEFAULT_BRIDGE_DELAY_SECONDS = 5

# Worker node fan-out
DEFAULT_MAX_PARALLEL_NODES = 3
MAX_PARALLEL_NODES = 16

DEFAULT_EXTERNAL_NETWORK = "ext-floating1"
DEFAULT_KEYCLOAK_REALM = "master"

# Security constraints - enforced limits to prevent abuse
MAX_PLAN_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max plan file

VALID_URL_PATTERN = r"^https?://[A-Za-z0-9.-]+(:[0-9]{1,5})?(/.*)?$"


@dataclass(frozen=True)
class Config:
    """Installer configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    Platform sections are optional: a plan only needs the platforms it
    actually touches, which ``missing_for`` reports.
    """

    # OpenStack (clouds.yaml entry)
    os_cloud: str | None = None
    external_network: str = DEFAULT_EXTERNAL_NETWORK

    # Rancher
    rancher_url: str | None = None
    rancher_username: str = "admin"
    rancher_password: str | None = field(default=None, repr=False)
    rancher_verify_tls: bool = True

    # Kubernetes
    kubeconfig: Path | None = None

    # Keycloak admin REST
    keycloak_url: str | None = None
    keycloak_realm: str = DEFAULT_KEYCLOAK_REALM
    keycloak_username: str = "admin"
    keycloak_password: str | None = field(default=None, repr=False)

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    wait_timeout_seconds: int = DEFAULT_WAIT_TIMEOUT_SECONDS
    cluster_poll_interval_seconds: int = DEFAULT_CLUSTER_POLL_INTERVAL_SECONDS
    cluster_wait_timeout_seconds: int = DEFAULT_CLUSTER_WAIT_TIMEOUT_SECONDS
    bridge_attempts: int = DEFAULT_BRIDGE_ATTEMPTS
    bridge_delay_seconds: int = DEFAULT_BRIDGE_DELAY_SECONDS

    # Behavior
    max_parallel_nodes: int = DEFAULT_MAX_PARALLEL_NODES
    strict_ordering: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for key, url in (("RANCHER_URL", self.rancher_url), ("KEYCLOAK_URL", self.keycloak_url)):
            if url and not re.match(VALID_URL_PATTERN, url):
                errors.append(f"{key} must be an http(s) URL: {url}")

        if self.rancher_url and not self.rancher_password:
            errors.append("RANCHER_PASSWORD is required when RANCHER_URL is set")

        if self.keycloak_url and not self.keycloak_password:
            errors.append("KEYCLOAK_PASSWORD is required when KEYCLOAK_URL is set")

        if not self.external_network:
            errors.append("OS_EXTERNAL_NETWORK must not be empty")

        if self.kubeconfig is not None and not self.kubeconfig.exists():
            errors.append(f"KUBECONFIG does not exist: {self.kubeconfig}")

        # Timing validation
        for key, value in (
            ("POLL_INTERVAL", self.poll_interval_seconds),
            ("CLUSTER_POLL_INTERVAL", self.cluster_poll_interval_seconds),
        ):
            if not (MIN_POLL_INTERVAL_SECONDS <= value <= MAX_POLL_INTERVAL_SECONDS):
                errors.append(
                    f"{key} must be between {MIN_POLL_INTERVAL_SECONDS} "
                    f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
                )

        for key, value in (
            ("WAIT_TIMEOUT", self.wait_timeout_seconds),
            ("CLUSTER_WAIT_TIMEOUT", self.cluster_wait_timeout_seconds),
        ):
            if not (self.poll_interval_seconds <= value <= MAX_WAIT_TIMEOUT_SECONDS):
                errors.append(
                    f"{key} must be between POLL_INTERVAL and {MAX_WAIT_TIMEOUT_SECONDS} seconds"
                )

        if not (1 <= self.bridge_attempts <= MAX_BRIDGE_ATTEMPTS):
            errors.append(f"BRIDGE_ATTEMPTS must be between 1 and {MAX_BRIDGE_ATTEMPTS}")

        if self.bridge_delay_seconds < 0:
            errors.append("BRIDGE_DELAY must not be negative")

        if not (1 <= self.max_parallel_nodes <= MAX_PARALLEL_NODES):
            errors.append(f"MAX_PARALLEL_NODES must be between 1 and {MAX_PARALLEL_NODES}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def missing_for(self, platforms: set[str]) -> list[str]:
        """Return the settings a plan touching ``platforms`` still lacks."""
        missing: list[str] = []
        if "openstack" in platforms and not self.os_cloud:
            missing.append("OS_CLOUD")
        if "rancher" in platforms and not self.rancher_url:
            missing.append("RANCHER_URL")
        if "keycloak" in platforms and not self.keycloak_url:
            missing.append("KEYCLOAK_URL")
        return missing

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            OS_CLOUD: clouds.yaml entry used by openstacksdk
            OS_EXTERNAL_NETWORK: External network for routers and floating IPs
                (default: ext-floating1)
            RANCHER_URL: Rancher server base URL
            RANCHER_USERNAME: Rancher local user (default: admin)
            RANCHER_PASSWORD: Rancher password (required with RANCHER_URL)
            RANCHER_VERIFY_TLS: Verify the Rancher certificate (default: true)
            KUBECONFIG: Kubeconfig for the downstream cluster
            KEYCLOAK_URL: Keycloak base URL
            KEYCLOAK_REALM: Realm managed through the admin API (default: master)
            KEYCLOAK_USERNAME / KEYCLOAK_PASSWORD: admin-cli credentials
            POLL_INTERVAL: Seconds between status polls (default: 5)
            WAIT_TIMEOUT: Timeout for resource waits in seconds (default: 300)
            CLUSTER_POLL_INTERVAL: Seconds between cluster polls (default: 10)
            CLUSTER_WAIT_TIMEOUT: Timeout for cluster readiness (default: 600)
            BRIDGE_ATTEMPTS: Attempts to read a back reference (default: 5)
            BRIDGE_DELAY: Seconds between those attempts (default: 5)
            MAX_PARALLEL_NODES: Concurrent worker node creations (default: 3)
            STRICT_ORDERING: Fail instead of warn on out-of-order reconciles
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        kubeconfig = os.environ.get("KUBECONFIG")

        return cls(
            os_cloud=os.environ.get("OS_CLOUD") or None,
            external_network=os.environ.get("OS_EXTERNAL_NETWORK", DEFAULT_EXTERNAL_NETWORK),
            rancher_url=(os.environ.get("RANCHER_URL") or "").rstrip("/") or None,
            rancher_username=os.environ.get("RANCHER_USERNAME", "admin"),
            rancher_password=os.environ.get("RANCHER_PASSWORD") or None,
            rancher_verify_tls=get_bool("RANCHER_VERIFY_TLS", True),
            kubeconfig=Path(kubeconfig) if kubeconfig else None,
            keycloak_url=(os.environ.get("KEYCLOAK_URL") or "").rstrip("/") or None,
            keycloak_realm=os.environ.get("KEYCLOAK_REALM", DEFAULT_KEYCLOAK_REALM),
            keycloak_username=os.environ.get("KEYCLOAK_USERNAME", "admin"),
            keycloak_password=os.environ.get("KEYCLOAK_PASSWORD") or None,
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            wait_timeout_seconds=get_int("WAIT_TIMEOUT", DEFAULT_WAIT_TIMEOUT_SECONDS),
            cluster_poll_interval_seconds=get_int(
                "CLUSTER_POLL_INTERVAL", DEFAULT_CLUSTER_POLL_INTERVAL_SECONDS
            ),
            cluster_wait_timeout_seconds=get_int(
                "CLUSTER_WAIT_TIMEOUT", DEFAULT_CLUSTER_WAIT_TIMEOUT_SECONDS
            ),
            bridge_attempts=get_int("BRIDGE_ATTEMPTS", DEFAULT_BRIDGE_ATTEMPTS),
            bridge_delay_seconds=get_int("BRIDGE_DELAY", DEFAULT_BRIDGE_DELAY_SECONDS),
            max_parallel_nodes=get_int("MAX_PARALLEL_NODES", DEFAULT_MAX_PARALLEL_NODES),
            strict_ordering=get_bool("STRICT_ORDERING", False),
        )

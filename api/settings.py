"""
Runtime configuration for the OpenStack console API.
All values come from environment variables (see config_validator.py).
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_CLOUD_CONFIG = """#cloud-config
chpasswd:
  list: |
    root:root
  expire: False
ssh_pwauth: True
"""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_url(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value.rstrip("/") if value else None


@dataclass(frozen=True)
class ConsoleSettings:
    # Keystone v3 URL, e.g. https://keystone.example.com/v3
    auth_url: str
    username: str = ""
    password: str = ""
    project_name: str = "admin"
    user_domain: str = "Default"
    project_domain: str = "Default"

    # Per-service overrides; when unset the service catalog is used
    network_url: Optional[str] = None
    image_url: Optional[str] = None
    compute_url: Optional[str] = None
    interface: str = "public"

    request_timeout: float = 15.0
    auth_timeout: float = 10.0
    token_skew_seconds: int = 120
    verify_tls: bool = True

    server_cloud_config: str = DEFAULT_CLOUD_CONFIG
    rollback_on_failure: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def from_env(cls) -> "ConsoleSettings":
        return cls(
            auth_url=os.getenv("OS_AUTH_URL", "").rstrip("/"),
            username=os.getenv("OS_USERNAME", ""),
            password=os.getenv("OS_PASSWORD", ""),
            project_name=os.getenv("OS_PROJECT_NAME", "admin"),
            user_domain=os.getenv("OS_USER_DOMAIN", "Default"),
            project_domain=os.getenv("OS_PROJECT_DOMAIN", "Default"),
            network_url=_env_url("OS_NETWORK_URL"),
            image_url=_env_url("OS_IMAGE_URL"),
            compute_url=_env_url("OS_COMPUTE_URL"),
            interface=os.getenv("OS_INTERFACE", "public"),
            request_timeout=float(os.getenv("OS_REQUEST_TIMEOUT", "15")),
            auth_timeout=float(os.getenv("OS_AUTH_TIMEOUT", "10")),
            token_skew_seconds=int(os.getenv("OS_TOKEN_SKEW_SECONDS", "120")),
            verify_tls=_env_bool("OS_VERIFY_TLS", "true"),
            server_cloud_config=os.getenv("OS_SERVER_CLOUD_CONFIG", DEFAULT_CLOUD_CONFIG),
            rollback_on_failure=_env_bool("CONSOLE_ROLLBACK_ON_FAILURE", "false"),
        )

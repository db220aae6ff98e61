import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from fabric_deploy.errors import ConfigError, FabricAuthError

FABRIC_API_BASE = "https://api.fabric.microsoft.com/v1"
FABRIC_AUTHORITY = "https://login.microsoftonline.com"
FABRIC_SCOPE = "https://api.fabric.microsoft.com/.default"

# Default target workspace per environment (deploy-dev / deploy-prd)
ENVIRONMENTS: Dict[str, str] = {
    "dev": "DevWorkspace",
    "prd": "ProdWorkspace",
}


def _get_env_or_fail(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise FabricAuthError(f"Missing environment variable: {name}")
    return value


def _env_number(name: str, default, convert, what: str):
    value = os.getenv(name)
    if not value:
        return default
    try:
        number = convert(value.strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be {what}, got {value!r}") from e
    if number < 0:
        raise ConfigError(f"{name} must not be negative, got {value!r}")
    return number


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float, "a number")


def _env_int(name: str, default: int) -> int:
    return _env_number(name, default, int, "an integer")


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split(",") if v.strip())


@dataclass(frozen=True)
class DeploySettings:
    api_base: str = FABRIC_API_BASE
    authority: str = FABRIC_AUTHORITY
    scope: str = FABRIC_SCOPE

    workspace: Optional[str] = None
    capacity_id: Optional[str] = None
    admin_principals: Tuple[str, ...] = field(default_factory=tuple)

    access_token: Optional[str] = None

    request_timeout: float = 60.0
    max_retries: int = 4
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    poll_interval: float = 3.0
    poll_max: int = 40  # = 2 minutes max

    @classmethod
    def from_env(cls, env: str = "dev") -> "DeploySettings":
        return cls(
            api_base=os.getenv("FABRIC_API_BASE", FABRIC_API_BASE),
            authority=os.getenv("FABRIC_AUTHORITY", FABRIC_AUTHORITY),
            scope=os.getenv("FABRIC_SCOPE", FABRIC_SCOPE),
            workspace=os.getenv("FABRIC_WORKSPACE") or ENVIRONMENTS.get(env),
            capacity_id=os.getenv("FABRIC_CAPACITY") or None,
            admin_principals=_split_csv(os.getenv("FABRIC_ADMIN_UPNS")),
            access_token=os.getenv("FABRIC_ACCESS_TOKEN") or None,
            request_timeout=_env_float("FABRIC_REQUEST_TIMEOUT", 60.0),
            max_retries=_env_int("FABRIC_MAX_RETRIES", 4),
            backoff_base=_env_float("FABRIC_BACKOFF_BASE", 2.0),
            backoff_max=_env_float("FABRIC_BACKOFF_MAX", 60.0),
            poll_interval=_env_float("FABRIC_POLL_INTERVAL", 3.0),
            poll_max=_env_int("FABRIC_POLL_MAX", 40),
        )

    def with_overrides(self, **overrides) -> "DeploySettings":
        # argparse hands us None for every flag that was not given
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def spn_credentials(self) -> Tuple[str, str, str]:
        return (
            _get_env_or_fail("FABRIC_TENANT_ID"),
            _get_env_or_fail("FABRIC_CLIENT_ID"),
            _get_env_or_fail("FABRIC_CLIENT_SECRET"),
        )

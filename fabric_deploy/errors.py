from enum import Enum
from typing import Optional


# ======================================================================================
# Exceptions
# ======================================================================================

class FabricDeployError(Exception):
    kind = "error"

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class FabricAuthError(FabricDeployError):
    kind = "auth"


class FabricApiError(FabricDeployError):
    kind = "api"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after = retry_after
        self.body = body


class FabricTimeoutError(FabricApiError):
    """Request timed out, connection dropped, or a long-running operation never finished."""


class ConfigError(FabricDeployError):
    kind = "config"


class ContainerError(FabricDeployError):
    kind = "container"


class PlanError(FabricDeployError):
    kind = "plan"


class BindingError(FabricDeployError):
    kind = "binding"


class DeployErrorKind(str, Enum):
    CONTENT_INVALID = "content-invalid"
    AUTH_EXPIRED = "auth-expired"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate-limited"

    @property
    def retryable(self) -> bool:
        return self is not DeployErrorKind.CONTENT_INVALID


class DeployError(FabricDeployError):
    def __init__(self, kind: DeployErrorKind, cause: str, retry_after: Optional[float] = None):
        super().__init__(cause)
        self.deploy_kind = kind
        self.cause = cause
        self.retry_after = retry_after

    @property
    def kind(self) -> str:
        return self.deploy_kind.value


def classify_api_error(err: FabricApiError) -> DeployError:
    """Map a raw HTTP failure onto the deploy error taxonomy."""
    status = err.status_code

    if isinstance(err, FabricTimeoutError):
        kind = DeployErrorKind.TRANSIENT
    elif status is None:
        kind = DeployErrorKind.CONTENT_INVALID
    elif status == 401:
        kind = DeployErrorKind.AUTH_EXPIRED
    elif status == 429:
        kind = DeployErrorKind.RATE_LIMITED
    elif status == 408 or status >= 500:
        kind = DeployErrorKind.TRANSIENT
    else:
        kind = DeployErrorKind.CONTENT_INVALID

    return DeployError(kind, str(err), retry_after=err.retry_after)

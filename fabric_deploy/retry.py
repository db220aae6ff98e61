import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from fabric_deploy.config import DeploySettings
from fabric_deploy.errors import DeployError, DeployErrorKind, FabricApiError, classify_api_error

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded retry for deploy calls.

    content-invalid   never retried
    auth-expired      retried once (the client already dropped the rejected token)
    transient         exponential backoff, at most `max_retries` retries
    rate-limited      Retry-After when the service sends one, else backoff; same bound
    """

    max_retries: int = 4
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: DeploySettings, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
            sleep=sleep,
        )

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    def delay_for(self, err: DeployError, attempt: int, auth_retries: int = 0) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to give up."""
        kind = err.deploy_kind
        if kind is DeployErrorKind.CONTENT_INVALID:
            return None
        if kind is DeployErrorKind.AUTH_EXPIRED:
            return 0.0 if auth_retries == 0 else None
        if attempt >= self.max_retries:
            return None
        if kind is DeployErrorKind.RATE_LIMITED and err.retry_after is not None:
            return err.retry_after
        return self.backoff(attempt)

    def call(self, fn: Callable[[], T], what: str) -> T:
        attempt = 0
        auth_retries = 0
        while True:
            try:
                return fn()
            except (FabricApiError, DeployError) as e:
                err = classify_api_error(e) if isinstance(e, FabricApiError) else e
                delay = self.delay_for(err, attempt, auth_retries)
                if delay is None:
                    if err is e:
                        raise
                    raise err from e

            if err.deploy_kind is DeployErrorKind.AUTH_EXPIRED:
                auth_retries += 1
                print(f"🔑 {what}: credential rejected, refreshing and retrying once")
            else:
                attempt += 1
                print(f"⚠️ {what}: {err.kind}, retry {attempt}/{self.max_retries} in {delay:.1f}s")
            self.sleep(delay)

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from fabric_deploy.config import DeploySettings
from fabric_deploy.errors import DeployError, FabricAuthError, FabricTimeoutError
from fabric_deploy.retry import RetryPolicy

# Refresh this many seconds before the token actually expires
EXPIRY_SKEW = 60.0


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: Optional[float] = None
    issued_at: Optional[float] = None

    def is_expired(self, now: float, skew: float = EXPIRY_SKEW) -> bool:
        if self.expires_at is None:
            return False
        if self.issued_at is not None:
            # short-lived tokens keep at least half their lifetime usable
            skew = min(skew, (self.expires_at - self.issued_at) / 2)
        return now >= self.expires_at - skew


LoginFn = Callable[[], Credential]


# ======================================================================================
# Login flows
# ======================================================================================

def get_access_token_spn(
    settings: DeploySettings,
    session: Optional[requests.Session] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Credential:
    tenant_id, client_id, client_secret = settings.spn_credentials()

    token_url = f"{settings.authority.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"

    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": settings.scope,
    }

    http = session or requests

    def post():
        try:
            return http.post(token_url, data=data, timeout=settings.request_timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise FabricTimeoutError(f"Token request to {token_url} failed: {e}") from e
        except requests.RequestException as e:
            raise FabricAuthError(f"Token request to {token_url} failed: {e}") from e

    try:
        resp = RetryPolicy.from_settings(settings, sleep=sleep).call(post, "token request")
    except DeployError as e:
        raise FabricAuthError(f"{e.cause} (gave up after {settings.max_retries} retries)") from e

    if resp.status_code != 200:
        raise FabricAuthError(
            f"Failed to acquire token. HTTP {resp.status_code}: {resp.text}"
        )

    payload = resp.json()
    token = payload.get("access_token")
    if not token:
        raise FabricAuthError("Token response missing 'access_token'.")

    issued_at = clock()
    expires_in = payload.get("expires_in")
    expires_at = issued_at + float(expires_in) if expires_in else None
    return Credential(token=token, expires_at=expires_at, issued_at=issued_at if expires_at else None)


def static_token_login(token: str) -> LoginFn:
    """Login flow for a token obtained elsewhere (az cli, interactive browser login)."""
    def login() -> Credential:
        if not token:
            raise FabricAuthError("Empty access token.")
        return Credential(token=token)
    return login


def login_from_settings(settings: DeploySettings, session: Optional[requests.Session] = None) -> LoginFn:
    if settings.access_token:
        return static_token_login(settings.access_token)
    return lambda: get_access_token_spn(settings, session=session)


# ======================================================================================
# Credential cache
# ======================================================================================

class CredentialProvider:
    """Caches one credential, re-running the login flow only when it expired or was invalidated.

    Readers never take the lock while the cached token is valid. Refreshes are
    serialized, so a burst of callers hitting an expired token logs in once.
    """

    def __init__(self, login: LoginFn, clock: Callable[[], float] = time.time):
        self._login = login
        self._clock = clock
        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self.refresh_count = 0

    def _valid(self, cred: Optional[Credential]) -> bool:
        return cred is not None and not cred.is_expired(self._clock())

    def acquire(self) -> Credential:
        cred = self._credential
        if self._valid(cred):
            return cred

        with self._lock:
            cred = self._credential
            if self._valid(cred):
                return cred
            cred = self._login()
            self._credential = cred
            self.refresh_count += 1
            return cred

    def invalidate(self, stale: Optional[Credential] = None) -> None:
        """Drop the cached credential.

        When `stale` is given the cache is only cleared if it still holds that
        credential, so several callers rejected with the same token cause one refresh.
        """
        with self._lock:
            if stale is None or self._credential is stale:
                self._credential = None

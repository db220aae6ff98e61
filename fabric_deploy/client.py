import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from fabric_deploy.auth import CredentialProvider
from fabric_deploy.config import DeploySettings
from fabric_deploy.errors import FabricApiError, FabricTimeoutError


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form; let the caller fall back to backoff
        return None


def json_or_none(resp: requests.Response) -> Optional[Any]:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None


def _error_from_response(method: str, url: str, resp: requests.Response) -> FabricApiError:
    body = json_or_none(resp)
    error_code = body.get("errorCode") if isinstance(body, dict) else None
    return FabricApiError(
        f"{method} {url} failed. HTTP {resp.status_code}: {resp.text}",
        status_code=resp.status_code,
        error_code=error_code,
        retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
        body=resp.text,
    )


# ======================================================================================
# API Wrapper
# ======================================================================================

class FabricClient:
    def __init__(
        self,
        credentials: CredentialProvider,
        settings: Optional[DeploySettings] = None,
        session: Optional[requests.Session] = None,
        quiet: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credentials
        self.settings = settings or DeploySettings()
        self.session = session or requests.Session()
        self.quiet = quiet
        self.sleep = sleep

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.settings.api_base.rstrip('/')}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.url(path)
        credential = self.credentials.acquire()

        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {credential.token}"
        if "json" in kwargs and "Content-Type" not in headers:
            headers["Content-Type"] = "application/json"
        kwargs.setdefault("timeout", self.settings.request_timeout)

        if not self.quiet:
            print(f"Calling Fabric API: {method} {url}")

        try:
            resp = self.session.request(method, url, headers=headers, **kwargs)
        except requests.Timeout as e:
            raise FabricTimeoutError(f"{method} {url} timed out: {e}") from e
        except requests.ConnectionError as e:
            raise FabricTimeoutError(f"{method} {url} connection failed: {e}") from e

        # We do NOT raise for 202; only for 4xx or 5xx
        if resp.status_code >= 400:
            if resp.status_code == 401:
                self.credentials.invalidate(credential)
            raise _error_from_response(method, url, resp)

        return resp

    def list_paged(self, path: str) -> Iterator[Dict]:
        url: Optional[str] = path
        while url:
            data = json_or_none(self.request("GET", url)) or {}
            for entry in data.get("value", []):
                yield entry
            url = data.get("continuationUri")

    # ----------------------------------------------------------------------------------
    # Long-running operations
    # ----------------------------------------------------------------------------------

    @staticmethod
    def operation_id(resp: requests.Response) -> Optional[str]:
        operation_id = resp.headers.get("x-ms-operation-id", "")
        if not operation_id:
            location = resp.headers.get("Location", "")
            operation_id = location.rstrip("/").split("/")[-1] if "/operations/" in location else ""
        return operation_id or None

    def wait_for_operation(self, operation_id: str) -> Dict:
        """Poll a 202-accepted operation and return its result body ({} when it has none)."""
        poll_max = self.settings.poll_max
        for attempt in range(1, poll_max + 1):
            self.sleep(self.settings.poll_interval)
            body = json_or_none(self.request("GET", f"operations/{operation_id}")) or {}
            status = str(body.get("status", "")).lower()
            print(f"⏳ Operation {operation_id}: {status or 'unknown'} (attempt {attempt}/{poll_max})")

            if status == "succeeded":
                try:
                    resp = self.request("GET", f"operations/{operation_id}/result")
                except FabricApiError as e:
                    # updateDefinition operations have no result body
                    if e.status_code in (400, 404):
                        return {}
                    raise
                return json_or_none(resp) or {}

            if status in ("failed", "cancelled"):
                err = body.get("error") or {}
                raise FabricApiError(
                    f"Operation {operation_id} {status}: {err.get('message', 'unknown error')}",
                    error_code=err.get("errorCode"),
                )

        raise FabricTimeoutError(
            f"Timeout: operation {operation_id} did not finish after {poll_max} polls."
        )

    def poll_until(self, find: Callable[[], Optional[str]], what: str) -> str:
        """Poll `find` until it returns an id; used when a 202 carries no operation id."""
        for _ in range(self.settings.poll_max):
            found = find()
            if found:
                print(f"🎉 Successfully detected {what}: {found}")
                return found
            self.sleep(self.settings.poll_interval)

        raise FabricTimeoutError(f"Timeout: {what} did not appear after {self.settings.poll_max} polls.")


def find_by(items: List[Dict], key: str, value: str) -> Optional[Dict]:
    for entry in items:
        if entry.get(key) == value:
            return entry
    return None

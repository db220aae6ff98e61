import threading
from typing import Dict, Iterable, Optional

from fabric_deploy.client import FabricClient, find_by, json_or_none
from fabric_deploy.errors import ContainerError, DeployError, FabricApiError
from fabric_deploy.retry import RetryPolicy

NAME_CONFLICT_CODES = {"WorkspaceNameAlreadyExists", "WorkspaceNameAlreadyInUse"}


# ======================================================================================
# Workspace Management
# ======================================================================================

class WorkspaceResolver:
    """Get-or-create for workspaces, by display name.

    Resolved ids are cached per resolver, so asking twice for the same name
    costs one lookup and at most one creation.
    """

    def __init__(
        self,
        client: FabricClient,
        capacity_id: Optional[str] = None,
        admin_principals: Iterable[str] = (),
        retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.capacity_id = capacity_id
        self.admin_principals = [p for p in admin_principals if p]
        self.retry = retry or RetryPolicy.from_settings(client.settings, sleep=client.sleep)
        self._lock = threading.Lock()
        self._resolved: Dict[str, str] = {}

    def find_workspace(self, workspace_name: str) -> Optional[Dict]:
        return find_by(list(self.client.list_paged("workspaces")), "displayName", workspace_name)

    def ensure_workspace(self, workspace_name: str) -> str:
        cached = self._resolved.get(workspace_name)
        if cached:
            return cached

        with self._lock:
            cached = self._resolved.get(workspace_name)
            if cached:
                return cached
            try:
                workspace_id = self.retry.call(
                    lambda: self._get_or_create(workspace_name),
                    what=f"workspace '{workspace_name}'",
                )
            except (DeployError, FabricApiError) as e:
                raise ContainerError(f"Could not resolve workspace '{workspace_name}': {e}") from e
            self._resolved[workspace_name] = workspace_id
            return workspace_id

    def _get_or_create(self, workspace_name: str) -> str:
        ws = self.find_workspace(workspace_name)
        if ws is not None:
            print(f"Workspace '{workspace_name}' already exists (id={ws['id']}).")
            return ws["id"]

        body = {"displayName": workspace_name}
        if self.capacity_id:
            body["capacityId"] = self.capacity_id

        print(f"Creating workspace '{workspace_name}'...")
        try:
            resp = self.client.request("POST", "workspaces", json=body)
        except FabricApiError as e:
            if e.status_code != 409 and e.error_code not in NAME_CONFLICT_CODES:
                raise
            # Lost a creation race: the other caller's workspace is ours too
            ws = self.find_workspace(workspace_name)
            if ws is None:
                raise
            print(f"Workspace '{workspace_name}' was created concurrently (id={ws['id']}).")
            return ws["id"]

        ws = json_or_none(resp) or {}
        if not ws.get("id"):
            raise ContainerError(f"Workspace creation returned no id: {resp.text}")

        print(f"Workspace created (id={ws['id']}).")
        self._assign_admins(ws["id"])
        return ws["id"]

    def _assign_admins(self, workspace_id: str) -> None:
        for principal_id in self.admin_principals:
            body = {"principal": {"id": principal_id, "type": "User"}, "role": "Admin"}
            try:
                self.client.request("POST", f"workspaces/{workspace_id}/roleAssignments", json=body)
            except FabricApiError as e:
                if e.status_code != 409:
                    raise
            print(f"Granted Admin on workspace {workspace_id} to {principal_id}.")

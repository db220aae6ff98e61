from typing import Dict, Mapping, Optional, Tuple

from fabric_deploy.client import FabricClient, find_by, json_or_none
from fabric_deploy.definition import apply_properties, build_definition, build_definition_parts_from_folder
from fabric_deploy.errors import DeployError, DeployErrorKind, FabricApiError
from fabric_deploy.plan import ArtifactSpec
from fabric_deploy.report import ArtifactResult
from fabric_deploy.retry import RetryPolicy


# ======================================================================================
# ITEM CREATION / UPDATE
# ======================================================================================

class ArtifactUploader:
    def __init__(self, client: FabricClient, retry: Optional[RetryPolicy] = None):
        self.client = client
        self.retry = retry or RetryPolicy.from_settings(client.settings, sleep=client.sleep)

    def find_item(self, workspace_id: str, display_name: str, kind: str) -> Optional[Dict]:
        items = list(self.client.list_paged(f"workspaces/{workspace_id}/items?type={kind}"))
        return find_by(items, "displayName", display_name)

    def deploy(self, workspace_id: str, spec: ArtifactSpec, properties: Mapping[str, str]) -> ArtifactResult:
        """Create or overwrite `spec` in the workspace with `properties` already substituted."""
        print(f"\n=== Publishing {spec.kind} from folder: {spec.path}")
        print(f"Item displayName = {spec.display_name}")

        try:
            parts = build_definition_parts_from_folder(spec.path)
        except OSError as e:
            raise DeployError(DeployErrorKind.CONTENT_INVALID, f"Cannot read {spec.path}: {e}") from e

        parts = apply_properties(parts, spec.kind, properties)
        definition = build_definition(parts, spec.kind)

        item_id, created = self.retry.call(
            lambda: self._publish(workspace_id, spec, definition),
            what=spec.name,
        )

        return ArtifactResult(
            item_id=item_id,
            display_name=spec.display_name,
            kind=spec.kind,
            created=created,
            bound_properties=dict(properties),
        )

    def _publish(self, workspace_id: str, spec: ArtifactSpec, definition: Dict) -> Tuple[str, bool]:
        # Looked up on every attempt: a create that timed out may have landed server-side
        existing = self.find_item(workspace_id, spec.display_name, spec.kind)

        if existing is None:
            try:
                return self._create(workspace_id, spec, definition), True
            except FabricApiError as e:
                if e.status_code != 409:
                    raise
                # Someone else created it between our lookup and our POST
                existing = self.find_item(workspace_id, spec.display_name, spec.kind)
                if existing is None:
                    raise

        self._update(workspace_id, spec, existing["id"], definition)
        return existing["id"], False

    # ------------------------------------------------------------------------------
    # CASE 1 : CREATE NEW ITEM
    # ------------------------------------------------------------------------------

    def _create(self, workspace_id: str, spec: ArtifactSpec, definition: Dict) -> str:
        print(f"🆕 Creating new {spec.kind} '{spec.display_name}'")

        body = {
            "displayName": spec.display_name,
            "type": spec.kind,
            "definition": definition,
        }

        resp = self.client.request("POST", f"workspaces/{workspace_id}/items", json=body)

        if resp.status_code in (200, 201):
            item = json_or_none(resp) or {}
            if not item.get("id"):
                raise FabricApiError(
                    f"Fabric did not return an item id for {spec.kind} '{spec.display_name}': {resp.text}"
                )
            print(f"✅ Created {spec.kind} '{spec.display_name}' (id={item['id']})")
            return item["id"]

        if resp.status_code == 202:
            operation_id = self.client.operation_id(resp)
            if operation_id:
                print(f"⏳ Item creation accepted (202), waiting for operation {operation_id}...")
                result = self.client.wait_for_operation(operation_id)
                if result.get("id"):
                    print(f"✅ Created {spec.kind} '{spec.display_name}' (id={result['id']})")
                    return result["id"]
            else:
                print("⏳ Item creation accepted (202). Polling until creation is complete...")

            def lookup() -> Optional[str]:
                found = self.find_item(workspace_id, spec.display_name, spec.kind)
                return found["id"] if found else None

            return self.client.poll_until(lookup, f"{spec.kind} '{spec.display_name}'")

        raise FabricApiError(
            f"Fabric failed to create {spec.kind} '{spec.display_name}'. "
            f"HTTP {resp.status_code}: {resp.text}"
        )

    # ------------------------------------------------------------------------------
    # CASE 2 : UPDATE EXISTING ITEM
    # ------------------------------------------------------------------------------

    def _update(self, workspace_id: str, spec: ArtifactSpec, item_id: str, definition: Dict) -> None:
        print(f"🔄 Updating existing {spec.kind} '{spec.display_name}' (id={item_id})")

        resp = self.client.request(
            "POST",
            f"workspaces/{workspace_id}/items/{item_id}/updateDefinition?updateMetadata=false",
            json={"definition": definition},
        )

        if resp.status_code == 202:
            operation_id = self.client.operation_id(resp)
            if operation_id:
                self.client.wait_for_operation(operation_id)
            else:
                print("⚠️ WARNING: update accepted without an operation id, not waiting for completion.")

        print(f"✅ Updated {spec.kind} '{spec.display_name}' (id={item_id})")

"""Shared fixtures: an in-memory stand-in for the Fabric REST API and sample artifact folders."""

import base64
import itertools
import json
import sys
from collections import defaultdict
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fabric_deploy.auth import Credential, CredentialProvider
from fabric_deploy.client import FabricClient
from fabric_deploy.config import FABRIC_API_BASE, DeploySettings

API_PREFIX = FABRIC_API_BASE + "/"

ID_PREFIX = {"SemanticModel": "M", "Report": "R"}


class FakeResponse:
    def __init__(self, status_code=200, json_body=None, headers=None, text=None):
        self.status_code = status_code
        self._json = json_body
        self.headers = headers or {}
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeFabric:
    """Enough of the workspace/item API to deploy against, plus scripted responses."""

    def __init__(self):
        self.workspaces = {}
        self.items = {}
        self.calls = []
        self.scripted = []
        self._counters = defaultdict(lambda: itertools.count(1))

    def _next_id(self, prefix):
        return f"{prefix}{next(self._counters[prefix])}"

    def add_workspace(self, name, workspace_id=None):
        workspace_id = workspace_id or self._next_id("W")
        self.workspaces[workspace_id] = {"id": workspace_id, "displayName": name}
        return workspace_id

    def respond(self, method, fragment, response, times=1):
        """Answer the next `times` matching calls with `response` (or raise it)."""
        self.scripted.append([method, fragment, response, times])

    def calls_to(self, method, fragment):
        return [c for c in self.calls if c[0] == method and fragment in c[1]]

    def item_definition(self, item_id):
        return self.items[item_id]["definition"]

    def request(self, method, url, headers=None, json=None, timeout=None, **kwargs):
        assert timeout is not None, "every request needs a timeout"
        path = url[len(API_PREFIX):] if url.startswith(API_PREFIX) else url
        self.calls.append((method, path, json, headers))

        for entry in self.scripted:
            if entry[0] == method and entry[1] in path and entry[3] > 0:
                entry[3] -= 1
                if isinstance(entry[2], BaseException):
                    raise entry[2]
                return entry[2]

        return self._route(method, path, json)

    def _route(self, method, path, body):
        path, _, query = path.partition("?")
        parts = path.split("/")

        if parts == ["workspaces"]:
            if method == "GET":
                return FakeResponse(200, {"value": list(self.workspaces.values())})
            workspace_id = self.add_workspace(body["displayName"])
            self.workspaces[workspace_id].update(body)
            return FakeResponse(201, self.workspaces[workspace_id])

        if len(parts) == 3 and parts[2] == "roleAssignments":
            return FakeResponse(201, {"id": self._next_id("RA")})

        if len(parts) == 3 and parts[2] == "items":
            workspace_id = parts[1]
            if method == "GET":
                kind = query.split("type=", 1)[1] if "type=" in query else None
                values = [
                    {k: v for k, v in it.items() if k != "definition"}
                    for it in self.items.values()
                    if it["workspaceId"] == workspace_id and (kind is None or it["type"] == kind)
                ]
                return FakeResponse(200, {"value": values})
            item_id = self._next_id(ID_PREFIX.get(body["type"], "I"))
            self.items[item_id] = {
                "id": item_id,
                "workspaceId": workspace_id,
                "displayName": body["displayName"],
                "type": body["type"],
                "definition": body["definition"],
            }
            return FakeResponse(201, {"id": item_id, "displayName": body["displayName"], "type": body["type"]})

        if len(parts) == 5 and parts[4] == "updateDefinition":
            self.items[parts[3]]["definition"] = body["definition"]
            return FakeResponse(200)

        raise AssertionError(f"unexpected call {method} {path}")


class CountingLogin:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return Credential(token=f"token-{self.calls}")


def decode_part(definition, path):
    for part in definition["parts"]:
        if part["path"] == path:
            return base64.b64decode(part["payload"]).decode("utf-8")
    raise KeyError(path)


@pytest.fixture
def fabric():
    return FakeFabric()


@pytest.fixture
def settings():
    return DeploySettings(max_retries=3, backoff_base=0.5, backoff_max=10.0, poll_interval=0.0, poll_max=5)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def login():
    return CountingLogin()


@pytest.fixture
def credentials(login):
    return CredentialProvider(login)


@pytest.fixture
def client(fabric, settings, credentials, sleeps):
    return FabricClient(credentials, settings, session=fabric, quiet=True, sleep=sleeps.append)


@pytest.fixture
def artifacts(tmp_path) -> Path:
    """A repository with the usual semantic model + report folders."""
    model = tmp_path / "src" / "CleanModel.SemanticModel"
    (model / "definition" / "tables").mkdir(parents=True)
    (model / "definition.pbism").write_text('{"version": "4.0", "settings": {}}', encoding="utf-8")
    (model / "definition" / "model.tmdl").write_text("model Model\n\tculture: en-US\n", encoding="utf-8")
    (model / "definition" / "tables" / "Sales.tmdl").write_text(
        "table Sales\n\tmeasure 'Total' = SUM(Sales[Amount])\n", encoding="utf-8"
    )
    (model / ".platform").write_text('{"metadata": {"type": "SemanticModel"}}', encoding="utf-8")

    report = tmp_path / "src" / "CleanReport.Report"
    report.mkdir(parents=True)
    (report / "definition.pbir").write_text(
        json.dumps({"version": "4.0", "datasetReference": {"byPath": {"path": "../CleanModel.SemanticModel"}}}),
        encoding="utf-8",
    )
    (report / "report.json").write_text('{"config": "{}", "sections": []}', encoding="utf-8")
    (report / ".platform").write_text('{"metadata": {"type": "Report"}}', encoding="utf-8")
    return tmp_path

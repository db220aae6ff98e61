import json

import pytest

from fabric_deploy import cli
from fabric_deploy.report import ExitCode

from conftest import FakeResponse


@pytest.fixture
def service(fabric, monkeypatch):
    for name in ("FABRIC_TENANT_ID", "FABRIC_CLIENT_ID", "FABRIC_CLIENT_SECRET", "FABRIC_WORKSPACE",
                 "FABRIC_CAPACITY", "FABRIC_ADMIN_UPNS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FABRIC_ACCESS_TOKEN", "cli-token")
    monkeypatch.setattr("fabric_deploy.deployer.requests.Session", lambda: fabric)
    return fabric


@pytest.fixture
def plan_file(artifacts):
    path = artifacts / "plan.json"
    path.write_text(json.dumps({
        "workspace": "Sales",
        "artifacts": [
            {"name": "model", "path": "src/CleanModel.SemanticModel"},
            {"name": "report", "path": "src/CleanReport.Report", "bindings": {"semanticModelId": "model"}},
        ],
    }), encoding="utf-8")
    return path


def test_validate_prints_order(plan_file, capsys):
    assert cli.main(["validate", "--spec", str(plan_file)]) == ExitCode.OK
    out = capsys.readouterr().out
    assert "1. model [SemanticModel]" in out
    assert "2. report [Report]" in out
    assert "(after model)" in out


def test_validate_rejects_bad_plan(tmp_path, capsys):
    plan = tmp_path / "plan.json"
    plan.write_text(json.dumps([{"name": "report", "path": "R.Report", "dependsOn": ["model"]}]), encoding="utf-8")

    assert cli.main(["validate", "--spec", str(plan)]) == ExitCode.PLAN_INVALID
    assert "plan: Artifact 'report' depends on unknown artifact 'model'" in capsys.readouterr().out


def test_deploy_plan_file(service, plan_file, capsys):
    code = cli.main(["deploy", "--spec", str(plan_file), "--quiet"])

    assert code == ExitCode.OK
    assert [w["displayName"] for w in service.workspaces.values()] == ["Sales"]
    out = capsys.readouterr().out
    assert "✅ model: succeeded (id=M1)" in out
    assert "✅ report: succeeded (id=R1) bound to semanticModelId=M1" in out
    assert service.calls[0][3]["Authorization"] == "Bearer cli-token"


def test_deploy_default_plan_uses_environment_workspace(service, artifacts):
    code = cli.main(["deploy", "--env", "prd", "--root", str(artifacts), "--capacity", "CAP", "--quiet"])

    assert code == ExitCode.OK
    created = service.calls_to("POST", "workspaces")[0][2]
    assert created == {"displayName": "ProdWorkspace", "capacityId": "CAP"}
    assert {it["displayName"] for it in service.items.values()} == {"CleanModel", "CleanReport"}


def test_workspace_flag_overrides_plan(service, plan_file):
    assert cli.main(["deploy", "--spec", str(plan_file), "--container", "Other", "--quiet"]) == ExitCode.OK
    assert [w["displayName"] for w in service.workspaces.values()] == ["Other"]


def test_deploy_failure_exit_code(service, plan_file, capsys):
    service.respond("POST", "/items", FakeResponse(400, {"errorCode": "InvalidDefinition"}))

    assert cli.main(["deploy", "--spec", str(plan_file), "--quiet"]) == ExitCode.DEPLOY_FAILED
    out = capsys.readouterr().out
    assert "❌ model: failed [content-invalid]" in out
    assert "⏭️ report: skipped (due to upstream failure: model)" in out


def test_invalid_plan_exit_code_touches_nothing(service, tmp_path):
    plan = tmp_path / "plan.json"
    plan.write_text("[]", encoding="utf-8")

    assert cli.main(["deploy", "--spec", str(plan)]) == ExitCode.PLAN_INVALID
    assert service.calls == []


def test_auth_failure_exit_code(service, plan_file, monkeypatch, capsys):
    monkeypatch.delenv("FABRIC_ACCESS_TOKEN")

    assert cli.main(["deploy", "--spec", str(plan_file)]) == ExitCode.AUTH_FAILED
    assert "auth: Missing environment variable: FABRIC_TENANT_ID" in capsys.readouterr().out
    assert service.calls == []


def test_container_failure_exit_code(service, plan_file):
    service.respond("GET", "workspaces", FakeResponse(403, {"errorCode": "Unauthorized"}))

    assert cli.main(["deploy", "--spec", str(plan_file), "--quiet"]) == ExitCode.CONTAINER_FAILED


def test_malformed_setting_is_a_usage_error(service, plan_file, monkeypatch, capsys):
    monkeypatch.setenv("FABRIC_MAX_RETRIES", "lots")

    assert cli.main(["deploy", "--spec", str(plan_file)]) == ExitCode.USAGE
    assert "config: FABRIC_MAX_RETRIES must be an integer, got 'lots'" in capsys.readouterr().out
    assert service.calls == []

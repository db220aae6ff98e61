import pytest

from fabric_deploy.config import DeploySettings
from fabric_deploy.errors import ConfigError


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("FABRIC_CAPACITY", "CAP")
    monkeypatch.setenv("FABRIC_ADMIN_UPNS", "alice-id, bob-id,,")
    monkeypatch.setenv("FABRIC_REQUEST_TIMEOUT", "15")
    monkeypatch.setenv("FABRIC_MAX_RETRIES", "2")
    monkeypatch.delenv("FABRIC_WORKSPACE", raising=False)

    settings = DeploySettings.from_env("prd")

    assert settings.workspace == "ProdWorkspace"
    assert settings.capacity_id == "CAP"
    assert settings.admin_principals == ("alice-id", "bob-id")
    assert settings.request_timeout == 15.0
    assert settings.max_retries == 2


def test_explicit_workspace_env_wins(monkeypatch):
    monkeypatch.setenv("FABRIC_WORKSPACE", "Sales")
    assert DeploySettings.from_env("dev").workspace == "Sales"


def test_with_overrides_ignores_unset_flags():
    settings = DeploySettings(capacity_id="CAP").with_overrides(capacity_id=None, request_timeout=5.0)
    assert settings.capacity_id == "CAP"
    assert settings.request_timeout == 5.0


@pytest.mark.parametrize("name, value", [
    ("FABRIC_MAX_RETRIES", "three"),
    ("FABRIC_REQUEST_TIMEOUT", "60s"),
    ("FABRIC_POLL_MAX", "2.5"),
    ("FABRIC_BACKOFF_BASE", "-1"),
])
def test_malformed_numbers_name_the_variable(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError, match=name):
        DeploySettings.from_env()

from fabric_deploy.auth import Credential, CredentialProvider
from fabric_deploy.client import FabricClient
from fabric_deploy.config import DeploySettings
from fabric_deploy.deployer import Deployer, deploy_plan, resolve_bindings
from fabric_deploy.errors import (
    BindingError,
    ConfigError,
    ContainerError,
    DeployError,
    DeployErrorKind,
    FabricApiError,
    FabricAuthError,
    FabricDeployError,
    PlanError,
)
from fabric_deploy.items import ArtifactUploader
from fabric_deploy.plan import ArtifactSpec, DeploymentPlan, load_plan
from fabric_deploy.report import ArtifactResult, DeploymentReport, ExitCode, SpecOutcome, SpecState
from fabric_deploy.workspace import WorkspaceResolver

__version__ = "0.1.0"

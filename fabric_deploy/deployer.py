"""Runs a deployment plan: artifacts in dependency order, upstream ids bound into downstream items."""

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Mapping, Optional

import requests

from fabric_deploy.auth import CredentialProvider, login_from_settings
from fabric_deploy.client import FabricClient
from fabric_deploy.config import DeploySettings
from fabric_deploy.errors import (
    BindingError,
    DeployError,
    FabricApiError,
    FabricAuthError,
    classify_api_error,
)
from fabric_deploy.items import ArtifactUploader
from fabric_deploy.plan import ArtifactSpec, DeploymentPlan
from fabric_deploy.report import ArtifactResult, DeploymentReport, SpecOutcome, SpecState, summarize
from fabric_deploy.workspace import WorkspaceResolver


def resolve_bindings(spec: ArtifactSpec, results: Mapping[str, ArtifactResult]) -> Dict[str, str]:
    properties = {}
    for prop, target in spec.bindings.items():
        result = results.get(target)
        if result is None:
            raise BindingError(
                f"'{spec.name}' binds {prop} to '{target}', which has not been deployed."
            )
        properties[prop] = result.item_id
    return properties


class Deployer:
    def __init__(self, uploader: ArtifactUploader, halt_on_failure: bool = True, max_workers: int = 1):
        self.uploader = uploader
        self.halt_on_failure = halt_on_failure
        self.max_workers = max(1, max_workers)

    def run(
        self,
        plan: DeploymentPlan,
        workspace_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> DeploymentReport:
        plan.ensure_valid()
        cancel = cancel or threading.Event()

        if self.max_workers == 1:
            outcomes = self._run_sequential(plan, workspace_id, cancel)
        else:
            outcomes = self._run_concurrent(plan, workspace_id, cancel)

        return summarize(outcomes.values(), order=plan.names)

    # ----------------------------------------------------------------------------------

    def _skip_reason(
        self,
        spec: ArtifactSpec,
        outcomes: Mapping[str, SpecOutcome],
        halted_by: Optional[str],
        cancel: threading.Event,
    ) -> Optional[str]:
        for dep in spec.dependencies:
            if outcomes[dep].state is not SpecState.SUCCEEDED:
                return f"due to upstream failure: {dep}"
        if halted_by is not None:
            return f"run halted after '{halted_by}' failed"
        if cancel.is_set():
            return "cancelled"
        return None

    def _halts(self, outcome: SpecOutcome) -> bool:
        if outcome.state is not SpecState.FAILED:
            return False
        # A credential that cannot be refreshed fails every later upload too
        return self.halt_on_failure or outcome.error_kind == FabricAuthError.kind

    def _results(self, outcomes: Mapping[str, SpecOutcome]) -> Dict[str, ArtifactResult]:
        return {name: o.result for name, o in outcomes.items() if o.result is not None}

    def _prepare(self, spec: ArtifactSpec, outcomes: Mapping[str, SpecOutcome]):
        try:
            return resolve_bindings(spec, self._results(outcomes)), None
        except BindingError as e:
            return None, SpecOutcome.failed(spec.name, e.kind, str(e))

    def _deploy_one(self, workspace_id: str, spec: ArtifactSpec, properties: Dict[str, str]) -> SpecOutcome:
        print(f"📦 Deploying {spec.kind} '{spec.name}'...")
        try:
            result = self.uploader.deploy(workspace_id, spec, properties)
        except DeployError as e:
            print(f"❌ {spec.name}: {e.describe()}")
            return SpecOutcome.failed(spec.name, e.kind, e.cause)
        except FabricApiError as e:
            err = classify_api_error(e)
            print(f"❌ {spec.name}: {err.describe()}")
            return SpecOutcome.failed(spec.name, err.kind, err.cause)
        except FabricAuthError as e:
            print(f"❌ {spec.name}: {e.describe()}")
            return SpecOutcome.failed(spec.name, e.kind, str(e))
        return SpecOutcome.succeeded(spec.name, result)

    # ----------------------------------------------------------------------------------

    def _run_sequential(self, plan: DeploymentPlan, workspace_id: str, cancel: threading.Event) -> Dict[str, SpecOutcome]:
        outcomes: Dict[str, SpecOutcome] = {}
        halted_by: Optional[str] = None

        for spec in plan.artifacts:
            reason = self._skip_reason(spec, outcomes, halted_by, cancel)
            if reason:
                outcomes[spec.name] = SpecOutcome.skipped(spec.name, reason)
                continue

            properties, failure = self._prepare(spec, outcomes)
            outcome = failure or self._deploy_one(workspace_id, spec, properties)
            outcomes[spec.name] = outcome
            if self._halts(outcome):
                halted_by = spec.name

        return outcomes

    def _run_concurrent(self, plan: DeploymentPlan, workspace_id: str, cancel: threading.Event) -> Dict[str, SpecOutcome]:
        """Deploy independent artifacts side by side on a bounded pool.

        Only this thread touches `outcomes`; workers get their bound properties
        up front and hand back an outcome.
        """
        outcomes: Dict[str, SpecOutcome] = {}
        halted_by: Optional[str] = None
        remaining: List[ArtifactSpec] = list(plan.artifacts)
        running: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while remaining or running:
                for spec in list(remaining):
                    if len(running) >= self.max_workers:
                        break
                    if any(dep not in outcomes for dep in spec.dependencies):
                        continue
                    remaining.remove(spec)

                    reason = self._skip_reason(spec, outcomes, halted_by, cancel)
                    if reason:
                        outcomes[spec.name] = SpecOutcome.skipped(spec.name, reason)
                        continue

                    properties, failure = self._prepare(spec, outcomes)
                    if failure:
                        outcomes[spec.name] = failure
                        if self._halts(failure):
                            halted_by = spec.name
                        continue

                    running[pool.submit(self._deploy_one, workspace_id, spec, properties)] = spec.name

                if not running:
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    outcome = future.result()
                    outcomes[name] = outcome
                    if self._halts(outcome) and halted_by is None:
                        halted_by = name

        return outcomes


# ======================================================================================
# Full pipeline
# ======================================================================================

def deploy_plan(
    settings: DeploySettings,
    plan: DeploymentPlan,
    workspace_name: str,
    halt_on_failure: bool = True,
    max_workers: int = 1,
    cancel: Optional[threading.Event] = None,
    session: Optional[requests.Session] = None,
    quiet: bool = False,
) -> DeploymentReport:
    """Authenticate, ensure the workspace, deploy every artifact of `plan`.

    Raises PlanError before touching the network, FabricAuthError when no
    token can be obtained and ContainerError when the workspace cannot be
    resolved. Per-artifact failures end up in the returned report.
    """
    plan.ensure_valid()

    session = session or requests.Session()
    credentials = CredentialProvider(login_from_settings(settings, session=session))

    # 1) Authenticate
    credentials.acquire()
    print("Authentication successful.")

    client = FabricClient(credentials, settings, session=session, quiet=quiet)

    # 2) Ensure workspace exists
    resolver = WorkspaceResolver(
        client,
        capacity_id=settings.capacity_id,
        admin_principals=settings.admin_principals,
    )
    workspace_id = resolver.ensure_workspace(workspace_name)
    print(f"Using workspace '{workspace_name}' (id={workspace_id})")

    # 3) Deploy artifacts in dependency order
    deployer = Deployer(ArtifactUploader(client), halt_on_failure=halt_on_failure, max_workers=max_workers)
    return deployer.run(plan, workspace_id, cancel=cancel)

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ArtifactResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    display_name: str
    kind: str
    deployed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created: bool = False
    bound_properties: Dict[str, str] = Field(default_factory=dict)


class SpecState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SpecOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    state: SpecState
    result: Optional[ArtifactResult] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def succeeded(cls, name: str, result: ArtifactResult) -> "SpecOutcome":
        return cls(name=name, state=SpecState.SUCCEEDED, result=result)

    @classmethod
    def failed(cls, name: str, error_kind: str, reason: str) -> "SpecOutcome":
        return cls(name=name, state=SpecState.FAILED, error_kind=error_kind, reason=reason)

    @classmethod
    def skipped(cls, name: str, reason: str) -> "SpecOutcome":
        return cls(name=name, state=SpecState.SKIPPED, reason=reason)


class DeploymentReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    # insertion order == plan order
    outcomes: Dict[str, SpecOutcome]

    @property
    def succeeded(self) -> bool:
        return bool(self.outcomes) and all(
            o.state is SpecState.SUCCEEDED for o in self.outcomes.values()
        )

    def __getitem__(self, name: str) -> SpecOutcome:
        return self.outcomes[name]

    def item_ids(self) -> Dict[str, str]:
        return {
            name: o.result.item_id
            for name, o in self.outcomes.items()
            if o.result is not None
        }


class ExitCode(IntEnum):
    OK = 0
    DEPLOY_FAILED = 1
    USAGE = 2
    PLAN_INVALID = 3
    AUTH_FAILED = 4
    CONTAINER_FAILED = 5


# ======================================================================================
# Summary
# ======================================================================================

def summarize(outcomes: Iterable[SpecOutcome], order: Optional[List[str]] = None) -> DeploymentReport:
    by_name = {o.name: o for o in outcomes}
    names = order if order is not None else list(by_name)
    return DeploymentReport(outcomes={n: by_name[n] for n in names if n in by_name})


def exit_code_for(report: DeploymentReport) -> ExitCode:
    return ExitCode.OK if report.succeeded else ExitCode.DEPLOY_FAILED


def format_outcome(outcome: SpecOutcome) -> str:
    if outcome.state is SpecState.SUCCEEDED:
        result = outcome.result
        line = f"✅ {outcome.name}: succeeded (id={result.item_id})"
        if result.bound_properties:
            bound = ", ".join(f"{k}={v}" for k, v in result.bound_properties.items())
            line += f" bound to {bound}"
        return line
    if outcome.state is SpecState.FAILED:
        return f"❌ {outcome.name}: failed [{outcome.error_kind}] {outcome.reason}"
    return f"⏭️ {outcome.name}: skipped ({outcome.reason})"


def format_report(report: DeploymentReport) -> List[str]:
    lines = [format_outcome(o) for o in report.outcomes.values()]
    total = len(report.outcomes)
    ok = sum(1 for o in report.outcomes.values() if o.state is SpecState.SUCCEEDED)
    if report.succeeded:
        lines.append(f"✅ Deployment completed successfully ({ok}/{total} artifacts).")
    else:
        lines.append(f"❌ Deployment failed ({ok}/{total} artifacts succeeded).")
    return lines

"""Deployment plans: which artifacts to deploy, in what order, bound to what."""

import json
import os
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from fabric_deploy.errors import PlanError


def split_folder_name(path: str) -> Tuple[str, Optional[str]]:
    """'src/CleanModel.SemanticModel' -> ('CleanModel', 'SemanticModel')"""
    base = os.path.basename(os.path.normpath(path))
    if "." not in base:
        return base, None
    display_name, kind = base.rsplit(".", 1)
    return display_name, kind


class ArtifactSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    path: str = Field(min_length=1)
    kind: str
    display_name: str = Field(alias="displayName")
    # property name -> name of the artifact whose id is injected
    bindings: Dict[str, str] = Field(default_factory=dict)
    depends_on: Tuple[str, ...] = Field(default=(), validation_alias=AliasChoices("dependsOn", "deps", "depends_on"))

    @model_validator(mode="before")
    @classmethod
    def _fill_from_folder(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("path"):
            return data
        data = dict(data)
        display_name, kind = split_folder_name(data["path"])
        if not data.get("kind"):
            if not kind:
                raise ValueError(
                    f"cannot infer item type from '{data['path']}'; "
                    "name the folder <Name>.<ItemType> or set 'kind'"
                )
            data["kind"] = kind
        if not (data.get("display_name") or data.get("displayName")):
            data["display_name"] = display_name
        if not data.get("name"):
            data["name"] = display_name
        return data

    @property
    def dependencies(self) -> List[str]:
        seen: List[str] = []
        for dep in list(self.bindings.values()) + list(self.depends_on):
            if dep not in seen:
                seen.append(dep)
        return seen


class DeploymentPlan(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    artifacts: Tuple[ArtifactSpec, ...]
    workspace: Optional[str] = None

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.artifacts]

    def get(self, name: str) -> ArtifactSpec:
        for spec in self.artifacts:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def ensure_valid(self) -> None:
        """Raise PlanError unless every dependency names an artifact strictly earlier in the plan."""
        if not self.artifacts:
            raise PlanError("Plan contains no artifacts.")

        known = set(self.names)
        earlier: Set[str] = set()
        for spec in self.artifacts:
            if spec.name in earlier:
                raise PlanError(f"Duplicate artifact name '{spec.name}'.")

            for dep in spec.dependencies:
                if dep == spec.name:
                    raise PlanError(f"Artifact '{spec.name}' depends on itself.")
                if dep not in known:
                    raise PlanError(f"Artifact '{spec.name}' depends on unknown artifact '{dep}'.")
                if dep not in earlier:
                    cycle = self._find_cycle(spec.name)
                    if cycle:
                        raise PlanError(f"Dependency cycle: {' -> '.join(cycle)}")
                    raise PlanError(
                        f"Artifact '{spec.name}' depends on '{dep}', which must come earlier in the plan."
                    )
            earlier.add(spec.name)

    def _find_cycle(self, start: str) -> Optional[List[str]]:
        graph = {spec.name: spec.dependencies for spec in self.artifacts}
        path: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            if node in path:
                return path[path.index(node):] + [node]
            path.append(node)
            for dep in graph.get(node, []):
                found = visit(dep)
                if found:
                    return found
            path.pop()
            return None

        return visit(start)

    def dependents_of(self, name: str) -> List[str]:
        """Every artifact that depends on `name`, directly or transitively, in plan order."""
        affected = {name}
        result = []
        for spec in self.artifacts:
            if any(dep in affected for dep in spec.dependencies):
                affected.add(spec.name)
                result.append(spec.name)
        return result

    @classmethod
    def from_specs(cls, specs: Iterable[Dict], workspace: Optional[str] = None) -> "DeploymentPlan":
        try:
            return cls(artifacts=tuple(ArtifactSpec(**s) for s in specs), workspace=workspace)
        except (ValidationError, ValueError, TypeError) as e:
            raise PlanError(f"Invalid artifact definition: {e}") from e

    @classmethod
    def default(cls, root: str = ".") -> "DeploymentPlan":
        """Semantic model first, then the report bound to it."""
        return cls.from_specs([
            {"name": "CleanModel", "path": os.path.join(root, "src", "CleanModel.SemanticModel")},
            {
                "name": "CleanReport",
                "path": os.path.join(root, "src", "CleanReport.Report"),
                "bindings": {"semanticModelId": "CleanModel"},
            },
        ])


def load_plan(path: str) -> DeploymentPlan:
    """Read a JSON or YAML plan.

    Accepted shapes are a bare list of artifacts or a mapping with an
    `artifacts` list and an optional `workspace`. Relative artifact paths are
    taken relative to the plan file.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.endswith((".yaml", ".yml")):
                raw = yaml.safe_load(f)
            else:
                raw = json.load(f)
    except OSError as e:
        raise PlanError(f"Cannot read plan file {path}: {e}") from e
    except (ValueError, yaml.YAMLError) as e:
        raise PlanError(f"Cannot parse plan file {path}: {e}") from e

    workspace = None
    if isinstance(raw, dict):
        unknown = sorted(set(raw) - {"workspace", "artifacts"})
        if unknown:
            raise PlanError(f"Plan file {path} has unknown keys: {', '.join(unknown)}")
        workspace = raw.get("workspace")
        raw = raw.get("artifacts")
    if not isinstance(raw, list):
        raise PlanError(f"Plan file {path} must contain a list of artifacts.")

    base_dir = os.path.dirname(os.path.abspath(path))
    specs = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise PlanError(f"Plan entry must be a mapping, got: {entry!r}")
        entry = dict(entry)
        if entry.get("path") and not os.path.isabs(entry["path"]):
            entry["path"] = os.path.join(base_dir, entry["path"])
        specs.append(entry)

    return DeploymentPlan.from_specs(specs, workspace=workspace)

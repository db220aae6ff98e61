import base64
import json
import os
from typing import Dict, List, Mapping

from fabric_deploy.errors import DeployError, DeployErrorKind

# Git-integration metadata, never part of an item definition
EXCLUDED_FILES = {".platform"}

FORMAT_BY_TYPE: Dict[str, str] = {
    "semanticmodel": "TMDL",
}

REPORT_MODEL_PROPERTY = "semanticModelId"


def _content_invalid(message: str) -> DeployError:
    return DeployError(DeployErrorKind.CONTENT_INVALID, message)


# ======================================================================================
# Definition parts
# ======================================================================================

def build_definition_parts_from_folder(folder: str) -> List[Dict[str, str]]:
    if not os.path.isdir(folder):
        raise _content_invalid(f"Artifact folder not found: {folder}")

    parts = []

    for root, dirs, files in os.walk(folder):
        dirs.sort()
        for filename in sorted(files):
            if filename in EXCLUDED_FILES:
                continue
            full_path = os.path.join(root, filename)
            rel_path = os.path.relpath(full_path, folder).replace("\\", "/")

            with open(full_path, "rb") as f:
                content = f.read()

            parts.append({
                "path": rel_path,
                "payload": base64.b64encode(content).decode("ascii"),
                "payloadType": "InlineBase64",
            })

    if not parts:
        raise _content_invalid(f"No files found in artifact folder: {folder}")

    return parts


def definition_format(kind: str) -> str:
    return FORMAT_BY_TYPE.get(kind.lower(), "")


def build_definition(parts: List[Dict[str, str]], kind: str) -> Dict:
    definition: Dict = {"parts": parts}
    fmt = definition_format(kind)
    if fmt:
        definition["format"] = fmt
    return definition


def _decode(part: Dict[str, str]) -> bytes:
    return base64.b64decode(part["payload"])


def _encode(part: Dict[str, str], content: bytes) -> Dict[str, str]:
    return dict(part, payload=base64.b64encode(content).decode("ascii"))


# ======================================================================================
# Property injection
# ======================================================================================

def rebind_report(parts: List[Dict[str, str]], model_id: str) -> List[Dict[str, str]]:
    """Point a report's definition.pbir at a deployed semantic model by id."""
    out = []
    found = False
    for part in parts:
        if part["path"] != "definition.pbir":
            out.append(part)
            continue

        found = True
        try:
            pbir = json.loads(_decode(part).decode("utf-8-sig"))
        except ValueError as e:
            raise _content_invalid(f"definition.pbir is not valid JSON: {e}") from e
        if not isinstance(pbir, dict):
            raise _content_invalid(f"definition.pbir must be a JSON object, got {type(pbir).__name__}")

        pbir["datasetReference"] = {
            "byConnection": {
                "connectionString": None,
                "pbiServiceModelId": None,
                "pbiModelVirtualServerName": "sobe_wowvirtualserver",
                "pbiModelDatabaseName": model_id,
                "name": "EntityDataSource",
                "connectionType": "pbiServiceXmlaStyleLive",
            }
        }
        out.append(_encode(part, json.dumps(pbir, indent=2).encode("utf-8")))

    if not found:
        raise _content_invalid("Report definition has no definition.pbir to bind.")
    return out


def replace_placeholders(parts: List[Dict[str, str]], name: str, value: str) -> List[Dict[str, str]]:
    token = "{{" + name + "}}"
    out = []
    for part in parts:
        raw = _decode(part)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            out.append(part)
            continue
        if token in text:
            part = _encode(part, text.replace(token, value).encode("utf-8"))
        out.append(part)
    return out


def apply_properties(parts: List[Dict[str, str]], kind: str, properties: Mapping[str, str]) -> List[Dict[str, str]]:
    for name, value in properties.items():
        if name == REPORT_MODEL_PROPERTY and kind.lower() == "report":
            parts = rebind_report(parts, value)
        else:
            parts = replace_placeholders(parts, name, value)
    return parts

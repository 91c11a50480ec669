from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

EXIT_OK = 0
EXIT_USAGE_OR_ERROR = 1
EXIT_INVALID = 2


SCHEMA_VERSION_TO_FILE = {
    "goal_catalog_v1": "goal_catalog_v1.json",
    "change_submission_v1": "change_submission_v1.json",
    "completion_report_v1": "completion_report_v1.json",
    "approval_decision_v1": "approval_decision_v1.json",
    "cancellation_request_v1": "cancellation_request_v1.json",
}


def _schemas_dir() -> Path:
    return Path(__file__).resolve().parent / "schemas"


def _format_json_pointer(err: ValidationError) -> str:
    # RFC 6901. Root is "" but we print "/" for readability.
    if not err.path:
        return "/"

    def esc(token: str) -> str:
        return token.replace("~", "~0").replace("/", "~1")

    parts: list[str] = []
    for part in err.path:
        parts.append(str(part) if isinstance(part, int) else esc(str(part)))
    return "/" + "/".join(parts)


def _format_reason(err: ValidationError) -> str:
    msg = err.message
    if isinstance(err.instance, (str, int, float, bool)) or err.instance is None:
        msg = f"{msg} (got={err.instance!r})"
    return msg


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def _build_registry(schemas_dir: Path) -> Registry:
    registry = Registry()
    for schema_path in sorted(schemas_dir.rglob("*.json")):
        schema = _load_json(schema_path)
        schema_id = schema.get("$id") if isinstance(schema, dict) else None
        if not schema_id:
            continue
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        registry = registry.with_resource(schema_id, resource)
    return registry


def validate_payload(payload: Any, *, schema_version: str | None = None) -> tuple[int, str]:
    """Validate an in-memory payload and return (exit_code, message).

    The schema is picked from ``schema_version`` when given, else from the payload's own
    ``schema_version`` discriminator.
    """
    if not isinstance(payload, dict):
        return (EXIT_INVALID, "INVALID: discriminator at /: Top-level JSON must be an object.")

    sv = schema_version if schema_version is not None else payload.get("schema_version")
    if sv is None:
        return (EXIT_USAGE_OR_ERROR, "ERROR: missing schema_version")
    if not isinstance(sv, str):
        return (EXIT_INVALID, "INVALID: discriminator at /schema_version: schema_version must be a string.")
    filename = SCHEMA_VERSION_TO_FILE.get(sv)
    if not filename:
        return (EXIT_INVALID, f"INVALID: discriminator at /schema_version: Unknown schema_version: {sv!r}")

    schemas_dir = _schemas_dir()
    schema_path = schemas_dir / filename
    schema = _load_json(schema_path)
    validator = Draft202012Validator(schema, registry=_build_registry(schemas_dir))
    errors = sorted(validator.iter_errors(payload), key=lambda e: (list(map(str, e.path)), e.message))
    if errors:
        first = errors[0]
        path_str = _format_json_pointer(first)
        return (EXIT_INVALID, f"INVALID: {schema_path.name} at {path_str}: {_format_reason(first)}")
    return (EXIT_OK, f"OK: {schema_path.name}")

"""Static document-type tables: dependencies, priorities and categories."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from reqagent.errors import ConfigValidationError
from reqagent.models.document import Priority

log = logging.getLogger(__name__)

# document type → types whose content should inform it, in inclusion order
DOCUMENT_RELATIONSHIPS: dict[str, list[str]] = {
    "benefits-realization-plan": [
        "strategic-business-case",
        "project-charter",
        "requirements-specification",
        "stakeholder-register",
        "risk-register",
    ],
    "technical-specification": [
        "requirements-specification",
        "architecture-document",
        "project-charter",
        "risk-register",
    ],
    "project-charter": [
        "strategic-business-case",
        "stakeholder-register",
        "requirements-specification",
    ],
    "risk-register": [
        "project-charter",
        "requirements-specification",
        "stakeholder-register",
    ],
}

DOCUMENT_PRIORITIES: dict[Priority, list[str]] = {
    Priority.CRITICAL: [
        "project-charter",
        "requirements-specification",
        "technical-specification",
    ],
    Priority.HIGH: [
        "risk-register",
        "stakeholder-register",
        "benefits-realization-plan",
    ],
    Priority.MEDIUM: [
        "project-plan",
        "communication-plan",
        "quality-plan",
    ],
}

DOCUMENT_CATEGORIES: dict[str, str] = {
    "strategic-business-case": "strategy",
    "project-charter": "strategy",
    "benefits-realization-plan": "strategy",
    "requirements-specification": "technical",
    "technical-specification": "technical",
    "architecture-document": "technical",
    "stakeholder-register": "stakeholder",
    "communication-plan": "stakeholder",
    "risk-register": "planning",
    "project-plan": "planning",
    "quality-plan": "planning",
}


def priority_for(document_type: str) -> Priority:
    for priority, types in DOCUMENT_PRIORITIES.items():
        if document_type in types:
            return priority
    return Priority.LOW


def category_for(document_type: str) -> str | None:
    return DOCUMENT_CATEGORIES.get(document_type)


def load_relationships(path: str | Path) -> dict[str, list[str]]:
    """Read a ``{type: {"dependencies": [...]}}`` JSON file.

    Entries without a dependency list map to ``[]``; the ``lastSetup``
    bookkeeping key is ignored.
    """
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigValidationError(
            f"cannot read relationship table {config_path}: {exc}",
            context={"path": str(config_path)},
        ) from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(
            "relationship table must be a JSON object",
            context={"path": str(config_path)},
        )

    relationships: dict[str, list[str]] = {}
    for key, entry in raw.items():
        if key == "lastSetup":
            continue
        deps = entry.get("dependencies") if isinstance(entry, dict) else None
        if isinstance(deps, list):
            relationships[key] = [str(d).strip() for d in deps]
        else:
            relationships[key] = []
    log.info("relationships.loaded path=%s types=%d", config_path, len(relationships))
    return relationships

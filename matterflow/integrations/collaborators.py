"""
Collaborator gateways for the stage-gating engine.

Services obtain the active implementations through ``get_collaborators()``
and never import the default classes directly, so hosting applications can
swap them:

    from matterflow.integrations.collaborators import install_collaborators

    install_collaborators(app, roles=MyDirectoryRoleChecker())

Defaults:
  - DatabaseMatterAttributesProvider: Matter.attributes + classification fields
  - DatabaseRoleChecker:              User.role ranked secretary < … < supervisor
  - DatabaseEvidenceReader:           EvidenceItem rows by task id
  - EventBus:                         post-commit fan-out; persists TimelineEvent rows
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from flask import Flask, current_app

from matterflow.core.exceptions import NotFoundError
from matterflow.models import db

logger = logging.getLogger(__name__)

EXTENSION_KEY = "workflow"


class MatterAttributesProvider(Protocol):
    def get_attributes(self, matter_id: int) -> dict[str, Any]: ...


class RoleChecker(Protocol):
    def has_role(self, user_id: int, role: str) -> bool: ...


class EvidenceReader(Protocol):
    def list_for_task(self, task_id: int) -> list: ...


class EventPublisher(Protocol):
    def publish(self, event) -> None: ...


# ── Database-backed defaults ─────────────────────────────────────────────────


class DatabaseMatterAttributesProvider:
    """Reads attributes from the local ``matters`` table."""

    def get_attributes(self, matter_id: int) -> dict[str, Any]:
        from matterflow.models.matter import Matter

        matter = db.session.get(Matter, matter_id)
        if matter is None:
            raise NotFoundError(resource="Matter", resource_id=matter_id)
        return matter.attribute_snapshot()


class DatabaseRoleChecker:
    """Role check against the local ``users`` table; inactive users hold no role."""

    def has_role(self, user_id: int, role: str) -> bool:
        from matterflow.models.auth import User

        if not user_id:
            return False
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            return False
        return user.outranks_or_equals(role)


class DatabaseEvidenceReader:
    """Evidence rows linked to a task, oldest first."""

    def list_for_task(self, task_id: int) -> list:
        from matterflow.models.task import EvidenceItem

        return (
            EvidenceItem.query
            .filter_by(task_id=task_id)
            .order_by(EvidenceItem.id.asc())
            .all()
        )


def _default_publisher() -> EventPublisher:
    from matterflow.services.workflow_events import default_event_bus

    return default_event_bus()


@dataclass
class Collaborators:
    attributes: MatterAttributesProvider = field(default_factory=DatabaseMatterAttributesProvider)
    roles: RoleChecker = field(default_factory=DatabaseRoleChecker)
    evidence: EvidenceReader = field(default_factory=DatabaseEvidenceReader)
    events: EventPublisher = field(default_factory=_default_publisher)


def install_collaborators(app: Flask, **overrides) -> Collaborators:
    """Install (or partially replace) the collaborator set on ``app``."""
    current = app.extensions.get(EXTENSION_KEY)
    if current is None:
        current = Collaborators()
    for name, impl in overrides.items():
        if not hasattr(current, name):
            raise TypeError(f"Unknown collaborator: {name}")
        setattr(current, name, impl)
    app.extensions[EXTENSION_KEY] = current
    logger.debug("Workflow collaborators installed: %s", sorted(overrides) or "defaults")
    return current


def get_collaborators() -> Collaborators:
    """Return the collaborator set for the current app (defaults if none installed)."""
    collab = current_app.extensions.get(EXTENSION_KEY)
    if collab is None:
        collab = install_collaborators(current_app._get_current_object())
    return collab

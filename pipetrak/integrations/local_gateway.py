"""
In-process milestone gateway.

Serves the MilestoneGateway contract by calling the persistence service
directly instead of going over HTTP. Used by the CLI script when it runs
against the local database, and by integration tests.

Must be called inside a Flask application context.
"""

from __future__ import annotations

import logging

from pipetrak.core.exceptions import (
    ConflictError,
    NotFoundError,
    SequenceBlockedError,
    UpdateRejectedError,
    ValidationError,
)
from pipetrak.integrations.pipetrak_gateway import MilestoneGateway
from pipetrak.services import milestone_persistence_service as persistence

logger = logging.getLogger(__name__)


class LocalMilestoneGateway(MilestoneGateway):
    """MilestoneGateway backed by the local database session."""

    def __init__(self, actor: str | None = None, *, enforce_sequence: bool = True) -> None:
        self.actor = actor
        self.enforce_sequence = enforce_sequence

    def update_milestone(self, project_id, component_id, milestone_id, value) -> dict:
        try:
            milestone, component = persistence.update_component_milestone(
                int(project_id),
                int(component_id),
                int(milestone_id),
                {"value": value},
                actor=self.actor,
                enforce_sequence=self.enforce_sequence,
            )
        except NotFoundError as exc:
            raise UpdateRejectedError(str(exc), status_code=404) from exc
        except SequenceBlockedError as exc:
            raise UpdateRejectedError(exc.message, status_code=409) from exc
        except ValidationError as exc:
            raise UpdateRejectedError(exc.message, status_code=400) from exc
        except ConflictError as exc:
            raise UpdateRejectedError(str(exc), status_code=409) from exc
        return {"milestone": milestone.to_dict(), "component": component.to_dict()}

    def bulk_update(
        self,
        project_id,
        component_ids: list,
        updates: list[dict],
        *,
        atomic: bool = False,
        validate_only: bool = False,
    ) -> dict:
        try:
            return persistence.bulk_update_milestones(
                int(project_id),
                component_ids,
                updates,
                atomic=atomic,
                validate_only=validate_only,
                actor=self.actor,
            )
        except NotFoundError as exc:
            raise UpdateRejectedError(str(exc), status_code=404) from exc
        except ValidationError as exc:
            raise UpdateRejectedError(exc.message, status_code=400) from exc

    def list_components(self, project_id, *, drawing_id=None, template_id=None) -> list[dict]:
        components = persistence.list_project_components(
            int(project_id), drawing_id=drawing_id, template_id=template_id,
        )
        return [c.to_dict() for c in components]

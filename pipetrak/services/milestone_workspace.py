"""
Milestone workspace for one project.

Wires the shared ComponentStore to the update coordinator, the bulk
orchestrator and failure review, the way the component table screen uses
them. The CLI script drives the engine through this class.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from pipetrak.integrations.pipetrak_gateway import MilestoneGateway, PipeTrakGateway
from pipetrak.services.bulk_update_service import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_WARN_THRESHOLD,
    BulkUpdateOrchestrator,
    BulkUpdateProgress,
    BulkUpdateRequest,
    BulkUpdateResult,
    BulkUpdateSummary,
    ComponentGroup,
    find_common_milestones,
    group_components_by_template,
    summarize_bulk_result,
)
from pipetrak.services.failure_review import FailureReview
from pipetrak.services.milestone_coordinator import (
    ComponentStore,
    MilestoneUpdateCoordinator,
    RequestTracker,
)
from pipetrak.services.milestone_sequencing import MilestoneButtonState
from pipetrak.services.milestone_state import ComponentView

logger = logging.getLogger(__name__)


@dataclass
class BulkOutcome:
    request: BulkUpdateRequest
    result: BulkUpdateResult
    summary: BulkUpdateSummary
    review: FailureReview | None = None


class MilestoneWorkspace:
    def __init__(
        self,
        project_id,
        gateway: MilestoneGateway,
        components: Iterable[ComponentView] = (),
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        warn_threshold: int = DEFAULT_WARN_THRESHOLD,
        enforce_sequence: bool = True,
    ) -> None:
        self.project_id = project_id
        self.gateway = gateway
        self.store = ComponentStore(components)
        self.tracker = RequestTracker()
        self.coordinator = MilestoneUpdateCoordinator(
            project_id, gateway, self.store, self.tracker, enforce_sequence=enforce_sequence,
        )
        self.orchestrator = BulkUpdateOrchestrator(
            project_id, gateway, self.store,
            batch_size=batch_size, warn_threshold=warn_threshold,
        )

    @classmethod
    def from_config(cls, project_id, config: Mapping[str, Any], gateway: MilestoneGateway | None = None):
        """Build with settings from a Flask config mapping."""
        return cls(
            project_id,
            gateway or PipeTrakGateway.from_config(config),
            batch_size=int(config.get("BULK_UPDATE_BATCH_SIZE", DEFAULT_BATCH_SIZE)),
            warn_threshold=int(config.get("BULK_UPDATE_WARN_THRESHOLD", DEFAULT_WARN_THRESHOLD)),
        )

    def load(self, *, drawing_id=None, template_id=None) -> list[ComponentView]:
        payloads = self.gateway.list_components(
            self.project_id, drawing_id=drawing_id, template_id=template_id,
        )
        components = [ComponentView.from_dict(p) for p in payloads]
        self.store.replace_all(components)
        logger.info(
            "Loaded %d components for project %s", len(components), self.project_id,
            extra={"project_id": self.project_id},
        )
        return components

    def _selected(self, component_ids: Iterable | None) -> list[ComponentView]:
        if component_ids is None:
            return self.store.all()
        return [self.store.require(cid) for cid in component_ids]

    def groups(self, component_ids: Iterable | None = None) -> list[ComponentGroup]:
        return group_components_by_template(self._selected(component_ids))

    def common_milestones(self, component_ids: Iterable | None = None) -> list[str]:
        return find_common_milestones(self.groups(component_ids))

    # ── Single milestone ─────────────────────────────────────────────────────

    def update_milestone(self, component_id, milestone_id, value) -> ComponentView:
        component = self.store.require(component_id)
        milestone = component.get_milestone(milestone_id)
        name = milestone.name if milestone else None
        return self.coordinator.update_milestone(
            milestone_id, component_id, name, component.workflow_type, value,
        )

    def milestone_states(self, component_id) -> dict[str, MilestoneButtonState]:
        return self.coordinator.milestone_states(component_id)

    # ── Bulk ─────────────────────────────────────────────────────────────────

    def _run(
        self,
        request: BulkUpdateRequest,
        groups: list[ComponentGroup] | None,
        on_progress: Callable[[BulkUpdateProgress], None] | None,
    ) -> BulkOutcome:
        result = self.orchestrator.perform_bulk_update(request, groups=groups, on_progress=on_progress)
        review = None
        if result.failed:
            review = FailureReview(result.failed, request, self.orchestrator, self.store)
        return BulkOutcome(request, result, summarize_bulk_result(result), review)

    def quick_update(
        self,
        milestone_name: str,
        component_ids: Iterable,
        *,
        on_progress: Callable[[BulkUpdateProgress], None] | None = None,
    ) -> BulkOutcome:
        ids = list(component_ids)
        groups = self.groups(ids)
        return self._run(BulkUpdateRequest.quick(milestone_name, ids), groups, on_progress)

    def advanced_update(
        self,
        selections: Mapping[str, Iterable[str]],
        component_ids: Iterable | None = None,
        *,
        on_progress: Callable[[BulkUpdateProgress], None] | None = None,
    ) -> BulkOutcome:
        groups = self.groups(component_ids)
        return self._run(BulkUpdateRequest.advanced(groups, selections), None, on_progress)

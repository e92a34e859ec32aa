"""
Single-Milestone Update Coordinator.

Applies one milestone change for one component through a MilestoneGateway,
tracks in-flight / error state per milestone id and merges the authoritative
result into the shared component store.

    ComponentStore       id → ComponentView map, versioned, copy-on-write
    RequestTracker       per milestone id: latest request generation,
                         pending flag, last error
    MilestoneUpdateCoordinator.update_milestone(...)

There is no queue and no lock. Every request takes a new generation number
for its milestone id; a response whose generation is no longer the latest is
discarded instead of merged, so the last request issued wins locally.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Mapping

from pipetrak.core.exceptions import (
    NotFoundError,
    SequenceBlockedError,
    TransportError,
    UpdateRejectedError,
    ValidationError,
)
from pipetrak.integrations.pipetrak_gateway import MilestoneGateway
from pipetrak.services.milestone_sequencing import (
    MilestoneButtonState,
    can_complete_milestone,
    can_uncomplete_milestone,
    classify_milestone_state,
    describe_block_reason,
)
from pipetrak.services.milestone_state import (
    ComponentView,
    MilestoneView,
    WorkflowType,
    is_milestone_complete,
)

logger = logging.getLogger(__name__)


def _key(value) -> str:
    return str(value)


# ═════════════════════════════════════════════════════════════════════════════
# Component store
# ═════════════════════════════════════════════════════════════════════════════


class ComponentStore:
    """The in-memory component list shared by the coordinator and the orchestrator.

    Every write swaps in a new dict, so a snapshot taken earlier stays
    internally consistent. ``version`` increments on each write.
    """

    def __init__(self, components: Iterable[ComponentView] = ()) -> None:
        self._components: dict[str, ComponentView] = {}
        self._version = 0
        self.replace_all(components)

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, component_id) -> bool:
        return _key(component_id) in self._components

    def __iter__(self):
        return iter(list(self._components.values()))

    def get(self, component_id) -> ComponentView | None:
        return self._components.get(_key(component_id))

    def require(self, component_id) -> ComponentView:
        component = self.get(component_id)
        if component is None:
            raise NotFoundError(resource="Component", resource_id=component_id)
        return component

    def all(self) -> list[ComponentView]:
        return list(self._components.values())

    def snapshot(self) -> Mapping[str, ComponentView]:
        """Read-only view of the current map; later writes do not show through."""
        return MappingProxyType(self._components)

    def replace(self, component: ComponentView) -> int:
        """Swap in one component. Returns the new version."""
        return self.replace_many([component])

    def replace_many(self, components: Iterable[ComponentView]) -> int:
        updated = dict(self._components)
        for component in components:
            updated[_key(component.id)] = component
        self._components = updated
        self._version += 1
        return self._version

    def replace_all(self, components: Iterable[ComponentView]) -> int:
        self._components = {_key(c.id): c for c in components}
        self._version += 1
        return self._version

    def merge_payloads(self, payloads: Iterable[dict]) -> int:
        """Replace components from ComponentWithMilestones payloads (e.g. a bulk response)."""
        views = [ComponentView.from_dict(p) for p in payloads]
        if not views:
            return self._version
        return self.replace_many(views)


# ═════════════════════════════════════════════════════════════════════════════
# Request tracker
# ═════════════════════════════════════════════════════════════════════════════


class RequestTracker:
    """Pending / error flags and request generations keyed by milestone id."""

    def __init__(self) -> None:
        self._generation: dict[str, int] = {}
        self._pending: dict[str, int] = {}
        self._errors: dict[str, str] = {}

    def begin(self, milestone_id) -> int:
        """Start a request: bump the generation, mark pending, clear the error."""
        key = _key(milestone_id)
        generation = self._generation.get(key, 0) + 1
        self._generation[key] = generation
        self._pending[key] = generation
        self._errors.pop(key, None)
        return generation

    def is_current(self, milestone_id, generation: int) -> bool:
        return self._generation.get(_key(milestone_id)) == generation

    def finish(self, milestone_id, generation: int, error: str | None = None) -> bool:
        """Settle a request. Returns False (and changes nothing) if it is stale."""
        key = _key(milestone_id)
        if not self.is_current(key, generation):
            return False
        self._pending.pop(key, None)
        if error is None:
            self._errors.pop(key, None)
        else:
            self._errors[key] = error
        return True

    def is_pending(self, milestone_id) -> bool:
        return _key(milestone_id) in self._pending

    def has_error(self, milestone_id) -> bool:
        return _key(milestone_id) in self._errors

    def error_for(self, milestone_id) -> str | None:
        return self._errors.get(_key(milestone_id))

    def clear_error(self, milestone_id) -> None:
        self._errors.pop(_key(milestone_id), None)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)


# ═════════════════════════════════════════════════════════════════════════════
# Coordinator
# ═════════════════════════════════════════════════════════════════════════════


def candidate_fields(milestone: MilestoneView, workflow_type: WorkflowType, value) -> dict:
    """Completion fields *value* would produce, validated for the workflow type.

    Raises:
        ValidationError: value of the wrong kind or out of range.
    """
    if workflow_type is WorkflowType.DISCRETE:
        if not isinstance(value, bool):
            raise ValidationError(
                "Discrete milestones take true or false",
                details={"value": value},
            )
        return {"is_completed": value}

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Value must be a number", details={"value": value})

    if workflow_type is WorkflowType.PERCENTAGE:
        if isinstance(value, float) and not value.is_integer():
            raise ValidationError("Percentage must be a whole number", details={"value": value})
        if value < 0 or value > 100:
            raise ValidationError("Percentage must be between 0 and 100", details={"value": value})
        return {"percentage_complete": int(value), "is_completed": value >= 100}

    total = milestone.quantity_total or 0
    if value < 0 or value > total:
        raise ValidationError(
            f"Quantity must be between 0 and {total:g}",
            details={"value": value, "quantity_total": total},
        )
    return {"quantity_complete": value, "is_completed": total > 0 and value >= total}


class MilestoneUpdateCoordinator:
    """Applies single milestone changes for one project.

    Usage:
        coordinator = MilestoneUpdateCoordinator(project_id, gateway, store)
        component = coordinator.update_milestone(31, 7, "Weld", "MILESTONE_DISCRETE", True)
    """

    def __init__(
        self,
        project_id,
        gateway: MilestoneGateway,
        store: ComponentStore,
        tracker: RequestTracker | None = None,
        *,
        enforce_sequence: bool = True,
    ) -> None:
        self.project_id = project_id
        self.gateway = gateway
        self.store = store
        self.tracker = tracker or RequestTracker()
        self.enforce_sequence = enforce_sequence

    def _check_sequence(self, component: ComponentView, milestone: MilestoneView, fields: dict) -> None:
        candidate = milestone.with_completion(fields)
        wf = component.workflow_type
        was_complete = is_milestone_complete(milestone, wf)
        will_complete = is_milestone_complete(candidate, wf)

        if will_complete and not was_complete:
            if not can_complete_milestone(milestone, component.milestones, wf):
                reason = describe_block_reason(milestone, component.milestones, wf)
                raise SequenceBlockedError(reason, details={"milestone_id": milestone.id})
        elif was_complete and not will_complete:
            if not can_uncomplete_milestone(milestone, component.milestones, wf):
                raise SequenceBlockedError(
                    f"{milestone.name} cannot be uncompleted while a later milestone is complete",
                    details={"milestone_id": milestone.id},
                )

    def update_milestone(self, milestone_id, component_id, milestone_name, workflow_type, value) -> ComponentView:
        """
        Apply one milestone value and return the updated component.

        Raises:
            NotFoundError: component or milestone not in the store.
            ValidationError: value invalid for the workflow type (nothing sent).
            SequenceBlockedError: change not allowed by the sequencing rules (nothing sent).
            UpdateRejectedError / TransportError: the persistence call failed;
                the store is unchanged and an error flag is recorded.
        """
        wf = WorkflowType.parse(workflow_type)
        component = self.store.require(component_id)
        milestone = component.get_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError(resource="Milestone", resource_id=milestone_id)
        if milestone_name and milestone.name != milestone_name:
            logger.warning(
                "Milestone name mismatch: id=%s stored=%r given=%r",
                milestone_id, milestone.name, milestone_name,
            )

        fields = candidate_fields(milestone, wf, value)
        if self.enforce_sequence:
            self._check_sequence(component, milestone, fields)

        log_extra = {"project_id": self.project_id, "component_id": component_id, "milestone_id": milestone_id}
        generation = self.tracker.begin(milestone_id)
        try:
            response = self.gateway.update_milestone(self.project_id, component_id, milestone_id, value)
        except (UpdateRejectedError, TransportError) as exc:
            if self.tracker.finish(milestone_id, generation, error=str(exc)):
                logger.warning(
                    "Milestone update failed: %s on %s: %s",
                    milestone.name, component.component_code, exc, extra=log_extra,
                )
            else:
                logger.info("Stale failure ignored for milestone %s (generation %d)", milestone_id, generation)
            raise

        if not self.tracker.finish(milestone_id, generation):
            logger.info(
                "Stale response discarded for milestone %s (generation %d)",
                milestone_id, generation, extra=log_extra,
            )
            return self.store.require(component_id)

        authoritative = (response or {}).get("milestone") or fields
        # Re-read: another milestone of this component may have landed meanwhile
        current = self.store.require(component_id)
        current_milestone = current.get_milestone(milestone_id) or milestone
        updated = current.with_milestone(current_milestone.with_completion(authoritative))
        self.store.replace(updated)
        logger.debug(
            "Milestone %s on %s → %s (component %d%%)",
            milestone.name, component.component_code, value, updated.completion_percent,
            extra=log_extra,
        )
        return updated

    def milestone_state(self, component_id, milestone_id) -> MilestoneButtonState:
        component = self.store.require(component_id)
        milestone = component.get_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError(resource="Milestone", resource_id=milestone_id)
        return classify_milestone_state(
            milestone,
            component.milestones,
            component.workflow_type,
            is_loading=self.tracker.is_pending(milestone_id),
            has_error=self.tracker.has_error(milestone_id),
        )

    def milestone_states(self, component_id) -> dict[str, MilestoneButtonState]:
        """Button state of every milestone of a component, keyed by milestone id."""
        component = self.store.require(component_id)
        return {
            _key(m.id): self.milestone_state(component_id, m.id)
            for m in component.canonical_milestones
        }

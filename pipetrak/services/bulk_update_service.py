"""
Bulk Update Orchestrator - Service Layer.

Applies one logical milestone update across many selected components, which
may belong to different milestone templates, and reports per-item outcomes.

    - Grouping:        group_components_by_template / find_common_milestones
    - Validation:      validate_bulk_update (advanced selections),
                       validate_bulk_request (mode checks, large-update warnings)
    - Preview:         generate_update_summary
    - Dispatch:        BulkUpdateOrchestrator.perform_bulk_update, batched,
                       progress callback per batch
    - Outcome:         summarize_bulk_result

Modes:
    quick     one milestone name for every component id; the name must be in
              the intersection of all groups' available milestones
    advanced  per group (keyed by template id) a list of milestone names

The batch is best effort, never a transaction: every (component, milestone)
pair lands exactly once in ``successful`` or ``failed`` and failure messages
are kept verbatim so the review screen can group them by error type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Sequence

from pipetrak.core.exceptions import (
    BulkUpdateValidationError,
    TransportError,
    UpdateRejectedError,
)
from pipetrak.integrations.pipetrak_gateway import MilestoneGateway
from pipetrak.services.milestone_coordinator import ComponentStore
from pipetrak.services.milestone_state import ComponentView

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_WARN_THRESHOLD = 500

NO_TEMPLATE_KEY = "__no_template__"
ERR_NO_RESULT = "No result returned for this item"
ERR_NOTHING_SELECTED = "Select at least one milestone to update"


def group_key(template_id) -> str:
    """Selection key of a template id (components without one share a group)."""
    return NO_TEMPLATE_KEY if template_id is None else str(template_id)


def _normalise_selections(selections: Mapping) -> dict:
    """Key selections by group key, so raw template ids work as keys too."""
    return {group_key(k): v for k, v in selections.items()}


# ═════════════════════════════════════════════════════════════════════════════
# Types
# ═════════════════════════════════════════════════════════════════════════════


class BulkUpdateMode(str, Enum):
    QUICK = "quick"
    ADVANCED = "advanced"


@dataclass
class ComponentGroup:
    """Selected components sharing one milestone template."""

    template_id: int | str | None
    template_name: str
    component_type: str
    components: list[ComponentView] = field(default_factory=list)
    available_milestones: list[str] = field(default_factory=list)
    selection_key: str | None = None

    @property
    def key(self) -> str:
        return self.selection_key or group_key(self.template_id)

    @property
    def component_ids(self) -> list:
        return [c.id for c in self.components]

    @property
    def label(self) -> str:
        return self.template_name or self.component_type


@dataclass(frozen=True)
class BulkUpdateRequest:
    """Exactly one of quick (milestone_name + component_ids) or advanced (groups + selections)."""

    mode: BulkUpdateMode
    milestone_name: str | None = None
    component_ids: tuple = ()
    groups: tuple[ComponentGroup, ...] = ()
    selections: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def quick(cls, milestone_name: str, component_ids: Iterable) -> BulkUpdateRequest:
        return cls(
            mode=BulkUpdateMode.QUICK,
            milestone_name=milestone_name,
            component_ids=tuple(_unique(component_ids)),
        )

    @classmethod
    def advanced(
        cls,
        groups: Iterable[ComponentGroup],
        selections: Mapping[str, Iterable[str]],
    ) -> BulkUpdateRequest:
        return cls(
            mode=BulkUpdateMode.ADVANCED,
            groups=tuple(groups),
            selections={k: tuple(v) for k, v in _normalise_selections(selections).items()},
        )

    def selected_for(self, group: ComponentGroup) -> tuple[str, ...]:
        return tuple(self.selections.get(group.key, ()))

    def dispatch_units(self) -> list[tuple[list, list[str]]]:
        """(component ids, milestone names) per request the orchestrator sends."""
        if self.mode is BulkUpdateMode.QUICK:
            if not self.milestone_name or not self.component_ids:
                return []
            return [(list(self.component_ids), [self.milestone_name])]
        units = []
        for group in self.groups:
            names = list(_unique(self.selected_for(group)))
            ids = list(_unique(group.component_ids))
            if names and ids:
                units.append((ids, names))
        return units

    def resolve_pairs(self) -> list[tuple[str, str]]:
        """Every (component id, milestone name) pair this request would attempt."""
        pairs = []
        seen = set()
        for ids, names in self.dispatch_units():
            for cid in ids:
                for name in names:
                    pair = (str(cid), name)
                    if pair not in seen:
                        seen.add(pair)
                        pairs.append(pair)
        return pairs

    @property
    def all_component_ids(self) -> list:
        if self.mode is BulkUpdateMode.QUICK:
            return list(self.component_ids)
        return list(_unique(cid for g in self.groups for cid in g.component_ids))


@dataclass(frozen=True)
class BulkUpdateItem:
    """One (component, milestone) outcome. ``error`` is set for failures only."""

    component_id: int | str
    milestone_name: str | None
    error: str | None = None
    component_code: str | None = None
    milestone_id: int | str | None = None

    @property
    def pair(self) -> tuple[str, str | None]:
        return (str(self.component_id), self.milestone_name)

    def to_dict(self) -> dict:
        result = {
            "component_id": self.component_id,
            "component_code": self.component_code,
            "milestone_name": self.milestone_name,
        }
        if self.milestone_id is not None:
            result["milestone_id"] = self.milestone_id
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class BulkUpdateResult:
    successful: list[BulkUpdateItem] = field(default_factory=list)
    failed: list[BulkUpdateItem] = field(default_factory=list)
    total: int = 0
    components: list[dict] = field(default_factory=list)

    @property
    def is_complete_success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "successful": [i.to_dict() for i in self.successful],
            "failed": [i.to_dict() for i in self.failed],
            "total": self.total,
        }


@dataclass
class BulkValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    update_count: int = 0

    @property
    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None


@dataclass(frozen=True)
class BulkUpdateProgress:
    current: int
    total: int
    message: str = ""

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return int(round(self.current * 100 / self.total))


@dataclass(frozen=True)
class BulkUpdateSummary:
    """User-visible outcome of a bulk update."""

    level: str          # success | warning | error
    message: str
    keep_open: bool     # failure list stays open for review / retry
    has_details: bool


def _unique(values: Iterable) -> list:
    seen = set()
    out = []
    for v in values:
        k = str(v)
        if k not in seen:
            seen.add(k)
            out.append(v)
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Grouping & validation
# ═════════════════════════════════════════════════════════════════════════════


def group_components_by_template(components: Iterable[ComponentView]) -> list[ComponentGroup]:
    """Partition by milestone template id, in order of first appearance.

    A group's available milestones are the union of its members' milestone
    names in discovery order.
    """
    groups: dict[str, ComponentGroup] = {}
    for component in components:
        key = group_key(component.milestone_template_id)
        group = groups.get(key)
        if group is None:
            group = ComponentGroup(
                template_id=component.milestone_template_id,
                template_name=component.template_name or (
                    "No template" if component.milestone_template_id is None
                    else f"Template {component.milestone_template_id}"
                ),
                component_type=component.type,
            )
            groups[key] = group
        group.components.append(component)
        for name in component.milestone_names:
            if name not in group.available_milestones:
                group.available_milestones.append(name)
    return list(groups.values())


def find_common_milestones(groups: Sequence[ComponentGroup]) -> list[str]:
    """Milestone names available in every group, in the first group's order."""
    if not groups:
        return []
    common = [n for n in groups[0].available_milestones]
    for group in groups[1:]:
        available = set(group.available_milestones)
        common = [n for n in common if n in available]
    return common


def validate_bulk_update(
    groups: Sequence[ComponentGroup],
    selections: Mapping[str, Iterable[str]],
    *,
    warn_threshold: int = DEFAULT_WARN_THRESHOLD,
) -> BulkValidation:
    """Check advanced-mode selections against each group's available milestones."""
    selections = _normalise_selections(selections)
    errors: list[str] = []
    warnings: list[str] = []
    update_count = 0
    selected_total = 0

    for group in groups:
        names = list(_unique(selections.get(group.key, ())))
        if not names:
            warnings.append(
                f"No milestones selected for {group.label} "
                f"({len(group.components)} components will be skipped)"
            )
            continue
        available = set(group.available_milestones)
        for name in names:
            if name not in available:
                errors.append(f'Milestone "{name}" is not available for {group.label}')
        selected_total += len(names)
        update_count += len(group.components) * len(names)

    if selected_total == 0:
        errors.insert(0, ERR_NOTHING_SELECTED)

    component_count = sum(len(g.components) for g in groups)
    if component_count > warn_threshold:
        warnings.append(f"Large update: {component_count} components selected")

    return BulkValidation(valid=not errors, errors=errors, warnings=warnings, update_count=update_count)


def validate_bulk_request(
    request: BulkUpdateRequest,
    groups: Sequence[ComponentGroup] | None = None,
    *,
    warn_threshold: int = DEFAULT_WARN_THRESHOLD,
) -> BulkValidation:
    """Mode-aware pre-dispatch validation of a whole request."""
    if request.mode is BulkUpdateMode.ADVANCED:
        if not request.groups:
            return BulkValidation(valid=False, errors=["No components selected"])
        return validate_bulk_update(request.groups, request.selections, warn_threshold=warn_threshold)

    errors: list[str] = []
    warnings: list[str] = []
    if not request.component_ids:
        errors.append("No components selected")
    if not request.milestone_name:
        errors.append(ERR_NOTHING_SELECTED)
    if groups is not None and request.milestone_name:
        if request.milestone_name not in find_common_milestones(groups):
            errors.append(
                f'Milestone "{request.milestone_name}" is not available for every selected component'
            )
    if len(request.component_ids) > warn_threshold:
        warnings.append(f"Large update: {len(request.component_ids)} components selected")

    update_count = len(request.component_ids) if request.milestone_name else 0
    return BulkValidation(valid=not errors, errors=errors, warnings=warnings, update_count=update_count)


def generate_update_summary(
    groups: Sequence[ComponentGroup],
    selections: Mapping[str, Iterable[str]],
) -> list[str]:
    """Preview lines: ``"VALVE (3 components): Receive, Install"``."""
    selections = _normalise_selections(selections)
    lines = []
    for group in groups:
        names = list(_unique(selections.get(group.key, ())))
        if not names:
            continue
        noun = "component" if len(group.components) == 1 else "components"
        lines.append(f"{group.component_type} ({len(group.components)} {noun}): {', '.join(names)}")
    return lines


def summarize_bulk_result(result: BulkUpdateResult) -> BulkUpdateSummary:
    ok, bad = len(result.successful), len(result.failed)
    if bad == 0:
        return BulkUpdateSummary("success", f"Updated {ok} milestone{'s' if ok != 1 else ''}", False, False)
    if ok == 0:
        return BulkUpdateSummary(
            "error", f"Failed to update {bad} milestone{'s' if bad != 1 else ''}", False, True,
        )
    return BulkUpdateSummary(
        "warning",
        f"Updated {ok} of {result.total} milestones; {bad} failed",
        True,
        True,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═════════════════════════════════════════════════════════════════════════════


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BulkUpdateOrchestrator:
    """Dispatches bulk requests for one project and partitions the outcome.

    Usage:
        orchestrator = BulkUpdateOrchestrator(project_id, gateway, store)
        result = orchestrator.perform_bulk_update(BulkUpdateRequest.quick("Receive", ids))
    """

    def __init__(
        self,
        project_id,
        gateway: MilestoneGateway,
        store: ComponentStore | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        warn_threshold: int = DEFAULT_WARN_THRESHOLD,
    ) -> None:
        self.project_id = project_id
        self.gateway = gateway
        self.store = store
        self.batch_size = max(1, batch_size)
        self.warn_threshold = warn_threshold

    def _code_for(self, component_id) -> str | None:
        if self.store is None:
            return None
        component = self.store.get(component_id)
        return component.component_code if component else None

    def _partition(
        self,
        ids: list,
        names: list[str],
        response: dict,
    ) -> tuple[list[BulkUpdateItem], list[BulkUpdateItem]]:
        """Assign every expected pair of one batch to successful or failed exactly once."""
        expected: dict[tuple[str, str], object] = {}
        for cid in ids:
            for name in names:
                expected[(str(cid), name)] = cid
        assigned: set[tuple[str, str]] = set()
        successful: list[BulkUpdateItem] = []
        failed: list[BulkUpdateItem] = []

        for bucket, is_failure in ((response.get("successful") or [], False), (response.get("failed") or [], True)):
            for item in bucket:
                name = item.get("milestone_name")
                if name is None and len(names) == 1:
                    name = names[0]
                pair = (str(item.get("component_id")), name)
                if pair not in expected or pair in assigned:
                    logger.debug("Ignoring unexpected bulk result item %s", pair)
                    continue
                assigned.add(pair)
                cid = expected[pair]
                code = item.get("component_code") or self._code_for(cid)
                if is_failure:
                    failed.append(BulkUpdateItem(cid, name, error=item.get("error") or "Unknown error", component_code=code))
                else:
                    successful.append(BulkUpdateItem(cid, name, component_code=code, milestone_id=item.get("milestone_id")))

        for pair, cid in expected.items():
            if pair not in assigned:
                failed.append(BulkUpdateItem(cid, pair[1], error=ERR_NO_RESULT, component_code=self._code_for(cid)))
        return successful, failed

    def perform_bulk_update(
        self,
        request: BulkUpdateRequest,
        *,
        groups: Sequence[ComponentGroup] | None = None,
        on_progress: Callable[[BulkUpdateProgress], None] | None = None,
    ) -> BulkUpdateResult:
        """
        Mark the requested milestones complete, batch by batch.

        Raises:
            BulkUpdateValidationError: the request is invalid or resolves to
                zero (component, milestone) pairs. Nothing is sent.
        """
        validation = validate_bulk_request(request, groups, warn_threshold=self.warn_threshold)
        if not validation.valid:
            raise BulkUpdateValidationError(validation.errors, validation.warnings)
        pairs = request.resolve_pairs()
        if not pairs:
            raise BulkUpdateValidationError([ERR_NOTHING_SELECTED], validation.warnings)
        for warning in validation.warnings:
            logger.info("Bulk update warning: %s", warning, extra={"project_id": self.project_id})

        batches = [
            (chunk, names)
            for ids, names in request.dispatch_units()
            for chunk in _chunks(ids, self.batch_size)
        ]
        result = BulkUpdateResult(total=len(pairs))
        logger.info(
            "Bulk update dispatch: project=%s mode=%s pairs=%d batches=%d",
            self.project_id, request.mode.value, len(pairs), len(batches),
            extra={"project_id": self.project_id},
        )

        done = 0
        for index, (ids, names) in enumerate(batches, start=1):
            updates = [{"milestone_name": name, "complete": True} for name in names]
            try:
                response = self.gateway.bulk_update(
                    self.project_id, ids, updates, atomic=False, validate_only=False,
                )
            except (TransportError, UpdateRejectedError) as exc:
                message = str(exc)
                logger.warning(
                    "Bulk batch %d/%d failed in full: %s",
                    index, len(batches), message,
                    extra={"project_id": self.project_id, "batch": index},
                )
                result.failed.extend(
                    BulkUpdateItem(cid, name, error=message, component_code=self._code_for(cid))
                    for cid in ids for name in names
                )
            else:
                ok, bad = self._partition(ids, names, response)
                result.successful.extend(ok)
                result.failed.extend(bad)
                returned = response.get("components") or []
                result.components.extend(returned)
                if self.store is not None and returned:
                    self.store.merge_payloads(returned)

            done += len(ids) * len(names)
            if on_progress is not None:
                on_progress(BulkUpdateProgress(
                    current=done,
                    total=len(pairs),
                    message=f"Processed batch {index} of {len(batches)}",
                ))

        if result.failed:
            logger.warning(
                "Bulk update finished: ok=%d failed=%d total=%d; first failures: %s",
                len(result.successful), len(result.failed), result.total,
                [f"{i.component_id}/{i.milestone_name}: {i.error}" for i in result.failed[:5]],
                extra={"project_id": self.project_id},
            )
        else:
            logger.info(
                "Bulk update finished: ok=%d total=%d",
                len(result.successful), result.total,
                extra={"project_id": self.project_id},
            )
        return result

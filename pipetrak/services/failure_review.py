"""
Failure Review & Retry.

Holds the ``failed`` list of a bulk update for review, lets the user select a
subset and resubmits only that subset as a request of the original mode.

Each failure carries a ``selected`` flag and a ``retry_status``
(pending / success / failed) kept apart from the original failure record.
After a retry:

    in new successful   → retry_status=success, hidden from the visible list
    in new failed       → retry_status=failed, error replaced
    not mentioned       → retry_status=failed, prior error kept

Advanced-mode retries regroup components by their *current* template id; a
component whose template changed since the failure is left out of the
retry and simply stays failed. Within a template, components are split by
their own set of failed milestone names, so a retry never re-sends a pair
that was not selected.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable

from pipetrak.core.exceptions import BulkUpdateValidationError
from pipetrak.services.bulk_update_service import (
    BulkUpdateItem,
    BulkUpdateMode,
    BulkUpdateOrchestrator,
    BulkUpdateRequest,
    BulkUpdateResult,
    group_components_by_template,
    group_key,
)
from pipetrak.services.milestone_coordinator import ComponentStore

logger = logging.getLogger(__name__)


class RetryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def error_type(message: str | None) -> str:
    """Text before the first colon of an error message, or "Other"."""
    return (message or "").split(":", 1)[0] or "Other"


@dataclass
class FailureItem:
    component_id: int | str
    milestone_name: str | None
    error: str
    component_code: str | None = None
    selected: bool = False
    retry_status: RetryStatus | None = None

    @classmethod
    def from_result_item(cls, item: BulkUpdateItem) -> FailureItem:
        return cls(
            component_id=item.component_id,
            milestone_name=item.milestone_name,
            error=item.error or "Unknown error",
            component_code=item.component_code,
        )

    @property
    def key(self) -> tuple[str, str | None]:
        return (str(self.component_id), self.milestone_name)

    @property
    def label(self) -> str:
        return self.component_code or str(self.component_id)

    @property
    def error_type(self) -> str:
        return error_type(self.error)


def group_failures_by_error_type(failures: Iterable[FailureItem]) -> dict[str, list[FailureItem]]:
    groups: dict[str, list[FailureItem]] = {}
    for failure in failures:
        groups.setdefault(failure.error_type, []).append(failure)
    return groups


class FailureReview:
    """Review state for one bulk update's failures.

    Usage:
        review = FailureReview(result.failed, request, orchestrator)
        review.select_all()
        review.retry()
    """

    def __init__(
        self,
        failures: Iterable[BulkUpdateItem | FailureItem],
        original_request: BulkUpdateRequest,
        orchestrator: BulkUpdateOrchestrator,
        store: ComponentStore | None = None,
    ) -> None:
        self.failures: list[FailureItem] = [
            f if isinstance(f, FailureItem) else FailureItem.from_result_item(f)
            for f in failures
        ]
        self.original_request = original_request
        self.orchestrator = orchestrator
        self.store = store if store is not None else orchestrator.store
        self.last_message: str | None = None

    # ── Selection ────────────────────────────────────────────────────────────

    @property
    def visible_failures(self) -> list[FailureItem]:
        return [f for f in self.failures if f.retry_status is not RetryStatus.SUCCESS]

    @property
    def selected(self) -> list[FailureItem]:
        return [f for f in self.visible_failures if f.selected]

    def toggle(self, component_id, milestone_name: str | None = None) -> None:
        for failure in self.visible_failures:
            if str(failure.component_id) != str(component_id):
                continue
            if milestone_name is not None and failure.milestone_name != milestone_name:
                continue
            failure.selected = not failure.selected

    def select_all(self, value: bool = True) -> None:
        for failure in self.visible_failures:
            failure.selected = value

    def grouped(self) -> dict[str, list[FailureItem]]:
        return group_failures_by_error_type(self.visible_failures)

    # ── Export ───────────────────────────────────────────────────────────────

    def as_text(self) -> str:
        """One ``"<component>: <error> (<milestone>)"`` line per visible failure."""
        lines = []
        for f in self.visible_failures:
            suffix = f" ({f.milestone_name})" if f.milestone_name else ""
            lines.append(f"{f.label}: {f.error}{suffix}")
        return "\n".join(lines)

    def as_csv(self) -> str:
        output = io.StringIO()
        writer = csv.writer(output, quoting=csv.QUOTE_ALL)
        writer.writerow(["Component ID", "Milestone", "Error"])
        for f in self.visible_failures:
            writer.writerow([f.label, f.milestone_name or "", f.error])
        return output.getvalue()

    # ── Retry ────────────────────────────────────────────────────────────────

    def build_retry_request(self, selected: list[FailureItem]) -> BulkUpdateRequest | None:
        """Same-mode request scoped to *selected*; None when nothing is retryable."""
        if self.original_request.mode is BulkUpdateMode.QUICK:
            ids = [f.component_id for f in selected]
            if not ids or not self.original_request.milestone_name:
                return None
            return BulkUpdateRequest.quick(self.original_request.milestone_name, ids)

        original_template = {}
        for group in self.original_request.groups:
            for cid in group.component_ids:
                original_template[str(cid)] = group_key(group.template_id)

        current = []
        names_by_component: dict[str, list[str]] = {}
        for failure in selected:
            cid = str(failure.component_id)
            component = self.store.get(failure.component_id) if self.store is not None else None
            if component is None:
                logger.info("Retry skips component %s: no longer loaded", cid)
                continue
            if group_key(component.milestone_template_id) != original_template.get(cid):
                logger.info("Retry skips component %s: template changed", cid)
                continue
            names = names_by_component.setdefault(cid, [])
            if failure.milestone_name and failure.milestone_name not in names:
                names.append(failure.milestone_name)
            if all(str(c.id) != cid for c in current):
                current.append(component)

        # one group per distinct set of failed names within a template
        groups = []
        selections = {}
        for group in group_components_by_template(current):
            members_by_names: dict[tuple[str, ...], list] = {}
            for component in group.components:
                names = tuple(
                    n for n in names_by_component.get(str(component.id), [])
                    if n in group.available_milestones
                )
                if names:
                    members_by_names.setdefault(names, []).append(component)
            for index, (names, members) in enumerate(members_by_names.items()):
                part = replace(
                    group,
                    components=members,
                    selection_key=group.key if index == 0 else f"{group.key}#{index}",
                )
                groups.append(part)
                selections[part.key] = list(names)
        if not groups:
            return None
        return BulkUpdateRequest.advanced(groups, selections)

    def _settle(self, selected: list[FailureItem], result: BulkUpdateResult) -> None:
        succeeded = {i.pair for i in result.successful}
        succeeded_ids = {i.pair[0] for i in result.successful}
        new_errors = {i.pair: i.error for i in result.failed}
        new_errors_by_id = {i.pair[0]: i.error for i in result.failed}

        for failure in selected:
            cid = str(failure.component_id)
            if failure.key in succeeded or (failure.milestone_name is None and cid in succeeded_ids):
                failure.retry_status = RetryStatus.SUCCESS
            elif failure.key in new_errors:
                failure.retry_status = RetryStatus.FAILED
                failure.error = new_errors[failure.key] or failure.error
            elif failure.milestone_name is None and cid in new_errors_by_id:
                failure.retry_status = RetryStatus.FAILED
                failure.error = new_errors_by_id[cid] or failure.error
            else:
                failure.retry_status = RetryStatus.FAILED
            failure.selected = False

    def retry(self, selected: list[FailureItem] | None = None) -> BulkUpdateResult:
        """
        Resubmit the selected failures and merge the outcome into this review.

        Failures outside the selection are left exactly as they were.
        """
        chosen = list(selected) if selected is not None else self.selected
        if not chosen:
            return BulkUpdateResult()

        for failure in chosen:
            failure.retry_status = RetryStatus.PENDING

        request = self.build_retry_request(chosen)
        if request is None:
            result = BulkUpdateResult()
        else:
            try:
                result = self.orchestrator.perform_bulk_update(request)
            except BulkUpdateValidationError:
                for failure in chosen:
                    failure.retry_status = RetryStatus.FAILED
                    failure.selected = False
                self.last_message = "Retry operation failed"
                raise

        self._settle(chosen, result)
        if result.successful:
            retried = sum(1 for f in chosen if f.retry_status is RetryStatus.SUCCESS)
            self.last_message = f"Successfully retried {retried} of {len(chosen)} items"
        else:
            self.last_message = "All retry attempts failed"
        logger.info(
            "Retry finished: %s", self.last_message,
            extra={"project_id": self.orchestrator.project_id},
        )
        return result

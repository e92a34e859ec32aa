"""
Milestone Sequencing Rule Engine.

Decides, for one milestone and its sibling set, whether a complete or an
uncomplete action is currently permitted, and classifies the milestone's UI
button state.

Rules are a declarative table matched against the upper-cased milestone name
(substring match, first match wins). Each rule names the pattern set of its
gating milestone, or one of the two special gates:

    NONE           always eligible
    ALL_PRECEDING  every milestone earlier in canonical order is complete

Names matching no rule fall back to sequence order: the first milestone is
eligible, any other needs its immediate predecessor complete.

The gating milestone is the first one in canonical order whose name contains
any of the gate patterns. A gate that does not exist on the component means
"not eligible"; only RECEIVE and the first-in-sequence fallback are eligible
without a gate. Field users depend on this exact table, so the precedence
order must not change.

Usage:
    from pipetrak.services.milestone_sequencing import classify_milestone_state

    state = classify_milestone_state(milestone, component.milestones, component.workflow_type)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from pipetrak.services.milestone_state import (
    MilestoneView,
    WorkflowType,
    is_milestone_complete,
)

logger = logging.getLogger(__name__)

GATE_NONE = "NONE"
GATE_ALL_PRECEDING = "ALL_PRECEDING"


class MilestoneButtonState(str, Enum):
    LOADING = "loading"
    ERROR = "error"
    COMPLETE = "complete"
    AVAILABLE = "available"
    DEPENDENT = "dependent"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class SequenceRule:
    """One row of the sequencing table."""

    key: str
    patterns: tuple[str, ...]
    gate: tuple[str, ...] | str

    def matches(self, name: str) -> bool:
        upper = name.upper()
        return any(p in upper for p in self.patterns)


RECEIVE_PATTERNS = ("RECEIVE", "REC")
FIT_PATTERNS = ("FIT",)
WELD_PATTERNS = ("WELD",)
VISUAL_PATTERNS = ("VT", "VISUAL")
PUNCH_PATTERNS = ("PUNCH",)
TEST_PATTERNS = ("TEST",)

# Order is precedence. "ERECT" contains "REC", so it resolves to the RECEIVE row.
SEQUENCE_RULES: tuple[SequenceRule, ...] = (
    SequenceRule("receive", RECEIVE_PATTERNS, GATE_NONE),
    SequenceRule("install", ("ERECT", "CONNECT", "SUPPORT"), RECEIVE_PATTERNS),
    SequenceRule("fit", FIT_PATTERNS, RECEIVE_PATTERNS),
    SequenceRule("weld", WELD_PATTERNS, FIT_PATTERNS),
    SequenceRule("visual", VISUAL_PATTERNS, WELD_PATTERNS),
    SequenceRule("nde", ("RT", "UT", "RADIO", "ULTRA"), VISUAL_PATTERNS),
    SequenceRule("punch", PUNCH_PATTERNS, GATE_ALL_PRECEDING),
    SequenceRule("test", TEST_PATTERNS, PUNCH_PATTERNS),
    SequenceRule("restore", ("RESTORE",), TEST_PATTERNS),
)


def canonical_sequence(milestones: Iterable[MilestoneView]) -> list[MilestoneView]:
    return sorted(milestones, key=lambda m: m.order)


def match_rule(name: str) -> SequenceRule | None:
    """Return the first rule whose patterns occur in *name*, or None."""
    for rule in SEQUENCE_RULES:
        if rule.matches(name):
            return rule
    return None


def find_gate_milestone(
    patterns: Sequence[str],
    sequence: Sequence[MilestoneView],
) -> MilestoneView | None:
    for m in sequence:
        upper = m.name.upper()
        if any(p in upper for p in patterns):
            return m
    return None


def _index_of(milestone: MilestoneView, sequence: Sequence[MilestoneView]) -> int:
    for i, m in enumerate(sequence):
        if str(m.id) == str(milestone.id):
            return i
    return -1


def can_complete_milestone(
    milestone: MilestoneView,
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
) -> bool:
    """True when the gating rules allow *milestone* to be completed now.

    Evaluates the gate only; whether the milestone is already complete is the
    caller's concern.
    """
    sequence = canonical_sequence(milestones)
    index = _index_of(milestone, sequence)
    if index == -1:
        return False

    rule = match_rule(milestone.name)
    if rule is None:
        if index == 0:
            return True
        return is_milestone_complete(sequence[index - 1], workflow_type)

    if rule.gate == GATE_NONE:
        return True
    if rule.gate == GATE_ALL_PRECEDING:
        return all(is_milestone_complete(m, workflow_type) for m in sequence[:index])

    gate = find_gate_milestone(rule.gate, sequence)
    if gate is None:
        return False
    return is_milestone_complete(gate, workflow_type)


def can_uncomplete_milestone(
    milestone: MilestoneView,
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
) -> bool:
    """True when *milestone* is complete and nothing later in sequence is."""
    if not is_milestone_complete(milestone, workflow_type):
        return False
    sequence = canonical_sequence(milestones)
    index = _index_of(milestone, sequence)
    if index == -1:
        return False
    return not any(is_milestone_complete(m, workflow_type) for m in sequence[index + 1:])


def can_toggle_milestone(
    milestone: MilestoneView,
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
) -> bool:
    """Eligibility of the action a click would trigger (uncomplete if complete)."""
    milestones = list(milestones)
    if is_milestone_complete(milestone, workflow_type):
        return can_uncomplete_milestone(milestone, milestones, workflow_type)
    return can_complete_milestone(milestone, milestones, workflow_type)


def has_missing_gate(milestone: MilestoneView, milestones: Iterable[MilestoneView]) -> bool:
    """True when the milestone's rule names a gate the component does not have."""
    rule = match_rule(milestone.name)
    if rule is None or rule.gate in (GATE_NONE, GATE_ALL_PRECEDING):
        return False
    return find_gate_milestone(rule.gate, canonical_sequence(milestones)) is None


def classify_milestone_state(
    milestone: MilestoneView,
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
    *,
    is_loading: bool = False,
    has_error: bool = False,
) -> MilestoneButtonState:
    """Classify the UI state of one milestone button.

    Priority: loading > error > complete > available > dependent > blocked.
    ``dependent`` means the immediate predecessor is incomplete and the gate
    exists; a milestone whose gate is absent from the component is ``blocked``.
    """
    if is_loading:
        return MilestoneButtonState.LOADING
    if has_error:
        return MilestoneButtonState.ERROR
    if is_milestone_complete(milestone, workflow_type):
        return MilestoneButtonState.COMPLETE

    sequence = canonical_sequence(milestones)
    if can_complete_milestone(milestone, sequence, workflow_type):
        return MilestoneButtonState.AVAILABLE

    index = _index_of(milestone, sequence)
    if index > 0 and not has_missing_gate(milestone, sequence):
        if not is_milestone_complete(sequence[index - 1], workflow_type):
            return MilestoneButtonState.DEPENDENT
    return MilestoneButtonState.BLOCKED


def describe_block_reason(
    milestone: MilestoneView,
    milestones: Iterable[MilestoneView],
    workflow_type: WorkflowType | str,
) -> str | None:
    """Human-readable reason a milestone cannot be completed, or None if it can."""
    sequence = canonical_sequence(milestones)
    if can_complete_milestone(milestone, sequence, workflow_type):
        return None
    rule = match_rule(milestone.name)
    if rule is None:
        index = _index_of(milestone, sequence)
        if index <= 0:
            return f"{milestone.name} is not part of this component"
        return f"{milestone.name} requires {sequence[index - 1].name} to be complete"
    if rule.gate == GATE_ALL_PRECEDING:
        return f"{milestone.name} requires all previous milestones to be complete"
    gate = find_gate_milestone(rule.gate, sequence)
    if gate is None:
        return f"{milestone.name} requires a {'/'.join(rule.gate)} milestone, which this component does not have"
    return f"{milestone.name} requires {gate.name} to be complete"

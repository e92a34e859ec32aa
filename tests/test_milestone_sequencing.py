"""Unit tests for pipetrak.services.milestone_sequencing.

Test strategy
-------------
Pure functions over in-memory MilestoneView lists; no database.

Coverage
--------
    - Rule table precedence (first match wins, ERECT resolves to RECEIVE)
    - Named gates, ALL_PRECEDING, fallback to sequence order
    - Missing gates classify as blocked, present-but-open gates as dependent
    - Uncomplete only when nothing later is complete
    - Button state priority: loading > error > complete
"""

import itertools

import pytest

from pipetrak.services.milestone_sequencing import (
    GATE_ALL_PRECEDING,
    GATE_NONE,
    MilestoneButtonState,
    can_complete_milestone,
    can_toggle_milestone,
    can_uncomplete_milestone,
    classify_milestone_state,
    describe_block_reason,
    find_gate_milestone,
    has_missing_gate,
    match_rule,
)
from pipetrak.services.milestone_state import MilestoneView, is_milestone_complete

DISCRETE = "MILESTONE_DISCRETE"


def _sequence(*names, completed=()):
    """Build milestones in the given order; *completed* lists names already done."""
    return [
        MilestoneView(id=i, component_id=1, name=name, order=i, is_completed=name in completed)
        for i, name in enumerate(names, start=1)
    ]


def _by_name(milestones, name):
    return next(m for m in milestones if m.name == name)


FULL_SET = ("Receive", "Erect", "Connect", "Support", "Punch", "Test", "Restore")
FIELD_WELD = ("Receive", "Fit-up", "Weld", "VT", "RT", "Punch", "Test", "Restore")


# ── Rule table ───────────────────────────────────────────────────────────


class TestMatchRule:
    @pytest.mark.parametrize("name, key", [
        ("Receive", "receive"),
        ("Received", "receive"),
        ("Erect", "receive"),      # "ERECT" contains "REC"
        ("Connect", "install"),
        ("Support", "install"),
        ("Fit-up", "fit"),
        ("Weld", "weld"),
        ("VT Inspection", "visual"),
        ("Radiography", "nde"),
        ("UT", "nde"),
        ("Punch", "punch"),
        ("Hydro Test", "test"),
        ("Restore", "restore"),
    ])
    def test_first_matching_row_wins(self, name, key):
        assert match_rule(name).key == key

    def test_unmatched_name_has_no_rule(self):
        assert match_rule("Install") is None
        assert match_rule("Primer") is None

    def test_match_is_case_insensitive(self):
        assert match_rule("punch walk").key == "punch"

    def test_special_gates(self):
        assert match_rule("Receive").gate == GATE_NONE
        assert match_rule("Punch").gate == GATE_ALL_PRECEDING

    def test_find_gate_returns_first_in_canonical_order(self):
        seq = _sequence("Receive", "Weld", "Weld Repair")
        assert find_gate_milestone(("WELD",), seq).name == "Weld"


# ── Completion eligibility ───────────────────────────────────────────────


class TestCanComplete:
    def test_receive_always_eligible(self):
        seq = _sequence(*FULL_SET)
        assert can_complete_milestone(_by_name(seq, "Receive"), seq, DISCRETE)

    def test_connect_waits_for_receive(self):
        seq = _sequence(*FULL_SET)
        assert not can_complete_milestone(_by_name(seq, "Connect"), seq, DISCRETE)
        seq = _sequence(*FULL_SET, completed={"Receive"})
        assert can_complete_milestone(_by_name(seq, "Connect"), seq, DISCRETE)

    def test_weld_gated_on_fit(self):
        seq = _sequence(*FIELD_WELD, completed={"Receive"})
        assert not can_complete_milestone(_by_name(seq, "Weld"), seq, DISCRETE)
        seq = _sequence(*FIELD_WELD, completed={"Receive", "Fit-up"})
        assert can_complete_milestone(_by_name(seq, "Weld"), seq, DISCRETE)

    def test_nde_gated_on_visual(self):
        seq = _sequence(*FIELD_WELD, completed={"Receive", "Fit-up", "Weld"})
        assert not can_complete_milestone(_by_name(seq, "RT"), seq, DISCRETE)
        seq = _sequence(*FIELD_WELD, completed={"Receive", "Fit-up", "Weld", "VT"})
        assert can_complete_milestone(_by_name(seq, "RT"), seq, DISCRETE)

    def test_punch_needs_all_preceding(self):
        seq = _sequence(*FULL_SET, completed={"Receive", "Erect", "Connect"})
        assert not can_complete_milestone(_by_name(seq, "Punch"), seq, DISCRETE)
        seq = _sequence(*FULL_SET, completed={"Receive", "Erect", "Connect", "Support"})
        assert can_complete_milestone(_by_name(seq, "Punch"), seq, DISCRETE)

    def test_restore_gated_on_test(self):
        seq = _sequence(*FULL_SET, completed=set(FULL_SET[:5]))
        assert not can_complete_milestone(_by_name(seq, "Restore"), seq, DISCRETE)
        seq = _sequence(*FULL_SET, completed=set(FULL_SET[:6]))
        assert can_complete_milestone(_by_name(seq, "Restore"), seq, DISCRETE)

    def test_fallback_first_in_sequence_is_eligible(self):
        seq = _sequence("Primer", "Finish Coat")
        assert can_complete_milestone(_by_name(seq, "Primer"), seq, DISCRETE)

    def test_fallback_needs_previous_milestone(self):
        seq = _sequence("Primer", "Finish Coat")
        assert not can_complete_milestone(_by_name(seq, "Finish Coat"), seq, DISCRETE)
        seq = _sequence("Primer", "Finish Coat", completed={"Primer"})
        assert can_complete_milestone(_by_name(seq, "Finish Coat"), seq, DISCRETE)

    def test_missing_gate_is_not_eligible(self):
        seq = _sequence("Receive", "Install", "Test", completed={"Receive", "Install"})
        test = _by_name(seq, "Test")
        assert has_missing_gate(test, seq)
        assert not can_complete_milestone(test, seq, DISCRETE)

    def test_foreign_milestone_is_not_eligible(self):
        seq = _sequence(*FULL_SET)
        stranger = MilestoneView(id=99, component_id=2, name="Receive", order=1)
        assert not can_complete_milestone(stranger, seq, DISCRETE)

    def test_percentage_gate_needs_full_completion(self):
        seq = [
            MilestoneView(id=1, component_id=1, name="Receive", order=1, percentage_complete=99),
            MilestoneView(id=2, component_id=1, name="Connect", order=2),
        ]
        assert not can_complete_milestone(seq[1], seq, "MILESTONE_PERCENTAGE")
        seq[0] = MilestoneView(id=1, component_id=1, name="Receive", order=1, percentage_complete=100)
        assert can_complete_milestone(seq[1], seq, "MILESTONE_PERCENTAGE")

    def test_order_field_defines_sequence_not_list_position(self):
        seq = list(reversed(_sequence("Primer", "Finish Coat")))
        assert can_complete_milestone(_by_name(seq, "Primer"), seq, DISCRETE)
        assert not can_complete_milestone(_by_name(seq, "Finish Coat"), seq, DISCRETE)


class TestAvailableImpliesGateComplete:
    """A milestone reported available has its gating predecessor complete."""

    def test_every_completion_subset_of_full_set(self):
        for size in range(len(FULL_SET) + 1):
            for done in itertools.combinations(FULL_SET, size):
                seq = _sequence(*FULL_SET, completed=set(done))
                for m in seq:
                    state = classify_milestone_state(m, seq, DISCRETE)
                    if state is not MilestoneButtonState.AVAILABLE:
                        continue
                    rule = match_rule(m.name)
                    if rule.gate == GATE_NONE:
                        continue
                    if rule.gate == GATE_ALL_PRECEDING:
                        assert all(p.is_completed for p in seq if p.order < m.order)
                    else:
                        assert find_gate_milestone(rule.gate, seq).is_completed


# ── Uncomplete ───────────────────────────────────────────────────────────


class TestCanUncomplete:
    def test_last_completed_can_be_uncompleted(self):
        seq = _sequence(*FULL_SET, completed={"Receive", "Erect"})
        assert can_uncomplete_milestone(_by_name(seq, "Erect"), seq, DISCRETE)

    def test_blocked_while_later_milestone_complete(self):
        seq = _sequence(*FULL_SET, completed={"Receive", "Erect"})
        assert not can_uncomplete_milestone(_by_name(seq, "Receive"), seq, DISCRETE)

    def test_incomplete_milestone_cannot_be_uncompleted(self):
        seq = _sequence(*FULL_SET)
        assert not can_uncomplete_milestone(_by_name(seq, "Receive"), seq, DISCRETE)

    def test_no_later_complete_for_every_permitted_uncomplete(self):
        for size in range(len(FULL_SET) + 1):
            for done in itertools.combinations(FULL_SET, size):
                seq = _sequence(*FULL_SET, completed=set(done))
                for m in seq:
                    if can_uncomplete_milestone(m, seq, DISCRETE):
                        later = [p for p in seq if p.order > m.order]
                        assert not any(is_milestone_complete(p, DISCRETE) for p in later)

    def test_toggle_picks_direction(self):
        seq = _sequence(*FULL_SET, completed={"Receive", "Erect"})
        assert can_toggle_milestone(_by_name(seq, "Erect"), seq, DISCRETE)
        assert not can_toggle_milestone(_by_name(seq, "Receive"), seq, DISCRETE)
        assert can_toggle_milestone(_by_name(seq, "Connect"), seq, DISCRETE)


# ── Button state ─────────────────────────────────────────────────────────


class TestClassifyState:
    def test_receive_complete_erect_available_test_blocked(self):
        seq = _sequence("RECEIVE", "ERECT", "TEST", completed={"RECEIVE"})
        assert classify_milestone_state(seq[0], seq, DISCRETE) is MilestoneButtonState.COMPLETE
        assert classify_milestone_state(seq[1], seq, DISCRETE) is MilestoneButtonState.AVAILABLE
        assert classify_milestone_state(seq[2], seq, DISCRETE) is MilestoneButtonState.BLOCKED

    def test_dependent_when_gate_exists_but_predecessor_open(self):
        seq = _sequence(*FIELD_WELD, completed={"Receive"})
        assert classify_milestone_state(_by_name(seq, "Weld"), seq, DISCRETE) is MilestoneButtonState.DEPENDENT

    def test_blocked_when_gate_open_but_predecessor_done(self):
        # Connect is gated on Receive, its predecessor Erect is already done
        seq = _sequence(*FULL_SET, completed={"Erect"})
        assert classify_milestone_state(_by_name(seq, "Connect"), seq, DISCRETE) is MilestoneButtonState.BLOCKED

    def test_loading_beats_everything(self):
        seq = _sequence(*FULL_SET, completed={"Receive"})
        state = classify_milestone_state(seq[0], seq, DISCRETE, is_loading=True, has_error=True)
        assert state is MilestoneButtonState.LOADING

    def test_error_beats_complete(self):
        seq = _sequence(*FULL_SET, completed={"Receive"})
        assert classify_milestone_state(seq[0], seq, DISCRETE, has_error=True) is MilestoneButtonState.ERROR

    def test_state_values_are_wire_strings(self):
        assert MilestoneButtonState.DEPENDENT.value == "dependent"


class TestBlockReason:
    def test_none_when_eligible(self):
        seq = _sequence(*FULL_SET)
        assert describe_block_reason(seq[0], seq, DISCRETE) is None

    def test_names_the_gate(self):
        seq = _sequence(*FIELD_WELD, completed={"Receive"})
        assert describe_block_reason(_by_name(seq, "Weld"), seq, DISCRETE) == "Weld requires Fit-up to be complete"

    def test_missing_gate_is_explained(self):
        seq = _sequence("Receive", "Test")
        reason = describe_block_reason(_by_name(seq, "Test"), seq, DISCRETE)
        assert "PUNCH" in reason
        assert "does not have" in reason

    def test_all_preceding(self):
        seq = _sequence(*FULL_SET)
        reason = describe_block_reason(_by_name(seq, "Punch"), seq, DISCRETE)
        assert reason == "Punch requires all previous milestones to be complete"

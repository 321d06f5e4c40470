from __future__ import annotations

import random

import pytest

from backend.domain.constraints import AllocationConfig, ValidationError
from backend.domain.models import PoolResource, WaitlistEntry, WaitlistPreferences
from backend.services.matching_service import (
    AllocationMatcher,
    build_allocation_operations,
    match_waitlist,
    sort_waitlist,
)


def _entry(entry_id: str, resource_type=None, rank=None, applied_on=None, group_id=None):
    return WaitlistEntry(
        entry_id=entry_id,
        applicant_id=f"applicant-{entry_id}",
        preferences=WaitlistPreferences(resource_type=resource_type, group_id=group_id),
        priority_rank=rank,
        applied_on=applied_on,
    )


def _bed(resource_id: str, resource_type: str, group_id: str = "R1", status: str = "vacant"):
    return PoolResource(
        resource_id=resource_id,
        group_id=group_id,
        resource_type=resource_type,
        status=status,
    )


def test_compatible_bed_is_allocated():
    result = match_waitlist([_entry("w1", "double", rank=1)], [_bed("b1", "double")])

    assert len(result.intents) == 1
    assert result.intents[0].resource_id == "b1"
    assert result.intents[0].waitlist_entry_id == "w1"
    assert result.remaining_waitlist == []


def test_incompatible_preference_stays_on_waitlist():
    result = match_waitlist([_entry("w1", "single", rank=1)], [_bed("b1", "double")])

    assert result.intents == []
    assert [entry.entry_id for entry in result.remaining_waitlist] == ["w1"]


def test_chosen_bed_is_not_offered_twice_in_one_run():
    waitlist = [_entry("w1", "double", rank=1), _entry("w2", "double", rank=2)]
    result = match_waitlist(waitlist, [_bed("b1", "double")])

    assert [intent.waitlist_entry_id for intent in result.intents] == ["w1"]
    assert [entry.entry_id for entry in result.remaining_waitlist] == ["w2"]


def test_higher_priority_wins_regardless_of_input_order():
    waitlist = [_entry("late", "double", rank=5), _entry("early", "double", rank=1)]
    result = match_waitlist(waitlist, [_bed("b1", "double")])

    assert result.intents[0].waitlist_entry_id == "early"


def test_applied_on_breaks_priority_ties():
    waitlist = [
        _entry("second", rank=1, applied_on="2024-05-02T10:00:00+00:00"),
        _entry("first", rank=1, applied_on="2024-05-01T10:00:00+00:00"),
    ]
    ordered = sort_waitlist(waitlist, missing_priority_rank=999)

    assert [entry.entry_id for entry in ordered] == ["first", "second"]


def test_full_ties_keep_input_order():
    waitlist = [_entry("a", rank=2), _entry("b", rank=2), _entry("c", rank=2)]

    assert [entry.entry_id for entry in sort_waitlist(waitlist, 999)] == ["a", "b", "c"]


def test_missing_rank_sorts_after_ranked_entries():
    waitlist = [_entry("unranked"), _entry("ranked", rank=50)]
    result = match_waitlist(waitlist, [_bed("b1", "single")])

    assert result.intents[0].waitlist_entry_id == "ranked"
    assert [entry.entry_id for entry in result.remaining_waitlist] == ["unranked"]


def test_missing_rank_sentinel_is_configurable():
    waitlist = [_entry("ranked", rank=50), _entry("unranked")]
    result = match_waitlist(waitlist, [_bed("b1", "single")], missing_priority_rank=0)

    assert result.intents[0].waitlist_entry_id == "unranked"


def test_entry_without_preference_accepts_any_type():
    result = match_waitlist([_entry("w1")], [_bed("b1", "triple")])

    assert result.intents[0].resource_id == "b1"


def test_group_preference_restricts_candidates():
    pool = [_bed("r1-b1", "double", group_id="R1"), _bed("r2-b1", "double", group_id="R2")]
    result = match_waitlist([_entry("w1", "double", rank=1, group_id="R2")], pool)

    assert result.intents[0].resource_id == "r2-b1"
    assert result.intents[0].group_id == "R2"


def test_non_vacant_beds_are_never_offered():
    pool = [
        _bed("b1", "double", status="occupied"),
        _bed("b2", "double", status="maintenance"),
        _bed("b3", "double", status="blocked"),
    ]
    result = match_waitlist([_entry("w1", "double", rank=1)], pool)

    assert result.intents == []
    assert len(result.remaining_waitlist) == 1


def test_first_fit_follows_pool_order():
    pool = [_bed("b2", "double"), _bed("b1", "double")]
    result = match_waitlist([_entry("w1", "double", rank=1)], pool)

    assert result.intents[0].resource_id == "b2"


def test_duplicate_pool_ids_are_offered_once():
    pool = [_bed("b1", "double"), _bed("b1", "double")]
    waitlist = [_entry("w1", "double", rank=1), _entry("w2", "double", rank=2)]
    result = match_waitlist(waitlist, pool)

    assert len(result.intents) == 1


def test_intents_carry_observed_versions():
    entry = WaitlistEntry(entry_id="w1", applicant_id="a1", priority_rank=1, version=3)
    bed = PoolResource(resource_id="b1", group_id="R1", resource_type="single", status="vacant", version=7)
    intent = match_waitlist([entry], [bed]).intents[0]

    assert intent.waitlist_version == 3
    assert intent.resource_version == 7


def test_randomized_runs_never_double_book():
    rng = random.Random(7)
    types = ["single", "double", "triple"]
    for _ in range(200):
        pool = [
            _bed(
                f"b{index}",
                rng.choice(types),
                group_id=f"R{index // 2}",
                status=rng.choice(["vacant", "vacant", "occupied"]),
            )
            for index in range(rng.randint(0, 12))
        ]
        waitlist = [
            _entry(
                f"w{index}",
                rng.choice(types + [None]),
                rank=rng.choice([None, rng.randint(0, 5)]),
            )
            for index in range(rng.randint(0, 12))
        ]
        result = match_waitlist(waitlist, pool)

        allocated = [intent.resource_id for intent in result.intents]
        vacant_ids = {bed.resource_id for bed in pool if bed.status == "vacant"}
        assert len(allocated) == len(set(allocated))
        assert set(allocated) <= vacant_ids
        assert len(result.intents) + len(result.remaining_waitlist) == len(waitlist)
        matched_entries = {intent.waitlist_entry_id for intent in result.intents}
        assert matched_entries.isdisjoint(entry.entry_id for entry in result.remaining_waitlist)


def test_matcher_rejects_invalid_config():
    with pytest.raises(ValidationError):
        AllocationMatcher(AllocationConfig(missing_priority_rank=-1, default_reason="auto"))


def test_matcher_uses_configured_sentinel():
    matcher = AllocationMatcher(AllocationConfig(missing_priority_rank=0, default_reason="auto"))
    result = matcher.match([_entry("ranked", rank=3), _entry("unranked")], [_bed("b1", "single")])

    assert result.intents[0].waitlist_entry_id == "unranked"


def test_allocation_operations_include_guards_and_audit():
    intent = match_waitlist([_entry("w1", "double", rank=1)], [_bed("b1", "double")]).intents[0]
    operations, allocation_ids = build_allocation_operations(
        [intent],
        actor_id="warden-1",
        reason="auto",
        timestamp="2024-05-15T09:00:00+00:00",
    )

    assert len(allocation_ids) == 1
    assert [(op.kind, op.collection) for op in operations] == [
        ("create", "allocations"),
        ("update", "resources"),
        ("update", "waitlist"),
        ("create", "audit_log"),
    ]
    allocation_op, resource_op, waitlist_op, audit_op = operations
    assert allocation_op.doc_id == allocation_ids[0]
    assert allocation_op.data["status"] == "active"
    assert resource_op.expected_version == 1
    assert resource_op.expected_fields == {"status": "vacant"}
    assert waitlist_op.data == {"fulfilled": True}
    assert audit_op.data["action"] == "auto_allot"
    assert audit_op.data["actor_id"] == "warden-1"
    assert audit_op.data["entity_id"] == allocation_ids[0]

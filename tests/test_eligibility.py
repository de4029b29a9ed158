"""
Unit tests for the reward-cycle eligibility engine

Tests:
- Quorum selection
- Classification of aborted, finalized and open proposals
- Distribution trigger thresholds
- Per-client reward breakdowns
- Engine wiring with a mocked chain reader
"""

from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from berry_indexer.config import RewardsConfig
from berry_indexer.eligibility import (
    RewardCycleEngine,
    classify,
    classify_cycle,
    estimate_breakdowns,
    evaluate_trigger,
    last_finalized_proposal_id,
    quorum_for,
    rewards_by_client,
)
from berry_indexer.types import (
    Eligibility, ProposalRewardParams, ProposalStatus as S, RPCError,
)

from factories import BASE_TIMESTAMP, create_snapshot

PERIOD = 30 * 86400


@pytest.fixture
def params():
    return ProposalRewardParams(
        minimum_reward_period=PERIOD,
        num_proposals_enough_for_reward=3,
        proposal_reward_bps=100,
        voting_reward_bps=50,
        proposal_eligibility_quorum_bps=1000,
    )


# ============================================================================
# Quorum and classification
# ============================================================================

def test_quorum_from_supply_rounds_up():
    proposal = create_snapshot(1, quorum_votes=40)
    assert quorum_for(proposal, adjusted_total_supply=395, quorum_bps=1000) == 40
    assert quorum_for(proposal, adjusted_total_supply=391, quorum_bps=1000) == 40
    assert quorum_for(proposal, adjusted_total_supply=390, quorum_bps=1000) == 39


def test_quorum_falls_back_to_stored_then_one():
    assert quorum_for(create_snapshot(1, quorum_votes=7)) == 7
    assert quorum_for(create_snapshot(1, quorum_votes=7), 500, 0) == 7
    assert quorum_for(create_snapshot(1)) == 1


@pytest.mark.parametrize("status", [S.CANCELLED, S.VETOED])
def test_aborted_proposal_is_ineligible_despite_votes(status):
    proposal = create_snapshot(1, status=status, for_votes=500)
    assert classify(proposal, quorum=10) == Eligibility.INELIGIBLE


def test_active_proposal_at_quorum_is_eligible():
    assert classify(create_snapshot(1, for_votes=10), quorum=10) == Eligibility.ELIGIBLE


def test_active_proposal_below_quorum_is_pending():
    assert classify(create_snapshot(1, for_votes=9), quorum=10) == Eligibility.PENDING


@pytest.mark.parametrize("status", [S.DEFEATED, S.SUCCEEDED, S.QUEUED, S.EXECUTED, S.EXPIRED])
def test_finalized_below_quorum_is_ineligible(status):
    assert classify(create_snapshot(1, status=status, for_votes=3), quorum=10) == Eligibility.INELIGIBLE


def test_executed_at_quorum_is_eligible():
    proposal = create_snapshot(1, status=S.EXECUTED, for_votes=12)
    assert classify(proposal, quorum=10) == Eligibility.ELIGIBLE


def test_client_attribution_requirement():
    proposal = create_snapshot(1, for_votes=50)
    assert classify(proposal, 10, require_client_attribution=True) == Eligibility.INELIGIBLE
    attributed = create_snapshot(1, for_votes=50, client_id=4)
    assert classify(attributed, 10, require_client_attribution=True) == Eligibility.ELIGIBLE


def test_classify_cycle_uses_supply_quorum(params):
    proposals = [
        create_snapshot(1, for_votes=40, quorum_votes=100),
        create_snapshot(2, for_votes=39, quorum_votes=1),
        create_snapshot(3, status=S.CANCELLED, for_votes=90),
    ]

    result = classify_cycle(proposals, params, adjusted_total_supply=400)

    assert result == {
        1: Eligibility.ELIGIBLE,
        2: Eligibility.PENDING,
        3: Eligibility.INELIGIBLE,
    }


# ============================================================================
# Distribution trigger
# ============================================================================

def _eligible(count, created):
    return [create_snapshot(i, for_votes=100, created_timestamp=created) for i in range(1, count + 1)]


def test_time_condition_boundary(params):
    last = BASE_TIMESTAMP

    early = evaluate_trigger(_eligible(1, last + PERIOD - 1), last, params, now=last)
    assert not early.time_condition_met
    assert not early.can_distribute

    on_time = evaluate_trigger(_eligible(1, last + PERIOD), last, params, now=last)
    assert on_time.time_condition_met
    assert on_time.can_distribute


def test_proposal_count_condition(params):
    trigger = evaluate_trigger(_eligible(3, BASE_TIMESTAMP + 1), BASE_TIMESTAMP, params, now=BASE_TIMESTAMP)
    assert trigger.proposal_condition_met
    assert not trigger.time_condition_met
    assert trigger.can_distribute


def test_no_eligible_proposals_never_distributes(params):
    trigger = evaluate_trigger([], BASE_TIMESTAMP - 10 * PERIOD, params, now=BASE_TIMESTAMP)
    assert trigger.eligible_count == 0
    assert trigger.last_eligible_created_at is None
    assert not trigger.can_distribute


def test_deadline_and_remaining_time(params):
    trigger = evaluate_trigger([], BASE_TIMESTAMP, params, now=BASE_TIMESTAMP + 100)
    assert trigger.deadline == BASE_TIMESTAMP + PERIOD
    assert trigger.time_remaining == PERIOD - 100

    past = evaluate_trigger([], BASE_TIMESTAMP, params, now=BASE_TIMESTAMP + PERIOD)
    assert past.time_remaining is None


# ============================================================================
# Breakdowns
# ============================================================================

def test_breakdown_orders_proposer_first_then_weight(params):
    eligible = [create_snapshot(1, for_votes=100, client_id=9)]
    weights = {1: {3: 10, 5: 40, 9: 5}}
    names = {3: "Camp", 5: "Lilnouns", 9: "Agora"}

    breakdowns = estimate_breakdowns(eligible, weights, names, 10 ** 18, params)

    entries = breakdowns[1]
    assert [e.client_id for e in entries] == [9, 5, 3]
    assert entries[0].is_proposer
    assert entries[0].estimated_proposal_reward == Decimal(10 ** 16)
    assert entries[1].estimated_proposal_reward == 0
    # 0.5% of revenue over 55 votes
    assert entries[1].estimated_vote_reward == Decimal(5 * 10 ** 15) / 55 * 40


def test_proposer_without_votes_still_listed(params):
    eligible = [create_snapshot(1, for_votes=100, client_id=2), create_snapshot(2, for_votes=100)]

    breakdowns = estimate_breakdowns(eligible, {}, {}, 10 ** 18, params)

    assert [e.client_id for e in breakdowns[1]] == [2]
    assert breakdowns[1][0].name == "Client 2"
    assert breakdowns[1][0].estimated_proposal_reward == Decimal(5 * 10 ** 15)
    assert breakdowns[2] == []


def test_rewards_by_client_aggregates(params):
    eligible = [
        create_snapshot(1, for_votes=100, client_id=1),
        create_snapshot(2, for_votes=100, client_id=2),
    ]
    weights = {1: {1: 10, 2: 10}, 2: {2: 20}}

    totals = rewards_by_client(estimate_breakdowns(eligible, weights, {}, 10 ** 18, params))

    assert [t.client_id for t in totals] == [2, 1]
    assert sum(t.reward for t in totals) == Decimal(15 * 10 ** 15)


def test_last_finalized_proposal_id():
    proposals = [
        create_snapshot(1, end_timestamp=100),
        create_snapshot(2, end_timestamp=200),
        create_snapshot(3, end_timestamp=300),
        create_snapshot(4),
    ]
    assert last_finalized_proposal_id(proposals, now=250) == 2
    assert last_finalized_proposal_id(proposals, now=50) is None


# ============================================================================
# Engine
# ============================================================================

@pytest.fixture
def reader(params):
    reader = Mock()
    reader.proposal_reward_params = AsyncMock(return_value=params)
    reader.next_proposal_id_to_reward = AsyncMock(return_value=10)
    reader.last_proposal_rewards_update = AsyncMock(return_value=BASE_TIMESTAMP)
    reader.next_proposal_reward_first_auction_id = AsyncMock(return_value=900)
    reader.auction_revenue = AsyncMock(return_value=(10 ** 18, 950))
    reader.adjusted_total_supply = AsyncMock(return_value=100)
    return reader


@pytest.fixture
def cycle_store():
    store = Mock()
    store.proposals_from = AsyncMock(return_value=[
        create_snapshot(12, for_votes=2, end_timestamp=BASE_TIMESTAMP + 500),
        create_snapshot(11, for_votes=10, client_id=1, end_timestamp=BASE_TIMESTAMP + 100),
        create_snapshot(10, status=S.CANCELLED, for_votes=60),
    ])
    store.client_vote_weights = AsyncMock(return_value={11: {1: 6, 2: 4}})
    store.client_names = AsyncMock(return_value={1: "Agora", 2: "Camp"})
    return store


async def test_engine_builds_report(cycle_store, reader):
    engine = RewardCycleEngine(cycle_store, reader, RewardsConfig())

    report = await engine.evaluate(now=BASE_TIMESTAMP + 200)

    assert report.first_unrewarded_proposal_id == 10
    assert report.classifications == {
        12: Eligibility.PENDING,
        11: Eligibility.ELIGIBLE,
        10: Eligibility.INELIGIBLE,
    }
    assert report.trigger.eligible_count == 1
    assert not report.trigger.can_distribute
    assert [e.client_id for e in report.breakdowns[11]] == [1, 2]
    assert report.last_finalized_proposal_id == 11
    cycle_store.proposals_from.assert_awaited_once_with(10)
    cycle_store.client_vote_weights.assert_awaited_once_with([11])
    reader.auction_revenue.assert_awaited_once_with(900, BASE_TIMESTAMP + 200)

    summary = report.to_dict()
    assert summary['eligible'] == 1
    assert summary['revenue_wei'] == str(10 ** 18)


async def test_engine_falls_back_when_supply_unavailable(cycle_store, reader):
    reader.adjusted_total_supply = AsyncMock(side_effect=RPCError("timeout"))
    engine = RewardCycleEngine(cycle_store, reader)

    report = await engine.evaluate(now=BASE_TIMESTAMP + 200)

    # Stored quorum_votes is unset, so the quorum falls back to one vote
    assert report.classifications[12] == Eligibility.ELIGIBLE


async def test_engine_propagates_parameter_failure(cycle_store, reader):
    reader.proposal_reward_params = AsyncMock(side_effect=RPCError("down"))
    engine = RewardCycleEngine(cycle_store, reader)

    with pytest.raises(RPCError):
        await engine.evaluate()

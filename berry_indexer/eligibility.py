"""
Reward-Cycle Eligibility Engine

Classifies the proposals of the current reward cycle, evaluates whether a
distribution may be triggered, and estimates each client's share of the
pending revenue.

The classification functions are pure; RewardCycleEngine wires them to the
chain reader and the entity store.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .config import RewardsConfig
from .metrics_server import MetricsServer
from .proposal_lifecycle import ABORT_STATES, FINALIZED_STATES
from .types import (
    BreakdownEntry, ClientRewardTotal, CycleReport, DistributionTrigger,
    Eligibility, ProposalRewardParams, ProposalSnapshot, RPCError,
)

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


def quorum_for(
    proposal: ProposalSnapshot,
    adjusted_total_supply: Optional[int] = None,
    quorum_bps: Optional[int] = None
) -> int:
    """
    For-votes a proposal needs to be eligible.

    Uses ceil(adjusted_total_supply * bps / 10000) when both are known,
    otherwise the proposal's own quorum_votes, otherwise 1.
    """
    if adjusted_total_supply is not None and quorum_bps:
        return -(-adjusted_total_supply * quorum_bps // BPS_DENOMINATOR)
    if proposal.quorum_votes:
        return proposal.quorum_votes
    return 1


def classify(
    proposal: ProposalSnapshot,
    quorum: int,
    require_client_attribution: bool = False
) -> Eligibility:
    if proposal.status in ABORT_STATES:
        return Eligibility.INELIGIBLE
    if require_client_attribution and proposal.client_id is None:
        return Eligibility.INELIGIBLE
    # Quorum reached counts even while voting is still open
    if proposal.for_votes >= quorum:
        return Eligibility.ELIGIBLE
    if proposal.status in FINALIZED_STATES:
        return Eligibility.INELIGIBLE
    return Eligibility.PENDING


def classify_cycle(
    proposals: Iterable[ProposalSnapshot],
    params: ProposalRewardParams,
    adjusted_total_supply: Optional[int] = None,
    require_client_attribution: bool = False
) -> Dict[int, Eligibility]:
    """Classify every proposal; keys are proposal ids"""
    return {
        proposal.id: classify(
            proposal,
            quorum_for(proposal, adjusted_total_supply, params.proposal_eligibility_quorum_bps),
            require_client_attribution
        )
        for proposal in proposals
    }


def evaluate_trigger(
    eligible: Sequence[ProposalSnapshot],
    last_update_timestamp: int,
    params: ProposalRewardParams,
    now: Optional[int] = None
) -> DistributionTrigger:
    """
    Decide whether a proposal reward distribution may be triggered.

    The time condition compares the creation time of the newest eligible
    proposal, not the wall clock, against the last distribution.
    """
    now = now if now is not None else int(time.time())
    eligible_count = len(eligible)
    period = params.minimum_reward_period

    created = [p.created_timestamp for p in eligible if p.created_timestamp is not None]
    last_eligible_created_at = max(created) if created else None

    proposal_condition_met = eligible_count >= params.num_proposals_enough_for_reward
    time_condition_met = (
        last_eligible_created_at is not None
        and last_eligible_created_at - last_update_timestamp >= period
    )

    deadline = last_update_timestamp + period
    return DistributionTrigger(
        eligible_count=eligible_count,
        minimum_reward_period=period,
        num_proposals_enough_for_reward=params.num_proposals_enough_for_reward,
        last_update_timestamp=last_update_timestamp,
        last_eligible_created_at=last_eligible_created_at,
        proposal_condition_met=proposal_condition_met,
        time_condition_met=time_condition_met,
        can_distribute=eligible_count > 0 and (proposal_condition_met or time_condition_met),
        deadline=deadline,
        time_remaining=None if now >= deadline else deadline - now
    )


def _client_name(client_id: int, names: Mapping[int, str]) -> str:
    return names.get(client_id) or f"Client {client_id}"


def estimate_breakdowns(
    eligible: Sequence[ProposalSnapshot],
    vote_weights: Mapping[int, Mapping[int, int]],
    client_names: Mapping[int, str],
    revenue_wei: int,
    params: ProposalRewardParams
) -> Dict[int, List[BreakdownEntry]]:
    """
    Per eligible proposal, the clients that earn from it.

    Args:
        eligible: Eligible proposals of the cycle
        vote_weights: proposal id -> client id -> summed vote weight
        client_names: client id -> display name
        revenue_wei: Auction revenue accrued since the last distribution
        params: Reward basis points

    Returns:
        proposal id -> entries, proposer first then by vote weight descending
    """
    if not eligible:
        return {}

    revenue = Decimal(revenue_wei)
    proposal_pool = revenue * params.proposal_reward_bps / BPS_DENOMINATOR
    vote_pool = revenue * params.voting_reward_bps / BPS_DENOMINATOR

    reward_per_proposal = proposal_pool / len(eligible)
    total_weight = sum(
        sum(vote_weights.get(p.id, {}).values()) for p in eligible
    )
    reward_per_vote = vote_pool / total_weight if total_weight else Decimal("0")

    breakdowns: Dict[int, List[BreakdownEntry]] = {}
    for proposal in eligible:
        entries: Dict[int, BreakdownEntry] = {}
        for client_id, weight in vote_weights.get(proposal.id, {}).items():
            is_proposer = client_id == proposal.client_id
            entries[client_id] = BreakdownEntry(
                client_id=client_id,
                name=_client_name(client_id, client_names),
                vote_weight=weight,
                is_proposer=is_proposer,
                estimated_proposal_reward=reward_per_proposal if is_proposer else Decimal("0"),
                estimated_vote_reward=reward_per_vote * weight
            )

        if proposal.client_id is not None and proposal.client_id not in entries:
            entries[proposal.client_id] = BreakdownEntry(
                client_id=proposal.client_id,
                name=_client_name(proposal.client_id, client_names),
                vote_weight=0,
                is_proposer=True,
                estimated_proposal_reward=reward_per_proposal
            )

        breakdowns[proposal.id] = sorted(
            entries.values(),
            key=lambda e: (not e.is_proposer, -e.vote_weight, e.client_id)
        )

    return breakdowns


def rewards_by_client(breakdowns: Mapping[int, Sequence[BreakdownEntry]]) -> List[ClientRewardTotal]:
    """Total estimated reward per client across the cycle, largest first"""
    totals: Dict[int, ClientRewardTotal] = {}
    for entries in breakdowns.values():
        for entry in entries:
            total = totals.get(entry.client_id)
            if total is None:
                totals[entry.client_id] = ClientRewardTotal(
                    client_id=entry.client_id, name=entry.name, reward=entry.total
                )
            else:
                total.reward += entry.total
    return sorted(totals.values(), key=lambda t: (-t.reward, t.client_id))


def last_finalized_proposal_id(proposals: Iterable[ProposalSnapshot], now: int) -> Optional[int]:
    """Highest id whose voting period has ended"""
    ended = [
        p.id for p in proposals
        if p.end_timestamp is not None and p.end_timestamp <= now
    ]
    return max(ended) if ended else None


class RewardCycleEngine:
    """
    Evaluates the current proposal reward cycle.

    Args:
        store: EntityStore providing proposals_from, client_vote_weights and client_names
        reader: ClientRewardsReader (or any object with the same coroutines)
        config: Reward evaluation settings
    """

    def __init__(self, store, reader, config: Optional[RewardsConfig] = None):
        self.store = store
        self.reader = reader
        self.config = config or RewardsConfig()

    async def evaluate(self, now: Optional[int] = None) -> CycleReport:
        """
        Build a CycleReport from chain parameters and stored proposals.

        Raises:
            RPCError: the cycle parameters could not be read
        """
        now = now if now is not None else int(time.time())

        params = await self.reader.proposal_reward_params()
        first_id = await self.reader.next_proposal_id_to_reward()
        last_update = await self.reader.last_proposal_rewards_update()
        first_auction_id = await self.reader.next_proposal_reward_first_auction_id()
        revenue_wei, _ = await self.reader.auction_revenue(first_auction_id, now)

        try:
            adjusted_total_supply = await self.reader.adjusted_total_supply()
        except RPCError as e:
            logger.warning(f"adjustedTotalSupply unavailable, using stored quorum votes: {e}")
            adjusted_total_supply = None

        proposals = await self.store.proposals_from(first_id)
        classifications = classify_cycle(
            proposals,
            params,
            adjusted_total_supply,
            self.config.require_client_attribution
        )
        eligible = [p for p in proposals if classifications[p.id] == Eligibility.ELIGIBLE]

        trigger = evaluate_trigger(eligible, last_update, params, now)

        vote_weights = await self.store.client_vote_weights([p.id for p in eligible])
        names = await self.store.client_names()
        breakdowns = estimate_breakdowns(eligible, vote_weights, names, revenue_wei, params)

        MetricsServer.update_eligible_proposals(len(eligible))

        report = CycleReport(
            generated_at=datetime.fromtimestamp(now, tz=timezone.utc),
            first_unrewarded_proposal_id=first_id,
            classifications=classifications,
            trigger=trigger,
            revenue_wei=revenue_wei,
            breakdowns=breakdowns,
            rewards_by_client=rewards_by_client(breakdowns),
            last_finalized_proposal_id=last_finalized_proposal_id(proposals, now)
        )

        logger.info(
            f"Reward cycle from proposal {first_id}: "
            f"{report.count(Eligibility.ELIGIBLE)} eligible, "
            f"{report.count(Eligibility.PENDING)} pending, "
            f"{report.count(Eligibility.INELIGIBLE)} ineligible, "
            f"can_distribute={trigger.can_distribute}"
        )
        return report

"""
Core Data Models and Types

Defines the enums, error hierarchy and value objects shared across the indexer.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, validator
from dataclasses import dataclass, field


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ============================================================================
# Enums
# ============================================================================

class ProposalStatus(str, Enum):
    """Governance proposal lifecycle status"""
    PENDING = "PENDING"
    UPDATABLE = "UPDATABLE"                # Sub-state of PENDING, content edits allowed
    ACTIVE = "ACTIVE"
    OBJECTION_PERIOD = "OBJECTION_PERIOD"
    SUCCEEDED = "SUCCEEDED"
    DEFEATED = "DEFEATED"
    QUEUED = "QUEUED"
    EXECUTED = "EXECUTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    VETOED = "VETOED"


class VoteSupport(int, Enum):
    """Vote direction as emitted by the DAO"""
    AGAINST = 0
    FOR = 1
    ABSTAIN = 2


class Eligibility(str, Enum):
    """Reward-cycle eligibility class of a proposal"""
    ELIGIBLE = "eligible"
    PENDING = "pending"
    INELIGIBLE = "ineligible"


class RewardUpdateType(str, Enum):
    """Kind of client-reward distribution"""
    AUCTION = "AUCTION"
    PROPOSAL = "PROPOSAL"


# ============================================================================
# Error Types
# ============================================================================

class IndexerError(Exception):
    """Base exception for all indexer errors"""
    pass


class ConfigurationError(IndexerError):
    """Configuration validation or loading error"""
    pass


class DatabaseError(IndexerError):
    """Database connection or query error"""
    pass


class EventDecodeError(IndexerError):
    """Raw event could not be decoded into a known variant"""
    pass


class ReconciliationError(IndexerError):
    """A required write for one event failed"""

    def __init__(self, message: str, event_type: Optional[str] = None,
                 event_id: Optional[str] = None):
        super().__init__(message)
        self.event_type = event_type
        self.event_id = event_id


class IdentityLookupError(IndexerError):
    """Identity service returned an error or could not be reached"""
    pass


class RenderError(IndexerError):
    """Artwork rendering failed"""
    pass


class RPCError(IndexerError):
    """RPC provider connection or response error"""
    pass


# ============================================================================
# Core Data Models
# ============================================================================

class NounSeed(BaseModel):
    """Trait seed assigned to a Noun at mint"""
    background: int = Field(default=0, ge=0)
    body: int = Field(default=0, ge=0)
    accessory: int = Field(default=0, ge=0)
    head: int = Field(default=0, ge=0)
    glasses: int = Field(default=0, ge=0)

    def as_tuple(self):
        return (self.background, self.body, self.accessory, self.head, self.glasses)

    def is_placeholder(self) -> bool:
        return not any(self.as_tuple())


class NounMetrics(BaseModel):
    """Derived trait metrics of a Noun"""
    area: int = Field(default=0, description="Non-transparent pixel count")
    color_count: int = Field(default=0, description="Distinct non-transparent colors")
    brightness: int = Field(default=128, description="Average luma 0-255")


class Identity(BaseModel):
    """Resolved display identity of an address"""
    name: Optional[str] = None
    avatar: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.name is None and self.avatar is None


class ProposalRewardParams(BaseModel):
    """On-chain economic parameters of the proposal reward cycle"""
    minimum_reward_period: int = Field(..., description="Seconds between distributions")
    num_proposals_enough_for_reward: int = Field(..., description="Eligible count that triggers a distribution")
    proposal_reward_bps: int = Field(default=0)
    voting_reward_bps: int = Field(default=0)
    proposal_eligibility_quorum_bps: int = Field(default=0)

    @validator('proposal_reward_bps', 'voting_reward_bps', 'proposal_eligibility_quorum_bps')
    def validate_bps(cls, v):
        """Basis points must be within 0..10000"""
        if v < 0 or v > 10000:
            raise ValueError(f"Basis points out of range: {v}")
        return v


class ProposalSnapshot(BaseModel):
    """Read-only view of a stored proposal used by the eligibility engine"""
    id: int
    status: ProposalStatus
    for_votes: int = 0
    against_votes: int = 0
    abstain_votes: int = 0
    quorum_votes: Optional[int] = None
    client_id: Optional[int] = None
    created_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    title: Optional[str] = None

    class Config:
        use_enum_values = False


# ============================================================================
# Reward Cycle Results
# ============================================================================

@dataclass
class BreakdownEntry:
    """One client's estimated reward on one proposal"""
    client_id: int
    name: str
    vote_weight: int
    is_proposer: bool
    estimated_proposal_reward: Decimal = Decimal("0")
    estimated_vote_reward: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.estimated_proposal_reward + self.estimated_vote_reward


@dataclass
class ClientRewardTotal:
    """Aggregate estimated reward of a client across the cycle"""
    client_id: int
    name: str
    reward: Decimal


@dataclass
class DistributionTrigger:
    """Evaluation of the distribution trigger condition"""
    eligible_count: int
    minimum_reward_period: int
    num_proposals_enough_for_reward: int
    last_update_timestamp: int
    last_eligible_created_at: Optional[int]
    proposal_condition_met: bool
    time_condition_met: bool
    can_distribute: bool
    deadline: int
    time_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'eligible_count': self.eligible_count,
            'minimum_reward_period': self.minimum_reward_period,
            'num_proposals_enough_for_reward': self.num_proposals_enough_for_reward,
            'last_update_timestamp': self.last_update_timestamp,
            'last_eligible_created_at': self.last_eligible_created_at,
            'proposal_condition_met': self.proposal_condition_met,
            'time_condition_met': self.time_condition_met,
            'can_distribute': self.can_distribute,
            'deadline': self.deadline,
            'time_remaining': self.time_remaining,
        }


@dataclass
class CycleReport:
    """Full reward-cycle evaluation"""
    generated_at: datetime
    first_unrewarded_proposal_id: int
    classifications: Dict[int, Eligibility]
    trigger: DistributionTrigger
    revenue_wei: int
    breakdowns: Dict[int, List[BreakdownEntry]] = field(default_factory=dict)
    rewards_by_client: List[ClientRewardTotal] = field(default_factory=list)
    last_finalized_proposal_id: Optional[int] = None

    def count(self, eligibility: Eligibility) -> int:
        return sum(1 for e in self.classifications.values() if e == eligibility)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'generated_at': self.generated_at.isoformat(),
            'first_unrewarded_proposal_id': self.first_unrewarded_proposal_id,
            'eligible': self.count(Eligibility.ELIGIBLE),
            'pending': self.count(Eligibility.PENDING),
            'ineligible': self.count(Eligibility.INELIGIBLE),
            'trigger': self.trigger.to_dict(),
            'revenue_wei': str(self.revenue_wei),
            'rewards_by_client': [
                {'client_id': r.client_id, 'name': r.name, 'reward_wei': str(r.reward)}
                for r in self.rewards_by_client
            ],
            'last_finalized_proposal_id': self.last_finalized_proposal_id,
        }

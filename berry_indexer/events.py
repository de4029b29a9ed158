"""
Event Variants

Closed set of decoded Nouns events. Each variant is a pydantic model tagged by
an EventType; ``decode_event`` turns a raw feed record into exactly one variant
or raises EventDecodeError.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Type
from pydantic import BaseModel, Field, validator, ValidationError

from .types import NounSeed, ProposalStatus, VoteSupport, EventDecodeError


class EventType(str, Enum):
    """Every event variant the reconciler handles"""
    # NounsToken
    NOUN_CREATED = "NounCreated"
    NOUN_BURNED = "NounBurned"
    TRANSFER = "Transfer"
    DELEGATE_CHANGED = "DelegateChanged"
    DELEGATE_VOTES_CHANGED = "DelegateVotesChanged"

    # NounsAuctionHouse
    AUCTION_CREATED = "AuctionCreated"
    AUCTION_BID = "AuctionBid"
    AUCTION_BID_WITH_CLIENT_ID = "AuctionBidWithClientId"
    AUCTION_EXTENDED = "AuctionExtended"
    AUCTION_SETTLED = "AuctionSettled"
    AUCTION_SETTLED_WITH_CLIENT_ID = "AuctionSettledWithClientId"

    # NounsDAO
    PROPOSAL_CREATED = "ProposalCreated"
    PROPOSAL_CREATED_WITH_REQUIREMENTS = "ProposalCreatedWithRequirements"
    PROPOSAL_UPDATED = "ProposalUpdated"
    PROPOSAL_DESCRIPTION_UPDATED = "ProposalDescriptionUpdated"
    PROPOSAL_TRANSACTIONS_UPDATED = "ProposalTransactionsUpdated"
    PROPOSAL_CANCELED = "ProposalCanceled"
    PROPOSAL_QUEUED = "ProposalQueued"
    PROPOSAL_EXECUTED = "ProposalExecuted"
    PROPOSAL_VETOED = "ProposalVetoed"
    PROPOSAL_OBJECTION_PERIOD_SET = "ProposalObjectionPeriodSet"
    VOTE_CAST = "VoteCast"
    VOTE_CAST_WITH_CLIENT_ID = "VoteCastWithClientId"

    # ClientRewards
    CLIENT_REGISTERED = "ClientRegistered"
    CLIENT_UPDATED = "ClientUpdated"
    CLIENT_APPROVAL_SET = "ClientApprovalSet"
    CLIENT_REWARDED = "ClientRewarded"
    CLIENT_BALANCE_WITHDRAWAL = "ClientBalanceWithdrawal"
    AUCTION_REWARDS_UPDATED = "AuctionRewardsUpdated"
    PROPOSAL_REWARDS_UPDATED = "ProposalRewardsUpdated"

    # Any contract
    CONFIG_CHANGED = "ConfigChanged"

    # Produced by ProposalStatePoller
    PROPOSAL_STATE_OBSERVED = "ProposalStateObserved"


# Configuration events recorded verbatim in the config_changes audit table
CONFIG_EVENT_NAMES: Dict[str, frozenset] = {
    "NounsToken": frozenset({
        "DescriptorUpdated", "DescriptorLocked", "MinterUpdated", "MinterLocked",
        "NoundersDAOUpdated", "SeederUpdated", "SeederLocked", "OwnershipTransferred",
    }),
    "NounsAuctionHouse": frozenset({
        "AuctionReservePriceUpdated", "AuctionMinBidIncrementPercentageUpdated",
        "AuctionTimeBufferUpdated", "SanctionsOracleSet", "Paused", "Unpaused",
        "OwnershipTransferred",
    }),
    "NounsDAO": frozenset({
        "NewAdmin", "NewPendingAdmin", "NewVetoer", "NewPendingVetoer",
        "VotingDelaySet", "VotingPeriodSet", "ProposalThresholdBPSSet",
        "MinQuorumVotesBPSSet", "MaxQuorumVotesBPSSet", "QuorumCoefficientSet",
        "QuorumVotesBPSSet", "LastMinuteWindowSet", "ObjectionPeriodDurationSet",
        "ProposalUpdatablePeriodSet", "TimelocksAndAdminSet",
    }),
    "NounsDescriptorV3": frozenset({
        "ArtUpdated", "BaseURIUpdated", "DataURIToggled", "PartsLocked",
        "RendererUpdated", "OwnershipTransferred",
    }),
    "ClientRewards": frozenset({
        "AuctionRewardsEnabled", "AuctionRewardsDisabled", "ProposalRewardsEnabled",
        "ProposalRewardsDisabled", "Paused", "Unpaused", "OwnershipTransferred",
        "AdminChanged", "Upgraded",
    }),
}


def _lower(v):
    return v.lower() if isinstance(v, str) else v


# ============================================================================
# Base Event
# ============================================================================

class ChainEvent(BaseModel):
    """Fields shared by every decoded log event"""
    event_type: EventType
    transaction_hash: str = Field(..., alias="transactionHash")
    log_index: int = Field(..., alias="logIndex", ge=0)
    block_number: int = Field(..., alias="blockNumber", ge=0)
    block_timestamp: int = Field(..., alias="blockTimestamp", ge=0)
    transaction_from: Optional[str] = Field(default=None, alias="transactionFrom")

    @validator('transaction_hash')
    def validate_tx_hash(cls, v):
        if not v.startswith('0x') or len(v) != 66:
            raise ValueError(f"Invalid transaction hash: {v}")
        return v.lower()

    @validator('transaction_from')
    def normalize_sender(cls, v):
        return _lower(v)

    @property
    def event_id(self) -> str:
        """Deterministic key of the log: "{tx_hash}-{log_index}" """
        return f"{self.transaction_hash}-{self.log_index}"

    @property
    def ordinal(self) -> int:
        """Position of the log in chain order"""
        return self.block_number * 100000 + self.log_index

    class Config:
        allow_population_by_field_name = True
        use_enum_values = False


class _AddressArgs(ChainEvent):
    """Lower-cases every field listed in ``_address_fields``"""
    _address_fields: tuple = ()

    @validator('*', pre=True)
    def lower_addresses(cls, v, field):
        if field.name in cls._address_fields:
            if isinstance(v, list):
                return [_lower(x) for x in v]
            return _lower(v)
        return v


# ============================================================================
# NounsToken
# ============================================================================

class NounCreated(ChainEvent):
    event_type: EventType = EventType.NOUN_CREATED
    token_id: int = Field(..., alias="tokenId")
    seed: NounSeed


class NounBurned(ChainEvent):
    event_type: EventType = EventType.NOUN_BURNED
    token_id: int = Field(..., alias="tokenId")


class Transfer(_AddressArgs):
    _address_fields = ('from_address', 'to_address')
    event_type: EventType = EventType.TRANSFER
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    token_id: int = Field(..., alias="tokenId")


class DelegateChanged(_AddressArgs):
    _address_fields = ('delegator', 'from_delegate', 'to_delegate')
    event_type: EventType = EventType.DELEGATE_CHANGED
    delegator: str
    from_delegate: str = Field(..., alias="fromDelegate")
    to_delegate: str = Field(..., alias="toDelegate")


class DelegateVotesChanged(_AddressArgs):
    _address_fields = ('delegate',)
    event_type: EventType = EventType.DELEGATE_VOTES_CHANGED
    delegate: str
    previous_balance: int = Field(..., alias="previousBalance")
    new_balance: int = Field(..., alias="newBalance")


# ============================================================================
# NounsAuctionHouse
# ============================================================================

class AuctionCreated(ChainEvent):
    event_type: EventType = EventType.AUCTION_CREATED
    noun_id: int = Field(..., alias="nounId")
    start_time: int = Field(..., alias="startTime")
    end_time: int = Field(..., alias="endTime")


class AuctionBid(_AddressArgs):
    _address_fields = ('sender',)
    event_type: EventType = EventType.AUCTION_BID
    noun_id: int = Field(..., alias="nounId")
    sender: str
    value: int
    extended: bool = False


class AuctionBidWithClientId(ChainEvent):
    event_type: EventType = EventType.AUCTION_BID_WITH_CLIENT_ID
    noun_id: int = Field(..., alias="nounId")
    value: int
    client_id: int = Field(..., alias="clientId")


class AuctionExtended(ChainEvent):
    event_type: EventType = EventType.AUCTION_EXTENDED
    noun_id: int = Field(..., alias="nounId")
    end_time: int = Field(..., alias="endTime")


class AuctionSettled(_AddressArgs):
    _address_fields = ('winner',)
    event_type: EventType = EventType.AUCTION_SETTLED
    noun_id: int = Field(..., alias="nounId")
    winner: str
    amount: int


class AuctionSettledWithClientId(ChainEvent):
    event_type: EventType = EventType.AUCTION_SETTLED_WITH_CLIENT_ID
    noun_id: int = Field(..., alias="nounId")
    client_id: int = Field(..., alias="clientId")


# ============================================================================
# NounsDAO
# ============================================================================

class ProposalCreated(_AddressArgs):
    _address_fields = ('proposer',)
    event_type: EventType = EventType.PROPOSAL_CREATED
    id: int
    proposer: str
    targets: List[str] = Field(default_factory=list)
    call_values: List[int] = Field(default_factory=list, alias="values")
    signatures: List[str] = Field(default_factory=list)
    calldatas: List[str] = Field(default_factory=list)
    start_block: int = Field(..., alias="startBlock")
    end_block: int = Field(..., alias="endBlock")
    description: str = ""


class ProposalCreatedWithRequirements(_AddressArgs):
    _address_fields = ('signers',)
    event_type: EventType = EventType.PROPOSAL_CREATED_WITH_REQUIREMENTS
    id: int
    signers: List[str] = Field(default_factory=list)
    update_period_end_block: Optional[int] = Field(default=None, alias="updatePeriodEndBlock")
    proposal_threshold: int = Field(..., alias="proposalThreshold")
    quorum_votes: int = Field(..., alias="quorumVotes")
    client_id: Optional[int] = Field(default=None, alias="clientId")


class ProposalUpdated(_AddressArgs):
    _address_fields = ('proposer',)
    event_type: EventType = EventType.PROPOSAL_UPDATED
    id: int
    proposer: str
    targets: List[str] = Field(default_factory=list)
    call_values: List[int] = Field(default_factory=list, alias="values")
    signatures: List[str] = Field(default_factory=list)
    calldatas: List[str] = Field(default_factory=list)
    description: str = ""
    update_message: str = Field(default="", alias="updateMessage")


class ProposalDescriptionUpdated(_AddressArgs):
    _address_fields = ('proposer',)
    event_type: EventType = EventType.PROPOSAL_DESCRIPTION_UPDATED
    id: int
    proposer: str
    description: str = ""
    update_message: str = Field(default="", alias="updateMessage")


class ProposalTransactionsUpdated(_AddressArgs):
    _address_fields = ('proposer',)
    event_type: EventType = EventType.PROPOSAL_TRANSACTIONS_UPDATED
    id: int
    proposer: str
    targets: List[str] = Field(default_factory=list)
    call_values: List[int] = Field(default_factory=list, alias="values")
    signatures: List[str] = Field(default_factory=list)
    calldatas: List[str] = Field(default_factory=list)
    update_message: str = Field(default="", alias="updateMessage")


class ProposalCanceled(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_CANCELED
    id: int


class ProposalQueued(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_QUEUED
    id: int
    eta: int


class ProposalExecuted(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_EXECUTED
    id: int


class ProposalVetoed(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_VETOED
    id: int


class ProposalObjectionPeriodSet(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_OBJECTION_PERIOD_SET
    id: int
    objection_period_end_block: int = Field(..., alias="objectionPeriodEndBlock")


class VoteCast(_AddressArgs):
    _address_fields = ('voter',)
    event_type: EventType = EventType.VOTE_CAST
    voter: str
    proposal_id: int = Field(..., alias="proposalId")
    support: VoteSupport
    votes: int = Field(..., ge=0)
    reason: str = ""


class VoteCastWithClientId(_AddressArgs):
    _address_fields = ('voter',)
    event_type: EventType = EventType.VOTE_CAST_WITH_CLIENT_ID
    voter: str
    proposal_id: int = Field(..., alias="proposalId")
    client_id: int = Field(..., alias="clientId")


# ============================================================================
# ClientRewards
# ============================================================================

class ClientRegistered(ChainEvent):
    event_type: EventType = EventType.CLIENT_REGISTERED
    client_id: int = Field(..., alias="clientId")
    name: str = ""
    description: str = ""


class ClientUpdated(ChainEvent):
    event_type: EventType = EventType.CLIENT_UPDATED
    client_id: int = Field(..., alias="clientId")
    name: str = ""
    description: str = ""


class ClientApprovalSet(ChainEvent):
    event_type: EventType = EventType.CLIENT_APPROVAL_SET
    client_id: int = Field(..., alias="clientId")
    approved: bool


class ClientRewarded(ChainEvent):
    event_type: EventType = EventType.CLIENT_REWARDED
    client_id: int = Field(..., alias="clientId")
    amount: int = Field(..., ge=0)


class ClientBalanceWithdrawal(_AddressArgs):
    _address_fields = ('to',)
    event_type: EventType = EventType.CLIENT_BALANCE_WITHDRAWAL
    client_id: int = Field(..., alias="clientId")
    amount: int = Field(..., ge=0)
    to: str


class AuctionRewardsUpdated(ChainEvent):
    event_type: EventType = EventType.AUCTION_REWARDS_UPDATED
    first_auction_id: int = Field(..., alias="firstAuctionId")
    last_auction_id: int = Field(..., alias="lastAuctionId")


class ProposalRewardsUpdated(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_REWARDS_UPDATED
    first_proposal_id: int = Field(..., alias="firstProposalId")
    last_proposal_id: int = Field(..., alias="lastProposalId")
    first_auction_id_for_revenue: int = Field(default=0, alias="firstAuctionIdForRevenue")
    last_auction_id: int = Field(default=0, alias="lastAuctionId")
    auction_revenue: int = Field(default=0, alias="auctionRevenue")
    reward_per_proposal: int = Field(default=0, alias="rewardPerProposal")
    reward_per_vote: int = Field(default=0, alias="rewardPerVote")


# ============================================================================
# Generic and Synthetic
# ============================================================================

class ConfigChanged(ChainEvent):
    event_type: EventType = EventType.CONFIG_CHANGED
    contract: str
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ProposalStateObserved(ChainEvent):
    event_type: EventType = EventType.PROPOSAL_STATE_OBSERVED
    proposal_id: int = Field(..., alias="proposalId")
    state: ProposalStatus


EVENT_TYPES: Dict[EventType, Type[ChainEvent]] = {
    EventType.NOUN_CREATED: NounCreated,
    EventType.NOUN_BURNED: NounBurned,
    EventType.TRANSFER: Transfer,
    EventType.DELEGATE_CHANGED: DelegateChanged,
    EventType.DELEGATE_VOTES_CHANGED: DelegateVotesChanged,
    EventType.AUCTION_CREATED: AuctionCreated,
    EventType.AUCTION_BID: AuctionBid,
    EventType.AUCTION_BID_WITH_CLIENT_ID: AuctionBidWithClientId,
    EventType.AUCTION_EXTENDED: AuctionExtended,
    EventType.AUCTION_SETTLED: AuctionSettled,
    EventType.AUCTION_SETTLED_WITH_CLIENT_ID: AuctionSettledWithClientId,
    EventType.PROPOSAL_CREATED: ProposalCreated,
    EventType.PROPOSAL_CREATED_WITH_REQUIREMENTS: ProposalCreatedWithRequirements,
    EventType.PROPOSAL_UPDATED: ProposalUpdated,
    EventType.PROPOSAL_DESCRIPTION_UPDATED: ProposalDescriptionUpdated,
    EventType.PROPOSAL_TRANSACTIONS_UPDATED: ProposalTransactionsUpdated,
    EventType.PROPOSAL_CANCELED: ProposalCanceled,
    EventType.PROPOSAL_QUEUED: ProposalQueued,
    EventType.PROPOSAL_EXECUTED: ProposalExecuted,
    EventType.PROPOSAL_VETOED: ProposalVetoed,
    EventType.PROPOSAL_OBJECTION_PERIOD_SET: ProposalObjectionPeriodSet,
    EventType.VOTE_CAST: VoteCast,
    EventType.VOTE_CAST_WITH_CLIENT_ID: VoteCastWithClientId,
    EventType.CLIENT_REGISTERED: ClientRegistered,
    EventType.CLIENT_UPDATED: ClientUpdated,
    EventType.CLIENT_APPROVAL_SET: ClientApprovalSet,
    EventType.CLIENT_REWARDED: ClientRewarded,
    EventType.CLIENT_BALANCE_WITHDRAWAL: ClientBalanceWithdrawal,
    EventType.AUCTION_REWARDS_UPDATED: AuctionRewardsUpdated,
    EventType.PROPOSAL_REWARDS_UPDATED: ProposalRewardsUpdated,
    EventType.CONFIG_CHANGED: ConfigChanged,
    EventType.PROPOSAL_STATE_OBSERVED: ProposalStateObserved,
}


_META_KEYS = (
    "transactionHash", "logIndex", "blockNumber", "blockTimestamp", "transactionFrom",
)


def decode_event(raw: Dict[str, Any]) -> ChainEvent:
    """
    Decode one raw feed record into its event variant.

    The record carries ``event`` (and optionally ``contract``), ``args`` and the
    log metadata keys ``transactionHash``, ``logIndex``, ``blockNumber``,
    ``blockTimestamp`` and ``transactionFrom``.

    Raises:
        EventDecodeError: unknown event name or invalid arguments
    """
    if not isinstance(raw, dict):
        raise EventDecodeError(f"Event record must be an object, got {type(raw).__name__}")

    name = raw.get("event")
    contract = raw.get("contract")
    args = raw.get("args") or {}
    if not isinstance(args, dict):
        raise EventDecodeError(f"Arguments of {name} must be an object")

    meta = {key: raw[key] for key in _META_KEYS if key in raw}

    if contract and name in CONFIG_EVENT_NAMES.get(contract, ()):
        cls: Type[ChainEvent] = ConfigChanged
        payload = {**meta, "contract": contract, "name": name, "params": args}
    else:
        try:
            event_type = EventType(name)
        except ValueError:
            raise EventDecodeError(f"Unknown event: {contract}:{name}")
        cls = EVENT_TYPES[event_type]
        payload = {**meta, **args}

    try:
        return cls(**payload)
    except ValidationError as e:
        raise EventDecodeError(f"Invalid {name} event: {e}") from e

"""
Event-to-Entity Reconciler

Maps each decoded event to idempotent upserts against the EntityStore.

Per-entity write rules:
- Noun: mint transfers insert a zero-seed placeholder if absent; NounCreated
  merges seed, metrics and artwork by token id. Owner only moves forward in
  chain order (owner_ordinal).
- Auction: every auction event merges its own fields by noun id, so any
  arrival order converges. Settlement also patches the Noun best-effort.
- AuctionBid: one row per (transaction, noun); the bid and its client-id event
  each merge their own fields.
- Proposal: status, tally and content events create a placeholder if the
  proposal is unknown. ProposalCreated never overwrites status or tallies.
  Status changes follow proposal_lifecycle and are guarded in the UPDATE.
- Vote: the VoteCast row is unique per (proposal, voter); the tally and voter
  aggregate are incremented only when this event inserted or filled the row,
  in the same transaction as that write.
- Client: ledgers are insert-if-absent by log id; totals are incremented in the
  same transaction, only when the ledger row was new.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .artwork import TraitMetricsCalculator
from .database import (
    EntityStore, NounModel, AuctionModel, AuctionBidModel, TransferModel,
    DelegationModel, VoterModel, ProposalModel, ProposalVersionModel, VoteModel,
    ClientModel, ClientRewardEventModel, ClientWithdrawalModel, RewardUpdateModel,
    ConfigChangeModel,
)
from .descriptor_resolver import DescriptorResolver
from .events import (
    EventType, ChainEvent, NounCreated, NounBurned, Transfer, DelegateChanged,
    DelegateVotesChanged, AuctionCreated, AuctionBid, AuctionBidWithClientId,
    AuctionExtended, AuctionSettled, AuctionSettledWithClientId, ProposalCreated,
    ProposalCreatedWithRequirements, ProposalUpdated, ProposalDescriptionUpdated,
    ProposalTransactionsUpdated, ProposalCanceled, ProposalQueued, ProposalExecuted,
    ProposalVetoed, ProposalObjectionPeriodSet, VoteCast, VoteCastWithClientId,
    ClientRegistered, ClientUpdated, ClientApprovalSet, ClientRewarded,
    ClientBalanceWithdrawal, AuctionRewardsUpdated, ProposalRewardsUpdated,
    ConfigChanged, ProposalStateObserved,
)
from .identity_cache import IdentityCache
from .logging_config import (
    AUDIT_LOGGER, get_logger, log_event_failure, log_orphaned_settlement, log_status_transition
)
from .metrics_server import MetricsServer
from .proposal_lifecycle import TransitionDecision, can_transition, decide
from .types import (
    NounMetrics, NounSeed, ProposalStatus, RewardUpdateType, VoteSupport,
    ConfigurationError, DatabaseError, ReconciliationError, ZERO_ADDRESS,
)

logger = logging.getLogger(__name__)

TALLY_COLUMNS = {
    VoteSupport.FOR: 'for_votes',
    VoteSupport.AGAINST: 'against_votes',
    VoteSupport.ABSTAIN: 'abstain_votes',
}

SEED_FIELDS = ('background', 'body', 'accessory', 'head', 'glasses')
METRIC_FIELDS = ('area', 'color_count', 'brightness')


def extract_title(description: Optional[str]) -> Optional[str]:
    """First non-empty line of a proposal description without markdown heading marks"""
    if not description:
        return None
    for line in description.splitlines():
        title = line.strip().lstrip('#').strip()
        if title:
            return title
    return None


def json_safe(value: Any) -> Any:
    """Render integers as strings so wei-sized values survive JSON columns"""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


class Reconciler:
    """
    Applies decoded events to the relational store.

    Args:
        store: EntityStore the handlers write through
        identity_cache: Resolves winner and settler display names
        descriptor_resolver: Picks the descriptor for artwork rendering
        metrics_calculator: Pure trait-metrics function
        renderer: Optional artwork renderer with ``async render(source, seed)``
        block_time_seconds: Used to estimate voting timestamps from blocks
    """

    def __init__(
        self,
        store: EntityStore,
        identity_cache: IdentityCache,
        descriptor_resolver: DescriptorResolver,
        metrics_calculator: Optional[TraitMetricsCalculator] = None,
        renderer=None,
        block_time_seconds: int = 12
    ):
        self.store = store
        self.identity = identity_cache
        self.descriptors = descriptor_resolver
        self.metrics_calculator = metrics_calculator or TraitMetricsCalculator()
        self.renderer = renderer
        self.block_time_seconds = block_time_seconds
        self.audit = get_logger(AUDIT_LOGGER)

        self._handlers: Dict[EventType, Callable[[Any], Awaitable[None]]] = {
            EventType.NOUN_CREATED: self._on_noun_created,
            EventType.NOUN_BURNED: self._on_noun_burned,
            EventType.TRANSFER: self._on_transfer,
            EventType.DELEGATE_CHANGED: self._on_delegate_changed,
            EventType.DELEGATE_VOTES_CHANGED: self._on_delegate_votes_changed,
            EventType.AUCTION_CREATED: self._on_auction_created,
            EventType.AUCTION_BID: self._on_auction_bid,
            EventType.AUCTION_BID_WITH_CLIENT_ID: self._on_auction_bid_with_client_id,
            EventType.AUCTION_EXTENDED: self._on_auction_extended,
            EventType.AUCTION_SETTLED: self._on_auction_settled,
            EventType.AUCTION_SETTLED_WITH_CLIENT_ID: self._on_auction_settled_with_client_id,
            EventType.PROPOSAL_CREATED: self._on_proposal_created,
            EventType.PROPOSAL_CREATED_WITH_REQUIREMENTS: self._on_proposal_created_with_requirements,
            EventType.PROPOSAL_UPDATED: self._on_proposal_updated,
            EventType.PROPOSAL_DESCRIPTION_UPDATED: self._on_proposal_description_updated,
            EventType.PROPOSAL_TRANSACTIONS_UPDATED: self._on_proposal_transactions_updated,
            EventType.PROPOSAL_CANCELED: self._on_proposal_canceled,
            EventType.PROPOSAL_QUEUED: self._on_proposal_queued,
            EventType.PROPOSAL_EXECUTED: self._on_proposal_executed,
            EventType.PROPOSAL_VETOED: self._on_proposal_vetoed,
            EventType.PROPOSAL_OBJECTION_PERIOD_SET: self._on_proposal_objection_period_set,
            EventType.VOTE_CAST: self._on_vote_cast,
            EventType.VOTE_CAST_WITH_CLIENT_ID: self._on_vote_cast_with_client_id,
            EventType.CLIENT_REGISTERED: self._on_client_registered,
            EventType.CLIENT_UPDATED: self._on_client_updated,
            EventType.CLIENT_APPROVAL_SET: self._on_client_approval_set,
            EventType.CLIENT_REWARDED: self._on_client_rewarded,
            EventType.CLIENT_BALANCE_WITHDRAWAL: self._on_client_balance_withdrawal,
            EventType.AUCTION_REWARDS_UPDATED: self._on_auction_rewards_updated,
            EventType.PROPOSAL_REWARDS_UPDATED: self._on_proposal_rewards_updated,
            EventType.CONFIG_CHANGED: self._on_config_changed,
            EventType.PROPOSAL_STATE_OBSERVED: self._on_proposal_state_observed,
        }

        missing = set(EventType) - set(self._handlers)
        if missing:
            raise ConfigurationError(
                f"No reconciler handler for: {', '.join(sorted(m.value for m in missing))}"
            )

    # ========================================================================
    # Entry points
    # ========================================================================

    @property
    def handled_types(self) -> List[EventType]:
        return list(self._handlers)

    async def apply(self, event: ChainEvent) -> None:
        """
        Apply one event.

        Raises:
            ReconciliationError: a required write failed
        """
        handler = self._handlers[event.event_type]
        try:
            await handler(event)
        except DatabaseError as e:
            raise ReconciliationError(
                f"{event.event_type.value} {event.event_id} failed: {e}",
                event_type=event.event_type.value,
                event_id=event.event_id
            ) from e

    async def process(self, event: ChainEvent) -> bool:
        """Apply one event with failure isolation; returns False if it failed"""
        try:
            await self.apply(event)
        except ReconciliationError as e:
            MetricsServer.record_event_failed(event.event_type.value)
            log_event_failure(
                self.audit,
                event_type=event.event_type.value,
                event_id=event.event_id,
                block_number=event.block_number,
                error=str(e)
            )
            return False

        MetricsServer.record_event_processed(event.event_type.value)
        MetricsServer.update_last_block(event.block_number)
        return True

    async def process_transaction(self, events: Iterable[ChainEvent]) -> int:
        """Apply the events of one transaction in log order; returns the failure count"""
        failures = 0
        for event in sorted(events, key=lambda e: e.log_index):
            if not await self.process(event):
                failures += 1
        return failures

    # ========================================================================
    # Shared helpers
    # ========================================================================

    async def _best_effort(self, description: str, write: Awaitable[bool]) -> bool:
        """Run a secondary write whose failure must not fail the event"""
        try:
            return await write
        except DatabaseError as e:
            logger.warning(f"Best-effort write failed ({description}): {e}")
            return False

    def _noun_placeholder(self, token_id: int, event: ChainEvent) -> Dict[str, Any]:
        defaults = NounMetrics()
        values = {name: 0 for name in SEED_FIELDS}
        values.update({
            'id': token_id,
            'svg': "",
            'area': defaults.area,
            'color_count': defaults.color_count,
            'brightness': defaults.brightness,
            'burned': False,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })
        return values

    def _proposal_placeholder(self, proposal_id: int) -> Dict[str, Any]:
        return {
            'id': proposal_id,
            'status': ProposalStatus.PENDING,
            'for_votes': 0,
            'against_votes': 0,
            'abstain_votes': 0,
        }

    def _client_placeholder(self, client_id: int) -> Dict[str, Any]:
        return {
            'client_id': client_id,
            'approved': False,
            'total_rewarded': 0,
            'total_withdrawn': 0,
        }

    def _voter_placeholder(self, address: str, event: ChainEvent) -> Dict[str, Any]:
        return {
            'address': address,
            'delegated_votes': 0,
            'total_votes': 0,
            'first_seen_at': event.block_timestamp,
        }

    def _compute_metrics(self, seed: NounSeed) -> NounMetrics:
        try:
            return self.metrics_calculator.compute_metrics(seed)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Trait metrics failed for seed {seed.as_tuple()}: {e}")
            return NounMetrics()

    async def _render(self, seed: NounSeed, block_number: int) -> str:
        if self.renderer is None:
            return ""
        source = self.descriptors.resolve(block_number)
        if source is None:
            MetricsServer.increment_render_failures()
            return ""
        svg = await self.renderer.render(source, seed)
        if not svg:
            MetricsServer.increment_render_failures()
            return ""
        return svg

    async def _ensure_voter(self, address: str, event: ChainEvent) -> bool:
        """Insert the voter if absent and attach its display name; returns True if created"""
        created = await self.store.insert_or_ignore(VoterModel, self._voter_placeholder(address, event))
        if created:
            identity = await self.identity.resolve(address)
            if identity.name:
                await self._best_effort(
                    f"voter name {address}",
                    self.store.update(VoterModel, {'address': address}, {'ens_name': identity.name})
                )
        return created

    # ========================================================================
    # NounsToken
    # ========================================================================

    async def _on_noun_created(self, event: NounCreated):
        metrics = self._compute_metrics(event.seed)
        svg = await self._render(event.seed, event.block_number)

        values = self._noun_placeholder(event.token_id, event)
        values.update(event.seed.dict())
        values.update(metrics.dict())
        values['svg'] = svg

        merge_fields = list(SEED_FIELDS) + list(METRIC_FIELDS) + ['block_number', 'block_timestamp']
        if svg:
            # A failed re-render never blanks artwork stored by an earlier delivery
            merge_fields.append('svg')

        await self.store.insert_or_merge(NounModel, values, merge_fields=merge_fields)

    async def _on_noun_burned(self, event: NounBurned):
        values = self._noun_placeholder(event.token_id, event)
        values.update({'burned': True, 'burned_at': event.block_timestamp})
        await self.store.insert_or_merge(NounModel, values, merge_fields=['burned', 'burned_at'])

    async def _on_transfer(self, event: Transfer):
        await self.store.insert_or_ignore(TransferModel, {
            'id': event.event_id,
            'from_address': event.from_address,
            'to_address': event.to_address,
            'token_id': event.token_id,
            'tx_hash': event.transaction_hash,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })

        # Mint transfers create the placeholder; later transfers only move owner forward
        values = self._noun_placeholder(event.token_id, event)
        values.update({'owner': event.to_address, 'owner_ordinal': event.ordinal})
        await self.store.insert_or_merge(
            NounModel,
            values,
            merge_fields=['owner', 'owner_ordinal'],
            newer_than='owner_ordinal'
        )

    async def _on_delegate_changed(self, event: DelegateChanged):
        await self.store.insert_or_ignore(DelegationModel, {
            'id': event.event_id,
            'delegator': event.delegator,
            'from_delegate': event.from_delegate,
            'to_delegate': event.to_delegate,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })
        for address in (event.from_delegate, event.to_delegate):
            if address != ZERO_ADDRESS:
                await self._ensure_voter(address, event)

    async def _on_delegate_votes_changed(self, event: DelegateVotesChanged):
        if event.delegate == ZERO_ADDRESS:
            return
        values = self._voter_placeholder(event.delegate, event)
        values.update({
            'delegated_votes': event.new_balance,
            'delegation_ordinal': event.ordinal,
        })
        await self.store.insert_or_merge(
            VoterModel,
            values,
            merge_fields=['delegated_votes', 'delegation_ordinal'],
            newer_than='delegation_ordinal'
        )

    # ========================================================================
    # NounsAuctionHouse
    # ========================================================================

    async def _on_auction_created(self, event: AuctionCreated):
        await self.store.insert_or_merge(
            AuctionModel,
            {
                'noun_id': event.noun_id,
                'start_time': event.start_time,
                'end_time': event.end_time,
                'settled': False,
                'block_number': event.block_number,
                'block_timestamp': event.block_timestamp,
            },
            merge_fields=['start_time', 'block_number', 'block_timestamp']
        )
        # End time may already have been pushed out by an extension
        await self.store.update(
            AuctionModel, {'noun_id': event.noun_id}, {'end_time': event.end_time},
            only_if_less=('end_time', event.end_time)
        )

    async def _on_auction_bid(self, event: AuctionBid):
        await self.store.insert_or_merge(
            AuctionBidModel,
            {
                'id': f"{event.transaction_hash}-{event.noun_id}",
                'noun_id': event.noun_id,
                'tx_hash': event.transaction_hash,
                'bidder': event.sender,
                'amount': event.value,
                'extended': event.extended,
                'block_number': event.block_number,
                'block_timestamp': event.block_timestamp,
            },
            merge_fields=['bidder', 'amount', 'extended', 'block_number', 'block_timestamp']
        )

    async def _on_auction_bid_with_client_id(self, event: AuctionBidWithClientId):
        await self.store.insert_or_merge(
            AuctionBidModel,
            {
                'id': f"{event.transaction_hash}-{event.noun_id}",
                'noun_id': event.noun_id,
                'tx_hash': event.transaction_hash,
                'amount': event.value,
                'client_id': event.client_id,
                'block_number': event.block_number,
                'block_timestamp': event.block_timestamp,
            },
            merge_fields=['client_id']
        )

    async def _on_auction_extended(self, event: AuctionExtended):
        await self.store.insert_or_merge(
            AuctionModel,
            {'noun_id': event.noun_id, 'end_time': event.end_time, 'extended': True},
            merge_fields=['extended']
        )
        await self.store.update(
            AuctionModel, {'noun_id': event.noun_id}, {'end_time': event.end_time},
            only_if_less=('end_time', event.end_time)
        )

    async def _on_auction_settled(self, event: AuctionSettled):
        settler = event.transaction_from
        identities = await self.identity.resolve_batch([event.winner, settler])
        winner_identity = identities.get(event.winner)
        settler_identity = identities.get(settler) if settler else None

        await self.store.insert_or_merge(
            AuctionModel,
            {
                'noun_id': event.noun_id,
                'settled': True,
                'winner': event.winner,
                'amount': event.amount,
                'settler_address': settler,
            },
            merge_fields=['settled', 'winner', 'amount', 'settler_address']
        )

        patched = await self._best_effort(
            f"settlement of noun {event.noun_id}",
            self.store.update(NounModel, {'id': event.noun_id}, {
                'winning_bid': event.amount,
                'winner_address': event.winner,
                'winner_ens': winner_identity.name if winner_identity else None,
                'settled_by_address': settler,
                'settled_by_ens': settler_identity.name if settler_identity else None,
                'settled_at': event.block_timestamp,
                'settled_tx_hash': event.transaction_hash,
            })
        )
        if not patched:
            MetricsServer.increment_orphaned_settlements()
            log_orphaned_settlement(
                self.audit,
                noun_id=event.noun_id,
                tx_hash=event.transaction_hash,
                block_number=event.block_number
            )

    async def _on_auction_settled_with_client_id(self, event: AuctionSettledWithClientId):
        await self.store.insert_or_merge(
            AuctionModel,
            {'noun_id': event.noun_id, 'client_id': event.client_id},
            merge_fields=['client_id']
        )

    # ========================================================================
    # NounsDAO: proposals
    # ========================================================================

    async def _merge_content(self, proposal_id: int, content: Dict[str, Any], event: ChainEvent):
        """Overwrite proposal content unless a later edit has already been applied"""
        values = self._proposal_placeholder(proposal_id)
        values.update(content)
        values['content_ordinal'] = event.ordinal
        await self.store.insert_or_merge(
            ProposalModel,
            values,
            merge_fields=list(content) + ['content_ordinal'],
            newer_than='content_ordinal'
        )

    async def _record_version(self, event, edit_kind: str, content: Dict[str, Any], update_message: str):
        await self.store.insert_or_ignore(ProposalVersionModel, {
            'id': event.event_id,
            'proposal_id': event.id,
            'edit_kind': edit_kind,
            'update_message': update_message,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
            **content,
        })

    async def _on_proposal_created(self, event: ProposalCreated):
        created_block = event.block_number
        created_ts = event.block_timestamp
        block_time = self.block_time_seconds

        timing = {
            'proposer': event.proposer,
            'start_block': event.start_block,
            'end_block': event.end_block,
            'start_timestamp': created_ts + (event.start_block - created_block) * block_time,
            'end_timestamp': created_ts + (event.end_block - created_block) * block_time,
            'created_block': created_block,
            'created_timestamp': created_ts,
            'created_tx_hash': event.transaction_hash,
        }
        values = self._proposal_placeholder(event.id)
        values.update(timing)
        await self.store.insert_or_merge(ProposalModel, values, merge_fields=list(timing))

        await self._merge_content(event.id, {
            'title': extract_title(event.description),
            'description': event.description,
            'targets': event.targets,
            'call_values': json_safe(event.call_values),
            'signatures': event.signatures,
            'calldatas': event.calldatas,
        }, event)

    async def _on_proposal_created_with_requirements(self, event: ProposalCreatedWithRequirements):
        requirements = {
            'signers': event.signers,
            'update_period_end_block': event.update_period_end_block,
            'proposal_threshold': event.proposal_threshold,
            'quorum_votes': event.quorum_votes,
            'client_id': event.client_id,
        }
        values = self._proposal_placeholder(event.id)
        values.update(requirements)
        await self.store.insert_or_merge(ProposalModel, values, merge_fields=list(requirements))

    async def _on_proposal_updated(self, event: ProposalUpdated):
        content = {
            'title': extract_title(event.description),
            'description': event.description,
            'targets': event.targets,
            'call_values': json_safe(event.call_values),
            'signatures': event.signatures,
            'calldatas': event.calldatas,
        }
        await self._record_version(event, "full", content, event.update_message)
        await self._merge_content(event.id, content, event)

    async def _on_proposal_description_updated(self, event: ProposalDescriptionUpdated):
        content = {
            'title': extract_title(event.description),
            'description': event.description,
        }
        await self._record_version(event, "description", content, event.update_message)
        await self._merge_content(event.id, content, event)

    async def _on_proposal_transactions_updated(self, event: ProposalTransactionsUpdated):
        content = {
            'targets': event.targets,
            'call_values': json_safe(event.call_values),
            'signatures': event.signatures,
            'calldatas': event.calldatas,
        }
        await self._record_version(event, "transactions", content, event.update_message)
        await self._merge_content(event.id, content, event)

    async def _transition(
        self,
        event: ChainEvent,
        proposal_id: int,
        target: ProposalStatus,
        patch: Optional[Dict[str, Any]] = None
    ) -> TransitionDecision:
        """Move a proposal to ``target`` if the lifecycle allows it from the stored status"""
        await self.store.insert_or_ignore(ProposalModel, self._proposal_placeholder(proposal_id))

        sources = [s for s in ProposalStatus if can_transition(s, target)]
        applied = await self.store.update(
            ProposalModel,
            {'id': proposal_id},
            {'status': target, **(patch or {})},
            only_if_in=('status', sources)
        )

        if applied:
            decision = TransitionDecision.APPLY
            current = None
        else:
            row = await self.store.find(ProposalModel, {'id': proposal_id})
            current = row['status'] if row else None
            decision = decide(current, target)
            if decision == TransitionDecision.APPLY:
                # Status moved concurrently to a state that cannot reach target
                decision = TransitionDecision.IGNORED

        log_status_transition(
            self.audit,
            proposal_id=proposal_id,
            from_status=current.value if current else None,
            to_status=target.value,
            source_event=event.event_type.value,
            applied=decision == TransitionDecision.APPLY,
            context={'decision': decision.value, 'block_number': event.block_number}
        )
        if decision == TransitionDecision.IGNORED:
            logger.debug(f"Ignored {event.event_type.value} for proposal {proposal_id} in status {current}")
        return decision

    async def _on_proposal_canceled(self, event: ProposalCanceled):
        await self._transition(event, event.id, ProposalStatus.CANCELLED,
                               {'cancelled_at': event.block_timestamp})

    async def _on_proposal_queued(self, event: ProposalQueued):
        await self._transition(event, event.id, ProposalStatus.QUEUED,
                               {'eta': event.eta, 'queued_at': event.block_timestamp})

    async def _on_proposal_executed(self, event: ProposalExecuted):
        await self._transition(event, event.id, ProposalStatus.EXECUTED,
                               {'executed_at': event.block_timestamp})

    async def _on_proposal_vetoed(self, event: ProposalVetoed):
        await self._transition(event, event.id, ProposalStatus.VETOED,
                               {'vetoed_at': event.block_timestamp})

    async def _on_proposal_state_observed(self, event: ProposalStateObserved):
        await self._transition(event, event.proposal_id, event.state)

    async def _on_proposal_objection_period_set(self, event: ProposalObjectionPeriodSet):
        values = self._proposal_placeholder(event.id)
        values['objection_period_end_block'] = event.objection_period_end_block
        await self.store.insert_or_merge(
            ProposalModel, values, merge_fields=['objection_period_end_block']
        )

    # ========================================================================
    # NounsDAO: votes
    # ========================================================================

    async def _on_vote_cast(self, event: VoteCast):
        # Identity lookup stays outside the transaction; the placeholder is idempotent
        await self._ensure_voter(event.voter, event)

        key = {'proposal_id': event.proposal_id, 'voter': event.voter}
        vote = {
            'id': event.event_id,
            'support': int(event.support),
            'votes': event.votes,
            'reason': event.reason,
            'tx_hash': event.transaction_hash,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        }
        applied = await self.store.apply_once(
            self.store.insert_or_ignore_op(VoteModel, {**key, **vote}),
            # A client-id event may have created the row first; fill it exactly once
            fallback=self.store.update_op(VoteModel, key, vote, only_if_null='support'),
            then=[
                self.store.insert_or_ignore_op(ProposalModel, self._proposal_placeholder(event.proposal_id)),
                self.store.increment_op(
                    ProposalModel, {'id': event.proposal_id}, {TALLY_COLUMNS[event.support]: event.votes}
                ),
                self.store.insert_or_ignore_op(VoterModel, self._voter_placeholder(event.voter, event)),
                self.store.increment_op(VoterModel, {'address': event.voter}, {'total_votes': 1}),
                self.store.update_op(
                    VoterModel, {'address': event.voter}, {'last_vote_at': event.block_timestamp},
                    only_if_less=('last_vote_at', event.block_timestamp)
                ),
            ]
        )
        if not applied:
            logger.debug(f"Vote {event.event_id} already applied")

    async def _on_vote_cast_with_client_id(self, event: VoteCastWithClientId):
        key = {'proposal_id': event.proposal_id, 'voter': event.voter}
        patch = {'client_id': event.client_id}
        if await self.store.update(VoteModel, key, patch):
            return
        # VoteCast not applied yet: leave a row for it to fill
        created = await self.store.insert_or_ignore(VoteModel, {
            'id': event.event_id,
            'tx_hash': event.transaction_hash,
            **key,
            **patch,
        })
        if not created:
            await self.store.update(VoteModel, key, patch)

    # ========================================================================
    # ClientRewards
    # ========================================================================

    async def _merge_client_metadata(self, event, name: str, description: str):
        values = self._client_placeholder(event.client_id)
        values.update({
            'name': name,
            'description': description,
            'metadata_ordinal': event.ordinal,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })
        await self.store.insert_or_merge(
            ClientModel,
            values,
            merge_fields=['name', 'description', 'metadata_ordinal'],
            newer_than='metadata_ordinal'
        )

    async def _on_client_registered(self, event: ClientRegistered):
        await self._merge_client_metadata(event, event.name, event.description)
        # Registration block wins over whatever placeholder created the row
        await self.store.update(
            ClientModel, {'client_id': event.client_id},
            {'block_number': event.block_number, 'block_timestamp': event.block_timestamp}
        )

    async def _on_client_updated(self, event: ClientUpdated):
        await self._merge_client_metadata(event, event.name, event.description)

    async def _on_client_approval_set(self, event: ClientApprovalSet):
        values = self._client_placeholder(event.client_id)
        values.update({'approved': event.approved, 'approval_ordinal': event.ordinal})
        await self.store.insert_or_merge(
            ClientModel,
            values,
            merge_fields=['approved', 'approval_ordinal'],
            newer_than='approval_ordinal'
        )

    async def _apply_ledger_entry(self, model, event, entry: Dict[str, Any], total_column: str):
        """Record a ledger event and add its amount to the client total, once"""
        await self.store.apply_once(
            self.store.insert_or_ignore_op(model, {
                'id': event.event_id,
                'client_id': event.client_id,
                'amount': event.amount,
                'block_number': event.block_number,
                'block_timestamp': event.block_timestamp,
                **entry,
            }),
            then=[
                self.store.insert_or_ignore_op(ClientModel, self._client_placeholder(event.client_id)),
                self.store.increment_op(
                    ClientModel, {'client_id': event.client_id}, {total_column: event.amount}
                ),
            ]
        )

    async def _on_client_rewarded(self, event: ClientRewarded):
        await self._apply_ledger_entry(ClientRewardEventModel, event, {}, 'total_rewarded')

    async def _on_client_balance_withdrawal(self, event: ClientBalanceWithdrawal):
        await self._apply_ledger_entry(
            ClientWithdrawalModel, event, {'to_address': event.to}, 'total_withdrawn'
        )

    async def _on_auction_rewards_updated(self, event: AuctionRewardsUpdated):
        await self.store.insert_or_ignore(RewardUpdateModel, {
            'id': event.event_id,
            'update_type': RewardUpdateType.AUCTION,
            'first_id': event.first_auction_id,
            'last_id': event.last_auction_id,
            'params': {
                'firstAuctionId': str(event.first_auction_id),
                'lastAuctionId': str(event.last_auction_id),
            },
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })

    async def _on_proposal_rewards_updated(self, event: ProposalRewardsUpdated):
        await self.store.insert_or_ignore(RewardUpdateModel, {
            'id': event.event_id,
            'update_type': RewardUpdateType.PROPOSAL,
            'first_id': event.first_proposal_id,
            'last_id': event.last_proposal_id,
            'params': {
                'firstProposalId': str(event.first_proposal_id),
                'lastProposalId': str(event.last_proposal_id),
                'firstAuctionIdForRevenue': str(event.first_auction_id_for_revenue),
                'lastAuctionId': str(event.last_auction_id),
                'auctionRevenue': str(event.auction_revenue),
                'rewardPerProposal': str(event.reward_per_proposal),
                'rewardPerVote': str(event.reward_per_vote),
            },
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })

    # ========================================================================
    # Configuration audit
    # ========================================================================

    async def _on_config_changed(self, event: ConfigChanged):
        await self.store.insert_or_ignore(ConfigChangeModel, {
            'id': event.event_id,
            'contract': event.contract,
            'event_name': event.name,
            'params': json_safe(event.params),
            'tx_hash': event.transaction_hash,
            'block_number': event.block_number,
            'block_timestamp': event.block_timestamp,
        })

"""
Unit tests for the event-to-entity reconciler

Tests:
- Idempotent redelivery for every handler
- Mint-pair order independence and the token 42 scenario
- Vote tallies, duplicate votes and client-id attribution
- Settlement fan-out and orphaned settlements
- Proposal status transitions and content edits
- Failure isolation and atomic redelivery
"""

import random
from contextlib import contextmanager
from unittest.mock import AsyncMock, Mock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import event as sa_event, select

from berry_indexer.database import (
    Base, EntityStore, NounModel, AuctionModel, AuctionBidModel, ProposalModel,
    ProposalVersionModel, VoteModel, VoterModel, ClientModel, ConfigChangeModel,
    TransferModel, ClientRewardEventModel,
)
from berry_indexer.events import EventType
from berry_indexer.identity_cache import IdentityCache, MAX_BATCH_SIZE
from berry_indexer.ingestion import IngestionPipeline
from berry_indexer.reconciler import Reconciler, extract_title, json_safe
from berry_indexer.types import DatabaseError, ProposalStatus, ZERO_ADDRESS

from conftest import FakeIdentityClient
from factories import (
    ALICE, BOB, CAROL, SETTLER, BASE_BLOCK, BASE_TIMESTAMP, DESCRIPTOR_V3,
    create_event, create_transfer, create_noun_created, create_delegate_votes_changed,
    create_auction_created, create_auction_extended, create_auction_bid,
    create_auction_bid_with_client_id, create_auction_settled, create_proposal_created,
    create_proposal_created_with_requirements, create_proposal_description_updated,
    create_proposal_status_event, create_vote, create_vote_with_client_id,
    create_client_registered, create_client_updated, create_client_rewarded,
    create_client_withdrawal,
)


def dump(store: EntityStore):
    """Every row of every table, in a stable order"""
    with store.db.get_session() as session:
        return {
            name: sorted((dict(row) for row in session.execute(select(table)).mappings()), key=repr)
            for name, table in Base.metadata.tables.items()
        }


def sample(name: str, labels=None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


async def apply_all(reconciler: Reconciler, events):
    for event in events:
        assert await reconciler.process(event), f"{event.event_type} failed"


@contextmanager
def failing_statement(store: EntityStore, prefix: str):
    """Fail the first SQL statement starting with ``prefix``"""
    armed = [True]

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if armed[0] and statement.startswith(prefix):
            armed[0] = False
            raise RuntimeError("disk I/O error")

    sa_event.listen(store.db.engine, "before_cursor_execute", before_cursor_execute)
    try:
        yield
    finally:
        sa_event.remove(store.db.engine, "before_cursor_execute", before_cursor_execute)


# ============================================================================
# Handler table
# ============================================================================

def test_every_event_type_has_a_handler(reconciler):
    assert set(reconciler.handled_types) == set(EventType)


# ============================================================================
# Nouns and mint pair
# ============================================================================

@pytest.mark.parametrize("transfer_first", [True, False])
async def test_token_42_mint_pair_in_either_order(reconciler, store, renderer, transfer_first):
    transfer = create_transfer(42, ALICE, tx=7, log_index=0)
    created = create_noun_created(42, seed=(1, 0, 0, 0, 0), tx=7, log_index=1)

    await apply_all(reconciler, [transfer, created] if transfer_first else [created, transfer])

    assert await store.count(NounModel) == 1
    noun = await store.find(NounModel, {'id': 42})
    assert noun['owner'] == ALICE
    assert (noun['background'], noun['body'], noun['accessory'], noun['head'], noun['glasses']) == (1, 0, 0, 0, 0)
    assert noun['area'] == 13
    assert noun['color_count'] == 3
    assert noun['brightness'] == 137
    assert noun['svg'] == "<svg>noun</svg>"
    assert renderer.calls == [(DESCRIPTOR_V3, (1, 0, 0, 0, 0))]


async def test_redelivery_of_every_handler_is_idempotent(reconciler, store):
    events = [
        create_transfer(1, ALICE, tx=1, log_index=0),
        create_noun_created(1, tx=1, log_index=1),
        create_delegate_votes_changed(ALICE, 3, tx=1, log_index=2),
        create_auction_created(1, BASE_TIMESTAMP, BASE_TIMESTAMP + 86400, tx=1, log_index=3),
        create_auction_bid(1, BOB, 10 ** 18, tx=2, log_index=0),
        create_auction_bid_with_client_id(1, 10 ** 18, 5, tx=2, log_index=1),
        create_auction_extended(1, BASE_TIMESTAMP + 90000, tx=2, log_index=2),
        create_auction_settled(1, BOB, 10 ** 18, tx=3, log_index=0),
        create_proposal_created(10, tx=4, log_index=0),
        create_proposal_created_with_requirements(10, quorum_votes=4, client_id=5, tx=4, log_index=1),
        create_vote(10, BOB, support=1, votes=3, tx=5, log_index=0),
        create_vote_with_client_id(10, BOB, 5, tx=5, log_index=1),
        create_proposal_description_updated(10, "# New title", tx=6, log_index=0, block=BASE_BLOCK + 5),
        create_proposal_status_event("ProposalCanceled", 10, tx=7, log_index=0, block=BASE_BLOCK + 6),
        create_client_registered(5, "Berry", tx=8, log_index=0),
        create_client_rewarded(5, 10 ** 18, tx=8, log_index=1),
        create_client_withdrawal(5, 10 ** 17, tx=8, log_index=2),
        create_event("AuctionReservePriceUpdated", {"reservePrice": 10 ** 17},
                     contract="NounsAuctionHouse", tx=9, log_index=0),
    ]

    await apply_all(reconciler, events)
    first = dump(store)

    await apply_all(reconciler, events)
    assert dump(store) == first


async def test_later_transfer_wins_regardless_of_arrival(reconciler, store):
    mint = create_transfer(3, ALICE, tx=1, block=BASE_BLOCK)
    to_bob = create_transfer(3, BOB, from_address=ALICE, tx=2, block=BASE_BLOCK + 5)
    to_carol = create_transfer(3, CAROL, from_address=BOB, tx=3, block=BASE_BLOCK + 10)

    await apply_all(reconciler, [to_carol, mint, to_bob])

    noun = await store.find(NounModel, {'id': 3})
    assert noun['owner'] == CAROL
    assert await store.count(TransferModel) == 3


async def test_failed_render_keeps_existing_artwork(reconciler, store, renderer):
    created = create_noun_created(5, tx=1)
    await apply_all(reconciler, [created])

    renderer.svg = None
    failures_before = sample('berry_render_failures_total')
    await apply_all(reconciler, [created])

    noun = await store.find(NounModel, {'id': 5})
    assert noun['svg'] == "<svg>noun</svg>"
    assert sample('berry_render_failures_total') == failures_before + 1


async def test_block_before_any_descriptor_leaves_artwork_empty(reconciler, store, renderer):
    await apply_all(reconciler, [create_noun_created(0, tx=1, block=11000000, timestamp=1600000000)])

    noun = await store.find(NounModel, {'id': 0})
    assert noun['svg'] == ""
    assert renderer.calls == []
    assert noun['area'] == 13


async def test_burn_marks_noun(reconciler, store):
    burn = create_event("NounBurned", {"tokenId": 8}, tx=2)
    await apply_all(reconciler, [create_transfer(8, ALICE, tx=1), burn])

    noun = await store.find(NounModel, {'id': 8})
    assert noun['burned'] is True
    assert noun['burned_at'] == burn.block_timestamp


# ============================================================================
# Auctions and settlement
# ============================================================================

async def test_settlement_fans_out_to_noun(reconciler, store):
    await apply_all(reconciler, [
        create_transfer(9, ALICE, tx=1),
        create_noun_created(9, tx=1, log_index=1),
        create_auction_settled(9, BOB, 2 * 10 ** 18, tx=2),
    ])

    auction = await store.find(AuctionModel, {'noun_id': 9})
    assert auction['settled'] is True
    assert auction['winner'] == BOB
    assert auction['settler_address'] == SETTLER

    noun = await store.find(NounModel, {'id': 9})
    assert noun['winning_bid'] == 2 * 10 ** 18
    assert noun['winner_address'] == BOB
    assert noun['winner_ens'] == "bob.eth"
    assert noun['settled_by_address'] == SETTLER
    assert noun['settled_by_ens'] == "settler.eth"
    assert noun['settled_tx_hash'] == create_auction_settled(9, BOB, 1, tx=2).transaction_hash


async def test_settlement_for_missing_noun_is_flagged(reconciler, store):
    orphans_before = sample('berry_orphaned_settlements_total')

    assert await reconciler.process(create_auction_settled(999, BOB, 10 ** 18, tx=3))

    assert await store.find(NounModel, {'id': 999}) is None
    auction = await store.find(AuctionModel, {'noun_id': 999})
    assert auction['settled'] is True
    assert sample('berry_orphaned_settlements_total') == orphans_before + 1


async def test_settlement_survives_noun_patch_failure(reconciler, store, monkeypatch):
    await apply_all(reconciler, [create_transfer(4, ALICE, tx=1)])
    monkeypatch.setattr(store, "update", AsyncMock(side_effect=DatabaseError("noun table locked")))

    assert await reconciler.process(create_auction_settled(4, BOB, 10 ** 18, tx=2))

    auction = await store.find(AuctionModel, {'noun_id': 4})
    assert auction['settled'] is True


async def test_extension_before_creation_keeps_later_end_time(reconciler, store):
    await apply_all(reconciler, [
        create_auction_extended(2, BASE_TIMESTAMP + 90000, tx=2),
        create_auction_created(2, BASE_TIMESTAMP, BASE_TIMESTAMP + 86400, tx=1),
    ])

    auction = await store.find(AuctionModel, {'noun_id': 2})
    assert auction['start_time'] == BASE_TIMESTAMP
    assert auction['end_time'] == BASE_TIMESTAMP + 90000
    assert auction['extended'] is True


async def test_bid_and_client_id_merge_into_one_row(reconciler, store):
    await apply_all(reconciler, [
        create_auction_bid_with_client_id(6, 10 ** 18, 7, tx=4, log_index=1),
        create_auction_bid(6, CAROL, 10 ** 18, extended=True, tx=4, log_index=0),
    ])

    assert await store.count(AuctionBidModel) == 1
    bid = (await store.find(AuctionBidModel, {'noun_id': 6}))
    assert bid['bidder'] == CAROL
    assert bid['client_id'] == 7
    assert bid['extended'] is True


# ============================================================================
# Votes
# ============================================================================

async def test_interleaved_votes_sum_exactly(reconciler, store):
    ballots = [(i, i % 3, 1 + i * 2) for i in range(12)]
    events = [
        create_vote(20, "0x%040x" % (i + 1), support=support, votes=weight, tx=100 + i)
        for i, support, weight in ballots
    ]
    events += [create_transfer(50 + i, ALICE, tx=200 + i) for i in range(6)]
    random.Random(7).shuffle(events)

    stats = await IngestionPipeline(reconciler, max_concurrent_transactions=4).run(
        [_raw(e) for e in events]
    )
    assert stats.failed == 0

    proposal = await store.find(ProposalModel, {'id': 20})
    assert proposal['against_votes'] == sum(w for _, s, w in ballots if s == 0)
    assert proposal['for_votes'] == sum(w for _, s, w in ballots if s == 1)
    assert proposal['abstain_votes'] == sum(w for _, s, w in ballots if s == 2)


async def test_duplicate_vote_counts_once(reconciler, store):
    vote = create_vote(11, BOB, support=1, votes=4, tx=12)
    await apply_all(reconciler, [vote, vote])

    proposal = await store.find(ProposalModel, {'id': 11})
    assert proposal['for_votes'] == 4
    voter = await store.find(VoterModel, {'address': BOB})
    assert voter['total_votes'] == 1
    assert voter['last_vote_at'] == vote.block_timestamp
    assert voter['ens_name'] == "bob.eth"


async def test_client_id_before_vote_is_attributed_and_counted_once(reconciler, store):
    vote = create_vote(12, CAROL, support=0, votes=6, tx=13, log_index=0)
    client = create_vote_with_client_id(12, CAROL, 3, tx=13, log_index=1)

    await apply_all(reconciler, [client, vote, client, vote])

    assert await store.count(VoteModel) == 1
    row = await store.find(VoteModel, {'proposal_id': 12, 'voter': CAROL})
    assert row['id'] == vote.event_id
    assert row['client_id'] == 3
    assert row['support'] == 0
    assert row['votes'] == 6

    proposal = await store.find(ProposalModel, {'id': 12})
    assert proposal['against_votes'] == 6
    assert proposal['for_votes'] == 0


async def test_vote_whose_tally_write_failed_applies_on_redelivery(reconciler, store):
    vote = create_vote(11, BOB, support=1, votes=4, tx=12)

    with failing_statement(store, "UPDATE proposals SET for_votes"):
        assert await reconciler.process(vote) is False
    assert await store.find(VoteModel, {'proposal_id': 11, 'voter': BOB}) is None

    assert await reconciler.process(vote)

    assert (await store.find(ProposalModel, {'id': 11}))['for_votes'] == 4
    assert (await store.find(VoterModel, {'address': BOB}))['total_votes'] == 1


async def test_voter_lookups_across_transactions_share_the_limit(store, descriptor_resolver):
    client = FakeIdentityClient(delay=0.02)
    reconciler = Reconciler(store, IdentityCache(client), descriptor_resolver)
    events = [create_vote(30, "0x%040x" % (i + 1), votes=1, tx=300 + i) for i in range(40)]

    stats = await IngestionPipeline(reconciler, max_concurrent_transactions=16).run(
        [_raw(e) for e in events]
    )

    assert stats.failed == 0
    assert len(client.calls) == 40
    assert client.max_in_flight <= MAX_BATCH_SIZE
    assert (await store.find(ProposalModel, {'id': 30}))['for_votes'] == 40


async def test_newer_delegation_balance_wins(reconciler, store):
    await apply_all(reconciler, [
        create_delegate_votes_changed(ALICE, 9, tx=2, block=BASE_BLOCK + 3),
        create_delegate_votes_changed(ALICE, 4, tx=1, block=BASE_BLOCK + 1),
    ])

    voter = await store.find(VoterModel, {'address': ALICE})
    assert voter['delegated_votes'] == 9


# ============================================================================
# Proposals
# ============================================================================

async def test_proposal_created_derives_title_and_timestamps(reconciler, store):
    created = create_proposal_created(30, tx=1, block=BASE_BLOCK)
    await apply_all(reconciler, [created])

    proposal = await store.find(ProposalModel, {'id': 30})
    assert proposal['status'] == ProposalStatus.PENDING
    assert proposal['title'] == "Fund the thing"
    assert proposal['start_timestamp'] == created.block_timestamp + 100 * 12
    assert proposal['end_timestamp'] == created.block_timestamp + 200 * 12
    assert proposal['call_values'] == [str(10 ** 18)]


async def test_status_event_before_creation_is_kept(reconciler, store):
    await apply_all(reconciler, [
        create_proposal_status_event("ProposalQueued", 31, tx=2, block=BASE_BLOCK + 50),
        create_proposal_created(31, tx=1),
    ])

    proposal = await store.find(ProposalModel, {'id': 31})
    assert proposal['status'] == ProposalStatus.QUEUED
    assert proposal['proposer'] == ALICE
    assert proposal['eta'] == BASE_TIMESTAMP + 86400


async def test_terminal_status_is_not_overwritten(reconciler, store):
    await apply_all(reconciler, [
        create_proposal_created(32, tx=1),
        create_proposal_status_event("ProposalCanceled", 32, tx=2),
        create_proposal_status_event("ProposalQueued", 32, tx=3),
        create_proposal_status_event("ProposalExecuted", 32, tx=4),
    ])

    proposal = await store.find(ProposalModel, {'id': 32})
    assert proposal['status'] == ProposalStatus.CANCELLED
    assert proposal['executed_at'] is None


async def test_observed_states_move_forward_only(reconciler, store):
    observed = lambda state, tx: create_event(
        "ProposalStateObserved", {"proposalId": 33, "state": state}, tx=tx
    )
    await apply_all(reconciler, [create_proposal_created(33, tx=1), observed("ACTIVE", 2)])
    assert (await store.find(ProposalModel, {'id': 33}))['status'] == ProposalStatus.ACTIVE

    await apply_all(reconciler, [observed("PENDING", 3), observed("SUCCEEDED", 4)])
    assert (await store.find(ProposalModel, {'id': 33}))['status'] == ProposalStatus.SUCCEEDED


async def test_stale_content_does_not_revert_edit(reconciler, store):
    created = create_proposal_created(34, tx=1, block=BASE_BLOCK)
    edit = create_proposal_description_updated(34, "## Revised plan\nMore", tx=2, block=BASE_BLOCK + 10)

    await apply_all(reconciler, [created, edit, created])

    proposal = await store.find(ProposalModel, {'id': 34})
    assert proposal['title'] == "Revised plan"
    assert await store.count(ProposalVersionModel) == 1


async def test_requirements_attach_client_and_quorum(reconciler, store):
    await apply_all(reconciler, [
        create_proposal_created_with_requirements(35, quorum_votes=7, client_id=2, tx=1, log_index=1),
        create_proposal_created(35, tx=1, log_index=0),
    ])

    proposal = await store.find(ProposalModel, {'id': 35})
    assert proposal['quorum_votes'] == 7
    assert proposal['client_id'] == 2
    assert proposal['title'] == "Fund the thing"


# ============================================================================
# Clients
# ============================================================================

async def test_client_ledgers_accumulate_once_per_event(reconciler, store):
    first = create_client_rewarded(4, 10 ** 18, tx=1)
    second = create_client_rewarded(4, 10 ** 18, tx=2)
    withdrawal = create_client_withdrawal(4, 10 ** 18, tx=3)

    await apply_all(reconciler, [first, first, second, withdrawal, withdrawal])

    client = await store.find(ClientModel, {'client_id': 4})
    assert client['total_rewarded'] == 2 * 10 ** 18
    assert client['total_withdrawn'] == 10 ** 18
    assert await store.count(ClientRewardEventModel) == 2


async def test_reward_whose_total_write_failed_applies_on_redelivery(reconciler, store):
    reward = create_client_rewarded(5, 10 ** 18, tx=1)

    with failing_statement(store, "UPDATE clients SET total_rewarded"):
        assert await reconciler.process(reward) is False
    assert await store.count(ClientRewardEventModel) == 0

    assert await reconciler.process(reward)

    assert (await store.find(ClientModel, {'client_id': 5}))['total_rewarded'] == 10 ** 18


async def test_amounts_beyond_64_bits_are_exact(reconciler, store):
    bid = 69 * 10 ** 18 + 1
    await apply_all(reconciler, [
        create_transfer(9, ALICE, tx=1),
        create_auction_settled(9, BOB, bid, tx=2),
        create_client_rewarded(8, 10 ** 20 + 1, tx=3),
        create_client_rewarded(8, 2 ** 200, tx=4),
    ])

    assert (await store.find(NounModel, {'id': 9}))['winning_bid'] == bid
    assert (await store.find(AuctionModel, {'noun_id': 9}))['amount'] == bid
    client = await store.find(ClientModel, {'client_id': 8})
    assert client['total_rewarded'] == 10 ** 20 + 1 + 2 ** 200


async def test_older_client_metadata_does_not_overwrite_newer(reconciler, store):
    await apply_all(reconciler, [
        create_client_updated(6, "Berry OS", tx=2, block=BASE_BLOCK + 20),
        create_client_registered(6, "berry", tx=1, block=BASE_BLOCK),
    ])

    client = await store.find(ClientModel, {'client_id': 6})
    assert client['name'] == "Berry OS"
    assert client['block_number'] == BASE_BLOCK


async def test_config_change_is_recorded_with_string_integers(reconciler, store):
    event = create_event("AuctionReservePriceUpdated", {"reservePrice": 10 ** 17},
                         contract="NounsAuctionHouse", tx=5)
    await apply_all(reconciler, [event])

    row = await store.find(ConfigChangeModel, {'id': event.event_id})
    assert row['contract'] == "NounsAuctionHouse"
    assert row['event_name'] == "AuctionReservePriceUpdated"
    assert row['params'] == {"reservePrice": str(10 ** 17)}


# ============================================================================
# Failure isolation
# ============================================================================

async def test_primary_write_failure_is_isolated(identity_cache, descriptor_resolver):
    store = Mock(spec=EntityStore)
    store.insert_or_ignore = AsyncMock(side_effect=DatabaseError("connection reset"))
    reconciler = Reconciler(store, identity_cache, descriptor_resolver)
    failed_before = sample('berry_events_failed_total', {'event': 'Transfer'})

    ok = await reconciler.process(create_transfer(1, ALICE, tx=1))

    assert ok is False
    assert sample('berry_events_failed_total', {'event': 'Transfer'}) == failed_before + 1


async def test_failed_event_does_not_stop_its_transaction(reconciler, store, monkeypatch):
    original = store.insert_or_ignore

    async def flaky(model, values):
        if model is TransferModel:
            raise DatabaseError("disk full")
        return await original(model, values)

    monkeypatch.setattr(store, "insert_or_ignore", flaky)
    failures = await reconciler.process_transaction([
        create_transfer(77, ALICE, tx=1, log_index=0),
        create_noun_created(77, tx=1, log_index=1),
    ])

    assert failures == 1
    assert (await store.find(NounModel, {'id': 77}))['area'] == 13


# ============================================================================
# Helpers
# ============================================================================

def test_extract_title():
    assert extract_title("\n\n#  Hello world \nbody") == "Hello world"
    assert extract_title("Plain first line\n# heading") == "Plain first line"
    assert extract_title("") is None
    assert extract_title("###\n   \n") is None


def test_json_safe_stringifies_integers():
    assert json_safe({"a": 1, "b": [2, True, None], "c": "x"}) == {"a": "1", "b": ["2", True, None], "c": "x"}


def _raw(event):
    """Back to a raw feed record"""
    raw = {
        "event": event.event_type.value,
        "transactionHash": event.transaction_hash,
        "logIndex": event.log_index,
        "blockNumber": event.block_number,
        "blockTimestamp": event.block_timestamp,
        "args": event.dict(
            by_alias=True,
            exclude={"event_type", "transaction_hash", "log_index", "block_number",
                     "block_timestamp", "transaction_from"}
        ),
    }
    return raw

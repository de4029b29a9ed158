"""
Chain Readers

web3 reads the indexer needs beyond the event feed: ClientRewards cycle
parameters for the eligibility engine, and proposal states for the poller.
Blocking web3 calls run in a worker thread.
"""

import asyncio
import logging
import time
from typing import List, Optional, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .config import ChainConfig, ContractsConfig
from .events import ProposalStateObserved
from .proposal_lifecycle import TERMINAL_STATES, status_from_onchain
from .types import ProposalRewardParams, RPCError

logger = logging.getLogger(__name__)

ZERO_TX_HASH = "0x" + "0" * 64

CLIENT_REWARDS_ABI = [
    {
        "inputs": [],
        "name": "getProposalRewardParams",
        "outputs": [
            {
                "components": [
                    {"name": "minimumRewardPeriod", "type": "uint32"},
                    {"name": "numProposalsEnoughForReward", "type": "uint8"},
                    {"name": "proposalRewardBps", "type": "uint16"},
                    {"name": "votingRewardBps", "type": "uint16"},
                    {"name": "proposalEligibilityQuorumBps", "type": "uint16"}
                ],
                "name": "",
                "type": "tuple"
            }
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "nextProposalIdToReward",
        "outputs": [{"name": "", "type": "uint32"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "lastProposalRewardsUpdate",
        "outputs": [{"name": "", "type": "uint40"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "nextProposalRewardFirstAuctionId",
        "outputs": [{"name": "", "type": "uint32"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "firstNounId", "type": "uint256"},
            {"name": "endTimestamp", "type": "uint256"}
        ],
        "name": "getAuctionRevenue",
        "outputs": [
            {"name": "sumRevenue", "type": "uint256"},
            {"name": "lastAuctionId", "type": "uint256"}
        ],
        "stateMutability": "view",
        "type": "function"
    }
]

DAO_ABI = [
    {
        "inputs": [],
        "name": "adjustedTotalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "proposalId", "type": "uint256"}],
        "name": "state",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]


def connect(chain: ChainConfig) -> Web3:
    """Connect to the primary RPC, falling back to the backup endpoint"""
    web3 = Web3(Web3.HTTPProvider(chain.rpc_http))
    if web3.is_connected():
        return web3

    logger.warning("Primary RPC not connected, trying backup...")
    if chain.backup_http:
        backup = Web3(Web3.HTTPProvider(chain.backup_http))
        if backup.is_connected():
            return backup
    raise RPCError("All RPC providers failed to connect")


class _ContractReader:
    """Runs blocking contract calls in a worker thread with a timeout"""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    async def _call(self, fn, *args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(lambda: fn(*args).call()),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise RPCError(f"{fn.fn_name} timed out after {self.timeout_seconds}s") from e
        except (ContractLogicError, Web3Exception, ValueError, OSError) as e:
            raise RPCError(f"{fn.fn_name} failed: {e}") from e


class ClientRewardsReader(_ContractReader):
    """
    Reads reward-cycle state from ClientRewards and the DAO governor.

    All methods raise RPCError on failure.
    """

    def __init__(self, web3: Web3, contracts: ContractsConfig, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.rewards = web3.eth.contract(
            address=Web3.to_checksum_address(contracts.client_rewards),
            abi=CLIENT_REWARDS_ABI
        )
        self.dao = web3.eth.contract(
            address=Web3.to_checksum_address(contracts.dao),
            abi=DAO_ABI
        )

    async def proposal_reward_params(self) -> ProposalRewardParams:
        raw = await self._call(self.rewards.functions.getProposalRewardParams)
        period, enough, proposal_bps, voting_bps, quorum_bps = raw
        return ProposalRewardParams(
            minimum_reward_period=period,
            num_proposals_enough_for_reward=enough,
            proposal_reward_bps=proposal_bps,
            voting_reward_bps=voting_bps,
            proposal_eligibility_quorum_bps=quorum_bps
        )

    async def next_proposal_id_to_reward(self) -> int:
        return int(await self._call(self.rewards.functions.nextProposalIdToReward))

    async def last_proposal_rewards_update(self) -> int:
        return int(await self._call(self.rewards.functions.lastProposalRewardsUpdate))

    async def next_proposal_reward_first_auction_id(self) -> int:
        return int(await self._call(self.rewards.functions.nextProposalRewardFirstAuctionId))

    async def auction_revenue(self, first_auction_id: int, end_timestamp: Optional[int] = None) -> Tuple[int, int]:
        """Revenue of auctions from ``first_auction_id`` settled before ``end_timestamp``"""
        end_timestamp = end_timestamp if end_timestamp is not None else int(time.time())
        revenue, last_auction_id = await self._call(
            self.rewards.functions.getAuctionRevenue, first_auction_id, end_timestamp
        )
        return int(revenue), int(last_auction_id)

    async def adjusted_total_supply(self) -> int:
        return int(await self._call(self.dao.functions.adjustedTotalSupply))


class ProposalStatePoller(_ContractReader):
    """
    Emits ProposalStateObserved for stored proposals that are not terminal.

    The DAO emits no event when voting opens or closes, so ACTIVE, DEFEATED,
    SUCCEEDED and EXPIRED are only learned by reading ``state(id)``.
    """

    def __init__(self, web3: Web3, contracts: ContractsConfig, store, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.web3 = web3
        self.store = store
        self.dao = web3.eth.contract(
            address=Web3.to_checksum_address(contracts.dao),
            abi=DAO_ABI
        )

    async def poll(self) -> List[ProposalStateObserved]:
        """Read the state of every open proposal; unreadable proposals are skipped"""
        proposal_ids = await self.store.open_proposal_ids(TERMINAL_STATES)
        if not proposal_ids:
            return []

        try:
            block = await asyncio.to_thread(self.web3.eth.get_block, 'latest')
        except (Web3Exception, ValueError, OSError) as e:
            raise RPCError(f"Failed to read latest block: {e}") from e

        observed = []
        for index, proposal_id in enumerate(proposal_ids):
            try:
                raw_state = await self._call(self.dao.functions.state, proposal_id)
                state = status_from_onchain(int(raw_state))
            except (RPCError, ValueError) as e:
                logger.warning(f"Could not read state of proposal {proposal_id}: {e}")
                continue

            observed.append(ProposalStateObserved(
                transaction_hash=ZERO_TX_HASH,
                log_index=index,
                block_number=block['number'],
                block_timestamp=block['timestamp'],
                proposal_id=proposal_id,
                state=state
            ))

        logger.info(f"Polled {len(proposal_ids)} open proposals, {len(observed)} states read")
        return observed

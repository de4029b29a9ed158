"""
Indexer Orchestrator

Entry point for the Nouns event indexer. Wires configuration, storage, the
identity cache, artwork collaborators and the reconciler, then drives an
event feed through the ingestion pipeline.
"""

import argparse
import asyncio
import contextlib
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .artwork import DescriptorArtworkRenderer, TraitMetricsCalculator
from .chain import ClientRewardsReader, ProposalStatePoller, connect
from .config import init_config, IndexerConfig
from .database import EntityStore, init_database, init_redis
from .descriptor_resolver import DescriptorResolver
from .eligibility import RewardCycleEngine
from .identity_cache import EnsIdeasClient, IdentityCache
from .ingestion import IngestionPipeline, IngestionStats, open_feed
from .logging_config import init_logging, get_logger
from .metrics_server import MetricsServer
from .reconciler import Reconciler
from .types import CycleReport, DatabaseError, IndexerError, RPCError


class IndexerService:
    """
    Indexer orchestrator.

    Responsibilities:
    - Initialize storage, caches and chain collaborators
    - Drive the feed through the reconciler
    - Optionally poll proposal states and evaluate the reward cycle
    - Export monitoring metrics
    """

    def __init__(
        self,
        config: IndexerConfig,
        evaluate_rewards: bool = False,
        poll_proposals: bool = False
    ):
        self.logger = get_logger("indexer")
        self.config = config
        self.evaluate_rewards = evaluate_rewards or config.rewards.evaluate_after_ingest
        self.poll_proposals = poll_proposals or config.ingestion.poll_proposals_after_ingest

        self.web3 = None
        self.store: Optional[EntityStore] = None
        self.identity_client: Optional[EnsIdeasClient] = None
        self.identity_cache: Optional[IdentityCache] = None
        self.reconciler: Optional[Reconciler] = None
        self.pipeline: Optional[IngestionPipeline] = None
        self.metrics_server: Optional[MetricsServer] = None

        self._start_time = time.time()

    async def initialize(self):
        """Initialize database connections, RPC provider and all modules"""
        try:
            self.logger.info("Initializing indexer...")

            # Step 1: Storage
            db_manager = init_database(self.config.database)
            if not db_manager.health_check():
                raise DatabaseError("Database health check failed")

            redis_manager = None
            if self.config.redis.enabled:
                redis_manager = init_redis(self.config.redis)

            self.store = EntityStore(db_manager)
            self.logger.info(
                "Storage ready",
                extra={
                    "database": db_manager.dialect,
                    "redis": "disabled" if redis_manager is None
                    else ("fallback" if redis_manager.using_fallback else "connected")
                }
            )

            # Step 2: RPC provider; the indexer still runs without one
            needs_chain = (
                self.config.artwork.render_enabled or self.evaluate_rewards or self.poll_proposals
            )
            if needs_chain:
                try:
                    self.web3 = connect(self.config.chain)
                    self.logger.info(
                        "RPC provider connected",
                        extra={"current_block": self.web3.eth.block_number}
                    )
                except (RPCError, OSError, ValueError) as e:
                    self.logger.warning(f"RPC unavailable, chain-backed features disabled: {e}")
                    self.web3 = None

            # Step 3: Collaborators
            identity = self.config.identity
            self.identity_client = EnsIdeasClient(identity.base_url, identity.timeout_seconds)
            self.identity_cache = IdentityCache(
                self.identity_client,
                ttl_seconds=identity.ttl_seconds,
                max_entries=identity.max_entries,
                batch_size=identity.batch_size,
                redis_manager=redis_manager,
                store=self.store if identity.persist else None
            )

            renderer = None
            if self.config.artwork.render_enabled and self.web3 is not None:
                renderer = DescriptorArtworkRenderer(self.web3, self.config.artwork.render_timeout_seconds)

            metrics_calculator = TraitMetricsCalculator.from_file(self.config.artwork.image_data_path)
            if not metrics_calculator.loaded:
                self.logger.warning("No image data loaded, trait metrics will use defaults")

            # Step 4: Reconciler and pipeline
            self.reconciler = Reconciler(
                store=self.store,
                identity_cache=self.identity_cache,
                descriptor_resolver=DescriptorResolver(self.config.contracts.descriptors),
                metrics_calculator=metrics_calculator,
                renderer=renderer,
                block_time_seconds=self.config.chain.block_time_seconds
            )
            self.pipeline = IngestionPipeline(
                self.reconciler,
                max_concurrent_transactions=self.config.ingestion.max_concurrent_transactions,
                batch_size=self.config.ingestion.batch_size
            )

            if self.config.monitoring.metrics_enabled:
                self.metrics_server = MetricsServer(port=self.config.monitoring.metrics_port)

            self.logger.info(
                "Indexer initialization complete",
                extra={
                    "network": self.config.network_name,
                    "renderer": renderer is not None,
                    "handlers": len(self.reconciler.handled_types)
                }
            )

        except Exception as e:
            self.logger.critical(f"Initialization failed: {e}", exc_info=True)
            raise

    async def start(self, records) -> IngestionStats:
        """Run the feed to completion, then the optional post-ingest steps"""
        if self.metrics_server:
            await self.metrics_server.start()
        MetricsServer.set_indexer_info(
            network=self.config.network_name,
            chain_id=self.config.chain.chain_id,
            version=__version__
        )
        MetricsServer.set_start_time(self._start_time)

        stats = await self.pipeline.run(records)
        self.logger.info("Feed drained", extra=stats.to_dict())

        if self.poll_proposals:
            await self.poll_proposal_states()

        if self.evaluate_rewards:
            report = await self.evaluate_reward_cycle()
            if report is not None:
                self.logger.info("reward_cycle_report", extra={"report": report.to_dict()})

        return stats

    async def poll_proposal_states(self):
        """Reconcile on-chain proposal states for proposals that are not terminal"""
        if self.web3 is None:
            self.logger.error("Cannot poll proposal states without an RPC provider")
            return
        poller = ProposalStatePoller(self.web3, self.config.contracts, self.store)
        try:
            observed = await poller.poll()
        except RPCError as e:
            self.logger.error(f"Proposal state polling failed: {e}")
            return
        for event in observed:
            await self.reconciler.process(event)

    async def evaluate_reward_cycle(self) -> Optional[CycleReport]:
        if self.web3 is None:
            self.logger.error("Cannot evaluate the reward cycle without an RPC provider")
            return None
        reader = ClientRewardsReader(self.web3, self.config.contracts)
        engine = RewardCycleEngine(self.store, reader, self.config.rewards)
        try:
            return await engine.evaluate()
        except RPCError as e:
            self.logger.error(f"Reward cycle evaluation failed: {e}")
            return None

    def request_stop(self):
        """Stop reading the feed after the batch in flight"""
        if self.pipeline:
            self.pipeline.stop()

    async def stop(self):
        """Release network resources"""
        self.logger.info("Stopping indexer...")
        self.request_stop()

        if self.identity_client:
            await self.identity_client.close()

        if self.metrics_server:
            await self.metrics_server.stop()

        if self.identity_cache:
            self.logger.info("Identity cache stats", extra=self.identity_cache.stats())

        self.logger.info("Indexer stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Nouns event indexer')
    parser.add_argument(
        '--config',
        type=Path,
        default=Path('config.yaml'),
        help='Path to the YAML configuration file'
    )
    parser.add_argument(
        '--feed',
        default='-',
        help='JSON-lines event feed, "-" reads stdin'
    )
    parser.add_argument(
        '--evaluate-rewards',
        action='store_true',
        help='Evaluate the proposal reward cycle after the feed is drained'
    )
    parser.add_argument(
        '--poll-proposals',
        action='store_true',
        help='Read on-chain proposal states after the feed is drained'
    )
    return parser


async def main(argv=None):
    """
    Main entry point for the indexer.

    Loads configuration, initializes logging and runs one feed.
    """
    args = build_parser().parse_args(argv)

    # Load configuration first (before logging)
    try:
        config = init_config(args.config)
    except (IndexerError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    init_logging(
        log_dir=config.monitoring.log_dir,
        log_level=config.monitoring.log_level
    )

    logger = get_logger("main")
    logger.info(
        "indexer_starting",
        extra={
            "network": config.network_name,
            "feed": args.feed,
            "evaluate_rewards": args.evaluate_rewards,
            "poll_proposals": args.poll_proposals
        }
    )

    service = IndexerService(
        config,
        evaluate_rewards=args.evaluate_rewards,
        poll_proposals=args.poll_proposals
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig):
        logger.info(f"Received signal {sig.name}, finishing current batch...")
        service.request_stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler, sig)

    exit_code = 0
    try:
        await service.initialize()
        await service.start(open_feed(args.feed))
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        await service.stop()

    logger.info("Indexer shutdown complete")
    if exit_code:
        sys.exit(exit_code)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()

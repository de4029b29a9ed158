"""
Event Ingestion Pipeline

Reads decoded events from a JSON-lines feed (or any iterable of records),
groups them by transaction and hands each transaction to the reconciler.
Events of one transaction are applied sequentially in log order; different
transactions run concurrently, bounded by a semaphore.
"""

import asyncio
import concurrent.futures
import json
import sys
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, TextIO, Union

from .events import ChainEvent, decode_event
from .logging_config import get_logger
from .metrics_server import MetricsServer
from .types import EventDecodeError

logger = get_logger("ingestion")

STREAM_BUFFER_LINES = 1000

_SKIP = object()
_END = object()
_STOPPED = object()


@dataclass
class IngestionStats:
    """Counters for one ingestion run"""
    records: int = 0
    rejected: int = 0
    transactions: int = 0
    processed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'records': self.records,
            'rejected': self.rejected,
            'transactions': self.transactions,
            'processed': self.processed,
            'failed': self.failed,
        }


def _parse_line(line: str, line_number: int, name: str) -> Any:
    line = line.strip()
    if not line:
        return _SKIP
    try:
        return json.loads(line)
    except ValueError as e:
        MetricsServer.record_event_rejected()
        logger.warning(
            "feed_line_rejected",
            context={"feed": name, "line": line_number, "error": str(e)}
        )
        return _SKIP


def read_feed(source: Union[str, Path]) -> Iterator[Any]:
    """
    Yield parsed JSON records from a JSON-lines file.

    Blank lines are skipped. Lines that are not valid JSON are logged,
    counted as rejected and skipped.
    """
    with open(source, 'r') as f:
        for line_number, line in enumerate(f, start=1):
            record = _parse_line(line, line_number, str(source))
            if record is not _SKIP:
                yield record


async def read_stream(stream: Optional[TextIO] = None, name: str = "<stdin>") -> AsyncIterator[Any]:
    """
    Yield parsed JSON records from a text stream, stdin by default.

    A daemon thread reads the stream into a bounded queue, so waiting on a
    quiet producer never blocks the event loop or process exit.
    """
    stream = stream if stream is not None else sys.stdin
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue(maxsize=STREAM_BUFFER_LINES)

    def hand_over(item) -> bool:
        try:
            asyncio.run_coroutine_threadsafe(lines.put(item), loop).result()
            return True
        except (RuntimeError, concurrent.futures.CancelledError):
            # Loop closed or shutting down
            return False

    def pump():
        try:
            for line in stream:
                if not hand_over(line):
                    return
        except (OSError, ValueError) as e:
            logger.error("feed_read_failed", context={"feed": name, "error": str(e)})
        hand_over(_END)

    threading.Thread(target=pump, name="feed-reader", daemon=True).start()

    line_number = 0
    while True:
        line = await lines.get()
        if line is _END:
            return
        line_number += 1
        record = _parse_line(line, line_number, name)
        if record is not _SKIP:
            yield record


def open_feed(source: Union[str, Path]):
    """``read_stream`` over stdin for ``-``, otherwise ``read_feed``"""
    if str(source) == "-":
        return read_stream()
    return read_feed(source)


def group_by_transaction(events: Iterable[ChainEvent]) -> "OrderedDict[str, List[ChainEvent]]":
    """Group events by transaction hash, each group sorted by log index"""
    groups: "OrderedDict[str, List[ChainEvent]]" = OrderedDict()
    for event in events:
        groups.setdefault(event.transaction_hash, []).append(event)
    for group in groups.values():
        group.sort(key=lambda e: e.log_index)
    return groups


class IngestionPipeline:
    """
    Drives a feed through the reconciler.

    Args:
        reconciler: Reconciler whose ``process_transaction`` applies one group
        max_concurrent_transactions: Transactions applied concurrently
        batch_size: Records buffered before a batch is grouped and applied
    """

    def __init__(self, reconciler, max_concurrent_transactions: int = 16, batch_size: int = 1000):
        self.reconciler = reconciler
        self.max_concurrent_transactions = max_concurrent_transactions
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(max_concurrent_transactions)
        self._stop_event = asyncio.Event()
        self.stats = IngestionStats()

    def stop(self):
        """
        Finish the batch in flight and stop reading the feed.

        Takes effect while the pipeline is waiting on a quiet feed. Call from
        the event loop thread (e.g. a ``loop.add_signal_handler`` callback).
        """
        self._stop_event.set()

    def _decode(self, raw: Any):
        self.stats.records += 1
        try:
            return decode_event(raw)
        except EventDecodeError as e:
            self.stats.rejected += 1
            MetricsServer.record_event_rejected()
            logger.warning("event_rejected", context={"error": str(e)})
            return None

    async def _apply_transaction(self, events: List[ChainEvent]):
        async with self._semaphore:
            failures = await self.reconciler.process_transaction(events)
        self.stats.processed += len(events) - failures
        self.stats.failed += failures

    async def _apply_batch(self, events: List[ChainEvent]):
        groups = group_by_transaction(events)
        self.stats.transactions += len(groups)
        await asyncio.gather(*(self._apply_transaction(group) for group in groups.values()))

    async def _next_record(self, records: AsyncIterator[Any], stop_wait: asyncio.Future) -> Any:
        """The next record, ``_END`` when drained, or ``_STOPPED`` if stop() came first"""
        pending = asyncio.ensure_future(records.__anext__())
        await asyncio.wait({pending, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        if not pending.done():
            pending.cancel()
            return _STOPPED
        try:
            return pending.result()
        except StopAsyncIteration:
            return _END

    async def run(self, records: Union[Iterable[Any], AsyncIterator[Any]]) -> IngestionStats:
        """
        Apply every record of ``records``.

        Accepts a plain iterable (e.g. ``read_feed(path)``) or an async iterable
        (e.g. ``read_stream()``). Returns the run's counters; individual failures
        never abort the run.
        """
        batch: List[ChainEvent] = []
        feed = _aiter(records)
        stop_wait = asyncio.ensure_future(self._stop_event.wait())

        try:
            while True:
                if self._stop_event.is_set():
                    logger.info("Ingestion stop requested, leaving feed early")
                    break
                raw = await self._next_record(feed, stop_wait)
                if raw is _END:
                    break
                if raw is _STOPPED:
                    continue
                event = self._decode(raw)
                if event is not None:
                    batch.append(event)
                if len(batch) >= self.batch_size:
                    await self._apply_batch(batch)
                    batch = []
        finally:
            stop_wait.cancel()

        if batch:
            await self._apply_batch(batch)

        logger.info("ingestion_complete", context=self.stats.to_dict())
        return self.stats


async def _aiter(records) -> AsyncIterator[Any]:
    if hasattr(records, '__aiter__'):
        async for record in records:
            yield record
    else:
        for record in records:
            yield record

"""
Reconcile a thread's comments from the archive and the live API.

The archive tells us which comment ids exist (including long-removed ones);
the live API tells us their current state but can only be queried by id in
fixed-size batches. A run streams archive pages into a ``CommentLedger``,
queues every newly discovered id in a ``ChunkBuffer`` and looks ids up on
the live side one batch at a time.

A run moves through these states:

    INGESTING -> FLUSHING_ARCHIVE_UNITS -> DRAINING_FINAL_BATCHES
              -> AWAITING_LIVE_UNITS -> DONE

and into ERRORED (absorbing) once an archive or live failure is observed.
Every page merge and live lookup is its own asyncio task; all ledger and
buffer mutation happens on the event loop, so merges never interleave.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from chunk_buffer import ChunkBuffer
from comment_ledger import CommentLedger, CommentRecord, MergeStats, SourceOrigin
from reconcile_errors import (
    ArchiveFetchError,
    ConfigurationError,
    LiveBatchFetchError,
    ReconciliationError,
)

logger = logging.getLogger(__name__)

MIN_COMMENTS = 100
DEFAULT_MAX_COMMENTS_LIMIT = 20000


def constrain_max_comments(value, limit: int = DEFAULT_MAX_COMMENTS_LIMIT) -> int:
    """Clamp a requested comment count into ``[MIN_COMMENTS, limit]``."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return MIN_COMMENTS
    return max(MIN_COMMENTS, min(value, limit))


def _require_positive_int(name: str, value):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


class ReconcileState(Enum):
    INGESTING = "ingesting"
    FLUSHING_ARCHIVE_UNITS = "flushing_archive_units"
    DRAINING_FINAL_BATCHES = "draining_final_batches"
    AWAITING_LIVE_UNITS = "awaiting_live_units"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class ReconcileResult:
    thread_id: str
    ledger: Dict[str, Optional[CommentRecord]]
    last_cursor: Optional[int]
    exhausted: bool
    stats: MergeStats = field(default_factory=MergeStats)
    archive_count: int = 0


class ReconciliationRun:
    """One pass over the archive for a thread, merged into ``ledger``."""

    def __init__(self, archive, live, ledger: CommentLedger, thread_id: str,
                 requested_count: int, cursor: Optional[int] = None,
                 batch_size: Optional[int] = None, dispatch_threshold: float = 0.9,
                 page_size: int = 100):
        _require_positive_int("requested_count", requested_count)
        _require_positive_int("page_size", page_size)
        if batch_size is None:
            batch_size = live.batch_size
        _require_positive_int("batch_size", batch_size)
        if batch_size > live.batch_size:
            raise ConfigurationError(
                f"batch_size {batch_size} exceeds the live source limit of {live.batch_size}"
            )

        self.archive = archive
        self.live = live
        self.ledger = ledger
        self.thread_id = thread_id
        self.requested_count = requested_count
        self.cursor = cursor
        self.page_size = page_size
        self.queue = ChunkBuffer(batch_size, dispatch_threshold)

        self.state: Optional[ReconcileState] = None
        self.transitions: List[ReconcileState] = []
        self.error: Optional[ReconciliationError] = None
        self._live_error: Optional[LiveBatchFetchError] = None
        self._merge_units: List[asyncio.Task] = []
        self._live_units: List[asyncio.Task] = []
        self._oldest_created: Optional[int] = None
        # ids whose archived copy is already in the ledger
        self._archived_ids = {
            r.id for r in ledger.records() if r.source_origin is not SourceOrigin.LIVE
        }

    def _transition(self, state: ReconcileState):
        if self.state is ReconcileState.ERRORED:
            return
        self.state = state
        self.transitions.append(state)
        logger.info(f"[{self.thread_id}] {state.value}")

    def _fail(self, error: ReconciliationError):
        if self.error is None:
            self.error = error
        self._transition(ReconcileState.ERRORED)

    @property
    def live_failed(self) -> bool:
        return self._live_error is not None

    # ---- archive ingestion ----

    def _merge_archive_records(self, records: List[CommentRecord]) -> int:
        count = 0
        for record in records:
            known = self.ledger.has(record.id)
            if self.ledger.merge_archive_record(record):
                count += 1
                if not known:
                    self.queue.push(record.id)

            parent_id = record.parent_id
            if parent_id and parent_id != self.thread_id and not self.ledger.has(parent_id):
                self.ledger.set_placeholder(parent_id)
                self.queue.push(parent_id)

        if not self.live_failed:
            while self.queue.has_near_full_chunk():
                self._dispatch(self.queue.drain_one_chunk())
        return count

    async def _merge_page(self, records: List[CommentRecord]) -> int:
        # yield so the next page request goes out before this one merges
        await asyncio.sleep(0)
        return self._merge_archive_records(records)

    async def _ingest(self) -> bool:
        """
        Fetch archive pages; returns whether the archive ran out.

        The archive cursor is strictly older, so a full page that ends partway
        through a second would hide that second's remaining comments. Records
        sharing the page's oldest ``created_utc`` are held back and the next
        page starts at that second (``before=oldest + 1``). Only ids new to
        the ledger count toward ``requested_count``.
        """
        fetched = 0
        cursor = self.cursor
        while True:
            size = min(self.page_size, self.requested_count - fetched)
            page = await self.archive.fetch_page(self.thread_id, size, cursor)
            records = page.records
            oldest = page.next_cursor
            new = sum(1 for r in records if r.id not in self._archived_ids)
            next_cursor = oldest
            more = records and not page.exhausted and fetched + new < self.requested_count
            if more and oldest is not None:
                kept = [r for r in records if r.created_utc != oldest]
                if kept:
                    records = kept
                    next_cursor = oldest + 1
                else:
                    logger.warning(f"[{self.thread_id}] {len(records)} comments created at {oldest} "
                                   f"fill a whole page; others from that second may be missed")

            self._merge_units.append(asyncio.create_task(self._merge_page(records)))
            for record in records:
                if record.id not in self._archived_ids:
                    self._archived_ids.add(record.id)
                    fetched += 1
                if record.created_utc is not None and (
                        self._oldest_created is None or record.created_utc < self._oldest_created):
                    self._oldest_created = record.created_utc
            logger.debug(f"[{self.thread_id}] archive page: {len(page.records)} comments ({fetched} total)")

            if page.exhausted or not page.records:
                return True
            if fetched >= self.requested_count:
                return False
            if next_cursor is None or (cursor is not None and next_cursor >= cursor):
                logger.warning(f"[{self.thread_id}] archive cursor stopped advancing at {cursor}")
                return True
            cursor = next_cursor

    # ---- live lookups ----

    def _dispatch(self, ids: List[str]):
        self._live_units.append(asyncio.create_task(self._fetch_live_batch(ids)))

    async def _fetch_live_batch(self, ids: List[str]) -> MergeStats:
        stats = MergeStats(requested=len(ids))
        try:
            records = await self.live.fetch_batch(ids)
        except LiveBatchFetchError as e:
            logger.warning(f"[{self.thread_id}] live lookup of {len(ids)} ids failed: {e}")
            if self._live_error is None:
                self._live_error = e
            return stats
        stats.returned = len(records)
        for record in records:
            stats.record(self.ledger.merge_live_record(record))
        return stats

    # ---- coordinator ----

    async def execute(self) -> ReconcileResult:
        self._transition(ReconcileState.INGESTING)
        exhausted = False
        try:
            exhausted = await self._ingest()
        except ArchiveFetchError as e:
            logger.error(f"[{self.thread_id}] archive fetch failed: {e}")
            self._fail(e)

        self._transition(ReconcileState.FLUSHING_ARCHIVE_UNITS)
        archive_counts = await asyncio.gather(*self._merge_units)
        logger.info(f"[{self.thread_id}] archive: {sum(archive_counts)} comments")
        if self.live_failed:
            self._fail(self._live_error)

        self._transition(ReconcileState.DRAINING_FINAL_BATCHES)
        if self.state is not ReconcileState.ERRORED:
            while not self.queue.is_empty():
                self._dispatch(self.queue.drain_one_chunk())

        self._transition(ReconcileState.AWAITING_LIVE_UNITS)
        stats = MergeStats()
        for batch_stats in await asyncio.gather(*self._live_units):
            stats = stats + batch_stats
        logger.info(f"[{self.thread_id}] live: {stats.returned} of {stats.requested} ids returned, "
                    f"{stats.removed} removed, {stats.deleted} deleted")
        if self.live_failed:
            self._fail(self._live_error)

        result = ReconcileResult(
            thread_id=self.thread_id,
            ledger=self.ledger.snapshot(),
            last_cursor=self._oldest_created,
            exhausted=exhausted,
            stats=stats,
            archive_count=sum(archive_counts),
        )
        if self.state is ReconcileState.ERRORED:
            self.error.partial_result = result
            raise self.error
        self._transition(ReconcileState.DONE)
        return result


class ThreadSession:
    """Ledger for one thread, grown by an initial load and "load more" runs.

    Only one load may run at a time per session.
    """

    def __init__(self, archive, live, thread_id: str, batch_size: Optional[int] = None,
                 dispatch_threshold: float = 0.9, page_size: int = 100,
                 max_comments_limit: int = DEFAULT_MAX_COMMENTS_LIMIT):
        self.archive = archive
        self.live = live
        self.thread_id = thread_id
        self.batch_size = batch_size
        self.dispatch_threshold = dispatch_threshold
        self.page_size = page_size
        self.max_comments_limit = max_comments_limit

        self.ledger = CommentLedger()
        self.last_cursor: Optional[int] = None
        self.exhausted = False
        self.loaded = False
        self.stats = MergeStats()
        self.archive_count = 0
        self._active = False

    def result(self) -> ReconcileResult:
        return ReconcileResult(
            thread_id=self.thread_id,
            ledger=self.ledger.snapshot(),
            last_cursor=self.last_cursor,
            exhausted=self.exhausted,
            stats=self.stats,
            archive_count=self.archive_count,
        )

    def _absorb(self, result: ReconcileResult):
        if result.last_cursor is not None:
            self.last_cursor = result.last_cursor
        self.exhausted = self.exhausted or result.exhausted
        self.stats = self.stats + result.stats
        self.archive_count += result.archive_count
        self.loaded = True

    async def _run(self, count: int, cursor: Optional[int]) -> ReconcileResult:
        if self._active:
            raise RuntimeError(f"A load is already running for thread {self.thread_id}")
        self._active = True
        try:
            run = ReconciliationRun(
                self.archive, self.live, self.ledger, self.thread_id,
                constrain_max_comments(count, self.max_comments_limit),
                cursor=cursor, batch_size=self.batch_size,
                dispatch_threshold=self.dispatch_threshold, page_size=self.page_size,
            )
            try:
                result = await run.execute()
            except ReconciliationError as e:
                if e.partial_result is not None:
                    self._absorb(e.partial_result)
                raise
            self._absorb(result)
            return result
        finally:
            self._active = False

    async def load(self, count: int) -> ReconcileResult:
        """Load the newest ``count`` archived comments."""
        return await self._run(count, None)

    async def load_more(self, count: int) -> ReconcileResult:
        """
        Load ``count`` more comments, continuing from the oldest second loaded
        so far. That second is fetched again since its page may have been cut
        short; comments already in the ledger are skipped.
        """
        if not self.loaded:
            return await self.load(count)
        if self.exhausted:
            logger.info(f"[{self.thread_id}] archive already exhausted")
            return self.result()
        cursor = self.last_cursor + 1 if self.last_cursor is not None else None
        return await self._run(count, cursor)

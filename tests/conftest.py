"""In-memory archive and live sources for reconciliation tests."""

import asyncio
import copy
from typing import Dict, List, Optional, Tuple

from archive_source import ArchivePage
from comment_ledger import CommentRecord, SourceOrigin
from post_reconciler import PostRecord
from reconcile_errors import ArchiveFetchError, LiveBatchFetchError

THREAD_ID = "thr1"


def comment(cid, parent=THREAD_ID, body="some text", score=1, created=None, origin=SourceOrigin.ARCHIVE,
            edited=False):
    return CommentRecord(
        id=str(cid),
        parent_id=str(parent),
        body=body,
        score=score,
        edited=edited,
        created_utc=created,
        author=f"user_{cid}",
        source_origin=origin,
    )


def archive_comments(n, start=1, parent=THREAD_ID, newest=10_000):
    """``n`` comments newest first, ids ``start..start+n-1``, created 10s apart."""
    return [comment(i, parent=parent, created=newest - 10 * k) for k, i in enumerate(range(start, start + n))]


class FakeArchive:
    """
    Pages over a fixed newest-first list; ``before`` is strictly older.

    ``hold=(comment_id, event)`` delays any page carrying that comment until
    the event is set. ``drained`` is set once an exhausted page is served.
    """

    def __init__(self, records: List[CommentRecord], fail_on_call: Optional[int] = None,
                 post: Optional[PostRecord] = None, gate: Optional[asyncio.Event] = None,
                 hold: Optional[Tuple[str, asyncio.Event]] = None):
        self.records = records
        self.fail_on_call = fail_on_call
        self.post = post
        self.gate = gate
        self.hold = hold
        self.drained = asyncio.Event()
        self.calls = []
        self.post_calls = 0

    async def fetch_page(self, thread_id, count, cursor=None):
        self.calls.append((thread_id, count, cursor))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.fail_on_call is not None and len(self.calls) >= self.fail_on_call:
            raise ArchiveFetchError("archive unavailable", status_code=503)
        pool = [r for r in self.records if cursor is None or r.created_utc < cursor]
        page = [copy.copy(r) for r in pool[:count]]
        if self.hold is not None and any(r.id == self.hold[0] for r in page):
            await self.hold[1].wait()
        created = [r.created_utc for r in page]
        exhausted = len(page) < count
        if exhausted:
            self.drained.set()
        return ArchivePage(records=page, next_cursor=min(created) if created else cursor,
                           exhausted=exhausted)

    async def fetch_post(self, thread_id):
        self.post_calls += 1
        return copy.copy(self.post)


class FakeLive:
    """
    Returns whatever it knows about the requested ids.

    With ``gate`` set, lookups wait for it. ``served`` is set after each answer.
    """

    def __init__(self, records: Dict[str, CommentRecord], batch_size=100, fail=False,
                 help_url=None, post: Optional[PostRecord] = None, gate: Optional[asyncio.Event] = None):
        self.records = records
        self.batch_size = batch_size
        self.fail = fail
        self.help_url = help_url
        self.post = post
        self.gate = gate
        self.served = asyncio.Event()
        self.calls = []

    async def fetch_batch(self, ids):
        assert len(ids) <= self.batch_size
        self.calls.append(list(ids))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if self.fail:
            raise LiveBatchFetchError("rate limited", ids=ids, help_url=self.help_url)
        found = [copy.copy(self.records[i]) for i in ids if i in self.records]
        self.served.set()
        return found

    async def fetch_post(self, thread_id):
        return copy.copy(self.post)


def live_copy(records, **changes):
    """Live versions of archive records (same content unless changed)."""
    out = {}
    for r in records:
        c = copy.copy(r)
        c.source_origin = SourceOrigin.LIVE
        for k, v in changes.items():
            setattr(c, k, v)
        out[c.id] = c
    return out

"""
Live collaborator: current comment state from the Reddit API via PRAW.

Comments can only be looked up by id, at most ``batch_size`` per request.
A PRAW client is not thread safe, so lookups running in worker threads take
turns on it.
"""

import asyncio
import logging
import threading
from typing import Iterable, List, Optional

import praw
from praw.exceptions import PRAWException
from prawcore.exceptions import PrawcoreException, TooManyRequests

from archive_source import strip_fullname
from comment_ledger import CommentRecord, SourceOrigin
from post_reconciler import PostRecord
from reconcile_errors import LiveBatchFetchError, LiveSourceError

logger = logging.getLogger(__name__)

REDDIT_BATCH_SIZE = 100


def init_reddit(client_id: str, client_secret: str, user_agent: str,
                request_timeout: float = 30) -> praw.Reddit:
    """Build an application-only (read-only) Reddit client."""
    return praw.Reddit(
        client_id=client_id,
        client_secret=client_secret,
        user_agent=user_agent,
        requestor_kwargs={"timeout": request_timeout},
        check_for_async=False,
    )


def _author_name(thing) -> Optional[str]:
    author = getattr(thing, "author", None)
    return str(author) if author else "[deleted]"


class RedditLiveSource:
    """Batched lookups against the authoritative live API."""

    def __init__(self, reddit: praw.Reddit, batch_size: int = REDDIT_BATCH_SIZE,
                 help_url: Optional[str] = None):
        self.reddit = reddit
        self.batch_size = batch_size
        self.help_url = help_url
        self._lock = threading.Lock()

    @staticmethod
    def parse_comment(comment) -> CommentRecord:
        created = getattr(comment, "created_utc", None)
        return CommentRecord(
            id=comment.id,
            parent_id=strip_fullname(comment.parent_id),
            body=comment.body or "",
            score=int(comment.score or 0),
            edited=comment.edited or False,
            created_utc=int(created) if created is not None else None,
            author=_author_name(comment),
            source_origin=SourceOrigin.LIVE,
        )

    def _wrap_error(self, e: Exception, ids: Iterable[str]) -> LiveBatchFetchError:
        if isinstance(e, TooManyRequests):
            return LiveBatchFetchError("Reddit API rate limit reached", ids=ids, help_url=self.help_url)
        return LiveBatchFetchError(f"Reddit API request failed: {e.__class__.__name__}: {e}", ids=ids)

    def get_batch(self, ids: List[str]) -> List[CommentRecord]:
        """Blocking lookup; see ``fetch_batch``."""
        if len(ids) > self.batch_size:
            raise ValueError(f"At most {self.batch_size} ids per lookup, got {len(ids)}")
        if not ids:
            return []
        fullnames = [f"t1_{cid}" for cid in ids]
        try:
            with self._lock:
                comments = list(self.reddit.info(fullnames=fullnames))
        except (PrawcoreException, PRAWException) as e:
            raise self._wrap_error(e, ids) from e
        logger.debug(f"Live lookup: {len(comments)} of {len(ids)} ids returned")
        return [self.parse_comment(c) for c in comments]

    async def fetch_batch(self, ids: List[str]) -> List[CommentRecord]:
        return await asyncio.to_thread(self.get_batch, list(ids))

    def get_post(self, thread_id: str) -> PostRecord:
        try:
            with self._lock:
                return self._load_post(thread_id)
        except (PrawcoreException, PRAWException) as e:
            help_url = self.help_url if isinstance(e, TooManyRequests) else None
            raise LiveSourceError(f"Could not load post {thread_id}: {e.__class__.__name__}: {e}",
                                  help_url=help_url) from e

    def _load_post(self, thread_id: str) -> PostRecord:
        # attribute access is what triggers the request
        submission = self.reddit.submission(id=thread_id)
        return PostRecord(
            id=submission.id,
            title=submission.title or "",
            selftext=submission.selftext or "",
            author=_author_name(submission),
            subreddit=str(submission.subreddit),
            score=int(submission.score or 0),
            num_comments=int(submission.num_comments or 0),
            created_utc=int(submission.created_utc),
            edited=submission.edited or False,
            permalink=submission.permalink,
            removed_by_category=getattr(submission, "removed_by_category", None),
        )

    async def fetch_post(self, thread_id: str) -> PostRecord:
        return await asyncio.to_thread(self.get_post, thread_id)

"""
Restore a thread's opening post.

The live post wins for score, comment count and edit state. When the live
copy is deleted, removed or edited, the archived copy is consulted for the
original title and selftext.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple, Union

from comment_ledger import is_deleted, is_removed
from reconcile_errors import ReconciliationError

logger = logging.getLogger(__name__)


@dataclass
class PostRecord:
    id: str
    title: str = ""
    selftext: str = ""
    author: Optional[str] = None
    subreddit: Optional[str] = None
    score: int = 0
    num_comments: int = 0
    created_utc: Optional[int] = None
    edited: Union[bool, float] = False
    permalink: Optional[str] = None
    removed_by_category: Optional[str] = None
    edited_selftext: Optional[str] = None
    removed: bool = False
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostRecord":
        created = data.get("created_utc")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            selftext=data.get("selftext") or "",
            author=data.get("author"),
            subreddit=data.get("subreddit"),
            score=int(data.get("score") or 0),
            num_comments=int(data.get("num_comments") or 0),
            created_utc=int(created) if created is not None else None,
            edited=data.get("edited") or False,
            permalink=data.get("permalink"),
            removed_by_category=data.get("removed_by_category"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def reconcile_post(live, archive, thread_id: str) -> Tuple[PostRecord, List[ReconciliationError]]:
    """Return the best available post and any non-fatal errors met on the way."""
    errors: List[ReconciliationError] = []

    try:
        post = await live.fetch_post(thread_id)
    except ReconciliationError as e:
        errors.append(e)
        logger.warning(f"Live post {thread_id} unavailable ({e}); trying archive")
        try:
            archived = await archive.fetch_post(thread_id)
        except ReconciliationError as archive_error:
            errors.append(archive_error)
            archived = None
        if archived is None:
            # keep comments displayable
            return PostRecord(id=thread_id), errors
        archived.removed = True
        return archived, errors

    edited_selftext = None
    if is_deleted(post.selftext):
        post.deleted = True
    elif is_removed(post.selftext) or post.removed_by_category:
        post.removed = True
    elif post.edited:
        edited_selftext = post.selftext

    if not (post.deleted or post.removed or post.edited):
        return post, errors

    try:
        archived = await archive.fetch_post(thread_id)
    except ReconciliationError as e:
        errors.append(e)
        logger.warning(f"Archived post {thread_id} unavailable: {e}")
        return post, errors
    if archived is None:
        return post, errors

    if post.deleted or post.removed:
        archived.score = post.score
        archived.num_comments = post.num_comments
        archived.edited = post.edited
        archived.deleted = post.deleted
        archived.removed = post.removed
        return archived, errors

    if edited_selftext != archived.selftext and not is_removed(archived.selftext):
        post.selftext = archived.selftext
        post.edited_selftext = edited_selftext
    return post, errors

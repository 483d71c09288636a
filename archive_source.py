"""
Archive collaborator: a Pushshift-compatible comment search API.

Pages come back newest first. The cursor is a ``created_utc`` value and a
request with ``before=cursor`` only returns comments strictly older than it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from comment_ledger import CommentRecord, SourceOrigin
from post_reconciler import PostRecord
from reconcile_errors import ArchiveFetchError

logger = logging.getLogger(__name__)

DEFAULT_COMMENT_URL = "https://api.pullpush.io/reddit/search/comment/"
DEFAULT_SUBMISSION_URL = "https://api.pullpush.io/reddit/search/submission/"


def strip_fullname(value: Optional[str]) -> str:
    """``t1_abc`` / ``t3_abc`` -> ``abc``."""
    if not value:
        return ""
    value = str(value)
    if len(value) > 3 and value[0] == "t" and value[2] == "_":
        return value[3:]
    return value


def is_transient(error: BaseException) -> bool:
    """Worth retrying: connection problems, timeouts, 5xx and 429 responses."""
    if isinstance(error, requests.HTTPError):
        status = error.response.status_code if error.response is not None else None
        return status is not None and (status >= 500 or status == 429)
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


@dataclass
class ArchivePage:
    records: List[CommentRecord] = field(default_factory=list)
    next_cursor: Optional[int] = None
    exhausted: bool = False


class PushshiftArchive:
    """Fetch archived comments and posts for a thread."""

    def __init__(self, comment_url: str = DEFAULT_COMMENT_URL,
                 submission_url: str = DEFAULT_SUBMISSION_URL,
                 page_size: int = 100, request_timeout: float = 30,
                 max_attempts: int = 5, backoff: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.comment_url = comment_url
        self.submission_url = submission_url
        self.page_size = page_size
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self._retrying = Retrying(
            wait=wait_exponential(multiplier=backoff, min=2 * backoff, max=30 * backoff),
            stop=stop_after_attempt(max_attempts),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )

    def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.get(url, params=params, timeout=self.request_timeout)
        response.raise_for_status()
        return response.json()

    def _request(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._retrying.copy()(self._get_json, url, params)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ArchiveFetchError(f"Archive request failed ({status}): {url}", status_code=status) from e
        except (requests.RequestException, ValueError) as e:
            raise ArchiveFetchError(f"Archive request failed: {e}") from e

    @staticmethod
    def parse_comment(data: Dict[str, Any]) -> CommentRecord:
        created = data.get("created_utc")
        return CommentRecord(
            id=str(data["id"]),
            parent_id=strip_fullname(data.get("parent_id")),
            body=data.get("body") or "",
            score=int(data.get("score") or 0),
            edited=data.get("edited") or False,
            created_utc=int(created) if created is not None else None,
            author=data.get("author"),
            source_origin=SourceOrigin.ARCHIVE,
        )

    def get_page(self, thread_id: str, count: int, cursor: Optional[int] = None) -> ArchivePage:
        """Blocking page fetch; see ``fetch_page``."""
        size = min(count, self.page_size)
        params = {
            "link_id": thread_id,
            "size": size,
            "sort": "desc",
            "sort_type": "created_utc",
        }
        if cursor is not None:
            params["before"] = cursor
        payload = self._request(self.comment_url, params)
        records = [self.parse_comment(c) for c in payload.get("data", [])]
        created = [r.created_utc for r in records if r.created_utc is not None]
        next_cursor = min(created) if created else cursor
        logger.debug(f"Archive page for {thread_id}: {len(records)} comments (before={cursor})")
        return ArchivePage(records=records, next_cursor=next_cursor, exhausted=len(records) < size)

    async def fetch_page(self, thread_id: str, count: int, cursor: Optional[int] = None) -> ArchivePage:
        return await asyncio.to_thread(self.get_page, thread_id, count, cursor)

    def get_post(self, thread_id: str) -> Optional[PostRecord]:
        payload = self._request(self.submission_url, {"ids": thread_id})
        data = payload.get("data") or []
        if not data:
            return None
        return PostRecord.from_dict(data[0])

    async def fetch_post(self, thread_id: str) -> Optional[PostRecord]:
        return await asyncio.to_thread(self.get_post, thread_id)

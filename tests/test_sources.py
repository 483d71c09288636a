"""
Tests for the archive and live collaborators.

HTTP is mocked with requests-mock and the PRAW client with unittest.mock,
so no network calls are made.
"""

import asyncio
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
import requests_mock
from prawcore.exceptions import NotFound, ServerError, TooManyRequests

from archive_source import (
    DEFAULT_COMMENT_URL,
    DEFAULT_SUBMISSION_URL,
    PushshiftArchive,
    is_transient,
    strip_fullname,
)
from comment_ledger import SourceOrigin
from live_source import RedditLiveSource
from reconcile_errors import ArchiveFetchError, LiveBatchFetchError, LiveSourceError


def fake_response(status):
    return MagicMock(status_code=status, headers={}, text="")


def reddit_comment(cid, parent="t3_thr1", body="hi", score=5, edited=False, author="bob"):
    return SimpleNamespace(id=cid, parent_id=parent, body=body, score=score, edited=edited,
                           created_utc=1700000000.0, author=author)


class TestStripFullname:
    def test_prefixes_removed(self):
        assert strip_fullname("t1_abc") == "abc"
        assert strip_fullname("t3_xyz") == "xyz"
        assert strip_fullname("abc") == "abc"
        assert strip_fullname(None) == ""


class TestPushshiftArchive:
    def make_archive(self, **kwargs):
        kwargs.setdefault("max_attempts", 2)
        return PushshiftArchive(backoff=0, **kwargs)

    @pytest.mark.asyncio
    async def test_fetch_page_parses_comments(self):
        data = {"data": [
            {"id": "c2", "parent_id": "t1_c1", "body": "reply", "score": 3,
             "created_utc": 1700000200, "author": "amy"},
            {"id": "c1", "parent_id": "t3_thr1", "body": "[removed]", "score": 1,
             "created_utc": 1700000100, "author": "bob"},
        ]}
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, json=data)
            page = await self.make_archive().fetch_page("thr1", 2, cursor=1700000300)

            qs = m.last_request.qs
            assert qs["link_id"] == ["thr1"]
            assert qs["size"] == ["2"]
            assert qs["before"] == ["1700000300"]
            assert qs["sort"] == ["desc"]

        assert [r.id for r in page.records] == ["c2", "c1"]
        assert page.records[0].parent_id == "c1"
        assert page.records[1].parent_id == "thr1"
        assert page.records[0].source_origin is SourceOrigin.ARCHIVE
        assert page.next_cursor == 1700000100
        assert not page.exhausted

    @pytest.mark.asyncio
    async def test_short_page_is_exhausted(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, json={"data": []})
            page = await self.make_archive().fetch_page("thr1", 100)
            assert "before" not in m.last_request.qs

        assert page.records == []
        assert page.exhausted
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_count_capped_by_page_size(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, json={"data": []})
            await self.make_archive(page_size=25).fetch_page("thr1", 500)
            assert m.last_request.qs["size"] == ["25"]

    @pytest.mark.asyncio
    async def test_server_error_retried_then_raised(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, status_code=503)
            with pytest.raises(ArchiveFetchError) as excinfo:
                await self.make_archive().fetch_page("thr1", 100)
            assert m.call_count == 2
        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, status_code=404)
            with pytest.raises(ArchiveFetchError) as excinfo:
                await self.make_archive(max_attempts=5).fetch_page("thr1", 100)
            assert m.call_count == 1
        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_rate_limit_and_timeout_retried(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_COMMENT_URL, [
                {"status_code": 429},
                {"exc": requests.exceptions.ConnectTimeout},
                {"json": {"data": []}},
            ])
            page = await self.make_archive(max_attempts=5).fetch_page("thr1", 100)
            assert m.call_count == 3
        assert page.exhausted

    def test_transient_errors(self):
        assert is_transient(requests.ConnectionError())
        assert is_transient(requests.Timeout())
        assert is_transient(requests.HTTPError(response=fake_response(502)))
        assert not is_transient(requests.HTTPError(response=fake_response(403)))
        assert not is_transient(ValueError("bad json"))

    @pytest.mark.asyncio
    async def test_fetch_post(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_SUBMISSION_URL, json={"data": [
                {"id": "thr1", "title": "Title", "selftext": "original", "score": 2,
                 "num_comments": 4, "created_utc": 1700000000}
            ]})
            post = await self.make_archive().fetch_post("thr1")
            assert m.last_request.qs["ids"] == ["thr1"]
        assert post.title == "Title"
        assert post.selftext == "original"

    @pytest.mark.asyncio
    async def test_fetch_post_missing(self):
        with requests_mock.Mocker() as m:
            m.get(DEFAULT_SUBMISSION_URL, json={"data": []})
            assert await self.make_archive().fetch_post("thr1") is None


class TestRedditLiveSource:
    @pytest.mark.asyncio
    async def test_fetch_batch_uses_fullnames(self):
        reddit = MagicMock()
        reddit.info.return_value = iter([
            reddit_comment("a", parent="t1_p", edited=1700000500.0),
            reddit_comment("b", author=None, body="[deleted]"),
        ])
        live = RedditLiveSource(reddit)

        records = await live.fetch_batch(["a", "b", "c"])

        reddit.info.assert_called_once_with(fullnames=["t1_a", "t1_b", "t1_c"])
        assert [r.id for r in records] == ["a", "b"]
        assert records[0].parent_id == "p"
        assert records[0].edited == 1700000500.0
        assert records[0].source_origin is SourceOrigin.LIVE
        assert records[1].parent_id == "thr1"
        assert records[1].author == "[deleted]"

    def test_batch_limit_enforced(self):
        live = RedditLiveSource(MagicMock(), batch_size=2)
        with pytest.raises(ValueError):
            live.get_batch(["a", "b", "c"])

    def test_empty_batch_skips_request(self):
        reddit = MagicMock()
        assert RedditLiveSource(reddit).get_batch([]) == []
        reddit.info.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_limit_carries_help_url(self):
        reddit = MagicMock()
        reddit.info.side_effect = TooManyRequests(fake_response(429))
        live = RedditLiveSource(reddit, help_url="https://example.org/rate-limit")

        with pytest.raises(LiveBatchFetchError) as excinfo:
            await live.fetch_batch(["a"])

        assert excinfo.value.help_url == "https://example.org/rate-limit"
        assert excinfo.value.ids == ["a"]

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        reddit = MagicMock()
        reddit.info.side_effect = ServerError(fake_response(500))
        live = RedditLiveSource(reddit, help_url="https://example.org/rate-limit")

        with pytest.raises(LiveBatchFetchError) as excinfo:
            await live.fetch_batch(["a"])

        assert excinfo.value.help_url is None

    @pytest.mark.asyncio
    async def test_fetch_post(self):
        reddit = MagicMock()
        reddit.submission.return_value = SimpleNamespace(
            id="thr1", title="T", selftext="body", author="amy", subreddit="AskReddit",
            score=10, num_comments=3, created_utc=1700000000.0, edited=False,
            permalink="/r/AskReddit/comments/thr1/t/", removed_by_category=None,
        )
        post = await RedditLiveSource(reddit).fetch_post("thr1")

        reddit.submission.assert_called_once_with(id="thr1")
        assert post.subreddit == "AskReddit"
        assert post.num_comments == 3

    @pytest.mark.asyncio
    async def test_fetch_post_not_found(self):
        reddit = MagicMock()
        reddit.submission.side_effect = NotFound(fake_response(404))
        with pytest.raises(LiveSourceError):
            await RedditLiveSource(reddit).fetch_post("thr1")

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_client_one_at_a_time(self):
        state = {"active": 0, "max_active": 0}
        guard = threading.Lock()

        def info(fullnames):
            with guard:
                state["active"] += 1
                state["max_active"] = max(state["max_active"], state["active"])
            time.sleep(0.02)
            with guard:
                state["active"] -= 1
            return iter([reddit_comment(name[3:]) for name in fullnames])

        reddit = MagicMock()
        reddit.info.side_effect = info
        live = RedditLiveSource(reddit, batch_size=2)

        batches = await asyncio.gather(*(live.fetch_batch([f"c{i}"]) for i in range(4)))

        assert [b[0].id for b in batches] == ["c0", "c1", "c2", "c3"]
        assert reddit.info.call_count == 4
        assert state["max_active"] == 1

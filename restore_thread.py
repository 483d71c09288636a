#!/usr/bin/env python3
"""
Restore Reddit threads, including removed and deleted comments.
- Configurable via YAML file
- Comments discovered from the archive, current state checked against the Reddit API
- Optional "load more" rounds for threads larger than one load
- Writes JSONL and Parquet (flat), JSON and Markdown (nested tree)
- Structured logging with run tracking
"""

import os
import json
import sys
import signal
import uuid
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional
import pandas as pd
import yaml
from tqdm import tqdm

from archive_source import PushshiftArchive, DEFAULT_COMMENT_URL, DEFAULT_SUBMISSION_URL
from live_source import RedditLiveSource, init_reddit, REDDIT_BATCH_SIZE
from post_reconciler import reconcile_post
from reconcile_errors import ConfigurationError, ReconciliationError
from reconciler import ThreadSession, ReconcileResult, DEFAULT_MAX_COMMENTS_LIMIT
from thread_tree import build_tree, count_flags, to_markdown


class RestoreConfig:
    """Configuration management for the thread restorer."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def get(self, key_path: str, default=None):
        """Get configuration value using dot notation (e.g., 'reconcile.batch_size')."""
        keys = key_path.split('.')
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


class RunMetadata:
    """Manages run metadata and statistics."""

    def __init__(self, run_id: str, run_dir: Path, config: Dict[str, Any]):
        self.run_id = run_id
        self.run_dir = run_dir
        self.config_snapshot = config.copy()
        self.start_time = datetime.now(timezone.utc)
        self.end_time = None
        self.duration = None
        self.threads_processed = 0
        self.comments_collected = 0
        self.removed = 0
        self.deleted = 0
        self.exit_status = "running"
        self.files_written = []
        self.errors = []

    def add_file(self, filepath: Path):
        """Record a file that was written during this run."""
        if str(filepath) not in self.files_written:
            self.files_written.append(str(filepath))

    def add_error(self, thread_id: str, error: Exception):
        self.errors.append({
            "thread_id": thread_id,
            "type": error.__class__.__name__,
            "message": str(error),
            "help_url": getattr(error, "help_url", None),
        })

    def finish(self, exit_status: str = "completed"):
        """Mark the run as finished and calculate duration."""
        self.end_time = datetime.now(timezone.utc)
        self.duration = (self.end_time - self.start_time).total_seconds()
        self.exit_status = exit_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert metadata to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration,
            "threads_processed": self.threads_processed,
            "comments_collected": self.comments_collected,
            "removed": self.removed,
            "deleted": self.deleted,
            "exit_status": self.exit_status,
            "errors": self.errors,
            "files_written": self.files_written,
            "config_snapshot": self.config_snapshot
        }

    def save(self):
        """Save metadata to JSON file."""
        metadata_file = self.run_dir / "metadata.json"
        self.add_file(metadata_file)
        with open(metadata_file, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)


class ThreadRestorer:
    """Restore each configured thread with structured logging and run management."""

    def __init__(self, config_path: str = "config.yaml", thread_ids: Optional[List[str]] = None):
        self.config = RestoreConfig(config_path)
        self.thread_ids = thread_ids or self.config.get("threads", []) or []
        self.run_id = self._generate_run_id()
        self.run_dir = self._setup_run_directory()
        self.metadata = RunMetadata(self.run_id, self.run_dir, self.config.config)
        self.logger = self._setup_logging()
        self.archive = None
        self.live = None
        self.stop_flag = {"stop": False}
        self._post = None

    def _generate_run_id(self) -> str:
        """Generate unique run ID using timestamp and UUID."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        short_uuid = str(uuid.uuid4())[:8]
        return f"{timestamp}_{short_uuid}"

    def _setup_run_directory(self) -> Path:
        """Create run-specific directory."""
        base_dir = Path(self.config.get("output.base_dir", "restored_threads"))
        if len(self.thread_ids) <= 3:
            threads_str = "+".join(self.thread_ids) or "none"
        else:
            threads_str = f"{'+'.join(self.thread_ids[:2])}+{len(self.thread_ids) - 2}more"
        run_dir = base_dir / f"run_{self.run_id}_{threads_str}"
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging with run ID."""
        logger = logging.getLogger(f"thread_restorer_{self.run_id}")
        logger.setLevel(logging.INFO)

        # Clear any existing handlers
        logger.handlers.clear()

        log_file = self.run_dir / "restore.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

        console_handler = logging.StreamHandler()
        console_formatter = logging.Formatter(
            f'[{self.run_id[:8]}] %(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        # reconciliation modules log through their own module loggers
        for name in ("reconciler", "archive_source", "live_source", "post_reconciler"):
            module_logger = logging.getLogger(name)
            module_logger.setLevel(logging.INFO)
            module_logger.handlers.clear()
            module_logger.addHandler(file_handler)

        self.metadata.add_file(log_file)
        return logger

    def _init_sources(self):
        """Initialize the archive client and the authorized Reddit client."""
        client_id = os.getenv(
            self.config.get("reddit_api.client_id_env", "REDDIT_CLIENT_ID")
        )
        client_secret = os.getenv(
            self.config.get("reddit_api.client_secret_env", "REDDIT_CLIENT_SECRET")
        )
        user_agent = os.getenv(
            self.config.get("reddit_api.user_agent_env", "REDDIT_USER_AGENT"),
            self.config.get("default_user_agent", "thread-restorer:v1.0")
        )

        if not client_id or not client_secret or "YOUR_" in (client_id + client_secret):
            raise ConfigurationError("Please set REDDIT_CLIENT_ID and REDDIT_CLIENT_SECRET environment variables")

        self.logger.info(f"Initializing Reddit API client with user agent: {user_agent}")
        reddit = init_reddit(
            client_id, client_secret, user_agent,
            request_timeout=self.config.get("reddit_api.request_timeout", 30),
        )
        live = RedditLiveSource(
            reddit,
            batch_size=self.config.get("reddit_api.batch_size", REDDIT_BATCH_SIZE),
            help_url=self.config.get("reddit_api.help_url"),
        )
        archive = PushshiftArchive(
            comment_url=self.config.get("archive.comment_url", DEFAULT_COMMENT_URL),
            submission_url=self.config.get("archive.submission_url", DEFAULT_SUBMISSION_URL),
            page_size=self.config.get("archive.page_size", 100),
            request_timeout=self.config.get("archive.request_timeout", 30),
            max_attempts=self.config.get("archive.max_attempts", 5),
            backoff=self.config.get("archive.backoff", 1.0),
        )
        return archive, live

    def write_jsonl(self, rows: List[Dict], dest: Path):
        """Write comments to JSONL file."""
        with open(dest, "w", encoding="utf-8") as f:
            for r in rows:
                f.write(json.dumps(r, ensure_ascii=False) + "\n")
        self.metadata.add_file(dest)

    def write_parquet(self, rows: List[Dict], dest: Path):
        """Write comments to Parquet file."""
        if not rows:
            return
        df = pd.DataFrame(rows)
        # edited is False or a timestamp; keep one column type
        df["edited"] = df["edited"].astype(str)
        df.to_parquet(dest, index=False)
        self.metadata.add_file(dest)

    def write_thread(self, thread_id: str, post: Dict[str, Any], result: ReconcileResult):
        """Write flat and nested outputs for one thread."""
        thread_dir = self.run_dir / thread_id
        thread_dir.mkdir(parents=True, exist_ok=True)

        rows = [
            {"thread_id": thread_id, **record.to_dict()}
            for record in result.ledger.values() if record is not None
        ]
        self.write_jsonl(rows, thread_dir / "comments.jsonl")
        if self.config.get("output.write_parquet", True):
            self.write_parquet(rows, thread_dir / "comments.parquet")

        root_id = self.config.get("output.root_comment") or thread_id
        tree = build_tree(
            result.ledger, root_id,
            sort=self.config.get("output.sort", "top"),
            comment_filter=self.config.get("output.filter", "all"),
        )
        counts = count_flags(result.ledger)
        thread = {
            "post": post,
            "counts": counts,
            "exhausted": result.exhausted,
            "last_cursor": result.last_cursor,
            "comments": tree,
        }
        thread_json = thread_dir / "thread.json"
        with open(thread_json, "w", encoding="utf-8") as f:
            json.dump(thread, f, ensure_ascii=False, indent=2)
        self.metadata.add_file(thread_json)

        if self.config.get("output.write_markdown", True):
            thread_md = thread_dir / "thread.md"
            thread_md.write_text(to_markdown(post, tree), encoding="utf-8")
            self.metadata.add_file(thread_md)

        self.metadata.comments_collected += len(rows)
        self.metadata.removed += counts["removed"]
        self.metadata.deleted += counts["deleted"]
        self.logger.info(f"Thread {thread_id}: {counts['total']} comments "
                         f"({counts['removed']} removed, {counts['deleted']} deleted, "
                         f"{counts['placeholders']} unavailable)")

    async def restore(self, thread_id: str):
        """Reconcile one thread; returns (post dict, result)."""
        post, post_errors = await reconcile_post(self.live, self.archive, thread_id)
        self._post = post.to_dict()
        for e in post_errors:
            self.logger.warning(f"Post {thread_id}: {e}" + (f" (see {e.help_url})" if e.help_url else ""))
            self.metadata.add_error(thread_id, e)

        session = ThreadSession(
            self.archive, self.live, thread_id,
            batch_size=self.config.get("reconcile.batch_size"),
            dispatch_threshold=self.config.get("reconcile.dispatch_threshold", 0.9),
            page_size=self.config.get("archive.page_size", 100),
            max_comments_limit=self.config.get("reconcile.max_comments_limit", DEFAULT_MAX_COMMENTS_LIMIT),
        )
        result = await session.load(self.config.get("reconcile.max_comments", 1000))
        for _ in range(self.config.get("reconcile.load_more_rounds", 0)):
            if session.exhausted or self.stop_flag["stop"]:
                break
            self.logger.info(f"Loading more comments for {thread_id} (before {session.last_cursor})")
            await session.load_more(self.config.get("reconcile.load_more_count", 1000))
            result = session.result()
        return post.to_dict(), result

    def process_thread(self, thread_id: str):
        """Restore a thread and write its outputs, keeping partial data on failure."""
        self._post = None
        try:
            post, result = asyncio.run(self.restore(thread_id))
        except ReconciliationError as e:
            hint = f" (see {e.help_url})" if e.help_url else ""
            self.logger.error(f"Thread {thread_id} failed: {e}{hint}")
            self.metadata.add_error(thread_id, e)
            if e.partial_result is None:
                return
            post, result = self._post or {"id": thread_id}, e.partial_result
        self.write_thread(thread_id, post, result)
        self.metadata.threads_processed += 1

    def _setup_signal_handler(self):
        """Setup graceful shutdown on SIGINT."""
        def handle_sigint(signum, frame):
            self.stop_flag["stop"] = True
            self.logger.info("Received SIGINT, stopping after current thread...")
        signal.signal(signal.SIGINT, handle_sigint)

    def run(self):
        """Main restore execution."""
        try:
            self.logger.info(f"Starting thread restore run {self.run_id}")
            self.logger.info(f"Output directory: {self.run_dir}")
            if not self.thread_ids:
                raise ConfigurationError("No threads given; set 'threads' in the config or pass --thread")

            self._setup_signal_handler()
            self.archive, self.live = self._init_sources()

            for thread_id in tqdm(self.thread_ids, desc="threads"):
                if self.stop_flag["stop"]:
                    break
                self.process_thread(thread_id)

            self.metadata.finish("completed" if not self.metadata.errors else "completed_with_errors")
            self.logger.info(f"Restore completed. Threads: {self.metadata.threads_processed}, "
                             f"Comments: {self.metadata.comments_collected}")

        except KeyboardInterrupt:
            self.metadata.finish("interrupted")
            self.logger.info("Restore interrupted by user")
        except Exception as e:
            self.metadata.finish("error")
            self.logger.error(f"Restore failed with error: {e}", exc_info=True)
            raise
        finally:
            self.metadata.save()
            self.logger.info(f"Run metadata saved to {self.run_dir / 'metadata.json'}")


def main():
    """Entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Restore removed and deleted comments of Reddit threads")
    parser.add_argument("--config", default="config.yaml",
                        help="Configuration file path (default: config.yaml)")
    parser.add_argument("--thread", action="append", dest="threads",
                        help="Thread id to restore (repeatable; overrides 'threads' in config)")
    args = parser.parse_args()

    restorer = ThreadRestorer(args.config, args.threads)
    try:
        restorer.run()
    except ConfigurationError as e:
        sys.exit(str(e))


if __name__ == "__main__":
    main()

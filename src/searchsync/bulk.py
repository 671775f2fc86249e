"""
SearchSync Bulk — Synchronous and Asynchronous Bulk Execution
=============================================================

Every index/delete request goes through the bulk API in the
``elasticsearch.helpers`` action format:

    {"_op_type": "index", "_index": "shop", "_id": "42", "_source": {...}}
    {"_op_type": "delete", "_index": "shop", "_id": "42"}

Synchronous mode sends one bulk request per call and blocks. Asynchronous
mode hands actions to a ``BulkProcessor``, which batches them by count and
size, flushes on an interval and sends batches from a thread pool.
Responses arrive through ``concurrent.futures.Future`` callbacks.

Per-item failures are logged and counted but never stop a batch.
"""

import functools
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout, Elasticsearch
from elasticsearch.helpers import bulk

from .config import SearchConfig
from .errors import IndexingError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ESConnectionError, ConnectionTimeout)
SCROLL_TTL = "1m"


def index_action(index: str, doc_id: str, source: Dict[str, Any]) -> Dict[str, Any]:
    return {"_op_type": "index", "_index": index, "_id": doc_id, "_source": source}


def delete_action(index: str, doc_id: str) -> Dict[str, Any]:
    return {"_op_type": "delete", "_index": index, "_id": doc_id}


class BackoffPolicy:
    """
    Delays (in seconds) between retries of a failed bulk request.

    Example:
        policy = BackoffPolicy.exponential(50, 3)
        policy.delays  # [0.05, 0.1, 0.2]
    """

    def __init__(self, delays: Iterable[float] = ()):
        self.delays: List[float] = list(delays)

    @classmethod
    def exponential(cls, initial_delay_ms: int, max_retries: int) -> "BackoffPolicy":
        if max_retries <= 0:
            return cls.no_backoff()
        initial = max(initial_delay_ms, 0) / 1000.0
        return cls(initial * (2 ** i) for i in range(max_retries))

    @classmethod
    def no_backoff(cls) -> "BackoffPolicy":
        return cls()

    @classmethod
    def from_config(cls, config: SearchConfig) -> "BackoffPolicy":
        return cls.exponential(config.bulk_backoff_initial_delay_ms, config.bulk_max_num_retries)

    @property
    def max_retries(self) -> int:
        return len(self.delays)

    @property
    def initial_backoff(self) -> float:
        return self.delays[0] if self.delays else 0.0

    def __repr__(self) -> str:
        return f"BackoffPolicy(delays={self.delays})"


def with_backoff(fn: Callable[..., Any], policy: BackoffPolicy,
                 sleep: Callable[[float], None] = time.sleep,
                 retry_on: tuple = RETRYABLE_ERRORS) -> Callable[..., Any]:
    """
    Wrap ``fn`` so that connection failures are retried per ``policy``.

    Args:
        fn: Function sending a request
        policy: Retry delays
        sleep: Sleep function
        retry_on: Exception types worth retrying

    Returns:
        The wrapped function; it raises the last error once the policy's
        delays are used up
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        delays = iter(policy.delays)
        while True:
            try:
                return fn(*args, **kwargs)
            except retry_on as e:
                delay = next(delays, None)
                if delay is None:
                    raise
                logger.warning("Bulk request failed (%s), retrying in %.3fs.", e, delay)
                sleep(delay)
    return wrapper


class FailureCounters:
    """Thread-safe counters of failed documents and failed bulk requests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.document_failures = 0
        self.request_failures = 0

    def record_documents(self, count: int = 1) -> None:
        with self._lock:
            self.document_failures += count

    def record_request(self) -> None:
        with self._lock:
            self.request_failures += 1

    def reset(self) -> None:
        with self._lock:
            self.document_failures = 0
            self.request_failures = 0


@dataclass
class BulkResponse:
    """Outcome of one bulk request."""

    actions: int
    succeeded: int
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.errors)


def log_failed_items(errors: List[Dict[str, Any]]) -> None:
    for item in errors:
        op, result = next(iter(item.items())) if item else ("unknown", {})
        logger.error("Failed to execute bulk %s request for document '%s' in index '%s': %s",
                     op, result.get("_id"), result.get("_index"), result.get("error"))


def _estimate_size(action: Dict[str, Any]) -> int:
    return len(json.dumps(action.get("_source", {}), default=str)) + 64


class BulkProcessor:
    """
    Batches bulk actions and sends them in the background.

    A batch is sent when it reaches ``action_limit`` actions or
    ``size_limit_mb`` megabytes, on every flush interval, or on ``flush()``.

    Args:
        client: Elasticsearch client
        size_limit_mb: Batch size threshold
        action_limit: Batch action-count threshold
        concurrent_requests: Worker threads; 0 sends on the calling thread
        flush_interval_ms: Periodic flush interval; 0 disables it
        backoff: Retry policy for failed requests
        counters: Failure counters to update
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        client: Elasticsearch,
        size_limit_mb: int = 5,
        action_limit: int = 1000,
        concurrent_requests: int = 1,
        flush_interval_ms: int = 5000,
        backoff: Optional[BackoffPolicy] = None,
        counters: Optional[FailureCounters] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._client = client
        self.size_limit_bytes = max(size_limit_mb, 0) * 1024 * 1024
        self.action_limit = action_limit
        self.backoff = backoff or BackoffPolicy.no_backoff()
        self.counters = counters or FailureCounters()
        self._send = with_backoff(self._send_batch, self.backoff, sleep=sleep)

        self._lock = threading.RLock()
        self._pending: List[Dict[str, Any]] = []
        self._pending_bytes = 0
        self._in_flight: Set[Future] = set()
        self._closed = False

        self._executor: Optional[ThreadPoolExecutor] = None
        if concurrent_requests > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=concurrent_requests,
                thread_name_prefix="searchsync-bulk"
            )

        self._stop = threading.Event()
        self._flusher: Optional[threading.Thread] = None
        if flush_interval_ms > 0:
            self._flusher = threading.Thread(
                target=self._flush_periodically,
                args=(flush_interval_ms / 1000.0,),
                name="searchsync-bulk-flusher",
                daemon=True
            )
            self._flusher.start()

    @classmethod
    def from_config(cls, client: Elasticsearch, config: SearchConfig,
                    counters: Optional[FailureCounters] = None) -> "BulkProcessor":
        return cls(
            client,
            size_limit_mb=config.bulk_size_limit_mb,
            action_limit=config.bulk_action_limit,
            concurrent_requests=config.bulk_concurrent_requests,
            flush_interval_ms=config.bulk_flush_interval_ms,
            backoff=BackoffPolicy.from_config(config),
            counters=counters
        )

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, action: Dict[str, Any]) -> None:
        """
        Queue one action, flushing if a threshold is reached.

        Raises:
            RuntimeError: If the processor is closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Bulk processor is closed")
            self._pending.append(action)
            self._pending_bytes += _estimate_size(action)
            if (self.action_limit > 0 and len(self._pending) >= self.action_limit) or \
                    (self.size_limit_bytes > 0 and self._pending_bytes >= self.size_limit_bytes):
                self.flush()

    def flush(self) -> Optional[Future]:
        """
        Send all queued actions.

        Returns:
            Future of the BulkResponse, or None if nothing was queued
        """
        with self._lock:
            if not self._pending:
                return None
            batch, self._pending, self._pending_bytes = self._pending, [], 0
            if self._executor is None:
                future: Future = Future()
                try:
                    future.set_result(self._send(batch))
                except Exception as e:
                    future.set_exception(e)
            else:
                future = self._executor.submit(self._send, batch)
                self._in_flight.add(future)
        future.add_done_callback(functools.partial(self._on_done, len(batch)))
        return future

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight requests; False if some are still running."""
        with self._lock:
            in_flight = set(self._in_flight)
        if not in_flight:
            return True
        _, not_done = wait(in_flight, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = None) -> bool:
        """
        Flush, wait for in-flight requests and release the workers.

        Args:
            timeout: Seconds to wait before giving up and force-closing

        Returns:
            True if everything was sent before the timeout
        """
        self._stop.set()
        if self._flusher is not None and self._flusher is not threading.current_thread():
            self._flusher.join(timeout)
        with self._lock:
            if self._closed:
                return True
            self.flush()
            self._closed = True
        drained = self.wait(timeout)
        if self._executor is not None:
            if not drained:
                logger.warning("Bulk processor did not finish within %ss, forcing close.", timeout)
            self._executor.shutdown(wait=drained, cancel_futures=not drained)
        return drained

    def _flush_periodically(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.flush()
            except RuntimeError as e:
                logger.debug("Periodic flush skipped: %s", e)

    def _send_batch(self, batch: List[Dict[str, Any]]) -> BulkResponse:
        succeeded, errors = bulk(
            self._client,
            batch,
            raise_on_error=False,
            max_retries=self.backoff.max_retries,
            initial_backoff=self.backoff.initial_backoff
        )
        return BulkResponse(len(batch), succeeded, list(errors))

    def _on_done(self, size: int, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)
        if future.cancelled():
            logger.warning("Bulk request of %d actions was cancelled.", size)
            return
        error = future.exception()
        if error is not None:
            self.counters.record_request()
            logger.error("Bulk request of %d actions failed: %s", size, error)
            return
        response = future.result()
        if response.has_failures:
            self.counters.record_documents(len(response.errors))
            log_failed_items(response.errors)
        logger.debug("Bulk request of %d actions done, %d succeeded.", size, response.succeeded)


class BulkExecutor:
    """
    Dispatches bulk actions synchronously or through a BulkProcessor.

    Args:
        client: Elasticsearch client
        config: Service configuration
        processor: Pre-built processor (created by ``start()`` in async
            mode if None)
        counters: Failure counters (a new one if None)
    """

    def __init__(self, client: Elasticsearch, config: SearchConfig,
                 processor: Optional[BulkProcessor] = None,
                 counters: Optional[FailureCounters] = None):
        self.client = client
        self.config = config
        self.counters = counters or (processor.counters if processor else FailureCounters())
        self.processor = processor
        self.backoff = BackoffPolicy.from_config(config)

    def start(self) -> None:
        if self.config.async_enabled and self.processor is None:
            self.processor = BulkProcessor.from_config(self.client, self.config, self.counters)

    def close(self, timeout: Optional[float] = None) -> bool:
        if self.processor is None:
            return True
        drained = self.processor.close(timeout)
        self.processor = None
        return drained

    def execute(self, actions: Iterable[Dict[str, Any]]) -> None:
        """
        Execute index/delete actions.

        Raises:
            RuntimeError: In async mode if the processor was not started
            IndexingError: In sync mode, when the request or any item fails
                and ``fail_on_indexing_errors`` is set
        """
        actions = [a for a in actions if a]
        if not actions:
            return
        if self.config.async_enabled:
            if self.processor is None:
                raise RuntimeError("Bulk processor is not started")
            for action in actions:
                self.processor.add(action)
            if self.config.bulk_flush_immediately:
                self.processor.flush()
        else:
            self._execute_sync(actions)

    def _execute_sync(self, actions: List[Dict[str, Any]]) -> None:
        try:
            _, errors = bulk(
                self.client,
                actions,
                raise_on_error=False,
                max_retries=self.backoff.max_retries,
                initial_backoff=self.backoff.initial_backoff
            )
        except Exception as e:
            self.counters.record_request()
            logger.error("Bulk request of %d actions failed: %s", len(actions), e)
            if self.config.fail_on_indexing_errors:
                raise IndexingError(f"Bulk request failed: {e}") from e
            return

        if errors:
            self.counters.record_documents(len(errors))
            log_failed_items(errors)
            if self.config.fail_on_indexing_errors:
                raise IndexingError(
                    f"{len(errors)} of {len(actions)} bulk actions failed", list(errors)
                )

    def flush(self, wait: bool = False, timeout: Optional[float] = None) -> bool:
        """
        Force the async processor to send queued actions.

        Returns:
            False if waiting timed out
        """
        if self.processor is None:
            return True
        self.processor.flush()
        if wait:
            return self.processor.wait(timeout)
        return True

    def scroll_delete_by_query(self, index: str, query: Dict[str, Any],
                               batch_size: Optional[int] = None) -> int:
        """
        Delete every document matching a query, page by page.

        Args:
            index: Index or alias to delete from
            query: Query selecting the documents
            batch_size: Delete actions per bulk request (default
                ``unindex_batch_size``)

        Returns:
            Number of delete actions issued
        """
        batch_size = batch_size or self.config.unindex_batch_size
        pending: List[Dict[str, Any]] = []
        deleted = 0
        scroll_id = None
        try:
            response = self.client.search(
                index=index,
                query=query,
                size=self.config.unindex_batch_size,
                scroll=SCROLL_TTL,
                source=False
            )
            while True:
                scroll_id = response["_scroll_id"]
                hits = response["hits"]["hits"]
                if not hits:
                    break
                for hit in hits:
                    pending.append(delete_action(index, hit["_id"]))
                    if len(pending) >= batch_size:
                        self.execute(pending)
                        deleted += len(pending)
                        pending = []
                response = self.client.scroll(scroll_id=scroll_id, scroll=SCROLL_TTL)
            if pending:
                self.execute(pending)
                deleted += len(pending)
        finally:
            if scroll_id:
                try:
                    self.client.clear_scroll(scroll_id=scroll_id)
                except Exception as e:
                    logger.warning("Failed to clear scroll: %s", e)
        return deleted

"""Background deletion of stored provider responses.

When a trace is replaced, the provider responses its spans produced are no
longer needed. Jobs are queued and processed by a single worker task so the
request that replaced the trace never waits on provider calls. Failed
deletions are retried with exponential backoff and logged as dead letters
once attempts run out.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from app.db import ThreadStore, TraceStore, thread_store, trace_store
from app.errors import ProviderError
from app.llm import OpenAIResponsesClient, get_openai_client
from app.services.credentials import get_credential

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY = 1.0  # seconds
RETRY_MULTIPLIER = 2.0


@dataclass
class CleanupJob:
    """Responses of one replaced trace awaiting deletion."""

    owner_id: str
    trace_id: str
    response_ids: list[str] = field(default_factory=list)


@dataclass
class CleanupOutcome:
    """What a processed job achieved."""

    deleted: list[str] = field(default_factory=list)
    dead_letters: list[str] = field(default_factory=list)
    references_cleared: int = 0


class ResponseCleanupQueue:
    """Queue of response cleanup jobs with a single worker."""

    def __init__(
        self,
        traces: TraceStore | None = None,
        threads: ThreadStore | None = None,
        client: OpenAIResponsesClient | None = None,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self._traces = traces or trace_store
        self._threads = threads or thread_store
        self._client = client
        self._retry_delay = retry_delay
        self._queue: asyncio.Queue[CleanupJob] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def client(self) -> OpenAIResponsesClient:
        return self._client or get_openai_client()

    @property
    def pending(self) -> int:
        """Number of jobs waiting for the worker."""
        return self._queue.qsize()

    async def enqueue_trace(self, owner_id: str, trace_id: str) -> CleanupJob:
        """Queue the responses recorded on a trace for deletion.

        Response ids are collected now, while the trace's spans still exist.
        """
        response_ids = await self._traces.list_trace_response_ids(trace_id)
        job = CleanupJob(owner_id=owner_id, trace_id=trace_id, response_ids=response_ids)
        if response_ids:
            self._queue.put_nowait(job)
            logger.info(f"Queued cleanup of {len(response_ids)} response(s) from trace {trace_id}")
        return job

    async def process(self, job: CleanupJob) -> CleanupOutcome:
        """Clear thread references to the job's responses, then delete them."""
        outcome = CleanupOutcome()
        if not job.response_ids:
            return outcome

        # Threads must stop chaining from a response before it disappears
        outcome.references_cleared = await self._threads.clear_response_references(job.response_ids)

        api_key = await get_credential(job.owner_id, "openai")
        if not api_key:
            logger.warning(
                f"No OpenAI key for owner {job.owner_id}; "
                f"dropping cleanup of {len(job.response_ids)} response(s)"
            )
            outcome.dead_letters.extend(job.response_ids)
            return outcome

        for response_id in job.response_ids:
            if await self._delete_with_retry(api_key, response_id):
                outcome.deleted.append(response_id)
            else:
                outcome.dead_letters.append(response_id)
                logger.error(
                    f"Dead letter: response {response_id} from trace {job.trace_id} "
                    f"not deleted after {MAX_ATTEMPTS} attempts"
                )
        return outcome

    async def _delete_with_retry(self, api_key: str, response_id: str) -> bool:
        delay = self._retry_delay
        for attempt in range(MAX_ATTEMPTS):
            try:
                await self.client.delete_response(api_key, response_id)
                return True
            except ProviderError as e:
                logger.warning(
                    f"Delete of {response_id} failed (attempt {attempt + 1}/{MAX_ATTEMPTS}): "
                    f"{e.message}"
                )
                if attempt + 1 < MAX_ATTEMPTS:
                    await asyncio.sleep(delay)
                    delay *= RETRY_MULTIPLIER
        return False

    async def drain(self) -> list[CleanupOutcome]:
        """Process every queued job in the current task."""
        outcomes = []
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                outcomes.append(await self.process(job))
            finally:
                self._queue.task_done()
        return outcomes

    async def start(self) -> None:
        """Start the background worker."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
            logger.info("Started response cleanup worker")

    async def stop(self) -> None:
        """Stop the background worker. Unprocessed jobs are dropped."""
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("Stopped response cleanup worker")

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error processing cleanup for trace {job.trace_id}: {e}")
            finally:
                self._queue.task_done()


# Global queue instance (lazy initialization)
_queue: ResponseCleanupQueue | None = None


def get_cleanup_queue() -> ResponseCleanupQueue:
    """Get or create the global cleanup queue."""
    global _queue
    if _queue is None:
        _queue = ResponseCleanupQueue()
    return _queue

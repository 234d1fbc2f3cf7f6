"""
Submission job pipeline.

``SubmissionPipeline.process`` runs one attempt for one job under the
per-topic lock:

1. load the model's signing details
2. resolve the open nonce (no nonce means skip this cycle)
3. check worker eligibility unless bypassed
4. fetch the prediction from the model webhook
5. load the signing secret and top up the wallet if needed
6. re-validate the window, then sign and broadcast
7. persist a submission row with the outcome

``WorkerPool`` drains a queue of jobs with bounded concurrency, a token
bucket on throughput and job-level retries with exponential backoff.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional, Protocol, Sequence, Set

import aiohttp
import async_timeout

from .config import RelayConfig
from .connector import LedgerConnector
from .errors import SecretNotFoundError, SkipSubmission, WebhookContractError
from .logging_utils import get_stage_logger
from .models import Job, JobState, ModelSigningDetails, SubmissionRecord, SubmissionStatus, WorkerPrediction
from .nonce import NonceWindowResolver
from .retry import RetryPolicy, Sleep
from .store import RelayStore
from .wallet import WalletProvisioner

logger = get_stage_logger("pipeline")

__all__ = ["JobResult", "TopicLocks", "RateLimiter", "SubmissionPipeline", "WorkerPool"]


class PredictionSource(Protocol):
    async def fetch(self, url: str, active_workers: Sequence[str]) -> WorkerPrediction: ...


@dataclass(frozen=True)
class JobResult:
    job_id: str
    model_id: str
    topic_id: int
    state: JobState
    reason: str = ""
    submission: Optional[SubmissionRecord] = None


class TopicLocks:
    """One ``asyncio.Lock`` per topic id, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    def lock_for(self, topic_id: int) -> asyncio.Lock:
        lock = self._locks.get(topic_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[topic_id] = lock
        return lock

    def locked(self, topic_id: int) -> bool:
        lock = self._locks.get(topic_id)
        return lock is not None and lock.locked()


class RateLimiter:
    """Token bucket allowing ``max_jobs`` starts per ``duration`` seconds."""

    def __init__(
        self,
        max_jobs: int,
        duration: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_jobs < 1 or duration <= 0:
            raise ValueError("rate limit needs max_jobs >= 1 and a positive duration")
        self.capacity = float(max_jobs)
        self.rate = max_jobs / duration
        self._tokens = float(max_jobs)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self.rate)


class SubmissionPipeline:
    def __init__(
        self,
        store: RelayStore,
        connector: LedgerConnector,
        resolver: NonceWindowResolver,
        provisioner: WalletProvisioner,
        predictions: PredictionSource,
        config: RelayConfig,
        locks: Optional[TopicLocks] = None,
    ) -> None:
        self.store = store
        self.connector = connector
        self.resolver = resolver
        self.provisioner = provisioner
        self.predictions = predictions
        self.config = config
        self.locks = locks or TopicLocks()

    async def process(self, job: Job) -> JobResult:
        lock = self.locks.lock_for(job.topic_id)
        if lock.locked():
            logger.debug("Job %s waiting for topic %s lock", job.job_id, job.topic_id)
        async with lock:
            return await self._attempt(job)

    async def _attempt(self, job: Job) -> JobResult:
        def result(state: JobState, reason: str = "", submission: Optional[SubmissionRecord] = None) -> JobResult:
            return JobResult(job.job_id, job.model_id, job.topic_id, state, reason, submission)

        details = await asyncio.to_thread(self.store.model_signing_details, job.model_id)
        if details is None:
            logger.error("Model %s not found; dropping job %s", job.model_id, job.job_id)
            return result(JobState.FAILED_TERMINAL, "model not found")
        if not details.is_active:
            logger.info("Model %s is inactive; skipping", job.model_id)
            return result(JobState.SKIPPED, "model inactive")

        nonce = await self.resolver.derive_open_nonce(job.topic_id)
        if nonce is None:
            return result(JobState.SKIPPED, "no open nonce")

        if self.config.bypass_can_submit:
            logger.warning("Eligibility check bypassed for %s on topic %s", details.address, job.topic_id)
        elif not await self.resolver.can_submit(job.topic_id, details.address):
            logger.info("Worker %s cannot submit to topic %s this cycle", details.address, job.topic_id)
            return result(JobState.SKIPPED, "worker not eligible")

        active_workers = await self.connector.get_active_inferers(job.topic_id) or []
        try:
            prediction = await self.predictions.fetch(details.webhook_url, active_workers)
        except SkipSubmission as exc:
            return result(JobState.SKIPPED, str(exc))
        except WebhookContractError as exc:
            logger.warning("Webhook contract violation for model %s: %s", job.model_id, exc)
            record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log=f"webhook: {exc}")
            return result(JobState.FAILED_TERMINAL, str(exc), record)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Webhook call failed for model %s: %s", job.model_id, message)
            record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log=f"webhook: {message}")
            return result(JobState.FAILED_RETRYABLE, message, record)

        try:
            mnemonic = await self.provisioner.signing_secret(details.secret_ref)
        except SecretNotFoundError as exc:
            logger.error("Signing secret missing for model %s: %s", job.model_id, exc)
            record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log=str(exc))
            return result(JobState.FAILED_TERMINAL, str(exc), record)
        except Exception as exc:  # noqa: BLE001 - secret backend outage, try again later
            message = str(exc) or type(exc).__name__
            logger.error("Secret store read failed for model %s: %s", job.model_id, message)
            record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log=f"secret store: {message}")
            return result(JobState.FAILED_RETRYABLE, message, record)

        if self.config.enable_preflight_balance_check:
            await self.provisioner.ensure_funded(details.address)

        if not await self.resolver.window_is_open(job.topic_id, nonce):
            record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log="submission window closed")
            return result(JobState.FAILED_TERMINAL, "submission window closed", record)

        outcome = await self.connector.sign_and_submit(
            mnemonic, job.topic_id, prediction, details.max_gas_price, nonce
        )
        if outcome.ok:
            record = await self._record(details, SubmissionStatus.SUCCESS, nonce, tx_hash=outcome.tx_hash)
            return result(JobState.SUCCEEDED, outcome.tx_hash or "", record)

        record = await self._record(details, SubmissionStatus.FAILED, nonce, raw_log=outcome.error)
        state = JobState.FAILED_TERMINAL if outcome.rejected else JobState.FAILED_RETRYABLE
        return result(state, outcome.error or "", record)

    async def _record(
        self,
        details: ModelSigningDetails,
        status: SubmissionStatus,
        nonce: Optional[int],
        tx_hash: Optional[str] = None,
        raw_log: Optional[str] = None,
    ) -> Optional[SubmissionRecord]:
        try:
            return await asyncio.to_thread(
                self.store.record_submission,
                details.model_id,
                details.topic_id,
                status,
                nonce,
                tx_hash,
                raw_log,
            )
        except Exception:  # noqa: BLE001 - the attempt outcome still stands
            logger.exception(
                "Failed to persist %s submission for model %s (tx=%s)", status.value, details.model_id, tx_hash
            )
            return None


class WorkerPool:
    """Bounded pool of workers draining a job queue.

    Retryable failures are re-queued after ``backoff.delay_for(attempts)``
    until ``max_attempts`` is reached. Re-queue timers do not hold a worker.
    """

    def __init__(
        self,
        process: Callable[[Job], Awaitable[JobResult]],
        concurrency: int = 5,
        limiter: Optional[RateLimiter] = None,
        max_attempts: int = 3,
        backoff: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        history: int = 1000,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._process = process
        self.concurrency = concurrency
        self.limiter = limiter
        self.max_attempts = max_attempts
        self.backoff = backoff or RetryPolicy(max_attempts=max_attempts, base_delay=5.0)
        self._sleep = sleep
        self._queue: "asyncio.Queue[Job]" = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._accepting = True
        self.results: Deque[JobResult] = collections.deque(maxlen=history)

    @classmethod
    def from_config(cls, pipeline: SubmissionPipeline, config: RelayConfig) -> "WorkerPool":
        return cls(
            pipeline.process,
            concurrency=config.job_concurrency,
            limiter=RateLimiter(config.job_rate_max, config.job_rate_duration_ms / 1000.0),
            max_attempts=config.job_max_attempts,
            backoff=RetryPolicy.from_millis(config.job_max_attempts, config.job_backoff_ms),
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, job: Job) -> bool:
        if not self._accepting:
            logger.warning("Pool is draining; rejected job %s for model %s", job.job_id, job.model_id)
            return False
        job.state = JobState.ENQUEUED
        self._queue.put_nowait(job)
        logger.debug("Enqueued job %s (model=%s topic=%s)", job.job_id, job.model_id, job.topic_id)
        return True

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker(i), name=f"relay-worker-{i}") for i in range(self.concurrency)]
        logger.info("Started %d workers", self.concurrency)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if self.limiter is not None:
                    await self.limiter.acquire()
                result = await self._run(job)
                self._settle(job, result)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> JobResult:
        job.attempts += 1
        job.state = JobState.IN_FLIGHT
        logger.info(
            "Job %s attempt %d/%d (model=%s topic=%s)",
            job.job_id,
            job.attempts,
            self.max_attempts,
            job.model_id,
            job.topic_id,
        )
        try:
            return await self._process(job)
        except Exception as exc:  # noqa: BLE001 - becomes a retryable job failure
            logger.exception("Job %s raised unexpectedly", job.job_id)
            return JobResult(job.job_id, job.model_id, job.topic_id, JobState.FAILED_RETRYABLE, str(exc))

    def _settle(self, job: Job, result: JobResult) -> None:
        state = result.state
        if state is JobState.FAILED_RETRYABLE:
            if job.attempts < self.max_attempts and self._accepting:
                delay = self.backoff.delay_for(job.attempts)
                logger.warning("Job %s failed (%s); retrying in %.1fs", job.job_id, result.reason, delay)
                job.state = state
                timer = asyncio.create_task(self._requeue_later(job, delay))
                self._timers.add(timer)
                timer.add_done_callback(self._timers.discard)
                return
            state = JobState.FAILED_TERMINAL
            logger.error("Job %s failed after %d attempt(s): %s", job.job_id, job.attempts, result.reason)
        job.state = state
        if state is not result.state:
            result = JobResult(result.job_id, result.model_id, result.topic_id, state, result.reason, result.submission)
        self.results.append(result)
        logger.info("Job %s finished: %s %s", job.job_id, state.value, result.reason)

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        if self._accepting:
            self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every queued job and scheduled retry has settled."""

        while True:
            await self._queue.join()
            if not self._timers:
                return
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs, let in-flight jobs finish, then stop the workers."""

        self._accepting = False
        for timer in list(self._timers):
            timer.cancel()

        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning("Dropped %d queued job(s) on shutdown; the scheduler will enqueue them again", dropped)

        try:
            async with async_timeout.timeout(timeout):
                await self._queue.join()
        except asyncio.TimeoutError:
            logger.error("In-flight jobs did not finish within %.0fs", timeout)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool stopped")

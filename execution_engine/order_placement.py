"""
Execution Engine - Order Placement Service.

============================================================
PURPOSE
============================================================
The single path from a trade intent to exchange fills.

FLOW:
1. submit(): persist a PENDING trade job, enqueue its id, return
2. worker: re-validate the target position, mark EXECUTING,
   place a market order with bounded exponential backoff
3. feed returned fills through the Execution Linker
4. set FILLED / PARTIALLY_FILLED / FAILED / CANCELLED

SAFETY:
- Evaluators never await fills; submit() only enqueues
- One in-flight SELL job per position
- Retries only for retryable codes, bounded count
- client_order_id = job id, so a retried placement that
  already reached the exchange is rejected as duplicate there

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Union

from core.clock import ClockProtocol, SystemClock
from core.events import EventBus, ORDER_CANCELLED
from core.exceptions import (
    ExchangeUnavailable,
    OrderRejected,
    PositionNotFound,
    SellAlreadyPending,
)
from core.types import ExitReason, JobStatus, PositionStatus, Side, TradeMode
from positions.account_defaults import AccountDefaultsService
from storage.models import TradeJobModel

from .adapters.base import ExchangeAdapter
from .config import ExecutionEngineConfig
from .errors import is_retryable
from .linker import ExecutionLinker
from .repository import ExecutionRepository
from .state_machine import JobStateMachine
from .types import PlacedOrder, TradeIntent


logger = logging.getLogger(__name__)


# ============================================================
# ORDER PLACEMENT SERVICE
# ============================================================

class OrderPlacementService:
    """
    Work queue of trade jobs.

    Usage:
        service = OrderPlacementService(linker, defaults, exchanges)
        await service.start()
        job = await service.submit(intent)
    """

    def __init__(
        self,
        linker: ExecutionLinker,
        defaults: AccountDefaultsService,
        exchanges: Union[ExchangeAdapter, Dict[TradeMode, ExchangeAdapter]],
        events: Optional[EventBus] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ExecutionEngineConfig] = None,
    ):
        self._linker = linker
        self._store = linker.store
        self._db = self._store.db
        self._defaults = defaults
        if isinstance(exchanges, ExchangeAdapter):
            exchanges = {mode: exchanges for mode in TradeMode}
        self._exchanges = exchanges
        self._events = events or EventBus()
        self._clock = clock or SystemClock()
        self._config = config or ExecutionEngineConfig()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.queue_maxsize)
        self._workers: List[asyncio.Task] = []

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        for n in range(self._config.placement_workers):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"order-placement-{n}"))
        logger.info(f"Order placement started with {len(self._workers)} workers")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Order placement stopped")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self.execute_job(job_id)
            except Exception as e:
                logger.error(f"Worker {n}: job {job_id} failed unexpectedly: {e}")
            finally:
                self._queue.task_done()

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def submit(self, intent: TradeIntent) -> TradeJobModel:
        """
        Persist a PENDING job for the intent and enqueue it.

        Raises:
            SellAlreadyPending: a SELL job already targets the position
            PositionNotFound: SELL target does not exist
        """
        if intent.side is Side.SELL and intent.target_position_id is not None:
            async with self._store.position_lock(intent.target_position_id):
                async with self._db.session_scope() as session:
                    repo = ExecutionRepository(session)
                    await self._store.get(intent.target_position_id, session=session)
                    if await repo.has_pending_sell(intent.target_position_id):
                        raise SellAlreadyPending(intent.target_position_id)
                    job = await repo.create_job(intent, self._clock.now())
        else:
            async with self._db.session_scope() as session:
                job = await ExecutionRepository(session).create_job(intent, self._clock.now())

        logger.info(
            f"Job {job.id} queued: {intent.origin.value} {intent.side.value} {intent.qty} "
            f"{intent.symbol} target={intent.target_position_id}"
        )
        self._queue.put_nowait(job.id)
        return job

    async def process_next(self) -> Optional[TradeJobModel]:
        """Execute one queued job in the caller's task (tests, execute-now)."""
        try:
            job_id = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        try:
            return await self.execute_job(job_id)
        finally:
            self._queue.task_done()

    async def drain(self) -> List[TradeJobModel]:
        """Execute every queued job in the caller's task."""
        jobs = []
        while True:
            job = await self.process_next()
            if job is None:
                return jobs
            jobs.append(job)

    # --------------------------------------------------------
    # CANCELLATION
    # --------------------------------------------------------

    async def cancel_job(self, job_id: int, reason_code: str = "CANCELLED_BY_OPERATOR") -> TradeJobModel:
        """
        Cancel a job that has not reached the exchange.

        Raises:
            InvalidStateTransition: job already terminal
            ValueError: job not found
        """
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            if job is None:
                raise ValueError(f"Job {job_id} not found")
            JobStateMachine(job).mark_cancelled(reason_code, now=self._clock.now())

        await self._publish_cancelled(job)
        return job

    async def _publish_cancelled(self, job: TradeJobModel) -> None:
        await self._events.publish(ORDER_CANCELLED, **cancelled_payload(job))

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def execute_job(self, job_id: int) -> TradeJobModel:
        """
        Place the job's order and apply its fills.

        Returns:
            The job in its resulting state
        """
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            if job is None:
                raise ValueError(f"Job {job_id} not found")
            if JobStatus(job.status) is not JobStatus.PENDING:
                logger.info(f"Job {job_id} is {job.status}, skipping")
                return job

            machine = JobStateMachine(job)
            rejection = await self._revalidate_target(job, session)
            if rejection:
                machine.mark_cancelled(rejection, now=self._clock.now())
            else:
                machine.mark_executing(now=self._clock.now())

        if JobStatus(job.status) is JobStatus.CANCELLED:
            await self._publish_cancelled(job)
            return job

        try:
            placed = await self._place_with_retry(job)
        except (ExchangeUnavailable, OrderRejected) as e:
            reason = "RETRIES_EXHAUSTED" if isinstance(e, ExchangeUnavailable) else e.error_code
            return await self._finish(job_id, JobStatus.FAILED, reason, e.message)
        except Exception as e:
            await self._finish(job_id, JobStatus.FAILED, "INTERNAL_ERROR", str(e))
            raise

        # Reconciliation finds late fills of this order through the job
        await self._record_order_id(job_id, placed.exchange_order_id)

        filled = Decimal("0")
        close_reason = ExitReason(job.exit_reason) if job.exit_reason else None
        for fill in placed.fills:
            result = await self._linker.apply_fill(
                fill,
                job_id=job.id,
                target_position_id=job.target_position_id,
                close_reason=close_reason,
            )
            filled += result.execution.executed_qty

        if filled >= job.qty:
            status = JobStatus.FILLED
        elif filled > 0:
            status = JobStatus.PARTIALLY_FILLED
        else:
            # Accepted but not yet filled; polling/reconciliation will record the fill
            status = JobStatus.EXECUTING

        return await self._finish(job_id, status, exchange_order_id=placed.exchange_order_id, filled_qty=filled)

    async def _revalidate_target(self, job: TradeJobModel, session) -> Optional[str]:
        """Reason code if a SELL target can no longer absorb the job."""
        if job.side != Side.SELL.value or job.target_position_id is None:
            return None
        try:
            position = await self._store.get(job.target_position_id, session=session)
        except PositionNotFound:
            return "POSITION_NOT_FOUND"
        if position.status != PositionStatus.OPEN.value:
            return "POSITION_ALREADY_CLOSED"
        if job.qty > position.qty_remaining:
            return "QTY_EXCEEDS_REMAINING"
        return None

    async def _place_with_retry(self, job: TradeJobModel) -> PlacedOrder:
        """
        Submit with bounded exponential backoff.

        Only ExchangeUnavailable with a retryable code is retried.
        """
        defaults = await self._defaults.get(job.exchange_account_id)
        exchange = self._exchanges[defaults.trade_mode]
        retry = self._config.retry

        for attempt in range(retry.max_retries + 1):
            try:
                return await exchange.place_market_order(
                    job.exchange_account_id,
                    job.symbol,
                    Side(job.side),
                    job.qty,
                    client_order_id=f"job-{job.id}",
                )
            except ExchangeUnavailable as e:
                if (
                    is_retryable(e.error_code)
                    and e.error_code not in retry.never_retry_codes
                    and attempt < retry.max_retries
                ):
                    delay = retry.delay_for_attempt(attempt)
                    logger.warning(
                        f"Job {job.id}: exchange unavailable "
                        f"(attempt {attempt + 1}/{retry.max_retries + 1}): {e.message}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"Job {job.id}: giving up after {attempt + 1} attempts: {e.message}")
                raise

        raise ExchangeUnavailable(f"Job {job.id}: retry budget exhausted", error_code="RETRIES_EXHAUSTED")

    async def _record_order_id(self, job_id: int, exchange_order_id: str) -> None:
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            job.exchange_order_id = exchange_order_id
            job.updated_at = self._clock.now()

    async def _finish(
        self,
        job_id: int,
        status: JobStatus,
        reason_code: Optional[str] = None,
        error_message: Optional[str] = None,
        exchange_order_id: Optional[str] = None,
        filled_qty: Optional[Decimal] = None,
    ) -> TradeJobModel:
        now = self._clock.now()
        async with self._db.session_scope() as session:
            job = await ExecutionRepository(session).get_job(job_id)
            if exchange_order_id:
                job.exchange_order_id = exchange_order_id
            if filled_qty is not None:
                job.filled_qty = max(job.filled_qty or Decimal("0"), filled_qty)
            job.updated_at = now

            # Reconciliation may have advanced the job while the order was in flight
            current = JobStatus(job.status)
            if current.is_terminal() or (status is JobStatus.EXECUTING and current is JobStatus.PARTIALLY_FILLED):
                logger.info(f"Job {job_id} already {current.value}, keeping it")
                return job
            JobStateMachine(job).transition_to(status, reason_code, error_message, now=now)

        if status in (JobStatus.FAILED, JobStatus.CANCELLED):
            await self._publish_cancelled(job)
        return job


def cancelled_payload(job: TradeJobModel) -> Dict:
    """order.cancelled event data for a FAILED or CANCELLED job."""
    return {
        "job_id": job.id,
        "symbol": job.symbol,
        "side": job.side,
        "status": job.status,
        "reason_code": job.reason_code,
        "origin": job.origin,
        "exit_reason": job.exit_reason,
        "filled_qty": str(job.filled_qty),
        "target_position_id": job.target_position_id,
    }

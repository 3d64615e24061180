"""
Risk Exit - Monitor.

============================================================
PURPOSE
============================================================
Scheduler-driven tick over every OPEN position with at least
one exit rule enabled.

PER POSITION:
1. Skip if a SELL job is already in flight for it
2. Evaluate with the price of its trade_mode feed
3. Persist state changes; trigger flags use a conditional
   UPDATE (flag = false), zero rows means another worker fired
4. Skip residue below min_sell_notional_usd
5. Hand off a RISK_EXIT SELL intent for qty_remaining

RE-ARMING:
- A trigger flag is cleared again when the hand-off raises, and
  when its RISK_EXIT job ends FAILED or CANCELLED while the
  position is still OPEN (order.cancelled event)

ISOLATION:
- One position's failure is recorded in the report and never
  aborts the tick for the others
- Never awaits fills; placement is asynchronous

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update

from core.events import EngineEvent, EventBus, ORDER_CANCELLED
from core.exceptions import SellAlreadyPending
from core.types import ExitReason, JobOrigin, PositionStatus, Side, TradeMode
from execution_engine.order_placement import OrderPlacementService
from execution_engine.price_feed import TradeModePriceFeed
from execution_engine.repository import ExecutionRepository
from execution_engine.types import TradeIntent
from positions.account_defaults import AccountDefaultsService
from positions.risk_config import RiskExitConfig
from positions.store import PositionFilter, PositionStore
from storage.models import PositionModel

from .evaluator import ExitDecision, RiskState, evaluate


logger = logging.getLogger(__name__)


class CheckOutcome(Enum):
    NO_ACTION = "NO_ACTION"
    TRIGGERED = "TRIGGERED"
    SKIPPED = "SKIPPED"


@dataclass
class PositionCheck:
    """Result of evaluating one position."""

    position_id: int
    outcome: CheckOutcome
    decision: Optional[ExitDecision] = None
    job_id: Optional[int] = None
    skip_reason: Optional[str] = None


@dataclass
class TickReport:
    """Result of one monitor tick."""

    checked: int = 0
    triggered: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    triggers: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "triggered": self.triggered,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "triggers": list(self.triggers),
        }


# ============================================================
# RISK EXIT MONITOR
# ============================================================

class RiskExitMonitor:
    """
    Evaluates exit rules on open positions.

    Usage:
        monitor = RiskExitMonitor(store, placement, prices, defaults)
        report = await monitor.tick()
    """

    def __init__(
        self,
        store: PositionStore,
        placement: OrderPlacementService,
        prices: TradeModePriceFeed,
        defaults: AccountDefaultsService,
        events: Optional[EventBus] = None,
    ):
        self._store = store
        self._db = store.db
        self._placement = placement
        self._prices = prices
        self._defaults = defaults
        if events is not None:
            events.subscribe(ORDER_CANCELLED, self._on_order_cancelled)

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def tick(self) -> TickReport:
        report = TickReport()

        positions = await self._store.list_positions(
            PositionFilter(
                status=PositionStatus.OPEN,
                exit_enabled_only=True,
                sort_by="id",
                descending=False,
                limit=10_000,
            )
        )
        if not positions:
            return report

        async with self._db.session_scope() as session:
            pending = await ExecutionRepository(session).positions_with_pending_sell(
                p.id for p in positions
            )
        prices = await self._fetch_prices(positions)

        for position in positions:
            report.checked += 1

            if position.id in pending:
                report.skipped += 1
                continue

            price = prices.get((position.trade_mode, position.symbol))
            if price is None:
                report.errors.append({"position_id": position.id, "error": f"No price for {position.symbol}"})
                continue

            try:
                check = await self.evaluate_position(position.id, price)
            except Exception as e:
                logger.error(f"Risk exit evaluation failed for position {position.id}: {e}")
                report.errors.append({"position_id": position.id, "error": str(e)})
                continue

            if check.outcome is CheckOutcome.TRIGGERED:
                report.triggered += 1
                report.triggers.append({
                    "position_id": position.id,
                    "reason": check.decision.trigger.value,
                    "trigger_price": str(check.decision.trigger_price),
                    "price": str(price),
                    "job_id": check.job_id,
                })
            elif check.outcome is CheckOutcome.SKIPPED:
                report.skipped += 1

        if report.triggered or report.errors:
            logger.info(
                f"Risk exit tick: checked={report.checked} triggered={report.triggered} "
                f"skipped={report.skipped} errors={len(report.errors)}"
            )
        return report

    async def _fetch_prices(self, positions: List[PositionModel]) -> Dict[Tuple[str, str], Decimal]:
        symbols_by_mode: Dict[str, set] = {}
        for position in positions:
            symbols_by_mode.setdefault(position.trade_mode, set()).add(position.symbol)

        prices: Dict[Tuple[str, str], Decimal] = {}
        for mode, symbols in symbols_by_mode.items():
            feed = self._prices.for_mode(TradeMode(mode))
            for symbol, price in (await feed.get_prices(symbols)).items():
                prices[(mode, symbol)] = price
        return prices

    # --------------------------------------------------------
    # SINGLE POSITION
    # --------------------------------------------------------

    async def evaluate_position(self, position_id: int, price: Decimal) -> PositionCheck:
        """
        Evaluate one position at price and hand off a SELL if a rule fires.

        Raises:
            PositionNotFound
        """
        async with self._store.position_lock(position_id):
            async with self._db.session_scope() as session:
                position = await self._store.get(position_id, session=session)
                if not position.is_open:
                    return PositionCheck(position_id, CheckOutcome.SKIPPED, skip_reason="CLOSED")

                before = RiskState.from_model(position)
                decision = evaluate(position.price_open, price, RiskExitConfig.from_model(position), before)
                changes = before.diff(decision.state)

                residue = False
                if decision.should_sell:
                    defaults = await self._defaults.get(position.exchange_account_id, session=session)
                    if position.qty_remaining * price < defaults.min_sell_notional_usd:
                        residue = True
                        changes.pop(_trigger_flag(decision), None)

                fired = False
                if changes:
                    stmt = update(PositionModel).where(
                        PositionModel.id == position_id,
                        PositionModel.status == PositionStatus.OPEN.value,
                    )
                    if decision.should_sell and not residue:
                        stmt = stmt.where(getattr(PositionModel, _trigger_flag(decision)).is_(False))
                    result = await session.execute(
                        stmt.values(updated_at=self._store.clock.now(), **changes)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        return PositionCheck(
                            position_id, CheckOutcome.SKIPPED, decision=decision, skip_reason="ALREADY_FIRED",
                        )
                    fired = decision.should_sell and not residue
                    await session.refresh(position)

                qty = position.qty_remaining
                account_id = position.exchange_account_id
                symbol = position.symbol

        if changes:
            await self._store.publish_position(position)

        if residue:
            logger.info(
                f"Position {position_id}: {decision.trigger.value} fired on residue "
                f"{qty} {symbol} below min notional, not selling"
            )
            return PositionCheck(position_id, CheckOutcome.SKIPPED, decision=decision, skip_reason="RESIDUE")

        if not fired:
            return PositionCheck(position_id, CheckOutcome.NO_ACTION, decision=decision)

        logger.info(
            f"Position {position_id} {symbol}: {decision.trigger.value} triggered at {price} "
            f"(threshold {decision.trigger_price}), selling {qty}"
        )
        intent = TradeIntent(
            exchange_account_id=account_id,
            symbol=symbol,
            side=Side.SELL,
            qty=qty,
            origin=JobOrigin.RISK_EXIT,
            target_position_id=position_id,
            exit_reason=decision.trigger,
            reference_price=price,
        )
        try:
            job = await self._placement.submit(intent)
        except SellAlreadyPending:
            await self.rearm(position_id, decision.trigger)
            logger.info(f"Position {position_id}: SELL already pending, {decision.trigger.value} re-armed")
            return PositionCheck(position_id, CheckOutcome.SKIPPED, decision=decision, skip_reason="PENDING_SELL")
        except Exception:
            await self.rearm(position_id, decision.trigger)
            raise

        return PositionCheck(position_id, CheckOutcome.TRIGGERED, decision=decision, job_id=job.id)

    # --------------------------------------------------------
    # RE-ARMING
    # --------------------------------------------------------

    async def rearm(self, position_id: int, reason: ExitReason) -> bool:
        """
        Clear the fired flag of reason on an OPEN position.

        Returns:
            True if the flag was set and is now cleared
        """
        flag = f"{reason.value.lower()}_triggered"
        async with self._store.position_lock(position_id):
            async with self._db.session_scope() as session:
                result = await session.execute(
                    update(PositionModel)
                    .where(
                        PositionModel.id == position_id,
                        PositionModel.status == PositionStatus.OPEN.value,
                        getattr(PositionModel, flag).is_(True),
                    )
                    .values({flag: False, "updated_at": self._store.clock.now()})
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            return False
        logger.info(f"Position {position_id}: {reason.value} re-armed")
        return True

    async def _on_order_cancelled(self, event: EngineEvent) -> None:
        payload = event.payload
        if payload.get("origin") != JobOrigin.RISK_EXIT.value:
            return
        if payload.get("exit_reason") is None or payload.get("target_position_id") is None:
            return
        await self.rearm(payload["target_position_id"], ExitReason(payload["exit_reason"]))


def _trigger_flag(decision: ExitDecision) -> str:
    return f"{decision.trigger.value.lower()}_triggered"

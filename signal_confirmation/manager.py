"""
Signal Confirmation - Manager.

============================================================
PURPOSE
============================================================
Owns the active price-action monitors and turns confirmed
signals into WEBHOOK trade intents.

RULES:
- One active monitor per (account, symbol, side); a second
  signal while one is active is rejected, not queued
- CONFIRMED starts a cooldown on (account, symbol, side);
  identical signals are rejected until it expires
- A confirmation also cancels an in-flight monitor of the
  opposite side on the same account and symbol
- Webhook SELLs never reduce a position with
  lock_sell_by_webhook set
- A failing tick cancels the monitor as CANCELLED_ADVERSE

============================================================
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from core.exceptions import (
    CooldownActive,
    InsufficientQuantity,
    MonitorAlreadyActive,
    MonitorNotFound,
    NoCompatiblePosition,
    PositionAlreadyClosed,
)
from core.locks import KeyedLock
from core.types import ExitReason, JobOrigin, Side, TradeMode
from execution_engine.order_placement import OrderPlacementService
from execution_engine.price_feed import TradeModePriceFeed
from execution_engine.types import TradeIntent
from positions.account_defaults import AccountDefaultsService
from positions.store import PositionStore, quantize
from storage.models import PositionModel

from .config import ConfirmationConfigRepository
from .machine import MonitorPhase, PriceActionMonitor


logger = logging.getLogger(__name__)

MonitorKey = Tuple[int, str, Side]


# ============================================================
# SIGNAL AND MONITOR RECORD
# ============================================================

@dataclass
class TradeSignal:
    """Incoming webhook signal."""

    exchange_account_id: int
    symbol: str
    side: Side
    qty: Optional[Decimal] = None
    """Required for BUY. For SELL, defaults to the target's qty_remaining."""

    price: Optional[Decimal] = None
    """Price carried by the signal; the entry price is used when absent."""

    position_id: Optional[int] = None
    """Explicit SELL target."""

    source: str = "webhook"


@dataclass
class MonitorRecord:
    """A signal under confirmation and its outcome."""

    id: str
    signal: TradeSignal
    machine: PriceActionMonitor
    trade_mode: TradeMode
    started_at: datetime
    signal_price: Decimal
    last_check_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    job_id: Optional[int] = None
    target_position_id: Optional[int] = None
    executed_price: Optional[Decimal] = None
    savings_pct: Optional[Decimal] = None
    efficiency_pct: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> MonitorKey:
        return (self.signal.exchange_account_id, self.signal.symbol, self.signal.side)

    @property
    def phase(self) -> MonitorPhase:
        return self.machine.phase

    @property
    def is_active(self) -> bool:
        return self.machine.phase is MonitorPhase.MONITORING

    def to_dict(self) -> Dict[str, Any]:
        def s(value):
            return None if value is None else str(value)

        return {
            "id": self.id,
            "exchange_account_id": self.signal.exchange_account_id,
            "symbol": self.signal.symbol,
            "side": self.signal.side.value,
            "qty": s(self.signal.qty),
            "source": self.signal.source,
            "trade_mode": self.trade_mode.value,
            "phase": self.phase.value,
            "reason": self.machine.reason,
            "rule": self.machine.rule.value if self.machine.rule else None,
            "trend": self.machine.trend.value,
            "signal_price": s(self.signal_price),
            "entry_price": s(self.machine.entry_price),
            "last_price": s(self.machine.last_price),
            "extreme_price": s(self.machine.extreme),
            "lateral_cycles": self.machine.lateral_cycles,
            "momentum_cycles": self.machine.momentum_cycles,
            "ticks": self.machine.ticks,
            "started_at": self.started_at.isoformat(),
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "job_id": self.job_id,
            "target_position_id": self.target_position_id,
            "executed_price": s(self.executed_price),
            "savings_pct": s(self.savings_pct),
            "efficiency_pct": s(self.efficiency_pct),
        }


# ============================================================
# CONFIRMATION MANAGER
# ============================================================

class ConfirmationManager:
    """
    Registry of price-action monitors.

    Usage:
        manager = ConfirmationManager(placement, store, prices, defaults, configs)
        record = await manager.start_monitoring(signal)
        report = await manager.tick_all()
    """

    def __init__(
        self,
        placement: OrderPlacementService,
        store: PositionStore,
        prices: TradeModePriceFeed,
        defaults: AccountDefaultsService,
        configs: ConfirmationConfigRepository,
        clock: Optional[ClockProtocol] = None,
        history_limit: int = 500,
    ):
        self._placement = placement
        self._store = store
        self._prices = prices
        self._defaults = defaults
        self._configs = configs
        self._clock = clock or SystemClock()
        self._history_limit = history_limit

        self._monitors: "OrderedDict[str, MonitorRecord]" = OrderedDict()
        self._active: Dict[MonitorKey, str] = {}
        self._cooldowns: Dict[MonitorKey, datetime] = {}
        self._start_lock = asyncio.Lock()
        self._locks = KeyedLock()

    # --------------------------------------------------------
    # START
    # --------------------------------------------------------

    async def start_monitoring(self, signal: TradeSignal) -> MonitorRecord:
        """
        Begin confirming a signal.

        Raises:
            MonitorAlreadyActive: same (account, symbol, side) in flight
            CooldownActive: same (account, symbol, side) executed recently
            NoCompatiblePosition: SELL with no eligible OPEN position
            ValueError: BUY without qty
        """
        if signal.side is Side.BUY and not signal.qty:
            raise ValueError("BUY signal requires a positive qty")
        if signal.qty is not None and signal.qty <= 0:
            raise ValueError(f"Signal qty must be positive, got {signal.qty}")

        key: MonitorKey = (signal.exchange_account_id, signal.symbol, signal.side)

        async with self._start_lock:
            now = self._clock.now()
            if key in self._active:
                raise MonitorAlreadyActive(*self._key_args(key))
            until = self.cooldown_until(key)
            if until is not None:
                raise CooldownActive(*self._key_args(key), until=until)

            config = await self._configs.get(signal.exchange_account_id, signal.side)
            target: Optional[PositionModel] = None
            if signal.side is Side.SELL:
                target = await self._resolve_sell_target(signal)

            defaults = await self._defaults.get(signal.exchange_account_id)
            price = await self._prices.get_price(signal.symbol, defaults.trade_mode)

            record = MonitorRecord(
                id=uuid.uuid4().hex[:12],
                signal=signal,
                machine=PriceActionMonitor(signal.side, config, price),
                trade_mode=defaults.trade_mode,
                started_at=now,
                signal_price=signal.price or price,
                last_check_at=now,
                target_position_id=target.id if target else None,
            )
            self._monitors[record.id] = record

            if not config.enabled:
                record.machine.confirm_without_monitoring("Confirmation disabled")
                logger.info(f"Monitor {record.id}: confirmation disabled for {signal.side.value}, executing")
                try:
                    await self._execute(record, price)
                except Exception as e:
                    record.machine.cancel(MonitorPhase.CANCELLED_ADVERSE, str(e), force=True)
                    self._release(record)
                    raise
                return record

            self._active[key] = record.id

        logger.info(
            f"Monitor {record.id} started: {signal.side.value} {signal.symbol} "
            f"account={signal.exchange_account_id} entry={price}"
        )
        return record

    def _key_args(self, key: MonitorKey) -> Tuple[int, str, str]:
        return key[0], key[1], key[2].value

    def cooldown_until(self, key: MonitorKey) -> Optional[datetime]:
        """End of the cooldown on key, or None if not cooling down."""
        until = self._cooldowns.get(key)
        if until is None:
            return None
        if until <= self._clock.now():
            del self._cooldowns[key]
            return None
        return until

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def tick_all(self) -> Dict[str, int]:
        """
        Evaluate every active monitor whose check interval elapsed.

        Returns:
            {checked, executed, cancelled, errors}
        """
        report = {"checked": 0, "executed": 0, "cancelled": 0, "errors": 0}
        now = self._clock.now()

        for record in [r for r in self._monitors.values() if r.is_active]:
            interval = record.machine.config.check_interval_sec
            if record.last_check_at and (now - record.last_check_at).total_seconds() < interval:
                continue

            async with self._locks.hold(record.id):
                if not record.is_active:
                    continue
                report["checked"] += 1
                try:
                    phase = await self._tick_one(record)
                except Exception as e:
                    logger.error(f"Monitor {record.id} ({record.signal.symbol}) failed: {e}")
                    record.machine.cancel(MonitorPhase.CANCELLED_ADVERSE, str(e), force=True)
                    self._release(record)
                    report["errors"] += 1
                    continue

            if phase is MonitorPhase.CONFIRMED:
                report["executed"] += 1
            elif phase.is_cancelled:
                report["cancelled"] += 1

        if report["checked"]:
            logger.debug(f"Confirmation tick: {report}")
        return report

    async def _tick_one(self, record: MonitorRecord) -> MonitorPhase:
        now = self._clock.now()
        price = await self._prices.get_price(record.signal.symbol, record.trade_mode)
        record.last_check_at = now

        phase = record.machine.tick(price, (now - record.started_at).total_seconds())
        if phase is MonitorPhase.CONFIRMED:
            logger.info(f"Monitor {record.id} confirmed at {price}: {record.machine.reason}")
            await self._execute(record, price)
        elif phase.is_terminal:
            logger.info(f"Monitor {record.id} {phase.value}: {record.machine.reason}")
            self._release(record)
        return phase

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def _execute(self, record: MonitorRecord, price: Decimal) -> None:
        signal = record.signal

        if signal.side is Side.BUY:
            intent = TradeIntent(
                exchange_account_id=signal.exchange_account_id,
                symbol=signal.symbol,
                side=Side.BUY,
                qty=signal.qty,
                origin=JobOrigin.WEBHOOK,
                reference_price=price,
            )
        else:
            position = await self._resolve_sell_target(signal)
            qty = signal.qty or position.qty_remaining
            if qty > position.qty_remaining:
                raise InsufficientQuantity(position.id, qty, position.qty_remaining)
            record.target_position_id = position.id
            intent = TradeIntent(
                exchange_account_id=signal.exchange_account_id,
                symbol=signal.symbol,
                side=Side.SELL,
                qty=qty,
                origin=JobOrigin.WEBHOOK,
                target_position_id=position.id,
                exit_reason=ExitReason.WEBHOOK,
                reference_price=price,
            )

        job = await self._placement.submit(intent)

        now = self._clock.now()
        record.job_id = job.id
        record.executed_price = price
        record.savings_pct = quantize(record.machine.savings_pct(record.signal_price, price))
        record.efficiency_pct = quantize(record.machine.efficiency_pct(record.signal_price, price))
        self._release(record)

        cooldown = record.machine.config.cooldown_after_execution_min
        if cooldown > 0:
            self._cooldowns[record.key] = now + timedelta(minutes=cooldown)

        opposite = (signal.exchange_account_id, signal.symbol, signal.side.opposite)
        other_id = self._active.get(opposite)
        if other_id is not None:
            other = self._monitors[other_id]
            other.machine.cancel(
                MonitorPhase.CANCELLED_COOLDOWN,
                f"Superseded by executed {signal.side.value} monitor {record.id}",
            )
            self._release(other)
            logger.info(f"Monitor {other_id} cancelled by execution of monitor {record.id}")

        logger.info(
            f"Monitor {record.id} executed as job {job.id}: {signal.side.value} {intent.qty} "
            f"{signal.symbol} @ {price} savings={record.savings_pct}%"
        )

    async def _resolve_sell_target(self, signal: TradeSignal) -> PositionModel:
        """
        OPEN position a webhook SELL reduces.

        An explicit position_id wins; otherwise the oldest OPEN
        position of (account, symbol) not locked against webhook sells.
        """
        if signal.position_id is not None:
            position = await self._store.get(signal.position_id)
            if not position.is_open:
                raise PositionAlreadyClosed(position.id)
            if (
                position.symbol != signal.symbol
                or position.exchange_account_id != signal.exchange_account_id
                or position.lock_sell_by_webhook
            ):
                raise NoCompatiblePosition(
                    signal.exchange_account_id, signal.symbol, signal.qty or Decimal("0"),
                )
            return position

        for position in await self._store.list_open(signal.exchange_account_id, signal.symbol):
            if not position.lock_sell_by_webhook:
                return position
        raise NoCompatiblePosition(signal.exchange_account_id, signal.symbol, signal.qty or Decimal("0"))

    def _release(self, record: MonitorRecord) -> None:
        record.finished_at = self._clock.now()
        if self._active.get(record.key) == record.id:
            del self._active[record.key]
        self._trim_history()

    def _trim_history(self) -> None:
        finished = [mid for mid, r in self._monitors.items() if not r.is_active]
        for mid in finished[: max(0, len(self._monitors) - self._history_limit)]:
            del self._monitors[mid]

    # --------------------------------------------------------
    # OPERATOR COMMANDS
    # --------------------------------------------------------

    async def abort(self, monitor_id: str, reason: str = "Aborted by operator") -> MonitorRecord:
        """
        Cancel a monitor as CANCELLED_MANUAL.

        A finished monitor is returned unchanged.

        Raises:
            MonitorNotFound
        """
        record = self.get(monitor_id)
        async with self._locks.hold(monitor_id):
            if record.is_active:
                record.machine.cancel(MonitorPhase.CANCELLED_MANUAL, reason)
                self._release(record)
                logger.info(f"Monitor {monitor_id} aborted: {reason}")
        return record

    def get(self, monitor_id: str) -> MonitorRecord:
        record = self._monitors.get(monitor_id)
        if record is None:
            raise MonitorNotFound(monitor_id)
        return record

    def list_monitors(self, active_only: bool = False, symbol: Optional[str] = None) -> List[MonitorRecord]:
        records = [
            r for r in self._monitors.values()
            if (not active_only or r.is_active) and (symbol is None or r.signal.symbol == symbol)
        ]
        return sorted(records, key=lambda r: r.started_at, reverse=True)

    @property
    def active_count(self) -> int:
        return len(self._active)

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        """Counts by phase and savings/efficiency of executed monitors."""
        by_phase = {phase.value: 0 for phase in MonitorPhase}
        for record in self._monitors.values():
            by_phase[record.phase.value] += 1

        executed = [
            r for r in self._monitors.values()
            if r.phase is MonitorPhase.CONFIRMED and r.savings_pct is not None
        ]
        summary: Dict[str, Any] = {
            "active": self.active_count,
            "total": len(self._monitors),
            "by_phase": by_phase,
            "executed": len(executed),
            "avg_savings_pct": None,
            "avg_efficiency_pct": None,
            "best_result": None,
            "worst_result": None,
        }
        if executed:
            n = Decimal(len(executed))
            summary["avg_savings_pct"] = str(quantize(sum((r.savings_pct for r in executed), Decimal("0")) / n))
            summary["avg_efficiency_pct"] = str(
                quantize(sum((r.efficiency_pct for r in executed), Decimal("0")) / n)
            )
            ranked = sorted(executed, key=lambda r: r.savings_pct, reverse=True)
            summary["best_result"] = {"symbol": ranked[0].signal.symbol, "savings_pct": str(ranked[0].savings_pct)}
            summary["worst_result"] = {"symbol": ranked[-1].signal.symbol, "savings_pct": str(ranked[-1].savings_pct)}
        return summary

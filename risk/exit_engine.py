import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from api.metrics import MetricsCollector
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from execution.router import OrderRouter, exit_request_for
from execution.types import OrderConfirmation
from orchestration.persistence import PositionStore
from .circuit_breaker import CircuitBreaker
from .errors import ConcurrencyConflict
from .models import Position, PositionStatus


logger = logging.getLogger(__name__)


@dataclass
class ExitOutcome:
    position_id: str
    executed: bool
    reason: Optional[str] = None
    exit_price: Optional[float] = None
    confirmation: Optional[OrderConfirmation] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ExitEngine:
    """Exactly-once exit execution.

    A position is claimed by moving it active -> exiting in the durable
    store; only the caller that wins that transition submits an order.
    """

    def __init__(
        self,
        store: PositionStore,
        router: OrderRouter,
        position_cache: PositionCache,
        pnl_cache: PnlCache,
        breaker: CircuitBreaker,
        metrics: Optional[MetricsCollector] = None,
        unsubscribe: Optional[Callable[[str, str], Awaitable[None]]] = None,
        discard_pending: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.router = router
        self.position_cache = position_cache
        self.pnl_cache = pnl_cache
        self.breaker = breaker
        self.metrics = metrics or MetricsCollector()
        self.unsubscribe = unsubscribe
        self.discard_pending = discard_pending
        self._locks: Dict[str, asyncio.Lock] = {}
        self._unfinished: Dict[str, Tuple[str, Optional[float], Optional[OrderConfirmation], Dict[str, Any]]] = {}

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = self._locks[position_id] = asyncio.Lock()
        return lock

    def is_exiting(self, position_id: str) -> bool:
        lock = self._locks.get(position_id)
        return lock is not None and lock.locked()

    async def execute(self, position_id: str, reason: str, metadata: Optional[Dict[str, Any]] = None) -> ExitOutcome:
        metadata = dict(metadata or {})
        lock = self._lock_for(position_id)
        if lock.locked():
            self.metrics.record_exit_conflict()
            return ExitOutcome(position_id, executed=False, reason=reason, error='exit in progress')

        async with lock:
            try:
                claimed = await self.store.transition_status(position_id, PositionStatus.ACTIVE, PositionStatus.EXITING)
            except ConcurrencyConflict as e:
                logger.debug("Exit for %s skipped: %s", position_id, e)
                self.metrics.record_exit_conflict()
                return ExitOutcome(position_id, executed=False, reason=reason, error='not active')
            self.position_cache.update_fields(position_id, status=PositionStatus.EXITING)
            outcome = await self._run_exit(claimed, reason, metadata)

        if outcome.executed:
            self._locks.pop(position_id, None)
        return outcome

    async def recover(self, position: Position) -> Optional[PositionStatus]:
        """Resolve a position left in exiting by a failed store write.

        A fill this engine already saw is finished as exited; anything else
        goes back to active so the rules can exit it again.
        """
        lock = self._lock_for(position.id)
        if lock.locked():
            return None
        async with lock:
            unfinished = self._unfinished.get(position.id)
            if unfinished is not None:
                reason, exit_price, confirmation, metadata = unfinished
                outcome = await self._finish(position, reason, exit_price, confirmation, metadata)
                recovered = PositionStatus.EXITED if outcome.executed else None
            else:
                reverted = await self.store.transition_status(position.id, PositionStatus.EXITING, PositionStatus.ACTIVE)
                if self.position_cache.update_fields(position.id, status=PositionStatus.ACTIVE) is None:
                    self.position_cache.add(reverted)
                logger.warning("Reverted stuck exit for %s to active", position.id)
                recovered = PositionStatus.ACTIVE

        if recovered == PositionStatus.EXITED:
            self._locks.pop(position.id, None)
        return recovered

    def _resolve_exit_price(self, position: Position) -> Optional[float]:
        cached = self.position_cache.get(position.id)
        if cached is not None and cached.current_price:
            return cached.current_price
        snapshot = self.pnl_cache.fetch(position.id)
        if snapshot is not None and snapshot.last_price:
            return snapshot.last_price
        return position.current_price

    async def _run_exit(self, position: Position, reason: str, metadata: Dict[str, Any]) -> ExitOutcome:
        order_key = f"orders:{position.segment}"
        exit_price = self._resolve_exit_price(position)
        confirmation: Optional[OrderConfirmation] = None
        cached = self.position_cache.get(position.id)
        if position.bracket_fill or (cached is not None and cached.bracket_fill):
            # The broker already closed the position through its bracket leg.
            metadata.setdefault('broker_filled', True)

        if not metadata.get('broker_filled'):
            request = exit_request_for(position, reason=reason, reference_price=exit_price)
            try:
                confirmation = await self.router.submit_exit(request)
            except Exception as e:
                logger.error("Exit submission failed for %s (%s): %s", position.id, reason, e)
                self.breaker.record_failure(order_key)
                self.metrics.record_exit_failure()
                await self._revert(position)
                return ExitOutcome(position.id, executed=False, reason=reason, error=str(e), metadata=metadata)
            self.breaker.record_success(order_key)
            if confirmation.average_price:
                exit_price = confirmation.average_price

        return await self._finish(position, reason, exit_price, confirmation, metadata)

    async def _finish(
        self,
        position: Position,
        reason: str,
        exit_price: Optional[float],
        confirmation: Optional[OrderConfirmation],
        metadata: Dict[str, Any],
    ) -> ExitOutcome:
        try:
            await self.store.transition_status(
                position.id,
                PositionStatus.EXITING,
                PositionStatus.EXITED,
                exit_reason=reason,
                exit_price=exit_price,
                exited_at=time.time(),
            )
        except Exception as e:
            # The order is filled; reconciliation retries the write.
            self._unfinished[position.id] = (reason, exit_price, confirmation, metadata)
            logger.error("Exit for %s filled but could not be recorded: %s", position.id, e)
            self.metrics.record_error('exit_record')
            return ExitOutcome(
                position.id, executed=False, reason=reason, exit_price=exit_price,
                confirmation=confirmation, error=f"unrecorded fill: {e}", metadata=metadata,
            )

        self._unfinished.pop(position.id, None)
        self.position_cache.remove(position.id)
        if self.discard_pending is not None:
            self.discard_pending(position.id)
        self.pnl_cache.clear(position.id)
        await self._release_feed(position)
        self.metrics.record_exit(reason)
        logger.info(
            "Exited %s %s x%s @ %s: %s", position.id, position.instrument_id, position.quantity, exit_price, reason
        )
        return ExitOutcome(
            position.id,
            executed=True,
            reason=reason,
            exit_price=exit_price,
            confirmation=confirmation,
            metadata=metadata,
        )

    async def _revert(self, position: Position):
        try:
            await self.store.transition_status(position.id, PositionStatus.EXITING, PositionStatus.ACTIVE)
        except Exception as e:
            logger.error("Could not revert %s to active after failed exit: %s", position.id, e)
            self.metrics.record_error('exit_revert')
        # A store row still marked exiting is reverted by reconciliation.
        self.position_cache.update_fields(position.id, status=PositionStatus.ACTIVE)

    async def _release_feed(self, position: Position):
        if self.unsubscribe is None:
            return
        if self.position_cache.has_instrument(position.segment, position.instrument_id):
            return
        try:
            await self.unsubscribe(position.segment, str(position.instrument_id))
        except Exception as e:
            logger.warning("Unsubscribe failed for %s: %s", position.instrument_id, e)

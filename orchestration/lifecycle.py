import logging
from typing import TYPE_CHECKING, Optional

from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from risk.errors import ValidationError
from risk.models import Position, PositionStatus
from .persistence import PositionStore

if TYPE_CHECKING:
    from ingest.tick_listener import TickListener


logger = logging.getLogger(__name__)


async def register_position(
    position: Position,
    store: PositionStore,
    position_cache: PositionCache,
    pnl_cache: PnlCache,
    listener: Optional['TickListener'] = None,
) -> Position:
    """Take over a newly entered position: persist, subscribe to the feed, then cache it.

    If a later step fails the position is still durable, and the
    reconciliation pass finishes the registration.
    """
    if position.status not in (PositionStatus.PENDING, PositionStatus.ACTIVE):
        raise ValidationError(f"Cannot register position {position.id} in status {position.status.value}")

    stored = await store.create(position)
    logger.info(
        "Registered position %s %s %s x%s @ %.2f",
        stored.id, stored.side, stored.symbol or stored.instrument_id, stored.quantity, stored.entry_price,
    )

    if listener is not None:
        await listener.subscribe(stored.segment, str(stored.instrument_id))
        if stored.underlying_segment and stored.underlying_instrument_id:
            await listener.subscribe(stored.underlying_segment, str(stored.underlying_instrument_id))

    if stored.status == PositionStatus.ACTIVE:
        position_cache.add(stored)
        snapshot = stored.snapshot()
        if snapshot is not None:
            pnl_cache.store(stored.id, snapshot)
    return stored


async def activate_position(
    position_id: str,
    store: PositionStore,
    position_cache: PositionCache,
    pnl_cache: PnlCache,
    fill_price: Optional[float] = None,
) -> Position:
    """pending -> active once the entry order fills."""
    active = await store.transition_status(position_id, PositionStatus.PENDING, PositionStatus.ACTIVE)
    if fill_price is not None:
        active.apply_price(fill_price)
    position_cache.add(active)
    snapshot = active.snapshot()
    if snapshot is not None:
        pnl_cache.store(active.id, snapshot)
    return active

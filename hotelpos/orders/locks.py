# hotelpos/orders/locks.py
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class OrderLocks:
    """
    Un asyncio.Lock per ordine: serializza "transazione + emissione eventi"
    così gli eventi di uno stesso ordine escono nell'ordine di commit.
    Ordini diversi non si bloccano a vicenda.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}
        self._waiters: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: int):
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._waiters[order_id] = self._waiters.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[order_id] -= 1
            if not self._waiters[order_id]:
                # nessuno in attesa: libera la entry
                del self._waiters[order_id]
                self._locks.pop(order_id, None)

    def __len__(self) -> int:
        return len(self._locks)

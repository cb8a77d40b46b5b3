"""
Locks de exclusão mútua por negociação (um asyncio.Lock por service_id).

Não existe lock global: operações em serviços diferentes nunca esperam umas
pelas outras. O lock cobre apenas validar + aplicar + persistir; a publicação
de eventos acontece depois de liberado.

Process-local: com vários workers a proteção entre processos vem do OCC do store.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class NegotiationLocks:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, service_id: str) -> asyncio.Lock:
        # Sem await entre get e set: criação atômica dentro do event loop
        lock = self._locks.get(service_id)
        if lock is None:
            lock = self._locks[service_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, service_id: str) -> AsyncIterator[None]:
        async with self.lock_for(service_id):
            yield

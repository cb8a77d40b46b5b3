import asyncio
import logging
from collections import OrderedDict, deque
from typing import Protocol

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from towing_negotiation.config import DispatchPolicy
from towing_negotiation.messages import MessageRenderer
from towing_negotiation.state_models import NegotiationEvent, PushNotification

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = 10_000


class EventSink(Protocol):
    name: str

    async def deliver(self, event: NegotiationEvent) -> None: ...


class PushGateway(Protocol):
    async def send(self, notification: PushNotification) -> None: ...


class RecentKeys:
    """Janela LRU de chaves de idempotência já entregues; a mais antiga sai quando enche."""

    def __init__(self, maxsize: int = DEFAULT_DEDUP_WINDOW):
        self.maxsize = maxsize
        self._keys: OrderedDict[tuple[str, str, int], None] = OrderedDict()

    def __contains__(self, key) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: tuple[str, str, int]) -> None:
        if key in self._keys:
            self._keys.move_to_end(key)
            return
        while len(self._keys) >= self.maxsize:
            self._keys.popitem(last=False)
        self._keys[key] = None


class InMemoryBroadcaster:
    """Fan-out de referência (no lugar do WebSocket). Idempotente em (service_id, type, version)."""

    name = "broadcast"

    def __init__(self, dedup_window: int = DEFAULT_DEDUP_WINDOW):
        self.events: list[NegotiationEvent] = []
        self._seen = RecentKeys(dedup_window)

    async def deliver(self, event: NegotiationEvent) -> None:
        if event.idempotency_key in self._seen:
            return
        self._seen.add(event.idempotency_key)
        self.events.append(event)

    def channel(self, service_id: str) -> list[NegotiationEvent]:
        return [e for e in self.events if e.service_id == service_id]


class LoggingPushGateway:
    """Gateway push de referência: só registra e loga o envio."""

    def __init__(self):
        self.sent: list[PushNotification] = []

    async def send(self, notification: PushNotification) -> None:
        logger.info("Push para %s: %s - %s", notification.recipient_id, notification.title, notification.body)
        self.sent.append(notification)


class PushNotificationSink:
    name = "push"

    def __init__(
        self,
        gateway: PushGateway,
        renderer: MessageRenderer | None = None,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
    ):
        self.gateway = gateway
        self.renderer = renderer or MessageRenderer()
        self._seen = RecentKeys(dedup_window)

    async def deliver(self, event: NegotiationEvent) -> None:
        if event.idempotency_key in self._seen:
            return
        notification = self.renderer.push_notification(event)
        if notification is None:
            logger.debug("Evento %s sem destinatario push. Ignorando.", event.idempotency_key)
        else:
            await self.gateway.send(notification)
        self._seen.add(event.idempotency_key)


class EventDispatcher:
    """
    Fila de saída dos NegotiationEvent.
    publish() é fire-and-forget (não bloqueia o lock da negociação); um worker
    entrega cada evento a todos os sinks com retry (at-least-once).
    Com a fila cheia o evento vai para um overflow que o worker e o drain()
    reinjetam na ordem de publicação: nenhum evento aceito é perdido.
    """

    def __init__(self, sinks: list[EventSink] | None = None, policy: DispatchPolicy | None = None):
        self.sinks: list[EventSink] = list(sinks or [])
        self.policy = policy or DispatchPolicy()
        self._queue: asyncio.Queue[NegotiationEvent] = asyncio.Queue(maxsize=self.policy.queue_size)
        self._overflow: deque[NegotiationEvent] = deque()
        self._worker: asyncio.Task | None = None

    def publish(self, event: NegotiationEvent) -> None:
        if self._overflow:
            self._overflow.append(event)
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Fila de eventos cheia. Evento %s mantido em overflow.", event.idempotency_key)
            self._overflow.append(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._overflow)

    def _refill(self) -> None:
        while self._overflow and not self._queue.full():
            self._queue.put_nowait(self._overflow.popleft())

    async def _deliver_to(self, sink: EventSink, event: NegotiationEvent) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.policy.max_attempts),
                wait=wait_exponential(multiplier=1, min=self.policy.wait_min, max=self.policy.wait_max),
                reraise=True,
            ):
                with attempt:
                    await sink.deliver(event)
        except Exception as e:
            logger.error(
                "Falha ao entregar evento %s ao sink %s apos retries. Causa: %s",
                event.idempotency_key,
                getattr(sink, "name", sink),
                e,
            )

    async def _deliver(self, event: NegotiationEvent) -> None:
        await asyncio.gather(*(self._deliver_to(sink, event) for sink in self.sinks))

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()
                self._refill()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="negotiation-event-dispatcher")

    async def drain(self) -> None:
        """Espera fila e overflow esvaziarem; sem worker ativo, entrega os pendentes inline."""
        if self._worker is not None and not self._worker.done():
            while True:
                self._refill()
                await self._queue.join()
                if self._queue.empty() and not self._overflow:
                    return
        while True:
            self._refill()
            if self._queue.empty():
                return
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

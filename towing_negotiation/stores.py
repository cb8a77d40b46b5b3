import logging
from typing import Protocol

from towing_negotiation.exceptions import ConflictError, NotFoundError
from towing_negotiation.state_machine import initial_status
from towing_negotiation.state_models import ChatMessage, Negotiation, Service

logger = logging.getLogger(__name__)


class NegotiationStore(Protocol):
    """Contrato do store de serviços/negociações consumido pelo Coordinator."""

    async def create_negotiation(self, service: Service) -> Negotiation | None: ...

    async def get_negotiation(self, service_id: str) -> Negotiation: ...

    async def save_negotiation(
        self,
        negotiation: Negotiation,
        expected_version: int,
        *,
        closed: Negotiation | None = None,
        service: Service | None = None,
    ) -> Negotiation: ...

    async def list_attempts(self, service_id: str) -> list[Negotiation]: ...

    async def get_service(self, service_id: str) -> Service: ...


class ChatStore(Protocol):
    async def append_message(self, message: ChatMessage) -> str: ...

    async def list_messages(self, service_id: str) -> list[ChatMessage]: ...


class InMemoryNegotiationStore:
    """Store de referência em memória. Cópias defensivas evitam que o caller altere o estado salvo."""

    def __init__(self):
        self._services: dict[str, Service] = {}
        self._negotiations: dict[str, Negotiation] = {}
        self._history: dict[str, list[Negotiation]] = {}

    async def create_negotiation(self, service: Service) -> Negotiation | None:
        """Idempotente: registrar de novo um serviço devolve o registro existente sem sobrescrevê-lo."""
        if service.id in self._services:
            existing = self._negotiations.get(service.id)
            return existing.model_copy() if existing else None
        self._services[service.id] = service.model_copy(deep=True)
        if not service.requires_negotiation:
            return None
        negotiation = Negotiation(service_id=service.id, status=initial_status(True))
        self._negotiations[service.id] = negotiation
        self._history[service.id] = []
        return negotiation.model_copy()

    async def get_negotiation(self, service_id: str) -> Negotiation:
        try:
            return self._negotiations[service_id].model_copy()
        except KeyError:
            raise NotFoundError(f"No existe negociacion para el servicio {service_id}") from None

    async def save_negotiation(
        self,
        negotiation: Negotiation,
        expected_version: int,
        *,
        closed: Negotiation | None = None,
        service: Service | None = None,
    ) -> Negotiation:
        """Escrita única (OCC): negociação, tentativa encerrada e projeção do serviço mudam juntas ou nada muda."""
        current = self._negotiations.get(negotiation.service_id)
        if current is None:
            raise NotFoundError(f"No existe negociacion para el servicio {negotiation.service_id}")
        if current.version != expected_version:
            raise ConflictError(
                f"OCC conflict: expected version {expected_version}, found {current.version}."
            )
        if closed is not None:
            self._history[negotiation.service_id].append(closed.model_copy())
        if service is not None:
            self._services[service.id] = service.model_copy()
        self._negotiations[negotiation.service_id] = negotiation.model_copy()
        return negotiation

    async def list_attempts(self, service_id: str) -> list[Negotiation]:
        """Tentativas encerradas por rejeição, da mais antiga para a mais recente."""
        return [n.model_copy() for n in self._history.get(service_id, [])]

    async def get_service(self, service_id: str) -> Service:
        try:
            return self._services[service_id].model_copy()
        except KeyError:
            raise NotFoundError(f"Servicio {service_id} no encontrado") from None


class InMemoryChatStore:
    def __init__(self):
        self._messages: dict[str, list[ChatMessage]] = {}

    async def append_message(self, message: ChatMessage) -> str:
        self._messages.setdefault(message.service_id, []).append(message)
        return message.id

    async def list_messages(self, service_id: str) -> list[ChatMessage]:
        return list(self._messages.get(service_id, []))

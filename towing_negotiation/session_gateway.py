import logging
import os
import uuid
from typing import Any

from google.adk.events.event import Event
from google.adk.events.event_actions import EventActions
from google.adk.sessions import InMemorySessionService, VertexAiSessionService
from pydantic import ValidationError as PydanticValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from towing_negotiation.exceptions import ConflictError, CorruptedCheckpointError, NotFoundError, StoreRecoveryError
from towing_negotiation.state_machine import initial_status
from towing_negotiation.state_models import Negotiation, Service

logger = logging.getLogger(__name__)

# Nomes usados na API de sessões do ADK (app_name / user_id)
APP_NAME = "towing-negotiation"
USER_ID = "negotiations"


def _is_transient(exc: BaseException) -> bool:
    return not isinstance(exc, (ConflictError, NotFoundError, CorruptedCheckpointError))


# Política de retry: Exponential Backoff para throttling (429) e falhas transitórias.
# Conflitos de OCC e ausências nunca são repetidos.
RETRY_POLICY = dict(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class AdkNegotiationStore:
    """
    Gateway de persistência das negociações sobre o Session Service do Google ADK.
    Cada serviço vira uma sessão; o estado da sessão guarda o Service, a Negotiation
    ativa e o histórico de tentativas rejeitadas. Escrita via append_event com
    state_delta, precedida de checagem OCC da versão.
    """

    def __init__(self, project_id: str | None = None, location: str | None = None):
        self.project_id = project_id or os.environ.get("GOOGLE_CLOUD_PROJECT")
        self.location = location or os.environ.get("GOOGLE_CLOUD_LOCATION") or os.environ.get("GOOGLE_CLOUD_REGION")
        use_vertex_session = os.environ.get("USE_VERTEX_SESSION", "").strip().lower() in ("1", "true")

        self.is_mock = not (bool(self.project_id) and use_vertex_session)
        if self.is_mock:
            self.service = InMemorySessionService()
            if not self.project_id:
                logger.warning("GOOGLE_CLOUD_PROJECT nao definido. Usando store de negociacoes mock em memoria.")
        else:
            self.service = VertexAiSessionService(self.project_id, self.location)
        # Vertex gera o id da sessão; mantemos o mapa service_id -> session_id
        self._session_ids: dict[str, str] = {}

    async def _load_session(self, service_id: str) -> Any:
        session_id = self._session_ids.get(service_id, service_id)
        try:
            session = await self.service.get_session(app_name=APP_NAME, user_id=USER_ID, session_id=session_id)
        except Exception as e:
            raise StoreRecoveryError(f"Falha ao recuperar checkpoint ADK para {service_id}: {str(e)}") from e
        if session is None:
            raise NotFoundError(f"No existe negociacion para el servicio {service_id}")
        return session

    async def _write(self, session: Any, state_delta: dict) -> None:
        event = Event(
            author="NegotiationCoordinator",
            invocation_id=str(uuid.uuid4()),
            actions=EventActions(state_delta=state_delta),
        )
        await self.service.append_event(session=session, event=event)

    async def _find_session(self, service_id: str) -> Any | None:
        # Vertex gera o id da sessão: sem mapeamento local não há sessão conhecida
        if not self.is_mock and service_id not in self._session_ids:
            return None
        try:
            return await self._load_session(service_id)
        except NotFoundError:
            return None

    @retry(**RETRY_POLICY)
    async def create_negotiation(self, service: Service) -> Negotiation | None:
        """Idempotente: um serviço já registrado devolve a negociação existente sem recriar a sessão."""
        existing = await self._find_session(service.id)
        if existing is not None:
            raw = existing.state.get("negotiation")
            return Negotiation(**raw) if raw else None

        negotiation = (
            Negotiation(service_id=service.id, status=initial_status(True)) if service.requires_negotiation else None
        )
        state = {
            "service": service.model_dump(mode="json"),
            "negotiation": negotiation.model_dump(mode="json") if negotiation else None,
            "attempts": [],
        }
        if self.is_mock:
            session = await self.service.create_session(
                app_name=APP_NAME, user_id=USER_ID, session_id=service.id, state=state
            )
        else:
            # Vertex: não aceita session_id definido pelo cliente
            session = await self.service.create_session(app_name=APP_NAME, user_id=USER_ID, state=state)
        self._session_ids[service.id] = session.id
        return negotiation

    @retry(**RETRY_POLICY)
    async def get_negotiation(self, service_id: str) -> Negotiation:
        session = await self._load_session(service_id)
        raw = session.state.get("negotiation")
        if raw is None:
            raise NotFoundError(f"No existe negociacion para el servicio {service_id}")
        try:
            return Negotiation(**raw)
        except PydanticValidationError as e:
            logger.error("Checkpoint corrompido para %s! Erro: %s", service_id, e)
            raise CorruptedCheckpointError(f"Checkpoint corrompido para {service_id}") from e

    @retry(**RETRY_POLICY)
    async def save_negotiation(
        self,
        negotiation: Negotiation,
        expected_version: int,
        *,
        closed: Negotiation | None = None,
        service: Service | None = None,
    ) -> Negotiation:
        """
        Salva a FSM atualizada (OCC): falha com ConflictError se outro writer persistiu antes.
        Negociação, tentativa encerrada e Service vão num único append_event (um state_delta).
        """
        session = await self._load_session(negotiation.service_id)
        raw = session.state.get("negotiation")
        if raw is None:
            raise NotFoundError(f"No existe negociacion para el servicio {negotiation.service_id}")
        current_version = raw.get("version", 1)
        if current_version != expected_version:
            raise ConflictError(f"OCC conflict: expected version {expected_version}, found {current_version}.")

        delta: dict[str, Any] = {"negotiation": negotiation.model_dump(mode="json")}
        if closed is not None:
            delta["attempts"] = list(session.state.get("attempts") or []) + [closed.model_dump(mode="json")]
        if service is not None:
            delta["service"] = service.model_dump(mode="json")
        await self._write(session, delta)
        return negotiation

    @retry(**RETRY_POLICY)
    async def list_attempts(self, service_id: str) -> list[Negotiation]:
        session = await self._load_session(service_id)
        return [Negotiation(**raw) for raw in session.state.get("attempts") or []]

    @retry(**RETRY_POLICY)
    async def get_service(self, service_id: str) -> Service:
        session = await self._load_session(service_id)
        try:
            return Service(**session.state["service"])
        except (KeyError, PydanticValidationError) as e:
            raise CorruptedCheckpointError(f"Checkpoint de servicio corrompido para {service_id}") from e

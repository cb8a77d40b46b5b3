import logging
from decimal import Decimal

from towing_negotiation import amount_detector, state_machine
from towing_negotiation.config import NegotiationPolicy, load_policy
from towing_negotiation.dispatcher import EventDispatcher, InMemoryBroadcaster, LoggingPushGateway, PushNotificationSink
from towing_negotiation.exceptions import ConflictError, NotFoundError, UnauthorizedTransitionError
from towing_negotiation.locks import NegotiationLocks
from towing_negotiation.messages import MESSAGE_KINDS, MessageRenderer
from towing_negotiation.money import to_money
from towing_negotiation.state_models import (
    ChatMessage,
    EventType,
    MessageKind,
    Negotiation,
    NegotiationAction,
    NegotiationEvent,
    Role,
    Service,
)
from towing_negotiation.stores import ChatStore, InMemoryChatStore, InMemoryNegotiationStore, NegotiationStore

logger = logging.getLogger(__name__)

A = NegotiationAction

EVENT_TYPES = {
    A.PROPOSE_AMOUNT: EventType.AMOUNT_PROPOSED,
    A.UPDATE_PROPOSAL: EventType.AMOUNT_PROPOSED,
    A.CONFIRM_AMOUNT: EventType.AMOUNT_CONFIRMED,
    A.ACCEPT_AMOUNT: EventType.AMOUNT_ACCEPTED,
    A.REJECT_AMOUNT: EventType.AMOUNT_REJECTED,
    A.CANCEL_SERVICE: EventType.NEGOTIATION_CANCELLED,
}


class NegotiationCoordinator:
    """
    Autoridade única que altera uma Negotiation.
    Junta detecção de montantes, autorização (FSM + identidade do ator) e
    concorrência (lock por serviço + OCC). Eventos são publicados na fila de
    saída depois que o lock é liberado.
    Dependências injetadas (IoC) para testes e substituição de infraestrutura.
    """

    def __init__(
        self,
        store: NegotiationStore,
        chat_store: ChatStore,
        dispatcher: EventDispatcher,
        *,
        locks: NegotiationLocks | None = None,
        renderer: MessageRenderer | None = None,
        policy: NegotiationPolicy | None = None,
    ):
        self.store = store
        self.chat_store = chat_store
        self.dispatcher = dispatcher
        self.locks = locks or NegotiationLocks()
        self.renderer = renderer or MessageRenderer()
        self.policy = policy or NegotiationPolicy()

    async def register_service(self, service: Service) -> Negotiation | None:
        """Cria a negociação implícita de um serviço que a exige (pending_evaluation)."""
        negotiation = await self.store.create_negotiation(service)
        if negotiation is not None:
            logger.info("Negociacao aberta para servico %s (%s)", service.id, service.category.value)
        return negotiation

    async def get_negotiation(self, service_id: str) -> Negotiation:
        return await self.store.get_negotiation(service_id)

    async def list_messages(self, service_id: str) -> list[ChatMessage]:
        return await self.chat_store.list_messages(service_id)

    async def list_attempts(self, service_id: str) -> list[Negotiation]:
        return await self.store.list_attempts(service_id)

    # ------------------------------------------------------------------
    # Ações explícitas
    # ------------------------------------------------------------------

    async def propose_amount(self, service_id: str, driver_id: str, amount, *, expected_version: int) -> Negotiation:
        money = to_money(amount)
        async with self.locks.hold(service_id):
            negotiation = await self.store.get_negotiation(service_id)
            action = state_machine.proposal_action(negotiation.status) or A.PROPOSE_AMOUNT
            negotiation, event = await self._transition(
                negotiation, driver_id, Role.DRIVER, action, expected_version, amount=money
            )
        self.dispatcher.publish(event)
        return negotiation

    async def confirm_amount(self, service_id: str, driver_id: str, *, expected_version: int) -> Negotiation:
        return await self._act(service_id, driver_id, Role.DRIVER, A.CONFIRM_AMOUNT, expected_version)

    async def accept_amount(self, service_id: str, client_id: str, *, expected_version: int) -> Negotiation:
        return await self._act(service_id, client_id, Role.CLIENT, A.ACCEPT_AMOUNT, expected_version)

    async def reject_amount(self, service_id: str, client_id: str, *, expected_version: int) -> Negotiation:
        """Fecha a tentativa como rejected e devolve a nova tentativa em pending_evaluation."""
        return await self._act(service_id, client_id, Role.CLIENT, A.REJECT_AMOUNT, expected_version)

    async def cancel_service(self, service_id: str, client_id: str, *, expected_version: int) -> Negotiation:
        return await self._act(service_id, client_id, Role.CLIENT, A.CANCEL_SERVICE, expected_version)

    async def _act(
        self, service_id: str, actor_id: str, role: Role, action: NegotiationAction, expected_version: int
    ) -> Negotiation:
        async with self.locks.hold(service_id):
            negotiation = await self.store.get_negotiation(service_id)
            negotiation, event = await self._transition(negotiation, actor_id, role, action, expected_version)
        self.dispatcher.publish(event)
        return negotiation

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def handle_chat_message(
        self, service_id: str, sender_id: str, sender_role: Role | str, text: str
    ) -> ChatMessage:
        """
        Armazena a mensagem livre e, se o motorista citar um montante enquanto a
        negociação aceita valores, aplica a proposta exatamente como propose_amount.
        A detecção nunca passa por cima da autorização: falhas aqui só são logadas.
        """
        role = Role(sender_role)
        message = ChatMessage(service_id=service_id, sender_id=sender_id, role=role, kind=MessageKind.TEXT, content=text)
        async with self.locks.hold(service_id):
            await self.chat_store.append_message(message)
            if role is not Role.DRIVER or not self.policy.chat.detect_amounts:
                return message
            try:
                negotiation = await self.store.get_negotiation(service_id)
            except NotFoundError:
                return message

            action = state_machine.proposal_action(negotiation.status)
            if action is None:
                return message
            detected = amount_detector.detect(text)
            if detected is None:
                return message

            try:
                _, event = await self._transition(
                    negotiation,
                    sender_id,
                    role,
                    action,
                    negotiation.version,
                    amount=to_money(detected.amount),
                )
            except UnauthorizedTransitionError as e:
                logger.warning("Montante detectado no chat de %s ignorado: %s", service_id, e)
                return message
            logger.info("Montante %s detectado no chat do servico %s (%r)", detected.amount, service_id, detected.raw_match)
        self.dispatcher.publish(event)
        return message

    # ------------------------------------------------------------------
    # Núcleo: validar + aplicar + persistir (chamado com o lock do serviço)
    # ------------------------------------------------------------------

    async def _transition(
        self,
        negotiation: Negotiation,
        actor_id: str,
        role: Role,
        action: NegotiationAction,
        expected_version: int,
        *,
        amount: Decimal | None = None,
    ) -> tuple[Negotiation, NegotiationEvent]:
        service_id = negotiation.service_id
        # Versão antes da FSM: quem perdeu a corrida vê ConflictError, não uma transição inválida
        if negotiation.version != expected_version:
            logger.warning(
                "Versao obsoleta em %s: esperada %s, atual %s", service_id, expected_version, negotiation.version
            )
            raise ConflictError(
                f"OCC conflict: expected version {expected_version}, found {negotiation.version}."
            )
        target = state_machine.apply(negotiation.status, action, role)
        service = await self.store.get_service(service_id)
        self._authorize_actor(service, actor_id, role)

        driver_id = service.assigned_driver_id
        updated = negotiation.model_copy(update={"status": target, "last_actor": role})
        updated.bump_version()
        closed = None
        event_amount = None

        if action in (A.PROPOSE_AMOUNT, A.UPDATE_PROPOSAL):
            updated.proposed_amount = amount
            service.assigned_driver_id = driver_id = actor_id
            event_amount = amount
        elif action is A.CONFIRM_AMOUNT:
            updated.confirmed_amount = updated.proposed_amount
            event_amount = updated.confirmed_amount
        elif action is A.ACCEPT_AMOUNT:
            service.agreed_amount = event_amount = updated.confirmed_amount
        elif action is A.REJECT_AMOUNT:
            closed = updated
            event_amount = closed.confirmed_amount
            updated = closed.reopen()
            service.assigned_driver_id = None
            service.agreed_amount = None
        elif action is A.CANCEL_SERVICE:
            event_amount = updated.confirmed_amount or updated.proposed_amount
            service.assigned_driver_id = None

        # Negociação e projeção do serviço persistem numa única escrita
        await self.store.save_negotiation(updated, expected_version, closed=closed, service=service)

        event_type = EVENT_TYPES[action]
        await self.chat_store.append_message(
            ChatMessage(
                service_id=service_id,
                sender_id=actor_id,
                role=Role.SYSTEM,
                kind=MESSAGE_KINDS[event_type],
                content=self.renderer.chat_text(event_type, event_amount),
                attached_amount=event_amount,
            )
        )
        event_version = closed.version if closed is not None else updated.version
        logger.info(
            "Servico %s: %s por %s %s -> %s (v%s)",
            service_id,
            action.value,
            role.value,
            negotiation.status.value,
            target.value,
            event_version,
        )
        if closed is not None:
            logger.info("Servico %s reaberto para avaliacao (tentativa %s)", service_id, updated.attempt)

        event = NegotiationEvent(
            service_id=service_id,
            type=event_type,
            amount=event_amount,
            actor_id=actor_id,
            version=event_version,
            client_id=service.client_id,
            driver_id=driver_id,
        )
        return updated, event

    @staticmethod
    def _authorize_actor(service: Service, actor_id: str, role: Role) -> None:
        """O papel já foi validado pela FSM; aqui valida a identidade vinculada ao serviço."""
        if role is Role.CLIENT and actor_id != service.client_id:
            raise UnauthorizedTransitionError(f"El cliente {actor_id} no es el titular del servicio {service.id}")
        if role is Role.DRIVER and service.assigned_driver_id and actor_id != service.assigned_driver_id:
            raise UnauthorizedTransitionError(
                f"El operador {actor_id} no esta asignado al servicio {service.id}"
            )


def build_store(policy: NegotiationPolicy) -> NegotiationStore:
    if policy.store.backend == "adk":
        from towing_negotiation.session_gateway import AdkNegotiationStore

        return AdkNegotiationStore()
    return InMemoryNegotiationStore()


def build_coordinator(
    policy: NegotiationPolicy | None = None,
    store: NegotiationStore | None = None,
) -> NegotiationCoordinator:
    """Monta o Coordinator: store conforme a política, broadcast em memória + push de referência."""
    policy = policy or load_policy()
    renderer = MessageRenderer()
    window = policy.dispatch.dedup_window
    dispatcher = EventDispatcher(
        [
            InMemoryBroadcaster(dedup_window=window),
            PushNotificationSink(LoggingPushGateway(), renderer, dedup_window=window),
        ],
        policy=policy.dispatch,
    )
    return NegotiationCoordinator(
        store or build_store(policy),
        InMemoryChatStore(),
        dispatcher,
        renderer=renderer,
        policy=policy,
    )

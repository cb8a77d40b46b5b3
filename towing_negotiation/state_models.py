import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class NegotiationStatus(str, Enum):
    NO_NEGOTIATION = "no_negotiation"
    PENDING_EVALUATION = "pending_evaluation"
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Role(str, Enum):
    DRIVER = "driver"
    CLIENT = "client"
    SYSTEM = "system"


class NegotiationAction(str, Enum):
    PROPOSE_AMOUNT = "propose_amount"
    UPDATE_PROPOSAL = "update_proposal"
    CONFIRM_AMOUNT = "confirm_amount"
    ACCEPT_AMOUNT = "accept_amount"
    REJECT_AMOUNT = "reject_amount"
    CANCEL_SERVICE = "cancel_service"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AMOUNT_PROPOSED = "amount_proposed"
    AMOUNT_CONFIRMED = "amount_confirmed"
    AMOUNT_ACCEPTED = "amount_accepted"
    AMOUNT_REJECTED = "amount_rejected"
    SYSTEM = "system"


class EventType(str, Enum):
    AMOUNT_PROPOSED = "amount_proposed"
    AMOUNT_CONFIRMED = "amount_confirmed"
    AMOUNT_ACCEPTED = "amount_accepted"
    AMOUNT_REJECTED = "amount_rejected"
    NEGOTIATION_CANCELLED = "negotiation_cancelled"


class ServiceCategory(str, Enum):
    STANDARD_TOW = "standard_tow"
    ROADSIDE_ASSISTANCE = "roadside_assistance"
    SPECIALIZED_TOW = "specialized_tow"
    HEAVY_TRUCK = "heavy_truck"
    LIFTING_CONSTRUCTION = "lifting_construction"
    RECREATIONAL_TOW = "recreational_tow"
    EXTRACTION = "extraction"


class ExtractionSubtype(str, Enum):
    DITCH = "extraction_ditch"
    MUD = "extraction_mud"
    OVERTURNED = "extraction_overturned"
    ACCIDENT = "extraction_accident"
    HARD_ACCESS = "extraction_hard_access"


EXTRACTION_SUBTYPES = frozenset(s.value for s in ExtractionSubtype)


def requires_negotiation(category: ServiceCategory | str, subtype: str | None = None) -> bool:
    """Classificação única: categoria extraction ou qualquer subtipo de extração exige negociação."""
    if ServiceCategory(category) is ServiceCategory.EXTRACTION:
        return True
    return bool(subtype) and subtype in EXTRACTION_SUBTYPES


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Service(BaseModel):
    """
    Projeção do pedido de reboque vista pelo núcleo de negociação.
    `requires_negotiation` é derivado uma única vez na criação; `assigned_driver_id`
    e `agreed_amount` só são escritos pelo Coordinator.
    """

    id: str
    client_id: str
    category: ServiceCategory
    subtype: str | None = None
    requires_negotiation: bool = False
    assigned_driver_id: str | None = None
    agreed_amount: Decimal | None = None

    @classmethod
    def create(
        cls,
        service_id: str,
        client_id: str,
        category: ServiceCategory | str,
        subtype: str | None = None,
    ) -> "Service":
        return cls(
            id=service_id,
            client_id=client_id,
            category=category,
            subtype=subtype,
            requires_negotiation=requires_negotiation(category, subtype),
        )


class Negotiation(BaseModel):
    """
    Modelo estrito da FSM de negociação de preço de um serviço.
    Campo `version` permite Optimistic Concurrency Control (OCC) no save.
    `attempt` conta as tentativas lógicas: uma rejeição fecha a tentativa e abre outra.
    """

    service_id: str
    status: NegotiationStatus = NegotiationStatus.PENDING_EVALUATION
    proposed_amount: Decimal | None = None
    confirmed_amount: Decimal | None = None
    version: int = Field(default=1, ge=1, description="OCC: incrementado a cada transição aplicada")
    last_actor: Role | None = None
    attempt: int = Field(default=1, ge=1)

    def bump_version(self) -> None:
        """Incrementa versão para OCC; chamado antes de persistir."""
        self.version += 1

    def reopen(self) -> "Negotiation":
        """Nova tentativa limpa em pending_evaluation; herda a versão da tentativa encerrada."""
        return Negotiation(
            service_id=self.service_id,
            status=NegotiationStatus.PENDING_EVALUATION,
            version=self.version,
            attempt=self.attempt + 1,
        )


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    service_id: str
    sender_id: str
    role: Role
    kind: MessageKind = MessageKind.TEXT
    content: str | None = None
    attached_amount: Decimal | None = None
    created_at: datetime = Field(default_factory=_now)


class DetectedAmount(BaseModel):
    """Saída efêmera do detector; nunca é persistida."""

    amount: Decimal
    raw_match: str
    span: tuple[int, int]


class NegotiationEvent(BaseModel):
    service_id: str
    type: EventType
    amount: Decimal | None = None
    actor_id: str
    version: int
    client_id: str
    driver_id: str | None = None

    @property
    def idempotency_key(self) -> tuple[str, str, int]:
        return (self.service_id, self.type.value, self.version)


class PushNotification(BaseModel):
    recipient_id: str
    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)

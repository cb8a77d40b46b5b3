from pathlib import Path

import jinja2

from towing_negotiation.money import format_amount
from towing_negotiation.state_models import EventType, MessageKind, NegotiationEvent, PushNotification

TEMPLATES_DIR = Path(__file__).parent / "templates"

PUSH_TITLES = {
    EventType.AMOUNT_PROPOSED: "Nueva Cotización",
    EventType.AMOUNT_CONFIRMED: "Cotización Confirmada",
    EventType.AMOUNT_ACCEPTED: "Cotización Aceptada",
    EventType.AMOUNT_REJECTED: "Cotización Rechazada",
    EventType.NEGOTIATION_CANCELLED: "Servicio Cancelado",
}

MESSAGE_KINDS = {
    EventType.AMOUNT_PROPOSED: MessageKind.AMOUNT_PROPOSED,
    EventType.AMOUNT_CONFIRMED: MessageKind.AMOUNT_CONFIRMED,
    EventType.AMOUNT_ACCEPTED: MessageKind.AMOUNT_ACCEPTED,
    EventType.AMOUNT_REJECTED: MessageKind.AMOUNT_REJECTED,
    EventType.NEGOTIATION_CANCELLED: MessageKind.SYSTEM,
}


class MessageRenderer:
    """Renderiza textos de sistema do chat e das notificações push a partir de templates Jinja2."""

    def __init__(self, templates_dir: Path | str | None = None):
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(templates_dir or TEMPLATES_DIR)),
            undefined=jinja2.StrictUndefined,
        )
        self.env.filters["money"] = format_amount

    def chat_text(self, event_type: EventType, amount=None) -> str:
        return self.env.get_template(f"chat/{event_type.value}.jinja2").render(amount=amount).strip()

    def push_notification(self, event: NegotiationEvent) -> PushNotification | None:
        """Cliente recebe propostas/confirmações; motorista recebe as respostas do cliente."""
        if event.type in (EventType.AMOUNT_PROPOSED, EventType.AMOUNT_CONFIRMED):
            recipient = event.client_id
        else:
            recipient = event.driver_id
        if not recipient:
            return None

        body = self.env.get_template(f"push/{event.type.value}.jinja2").render(amount=event.amount).strip()
        return PushNotification(
            recipient_id=recipient,
            title=PUSH_TITLES[event.type],
            body=body,
            data={
                "type": event.type.value,
                "service_id": event.service_id,
                "version": str(event.version),
            },
        )

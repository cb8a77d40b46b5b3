from rich.console import Console
from rich.table import Table

from towing_negotiation.money import format_amount
from towing_negotiation.state_models import ChatMessage, MessageKind, Negotiation

_KIND_STYLE = {
    MessageKind.AMOUNT_PROPOSED: "yellow",
    MessageKind.AMOUNT_CONFIRMED: "cyan",
    MessageKind.AMOUNT_ACCEPTED: "bold green",
    MessageKind.AMOUNT_REJECTED: "bold red",
    MessageKind.SYSTEM: "magenta",
}


def print_negotiation_report(
    negotiation: Negotiation, messages: list[ChatMessage], console: Console | None = None
) -> None:
    """Imprime a linha do tempo do chat e o estado final da negociação."""
    console = console or Console(force_terminal=True)
    table = Table(title=f"Negociacion {negotiation.service_id} (intento {negotiation.attempt})")
    table.add_column("Autor", justify="left")
    table.add_column("Tipo", justify="left")
    table.add_column("Mensaje", justify="left")
    table.add_column("Monto", justify="right")

    for message in messages:
        style = _KIND_STYLE.get(message.kind)
        kind = f"[{style}]{message.kind.value}[/{style}]" if style else message.kind.value
        amount = format_amount(message.attached_amount) if message.attached_amount is not None else ""
        table.add_row(f"{message.role.value}:{message.sender_id}", kind, message.content or "", amount)

    console.print(table)
    confirmed = format_amount(negotiation.confirmed_amount) if negotiation.confirmed_amount is not None else "-"
    console.print(
        f"Estado: [bold]{negotiation.status.value}[/bold]  version={negotiation.version}  confirmado={confirmed}"
    )

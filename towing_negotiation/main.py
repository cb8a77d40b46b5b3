import asyncio
import logging
import os

from dotenv import load_dotenv

load_dotenv(override=True)

from towing_negotiation.coordinator import build_coordinator
from towing_negotiation.report import print_negotiation_report
from towing_negotiation.state_models import ExtractionSubtype, Role, Service, ServiceCategory

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")


async def run_demo_async() -> None:
    print("=" * 60)
    print("Negociacion de extraccion - Demostracion FSM")
    print("=" * 60)

    coordinator = build_coordinator()
    coordinator.dispatcher.start()

    service = Service.create("srv-1", "client-123", ServiceCategory.EXTRACTION, ExtractionSubtype.DITCH.value)
    await coordinator.register_service(service)

    # Primeira tentativa: proposta no chat, confirmação e rejeição do cliente
    await coordinator.handle_chat_message("srv-1", "driver-456", Role.DRIVER, "Ya vi el vehiculo, esta profundo en la zanja.")
    await coordinator.handle_chat_message("srv-1", "driver-456", Role.DRIVER, "Serían RD$25,000 por la extracción")
    negotiation = await coordinator.get_negotiation("srv-1")
    negotiation = await coordinator.confirm_amount("srv-1", "driver-456", expected_version=negotiation.version)
    negotiation = await coordinator.reject_amount("srv-1", "client-123", expected_version=negotiation.version)

    # Segunda tentativa: outro operador avalia e o cliente aceita
    negotiation = await coordinator.propose_amount(
        "srv-1", "driver-789", 15000, expected_version=negotiation.version
    )
    negotiation = await coordinator.confirm_amount("srv-1", "driver-789", expected_version=negotiation.version)
    negotiation = await coordinator.accept_amount("srv-1", "client-123", expected_version=negotiation.version)

    await coordinator.dispatcher.stop()

    print_negotiation_report(negotiation, await coordinator.list_messages("srv-1"))
    agreed = (await coordinator.store.get_service("srv-1")).agreed_amount
    print(f"\n[SISTEMA] Monto acordado del servicio: {agreed}")


def run_demo() -> None:
    asyncio.run(run_demo_async())


def serve() -> None:
    """Sobe a API HTTP de negociações (towing_negotiation.api:app)."""
    import uvicorn

    uvicorn.run(
        "towing_negotiation.api:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    run_demo()

import logging
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from towing_negotiation import state_machine
from towing_negotiation.coordinator import NegotiationCoordinator, build_coordinator
from towing_negotiation.exceptions import (
    ConflictError,
    NegotiationError,
    NotFoundError,
    UnauthorizedTransitionError,
    ValidationError,
)
from towing_negotiation.state_models import ChatMessage, Negotiation, NegotiationStatus, Role

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    UnauthorizedTransitionError: 403,
    ConflictError: 409,
    NotFoundError: 404,
}


class ActionRequest(BaseModel):
    expected_version: int = Field(ge=1)
    amount: Decimal | None = None


class ChatRequest(BaseModel):
    text: str


class NegotiationSnapshot(BaseModel):
    service_id: str
    status: NegotiationStatus
    proposed_amount: Decimal | None = None
    confirmed_amount: Decimal | None = None
    version: int
    attempt: int
    last_actor: Role | None = None
    allowed_actions: list[str] = Field(default_factory=list)

    @classmethod
    def of(cls, negotiation: Negotiation, role: Role) -> "NegotiationSnapshot":
        return cls(
            **negotiation.model_dump(),
            allowed_actions=[a.value for a in state_machine.allowed_actions(negotiation.status, role)],
        )


class ChatResponse(BaseModel):
    message: ChatMessage
    negotiation: NegotiationSnapshot | None = None


class Actor(BaseModel):
    role: Role
    actor_id: str


def resolve_actor(
    x_actor_role: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> Actor:
    """Resolvedor de identidade: a sessão real fica fora do núcleo; aqui vem dos headers."""
    if not x_actor_role or not x_actor_id:
        raise HTTPException(status_code=401, detail="Faltan las cabeceras X-Actor-Role / X-Actor-Id")
    try:
        role = Role(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Rol desconocido: {x_actor_role}") from None
    if role is Role.SYSTEM:
        raise HTTPException(status_code=403, detail="El rol system no puede actuar sobre negociaciones")
    return Actor(role=role, actor_id=x_actor_id)


def get_coordinator(request: Request) -> NegotiationCoordinator:
    return request.app.state.coordinator


def _require(actor: Actor, role: Role) -> None:
    if actor.role is not role:
        raise UnauthorizedTransitionError(f"Solo el rol {role.value} puede realizar esta accion")


router = APIRouter(prefix="/negotiations", tags=["Negotiations"])


@router.get("/{service_id}", response_model=NegotiationSnapshot)
async def get_negotiation(
    service_id: str,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    return NegotiationSnapshot.of(await coordinator.get_negotiation(service_id), actor.role)


@router.post("/{service_id}/propose", response_model=NegotiationSnapshot)
async def propose(
    service_id: str,
    body: ActionRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    _require(actor, Role.DRIVER)
    negotiation = await coordinator.propose_amount(
        service_id, actor.actor_id, body.amount, expected_version=body.expected_version
    )
    return NegotiationSnapshot.of(negotiation, actor.role)


@router.post("/{service_id}/confirm", response_model=NegotiationSnapshot)
async def confirm(
    service_id: str,
    body: ActionRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    _require(actor, Role.DRIVER)
    negotiation = await coordinator.confirm_amount(service_id, actor.actor_id, expected_version=body.expected_version)
    return NegotiationSnapshot.of(negotiation, actor.role)


@router.post("/{service_id}/accept", response_model=NegotiationSnapshot)
async def accept(
    service_id: str,
    body: ActionRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    _require(actor, Role.CLIENT)
    negotiation = await coordinator.accept_amount(service_id, actor.actor_id, expected_version=body.expected_version)
    return NegotiationSnapshot.of(negotiation, actor.role)


@router.post("/{service_id}/reject", response_model=NegotiationSnapshot)
async def reject(
    service_id: str,
    body: ActionRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    _require(actor, Role.CLIENT)
    negotiation = await coordinator.reject_amount(service_id, actor.actor_id, expected_version=body.expected_version)
    return NegotiationSnapshot.of(negotiation, actor.role)


@router.post("/{service_id}/cancel", response_model=NegotiationSnapshot)
async def cancel(
    service_id: str,
    body: ActionRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    _require(actor, Role.CLIENT)
    negotiation = await coordinator.cancel_service(service_id, actor.actor_id, expected_version=body.expected_version)
    return NegotiationSnapshot.of(negotiation, actor.role)


@router.post("/{service_id}/messages", response_model=ChatResponse)
async def post_message(
    service_id: str,
    body: ChatRequest,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    message = await coordinator.handle_chat_message(service_id, actor.actor_id, actor.role, body.text)
    try:
        snapshot = NegotiationSnapshot.of(await coordinator.get_negotiation(service_id), actor.role)
    except NotFoundError:
        snapshot = None
    return ChatResponse(message=message, negotiation=snapshot)


@router.get("/{service_id}/messages", response_model=list[ChatMessage])
async def list_messages(
    service_id: str,
    actor: Actor = Depends(resolve_actor),
    coordinator: NegotiationCoordinator = Depends(get_coordinator),
):
    return await coordinator.list_messages(service_id)


async def negotiation_error_handler(request: Request, exc: NegotiationError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code == 500:
        logger.error("Erro nao mapeado em %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


def create_app(coordinator: NegotiationCoordinator | None = None) -> FastAPI:
    coordinator = coordinator or build_coordinator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coordinator.dispatcher.start()
        yield
        await coordinator.dispatcher.stop()

    app = FastAPI(title="Towing Negotiation", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.add_exception_handler(NegotiationError, negotiation_error_handler)
    app.include_router(router)
    return app


app = create_app()

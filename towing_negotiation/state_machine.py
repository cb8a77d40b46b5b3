"""
Função pura de transição da negociação de preço.

Só as combinações (estado, ação, papel) da tabela são aceitas; qualquer outra é
rejeitada, nunca "corrigida" para a transição válida mais próxima.
"""

from towing_negotiation.exceptions import UnauthorizedTransitionError
from towing_negotiation.state_models import NegotiationAction, NegotiationStatus, Role

S = NegotiationStatus
A = NegotiationAction

TRANSITIONS: dict[tuple[NegotiationStatus, NegotiationAction], tuple[Role, NegotiationStatus]] = {
    (S.PENDING_EVALUATION, A.PROPOSE_AMOUNT): (Role.DRIVER, S.PROPOSED),
    (S.PROPOSED, A.UPDATE_PROPOSAL): (Role.DRIVER, S.PROPOSED),
    (S.PROPOSED, A.CONFIRM_AMOUNT): (Role.DRIVER, S.CONFIRMED),
    (S.CONFIRMED, A.ACCEPT_AMOUNT): (Role.CLIENT, S.ACCEPTED),
    (S.CONFIRMED, A.REJECT_AMOUNT): (Role.CLIENT, S.REJECTED),
    (S.PENDING_EVALUATION, A.CANCEL_SERVICE): (Role.CLIENT, S.CANCELLED),
    (S.PROPOSED, A.CANCEL_SERVICE): (Role.CLIENT, S.CANCELLED),
    (S.CONFIRMED, A.CANCEL_SERVICE): (Role.CLIENT, S.CANCELLED),
}

TERMINAL_STATES = frozenset({S.ACCEPTED, S.REJECTED, S.CANCELLED, S.NO_NEGOTIATION})

# Estados em que o motorista ainda pode (re)propor um valor
AMOUNT_ACCEPTING_STATES = frozenset({S.PENDING_EVALUATION, S.PROPOSED})


def initial_status(requires_negotiation: bool) -> NegotiationStatus:
    return S.PENDING_EVALUATION if requires_negotiation else S.NO_NEGOTIATION


def is_terminal(status: NegotiationStatus) -> bool:
    return status in TERMINAL_STATES


def next_status(status: NegotiationStatus, action: NegotiationAction, role: Role) -> NegotiationStatus | None:
    """Lookup puro: próximo estado ou None se a combinação não existe na tabela."""
    entry = TRANSITIONS.get((status, action))
    if entry is None:
        return None
    allowed_role, target = entry
    return target if allowed_role == role else None


def apply(status: NegotiationStatus, action: NegotiationAction, role: Role) -> NegotiationStatus:
    """Como next_status, mas levanta UnauthorizedTransitionError em vez de devolver None."""
    target = next_status(status, action, role)
    if target is None:
        raise UnauthorizedTransitionError(
            f"Transicao nao permitida: {action.value} por {role.value} em {status.value}"
        )
    return target


def allowed_actions(status: NegotiationStatus, role: Role) -> list[NegotiationAction]:
    return [action for (state, action), (r, _) in TRANSITIONS.items() if state == status and r == role]


def proposal_action(status: NegotiationStatus) -> NegotiationAction | None:
    """propose_amount na primeira oferta, update_proposal nas seguintes."""
    if status == S.PENDING_EVALUATION:
        return A.PROPOSE_AMOUNT
    if status == S.PROPOSED:
        return A.UPDATE_PROPOSAL
    return None

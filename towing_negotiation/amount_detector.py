import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from towing_negotiation.money import is_valid_amount
from towing_negotiation.state_models import DetectedAmount

# O literal termina numa fronteira de número: nenhum padrão casa o prefixo de um valor maior
_END = r"(?![0-9]|[,.][0-9])"
_GROUPED = r"([0-9]{1,3}(?:,[0-9]{3})*(?:\.[0-9]{1,2})?)" + _END
_PLAIN = r"([0-9]+(?:\.[0-9]{1,2})?)" + _END
_OPTIONAL_RD = r"(?:RD\$?\s*)?"


@dataclass(frozen=True)
class AmountPattern:
    """Um matcher independente; o grupo 1 captura o literal numérico."""

    name: str
    regex: re.Pattern


# Ordem importa apenas para escolher o raw_match quando dois padrões acham o mesmo valor.
AMOUNT_PATTERNS: tuple[AmountPattern, ...] = tuple(
    AmountPattern(name, re.compile(pattern, re.IGNORECASE))
    for name, pattern in (
        ("rd_grouped", r"RD\$\s*" + _GROUPED),
        ("rd_plain", r"RD\$\s*" + _PLAIN),
        ("dollar_grouped", r"\$\s*" + _GROUPED),
        ("dollar_plain", r"\$\s*" + _PLAIN),
        ("pesos_grouped", _GROUPED + r"\s*pesos"),
        ("pesos_plain", _PLAIN + r"\s*pesos"),
        ("el_costo", r"el\s+costo\s+(?:es|seria|sería|será)\s+(?:de\s+)?" + _OPTIONAL_RD + _GROUPED),
        (
            "cost_verb",
            r"(?:serian|serían|seria|sería|son|cuesta|costaria|costaría|vale|valdria|valdría)\s+"
            + _OPTIONAL_RD
            + _GROUPED,
        ),
        ("te_cobro", r"(?:te\s+)?(?:cobro|cobraria|cobraría)\s+" + _OPTIONAL_RD + _GROUPED),
        (
            "labelled_total",
            r"(?:precio|monto|costo|total)(?:\s+(?:es|seria|sería|de))?\s*:?\s*" + _OPTIONAL_RD + _GROUPED,
        ),
    )
)


def _parse_literal(raw: str) -> Decimal | None:
    cleaned = re.sub(r"[,\s]", "", raw)
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def _iter_candidates(text: str):
    """Percorre todos os padrões e devolve só os valores dentro do intervalo válido."""
    for pattern in AMOUNT_PATTERNS:
        for match in pattern.regex.finditer(text):
            amount = _parse_literal(match.group(1))
            if amount is None or not is_valid_amount(amount):
                continue
            yield DetectedAmount(amount=amount, raw_match=match.group(0), span=match.span())


def detect(text: str | None) -> DetectedAmount | None:
    """
    Retorna o maior montante válido da mensagem, ou None.
    Se o motorista cita um valor de referência e depois outro maior, o maior é a oferta real.
    """
    best = None
    for candidate in _iter_candidates(text or ""):
        if best is None or candidate.amount > best.amount:
            best = candidate
    return best


def detect_all(text: str | None) -> list[DetectedAmount]:
    """Todos os montantes válidos distintos (dedup por valor numérico), do maior para o menor."""
    seen: dict[Decimal, DetectedAmount] = {}
    for candidate in _iter_candidates(text or ""):
        seen.setdefault(candidate.amount, candidate)
    return sorted(seen.values(), key=lambda d: d.amount, reverse=True)


def is_amount_message(text: str | None) -> bool:
    return detect(text) is not None

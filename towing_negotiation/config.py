import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Caminho padrão da política (relativo ao CWD do processo)
DEFAULT_POLICY_PATH = Path("config/negotiation_policy.yaml")


class DispatchPolicy(BaseModel):
    queue_size: int = Field(default=1000, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    wait_min: float = Field(default=0.5, ge=0)
    wait_max: float = Field(default=5.0, ge=0)
    dedup_window: int = Field(default=10_000, ge=1)


class ChatPolicy(BaseModel):
    detect_amounts: bool = True


class StorePolicy(BaseModel):
    # adk: Session Service do Google ADK (Vertex se configurado, senão em memória)
    backend: Literal["adk", "memory"] = "adk"


class NegotiationPolicy(BaseModel):
    dispatch: DispatchPolicy = Field(default_factory=DispatchPolicy)
    chat: ChatPolicy = Field(default_factory=ChatPolicy)
    store: StorePolicy = Field(default_factory=StorePolicy)


def load_policy(config_path: Path | str | None = None) -> NegotiationPolicy:
    """Carrega a política YAML; arquivo ausente ou seções faltando caem nos defaults."""
    path = Path(config_path or os.environ.get("NEGOTIATION_POLICY_PATH") or DEFAULT_POLICY_PATH)
    if not path.exists():
        logger.info("Politica %s nao encontrada. Usando defaults.", path)
        return NegotiationPolicy()
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return NegotiationPolicy(**data)

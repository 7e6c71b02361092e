"""
Prompt store.

The agent's persona (system prompt) and opening line (assistant prompt) live in
a small JSON record on disk so they can be edited through the dashboard API
between calls without a redeploy.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Union

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "Você é um representante de vendas outbound que vende AirPods da Apple. "
    "Você tem uma personalidade jovem e alegre. "
    "Mantenha suas respostas o mais breve possível, mas faça todo o possível para manter "
    "o interlocutor ao telefone sem ser rude. "
    "Não faça mais de uma pergunta por vez. "
    "Não faça suposições sobre quais valores inserir nas funções. "
    "Peça esclarecimentos se a solicitação de um usuário for ambígua. "
    "Fale todos os preços, incluindo a moeda. "
    "Ajude-os a decidir entre os AirPods, AirPods Pro e AirPods Max, fazendo perguntas como "
    "'Você prefere fones de ouvido intra-auriculares ou sobre a orelha?'. "
    "Se eles estiverem tentando escolher entre os AirPods e os AirPods Pro, tente perguntar "
    "se eles precisam de cancelamento de ruído. "
    "Depois de saber qual modelo eles gostariam, pergunte quantos eles gostariam de comprar "
    "e tente fazê-los fazer um pedido. "
    "Você deve adicionar um símbolo '•' a cada 5 a 10 palavras em pausas naturais, "
    "onde sua resposta pode ser dividida para conversão de texto em fala."
)

DEFAULT_ASSISTANT_PROMPT = "Olá! Entendo que você está procurando um par de AirPods, correto?"


class PromptConfig(BaseModel):
    """Persisted persona and greeting."""

    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        min_length=1,
        description="System instructions seeded as the first dialogue turn",
    )

    assistant_prompt: str = Field(
        default=DEFAULT_ASSISTANT_PROMPT,
        min_length=1,
        description="Opening line spoken to the caller and seeded as the first assistant turn",
    )


def load_prompt_config(path: Union[str, Path]) -> PromptConfig:
    """Load the prompt record, falling back to defaults if it is missing or invalid."""
    prompt_path = Path(path)
    if not prompt_path.exists():
        logger.info("Prompt file not found, using defaults", path=str(prompt_path))
        return PromptConfig()

    try:
        data = json.loads(prompt_path.read_text(encoding="utf-8"))
        return PromptConfig.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Prompt file unreadable, using defaults", path=str(prompt_path), error=str(e))
        return PromptConfig()


def save_prompt_config(path: Union[str, Path], prompt: PromptConfig) -> None:
    prompt_path = Path(path)
    prompt_path.write_text(
        json.dumps(prompt.model_dump(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    logger.info("Prompt file updated", path=str(prompt_path))


def ensure_prompt_file(path: Union[str, Path]) -> PromptConfig:
    """Create the prompt file with defaults on first start; return the effective record."""
    prompt_path = Path(path)
    if prompt_path.exists():
        return load_prompt_config(prompt_path)

    prompt = PromptConfig()
    try:
        save_prompt_config(prompt_path, prompt)
    except OSError as e:
        logger.warning("Could not create default prompt file", path=str(prompt_path), error=str(e))
    return prompt

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from app.config import Settings
from app.logging_config import get_logger
from app.services.context_service import ContextBlock
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.result import Result

logger = get_logger("reply_service")

MAX_HISTORY_MESSAGES = 6

FALLBACK_REPLY = "Gracias por tu mensaje. Puedo ayudarte con pedidos, pagos, envios o productos. Que necesitas?"

SYSTEM_PROMPT = (
    "Sos el asistente de atencion al cliente de una tienda online. Responde en espanol, breve y cordial. "
    "Usa solo la informacion de contexto provista; si no alcanza, ofrece derivar la consulta. "
    "Nunca inventes datos de pedidos ni pidas contrasenas."
)


@dataclass
class ReplyResult:
    message: str
    llm_path: str  # llm, template


class ReplyGenerator(ABC):
    """Produces the assistant text for turns not answered deterministically."""

    @abstractmethod
    def generate(self, text: str, history: Sequence, context_blocks: list[ContextBlock]) -> Result[ReplyResult]:
        pass


class TemplateReplyGenerator(ReplyGenerator):
    """Deterministic reply built from the first context block."""

    def generate(self, text: str, history: Sequence, context_blocks: list[ContextBlock]) -> Result[ReplyResult]:
        if context_blocks:
            return Result.success(ReplyResult(message=context_blocks[0].content, llm_path="template"))
        return Result.success(ReplyResult(message=FALLBACK_REPLY, llm_path="template"))


def _history_to_messages(history: Sequence) -> list[dict]:
    messages = []
    for row in list(history)[-MAX_HISTORY_MESSAGES:]:
        role = "assistant" if row.sender == "bot" else "user"
        messages.append({"role": role, "content": row.content})
    return messages


class LLMReplyGenerator(ReplyGenerator):
    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 6.0,
        max_tokens: int = 600,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

    def generate(self, text: str, history: Sequence, context_blocks: list[ContextBlock]) -> Result[ReplyResult]:
        system_prompt = SYSTEM_PROMPT
        if context_blocks:
            context = "\n".join(f"[{block.context_type}] {block.content}" for block in context_blocks)
            system_prompt += f"\n\nContexto:\n{context}"

        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(_history_to_messages(history))
        messages.append({"role": "user", "content": text})

        try:
            response = self.provider.generate(
                messages,
                model=self.model,
                max_tokens=self.max_tokens,
                timeout_seconds=self.timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Reply generation failed: {e}")
            return Result.failure(str(e), code="llm_error")

        content = (response.content or "").strip()
        if not content:
            return Result.failure("Empty LLM response", code="llm_empty")
        if response.truncated:
            logger.info("Reply truncated at max tokens", extra={"context": {"max_tokens": self.max_tokens}})
        return Result.success(ReplyResult(message=content, llm_path="llm"))


def build_reply_generator(config: Settings) -> ReplyGenerator:
    if not config.openai_api_key:
        return TemplateReplyGenerator()
    provider = OpenAIProvider(api_key=config.openai_api_key, default_model=config.reply_model)
    return LLMReplyGenerator(
        provider,
        model=config.reply_model,
        timeout_seconds=config.reply_timeout_seconds,
        max_tokens=config.reply_max_tokens,
    )

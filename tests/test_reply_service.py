from types import SimpleNamespace
from unittest.mock import Mock

from app.config import Settings
from app.errors import ExternalServiceError
from app.services.context_service import ContextBlock
from app.services.llm import LLMResponse
from app.services.reply_service import (
    FALLBACK_REPLY,
    LLMReplyGenerator,
    TemplateReplyGenerator,
    build_reply_generator,
)

BLOCK = ContextBlock(context_type="store_info", content="Abrimos a las 10.")


class TestTemplateReplyGenerator:
    def test_uses_first_block(self):
        result = TemplateReplyGenerator().generate("horario?", [], [BLOCK])

        assert result.ok is True
        assert result.value.message == "Abrimos a las 10."
        assert result.value.llm_path == "template"

    def test_fallback_without_blocks(self):
        assert TemplateReplyGenerator().generate("x", [], []).value.message == FALLBACK_REPLY


class TestLLMReplyGenerator:
    def test_builds_messages_with_context_and_history(self):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content=" Abrimos a las 10. ", model="m")
        history = [SimpleNamespace(sender="user", content="hola"), SimpleNamespace(sender="bot", content="Hola!")]

        result = LLMReplyGenerator(provider, model="m").generate("horario?", history, [BLOCK])

        assert result.ok is True
        assert result.value.message == "Abrimos a las 10."
        messages = provider.generate.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert "[store_info] Abrimos a las 10." in messages[0]["content"]
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]

    def test_provider_error_is_failure(self):
        provider = Mock()
        provider.generate.side_effect = ExternalServiceError("timeout", 0, "timeout")

        result = LLMReplyGenerator(provider).generate("hola", [], [])

        assert result.ok is False
        assert result.error_code == "llm_error"

    def test_empty_content_is_failure(self):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="  ", model="m")

        assert LLMReplyGenerator(provider).generate("hola", [], []).error_code == "llm_empty"


class TestBuildReplyGenerator:
    def test_template_without_api_key(self):
        assert isinstance(build_reply_generator(Settings(openai_api_key="")), TemplateReplyGenerator)

    def test_llm_with_api_key(self):
        generator = build_reply_generator(Settings(openai_api_key="sk-test", reply_model="gpt-test"))

        assert isinstance(generator, LLMReplyGenerator)
        assert generator.model == "gpt-test"


class TestLLMResponse:
    def test_truncated_when_stopped_by_length(self):
        assert LLMResponse(content="x", model="m", finish_reason="length").truncated is True
        assert LLMResponse(content="x", model="m", finish_reason="stop").truncated is False

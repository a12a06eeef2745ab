"""
Tests for the model client: provider selection and the request each
provider sends.  SDK clients are swapped for AsyncMocks; nothing hits the network.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import openai
import pytest

import services.model_client as model_client
from services.errors import ModelCallError, NotABillError
from services.extraction_service import process_model_response
from services.model_client import (
    AnthropicBillModel,
    BILL_TOOL,
    MAX_OUTPUT_TOKENS,
    OpenAIBillModel,
    get_bill_model,
)


def anthropic_message(*texts):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=t) for t in texts],
                           stop_reason="end_turn")


def anthropic_tool_message(tool_input, name="record_bill"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="tool_use", id="toolu_01", name=name, input=tool_input)],
        stop_reason="tool_use",
    )


def openai_completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


# ── get_bill_model ────────────────────────────────────────────────────────────

class TestGetBillModel:

    def test_anthropic_default(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "anthropic")
        monkeypatch.setattr(model_client, "BILL_MODEL", "")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        model = get_bill_model()
        assert isinstance(model, AnthropicBillModel)
        assert model.model == model_client.DEFAULT_MODELS["anthropic"]

    def test_openai_selected(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "openai")
        monkeypatch.setattr(model_client, "BILL_MODEL", "")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        model = get_bill_model()
        assert isinstance(model, OpenAIBillModel)
        assert model.model == model_client.DEFAULT_MODELS["openai"]

    def test_model_override(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "anthropic")
        monkeypatch.setattr(model_client, "BILL_MODEL", "claude-custom")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert get_bill_model().model == "claude-custom"

    def test_missing_anthropic_key(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "anthropic")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ModelCallError, match="ANTHROPIC_API_KEY"):
            get_bill_model()

    def test_missing_openai_key(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "openai")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ModelCallError, match="OPENAI_API_KEY"):
            get_bill_model()

    def test_unknown_provider(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "llama")
        with pytest.raises(ModelCallError) as exc:
            get_bill_model()
        assert exc.value.status_code == 500

    def test_timeout_and_retries_passed_to_client(self):
        model = AnthropicBillModel("sk-ant-test", timeout=12.5, max_retries=2)
        assert model.client.timeout == 12.5
        assert model.client.max_retries == 2

    def test_no_retries_by_default(self, monkeypatch):
        monkeypatch.setattr(model_client, "BILL_MODEL_PROVIDER", "openai")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert get_bill_model().client.max_retries == model_client.BILL_MODEL_MAX_RETRIES == 0


# ── Anthropic ─────────────────────────────────────────────────────────────────

class TestAnthropicBillModel:

    @pytest.fixture
    def model(self):
        model = AnthropicBillModel("sk-ant-test", model="claude-test")
        model.client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock()))
        return model

    @pytest.mark.asyncio
    async def test_request_shape(self, model):
        model.client.messages.create.return_value = anthropic_tool_message({"items": []})

        text = await model.complete("PROMPT", "aGVsbG8=", "image/png")

        assert json.loads(text) == {"items": []}
        kwargs = model.client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["temperature"] == 0
        assert kwargs["max_tokens"] == MAX_OUTPUT_TOKENS
        content = kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="}
        assert content[1] == {"type": "text", "text": "PROMPT"}

    @pytest.mark.asyncio
    async def test_json_forced_through_pinned_tool(self, model):
        model.client.messages.create.return_value = anthropic_tool_message({"items": []})

        await model.complete("PROMPT", "aGVsbG8=", "image/png")

        kwargs = model.client.messages.create.call_args.kwargs
        assert kwargs["tools"] == [BILL_TOOL]
        assert kwargs["tool_choice"] == {"type": "tool", "name": "record_bill"}
        schema = BILL_TOOL["input_schema"]["properties"]
        assert {"items", "currency", "vatPercentage", "serviceChargePercentage",
                "error", "message"} <= set(schema)

    @pytest.mark.asyncio
    async def test_tool_input_serialised_for_pipeline(self, model):
        bill = {
            "items": [{"name": "Coffee", "quantity": 2, "unitPrice": 5.0,
                       "itemLabel": {"en": "Coffee", "ar": "قهوة"}}],
            "currency": "JOD", "vatPercentage": 16,
        }
        model.client.messages.create.return_value = anthropic_tool_message(bill)

        text = await model.complete("P", "x", "image/jpeg")

        assert json.loads(text) == bill
        assert "قهوة" in text
        assert process_model_response(text).total == 11.60

    @pytest.mark.asyncio
    async def test_not_a_bill_through_tool(self, model):
        model.client.messages.create.return_value = anthropic_tool_message(
            {"error": "NOT_A_BILL", "message": "A photo of a sunset."}
        )
        text = await model.complete("P", "x", "image/jpeg")
        with pytest.raises(NotABillError, match="sunset"):
            process_model_response(text)

    @pytest.mark.asyncio
    async def test_text_blocks_joined_without_tool_call(self, model):
        model.client.messages.create.return_value = anthropic_message('{"items": ', "[]}")
        assert await model.complete("P", "x", "image/jpeg") == '{"items": []}'

    @pytest.mark.asyncio
    async def test_api_error_becomes_model_call_error(self, model):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        model.client.messages.create.side_effect = anthropic.APIConnectionError(request=request)
        with pytest.raises(ModelCallError):
            await model.complete("P", "x", "image/jpeg")

    @pytest.mark.asyncio
    async def test_timeout_becomes_model_call_error(self, model):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        model.client.messages.create.side_effect = anthropic.APITimeoutError(request=request)
        with pytest.raises(ModelCallError):
            await model.complete("P", "x", "image/jpeg")


# ── OpenAI ────────────────────────────────────────────────────────────────────

class TestOpenAIBillModel:

    @pytest.fixture
    def model(self):
        model = OpenAIBillModel("sk-test", model="gpt-test")
        model.client = SimpleNamespace(
            chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock()))
        )
        return model

    @pytest.mark.asyncio
    async def test_request_shape(self, model):
        model.client.chat.completions.create.return_value = openai_completion('{"items": []}')

        text = await model.complete("PROMPT", "aGVsbG8=", "image/webp")

        assert text == '{"items": []}'
        kwargs = model.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["temperature"] == 0
        assert kwargs["response_format"] == {"type": "json_object"}
        content = kwargs["messages"][0]["content"]
        assert content[0] == {"type": "text", "text": "PROMPT"}
        assert content[1]["image_url"]["url"] == "data:image/webp;base64,aGVsbG8="

    @pytest.mark.asyncio
    async def test_null_content_is_empty_string(self, model):
        model.client.chat.completions.create.return_value = openai_completion(None)
        assert await model.complete("P", "x", "image/jpeg") == ""

    @pytest.mark.asyncio
    async def test_no_choices_is_empty_string(self, model):
        model.client.chat.completions.create.return_value = SimpleNamespace(choices=[])
        assert await model.complete("P", "x", "image/jpeg") == ""

    @pytest.mark.asyncio
    async def test_api_error_becomes_model_call_error(self, model):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        model.client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
        with pytest.raises(ModelCallError):
            await model.complete("P", "x", "image/jpeg")

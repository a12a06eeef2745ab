"""
Model Client: the single outbound call of an extraction.

Two providers implement the same one-method protocol so the pipeline never
sees SDK types:

  anthropic  (default)  Claude Messages API, image block + prompt text, JSON forced
                        through a single pinned tool call (record_bill)
  openai                Chat Completions in JSON-object response mode

Every SDK failure is re-raised as ModelCallError.  Requests use an explicit
timeout; retries are off unless BILL_MODEL_MAX_RETRIES says otherwise.
"""
import json
import logging
import os
from typing import Protocol

import anthropic
import openai

from services.errors import ModelCallError

logger = logging.getLogger("splitbill.model")

BILL_MODEL_PROVIDER = os.environ.get("BILL_MODEL_PROVIDER", "anthropic").strip().lower()
BILL_MODEL = os.environ.get("BILL_MODEL", "").strip()
BILL_MODEL_TIMEOUT = float(os.environ.get("BILL_MODEL_TIMEOUT", "60"))
BILL_MODEL_MAX_RETRIES = int(os.environ.get("BILL_MODEL_MAX_RETRIES", "0"))

MAX_OUTPUT_TOKENS = 1024

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4.1",
}

# Claude has no JSON response mode; a forced call to this tool is its equivalent.
# The schema admits both the bill shape and the NOT_A_BILL verdict.
BILL_TOOL = {
    "name": "record_bill",
    "description": "Record the bill read from the image, or report that the image is not a bill.",
    "input_schema": {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "quantity": {"type": "number"},
                        "unitPrice": {"type": "number"},
                        "itemLabel": {
                            "type": "object",
                            "properties": {
                                "en": {"type": "string"},
                                "ar": {"type": "string"},
                            },
                        },
                    },
                    "required": ["name", "quantity", "unitPrice"],
                },
            },
            "currency": {"type": "string"},
            "vatPercentage": {"type": "number"},
            "serviceChargePercentage": {"type": "number"},
            "error": {"type": "string", "enum": ["NOT_A_BILL"]},
            "message": {"type": "string"},
        },
    },
}


class BillModel(Protocol):
    async def complete(self, prompt: str, image_b64: str, media_type: str) -> str: ...


class AnthropicBillModel:
    """Claude Vision; temperature 0, one user message carrying image + prompt."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["anthropic"],
                 timeout: float = BILL_MODEL_TIMEOUT, max_retries: int = BILL_MODEL_MAX_RETRIES):
        self.model = model
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)

    async def complete(self, prompt: str, image_b64: str, media_type: str) -> str:
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=MAX_OUTPUT_TOKENS,
                temperature=0,
                tools=[BILL_TOOL],
                tool_choice={"type": "tool", "name": BILL_TOOL["name"]},
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": image_b64,
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }],
            )
        except anthropic.APIError as e:
            logger.error("Claude API error: %s", e)
            raise ModelCallError(f"Model request failed: {e}") from e

        for block in message.content:
            if block.type == "tool_use" and block.name == BILL_TOOL["name"]:
                return json.dumps(block.input, ensure_ascii=False)
        # No tool call (e.g. max_tokens cut it off); let the interpreter judge the text
        logger.warning("Claude answered without calling %s (stop_reason=%s)",
                       BILL_TOOL["name"], getattr(message, "stop_reason", None))
        return "".join(block.text for block in message.content if block.type == "text")


class OpenAIBillModel:
    """GPT vision in JSON-object mode; temperature 0."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["openai"],
                 timeout: float = BILL_MODEL_TIMEOUT, max_retries: int = BILL_MODEL_MAX_RETRIES):
        self.model = model
        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)

    async def complete(self, prompt: str, image_b64: str, media_type: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                max_tokens=MAX_OUTPUT_TOKENS,
                response_format={"type": "json_object"},
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{image_b64}"}},
                    ],
                }],
            )
        except openai.OpenAIError as e:
            logger.error("OpenAI API error: %s", e)
            raise ModelCallError(f"Model request failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def get_bill_model() -> BillModel:
    """Build the configured provider.  Raises ModelCallError if unusable."""
    if BILL_MODEL_PROVIDER == "anthropic":
        api_key = os.environ.get("ANTHROPIC_API_KEY", "")
        if not api_key:
            logger.warning("ANTHROPIC_API_KEY not set — bill extraction unavailable")
            raise ModelCallError("ANTHROPIC_API_KEY not set")
        return AnthropicBillModel(api_key, model=BILL_MODEL or DEFAULT_MODELS["anthropic"])

    if BILL_MODEL_PROVIDER == "openai":
        api_key = os.environ.get("OPENAI_API_KEY", "")
        if not api_key:
            logger.warning("OPENAI_API_KEY not set — bill extraction unavailable")
            raise ModelCallError("OPENAI_API_KEY not set")
        return OpenAIBillModel(api_key, model=BILL_MODEL or DEFAULT_MODELS["openai"])

    raise ModelCallError(f"Unknown bill model provider: {BILL_MODEL_PROVIDER}")

"""
Claude API Client: the completion service behind the session.

This module wraps the Anthropic SDK. The session hands it the system prompt,
the conversation history and a snapshot of the tool registry; it returns a
ModelTurn holding the assistant text and any tool calls. Conversion between
aide's Message types and the Messages API wire format happens here and
nowhere else.

Besides the main completion it offers two narrow helpers used by built-in
tools and the prompt cache: describing a local image and generating search
tags for a prompt.
"""

from __future__ import annotations

import asyncio
import base64
import time
from pathlib import Path
from typing import Any, Optional, Sequence

import anthropic
import structlog

from aide.config import ModelConfig
from aide.harness.retry import RetryConfig, with_retries
from aide.tools.registry import ToolDefinition
from aide.types import Message, ModelTurn, Role, ToolCall, Usage

logger = structlog.get_logger(__name__)

IMAGE_DESCRIPTION_PROMPT = """\
You are a language model that gives objective and detailed descriptions of \
visual content. Describe the image precisely:

1. State only what is visible, without interpretation or assumptions.
2. Include all relevant elements: objects, people, text, colors and layout.
3. Use clear and concise language.
4. Avoid subjective opinions or emotional language.

Begin with a general overview, then give a detailed breakdown of the components."""

TAG_PROMPT = """\
Return between three and eight short lowercase keywords that describe the \
topic of the user's request, separated by commas. Return nothing else."""

_IMAGE_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class CompletionEngineInitError(RuntimeError):
    """Raised when the completion client cannot be constructed."""


def message_to_api(message: Message) -> dict[str, Any]:
    """Render one history entry in Messages API form. System messages are not accepted."""
    if message.role is Role.USER:
        return {"role": "user", "content": message.content}

    if message.role is Role.ASSISTANT:
        if isinstance(message.content, str):
            return {"role": "assistant", "content": message.content or "(no content)"}
        blocks: list[dict[str, Any]] = []
        if message.text:
            blocks.append({"type": "text", "text": message.text})
        for call in message.tool_calls:
            blocks.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": call.arguments,
            })
        return {"role": "assistant", "content": blocks}

    if message.role is Role.TOOL:
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": result.call_id,
                    "content": result.content,
                    "is_error": result.is_error,
                }
                for result in message.tool_results
            ],
        }

    raise ValueError(f"Cannot send a {message.role.value} message in the messages array.")


def _as_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def history_to_api(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """
    Convert a history snapshot into the messages array.

    The system message is dropped (it is sent separately) and consecutive
    entries that land on the same API role are merged, since the API wants
    user and assistant turns to alternate.
    """
    rendered: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            continue
        entry = message_to_api(message)
        if rendered and rendered[-1]["role"] == entry["role"]:
            previous = rendered[-1]
            previous["content"] = _as_blocks(previous["content"]) + _as_blocks(entry["content"])
        else:
            rendered.append(entry)
    return rendered


class CompletionEngine:
    """
    Wraps the Anthropic Messages API.

    The engine holds no conversation state. It receives context and returns a
    ModelTurn; the session owns everything else.
    """

    def __init__(self, config: ModelConfig):
        try:
            self._async_client = anthropic.AsyncAnthropic(api_key=config.api_key)
        except Exception as exc:
            raise CompletionEngineInitError(
                f"Failed to initialize completion engine: {exc}"
            ) from exc
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig.from_model_config(config)

        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_calls = 0
        self._last_call_time: Optional[float] = None

        logger.info(
            "completion_engine.initialized",
            model=self._model,
            base_url=str(self._async_client.base_url),
        )

    async def _create(self, **kwargs: Any) -> anthropic.types.Message:
        async def _call() -> anthropic.types.Message:
            return await asyncio.wait_for(
                self._async_client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )

        start_time = time.monotonic()
        try:
            response = await with_retries(_call, config=self._retry_config, operation="completion")
        except anthropic.APIError as e:
            logger.error(
                "completion_engine.api_error",
                error=str(e),
                status=getattr(e, "status_code", None),
            )
            raise

        elapsed = time.monotonic() - start_time
        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens
        self._total_calls += 1
        self._last_call_time = elapsed

        logger.debug(
            "completion_engine.complete",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            elapsed_seconds=round(elapsed, 2),
            stop_reason=response.stop_reason,
        )
        return response

    async def complete(
        self,
        system: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
    ) -> ModelTurn:
        """Request one completion for the given history and tool snapshot."""
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system,
            "messages": history_to_api(messages),
        }
        if tools:
            kwargs["tools"] = [tool.to_api_format() for tool in tools]

        response = await self._create(**kwargs)
        return ModelTurn(
            text=self.extract_text(response),
            tool_calls=self.extract_tool_calls(response),
            stop_reason=response.stop_reason or "end_turn",
            usage=Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
        )

    async def describe_image(self, path: str) -> str:
        """Ask the model for an objective description of a local image file."""
        image_path = Path(path).expanduser()
        media_type = _IMAGE_MEDIA_TYPES.get(image_path.suffix.lower(), "image/png")
        data = base64.standard_b64encode(image_path.read_bytes()).decode("ascii")

        response = await self._create(
            model=self._model,
            max_tokens=self._max_tokens,
            system=IMAGE_DESCRIPTION_PROMPT,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": data},
                    },
                    {"type": "text", "text": "Examine the following image."},
                ],
            }],
        )
        return self.extract_text(response)

    async def generate_tags(self, prompt: str) -> list[str]:
        """Short topic keywords for a prompt, stored alongside cache records."""
        response = await self._create(
            model=self._model,
            max_tokens=64,
            system=TAG_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        text = self.extract_text(response)
        return [tag.strip().lower() for tag in text.split(",") if tag.strip()]

    @staticmethod
    def extract_text(response: anthropic.types.Message) -> str:
        """Extract all text content from a response, ignoring tool calls."""
        return "\n".join(block.text for block in response.content if block.type == "text")

    @staticmethod
    def extract_tool_calls(response: anthropic.types.Message) -> list[ToolCall]:
        """Extract all tool use blocks from a response."""
        return [
            ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ]

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "last_call_seconds": self._last_call_time if self._last_call_time is not None else 0.0,
        }

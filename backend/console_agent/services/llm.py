"""
Model-calling capability.

The agent core never talks to a provider SDK directly; it
depends on ``ModelClient``, which takes a message list plus
optional tool declarations and returns either text, tool
call requests, or both.  ``OpenAIModelClient`` is the
production implementation; tests inject scripted stand-ins.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from openai import OpenAI, OpenAIError

from console_agent.config import settings
from console_agent.schemas import TokenUsage, ToolDeclaration

logger = logging.getLogger(__name__)


class ModelError(RuntimeError):
    """Raised when the model capability is unavailable or fails."""


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Union[Dict[str, Any], str] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """Text and/or tool call requests returned by one model call."""

    text: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    usage: Optional[TokenUsage] = None


class ModelClient:
    """
    Abstract model capability.

    Subclasses implement ``generate``.  ``messages`` follow the
    chat-completions shape (``role`` / ``content`` plus
    ``tool_calls`` / ``tool_call_id`` where relevant).
    """

    def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[Sequence[ToolDeclaration]] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> ModelResponse:
        raise NotImplementedError


class OpenAIModelClient(ModelClient):
    """``ModelClient`` backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.model = model or settings.openai_model
        self._client = OpenAI(
            api_key=api_key or settings.openai_api_key or None,
            base_url=base_url or settings.openai_base_url or None,
        )

    def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[Sequence[ToolDeclaration]] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> ModelResponse:
        """
        Run one chat completion.

        Parameters:
            messages (list[dict]): Conversation so far.
            tools (list[ToolDeclaration], optional): Tools the
                model may call.
            json_mode (bool): Ask for a JSON object reply.
            temperature (float, optional): Sampling temperature.

        Returns:
            ModelResponse: Text, tool calls and token usage.

        Raises:
            ModelError: On any provider failure.
        """
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if tools:
            kwargs["tools"] = [_to_openai_tool(t) for t in tools]
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self._client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            logger.error("[llm] completion failed: %s", exc)
            raise ModelError(str(exc)) from exc

        message = response.choices[0].message
        tool_calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]
        return ModelResponse(
            text=message.content or "",
            tool_calls=tool_calls,
            usage=_usage_from_openai(response.usage),
        )


# ----- message helpers ------------------------------------------------


def assistant_message(
    text: str,
    tool_calls: Sequence[ToolCallRequest] = (),
) -> Dict[str, Any]:
    """Build an assistant message echoing the model's tool calls."""
    message: Dict[str, Any] = {"role": "assistant", "content": text}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": (
                        call.arguments
                        if isinstance(call.arguments, str)
                        else json.dumps(call.arguments)
                    ),
                },
            }
            for call in tool_calls
        ]
    return message


def tool_message(tool_call_id: str, output: Any) -> Dict[str, Any]:
    """Build the tool-result message fed back to the model."""
    content = (
        output if isinstance(output, str)
        else json.dumps(output, default=str)
    )
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": content,
    }


def _to_openai_tool(declaration: ToolDeclaration) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": declaration.name,
            "description": declaration.description,
            "parameters": declaration.input_schema,
        },
    }


def _usage_from_openai(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    completion_details = getattr(
        usage, "completion_tokens_details", None
    )
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    return TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
        reasoning_tokens=(
            getattr(completion_details, "reasoning_tokens", 0) or 0
        ),
        cached_input_tokens=(
            getattr(prompt_details, "cached_tokens", 0) or 0
        ),
    )

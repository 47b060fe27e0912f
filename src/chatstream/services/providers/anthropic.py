from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from ..model_registry import AdapterKind, ProviderSelection, ReasoningStyle, reasoning_style
from .base import (
    LOG,
    ProviderAdapter,
    StreamRequest,
    StreamResult,
    TokenSink,
    Usage,
    iter_sse_data,
    raise_for_status,
)


ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 8192
TEMPERATURE = 0.7
THINKING_BUDGETS = {"minimal": 1024, "low": 2048, "medium": 8192, "high": 24576}


class AnthropicStreamError(RuntimeError):
    """An ``error`` event arrived inside an otherwise successful stream."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


def _attachment_blocks(parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for part in parts:
        if isinstance(part.get("text"), str):
            blocks.append({"type": "text", "text": part["text"]})
            continue
        inline = part.get("inlineData")
        if isinstance(inline, dict):
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": inline.get("mimeType"), "data": inline.get("data")},
                }
            )
    return blocks


def build_messages(request: StreamRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": t.role, "content": t.text} for t in request.turns]
    if not request.attachment_parts:
        return messages
    blocks = _attachment_blocks(request.attachment_parts)
    if messages and messages[0]["role"] == "user":
        messages[0] = {"role": "user", "content": blocks + [{"type": "text", "text": messages[0]["content"]}]}
    else:
        messages.insert(0, {"role": "user", "content": blocks})
    return messages


class AnthropicAdapter(ProviderAdapter):
    kind = AdapterKind.ANTHROPIC

    def __init__(
        self,
        selection: ProviderSelection,
        client: Optional[httpx.AsyncClient] = None,
        requested_model: Optional[str] = None,
    ) -> None:
        super().__init__(selection)
        self._client = client
        # Reasoning support is keyed on the selector id, not the native id.
        self._requested_model = requested_model or selection.model

    def build_payload(self, request: StreamRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.selection.model,
            "messages": build_messages(request),
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        level = request.reasoning_level
        budget = THINKING_BUDGETS.get(level or "")
        if budget and reasoning_style(self._requested_model) is ReasoningStyle.BUDGET:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # Extended thinking requires temperature 1 and room beyond the budget.
            payload["temperature"] = 1
            payload["max_tokens"] = budget + MAX_TOKENS
        return payload

    async def stream(self, request: StreamRequest, on_token: TokenSink, result: Optional[StreamResult] = None) -> StreamResult:
        result = result if result is not None else StreamResult()
        headers = {
            "x-api-key": self.selection.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = self.build_payload(request)
        LOG.info("anthropic_stream_start", extra={"model": self.selection.model, "thinking": "thinking" in payload})

        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        try:
            url = f"{self.selection.base_url}/v1/messages"
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                await raise_for_status(response)
                async for line in response.aiter_lines():
                    event = iter_sse_data(line)
                    if event is not None:
                        await self._consume_event(event, result, on_token)
            await self._close_thought(result, on_token)
        finally:
            if self._client is None:
                await client.aclose()
        return result

    async def _consume_event(self, event: Dict[str, Any], result: StreamResult, on_token: TokenSink) -> None:
        kind = event.get("type")
        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            if usage:
                result.usage = Usage(prompt_tokens=usage.get("input_tokens"), output_tokens=usage.get("output_tokens"))
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                await self._emit_text(result, on_token, delta.get("text") or "")
            elif delta_type == "thinking_delta":
                await self._emit_thought(result, on_token, delta.get("thinking") or "")
            elif delta_type == "signature_delta":
                result.replace_continuation_token(delta.get("signature"))
        elif kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                result.finish_reason = str(delta["stop_reason"])
            usage = event.get("usage") or {}
            if usage.get("output_tokens") is not None:
                current = result.usage or Usage()
                current.output_tokens = usage["output_tokens"]
                if current.prompt_tokens is not None:
                    current.total_tokens = current.prompt_tokens + current.output_tokens
                result.usage = current
        elif kind == "error":
            err = event.get("error") or {}
            raise AnthropicStreamError(str(err.get("message") or "Anthropic stream error"), code=err.get("type"))

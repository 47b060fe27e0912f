from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from ..model_registry import (
    AdapterKind,
    ProviderSelection,
    ReasoningStyle,
    get_max_output_tokens,
    is_gemini3_model,
    reasoning_style,
)
from .base import (
    LOG,
    ProviderAdapter,
    StreamRequest,
    StreamResult,
    TokenSink,
    Usage,
    iter_sse_data,
    pick,
    raise_for_status,
)


# Placeholder accepted by Gemini 3 for assistant turns produced before
# signatures were recorded (e.g. history written by a 2.5 model).
PLACEHOLDER_CONTINUATION_TOKEN = "context_engineering_is_the_way_to_go"


def build_contents(request: StreamRequest) -> List[Dict[str, Any]]:
    """Map turns to Gemini ``contents``; assistant turns use the ``model`` role."""

    use_placeholder = is_gemini3_model(request.model)
    contents: List[Dict[str, Any]] = []
    for turn in request.turns:
        part: Dict[str, Any] = {"text": turn.text}
        if turn.role == "assistant":
            token = turn.latest_continuation_token()
            if token:
                part["thoughtSignature"] = token
            elif use_placeholder:
                part["thoughtSignature"] = PLACEHOLDER_CONTINUATION_TOKEN
        contents.append({"role": "model" if turn.role == "assistant" else "user", "parts": [part]})

    if request.attachment_parts:
        if contents and contents[0]["role"] == "user":
            contents[0]["parts"] = list(request.attachment_parts) + contents[0]["parts"]
        else:
            contents.insert(0, {"role": "user", "parts": list(request.attachment_parts)})
    return contents


def build_thinking_config(model: str, level: Optional[str]) -> Optional[Dict[str, Any]]:
    if not level or level == "off":
        return None
    style = reasoning_style(model)
    if style is ReasoningStyle.LEVEL:
        return {"thinkingLevel": level, "includeThoughts": True}
    if style is ReasoningStyle.BUDGET:
        # -1 lets the model size its own budget.
        return {"thinkingBudget": -1, "includeThoughts": True}
    return None


class GeminiAdapter(ProviderAdapter):
    kind = AdapterKind.GEMINI

    def __init__(self, selection: ProviderSelection, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(selection)
        self._client = client

    def build_payload(self, request: StreamRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": build_contents(request)}
        if request.system_prompt and request.system_prompt.strip():
            payload["systemInstruction"] = {"role": "system", "parts": [{"text": request.system_prompt}]}
        generation: Dict[str, Any] = {}
        max_tokens = get_max_output_tokens(request.model)
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        thinking = build_thinking_config(request.model, request.reasoning_level)
        if thinking:
            generation["thinkingConfig"] = thinking
        if generation:
            payload["generationConfig"] = generation
        if request.tools:
            payload["tools"] = list(request.tools)
        if request.safety_settings:
            payload["safetySettings"] = list(request.safety_settings)
        return payload

    async def stream(self, request: StreamRequest, on_token: TokenSink, result: Optional[StreamResult] = None) -> StreamResult:
        result = result if result is not None else StreamResult()
        url = f"{self.selection.base_url}/models/{self.selection.model}:streamGenerateContent"
        headers = {"x-goog-api-key": self.selection.api_key or "", "content-type": "application/json"}
        payload = self.build_payload(request)
        LOG.info(
            "gemini_stream_start",
            extra={
                "model": self.selection.model,
                "tools": len(request.tools),
                "thinking": request.reasoning_level or "off",
            },
        )

        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        try:
            async with client.stream("POST", url, params={"alt": "sse"}, json=payload, headers=headers) as response:
                await raise_for_status(response)
                async for line in response.aiter_lines():
                    chunk = iter_sse_data(line)
                    if chunk is not None:
                        await self._consume_chunk(chunk, result, on_token)
            await self._close_thought(result, on_token)
        finally:
            if self._client is None:
                await client.aclose()
        return result

    async def _consume_chunk(self, chunk: Dict[str, Any], result: StreamResult, on_token: TokenSink) -> None:
        feedback = pick(chunk, "promptFeedback", "prompt_feedback")
        if isinstance(feedback, dict):
            block = pick(feedback, "blockReason", "block_reason")
            if block:
                result.block_reason = str(block)

        result.add_continuation_token(pick(chunk, "thoughtSignature", "thought_signature"))

        candidates = chunk.get("candidates")
        candidate = candidates[0] if isinstance(candidates, list) and candidates else None
        if isinstance(candidate, dict):
            content = candidate.get("content") or {}
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts if isinstance(parts, list) else []:
                if not isinstance(part, dict):
                    continue
                result.add_continuation_token(pick(part, "thoughtSignature", "thought_signature"))
                thought = part.get("thought")
                text = part.get("text")
                if thought is True and isinstance(text, str):
                    await self._emit_thought(result, on_token, text)
                elif isinstance(thought, str):
                    await self._emit_thought(result, on_token, thought)
                elif isinstance(text, str):
                    await self._emit_text(result, on_token, text)

            grounding = pick(candidate, "groundingMetadata", "grounding_metadata")
            if grounding:
                result.grounding_metadata = grounding
            url_context = pick(candidate, "urlContextMetadata", "url_context_metadata")
            if url_context:
                result.url_context_metadata = url_context
            finish = pick(candidate, "finishReason", "finish_reason")
            if finish:
                result.finish_reason = str(finish)
            ratings = pick(candidate, "safetyRatings", "safety_ratings")
            if ratings:
                result.safety_ratings = ratings

        usage = pick(chunk, "usageMetadata", "usage_metadata")
        if isinstance(usage, dict):
            result.usage = Usage(
                prompt_tokens=pick(usage, "promptTokenCount", "prompt_token_count"),
                output_tokens=pick(usage, "candidatesTokenCount", "candidates_token_count"),
                reasoning_tokens=pick(usage, "thoughtsTokenCount", "thoughts_token_count"),
                total_tokens=pick(usage, "totalTokenCount", "total_token_count"),
            )

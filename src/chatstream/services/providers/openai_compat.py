from __future__ import annotations

from typing import Any, Dict, List, Optional

from langchain_openai import ChatOpenAI

from ..model_registry import AdapterKind, ProviderSelection
from .base import LOG, ProviderAdapter, StreamRequest, StreamResult, TokenSink, Usage, pick


TEMPERATURE = 0.7
MAX_TOKENS = 8192


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: List[str] = []
        for block in content:
            if isinstance(block, str):
                pieces.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                pieces.append(block["text"])
        return "".join(pieces)
    return ""


def build_messages(request: StreamRequest) -> List[Dict[str, str]]:
    """System prompt first, then turns; attachment text rides on the first user turn."""

    messages: List[Dict[str, str]] = [{"role": "system", "content": request.system_prompt or ""}]
    attachment_text = "".join(
        p["text"] for p in request.attachment_parts if isinstance(p, dict) and isinstance(p.get("text"), str)
    )
    for idx, turn in enumerate(request.turns):
        content = turn.text
        if idx == 0 and attachment_text and turn.role == "user":
            content = attachment_text + content
            attachment_text = ""
        messages.append({"role": turn.role, "content": content})
    if attachment_text:
        messages.insert(1, {"role": "user", "content": attachment_text})
    return messages


class OpenAICompatAdapter(ProviderAdapter):
    """Groq and OpenRouter through the OpenAI chat-completions dialect.

    Web-search tools and safety settings have no equivalent here and are
    not forwarded.
    """

    kind = AdapterKind.OPENAI_COMPAT

    def __init__(self, selection: ProviderSelection, llm: Optional[Any] = None) -> None:
        super().__init__(selection)
        self._llm = llm

    def _get_llm(self) -> Any:
        if self._llm is None:
            self._llm = ChatOpenAI(
                api_key=self.selection.api_key,
                base_url=self.selection.base_url,
                model=self.selection.model,
                temperature=TEMPERATURE,
                max_tokens=MAX_TOKENS,
                stream_usage=True,
            )
        return self._llm

    async def stream(self, request: StreamRequest, on_token: TokenSink, result: Optional[StreamResult] = None) -> StreamResult:
        result = result if result is not None else StreamResult()
        llm = self._get_llm()
        LOG.info("openai_compat_stream_start", extra={"provider": self.selection.name, "model": self.selection.model})

        async for chunk in llm.astream(build_messages(request)):
            extra = getattr(chunk, "additional_kwargs", None) or {}
            reasoning = pick(extra, "reasoning_content", "reasoning")
            if isinstance(reasoning, str):
                await self._emit_thought(result, on_token, reasoning)
            await self._emit_text(result, on_token, _chunk_text(getattr(chunk, "content", "")))

            metadata = getattr(chunk, "response_metadata", None) or {}
            finish = pick(metadata, "finish_reason")
            if finish:
                result.finish_reason = str(finish)

            usage = getattr(chunk, "usage_metadata", None)
            if isinstance(usage, dict) and usage:
                details = usage.get("output_token_details") or {}
                result.usage = Usage(
                    prompt_tokens=usage.get("input_tokens"),
                    output_tokens=usage.get("output_tokens"),
                    reasoning_tokens=details.get("reasoning") if isinstance(details, dict) else None,
                    total_tokens=usage.get("total_tokens"),
                )
        await self._close_thought(result, on_token)
        return result

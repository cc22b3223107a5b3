"""
LLM client abstraction for Claude and Gemini.

Streaming with retry-on-overload for Claude, structured JSON output for
Gemini, and per-call cost tracking. Requests are an ordered list of parts:
plain strings are text, ``data:image/...`` URIs are images, so labelled
image groups ("CURRENT ASSEMBLY STATE:", 8 snapshots, ...) keep their order.
Runs LLM calls in a thread-pool so the async event loop stays free.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import anthropic
from google import genai
from google.genai import types as genai_types

from ..shared.files import split_data_uri

logger = logging.getLogger(__name__)

CLAUDE_MODELS = {
    "claude": "claude-opus-4-6",
    "claude-opus": "claude-opus-4-6",
    "claude-sonnet": "claude-sonnet-4-6",
}

# USD per million tokens (input, output)
_CLAUDE_PRICES = {"sonnet": (3.0, 15.0), "opus": (15.0, 75.0)}
_GEMINI_PRICES = {"flash": (0.30, 2.50), "pro": (1.25, 10.0)}


@dataclass(frozen=True)
class UsageInfo:
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "input_cost_per_mtok": self.input_cost_per_mtok,
            "output_cost_per_mtok": self.output_cost_per_mtok,
            "cost_usd": self.cost_usd,
        }


@dataclass
class LLMResponse:
    text: str
    usage: UsageInfo
    elapsed_seconds: float = 0.0


def is_image_part(part: str) -> bool:
    return part.startswith("data:image/")


def _cost(input_tokens: int, output_tokens: int, prices: tuple[float, float]) -> float:
    return round(input_tokens / 1_000_000 * prices[0] + output_tokens / 1_000_000 * prices[1], 4)


# ---------------------------------------------------------------------------
# Client pool — lazy singleton per API key to avoid re-creating on every call
# ---------------------------------------------------------------------------

_claude_clients: dict[str, anthropic.Anthropic] = {}
_gemini_clients: dict[str, genai.Client] = {}


def _get_claude_client(api_key: str) -> anthropic.Anthropic:
    if api_key not in _claude_clients:
        _claude_clients[api_key] = anthropic.Anthropic(api_key=api_key)
    return _claude_clients[api_key]


def _get_gemini_client(api_key: str) -> genai.Client:
    if api_key not in _gemini_clients:
        _gemini_clients[api_key] = genai.Client(api_key=api_key)
    return _gemini_clients[api_key]


# ---------------------------------------------------------------------------
# Claude (sync, runs in thread-pool)
# ---------------------------------------------------------------------------

def _claude_content(parts: Sequence[str]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for part in parts:
        if is_image_part(part):
            mime, data = split_data_uri(part)
            content.append({"type": "image", "source": {"type": "base64", "media_type": mime, "data": data}})
        elif part:
            content.append({"type": "text", "text": part})
    return content


def _call_claude_sync(
    api_key: str,
    system: str,
    parts: Sequence[str],
    model: str = "claude-opus-4-6",
    max_tokens: int = 20000,
    temperature: float | None = None,
    response_schema: dict[str, Any] | None = None,
) -> LLMResponse:
    client = _get_claude_client(api_key)
    n_images = sum(1 for p in parts if is_image_part(p))
    logger.info("Calling Claude (%s, images=%d)...", model, n_images)
    t0 = time.time()

    parts = list(parts)
    if response_schema is not None:
        parts.append(
            "Respond with ONLY a JSON object (no prose, no fences) matching this schema:\n"
            + json.dumps(response_schema, indent=2)
        )
    user_content = _claude_content(parts)

    kwargs: dict[str, Any] = {}
    if system:
        kwargs["system"] = system
    if temperature is not None:
        kwargs["temperature"] = temperature

    max_retries = 3
    for attempt in range(1, max_retries + 1):
        try:
            raw = ""
            usage_info = UsageInfo(model=model)
            with client.messages.stream(
                model=model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": user_content}],
                **kwargs,
            ) as stream:
                for text in stream.text_stream:
                    raw += text
                final = stream.get_final_message()
                if final and getattr(final, "usage", None):
                    prices = _CLAUDE_PRICES["sonnet" if "sonnet" in model else "opus"]
                    usage_info = UsageInfo(
                        model=model,
                        input_tokens=final.usage.input_tokens,
                        output_tokens=final.usage.output_tokens,
                        input_cost_per_mtok=prices[0],
                        output_cost_per_mtok=prices[1],
                        cost_usd=_cost(final.usage.input_tokens, final.usage.output_tokens, prices),
                    )
                    logger.info(
                        "Claude (%s) tokens: in=%d, out=%d, cost=$%.4f",
                        model, usage_info.input_tokens, usage_info.output_tokens, usage_info.cost_usd,
                    )

            elapsed = time.time() - t0
            logger.info("Claude responded: %.1fs, %d chars", elapsed, len(raw))
            return LLMResponse(text=raw, usage=usage_info, elapsed_seconds=elapsed)

        except Exception as e:
            err_str = str(e).lower()
            is_overloaded = (
                "overloaded" in err_str
                or "overloaded" in repr(e).lower()
                or "529" in err_str
                or getattr(e, "status_code", None) == 529
            )
            if is_overloaded and attempt < max_retries:
                wait = attempt * 15
                logger.warning("Claude overloaded (attempt %d/%d), retrying in %ds...", attempt, max_retries, wait)
                time.sleep(wait)
                continue
            raise


# ---------------------------------------------------------------------------
# Gemini (sync, runs in thread-pool)
# ---------------------------------------------------------------------------

def _gemini_parts(parts: Sequence[str]) -> list[genai_types.Part]:
    out: list[genai_types.Part] = []
    for part in parts:
        if is_image_part(part):
            mime, data = split_data_uri(part)
            out.append(genai_types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime))
        elif part:
            out.append(genai_types.Part(text=part))
    return out


def _call_gemini_sync(
    api_key: str,
    gemini_model: str,
    system: str,
    parts: Sequence[str],
    temperature: float | None = None,
    response_schema: dict[str, Any] | None = None,
    thinking_budget: int | None = None,
) -> LLMResponse:
    client = _get_gemini_client(api_key)
    n_images = sum(1 for p in parts if is_image_part(p))
    logger.info("Calling Gemini (%s, images=%d)...", gemini_model, n_images)
    t0 = time.time()

    config_kwargs: dict[str, Any] = {"maxOutputTokens": 65536}
    if system:
        config_kwargs["systemInstruction"] = system
    if temperature is not None:
        config_kwargs["temperature"] = temperature
    if response_schema is not None:
        config_kwargs["responseMimeType"] = "application/json"
        config_kwargs["responseSchema"] = response_schema
    if thinking_budget is not None:
        config_kwargs["thinkingConfig"] = genai_types.ThinkingConfig(thinkingBudget=thinking_budget)

    response = client.models.generate_content(
        model=gemini_model,
        contents=genai_types.Content(parts=_gemini_parts(parts), role="user"),
        config=genai_types.GenerateContentConfig(**config_kwargs),
    )
    raw = response.text or ""

    usage_info = UsageInfo(model=gemini_model)
    um = getattr(response, "usage_metadata", None)
    if um:
        input_tok = getattr(um, "prompt_token_count", 0) or 0
        output_tok = getattr(um, "candidates_token_count", 0) or 0
        prices = _GEMINI_PRICES["flash" if "flash" in gemini_model else "pro"]
        usage_info = UsageInfo(
            model=gemini_model,
            input_tokens=input_tok,
            output_tokens=output_tok,
            input_cost_per_mtok=prices[0],
            output_cost_per_mtok=prices[1],
            cost_usd=_cost(input_tok, output_tok, prices),
        )
        logger.info("Gemini tokens: in=%d, out=%d, cost=$%.4f", input_tok, output_tok, usage_info.cost_usd)

    elapsed = time.time() - t0
    logger.info("Gemini responded: %.1fs, %d chars", elapsed, len(raw))
    return LLMResponse(text=raw, usage=usage_info, elapsed_seconds=elapsed)


# ---------------------------------------------------------------------------
# Unified async interface
# ---------------------------------------------------------------------------

async def call_llm(
    llm_name: str,
    system_prompt: str,
    parts: Sequence[str],
    anthropic_api_key: str = "",
    gemini_api_key: str = "",
    gemini_model: str = "gemini-2.5-pro",
    temperature: float | None = None,
    response_schema: dict[str, Any] | None = None,
    thinking_budget: int | None = None,
) -> LLMResponse:
    """Async wrapper that offloads the blocking LLM call to a thread-pool."""
    loop = asyncio.get_running_loop()

    if llm_name == "gemini":
        if not gemini_api_key:
            raise RuntimeError("GEMINI_API_KEY not set")
        return await loop.run_in_executor(
            None,
            lambda: _call_gemini_sync(
                gemini_api_key, gemini_model, system_prompt, parts,
                temperature, response_schema, thinking_budget,
            ),
        )

    if not anthropic_api_key:
        raise RuntimeError("ANTHROPIC_API_KEY not set")
    model = CLAUDE_MODELS.get(llm_name, CLAUDE_MODELS["claude"])
    return await loop.run_in_executor(
        None,
        lambda: _call_claude_sync(
            anthropic_api_key, system_prompt, parts, model,
            temperature=temperature, response_schema=response_schema,
        ),
    )

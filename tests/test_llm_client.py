import asyncio

import pytest

from dreammesh.core import llm_client


def test_claude_content_splits_text_and_images():
    content = llm_client._claude_content(["look:", "data:image/jpeg;base64,QUJD", ""])
    assert content[0] == {"type": "text", "text": "look:"}
    assert content[1]["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"}
    assert len(content) == 2


def test_gemini_parts_decode_images():
    parts = llm_client._gemini_parts(["hello", "data:image/png;base64,QUJD"])
    assert parts[0].text == "hello"
    assert parts[1].inline_data.data == b"ABC"
    assert parts[1].inline_data.mime_type == "image/png"


def test_cost_per_million_tokens():
    assert llm_client._cost(1_000_000, 100_000, (3.0, 15.0)) == pytest.approx(4.5)


@pytest.mark.parametrize("llm_name", ["gemini", "claude"])
def test_missing_api_key_fails_fast(llm_name):
    with pytest.raises(RuntimeError, match="API_KEY not set"):
        asyncio.run(llm_client.call_llm(llm_name, "", ["hi"]))


def test_claude_aliases_resolve_to_models(monkeypatch):
    seen = {}

    def fake_claude(api_key, system, parts, model, **kwargs):
        seen["model"] = model
        return llm_client.LLMResponse(text="ok", usage=llm_client.UsageInfo(model=model))

    monkeypatch.setattr(llm_client, "_call_claude_sync", fake_claude)
    response = asyncio.run(llm_client.call_llm("claude-sonnet", "", ["hi"], anthropic_api_key="k"))
    assert response.text == "ok"
    assert seen["model"] == llm_client.CLAUDE_MODELS["claude-sonnet"]

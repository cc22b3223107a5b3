from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ToolEnvelope(BaseModel):
    """
    Orchestration payload envelope:
    { "data": { ...generation request... }, "meta": { ...caller context... } }
    """

    data: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] = Field(default_factory=dict)


# Keys a caller may set in ``meta`` that fill in missing request fields.
_META_OVERRIDES = ("llm_name", "qc_llm_name", "request_id")


def unwrap_tool_payload(raw_body: Any) -> tuple[dict[str, Any], dict[str, Any], bool]:
    """
    Returns:
      - request data (with meta overrides merged in where data is silent)
      - metadata
      - whether the request was envelope-wrapped
    """
    if isinstance(raw_body, dict) and isinstance(raw_body.get("data"), dict):
        envelope = ToolEnvelope.model_validate(raw_body)
        data = dict(envelope.data)
        for key in _META_OVERRIDES:
            if key in envelope.meta and key not in data:
                data[key] = envelope.meta[key]
        return data, envelope.meta, True
    if not isinstance(raw_body, dict):
        raise ValueError("Request body must be a JSON object")
    return raw_body, {}, False

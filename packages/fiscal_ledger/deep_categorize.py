"""Generative fallback: categorize one transaction with the OpenAI Responses API.

Public API:
    - :func:`deep_categorize`

The adapter makes exactly one call and never retries (the client is created
with ``max_retries=0``); retry policy belongs to whoever re-runs the job.
Empty, malformed or out-of-schema output is "no answer" and yields ``None``.
No side effects occur at import time.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from . import prompting
from .logging_setup import get_logger
from .taxonomy import CategoryLabel, normalize_hierarchy

DEFAULT_MODEL: str = "gpt-5"

_logger = get_logger("fiscal_ledger.deep_categorize")


@dataclass(frozen=True, slots=True)
class DeepCategorization:
    label: CategoryLabel
    merchant_name: str
    confidence: float
    reasoning: str


class _DeepBody(BaseModel):
    """Typed view of the model output; mirrors the strict response schema."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    merchant_name: str
    l0: str
    l1: str
    l2: str
    l3: str
    confidence: float
    reasoning: str

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float) -> float:
        if 0.0 <= float(v) <= 1.0:
            return float(v)
        raise ValueError("confidence must be within [0,1]")

    @field_validator("l1", "reasoning")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be non-empty")
        return v


def _create_client() -> OpenAI:
    return OpenAI(max_retries=0)


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON mapping from an OpenAI Responses SDK result.

    Prefer ``resp.output_text``; fall back to ``resp.output[0].content[0].text``.
    Raise ``ValueError`` when no text is found or it is not a JSON object.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except (AttributeError, IndexError, TypeError):
            text = None
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Model output must be a JSON object")
    return decoded


def deep_categorize(
    description: str,
    amount: Decimal | float,
    on: date | str | None,
    *,
    client: Any | None = None,
    model: str | None = None,
) -> DeepCategorization | None:
    """Ask the model for a full label; ``None`` when it gives no usable answer.

    Parameters
    ----------
    description, amount, on:
        The transaction as stored (signed amount, positive is an inflow).
    client:
        Optional pre-built client exposing ``responses.create``; a fresh
        ``OpenAI(max_retries=0)`` is created otherwise.
    model:
        Model name; defaults to :data:`DEFAULT_MODEL`.
    """

    if not (description or "").strip():
        return None

    response_format = prompting.build_response_format()
    try:
        api = client if client is not None else _create_client()
        resp = api.responses.create(
            model=model or DEFAULT_MODEL,
            instructions=prompting.build_system_instructions(),
            input=prompting.build_user_content(description, amount, on),
            text=ResponseTextConfigParam(format=response_format),
        )
    except Exception as e:  # noqa: BLE001 - any client failure means "no answer"
        _logger.warning(
            "deep_categorize:call_failed error_type=%s status=%s",
            type(e).__name__,
            getattr(e, "status_code", None),
        )
        return None

    try:
        body = _DeepBody.model_validate(_extract_response_json_mapping(resp))
    except (ValueError, ValidationError) as e:
        _logger.info("deep_categorize:invalid_output error=%s", str(e).splitlines()[0])
        return None

    label = normalize_hierarchy(body.l0, body.l1, body.l2, body.l3, amount=amount)
    return DeepCategorization(
        label=label,
        merchant_name=body.merchant_name,
        confidence=body.confidence,
        reasoning=body.reasoning,
    )


__all__ = ["DEFAULT_MODEL", "DeepCategorization", "deep_categorize"]

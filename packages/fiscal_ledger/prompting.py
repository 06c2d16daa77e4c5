"""Prompt construction for single-transaction deep categorization.

This module builds:
- The system instructions and the user content (the transaction embedded as
  JSON between ``BEGIN_TRANSACTION_JSON``/``END_TRANSACTION_JSON`` markers).
- The strict ``response_format`` (JSON Schema) object for the OpenAI
  Responses API.
"""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .taxonomy import L0, load_vocabulary

BEGIN = "BEGIN_TRANSACTION_JSON\n"
END = "\nEND_TRANSACTION_JSON"


def build_system_instructions() -> str:
    return (
        "You are a bookkeeper for a landlord's small business. Classify one bank "
        "transaction into a four-level chart of accounts. Level 0 must be exactly one of: "
        + ", ".join(m.value for m in L0)
        + ". Positive amounts are money received, negative amounts are money spent. "
        "Prefer the provided vocabulary for level 1 and level 2. Output JSON only that "
        "conforms to the specified schema."
    )


def _vocabulary_text() -> str:
    lines: list[str] = ["Vocabulary (level 0 > level 1 > level 2):"]
    for l0, groups in load_vocabulary().items():
        lines.append(f"  • {l0}")
        for l1, items in groups.items():
            lines.append(f"    - {l1}")
            for item in items:
                lines.append(f"      · {item}")
    return "\n".join(lines)


def build_user_content(description: str, amount: Decimal | float, on: date | str | None) -> str:
    """Embed the transaction and the vocabulary in the user message."""

    payload = {
        "description": description,
        "amount": float(amount),
        "date": on.isoformat() if isinstance(on, date) else on,
    }
    return (
        f"{_vocabulary_text()}\n\n"
        "Identify the merchant, choose the category levels, rate your confidence "
        "between 0 and 1 and explain the choice in one sentence.\n\n"
        f"{BEGIN}{json.dumps(payload, ensure_ascii=False)}{END}"
    )


def build_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict JSON Schema response_format object.

    Schema shape:
    {
      "type": "json_schema",
      "name": "deep_categorization",
      "schema": {
        "type": "object",
        "properties": {
          "merchant_name": {"type": "string"},
          "l0": {"type": "string", "enum": [...six-set...]},
          "l1": {"type": "string"}, "l2": {...}, "l3": {...},
          "confidence": {"type": "number", "minimum": 0, "maximum": 1},
          "reasoning": {"type": "string"}
        },
        "required": [...all...],
        "additionalProperties": false
      },
      "strict": true
    }
    """

    properties = {
        "merchant_name": {"type": "string"},
        "l0": {"type": "string", "enum": [m.value for m in L0]},
        "l1": {"type": "string"},
        "l2": {"type": "string"},
        "l3": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string"},
    }
    result: ResponseFormatTextJSONSchemaConfigParam = {
        "type": "json_schema",
        "name": "deep_categorization",
        "schema": {
            "type": "object",
            "properties": properties,
            "required": list(properties),
            "additionalProperties": False,
        },
        "strict": True,
    }
    return result


__all__ = [
    "BEGIN",
    "END",
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
]

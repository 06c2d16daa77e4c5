# ruff: noqa: I001
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

import pytest

import fiscal_ledger.deep_categorize as deep_categorize_mod
from fiscal_ledger.deep_categorize import deep_categorize
from fiscal_ledger.prompting import build_response_format

from tests.helpers.openai_stub import OpenAIStub, deep_answer


def test_valid_answer_is_normalized_into_a_label() -> None:
    calls: list[dict[str, Any]] = []
    stub = OpenAIStub(
        lambda txn: deep_answer("operating expense", "Operating Expenses", "Repairs", confidence=0.72),
        calls,
    )
    result = deep_categorize("ACME HVAC SERVICE", Decimal("-220.00"), date(2024, 5, 2), client=stub)

    assert result is not None
    assert result.label.l0 == "OPERATING EXPENSE"
    assert result.label.l2 == "Repairs"
    assert result.confidence == pytest.approx(0.72)
    assert len(calls) == 1
    assert calls[0]["text"]["format"]["name"] == "deep_categorization"


def test_transaction_is_embedded_in_user_content() -> None:
    seen: list[dict[str, Any]] = []

    def _decide(txn: dict[str, Any]) -> dict[str, Any]:
        seen.append(txn)
        return deep_answer()

    deep_categorize("ACME", -10, date(2024, 1, 31), client=OpenAIStub(_decide))
    assert seen == [{"description": "ACME", "amount": -10.0, "date": "2024-01-31"}]


@pytest.mark.parametrize(
    "answer",
    [
        "",
        "not json",
        "[1, 2]",
        {"merchant_name": "x"},
        deep_answer(confidence=1.7),
        deep_answer(l1="   "),
        {**deep_answer(), "extra": "field"},
    ],
)
def test_malformed_output_returns_none(answer) -> None:
    assert deep_categorize("ACME", -10, None, client=OpenAIStub(lambda _t: answer)) is None


def test_client_failure_returns_none() -> None:
    stub = OpenAIStub(lambda _t: RuntimeError("rate limited"))
    assert deep_categorize("ACME", -10, None, client=stub) is None


def test_blank_description_skips_the_call() -> None:
    calls: list[dict[str, Any]] = []
    assert deep_categorize("   ", -10, None, client=OpenAIStub(lambda _t: deep_answer(), calls)) is None
    assert calls == []


def test_default_client_is_built_without_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    built: list[dict[str, Any]] = []

    class _Client(OpenAIStub):
        def __init__(self, **kwargs: Any) -> None:
            built.append(kwargs)
            super().__init__(lambda _t: deep_answer())

    monkeypatch.setattr(deep_categorize_mod, "OpenAI", _Client)
    assert deep_categorize("ACME", -10, None) is not None
    assert built == [{"max_retries": 0}]


def test_response_format_is_strict() -> None:
    fmt = build_response_format()
    assert fmt["strict"] is True
    schema = fmt["schema"]
    assert schema["additionalProperties"] is False
    assert set(schema["required"]) == {"merchant_name", "l0", "l1", "l2", "l3", "confidence", "reasoning"}
    assert "OPERATING EXPENSE" in schema["properties"]["l0"]["enum"]

"""Test helpers to stub the OpenAI Responses client used by deep_categorize.py.

The stub parses the user content to extract the embedded transaction JSON and
returns whatever the test's ``decide`` callable produces for it: a mapping
(serialized as the model's JSON output), a raw string, or an exception to
raise from ``responses.create``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

BEGIN = "BEGIN_TRANSACTION_JSON\n"
END = "\nEND_TRANSACTION_JSON"


def extract_transaction(user_content: str) -> dict[str, Any]:
    b = user_content.find(BEGIN)
    e = user_content.rfind(END)
    if b == -1 or e == -1 or e <= b:
        raise AssertionError("deep_categorize: user content missing embedded transaction JSON")
    return json.loads(user_content[b + len(BEGIN) : e])


class OpenAIStub:
    """Minimal stub matching the ``openai.OpenAI`` shape ``deep_categorize`` uses.

    Parameters
    ----------
    decide:
        Callable receiving the embedded transaction mapping.
    calls_out:
        Optional list appended with each call's kwargs.
    """

    def __init__(
        self,
        decide: Callable[[dict[str, Any]], dict[str, Any] | str | Exception],
        calls_out: list[dict[str, Any]] | None = None,
    ) -> None:
        self._decide = decide
        self._calls = calls_out if calls_out is not None else []

        class _Responses:
            def __init__(self, outer: OpenAIStub) -> None:
                self._outer = outer

            def create(self, **kwargs):
                self._outer._calls.append(kwargs)
                answer = self._outer._decide(extract_transaction(kwargs["input"]))
                if isinstance(answer, Exception):
                    raise answer

                class _Resp:
                    output_text: str

                resp = _Resp()
                resp.output_text = answer if isinstance(answer, str) else json.dumps(answer)
                return resp

        self.responses = _Responses(self)

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self._calls


def deep_answer(
    l0: str = "OPERATING EXPENSE",
    l1: str = "Operating Expenses",
    l2: str = "",
    l3: str = "",
    *,
    confidence: float = 0.8,
    merchant_name: str = "Merchant",
    reasoning: str = "Looks like a business expense.",
) -> dict[str, Any]:
    return {
        "merchant_name": merchant_name,
        "l0": l0,
        "l1": l1,
        "l2": l2,
        "l3": l3,
        "confidence": confidence,
        "reasoning": reasoning,
    }

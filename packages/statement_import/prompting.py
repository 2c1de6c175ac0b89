"""Prompt and response contract for statement transaction extraction.

This module builds:
- the system instructions (date, amount and category rules);
- the user content wrapping the statement text;
- the strict ``response_format`` (JSON Schema) for the OpenAI Responses API.

The schema is versioned. Bump :data:`SCHEMA_NAME` whenever the item shape
changes so logs and cached outputs can tell versions apart.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

SCHEMA_NAME = "statement_transactions_v1"

_EXAMPLE = """\
{
  "transactions": [
    {
      "amount": 45.50,
      "description": "Coffee Shop Purchase",
      "date": "2024-01-15",
      "type": "expense",
      "suggested_category": "Food"
    },
    {
      "amount": 1200.00,
      "description": "Salary Deposit",
      "date": "2024-01-01",
      "type": "income",
      "suggested_category": null
    }
  ]
}"""


def _category_rule(known_category_names: Sequence[str]) -> str:
    names = [n for n in dict.fromkeys(s.strip() for s in known_category_names) if n]
    if names:
        return (
            "- Suggest category names ONLY from this list: "
            + ", ".join(names)
            + ". If no category from this list fits, suggest a new one or return null."
        )
    return "- Suggest appropriate category names when possible"


def build_system_instructions(known_category_names: Sequence[str], *, today: date) -> str:
    return "\n".join(
        [
            "You are a financial transaction parser. Extract transactions from financial "
            "statement text and return them as JSON.",
            "",
            "Rules:",
            "- Extract all transactions (both income and expenses)",
            "- Parse amounts as positive numbers (the type field indicates income/expense)",
            "- Extract dates in YYYY-MM-DD format. IMPORTANT: If the year is not specified "
            f"in the text, assume the current year is {today.year}. If a specific year IS in "
            "the text, use that year. If NO date can be found in the text, use today's date: "
            f"{today.isoformat()}.",
            "- Extract clear descriptions of each transaction",
            _category_rule(known_category_names),
            "- Return ONLY valid JSON, no additional text",
            '- If no transactions found, return {"transactions": []}',
            "",
            "Example format:",
            _EXAMPLE,
        ]
    )


def build_user_content(text: str) -> str:
    return f"Extract transactions from this financial statement:\n\n{text}"


def build_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict JSON Schema text format for the Responses API.

    Strict mode requires every property to be listed in ``required``;
    optional values are expressed as nullable types instead.
    """

    result: ResponseFormatTextJSONSchemaConfigParam = {
        "type": "json_schema",
        "name": SCHEMA_NAME,
        "schema": {
            "type": "object",
            "properties": {
                "transactions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "amount": {"type": "number"},
                            "description": {"type": "string"},
                            "date": {"type": ["string", "null"]},
                            "type": {"type": "string", "enum": ["income", "expense"]},
                            "suggested_category": {"type": ["string", "null"]},
                        },
                        "required": [
                            "amount",
                            "description",
                            "date",
                            "type",
                            "suggested_category",
                        ],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["transactions"],
            "additionalProperties": False,
        },
        "strict": True,
    }
    return result


__all__ = [
    "SCHEMA_NAME",
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
]

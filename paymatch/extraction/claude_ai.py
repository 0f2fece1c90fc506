"""Claude AI extraction of payments from bank notification emails.

Sends the email text to Claude with a strict JSON schema and returns the
raw payment records for normalize_candidate(). Uses the claude_fn callback
pattern (system: str, prompt: str) -> str for testability.

Monthly budget cap tracked via api_usage table.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from paymatch.database.repository import Repository
from paymatch.errors import ExtractionFailure
from paymatch.extraction.base import BaseExtractor

logger = logging.getLogger(__name__)

# Monthly budget cap for Claude extraction (in cents), overridable in rules.yaml
MONTHLY_BUDGET_CENTS = 500

# Cost estimate per extraction call (in cents)
CLAUDE_EXTRACT_COST_CENTS = 2

# Emails longer than this are truncated before being sent
MAX_PROMPT_CHARS = 12000

SYSTEM_PROMPT = (
    "You extract payments from Czech and English bank notification emails "
    "and account statements. Return ONLY a JSON object of the form "
    '{"payments": [...]} with one entry per payment line. Each entry has:\n'
    '  - "amount": number in major units, negative for outgoing/debit payments\n'
    '  - "currency": ISO 4217 code (Kč means CZK)\n'
    '  - "direction": "incoming" or "outgoing"\n'
    '  - "value_date": date of the payment as YYYY-MM-DD\n'
    '  - "variable_symbol", "constant_symbol", "specific_symbol": digits or null\n'
    '  - "counterparty_name": payer or payee name or null\n'
    '  - "counterparty_account": account number like 123456789/0800 or null\n'
    '  - "reference_text": the payment message/note or null\n'
    '  - "bank_reference": the bank\'s transaction id or null\n'
    "Do not include balances, fees summaries or totals. If the email "
    'contains no payments, return {"payments": []}.\n'
    "Return ONLY the JSON object, no other text."
)


class ClaudeExtractor(BaseExtractor):
    """Model-based extractor behind a claude_fn callback.

    Args:
        claude_fn: Callable (system: str, prompt: str) -> str.
        repo: Repository for budget tracking. Without one, no budget is enforced.
        monthly_budget_cents: Spend cap per calendar month.
    """

    name = "claude"

    def __init__(
        self,
        claude_fn,
        repo: Repository | None = None,
        monthly_budget_cents: int = MONTHLY_BUDGET_CENTS,
    ):
        self.claude_fn = claude_fn
        self.repo = repo
        self.monthly_budget_cents = monthly_budget_cents

    def extract(self, text: str, account=None) -> list[dict]:
        month = datetime.now(timezone.utc).strftime("%Y-%m")

        if self.repo is not None:
            current_cost = self.repo.get_monthly_cost(month)
            if current_cost >= self.monthly_budget_cents:
                logger.warning(
                    "Monthly Claude budget exceeded (%d/%d cents), skipping extraction",
                    current_cost, self.monthly_budget_cents,
                )
                raise ExtractionFailure("monthly extraction budget exhausted")

        prompt = _build_prompt(text, account)
        try:
            response = self.claude_fn(SYSTEM_PROMPT, prompt)
        except Exception as e:
            raise ExtractionFailure(f"Claude call failed: {e}") from e

        if self.repo is not None:
            self.repo.increment_api_usage(
                month, "claude_extract",
                requests=1,
                cost_cents=CLAUDE_EXTRACT_COST_CENTS,
            )

        return _parse_response(response)


def _build_prompt(text: str, account) -> str:
    lines = []
    if account is not None:
        lines.append(f"Account currency: {account.currency}")
        if account.account_number:
            lines.append(f"Statement account: {account.account_number}")
        lines.append("")
    body = text if len(text) <= MAX_PROMPT_CHARS else text[:MAX_PROMPT_CHARS]
    lines.append(body)
    return "\n".join(lines)


def _parse_response(response: str) -> list[dict]:
    """Parse Claude's JSON response into a list of raw payment records.

    Raises:
        ExtractionFailure: If the response is not JSON or has the wrong shape.
    """
    text = (response or "").strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse Claude extraction response: %s", text[:200])
        raise ExtractionFailure("unparseable") from e

    if isinstance(data, dict):
        data = data.get("payments", data.get("transactions"))
    if not isinstance(data, list):
        logger.error("Claude response has no payment list: %s", type(data))
        raise ExtractionFailure("unparseable")

    return [item for item in data if isinstance(item, dict)]

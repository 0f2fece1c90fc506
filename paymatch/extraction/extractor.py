"""Extraction chain: turns one email body into candidate transactions.

Extractors are tried in order (Claude first when configured, the regex
parser as fallback). Each call runs in a bounded worker pool with a
timeout, so a hung model call cannot block the gateway. The first
extractor that returns without error wins, even with zero records.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field

from paymatch.errors import ExtractionFailure
from paymatch.extraction.base import (
    OUTGOING,
    BaseExtractor,
    CandidateTransaction,
    normalize_candidate,
)

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Outcome of running the extractor chain on one message."""
    candidates: list[CandidateTransaction] = field(default_factory=list)
    failed: bool = False
    error: str | None = None
    extractor: str | None = None
    discarded: int = 0


class TransactionExtractor:
    """Runs the extractor chain with bounded concurrency and a timeout."""

    def __init__(
        self,
        extractors: list[BaseExtractor],
        timeout_seconds: float = 30,
        max_concurrency: int = 4,
        default_currency: str = "CZK",
    ):
        self.extractors = list(extractors)
        self.timeout_seconds = timeout_seconds
        self.default_currency = default_currency
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="extract",
        )

    @classmethod
    def from_config(cls, config, repo=None, claude_fn=None) -> TransactionExtractor:
        from paymatch.extraction.claude_ai import ClaudeExtractor
        from paymatch.extraction.regex_parser import RegexExtractor

        settings = config.extraction
        extractors: list[BaseExtractor] = []
        if claude_fn is not None:
            extractors.append(ClaudeExtractor(
                claude_fn, repo,
                monthly_budget_cents=int(settings["monthly_budget_cents"]),
            ))
        extractors.append(RegexExtractor())
        return cls(
            extractors,
            timeout_seconds=float(settings["timeout_seconds"]),
            max_concurrency=int(settings["max_concurrency"]),
            default_currency=str(settings["default_currency"]),
        )

    def close(self):
        self._pool.shutdown(wait=False)

    def run(self, text: str, account=None, default_date: str | None = None) -> ExtractionResult:
        """Extract candidates from one message body.

        Never raises. When an extractor fails and a fallback returns nothing,
        the result is marked failed so the delivery can be reprocessed rather
        than silently treated as "not a payment notice".
        """
        errors: list[str] = []
        for extractor in self.extractors:
            future = self._pool.submit(extractor.extract, text, account)
            try:
                records = future.result(timeout=self.timeout_seconds)
            except FuturesTimeout:
                future.cancel()
                errors.append(f"{extractor.name}: timed out after {self.timeout_seconds}s")
                logger.warning("Extractor %s timed out", extractor.name)
                continue
            except ExtractionFailure as e:
                errors.append(f"{extractor.name}: {e}")
                logger.warning("Extractor %s failed: %s", extractor.name, e)
                continue
            except Exception as e:
                errors.append(f"{extractor.name}: {e}")
                logger.exception("Extractor %s crashed", extractor.name)
                continue

            candidates, discarded = self._normalize(records, account, default_date)
            if errors and not candidates:
                return ExtractionResult(
                    failed=True, error="; ".join(errors),
                    extractor=extractor.name, discarded=discarded,
                )
            if errors:
                logger.warning(
                    "Fell back to %s extractor after: %s", extractor.name, "; ".join(errors),
                )
            return ExtractionResult(
                candidates=candidates,
                error="; ".join(errors) or None,
                extractor=extractor.name,
                discarded=discarded,
            )

        return ExtractionResult(
            failed=True, error="; ".join(errors) or "no extractor configured",
        )

    def extract(self, text: str, account=None) -> list[CandidateTransaction]:
        """Candidate list only; failures degrade to an empty list."""
        return self.run(text, account).candidates

    def _normalize(
        self, records, account, default_date,
    ) -> tuple[list[CandidateTransaction], int]:
        currency = getattr(account, "currency", None) or self.default_currency
        allow_outgoing = bool(getattr(account, "match_outgoing", False))

        candidates: list[CandidateTransaction] = []
        discarded = 0
        for record in records or []:
            cand = normalize_candidate(record, currency, default_date)
            if cand is None:
                discarded += 1
                continue
            if cand.direction == OUTGOING and not allow_outgoing:
                discarded += 1
                continue
            candidates.append(cand)
        if discarded:
            logger.info("Discarded %d extracted record(s)", discarded)
        return candidates, discarded

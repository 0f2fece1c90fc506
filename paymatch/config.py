"""YAML configuration loader for paymatch.

Loads the config files from the config/ directory:
  accounts.yaml  bank accounts with their inbound addresses and tokens
  rules.yaml     matching thresholds, extraction limits, webhook and api settings
"""

from pathlib import Path

import yaml

_MATCHING_DEFAULTS = {
    "amount_tolerance": 0,
    "auto_accept_threshold": 0.8,
    "review_threshold": 0.5,
    "name_similarity_threshold": 0.85,
    "invoice_number_pattern": r"\b\d{4,10}\b",
    "confidence": {
        "exact_reference": 1.0,
        "fuzzy_reference": 0.85,
        "amount_counterparty": 0.7,
        "amount_only": 0.5,
    },
}

_EXTRACTION_DEFAULTS = {
    "timeout_seconds": 30,
    "max_concurrency": 4,
    "monthly_budget_cents": 500,
    "default_currency": "CZK",
}


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._accounts: list[dict] | None = None
        self._rules: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def accounts(self) -> list[dict]:
        if self._accounts is None:
            data = self._load("accounts.yaml")
            self._accounts = data.get("accounts", data) if isinstance(data, dict) else data
        return self._accounts

    @property
    def rules(self) -> dict:
        if self._rules is None:
            self._rules = self._load("rules.yaml")
        return self._rules

    def account_by_id(self, account_id: str) -> dict | None:
        for acct in self.accounts:
            if str(acct.get("id")) == str(account_id):
                return acct
        return None

    @property
    def matching(self) -> dict:
        """Matching section of rules.yaml merged over the defaults.

        The nested confidence map is merged key by key so a config that
        overrides one rule's confidence keeps the others.
        """
        section = self.rules.get("matching") or {}
        merged = {**_MATCHING_DEFAULTS, **section}
        merged["confidence"] = {
            **_MATCHING_DEFAULTS["confidence"],
            **(section.get("confidence") or {}),
        }
        return merged

    @property
    def extraction(self) -> dict:
        section = self.rules.get("extraction") or {}
        return {**_EXTRACTION_DEFAULTS, **section}

    @property
    def webhook_secret(self) -> str | None:
        """HMAC secret for webhook signatures. None disables verification."""
        return (self.rules.get("webhook") or {}).get("secret") or None

    @property
    def include_attachments(self) -> bool:
        return bool((self.rules.get("webhook") or {}).get("include_attachments", True))

    @property
    def admin_key(self) -> str | None:
        return (self.rules.get("api") or {}).get("admin_key") or None

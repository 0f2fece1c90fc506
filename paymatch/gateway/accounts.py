"""Bank accounts and their dedicated inbound addresses.

Each account owns one address of the form

    <prefix>.<accountNumberFragment>.<token>@<domain>

e.g. bank.219819.b7a9415jfb@doklad.ai. The token doubles as the shared
secret that authorizes deliveries claiming to be for that account. Accounts
are provisioned outside the engine (accounts.yaml); the engine only reads
the mapping.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import string
from dataclasses import dataclass

from paymatch.config import Config
from paymatch.errors import UnknownAccount

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class Account:
    id: str
    company_id: str
    inbound_email: str
    token: str
    name: str = ""
    account_number: str = ""
    currency: str = "CZK"
    active: bool = True
    match_outgoing: bool = False
    amount_tolerance: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> Account:
        tolerance = data.get("amount_tolerance")
        return cls(
            id=str(data["id"]),
            company_id=str(data["company_id"]),
            inbound_email=str(data.get("inbound_email", "")).strip().lower(),
            token=str(data.get("token", "")),
            name=data.get("name", ""),
            account_number=str(data.get("account_number", "")),
            currency=str(data.get("currency", "CZK")).upper(),
            active=bool(data.get("active", True)),
            match_outgoing=bool(data.get("match_outgoing", False)),
            amount_tolerance=float(tolerance) if tolerance is not None else None,
        )


def account_number_fragment(account_number: str) -> str:
    """Account-number part used in the address.

    The part before the bank code; for prefix-number accounts only the
    prefix, so 219819-2602094613/2010 -> 219819.
    """
    number = account_number.split("/")[0].strip()
    return number.split("-")[0].strip()


def build_inbound_address(
    prefix: str, account_number: str, token: str, domain: str,
) -> str:
    return f"{prefix}.{account_number_fragment(account_number)}.{token}@{domain}".lower()


def parse_inbound_address(address: str) -> tuple[str, str, str, str] | None:
    """Split an inbound address into (prefix, fragment, token, domain).

    Returns None if the address does not follow the three-part scheme.
    """
    local, sep, domain = address.strip().lower().rpartition("@")
    if not sep or not local or not domain:
        return None
    parts = local.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2], domain


def generate_token(length: int = 10) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


class AccountDirectory:
    """Lookup of configured accounts by id and inbound address."""

    def __init__(self, config: Config):
        self.config = config
        self._by_email: dict[str, Account] | None = None
        self._by_id: dict[str, Account] | None = None

    def _load(self) -> None:
        by_email: dict[str, Account] = {}
        by_id: dict[str, Account] = {}
        for entry in self.config.accounts:
            try:
                acct = Account.from_dict(entry)
            except KeyError as e:
                raise ValueError(f"Account entry missing field {e}: {entry.get('id', '?')}") from e
            by_id[acct.id] = acct
            if acct.inbound_email:
                by_email[acct.inbound_email] = acct
        self._by_email = by_email
        self._by_id = by_id

    def by_email(self, address: str) -> Account | None:
        if self._by_email is None:
            self._load()
        return self._by_email.get(address.strip().lower())

    def by_id(self, account_id: str) -> Account | None:
        if self._by_id is None:
            self._load()
        return self._by_id.get(str(account_id))

    def authorize(self, recipient: str) -> Account:
        """Resolve the delivery recipient to an active account.

        Raises:
            UnknownAccount: Unknown address, inactive account, or a token in
                the address that does not match the account's token.
        """
        acct = self.by_email(recipient)
        if acct is None:
            raise UnknownAccount(recipient, "unknown")
        if not acct.active:
            raise UnknownAccount(recipient, "inactive")
        parsed = parse_inbound_address(recipient)
        if acct.token and (
            parsed is None or not hmac.compare_digest(parsed[2], acct.token.lower())
        ):
            # Don't log the address token
            logger.warning("Token mismatch for account %s", acct.id)
            raise UnknownAccount(recipient, "token mismatch")
        return acct

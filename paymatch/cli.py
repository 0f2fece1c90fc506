"""CLI entry point for paymatch.

Commands:
    paymatch serve [--host H] [--port P]        Run the HTTP API (webhook + admin)
    paymatch watch                              Watch the mail drop folder
    paymatch process-email FILE --account ID    Run one email body through the pipeline
    paymatch reprocess [MESSAGE_ID]             Re-run one or all failed deliveries
    paymatch status                             Match rate, review queue, failures
    paymatch review                             List transactions waiting for review
    paymatch match TXN INV [--amount A]         Manually attach a transaction to an invoice
    paymatch unmatch MATCH                      Remove a match
    paymatch load-invoices FILE                 Load open invoices from YAML
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-20250514"


def _setup_logging() -> None:
    """Configure logging based on PAYMATCH_LOG_LEVEL env var."""
    level = os.environ.get("PAYMATCH_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from paymatch.config import Config

    config_dir = os.environ.get("PAYMATCH_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    from paymatch.database.repository import MIGRATIONS_DIR

    return Path(os.environ.get("PAYMATCH_MIGRATIONS_DIR", MIGRATIONS_DIR))


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from paymatch.database.repository import Repository

    db_path = os.environ.get("PAYMATCH_DB_PATH", "paymatch.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_maildrop_dir() -> Path:
    return Path(os.environ.get("PAYMATCH_MAILDROP_DIR", "maildrop"))


def _make_claude_fn():
    """Create a Claude API callback for payment extraction.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set. Without it only the regex extractor runs.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)
        model = os.environ.get("PAYMATCH_CLAUDE_MODEL", DEFAULT_CLAUDE_MODEL)

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=model,
                max_tokens=1024,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logger.warning("Claude API not available: %s", e)
        return None


def _build_services(config, repo):
    """Wire extractor, ledger, gateway and overrides around one repository."""
    from paymatch.extraction.extractor import TransactionExtractor
    from paymatch.gateway.webhook import WebhookGateway
    from paymatch.invoices import SqliteInvoiceStore
    from paymatch.ledger import MatchLedger
    from paymatch.overrides import ManualOverrides

    extractor = TransactionExtractor.from_config(config, repo=repo, claude_fn=_make_claude_fn())
    ledger = MatchLedger(repo, SqliteInvoiceStore(repo))
    gateway = WebhookGateway(repo, config, extractor, ledger)
    return gateway, ManualOverrides(ledger)


def _print_result(result) -> None:
    label = "duplicate" if result.duplicate else result.status
    print(f"Message {result.message_id}: {label}")
    print(f"  Transactions:  {result.processed}")
    print(f"  Matched:       {result.matched}")
    print(f"  For review:    {result.review}")
    for err in result.errors:
        print(f"  Error: {err}")


# ── Command handlers ─────────────────────────────────────


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the Flask API."""
    from paymatch.api.app import create_app

    config = _get_config()
    # Flask serves requests on threads; share one connection across them
    repo = _get_repo()
    gateway, overrides = _build_services(config, repo)
    app = create_app(gateway, overrides, repo, config)

    print(f"Serving payment matching API on {args.host}:{args.port}")
    try:
        app.run(host=args.host, port=args.port, threaded=True)
    finally:
        gateway.extractor.close()
        repo.close()
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the mail drop watcher daemon."""
    from paymatch.gateway.watcher import MailDropWatcher

    config = _get_config()
    repo = _get_repo()
    gateway, _ = _build_services(config, repo)

    watcher = MailDropWatcher(watch_dir=_get_maildrop_dir(), gateway=gateway)
    watcher.process_pending()

    print(f"Watching {watcher.watch_dir} for delivered emails... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        gateway.extractor.close()
        repo.close()

    return 0


def cmd_process_email(args: argparse.Namespace) -> int:
    """Run an email body from a file through extraction and matching."""
    from paymatch.errors import PaymentMatchError

    filepath: Path = args.file
    if not filepath.exists():
        print(f"File not found: {filepath}")
        return 1

    config = _get_config()
    repo = _get_repo()
    gateway, _ = _build_services(config, repo)
    try:
        result = gateway.process_email(
            args.account, filepath.read_text(encoding="utf-8"), subject=args.subject,
        )
    except PaymentMatchError as e:
        print(f"Error: {e}")
        return 1
    finally:
        gateway.extractor.close()

    _print_result(result)
    repo.close()
    return 0 if result.success else 1


def cmd_reprocess(args: argparse.Namespace) -> int:
    """Re-run one failed delivery, or every failed delivery."""
    from paymatch.errors import PaymentMatchError

    config = _get_config()
    repo = _get_repo()
    gateway, _ = _build_services(config, repo)
    try:
        if args.message_id:
            results = [gateway.reprocess(args.message_id)]
        else:
            results = gateway.reprocess_failed()
    except PaymentMatchError as e:
        print(f"Error: {e}")
        return 1
    finally:
        gateway.extractor.close()

    if not results:
        print("No failed deliveries.")
    for result in results:
        _print_result(result)

    repo.close()
    return 0 if all(r.success for r in results) else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Display match statistics."""
    from datetime import datetime

    from paymatch.database.queries import get_matching_stats

    repo = _get_repo()
    with repo.locked() as conn:
        stats = get_matching_stats(conn)

    print("Payment Matching Status")
    print("=" * 40)
    print(f"  Transactions:        {stats['total']:,}")
    print(f"  Matched:             {stats['matched']:,}")
    print(f"  Partially matched:   {stats['partially_matched']:,}")
    print(f"  Unmatched:           {stats['unmatched']:,}")
    print(f"  Match rate:          {stats['match_rate']:.1%}")
    print(f"  Auto / manual:       {stats['auto_matches']:,} / {stats['manual_matches']:,}")
    print(f"  Open review items:   {stats['open_review_items']:,}")
    print(f"  Failed deliveries:   {stats['failed_deliveries']:,}")
    print(f"  Last processed:      {stats['last_processed_at'] or 'never'}")

    month = datetime.now().strftime("%Y-%m")
    cost_cents = repo.get_monthly_cost(month)
    print(f"\n  API cost ({month}):     ${cost_cents / 100:.2f}")

    repo.close()
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List open review suggestions."""
    from paymatch.database.queries import list_review_items
    from paymatch.extraction.base import from_minor

    repo = _get_repo()
    with repo.locked() as conn:
        items = list_review_items(conn, limit=args.limit)

    if not items:
        print("No transactions pending review.")
        repo.close()
        return 0

    print(f"Suggestions pending review ({len(items)}):")
    print("-" * 100)
    for r in items:
        counterparty = (r["counterparty_name"] or "")[:24]
        print(
            f"  {r['id'][:8]}  {r['value_date'] or '':<10}  {from_minor(r['amount']):>12,.2f} {r['currency']}"
            f"  {counterparty:<24}  -> {r['invoice_number'] or r['invoice_id']:<12}"
            f"  {r['confidence']:.0%}  {r['reason']}"
        )
        print(f"            txn {r['transaction_id']}  invoice {r['invoice_id']}")

    repo.close()
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    """Manually match a transaction to an invoice."""
    from paymatch.errors import PaymentMatchError
    from paymatch.extraction.base import from_minor, to_minor

    config = _get_config()
    repo = _get_repo()
    _, overrides = _build_services(config, repo)

    amount = None
    if args.amount is not None:
        try:
            amount = to_minor(args.amount)
        except ValueError as e:
            print(f"Error: {e}")
            return 1

    try:
        match = overrides.manual_match(args.transaction_id, args.invoice_id, amount, actor_id=args.actor)
    except PaymentMatchError as e:
        print(f"Error: {e}")
        return 1

    print(f"Matched {from_minor(match.amount):,.2f} of {match.transaction_id} to {match.invoice_id}")
    print(f"  Match id: {match.id}")
    repo.close()
    return 0


def cmd_unmatch(args: argparse.Namespace) -> int:
    """Remove a match."""
    config = _get_config()
    repo = _get_repo()
    _, overrides = _build_services(config, repo)

    if overrides.unmatch(args.match_id, actor_id=args.actor):
        print(f"Removed match {args.match_id}")
    else:
        print(f"Match {args.match_id} not found (already removed?)")

    repo.close()
    return 0


def cmd_load_invoices(args: argparse.Namespace) -> int:
    """Load open invoices from a YAML file into the local invoice table."""
    from paymatch.errors import ValidationError
    from paymatch.invoices import load_invoices

    filepath: Path = args.file
    if not filepath.exists():
        print(f"File not found: {filepath}")
        return 1

    repo = _get_repo()
    try:
        count = load_invoices(repo, filepath)
    except ValidationError as e:
        print(f"Error: {e}")
        return 1

    print(f"Loaded {count} invoice(s) from {filepath.name}")
    repo.close()
    return 0


_COMMANDS = {
    "serve": cmd_serve,
    "watch": cmd_watch,
    "process-email": cmd_process_email,
    "reprocess": cmd_reprocess,
    "status": cmd_status,
    "review": cmd_review,
    "match": cmd_match,
    "unmatch": cmd_unmatch,
    "load-invoices": cmd_load_invoices,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="paymatch",
        description="Bank payment e-mail matching engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_p = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8080)

    # watch
    subparsers.add_parser("watch", help="Watch the mail drop folder")

    # process-email
    proc_p = subparsers.add_parser("process-email", help="Process one email body from a file")
    proc_p.add_argument("file", type=Path, help="File holding the email text")
    proc_p.add_argument("--account", required=True, help="Bank account ID")
    proc_p.add_argument("--subject", help="Email subject")

    # reprocess
    rep_p = subparsers.add_parser("reprocess", help="Re-run failed deliveries")
    rep_p.add_argument("message_id", nargs="?", help="Message ID (default: all failed)")

    # status
    subparsers.add_parser("status", help="Show match statistics")

    # review
    review_p = subparsers.add_parser("review", help="List suggestions pending review")
    review_p.add_argument("--limit", type=int, default=50)

    # match
    match_p = subparsers.add_parser("match", help="Manually match a transaction to an invoice")
    match_p.add_argument("transaction_id", help="Transaction ID")
    match_p.add_argument("invoice_id", help="Invoice ID")
    match_p.add_argument("--amount", help="Amount to apply, in major units (default: all that fits)")
    match_p.add_argument("--actor", default="cli", help="Who is matching")

    # unmatch
    unmatch_p = subparsers.add_parser("unmatch", help="Remove a match")
    unmatch_p.add_argument("match_id", help="Match ID")
    unmatch_p.add_argument("--actor", default="cli", help="Who is unmatching")

    # load-invoices
    inv_p = subparsers.add_parser("load-invoices", help="Load open invoices from YAML")
    inv_p.add_argument("file", type=Path, help="YAML file with an invoices: list")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Feed CLI - List, Add and Delete Transactions

Each command runs one short-lived feed engine against the configured API.
"""

import asyncio
from datetime import date, datetime

import click

from ..api.client import HttpTransactionRemote
from ..core.config import Config
from ..core.dates import group_by_date
from ..core.errors import FeedError, ValidationRejected
from ..core.models import FeedFilters, Fingerprint, Transaction, TransactionDraft, TransactionKind
from ..core.money import Money
from ..feed.engine import FeedSnapshot, TransactionFeed
from ..feed.invalidation import InvalidationBus
from ..feed.mutations import CreateMutation, DeleteMutation, Mutation, MutationOutcome, MutationStatus
from ..feed.remote import TransactionRemote


def build_remote(config: Config) -> TransactionRemote:
    """Remote used by the feed commands."""
    return HttpTransactionRemote.from_config(config)


def _parse_date(value: str | None, option: str) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.ClickException(f"Invalid {option} date: {value}. Use YYYY-MM-DD")


def _open_feed(config: Config) -> TransactionFeed:
    # A private bus: one-shot commands never share invalidations
    return TransactionFeed(build_remote(config), config=config.feed, bus=InvalidationBus())


def _format_row(transaction: Transaction) -> str:
    sign = "-" if transaction.kind is TransactionKind.EXPENSE else "+"
    label = transaction.category.name if transaction.category else transaction.category_id
    text = transaction.description or transaction.source or ""
    pending = " (pending)" if transaction.is_provisional else ""
    return f"  {sign}{str(transaction.amount):>14}  {label:<16}  {text}  [{transaction.id}]{pending}"


async def _load(config: Config, fingerprint: Fingerprint, pages: int) -> FeedSnapshot:
    feed = _open_feed(config)
    try:
        await feed.refresh(fingerprint)
        for _ in range(pages - 1):
            if not feed.pager.has_more(fingerprint):
                break
            await feed.load_more(fingerprint)
        return feed.snapshot(fingerprint)
    finally:
        await feed.aclose()


async def _mutate(config: Config, mutation: Mutation) -> MutationOutcome:
    feed = _open_feed(config)
    try:
        return await feed.mutate(mutation)
    finally:
        await feed.aclose()


@click.command(name="list")
@click.option("--type", "kind", type=click.Choice(["all", "expense", "income"]), default="all")
@click.option("--search", help="Text to search for")
@click.option("--start", "start_date", help="Earliest date (YYYY-MM-DD)")
@click.option("--end", "end_date", help="Latest date (YYYY-MM-DD)")
@click.option("--category", "category_id", help="Only this category id")
@click.option("--pages", default=1, type=click.IntRange(min=1), help="Number of pages to load")
@click.pass_context
def list_transactions(
    ctx: click.Context,
    kind: str,
    search: str | None,
    start_date: str | None,
    end_date: str | None,
    category_id: str | None,
    pages: int,
) -> None:
    """
    List the transaction feed grouped by day.

    Examples:
      txfeed list
      txfeed list --type expense --search groceries --pages 3
    """
    config = ctx.obj["config"]
    filters = FeedFilters.create(
        kind=kind,
        start_date=_parse_date(start_date, "start"),
        end_date=_parse_date(end_date, "end"),
        search=search,
        category_id=category_id,
    )
    fingerprint = Fingerprint(filters=filters)

    try:
        snapshot = asyncio.run(_load(config, fingerprint, pages))
    except FeedError as e:
        raise click.ClickException(f"Could not load transactions: {e}")

    if ctx.obj.get("verbose", False):
        click.echo(f"Feed: {fingerprint}")

    items = snapshot.items
    if not items:
        click.echo("No transactions found.")
        return

    for label, transactions in group_by_date(items).items():
        click.echo(label)
        for transaction in transactions:
            click.echo(_format_row(transaction))

    total = snapshot.total if snapshot.total is not None else len(items)
    more = " (more available)" if snapshot.has_more else ""
    click.echo(f"\nShowing {len(items)} of {total} transaction(s){more}")


@click.command()
@click.option("--type", "kind", type=click.Choice(["expense", "income"]), default="expense")
@click.option("--amount", required=True, help="Amount, e.g. 1250.50")
@click.option("--category", "category_id", required=True, help="Category id")
@click.option("--date", "date_str", help="Transaction date (YYYY-MM-DD, default: today)")
@click.option("--description", help="Description")
@click.option("--source", help="Income source (required for income)")
@click.option("--payment-method", help="Payment method (default: cash / bank_transfer)")
@click.pass_context
def add(
    ctx: click.Context,
    kind: str,
    amount: str,
    category_id: str,
    date_str: str | None,
    description: str | None,
    source: str | None,
    payment_method: str | None,
) -> None:
    """
    Add an expense or income.

    Examples:
      txfeed add --amount 4500 --category cat-food --description "Lunch"
      txfeed add --type income --amount 250000 --category cat-salary --source Employer
    """
    config = ctx.obj["config"]
    try:
        money = Money.from_decimal(amount)
    except ValueError as e:
        raise click.ClickException(str(e))

    draft = TransactionDraft(
        kind=TransactionKind(kind),
        amount=money,
        category_id=category_id,
        date=_parse_date(date_str, "transaction") or date.today(),
        description=description,
        source=source,
        payment_method=payment_method,
    )

    try:
        outcome = asyncio.run(_mutate(config, CreateMutation(draft)))
    except ValidationRejected as e:
        raise click.ClickException(e.message)
    except FeedError as e:
        raise click.ClickException(f"Could not add transaction: {e}")

    created = outcome.transaction
    click.echo(f"Added {kind} {money} [{created.id if created else outcome.target_id}]")


@click.command()
@click.argument("transaction_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, transaction_id: str, yes: bool) -> None:
    """
    Delete a transaction by id.

    Example:
      txfeed delete 64f1c0ffee
    """
    config = ctx.obj["config"]
    if not yes:
        click.confirm(f"Delete transaction {transaction_id}?", abort=True)

    try:
        outcome = asyncio.run(_mutate(config, DeleteMutation(transaction_id)))
    except FeedError as e:
        raise click.ClickException(f"Could not delete transaction: {e}")

    if outcome.status is MutationStatus.COMMITTED:
        click.echo(f"Deleted {transaction_id}")
    else:
        click.echo(f"Nothing to delete for {transaction_id}")

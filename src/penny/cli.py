import shutil
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from penny import db
from penny.db import get_connection, init_db
from penny.errors import PennyError
from penny.logging_setup import configure_logging
from penny.settings import DEFAULTS, get_data_dir, load_settings, save_settings

app = typer.Typer(help="Penny: bank-export import, check reconciliation and subscription detection.", invoke_without_command=True)

console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Penny: bank-export import, check reconciliation and subscription detection."""
    configure_logging("DEBUG" if verbose else None)


def get_db_path() -> Path:
    return get_data_dir() / "penny.db"


def _abort(message: str, hint: str | None = None) -> None:
    console.print(f"[red]{message}[/red]")
    if hint:
        console.print(hint)
    raise typer.Exit(1)


def _load_settings() -> dict:
    try:
        return load_settings()
    except PennyError as e:
        _abort(str(e), e.remediation)


def _split_headers(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [h.strip() for h in value.split(",")]


@contextmanager
def open_db():
    """Connection for one command; PennyError becomes a red message and exit code 1."""
    settings = _load_settings()
    conn = get_connection(get_db_path(), timeout=float(settings["classifier_timeout"]))
    try:
        yield conn
    except PennyError as e:
        _abort(str(e), e.remediation)
    finally:
        conn.close()


def _money(amount) -> str:
    color = "red" if amount < 0 else "green"
    return f"[{color}]${abs(amount):,.2f}[/{color}]"


def _require_account_id(conn, name: str | None) -> int | None:
    if name is None:
        return None
    account = db.get_account_by_name(conn, name)
    if account is None:
        raise PennyError(f"Unknown account: {name}")
    return account.id


@app.command()
def init(
    data_dir: str = typer.Option(None, "--data-dir", help="Path for Penny data (default: ~/Documents/penny)"),
):
    """Set up Penny: choose a data directory and initialize the database."""
    settings = _load_settings()

    if data_dir:
        settings["data_dir"] = str(Path(data_dir).expanduser().resolve())
    elif settings == DEFAULTS:
        chosen = typer.prompt("Data directory", default=settings["data_dir"])
        settings["data_dir"] = str(Path(chosen).expanduser().resolve())

    save_settings(settings)

    resolved = Path(settings["data_dir"])
    resolved.mkdir(parents=True, exist_ok=True)
    (resolved / "imports").mkdir(exist_ok=True)

    conn = get_connection(resolved / "penny.db")
    init_db(conn)
    conn.close()

    typer.echo(f"Initialized penny at {resolved}")


# --- Accounts ---

accounts_app = typer.Typer(help="Manage accounts.")
app.add_typer(accounts_app, name="accounts")


@accounts_app.command("add")
def accounts_add(
    name: str = typer.Argument(help="Account name, e.g. 'Chase Checking'"),
    type: str = typer.Option(help="Account type: checking, savings, credit_card, line_of_credit, other"),
    institution: str = typer.Option(None, help="Institution name"),
    last_four: str = typer.Option(None, help="Last 4 digits of account number"),
):
    """Add a new account."""
    with open_db() as conn:
        if db.get_account_by_name(conn, name) is not None:
            raise PennyError(f"Account already exists: {name}")
        db.add_account(conn, name, type, institution, last_four)
    typer.echo(f"Added account: {name}")


@accounts_app.command("list")
def accounts_list():
    """List all accounts."""
    with open_db() as conn:
        accounts = db.list_accounts(conn)
        counts = {a.id: db.count_transactions(conn, a.id) for a in accounts}

    table = Table(title="Accounts")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Institution")
    table.add_column("Last Four")
    table.add_column("Transactions", justify="right")
    for a in accounts:
        table.add_row(str(a.id), a.name, a.account_type, a.institution or "", a.last_four or "", str(counts[a.id]))
    console.print(table)


# --- Preview ---

from penny.mapping import suggest_mapping
from penny.parsers import parse_file


@app.command()
def preview(
    file: Path = typer.Argument(help="Bank export to inspect"),
    skip_rows: int = typer.Option(0, help="Preamble lines before the header row"),
    no_header: bool = typer.Option(False, "--no-header", help="File has no header row"),
    headers: str = typer.Option(None, help="Comma-separated column names to use instead of the header row"),
):
    """Show a file's detected type, columns, first rows and a suggested mapping."""
    try:
        parsed = parse_file(
            file, has_header_row=not no_header, skip_rows=skip_rows, headers=_split_headers(headers),
        )
    except OSError as e:
        _abort(f"Cannot read {file}: {e}")
    except PennyError as e:
        _abort(str(e), e.remediation)

    typer.echo(f"File type: {parsed.file_type}  Rows: {len(parsed.rows)}")
    for warning in parsed.warnings:
        typer.echo(warning)

    table = Table(title=file.name)
    for header in parsed.headers:
        table.add_column(header)
    for row in parsed.rows[:5]:
        table.add_row(*[row.get(h) for h in parsed.headers])
    console.print(table)

    if parsed.identity_mapping:
        typer.echo("Columns are defined by the file format; no mapping needed.")
        return
    suggestion = suggest_mapping(parsed.headers, parsed.rows[:5])
    if suggestion.is_empty():
        typer.echo("No mapping suggestion; use --map HEADER=FIELD when importing.")
        return
    typer.echo("Suggested mapping:")
    for header, target in suggestion.fields.items():
        typer.echo(f"  --map \"{header}={target}\"")


# --- Import ---

from penny.classifier import build_classifier
from penny.importer import import_file


@app.command("import")
def import_cmd(
    file: Path = typer.Argument(help="Path to a CSV, OFX, QFX or QBO export"),
    account: str = typer.Option(help="Account name to import into"),
    map: list[str] = typer.Option(None, "--map", help="Column mapping as HEADER=FIELD; repeatable"),
    date_format: str = typer.Option(None, help="Date format, e.g. %d/%m/%Y or DD/MM/YYYY"),
    profile: str = typer.Option(None, help="Use a saved import profile"),
    save_profile: str = typer.Option(None, help="Save the mapping used as a named profile"),
    skip_rows: int = typer.Option(0, help="Preamble lines before the header row"),
    no_header: bool = typer.Option(False, "--no-header", help="File has no header row"),
    headers: str = typer.Option(None, help="Comma-separated column names to use instead of the header row"),
    no_ai: bool = typer.Option(False, "--no-ai", help="Do not call the classifier"),
):
    """Import a bank export into an account, skipping transactions already recorded."""
    settings = _load_settings()
    classifier = None if no_ai else build_classifier(settings)

    with open_db() as conn:
        session = import_file(
            conn, file, account,
            classifier=classifier,
            mapping_overrides=map or None,
            date_format=date_format,
            profile_name=profile,
            save_profile_as=save_profile,
            has_header_row=not no_header,
            skip_rows=skip_rows,
            headers=_split_headers(headers),
            settings=settings,
        )

    if session.status == "failed":
        _abort(f"Import failed: {session.error_message}")

    typer.echo(
        f"{session.transactions_created} imported, {session.duplicates_skipped} skipped (duplicates), "
        f"{session.errors_count} errors"
    )
    for err in session.row_errors[:10]:
        typer.echo(f"  row {err.row_index}: {err.message}")
    if len(session.row_errors) > 10:
        typer.echo(f"  ... and {len(session.row_errors) - 10} more")

    dest = get_data_dir() / "imports" / file.name
    if dest.parent.is_dir() and not dest.exists():
        shutil.copy2(file, dest)


# --- Profiles ---

profiles_app = typer.Typer(help="Manage saved column mappings.")
app.add_typer(profiles_app, name="profiles")


@profiles_app.command("list")
def profiles_list():
    """List saved import profiles."""
    with open_db() as conn:
        profiles = db.list_profiles(conn)

    table = Table(title="Import Profiles")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("File Type")
    table.add_column("Mapping")
    table.add_column("Date Format")
    for p in profiles:
        mapping = ", ".join(f"{h}={f}" for h, f in p.column_mapping.items())
        table.add_row(str(p.id), p.name, p.file_type, mapping, p.date_format or "")
    console.print(table)


@profiles_app.command("delete")
def profiles_delete(name: str = typer.Argument(help="Profile name")):
    """Delete a saved import profile."""
    with open_db() as conn:
        if not db.delete_profile(conn, name):
            raise PennyError(f"Unknown import profile: {name}")
    typer.echo(f"Deleted profile: {name}")


# --- Sessions ---

sessions_app = typer.Typer(help="Import history.")
app.add_typer(sessions_app, name="sessions")


@sessions_app.command("list")
def sessions_list(limit: int = typer.Option(20, help="How many sessions to show")):
    """List recent import sessions."""
    with open_db() as conn:
        sessions = db.list_sessions(conn, limit=limit)

    table = Table(title="Import Sessions")
    table.add_column("ID", style="dim")
    table.add_column("File")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Message")
    for s in sessions:
        status = f"[red]{s.status}[/red]" if s.status == "failed" else s.status
        table.add_row(
            str(s.id), s.file_name, s.file_type, status, str(s.total_rows),
            str(s.transactions_created), str(s.duplicates_skipped), str(s.errors_count),
            s.error_message or "",
        )
    console.print(table)


# --- Checks ---

from penny import reconciler
from penny.normalizer import parse_amount

checks_app = typer.Typer(help="Check register and reconciliation.")
app.add_typer(checks_app, name="checks")


@checks_app.command("add")
def checks_add(
    number: str = typer.Argument(help="Check number"),
    account: str = typer.Option(help="Account the check was drawn on"),
    payee: str = typer.Option(help="Who the check was written to"),
    amount: str = typer.Option(help="Check amount"),
    written: str = typer.Option(None, help="Date written: YYYY-MM-DD (default: today)"),
    memo: str = typer.Option(None, help="Memo line"),
):
    """Record a written check."""
    with open_db() as conn:
        try:
            date_written = date.fromisoformat(written) if written else date.today()
        except ValueError:
            raise PennyError(f"Invalid date: {written}") from None
        check = reconciler.add_check(
            conn, account, number, payee, abs(parse_amount(amount)), date_written, memo,
        )
    typer.echo(f"Added check #{check.check_number} ({check.id}) to {payee} for ${check.amount:,.2f}")


@checks_app.command("list")
def checks_list(
    status: str = typer.Option(None, help="Filter: pending, cleared, void"),
    account: str = typer.Option(None, help="Filter by account name"),
):
    """List checks."""
    with open_db() as conn:
        checks = db.list_checks(conn, status=status, account_id=_require_account_id(conn, account))

    table = Table(title="Checks")
    table.add_column("ID", style="dim")
    table.add_column("Number")
    table.add_column("Payee")
    table.add_column("Amount", justify="right")
    table.add_column("Written")
    table.add_column("Status")
    table.add_column("Transaction", justify="right")
    for c in checks:
        table.add_row(
            str(c.id), c.check_number, c.payee, f"${c.amount:,.2f}", c.date_written.isoformat(),
            c.status, str(c.matched_transaction_id or ""),
        )
    console.print(table)


@checks_app.command("candidates")
def checks_candidates(check_id: int = typer.Argument(help="Check ID")):
    """Show transactions that could have cleared a check."""
    with open_db() as conn:
        candidates = reconciler.candidates_for(conn, check_id)

    if not candidates:
        typer.echo("No matching transactions.")
        return
    table = Table(title=f"Candidates for check {check_id}")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Check #")
    table.add_column("Amount", justify="right")
    for t in candidates:
        table.add_row(str(t.id), t.date.isoformat(), t.description, t.check_number or "", _money(t.amount))
    console.print(table)


@checks_app.command("match")
def checks_match(
    check_id: int = typer.Argument(help="Check ID"),
    transaction_id: int = typer.Argument(help="Transaction ID"),
):
    """Mark a check cleared by a transaction."""
    with open_db() as conn:
        check = reconciler.match(conn, check_id, transaction_id)
    typer.echo(f"Check #{check.check_number} cleared by transaction {transaction_id}")


@checks_app.command("void")
def checks_void(check_id: int = typer.Argument(help="Check ID")):
    """Void a check that has not cleared."""
    with open_db() as conn:
        check = reconciler.void_check(conn, check_id)
    typer.echo(f"Voided check #{check.check_number}")


@checks_app.command("auto-match")
def checks_auto_match(account: str = typer.Option(None, help="Only checks on this account")):
    """Clear every pending check that has exactly one candidate transaction."""
    with open_db() as conn:
        result = reconciler.auto_match(conn, _require_account_id(conn, account))

    for check, txn_id in result["matched"]:
        typer.echo(f"Matched check #{check.check_number} -> transaction {txn_id}")
    for check in result["ambiguous"]:
        typer.echo(f"Check #{check.check_number} has several candidates; match it by hand")
    typer.echo(
        f"{len(result['matched'])} matched, {len(result['ambiguous'])} ambiguous, "
        f"{len(result['unmatched'])} unmatched"
    )


# --- Subscriptions ---

from penny import recurring

subscriptions_app = typer.Typer(help="Recurring charge detection.")
app.add_typer(subscriptions_app, name="subscriptions")


@subscriptions_app.command("detect")
def subscriptions_detect(
    account: str = typer.Option(None, help="Only look at this account"),
    save: bool = typer.Option(False, "--save", help="Track detected subscriptions"),
    no_ai: bool = typer.Option(False, "--no-ai", help="Do not call the classifier"),
):
    """Detect recurring charges in transaction history."""
    settings = _load_settings()
    classifier = None if no_ai else build_classifier(settings)

    with open_db() as conn:
        account_id = _require_account_id(conn, account)
        result = recurring.detect(db.list_transactions(conn, account_id=account_id), classifier)
        saved = recurring.save_subscriptions(conn, result.subscriptions, account_id) if save else 0

    if result.subscriptions:
        table = Table(title="Subscriptions")
        table.add_column("Merchant")
        table.add_column("Amount", justify="right")
        table.add_column("Frequency")
        table.add_column("Monthly", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Essential")
        table.add_column("Last Charged")
        for s in result.subscriptions:
            table.add_row(
                s.merchant_name, f"${s.amount:,.2f}", s.frequency, f"${s.monthly_equivalent:,.2f}",
                f"{s.confidence:.0%}", "yes" if s.is_essential else "", s.last_date.isoformat(),
            )
        console.print(table)
    typer.echo(result.summary)
    if save:
        typer.echo(f"{saved} saved")


@subscriptions_app.command("list")
def subscriptions_list():
    """List tracked recurring charges."""
    with open_db() as conn:
        rows = db.list_recurring(conn)

    table = Table(title="Tracked Recurring Charges")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Amount", justify="right")
    table.add_column("Frequency")
    table.add_column("Next Expected")
    for r in rows:
        table.add_row(str(r["id"]), r["name"], f"${Decimal(r['amount']):,.2f}", r["frequency"], r["next_expected_date"] or "")
    console.print(table)


if __name__ == "__main__":
    app()

"""CLI for ProofPay - wallet identities and payment requests from the terminal."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from proofpay.errors import ProofPayError

app = typer.Typer(
    name="proofpay",
    help="Prove which wallets are yours and get paid on-chain.",
    no_args_is_help=True,
)
console = Console()

_base_path: Optional[Path] = None
_selected_address: Optional[str] = None
_verbose: bool = False


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"proofpay {version('proofpay')}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False, rich_tracebacks=True))
    root.setLevel("DEBUG" if _verbose else level)


@app.callback()
def main(
    home: Path = typer.Option(
        None,
        "--home",
        "-H",
        help="Directory containing the .proofpay data folder",
    ),
    as_address: str = typer.Option(
        None,
        "--as",
        help="Wallet address to connect with",
        envvar="PROOFPAY_ADDRESS",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Prove which wallets are yours and get paid on-chain."""
    global _base_path, _selected_address, _verbose
    _base_path = home
    _selected_address = as_address
    _verbose = verbose
    _setup_logging("WARNING")


def _run(coro):
    """Run an async function synchronously, turning domain errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except ProofPayError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# Wallet provider and app helpers
# ------------------------------------------------------------------

def _home_dir() -> Path:
    from proofpay.config import get_home_dir
    return get_home_dir(_base_path, create=False)


def _make_provider(preselect: Optional[str] = None):
    """Keystore provider whose account picker is a terminal prompt.

    *preselect* answers the first connect request only; later requests (a
    switch, a recovery) always ask.
    """
    from proofpay.wallet.addresses import shorten
    from proofpay.wallet.connector import KeystoreWalletProvider

    pending = [preselect.lower()] if preselect else []

    async def select_account(addresses: list[str]) -> Optional[str]:
        if pending:
            return pending.pop()
        console.print("\n[bold]Select wallet[/bold]")
        for i, addr in enumerate(addresses, 1):
            console.print(f"  [cyan][{i}][/cyan] {addr}")
        choice = console.input("Choose wallet (Enter to cancel): ").strip()
        if not choice:
            return None
        if choice.isdigit() and 1 <= int(choice) <= len(addresses):
            return addresses[int(choice) - 1]
        return choice

    async def get_password(address: str) -> Optional[str]:
        value = console.input(f"[bold]Password for {shorten(address)}: [/bold]", password=True)
        return value or None

    return KeystoreWalletProvider(_home_dir() / "wallet", select_account, get_password)


async def _confirm_retry(expected: str, actual: Optional[str]) -> bool:
    console.print(
        f"[yellow]Wallet connected {actual}, but {expected} was requested.[/yellow]"
    )
    return typer.confirm("Pick again?", default=True)


@asynccontextmanager
async def _open(connect: bool = True, on_mismatch=None):
    from proofpay.core.app import ProofPay

    pp = await ProofPay.load(
        _base_path,
        provider=_make_provider(_selected_address),
        on_mismatch=on_mismatch,
    )
    _setup_logging(pp.config.logging.level)
    try:
        if connect:
            await pp.connect()
        yield pp
    finally:
        await pp.shutdown()


def _status_style(status: str) -> str:
    return {
        "pending": "yellow",
        "paid": "green",
        "unpaid": "yellow",
        "signed": "green",
        "expired": "dim",
        "cancelled": "red",
        "mismatch": "red",
        "unverifiable": "red",
    }.get(status, "white")


# ------------------------------------------------------------------
# init
# ------------------------------------------------------------------

@app.command()
def init(
    name: str = typer.Option("ProofPay", "--name", "-n", help="Display name"),
    base_url: str = typer.Option(None, "--base-url", "-b", help="Origin used for shareable payment links"),
):
    """Initialize ProofPay data in the current directory."""
    from proofpay.config import save_config
    from proofpay.core.app import ProofPay

    async def _init():
        pp = await ProofPay.init(_base_path, name=name, provider=_make_provider())
        if base_url:
            pp.config.base_url = base_url.rstrip("/")
            save_config(pp.config, pp.home_dir / "config.yaml")
        home = pp.home_dir
        await pp.shutdown()
        return home

    home = _run(_init())
    console.print(Panel(
        f"[bold green]ProofPay initialized![/bold green]\n\n"
        f"Directory: {home}\n"
        f"Config: {home / 'config.yaml'}\n\n"
        f"Next steps:\n"
        f"  proofpay wallet create\n"
        f"  proofpay wallet whoami\n"
        f"  proofpay request create 10 --chain base",
        title="ProofPay",
    ))


# ------------------------------------------------------------------
# wallet sub-commands
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Manage wallets and the identity they belong to.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create(
    import_key: bool = typer.Option(False, "--import-key", help="Import an existing private key"),
):
    """Generate a new wallet with an encrypted keystore."""
    from proofpay.wallet.connector import create_keystore

    private_key = None
    if import_key:
        private_key = console.input("[bold]Private key (0x...): [/bold]", password=True).strip()
    password = console.input("[bold]Keystore password: [/bold]", password=True)
    if password != console.input("[bold]Repeat password: [/bold]", password=True):
        console.print("[red]The passwords differ.[/red]")
        raise typer.Exit(1)

    try:
        addr = create_keystore(_home_dir() / "wallet", password, private_key or None)
    except (FileExistsError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Keystore saved[/bold green] for [cyan]{addr}[/cyan]\n\n"
        f"[dim]Connect with it first to make it a primary wallet, or link it\n"
        f"to an existing identity with 'proofpay wallet link'.[/dim]",
        title="Wallet",
    ))


@wallet_app.command("list")
def wallet_list():
    """List local keystores and how each is linked."""
    from proofpay.wallet.connector import list_keystores

    async def _list():
        async with _open(connect=False) as pp:
            rows = []
            for addr in list_keystores(pp.wallet_dir):
                link = await pp.registry.get(addr)
                rows.append((addr, link))
            return rows

    rows = _run(_list())
    if not rows:
        console.print("[dim]No wallets yet.[/dim] Run 'proofpay wallet create' first.")
        return

    table = Table(title="Wallets")
    table.add_column("Address", style="cyan")
    table.add_column("Role")
    table.add_column("Label")
    table.add_column("Primary", style="dim")
    for addr, link in rows:
        if link is None:
            table.add_row(addr, "[dim]unregistered[/dim]", "", "")
        elif link.is_primary:
            table.add_row(addr, "[green]primary[/green]", link.label, "")
        else:
            table.add_row(addr, "sub-wallet", link.label, link.parent_address or "")
    console.print(table)


@wallet_app.command("whoami")
def wallet_whoami():
    """Connect and show the resolved identity."""

    async def _whoami():
        async with _open() as pp:
            links = await pp.registry.list_links(pp.session.primary_address)
            return pp.session.snapshot(), links

    snap, links = _run(_whoami())
    console.print(Panel(
        f"State: [bold]{snap.state}[/bold]\n"
        f"Active: [cyan]{snap.active_address}[/cyan]\n"
        f"Primary: [cyan]{snap.primary_address}[/cyan]",
        title="Identity",
    ))
    if links:
        table = Table(title="Sub-wallets")
        table.add_column("Address", style="cyan")
        table.add_column("Label")
        table.add_column("Linked", style="dim")
        table.add_column("Verified")
        for link in links:
            verified = link.attestation is not None and link.attestation.verified
            table.add_row(
                link.address,
                link.label,
                link.created_at.strftime("%Y-%m-%d %H:%M"),
                "[green]yes[/green]" if verified else "[red]no[/red]",
            )
        console.print(table)


@wallet_app.command("link")
def wallet_link(
    address: str = typer.Argument(help="Sub-wallet address to link"),
    label: str = typer.Option("", "--label", "-l", help="Display label"),
):
    """Link another wallet to your identity by signing with it."""

    async def _link():
        async with _open() as pp:
            signer = _make_provider(address)
            console.print(
                f"[dim]Linking {address} to {pp.session.primary_address}. "
                f"The sub-wallet must sign the ownership message.[/dim]"
            )
            return await pp.linker.link_sub_wallet(address, signer, label)

    link = _run(_link())
    console.print(f"[green]Linked[/green] {link.address} ({link.label}) to {link.parent_address}")


@wallet_app.command("unlink")
def wallet_unlink(address: str = typer.Argument(help="Sub-wallet address to remove")):
    """Remove a sub-wallet from your identity."""

    async def _unlink():
        async with _open() as pp:
            return await pp.linker.unlink(address)

    if _run(_unlink()):
        console.print(f"[green]Unlinked[/green] {address}")
    else:
        console.print(f"[dim]{address} was not linked.[/dim]")


@wallet_app.command("label")
def wallet_label(
    address: str = typer.Argument(help="Wallet of your identity"),
    label: str = typer.Argument(help="New display label"),
):
    """Rename a wallet of your identity."""

    async def _label():
        async with _open() as pp:
            if not pp.session.owns(address):
                console.print(f"[red]{address} is not part of your identity.[/red]")
                raise typer.Exit(1)
            return await pp.registry.set_label(address, label)

    if _run(_label()):
        console.print(f"[green]Renamed[/green] {address} to '{label.strip()}'")


@wallet_app.command("balance")
def wallet_balance(
    chain: str = typer.Option("ethereum", "--chain", "-c", help="Chain name or id"),
    token: str = typer.Option(None, "--token", "-t", help="ERC-20 token address (native currency if omitted)"),
):
    """Show the balance of every wallet of your identity."""
    from proofpay.wallet.addresses import NATIVE_TOKEN
    from proofpay.wallet.units import format_units

    async def _balances():
        async with _open() as pp:
            chain_info = pp.config.resolve_chain(int(chain) if chain.isdigit() else _chain_id(chain))
            token_address = token or NATIVE_TOKEN
            decimals = await pp.chain_data.get_token_decimals(chain_info.chain_id, token_address)
            rows = []
            for addr in sorted(pp.session.identity_addresses):
                raw = await pp.chain_data.get_balance(chain_info.chain_id, token_address, addr)
                rows.append((addr, format_units(raw, decimals)))
            return chain_info, rows

    try:
        chain_info, rows = _run(_balances())
    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Balances on {chain_info.name}")
    table.add_column("Wallet", style="cyan")
    table.add_column(token or chain_info.native_symbol, justify="right")
    for addr, amount in rows:
        table.add_row(addr, amount)
    console.print(table)


def _chain_id(name: str) -> int:
    from proofpay.wallet.chains import get_chain
    return get_chain(name).chain_id


@wallet_app.command("switch")
def wallet_switch(address: str = typer.Argument(help="Wallet of your identity to make active")):
    """Switch the active wallet through the wallet provider."""

    async def _switch():
        async with _open(on_mismatch=_confirm_retry) as pp:
            result = await pp.coordinator.switch_to(address)
            return result, pp.session.snapshot()

    result, snap = _run(_switch())
    if result.committed:
        console.print(f"[green]Active wallet:[/green] [cyan]{snap.active_address}[/cyan]")
        return

    console.print(f"[red]Switch failed ({result.reason}):[/red] {result.error}")
    if result.recovery_error:
        console.print(f"[yellow]Recovery failed:[/yellow] {result.recovery_error}")
    console.print(f"Active wallet: [cyan]{snap.active_address or 'none'}[/cyan]")
    raise typer.Exit(1)


@wallet_app.command("reset")
def wallet_reset():
    """Forget the primary wallet and all of its sub-wallets."""

    async def _reset():
        async with _open() as pp:
            primary = pp.session.primary_address
            typer.confirm(f"Remove identity {primary} and all linked wallets?", abort=True)
            return primary, await pp.linker.reset_identity()

    primary, removed = _run(_reset())
    console.print(f"[green]Identity {primary} reset[/green] ({removed} wallet records removed)")


# ------------------------------------------------------------------
# request sub-commands
# ------------------------------------------------------------------

request_app = typer.Typer(
    name="request",
    help="Create and track payment requests.",
    no_args_is_help=True,
)
app.add_typer(request_app, name="request")


@request_app.command("create")
def request_create(
    amount: str = typer.Argument(help="Amount as a decimal, e.g. 10.5"),
    chain: str = typer.Option("ethereum", "--chain", "-c", help="Chain name or id"),
    token: str = typer.Option(None, "--token", "-t", help="ERC-20 token address (native currency if omitted)"),
    symbol: str = typer.Option("", "--symbol", "-s", help="Token symbol for display"),
    expires_in: float = typer.Option(168.0, "--expires-in", "-e", help="Hours until the request expires"),
    customer: str = typer.Option("", "--customer", help="Customer name"),
    description: str = typer.Option("", "--description", "-d", help="What the payment is for"),
    tags: List[str] = typer.Option([], "--tag", help="Tag (repeatable)"),
    notes: str = typer.Option("", "--notes", help="Additional notes"),
):
    """Create a payment request to your active wallet."""
    from proofpay.storage.models import PaymentRequestDraft, utcnow
    from proofpay.wallet.addresses import NATIVE_TOKEN
    from proofpay.wallet.chains import get_chain

    try:
        chain_info = get_chain(int(chain) if chain.isdigit() else chain)
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    async def _create():
        async with _open() as pp:
            draft = PaymentRequestDraft(
                requester_address=pp.session.active_address,
                chain_id=chain_info.chain_id,
                amount=amount,
                expires_at=utcnow() + timedelta(hours=expires_in),
                token_address=token or NATIVE_TOKEN,
                token_symbol=symbol,
                customer_name=customer,
                description=description,
                tags=tags,
                additional_notes=notes,
            )
            return await pp.create_request(draft)

    req = _run(_create())
    console.print(Panel(
        f"[bold green]Payment request created![/bold green]\n\n"
        f"ID: [cyan]{req.id}[/cyan]\n"
        f"Amount: {req.amount} {req.token_symbol or req.token_address}\n"
        f"Pay to: {req.requester_address} on {chain_info.name}\n"
        f"Expires: {req.expires_at.strftime('%Y-%m-%d %H:%M UTC')}\n\n"
        f"Link: [link={req.payment_link}]{req.payment_link}[/link]",
        title="Payment Request",
    ))


@request_app.command("list")
def request_list(
    status: str = typer.Option(None, "--status", "-s", help="Filter by status (pending, paid, cancelled, expired)"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List payment requests of your identity."""
    from proofpay.storage.models import PaymentStatus

    async def _list():
        async with _open() as pp:
            return await pp.requests.list_requests(
                sorted(pp.session.identity_addresses),
                PaymentStatus(status) if status else None,
                limit,
            )

    try:
        requests = _run(_list())
    except ValueError:
        console.print(f"[red]Unknown status '{status}'.[/red]")
        raise typer.Exit(1)

    if not requests:
        console.print("[dim]No payment requests.[/dim]")
        return

    table = Table(title="Payment Requests")
    table.add_column("ID", style="dim")
    table.add_column("Amount", justify="right")
    table.add_column("Token")
    table.add_column("Chain", style="cyan")
    table.add_column("To", style="dim")
    table.add_column("Status")
    table.add_column("Expires", style="dim")
    for r in requests:
        style = _status_style(r.status.value)
        table.add_row(
            r.id,
            r.amount,
            r.token_symbol or r.token_address,
            str(r.chain_id),
            r.requester_address,
            f"[{style}]{r.status.value}[/{style}]",
            r.expires_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@request_app.command("show")
def request_show(request_id: str = typer.Argument(help="Payment request ID")):
    """Show one payment request."""
    from proofpay.wallet.chains import explorer_tx_url

    async def _show():
        async with _open(connect=False) as pp:
            return await pp.requests.get(request_id)

    r = _run(_show())
    style = _status_style(r.status.value)
    lines = [
        f"Status: [{style}]{r.status.value}[/{style}]",
        f"Amount: {r.amount} {r.token_symbol or r.token_address}",
        f"Pay to: {r.requester_address} (chain {r.chain_id})",
        f"Created: {r.created_at.strftime('%Y-%m-%d %H:%M UTC')}",
        f"Expires: {r.expires_at.strftime('%Y-%m-%d %H:%M UTC')}",
        f"Link: {r.payment_link}",
    ]
    if r.description:
        lines.append(f"Description: {r.description}")
    if r.settlement_tx_hash:
        lines.append(f"Paid by: {r.payer_address}")
        lines.append(f"Tx: {explorer_tx_url(r.chain_id, r.settlement_tx_hash)}")
    console.print(Panel("\n".join(lines), title=f"Request {r.id}"))


@request_app.command("cancel")
def request_cancel(request_id: str = typer.Argument(help="Payment request ID")):
    """Cancel a pending payment request."""

    async def _cancel():
        async with _open() as pp:
            return await pp.requests.cancel(request_id, pp.session)

    r = _run(_cancel())
    console.print(f"[green]Request {r.id} cancelled.[/green]")


# ------------------------------------------------------------------
# invoice sub-commands
# ------------------------------------------------------------------

invoice_app = typer.Typer(
    name="invoice",
    help="Invoices and signed receipts for payment requests.",
    no_args_is_help=True,
)
app.add_typer(invoice_app, name="invoice")


@invoice_app.command("create")
def invoice_create(
    request_id: str = typer.Argument(help="Pending payment request ID"),
    customer_address: str = typer.Option("", "--customer-address", help="Customer wallet address"),
):
    """Open an invoice for a pending payment request."""

    async def _create():
        async with _open() as pp:
            request = await pp.requests.get(request_id)
            if not pp.session.owns(request.requester_address):
                console.print("[red]That request belongs to another identity.[/red]")
                raise typer.Exit(1)
            return await pp.invoices.create_for_request(request, customer_address=customer_address)

    inv = _run(_create())
    console.print(f"[green]Invoice {inv.document_id}[/green] opened for request {inv.request_id}")


@invoice_app.command("show")
def invoice_show(document_id: str = typer.Argument(help="Document ID, e.g. INV-20240101-001")):
    """Show an invoice and, when paid, the receipt message to sign."""

    async def _show():
        async with _open(connect=False) as pp:
            inv = await pp.invoices.get(document_id)
            return inv, pp.invoices.explorer_url(inv)

    inv, explorer = _run(_show())
    style = _status_style(inv.status.value)
    sig_style = _status_style(inv.signature_status.value)
    lines = [
        f"Status: [{style}]{inv.status.value}[/{style}]",
        f"Amount: {inv.amount} {inv.token_symbol}",
        f"Wallet: {inv.wallet_address}",
        f"Customer: {inv.customer_name or '-'} {inv.customer_address}",
        f"Signature: [{sig_style}]{inv.signature_status.value}[/{sig_style}]",
    ]
    if inv.transaction_hash:
        lines.append(f"From: {inv.from_address}")
        lines.append(f"Tx: {explorer} (block {inv.block_number or '?'})")
    if inv.signed_by:
        lines.append(f"Signed by: {inv.signed_by}")
    console.print(Panel("\n".join(lines), title=inv.document_id))


@invoice_app.command("sign")
def invoice_sign(
    document_id: str = typer.Argument(help="Document ID of a paid invoice"),
    signature: str = typer.Option(None, "--signature", help="Signature produced elsewhere (0x...)"),
):
    """Countersign a paid invoice with the receiving wallet."""
    from proofpay.identity.signature import format_signature

    async def _sign():
        async with _open(connect=signature is None) as pp:
            inv = await pp.invoices.get(document_id)
            sig = signature
            if sig is None:
                message = pp.invoices.receipt_message(inv)
                console.print(Panel(message, title="Receipt message"))
                sig = await pp.provider.sign(message)
            return await pp.invoices.sign(document_id, sig)

    inv = _run(_sign())
    style = _status_style(inv.signature_status.value)
    console.print(
        f"Invoice {inv.document_id}: [{style}]{inv.signature_status.value}[/{style}] "
        f"{format_signature(inv.signature or '')}"
    )
    if inv.signature_status.value != "signed":
        raise typer.Exit(1)


# ------------------------------------------------------------------
# background engine
# ------------------------------------------------------------------

@app.command()
def sweep():
    """Expire overdue payment requests once."""

    async def _sweep():
        async with _open(connect=False) as pp:
            return await pp.sweeper.sweep_once()

    expired = _run(_sweep())
    if expired:
        console.print(f"[green]Expired {len(expired)} request(s):[/green] {', '.join(expired)}")
    else:
        console.print("[dim]Nothing to expire.[/dim]")


@app.command()
def watch():
    """Watch open requests for settlement until interrupted."""
    from proofpay.core.events import DomainEvent

    async def _print_event(event: DomainEvent) -> None:
        details = ", ".join(f"{k}={v}" for k, v in event.payload.items() if v is not None)
        console.print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] [bold]{event.name}[/bold] {details}")

    async def _watch():
        async with _open(connect=False) as pp:
            pp.bus.subscribe_all(_print_event)
            tasks = pp.start_background()
            console.print(
                f"[bold]Watching[/bold] ({len(tasks)} background task(s)). Press Ctrl-C to stop."
            )
            try:
                await asyncio.gather(*tasks)
            except asyncio.CancelledError:
                pass

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")

"""many-nuts CLI - multi-mint Cashu wallet."""

from __future__ import annotations

import asyncio
import datetime
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional

import typer
from dotenv import set_key
from rich.console import Console
from rich.table import Table

from .config import WalletConfig, configure_logging
from .crypto import decode_nsec
from .mint import normalize_mint_url
from .orchestrator import MultiMintWallet
from .relay import RelayPool
from .seed import SeedManager, generate_mnemonic
from .storage import JsonFileStore
from .transport import TransportSelector
from .types import InvalidInputError, StateError, WalletError

app = typer.Typer(
    name="nuts",
    help="many-nuts - multi-mint Cashu wallet CLI",
    rich_markup_mode="markdown",
)
mints_app = typer.Typer(help="Manage the mints this wallet uses")
app.add_typer(mints_app, name="mints")
console = Console()

UnitOption = Annotated[Optional[str], typer.Option("--unit", "-u", help="Currency unit")]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    try:
        config = WalletConfig.from_env()
    except InvalidInputError as e:
        handle_wallet_error(e)
        raise typer.Exit(1) from e
    configure_logging("DEBUG" if verbose else config.log_level)


def _seed(config: WalletConfig) -> SeedManager:
    if config.mnemonic:
        return SeedManager.from_mnemonic(config.mnemonic)
    if config.seed_hex:
        return SeedManager.from_hex(config.seed_hex)
    raise StateError("No wallet seed configured. Run `nuts init` first.")


async def open_wallet(config: WalletConfig | None = None) -> MultiMintWallet:
    """Build the wallet described by the environment."""
    config = config or WalletConfig.from_env()
    return await MultiMintWallet.create(
        _seed(config),
        mint_urls=config.mints,
        store=JsonFileStore(config.store_path),
        transport_factory=TransportSelector(timeout=config.timeout, tor_proxy=config.tor_proxy),
        backup_transport=RelayPool(config.relays) if config.relays else None,
        nostr_privkey=decode_nsec(config.nsec) if config.nsec else None,
        default_unit=config.unit,
    )


def handle_wallet_error(e: WalletError) -> None:
    console.print(f"[red]❌ {e.kind}: {e}[/red]")
    if e.retryable:
        console.print("[dim]This looks temporary; try again shortly.[/dim]")


def _run(action: Callable[[MultiMintWallet], Awaitable[Any]]) -> None:
    async def _runner() -> None:
        wallet = await open_wallet()
        async with wallet:
            await action(wallet)

    try:
        asyncio.run(_runner())
    except WalletError as e:
        handle_wallet_error(e)
        raise typer.Exit(1) from e


async def _pick_mint(wallet: MultiMintWallet, mint_url: str | None) -> str:
    if mint_url:
        return mint_url
    keys = await wallet.list_mints()
    if not keys:
        raise StateError("No mints configured. Add one with `nuts mints add URL`.")
    return keys[0].mint_url


# ───────────────────────── Setup ─────────────────────────────────


@app.command()
def init(
    words: Annotated[int, typer.Option("--words", help="Mnemonic length (12 or 24)")] = 12,
    save: Annotated[
        bool, typer.Option("--save", help="Store the mnemonic in ./.env as WALLET_MNEMONIC")
    ] = False,
) -> None:
    """Generate a new wallet seed phrase."""
    try:
        mnemonic = generate_mnemonic(words)
    except InvalidInputError as e:
        handle_wallet_error(e)
        raise typer.Exit(1) from e

    console.print("[green]✅ New wallet seed:[/green]")
    console.print(f"[bold]{mnemonic}[/bold]")
    console.print("[yellow]Write these words down. They are the only way to recover funds.[/yellow]")
    if save:
        env_file = Path.cwd() / ".env"
        env_file.touch(mode=0o600, exist_ok=True)
        set_key(str(env_file), "WALLET_MNEMONIC", mnemonic)
        console.print(f"[dim]Saved to {env_file}[/dim]")


# ───────────────────────── Mints ─────────────────────────────────


@mints_app.command("add")
def mints_add(
    mint_url: Annotated[str, typer.Argument(help="Mint URL")],
    unit: UnitOption = None,
) -> None:
    """Probe a mint and start using it."""

    async def _add(wallet: MultiMintWallet) -> None:
        key = await wallet.add_mint(mint_url, unit)
        console.print(f"[green]✅ Added {key}[/green]")

    _run(_add)


@mints_app.command("remove")
def mints_remove(
    mint_url: Annotated[str, typer.Argument(help="Mint URL")],
    force: Annotated[bool, typer.Option("--force", help="Drop any remaining balance")] = False,
) -> None:
    """Stop using a mint."""

    async def _remove(wallet: MultiMintWallet) -> None:
        url = normalize_mint_url(mint_url)
        balances = await wallet.get_all_balances()
        remaining = sum(amount for key, amount in balances.items() if key.mint_url == url)
        if remaining and not force:
            raise StateError(f"Mint still holds {remaining}; pass --force to drop it")
        for key in await wallet.remove_mint(mint_url):
            console.print(f"[green]✅ Removed {key}[/green]")

    _run(_remove)


@mints_app.command("list")
def mints_list() -> None:
    """List registered mints."""

    async def _list(wallet: MultiMintWallet) -> None:
        table = Table(title="Mints")
        table.add_column("Mint", style="cyan")
        table.add_column("Unit", style="magenta")
        table.add_column("Name")
        table.add_column("Balance", style="green", justify="right")
        balances = await wallet.get_all_balances()
        for key in await wallet.list_mints():
            info = await wallet.get_mint_info(key.mint_url)
            table.add_row(key.mint_url, key.unit, info.name, str(balances.get(key, 0)))
        console.print(table)

    _run(_list)


# ───────────────────────── Balance & history ─────────────────────────────────


@app.command()
def balance(
    validate: Annotated[
        bool, typer.Option("--validate/--no-validate", help="Check proofs with the mints")
    ] = False,
) -> None:
    """Show balances per mint and unit."""

    async def _balance(wallet: MultiMintWallet) -> None:
        if validate:
            dropped = await wallet.check_proofs_state()
            if dropped:
                console.print(f"[yellow]Dropped {dropped} in spent proofs[/yellow]")
        balances = await wallet.get_all_balances()
        if not balances:
            console.print("[yellow]No balance found[/yellow]")
            return
        table = Table(title="Balances")
        table.add_column("Mint", style="cyan")
        table.add_column("Unit", style="magenta")
        table.add_column("Balance", style="green", justify="right")
        for key, amount in balances.items():
            table.add_row(key.mint_url, key.unit, str(amount))
        console.print(table)
        totals: dict[str, int] = {}
        for key, amount in balances.items():
            totals[key.unit] = totals.get(key.unit, 0) + amount
        for unit, total in totals.items():
            console.print(f"[green]Total: {total} {unit}[/green]")

    _run(_balance)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
) -> None:
    """Show recent transactions."""

    async def _history(wallet: MultiMintWallet) -> None:
        transactions = (await wallet.get_all_transactions())[-limit:]
        if not transactions:
            console.print("[yellow]No transactions yet[/yellow]")
            return
        table = Table(title="History")
        table.add_column("Time")
        table.add_column("Kind", style="cyan")
        table.add_column("Amount", justify="right")
        table.add_column("Fee", justify="right", style="dim")
        table.add_column("Mint")
        table.add_column("Memo", style="dim")
        for tx in transactions:
            when = datetime.datetime.fromtimestamp(tx.timestamp).strftime("%Y-%m-%d %H:%M")
            sign = "+" if tx.direction.value == "incoming" else "-"
            style = "green" if sign == "+" else "red"
            table.add_row(
                when,
                tx.kind.value,
                f"[{style}]{sign}{tx.amount} {tx.unit}[/{style}]",
                str(tx.fee),
                tx.mint_url,
                tx.memo or "",
            )
        console.print(table)

    _run(_history)


# ───────────────────────── Ecash ─────────────────────────────────


@app.command()
def send(
    amount: Annotated[int, typer.Argument(help="Amount to send")],
    mint_url: Annotated[Optional[str], typer.Option("--mint", "-m", help="Mint URL")] = None,
    memo: Annotated[Optional[str], typer.Option("--memo", help="Note for the receiver")] = None,
    unit: UnitOption = None,
    v3: Annotated[bool, typer.Option("--v3", help="Emit a legacy cashuA token")] = False,
) -> None:
    """Create a Cashu token."""

    async def _send(wallet: MultiMintWallet) -> None:
        url = await _pick_mint(wallet, mint_url)
        token = await wallet.send(url, amount, memo=memo, unit=unit, version=3 if v3 else 4)
        console.print(f"[green]✅ Cashu token ({amount}):[/green]")
        console.print(token, soft_wrap=True, no_wrap=True)

    _run(_send)


@app.command()
def receive(token: Annotated[str, typer.Argument(help="Cashu token")]) -> None:
    """Redeem a Cashu token into the wallet."""

    async def _receive(wallet: MultiMintWallet) -> None:
        amount = await wallet.receive(token)
        console.print(f"[green]✅ Received {amount}[/green]")

    _run(_receive)


# ───────────────────────── Lightning ─────────────────────────────────


@app.command()
def invoice(
    amount: Annotated[int, typer.Argument(help="Amount to receive")],
    mint_url: Annotated[Optional[str], typer.Option("--mint", "-m", help="Mint URL")] = None,
    unit: UnitOption = None,
) -> None:
    """Create a Lightning invoice to fund the wallet."""

    async def _invoice(wallet: MultiMintWallet) -> None:
        url = await _pick_mint(wallet, mint_url)
        quote = await wallet.create_mint_quote(url, amount, unit)
        console.print("[green]Pay this invoice:[/green]")
        console.print(quote.request, soft_wrap=True, no_wrap=True)
        console.print(f"[dim]Then run: nuts redeem {quote.id} --mint {url}[/dim]")

    _run(_invoice)


@app.command()
def redeem(
    quote_id: Annotated[str, typer.Argument(help="Mint quote id")],
    mint_url: Annotated[Optional[str], typer.Option("--mint", "-m", help="Mint URL")] = None,
    unit: UnitOption = None,
) -> None:
    """Mint ecash for a paid invoice."""

    async def _redeem(wallet: MultiMintWallet) -> None:
        url = await _pick_mint(wallet, mint_url)
        minted = await wallet.redeem_mint_quote(url, quote_id, unit)
        if minted:
            console.print(f"[green]✅ Minted {minted}[/green]")
        else:
            console.print("[yellow]Quote was already redeemed[/yellow]")

    _run(_redeem)


@app.command()
def pay(
    bolt11: Annotated[str, typer.Argument(help="Lightning invoice")],
    mint_url: Annotated[Optional[str], typer.Option("--mint", "-m", help="Mint URL")] = None,
    max_fee: Annotated[Optional[int], typer.Option("--max-fee", help="Fee ceiling")] = None,
    unit: UnitOption = None,
) -> None:
    """Pay a Lightning invoice."""

    async def _pay(wallet: MultiMintWallet) -> None:
        decoded = wallet.decode_invoice(bolt11)
        console.print(f"[blue]Paying {decoded.amount_sat} sat...[/blue]")
        result = await wallet.pay_invoice(mint_url, bolt11, max_fee=max_fee, unit=unit)
        if result.paid:
            console.print(
                f"[green]✅ Paid {result.amount} (fee {result.fee_paid}, "
                f"change {result.change_amount})[/green]"
            )
        elif result.state == "PENDING":
            console.print(f"[yellow]Payment pending (quote {result.quote_id})[/yellow]")
        else:
            console.print(f"[red]❌ Payment failed (quote {result.quote_id})[/red]")
            raise typer.Exit(1)

    _run(_pay)


# ───────────────────────── Backup ─────────────────────────────────


@app.command()
def backup() -> None:
    """Publish an encrypted backup to the configured relays."""

    async def _backup(wallet: MultiMintWallet) -> None:
        published = await wallet.backup()
        console.print(f"[green]✅ Published {len(published)} token record(s)[/green]")

    _run(_backup)


@app.command()
def restore(
    from_seed: Annotated[
        bool, typer.Option("--from-seed", help="Ask the mints instead of the relays")
    ] = False,
) -> None:
    """Recover funds from relay backups or from the seed."""

    async def _restore(wallet: MultiMintWallet) -> None:
        if from_seed:
            amount = await wallet.restore_from_seed()
        else:
            amount = await wallet.restore_from_backup()
        console.print(f"[green]✅ Restored {amount}[/green]")

    _run(_restore)


if __name__ == "__main__":
    app()

"""
vault - command line for the privacy vault.

Commands:
  note new        Generate a deposit note (optionally password-encrypted)
  note inspect    Show a note's public fields and nullifier
  hash            Poseidon hash of two field elements
  deposit         Deposit a note's commitment into the ledger
  withdraw        Demo withdrawal: prepare inputs, get a fallback proof, withdraw
  status          Ledger root, leaf count, verifier mode and totals
  audit           Audit trail root and entries, filterable by operation and time
  config          Print the resolved configuration

Global options:
  --config PATH     Config file (TOML or JSON)
  --network TEXT    devnet | testnet | mainnet
  --db TEXT         Storage URI (sqlite:///path or memory://)
  --log-level TEXT  Log level
  --json-logs       Emit JSON logs

Examples:
  vault note new --amount 1 > my.note
  vault deposit "$(cat my.note)" --depositor 0x11...11 > my.note
  vault withdraw "$(cat my.note)" --recipient 0x22...22
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer

from zk.verifiers import ZKError
from zk.verifiers.field import parse_field, to_hex
from zk.verifiers.poseidon import poseidon2

from . import config as config_mod
from .audit import AuditOperation
from .boundary import (DemoProofProducer, ProofFailed, build_proof_request,
                       decode_proof_response, encode)
from .encoding import format_units, parse_units
from .errors import VaultError
from .ledger import Ledger
from .logging import configure, configure_from_config
from .notes import DepositNote, decrypt_note, encrypt_note
from .version import __version__

app = typer.Typer(
    name="vault",
    help="Privacy vault command-line interface",
    no_args_is_help=True,
    add_completion=False,
)
note_app = typer.Typer(help="Create and inspect deposit notes", no_args_is_help=True)
app.add_typer(note_app, name="note")


class GlobalContext:
    def __init__(self) -> None:
        self.config_path: Optional[str] = None
        self.network: Optional[str] = None
        self.db_uri: Optional[str] = None
        self.log_level: Optional[str] = None
        self.json_logs: bool = False


_ctx = GlobalContext()


# -------------------- helpers --------------------


def _emit(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, sort_keys=True))


def _fail(err: VaultError) -> NoReturn:
    typer.echo(json.dumps({"error": err.to_dict()}, sort_keys=True), err=True)
    raise typer.Exit(code=1)


def _load_config() -> config_mod.VaultConfig:
    overrides: Dict[str, Any] = {}
    if _ctx.network:
        overrides["network"] = _ctx.network
    if _ctx.db_uri:
        overrides["db"] = {"uri": _ctx.db_uri}
    if _ctx.log_level:
        overrides["log"] = {"level": _ctx.log_level}
    if _ctx.json_logs:
        overrides.setdefault("log", {})["format"] = "json"
    return config_mod.load(_ctx.config_path, **overrides)


def _open_ledger() -> Ledger:
    try:
        cfg = _load_config()
        configure_from_config(cfg)
        return Ledger.open(cfg)
    except VaultError as e:
        _fail(e)


def _read_note(text: str, password: Optional[str]) -> DepositNote:
    raw = text.strip()
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text().strip()
    try:
        if password:
            return decrypt_note(raw, password)
        return DepositNote.deserialize(raw)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def _write_note(note: DepositNote, password: Optional[str]) -> str:
    return encrypt_note(note, password) if password else note.serialize()


def _amount(text: str) -> int:
    try:
        return parse_units(text)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


# -------------------- global options --------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"privacy-vault {__version__}")
        raise typer.Exit(0)


@app.callback()
def main_callback(
    config: Optional[str] = typer.Option(None, "--config", help="Path to config file", envvar="VAULT_CONFIG"),
    network: Optional[str] = typer.Option(None, "--network", help="devnet | testnet | mainnet"),
    db: Optional[str] = typer.Option(None, "--db", help="Storage URI (sqlite:///path or memory://)"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON logs"),
    version: bool = typer.Option(False, "--version", "-V", help="Print version and exit",
                                 is_eager=True, callback=_version_callback),
) -> None:
    """
    Privacy vault: deposit against a secret note, withdraw with a proof.

    Configuration precedence: flags > VAULT_* environment > config file > defaults.
    """
    _ctx.config_path = config
    _ctx.network = network
    _ctx.db_uri = db
    _ctx.log_level = log_level
    _ctx.json_logs = json_logs


# -------------------- notes --------------------


@note_app.command("new")
def note_new(
    amount: str = typer.Option(..., "--amount", "-a", help="Deposit amount in units (18 decimals)"),
    password: Optional[str] = typer.Option(None, "--password", help="Encrypt the note with this password"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the note to a file"),
) -> None:
    """Generate a fresh note. Keep it: it is the only way to withdraw."""
    note = DepositNote.generate(_amount(amount))
    text = _write_note(note, password)
    if out is not None:
        out.write_text(text + "\n")
        _emit({"commitment": to_hex(note.commitment), "file": str(out)})
    else:
        typer.echo(text)


@note_app.command("inspect")
def note_inspect(
    note: str = typer.Argument(..., help="Serialized note, or @path"),
    password: Optional[str] = typer.Option(None, "--password", help="Password for an encrypted note"),
) -> None:
    """Show public fields of a note (never the secret or seed)."""
    n = _read_note(note, password)
    _emit({
        "commitment": to_hex(n.commitment),
        "amount": format_units(n.amount),
        "leafIndex": n.leaf_index,
        "nullifierHash": to_hex(n.nullifier_hash()) if n.confirmed else None,
        "createdAt": n.created_at,
    })


# -------------------- primitives --------------------


@app.command("hash")
def hash_cmd(
    a: str = typer.Argument(..., help="Field element (hex, or dec:<n>)"),
    b: str = typer.Argument(..., help="Field element (hex, or dec:<n>)"),
) -> None:
    """Poseidon hash of two field elements, as used by the tree and notes."""
    try:
        x, y = parse_field(a), parse_field(b)
    except ZKError as e:
        raise typer.BadParameter(str(e)) from e
    typer.echo(to_hex(poseidon2(x, y)))


# -------------------- ledger --------------------


@app.command("deposit")
def deposit(
    note: str = typer.Argument(..., help="Serialized note, or @path"),
    depositor: Optional[str] = typer.Option(None, "--depositor", help="Depositor address (0x + 40 hex)"),
    password: Optional[str] = typer.Option(None, "--password", help="Password for an encrypted note"),
) -> None:
    """Deposit the note's commitment; prints the note bound to its leaf index."""
    n = _read_note(note, password)
    ledger = _open_ledger()
    try:
        receipt = ledger.deposit(n.commitment, n.amount, depositor=depositor)
    except VaultError as e:
        _fail(e)
    finally:
        ledger.close()
    typer.echo(json.dumps(receipt.to_json(), sort_keys=True), err=True)
    typer.echo(_write_note(n.confirm(receipt.leaf_index), password))


@app.command("withdraw")
def withdraw(
    note: str = typer.Argument(..., help="Confirmed note (after deposit), or @path"),
    recipient: str = typer.Option(..., "--recipient", "-r", help="Recipient address"),
    password: Optional[str] = typer.Option(None, "--password", help="Password for an encrypted note"),
) -> None:
    """
    Demo withdrawal through the local fallback proof producer. Only works when
    the ledger runs without a verifying key.
    """
    n = _read_note(note, password)
    ledger = _open_ledger()
    try:
        try:
            req = build_proof_request(n, ledger.get_leaves(), recipient, ledger.depth)
        except ValueError as e:
            raise typer.BadParameter(str(e)) from e
        response = decode_proof_response(DemoProofProducer().respond(encode(req)))
        if isinstance(response, ProofFailed):
            typer.echo(json.dumps({"error": {"message": response.error}}), err=True)
            raise typer.Exit(code=1)
        receipt = ledger.withdraw(
            req.nullifier_hash, req.root, recipient, n.amount, response.proof_bytes()
        )
    except VaultError as e:
        _fail(e)
    finally:
        ledger.close()
    _emit(receipt.to_json())


@app.command("status")
def status() -> None:
    """Current root, next leaf index, verifier mode and totals."""
    ledger = _open_ledger()
    try:
        s = ledger.stats()
        _emit({
            "root": to_hex(ledger.get_latest_root()),
            "nextLeafIndex": ledger.get_next_leaf_index(),
            "depth": ledger.depth,
            "mode": ledger.mode.value,
            "totalDeposits": s.total_deposits,
            "totalWithdrawals": s.total_withdrawals,
            "poolBalance": format_units(s.pool_balance),
        })
    finally:
        ledger.close()


@app.command("audit")
def audit_cmd(
    operation: Optional[str] = typer.Option(
        None, "--operation", help="deposit | withdrawal | compliance_check | provider_update"),
    since: Optional[int] = typer.Option(None, "--since", help="Earliest timestamp (inclusive)"),
    until: Optional[int] = typer.Option(None, "--until", help="Latest timestamp (inclusive)"),
) -> None:
    """Audit trail root and the entries matching the filters."""
    try:
        op = AuditOperation(operation) if operation else None
    except ValueError as e:
        raise typer.BadParameter(f"unknown operation {operation!r}") from e
    ledger = _open_ledger()
    try:
        trail = ledger.audit
        entries = trail.query(operation=op, start_time=since, end_time=until)
        _emit({
            "root": to_hex(trail.root),
            "entryCount": trail.entry_count,
            "entries": [e.to_json() for e in entries],
        })
    except VaultError as e:
        _fail(e)
    finally:
        ledger.close()


@app.command("config")
def show_config() -> None:
    """Print the resolved configuration."""
    try:
        cfg = _load_config()
    except VaultError as e:
        _fail(e)
    _emit(cfg.to_dict())


def main(argv: Optional[list] = None) -> None:
    configure(level="WARNING", stream=sys.stderr)
    app(args=argv, prog_name="vault")


if __name__ == "__main__":  # pragma: no cover
    main()

import json
import logging

import pytest
from typer.testing import CliRunner

from vault.cli import app
from vault.notes import DepositNote, decrypt_note
from vault.tests import DEPOSITOR, RECIPIENT
from zk.verifiers.field import to_hex
from zk.verifiers.poseidon import poseidon2

runner = CliRunner()


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)


@pytest.fixture
def db(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _invoke(*args):
    return runner.invoke(app, ["--log-level", "ERROR", *args])


def _last_line(result):
    return result.stdout.strip().splitlines()[-1]


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("privacy-vault ")


def test_hash():
    result = _invoke("hash", "0x01", "dec:2")
    assert result.exit_code == 0
    assert result.stdout.strip() == to_hex(poseidon2(1, 2))
    bad = _invoke("hash", "0xzz", "1")
    assert bad.exit_code == 2


def test_note_new_and_inspect():
    result = _invoke("note", "new", "--amount", "0.5")
    assert result.exit_code == 0
    note = DepositNote.deserialize(_last_line(result))
    assert note.amount == 5 * 10 ** 17

    shown = _invoke("note", "inspect", _last_line(result))
    assert shown.exit_code == 0
    info = json.loads(shown.stdout)
    assert info["commitment"] == to_hex(note.commitment)
    assert info["amount"] == "0.5"
    assert info["nullifierHash"] is None
    assert "secret" not in info


def test_encrypted_note_file(tmp_path):
    out = tmp_path / "my.note"
    result = _invoke("note", "new", "--amount", "1", "--password", "pw", "--out", str(out))
    assert result.exit_code == 0
    note = decrypt_note(out.read_text(), "pw")
    assert json.loads(result.stdout)["commitment"] == to_hex(note.commitment)

    shown = _invoke("note", "inspect", f"@{out}", "--password", "pw")
    assert shown.exit_code == 0
    wrong = _invoke("note", "inspect", f"@{out}", "--password", "nope")
    assert wrong.exit_code == 2


def test_bad_amount_and_note():
    assert _invoke("note", "new", "--amount", "-3").exit_code == 2
    assert _invoke("note", "inspect", "garbage").exit_code == 2


def test_deposit_status_withdraw_flow(db):
    created = _invoke("note", "new", "--amount", "1")
    raw_note = _last_line(created)

    dep = _invoke("--db", db, "deposit", raw_note, "--depositor", DEPOSITOR)
    assert dep.exit_code == 0, dep.output
    confirmed = DepositNote.deserialize(_last_line(dep))
    assert confirmed.leaf_index == 0

    status = _invoke("--db", db, "status")
    assert status.exit_code == 0
    s = json.loads(status.stdout)
    assert s["nextLeafIndex"] == 1
    assert s["mode"] == "fallback"
    assert s["poolBalance"] == "1"
    assert s["depth"] == 20

    wd = _invoke("--db", db, "withdraw", _last_line(dep), "--recipient", RECIPIENT)
    assert wd.exit_code == 0, wd.output
    receipt = json.loads(wd.stdout)
    assert receipt["nullifierHash"] == to_hex(confirmed.nullifier_hash())
    assert receipt["recipient"] == RECIPIENT

    again = _invoke("--db", db, "withdraw", _last_line(dep), "--recipient", RECIPIENT)
    assert again.exit_code == 1
    assert "VAULT/DOUBLE_SPEND" in again.output

    after = json.loads(_invoke("--db", db, "status").stdout)
    assert after["totalWithdrawals"] == 1
    assert after["poolBalance"] == "0"

    trail = json.loads(_invoke("--db", db, "audit").stdout)
    assert trail["entryCount"] == 2
    assert [e["operation"] for e in trail["entries"]] == ["deposit", "withdrawal"]
    only = json.loads(_invoke("--db", db, "audit", "--operation", "withdrawal").stdout)
    assert [e["index"] for e in only["entries"]] == [1]
    assert only["root"] == trail["root"]
    assert _invoke("--db", db, "audit", "--operation", "mint").exit_code == 2


def test_duplicate_deposit_fails(db):
    raw_note = _last_line(_invoke("note", "new", "--amount", "1"))
    assert _invoke("--db", db, "deposit", raw_note).exit_code == 0
    dup = _invoke("--db", db, "deposit", raw_note)
    assert dup.exit_code == 1
    assert "VAULT/INVALID_COMMITMENT" in dup.output


def test_withdraw_requires_confirmed_note(db):
    raw_note = _last_line(_invoke("note", "new", "--amount", "1"))
    result = _invoke("--db", db, "withdraw", raw_note, "--recipient", RECIPIENT)
    assert result.exit_code == 2


def test_config_command():
    result = _invoke("--network", "testnet", "--db", "memory://", "config")
    assert result.exit_code == 0
    cfg = json.loads(result.stdout)
    assert cfg["network"] == "testnet"
    assert cfg["db"]["uri"] == "memory://"
    assert cfg["log"]["level"] == "ERROR"


def test_config_errors_are_reported():
    result = _invoke("--network", "mainnet", "--db", "memory://", "status")
    assert result.exit_code == 1
    assert "VAULT/CONFIG" in result.output

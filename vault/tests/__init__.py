"""
vault.tests helpers

Shared constants and small builders for the ledger tests.

Exports:
- ADMIN / PROVIDER / RECIPIENT / DEPOSITOR addresses
- AMOUNT (1 unit in base units)
- FakeClock
- deposit_note(ledger, amount=AMOUNT) -> confirmed DepositNote
- withdrawal_args(ledger, note, recipient) -> (nullifier_hex, root_hex, proof)
"""

from __future__ import annotations

from typing import Tuple

from vault.boundary import DemoProofProducer, ProofProduced, build_proof_request
from vault.notes import DepositNote

ADMIN = "0x" + "aa" * 20
PROVIDER = "0x" + "bb" * 20
OTHER_PROVIDER = "0x" + "bc" * 20
RECIPIENT = "0x" + "11" * 20
DEPOSITOR = "0x" + "22" * 20
STRANGER = "0x" + "33" * 20

AMOUNT = 10 ** 18


class FakeClock:
    def __init__(self, start: int = 1_700_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int = 1) -> None:
        self.now += seconds


def deposit_note(ledger, amount: int = AMOUNT, depositor: str = DEPOSITOR) -> DepositNote:
    note = DepositNote.generate(amount)
    receipt = ledger.deposit(note.commitment, amount, depositor=depositor)
    return note.confirm(receipt.leaf_index)


def withdrawal_args(ledger, note: DepositNote, recipient: str = RECIPIENT) -> Tuple[str, str, bytes]:
    req = build_proof_request(note, ledger.get_leaves(), recipient, ledger.depth)
    produced = DemoProofProducer().produce(req)
    assert isinstance(produced, ProofProduced), produced
    return req.nullifier_hash, req.root, produced.proof_bytes()

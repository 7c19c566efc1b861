"""
Ledger events.

Every accepted deposit and withdrawal appends one event record under
`EVENTS | be_u64(seq)`, written in the same batch as the state change, so the
event log and ledger state never diverge. Records are canonical CBOR maps with
a `type` discriminator.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Union

from zk.verifiers.field import to_bytes32, from_bytes32


@dataclass(frozen=True)
class DepositEvent:
    commitment: int
    leaf_index: int
    amount: int
    timestamp: int

    TYPE = "Deposit"

    def to_record(self) -> Dict[str, Any]:
        return {
            "type": self.TYPE,
            "commitment": to_bytes32(self.commitment),
            "leaf_index": self.leaf_index,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WithdrawalEvent:
    nullifier_hash: int
    recipient: bytes
    amount: int
    root: int
    timestamp: int

    TYPE = "Withdrawal"

    def to_record(self) -> Dict[str, Any]:
        return {
            "type": self.TYPE,
            "nullifier_hash": to_bytes32(self.nullifier_hash),
            "recipient": bytes(self.recipient),
            "amount": self.amount,
            "root": to_bytes32(self.root),
            "timestamp": self.timestamp,
        }


Event = Union[DepositEvent, WithdrawalEvent]


def event_from_record(rec: Dict[str, Any]) -> Event:
    kind = rec.get("type")
    if kind == DepositEvent.TYPE:
        return DepositEvent(
            commitment=from_bytes32(rec["commitment"]),
            leaf_index=rec["leaf_index"],
            amount=rec["amount"],
            timestamp=rec["timestamp"],
        )
    if kind == WithdrawalEvent.TYPE:
        return WithdrawalEvent(
            nullifier_hash=from_bytes32(rec["nullifier_hash"]),
            recipient=bytes(rec["recipient"]),
            amount=rec["amount"],
            root=from_bytes32(rec["root"]),
            timestamp=rec["timestamp"],
        )
    raise ValueError(f"unknown event type {kind!r}")


def event_to_json(ev: Event) -> Dict[str, Any]:
    d = asdict(ev)
    for k, v in d.items():
        if isinstance(v, bytes):
            d[k] = "0x" + v.hex()
        elif k in ("commitment", "nullifier_hash", "root"):
            d[k] = "0x" + to_bytes32(v).hex()
    d["type"] = ev.TYPE
    return d


__all__ = ["DepositEvent", "WithdrawalEvent", "Event", "event_from_record", "event_to_json"]

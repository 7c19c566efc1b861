"""
Funds port: the only value-moving surface the ledger touches.

The ledger calls `pay_in` after committing a deposit and `pay_out` after
committing a withdrawal. Any exception from the port makes the ledger revert
those records and report `TransferFailed`.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Protocol, Tuple, runtime_checkable

from .errors import TransferFailed


@runtime_checkable
class FundsPort(Protocol):
    def pay_in(self, depositor: bytes, amount: int) -> None: ...
    def pay_out(self, recipient: bytes, amount: int) -> None: ...


class InMemoryFunds:
    """
    Pool-balance bookkeeping for tests, demos and the CLI.

    `fail_next_payout()` makes the next `pay_out` raise, which is how the
    atomicity tests force a failed transfer.
    """

    def __init__(self, initial_balance: int = 0) -> None:
        self._lock = threading.Lock()
        self.balance = int(initial_balance)
        self.paid_out: Dict[bytes, int] = {}
        self.ledger: List[Tuple[str, bytes, int]] = []
        self._fail_next = False

    def fail_next_payout(self) -> None:
        self._fail_next = True

    def pay_in(self, depositor: bytes, amount: int) -> None:
        with self._lock:
            self.balance += amount
            self.ledger.append(("in", bytes(depositor), amount))

    def pay_out(self, recipient: bytes, amount: int) -> None:
        with self._lock:
            if self._fail_next:
                self._fail_next = False
                raise TransferFailed("recipient rejected the transfer", amount=amount)
            if amount > self.balance:
                raise TransferFailed("pool balance too low", amount=amount, balance=self.balance)
            self.balance -= amount
            key = bytes(recipient)
            self.paid_out[key] = self.paid_out.get(key, 0) + amount
            self.ledger.append(("out", key, amount))


__all__ = ["FundsPort", "InMemoryFunds"]

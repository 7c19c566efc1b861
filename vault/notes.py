"""
Deposit notes: commitment and nullifier derivation, plus client-side storage.

    commitment = H(H(secret, seed), amount)
    nullifier  = H(seed, leaf_index)

H is `zk.verifiers.poseidon.poseidon2`, the same primitive the commitment tree
uses. A note is the depositor's only way to withdraw: it holds the secret and
seed and never reaches the ledger.

Storage forms
-------------
- `DepositNote.serialize()` -> base64 of a JSON object (hex fields, decimal
  amount). Round-trips with `DepositNote.deserialize()`.
- `encrypt_note(note, password)` -> hex of
  ``MAGIC | salt(16) | nonce(12) | AES-256-GCM(serialized)`` with the key
  derived by scrypt. `decrypt_note` raises ValueError on a wrong password or a
  tampered blob.
"""

from __future__ import annotations

import base64
import json
import os
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from zk.verifiers.field import P, reduce, to_hex
from zk.verifiers.poseidon import poseidon2

NOTE_VERSION = 1
NOTE_MAGIC = b"VNOTE\x01"
NOTE_AAD = b"privacy-vault/note/v1"
SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def commitment(secret: int, seed: int, amount: int) -> int:
    """H(H(secret, seed), amount)."""
    return poseidon2(poseidon2(secret, seed), amount)


def nullifier(seed: int, leaf_index: int) -> int:
    """H(seed, leaf_index)."""
    if leaf_index < 0:
        raise ValueError("note has no leaf index yet")
    return poseidon2(seed, leaf_index)


def random_field_element() -> int:
    """Uniform element of [1, P) from the OS CSPRNG."""
    while True:
        x = secrets.randbelow(P)
        if x:
            return x


@dataclass(frozen=True)
class DepositNote:
    secret: int
    seed: int
    amount: int
    leaf_index: int = -1
    created_at: int = field(default_factory=lambda: int(time.time()))

    @classmethod
    def generate(cls, amount: int) -> "DepositNote":
        if amount <= 0:
            raise ValueError("amount must be positive")
        return cls(secret=random_field_element(), seed=random_field_element(), amount=int(amount))

    @property
    def commitment(self) -> int:
        return commitment(self.secret, self.seed, self.amount)

    @property
    def confirmed(self) -> bool:
        return self.leaf_index >= 0

    def confirm(self, leaf_index: int) -> "DepositNote":
        """Return a copy bound to the leaf index assigned at deposit."""
        if leaf_index < 0:
            raise ValueError("leaf index must be non-negative")
        return replace(self, leaf_index=int(leaf_index))

    def nullifier_hash(self) -> int:
        return nullifier(self.seed, self.leaf_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": NOTE_VERSION,
            "commitment": to_hex(self.commitment),
            "secret": to_hex(self.secret),
            "seed": to_hex(self.seed),
            "amount": str(self.amount),
            "leafIndex": self.leaf_index,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DepositNote":
        try:
            note = cls(
                secret=reduce(int(d["secret"], 16)),
                seed=reduce(int(d["seed"], 16)),
                amount=int(d["amount"]),
                leaf_index=int(d.get("leafIndex", -1)),
                created_at=int(d.get("createdAt", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed note: {e}") from e
        stated = d.get("commitment")
        if stated is not None and int(stated, 16) != note.commitment:
            raise ValueError("note commitment does not match its secret, seed and amount")
        return note

    def serialize(self) -> str:
        raw = json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def deserialize(cls, text: str) -> "DepositNote":
        try:
            raw = base64.b64decode(text.strip(), validate=True)
            d = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ValueError(f"note is not base64 JSON: {e}") from e
        if not isinstance(d, dict):
            raise ValueError("note must be a JSON object")
        return cls.from_dict(d)

    def __repr__(self) -> str:
        # secrets stay out of logs and tracebacks
        return (f"DepositNote(commitment={to_hex(self.commitment)}, amount={self.amount}, "
                f"leaf_index={self.leaf_index})")


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def encrypt_note(note: DepositNote, password: str) -> str:
    if not password:
        raise ValueError("password must be non-empty")
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(_derive_key(password, salt)).encrypt(
        nonce, note.serialize().encode("ascii"), NOTE_AAD
    )
    return (NOTE_MAGIC + salt + nonce + ct).hex()


def decrypt_note(blob: str, password: str) -> DepositNote:
    try:
        data = bytes.fromhex(blob.strip())
    except ValueError as e:
        raise ValueError("encrypted note is not hex") from e
    head = len(NOTE_MAGIC)
    if not data.startswith(NOTE_MAGIC) or len(data) < head + SALT_SIZE + NONCE_SIZE + 16:
        raise ValueError("not an encrypted note")
    salt = data[head:head + SALT_SIZE]
    nonce = data[head + SALT_SIZE:head + SALT_SIZE + NONCE_SIZE]
    ct = data[head + SALT_SIZE + NONCE_SIZE:]
    try:
        pt = AESGCM(_derive_key(password, salt)).decrypt(nonce, ct, NOTE_AAD)
    except InvalidTag as e:
        raise ValueError("wrong password or corrupted note") from e
    return DepositNote.deserialize(pt.decode("ascii"))


__all__ = [
    "commitment",
    "nullifier",
    "random_field_element",
    "DepositNote",
    "encrypt_note",
    "decrypt_note",
]

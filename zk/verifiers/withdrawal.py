"""
zk.verifiers.withdrawal
=======================

Two-mode withdrawal proof verifier consumed by the ledger.

Public inputs are always `[root, nullifier_hash, recipient, amount]`, each a
field element (the recipient is the 20-byte address left-padded to 32 bytes and
read as a big-endian integer).

Modes
-----
PAIRING   A Groth16 verifying key is configured. The proof must carry at least
          256 bytes in the layout documented in `groth16_bn254`, and the key
          must have exactly len(inputs)+1 IC points.

FALLBACK  No key configured. This is a hash-linkage placeholder with no
          soundness: anyone can pick the linkage bytes. It exists for demos and
          tests without circuit tooling and is never equivalent to PAIRING.

          byte 0       : format tag, must be 0x01
          bytes 1..33  : linkage hash, must be non-zero
          bytes 33..65 : root        (must equal inputs[0])
          bytes 65..97 : nullifier   (must equal inputs[1])

Every `verify` outcome is recorded under `proof_hash(proof, inputs)`; asking
again for the same pair returns the recorded outcome without touching the
curve.

The record holds one entry per distinct pair checked, accepted or not, so by
default it grows with traffic. `max_records` caps it as an LRU; an evicted
pair is simply recomputed on its next check.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from enum import Enum
from collections import OrderedDict
from typing import List, Optional, Sequence

from . import VerificationResult, ZKError
from .field import FieldLike, parse_field, to_bytes32
from .groth16_bn254 import PROOF_BYTES, Proof, VerifyingKey, load_vk_file, verify_groth16_points

log = logging.getLogger(__name__)

FALLBACK_TAG = 0x01
FALLBACK_PROOF_BYTES = 97
PUBLIC_INPUTS = 4


class VerifierMode(str, Enum):
    PAIRING = "pairing"
    FALLBACK = "fallback"


def _words(public_inputs: Sequence[FieldLike]) -> List[int]:
    return [parse_field(x) for x in public_inputs]


def proof_hash(proof: bytes, public_inputs: Sequence[FieldLike]) -> bytes:
    """sha3-256 over the proof bytes followed by each input as 32 bytes."""
    h = hashlib.sha3_256(bytes(proof))
    for w in _words(public_inputs):
        h.update(to_bytes32(w))
    return h.digest()


def fallback_linkage(
    root: FieldLike, nullifier: FieldLike, recipient: FieldLike, amount: FieldLike
) -> bytes:
    h = hashlib.sha3_256()
    for w in _words((root, nullifier, recipient, amount)):
        h.update(to_bytes32(w))
    return h.digest()


def build_fallback_proof(
    root: FieldLike, nullifier: FieldLike, recipient: FieldLike, amount: FieldLike
) -> bytes:
    """Assemble a 97-byte fallback proof. Demo/test use only."""
    r, n = parse_field(root), parse_field(nullifier)
    return (
        bytes([FALLBACK_TAG])
        + fallback_linkage(r, n, recipient, amount)
        + to_bytes32(r)
        + to_bytes32(n)
    )


class WithdrawalVerifier:
    """
    Verifier with an outcome record.

    >>> v = WithdrawalVerifier()
    >>> p = build_fallback_proof(5, 7, 1, 10)
    >>> v.verify(p, [5, 7, 1, 10])
    True
    """

    def __init__(self, vk: Optional[VerifyingKey] = None, *, max_records: Optional[int] = None) -> None:
        if max_records is not None and max_records < 1:
            raise ValueError("max_records must be >= 1")
        self._vk = vk
        self.max_records = max_records
        self._results: "OrderedDict[bytes, bool]" = OrderedDict()
        self._lock = threading.Lock()
        if vk is None:
            log.warning(
                "withdrawal verifier has no verifying key; running in FALLBACK mode "
                "(hash linkage only, not sound, demo/test use)"
            )
        else:
            log.info("withdrawal verifier ready", extra={"mode": "pairing", "n_public": vk.n_public})

    @classmethod
    def from_vk_file(cls, path: str, *, max_records: Optional[int] = None) -> "WithdrawalVerifier":
        return cls(load_vk_file(path), max_records=max_records)

    @property
    def mode(self) -> VerifierMode:
        return VerifierMode.FALLBACK if self._vk is None else VerifierMode.PAIRING

    @property
    def verifying_key(self) -> Optional[VerifyingKey]:
        return self._vk

    def set_verifying_key(self, vk: VerifyingKey) -> None:
        """Switch to PAIRING mode. A key can be set once; recorded outcomes are cleared."""
        with self._lock:
            if self._vk is not None:
                raise ZKError("verifying key already set")
            self._vk = vk
            self._results.clear()
        log.info("withdrawal verifier switched to pairing mode", extra={"n_public": vk.n_public})

    # ---- verification -------------------------------------------------------------------

    def check(self, proof: bytes, public_inputs: Sequence[FieldLike]) -> VerificationResult:
        """Like `verify` but returns the reason for a rejection."""
        proof = bytes(proof)
        key = proof_hash(proof, public_inputs)
        with self._lock:
            prior = self._results.get(key)
            if prior is not None:
                self._results.move_to_end(key)
        if prior is not None:
            return VerificationResult(ok=prior, mode=self.mode.value, cached=True)
        res = self._compute(proof, _words(public_inputs))
        with self._lock:
            self._results.setdefault(key, res.ok)
            if self.max_records is not None:
                while len(self._results) > self.max_records:
                    self._results.popitem(last=False)
        return res

    def verify(self, proof: bytes, public_inputs: Sequence[FieldLike]) -> bool:
        return self.check(proof, public_inputs).ok

    def verify_view(self, proof: bytes, public_inputs: Sequence[FieldLike]) -> bool:
        """Compute the outcome without recording it."""
        return self._compute(bytes(proof), _words(public_inputs)).ok

    def is_proof_verified(self, proof_digest: bytes) -> bool:
        """True iff an accepted outcome was recorded under `proof_digest`."""
        with self._lock:
            return self._results.get(bytes(proof_digest), False)

    def recorded(self, proof_digest: bytes) -> Optional[bool]:
        with self._lock:
            return self._results.get(bytes(proof_digest))

    # ---- modes --------------------------------------------------------------------------

    def _compute(self, proof: bytes, inputs: List[int]) -> VerificationResult:
        if self._vk is None:
            return self._fallback(proof, inputs)
        return self._pairing(self._vk, proof, inputs)

    def _pairing(self, vk: VerifyingKey, proof: bytes, inputs: List[int]) -> VerificationResult:
        mode = VerifierMode.PAIRING.value
        if len(proof) < PROOF_BYTES:
            return VerificationResult(False, mode, f"proof shorter than {PROOF_BYTES} bytes")
        if len(inputs) + 1 != len(vk.IC):
            return VerificationResult(
                False, mode, f"expected {vk.n_public} public inputs, got {len(inputs)}"
            )
        try:
            pf = Proof.from_bytes(proof)
            ok = verify_groth16_points(vk, pf, inputs)
        except (ZKError, ValueError) as e:
            return VerificationResult(False, mode, str(e))
        return VerificationResult(ok, mode, None if ok else "pairing check failed")

    @staticmethod
    def _fallback(proof: bytes, inputs: List[int]) -> VerificationResult:
        mode = VerifierMode.FALLBACK.value
        if len(proof) < FALLBACK_PROOF_BYTES:
            return VerificationResult(False, mode, f"proof shorter than {FALLBACK_PROOF_BYTES} bytes")
        if proof[0] != FALLBACK_TAG:
            return VerificationResult(False, mode, f"unknown proof tag {proof[0]}")
        if len(inputs) < 2:
            return VerificationResult(False, mode, "missing root/nullifier inputs")
        if not any(proof[1:33]):
            return VerificationResult(False, mode, "zero linkage hash")
        if proof[33:65] != to_bytes32(inputs[0]):
            return VerificationResult(False, mode, "root mismatch")
        if proof[65:97] != to_bytes32(inputs[1]):
            return VerificationResult(False, mode, "nullifier mismatch")
        return VerificationResult(True, mode)

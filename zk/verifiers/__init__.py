# zk/verifiers/__init__.py
"""
Vault ZK verifiers: high-level facade

This package holds everything the withdrawal ledger needs to check a proof and
to hash into the BN254 scalar field:

- `zk.verifiers.field`          -> BN254 scalar field helpers (32-byte BE encoding)
- `zk.verifiers.poseidon`       -> the Poseidon t=3 field hash shared by tree and notes
- `zk.verifiers.pairing_bn254`  -> thin pairing wrapper around py_ecc
- `zk.verifiers.groth16_bn254`  -> Groth16 verifier (snarkjs JSON and 256-byte EVM layout)
- `zk.verifiers.withdrawal`     -> the two-mode withdrawal verifier the ledger consumes

Usage
-----
>>> from zk.verifiers import WithdrawalVerifier
>>> v = WithdrawalVerifier()            # no verifying key -> fallback (demo) mode
>>> v.mode
<VerifierMode.FALLBACK: 'fallback'>

Verification itself returns booleans (or a `VerificationResult` carrying the
rejection reason); `ZKError` is raised only for malformed configuration such as
an unreadable verifying key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True, frozen=True)
class VerificationResult:
    """Result of a verification attempt."""
    ok: bool
    mode: Optional[str] = None
    message: Optional[str] = None
    cached: bool = False

    def __bool__(self) -> bool:  # allows: if result: ...
        return self.ok


class ZKError(RuntimeError):
    """Raised for malformed inputs or unusable verifier configuration."""


# Submodules import ZKError from here, so these come last.
from .withdrawal import (  # noqa: E402
    VerifierMode,
    WithdrawalVerifier,
    build_fallback_proof,
    fallback_linkage,
    proof_hash,
)

__all__ = [
    "VerificationResult",
    "ZKError",
    "VerifierMode",
    "WithdrawalVerifier",
    "build_fallback_proof",
    "fallback_linkage",
    "proof_hash",
]

"""
Codecs for the collaborators around the ledger: the proof producer and the
attested executor.

Both answer with exactly one of two tagged variants, discriminated by the
`status` field:

    ProofRequest               -> ProofProduced      {"status": "produced", ...}
                                | ProofFailed        {"status": "failed", ...}
    AttestedWithdrawalRequest  -> AttestedWithdrawal {"status": "ok", ...}
                                | AttestedFailure    {"status": "error", ...}

Anything else (missing tag, unknown tag, wrong field types) is a
`BoundaryError`; a response is never read as success by default.

Field values travel as 0x-hex strings, amounts as decimal strings, so the JSON
stays exact for values above 2^53.

Attestation blob layout (as produced by the executor)::

    data_hash(32) | timestamp(u64, little-endian) | enclave_id(32) | signature(...)

`data_hash` must equal ``H(nullifier_hash, root)`` for the ledger to accept it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import msgspec

from zk.verifiers import ZKError
from zk.verifiers.field import parse_field, to_bytes32, to_hex
from zk.verifiers.poseidon import poseidon2
from zk.verifiers.withdrawal import build_fallback_proof

from .encoding import address_hex, address_to_field, normalize_address
from .errors import BoundaryError, VaultError
from .merkle import compute_root, merkle_path
from .notes import DepositNote, commitment, nullifier

ATTESTATION_HEADER_BYTES = 32 + 8 + 32


# ---------------------------------------------------------------------------
# Proof producer
# ---------------------------------------------------------------------------


class ProofRequest(msgspec.Struct, frozen=True, kw_only=True):
    """Circuit inputs for one withdrawal. Carries the note's private witness."""

    root: str
    nullifier_hash: str
    recipient: str
    amount: str
    secret: str
    seed: str
    leaf_index: int
    siblings: List[str]
    indices: List[int]

    def public_inputs(self) -> List[int]:
        return [
            parse_field(self.root),
            parse_field(self.nullifier_hash),
            address_to_field(self.recipient),
            int(self.amount),
        ]


class ProofProduced(msgspec.Struct, frozen=True, tag_field="status", tag="produced"):
    proof: str
    public_inputs: List[str] = []

    def proof_bytes(self) -> bytes:
        return _unhex(self.proof, "proof")


class ProofFailed(msgspec.Struct, frozen=True, tag_field="status", tag="failed"):
    error: str


ProofResponse = Union[ProofProduced, ProofFailed]


# ---------------------------------------------------------------------------
# Attested executor
# ---------------------------------------------------------------------------


class AttestedWithdrawalRequest(msgspec.Struct, frozen=True, kw_only=True):
    commitment: str
    nullifier_hash: str
    recipient: str
    amount: str
    siblings: List[str]
    indices: List[int]


class AttestedWithdrawal(msgspec.Struct, frozen=True, tag_field="status", tag="ok"):
    proof: str
    attestation: str
    tx_hash: Optional[str] = None

    def proof_bytes(self) -> bytes:
        return _unhex(self.proof, "proof")

    def attestation_bytes(self) -> bytes:
        return _unhex(self.attestation, "attestation")


class AttestedFailure(msgspec.Struct, frozen=True, tag_field="status", tag="error"):
    error: str


AttestedResponse = Union[AttestedWithdrawal, AttestedFailure]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode(data: Any, typ: Any, what: str) -> Any:
    try:
        if isinstance(data, (bytes, bytearray, memoryview, str)):
            return msgspec.json.decode(data, type=typ)
        return msgspec.convert(data, type=typ)
    except msgspec.DecodeError as e:
        raise BoundaryError(f"unexpected {what} response: {e}") from e


def decode_proof_response(data: Any) -> ProofResponse:
    return _decode(data, ProofResponse, "proof producer")


def decode_attested_response(data: Any) -> AttestedResponse:
    return _decode(data, AttestedResponse, "attested executor")


def encode(msg: msgspec.Struct) -> bytes:
    return msgspec.json.encode(msg)


def _unhex(s: str, what: str) -> bytes:
    t = s[2:] if s[:2] in ("0x", "0X") else s
    try:
        return bytes.fromhex(t)
    except ValueError as e:
        raise BoundaryError(f"{what} is not hex") from e


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def build_proof_request(
    note: DepositNote,
    leaves: Sequence[int],
    recipient: Union[str, bytes],
    depth: int,
    *,
    amount: Optional[int] = None,
) -> ProofRequest:
    """
    Prepare circuit inputs for `note` from the ledger's ordered leaf list.

    The Merkle path comes from `vault.merkle`, the same tree the ledger keeps
    incrementally, so its root is the ledger's current root for `leaves`.
    """
    if not note.confirmed:
        raise ValueError("note has no leaf index; confirm it after the deposit")
    if note.leaf_index >= len(leaves) or leaves[note.leaf_index] != note.commitment:
        raise ValueError("note commitment is not at its leaf index")
    path = merkle_path(leaves, note.leaf_index, depth)
    return ProofRequest(
        root=to_hex(path.root),
        nullifier_hash=to_hex(note.nullifier_hash()),
        recipient=address_hex(normalize_address(recipient)),
        amount=str(note.amount if amount is None else amount),
        secret=to_hex(note.secret),
        seed=to_hex(note.seed),
        leaf_index=note.leaf_index,
        siblings=[to_hex(s) for s in path.siblings],
        indices=list(path.indices),
    )


def build_attested_request(note: DepositNote, leaves: Sequence[int], recipient: Union[str, bytes],
                           depth: int) -> AttestedWithdrawalRequest:
    req = build_proof_request(note, leaves, recipient, depth)
    return AttestedWithdrawalRequest(
        commitment=to_hex(note.commitment),
        nullifier_hash=req.nullifier_hash,
        recipient=req.recipient,
        amount=req.amount,
        siblings=req.siblings,
        indices=req.indices,
    )


# ---------------------------------------------------------------------------
# Attestation
# ---------------------------------------------------------------------------


def expected_attestation_hash(nullifier_hash: int, root: int) -> bytes:
    return to_bytes32(poseidon2(nullifier_hash, root))


@dataclass(frozen=True)
class Attestation:
    data_hash: bytes
    timestamp: int
    enclave_id: bytes
    signature: bytes = b""

    @classmethod
    def decode(cls, blob: bytes) -> "Attestation":
        if len(blob) < ATTESTATION_HEADER_BYTES:
            raise BoundaryError("attestation shorter than its header", length=len(blob))
        return cls(
            data_hash=bytes(blob[0:32]),
            timestamp=int.from_bytes(blob[32:40], "little"),
            enclave_id=bytes(blob[40:72]),
            signature=bytes(blob[72:]),
        )

    def encode(self) -> bytes:
        if len(self.data_hash) != 32 or len(self.enclave_id) != 32:
            raise ValueError("data_hash and enclave_id must be 32 bytes")
        return self.data_hash + self.timestamp.to_bytes(8, "little") + self.enclave_id + self.signature

    @classmethod
    def for_withdrawal(cls, nullifier_hash: int, root: int, *, enclave_id: bytes = bytes(32),
                       timestamp: Optional[int] = None, signature: bytes = b"") -> "Attestation":
        return cls(
            data_hash=expected_attestation_hash(nullifier_hash, root),
            timestamp=int(time.time()) if timestamp is None else timestamp,
            enclave_id=enclave_id,
            signature=signature,
        )


# ---------------------------------------------------------------------------
# Demo producer
# ---------------------------------------------------------------------------


class DemoProofProducer:
    """
    Answers a ProofRequest with a fallback-format proof after checking the
    witness locally. Only a verifier in fallback mode accepts its output.
    """

    def produce(self, req: ProofRequest) -> ProofResponse:
        try:
            root = parse_field(req.root)
            nh = parse_field(req.nullifier_hash)
            secret = parse_field(req.secret)
            seed = parse_field(req.seed)
            amount = int(req.amount)
            leaf = commitment(secret, seed, amount)
            if compute_root(leaf, [parse_field(s) for s in req.siblings], req.indices) != root:
                return ProofFailed(error="merkle path does not reach root")
            if [(req.leaf_index >> i) & 1 for i in range(len(req.indices))] != list(req.indices):
                return ProofFailed(error="path indices do not match leaf index")
            if nullifier(seed, req.leaf_index) != nh:
                return ProofFailed(error="nullifier does not match note")
            recipient = address_to_field(req.recipient)
        except (ValueError, ZKError, VaultError) as e:
            return ProofFailed(error=str(e))
        proof = build_fallback_proof(root, nh, recipient, amount)
        return ProofProduced(
            proof="0x" + proof.hex(),
            public_inputs=[to_hex(x) for x in (root, nh, recipient, amount)],
        )

    def respond(self, request_json: bytes) -> bytes:
        """JSON in, JSON out; the wire shape a remote producer would use."""
        try:
            req = msgspec.json.decode(request_json, type=ProofRequest)
        except msgspec.DecodeError as e:
            return encode(ProofFailed(error=f"bad request: {e}"))
        return encode(self.produce(req))


__all__ = [
    "ProofRequest",
    "ProofProduced",
    "ProofFailed",
    "ProofResponse",
    "AttestedWithdrawalRequest",
    "AttestedWithdrawal",
    "AttestedFailure",
    "AttestedResponse",
    "decode_proof_response",
    "decode_attested_response",
    "encode",
    "build_proof_request",
    "build_attested_request",
    "expected_attestation_hash",
    "Attestation",
    "DemoProofProducer",
]

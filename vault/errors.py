"""
vault.errors
------------

A small, consistent error system for the ledger and its collaborators.

Design goals
------------
- One root `VaultError` with machine-friendly `code` and optional `data`.
- One concrete subclass per caller-visible failure kind, so callers can match
  on the type (``except DoubleSpend``) or on the stable code string.
- Safe JSON representation (`to_dict`) suitable for logs and the CLI.
- Nothing here is retried by the core: every kind is ``retryable=False``.

This module uses only stdlib to avoid import cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

# ---------------------------------------------------------------------------
# Error codes & classes
# ---------------------------------------------------------------------------


class Severity(IntEnum):
    """Optional severity hint for operators."""

    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


class VaultErrorCode(str, Enum):
    # Generic
    INTERNAL = "VAULT/INTERNAL"
    CONFIG = "VAULT/CONFIG"
    STORAGE = "VAULT/STORAGE"
    BOUNDARY = "VAULT/BOUNDARY"

    # Deposit
    INVALID_AMOUNT = "VAULT/INVALID_AMOUNT"
    INVALID_COMMITMENT = "VAULT/INVALID_COMMITMENT"
    TREE_FULL = "VAULT/TREE_FULL"

    # Withdraw
    INVALID_RECIPIENT = "VAULT/INVALID_RECIPIENT"
    DOUBLE_SPEND = "VAULT/DOUBLE_SPEND"
    UNKNOWN_ROOT = "VAULT/UNKNOWN_ROOT"
    INVALID_PROOF = "VAULT/INVALID_PROOF"
    INVALID_ATTESTATION = "VAULT/INVALID_ATTESTATION"
    TRANSFER_FAILED = "VAULT/TRANSFER_FAILED"

    # Association / compliance
    PROVIDER_NOT_ACTIVE = "VAULT/PROVIDER_NOT_ACTIVE"
    INVALID_ASSOCIATION_PROOF = "VAULT/INVALID_ASSOCIATION_PROOF"
    ASSOCIATION_REJECTED = "VAULT/ASSOCIATION_REJECTED"
    NOT_AUTHORIZED = "VAULT/NOT_AUTHORIZED"

    # Audit
    AUDIT = "VAULT/AUDIT"


@dataclass(eq=False)
class VaultError(Exception):
    """
    Root error for vault components.

    Attributes
    ----------
    code: str
        Machine-stable error code (see VaultErrorCode).
    message: str
        Human hint suitable for logs; never carries note secrets.
    data: dict
        Optional machine data (hex roots, amounts, indices). JSON-serializable.
    severity: Severity
        Optional severity hint (default ERROR).
    retryable: bool
        Whether the operation may succeed on retry without changing inputs.
    cause: Optional[BaseException]
        Wrapped original exception; not included in equality comparison.
    """

    code: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.ERROR
    retryable: bool = False
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        # Make Exception(args) meaningful for interop
        super().__init__(f"{self.code}: {self.message}")

    # ---------------- Public API ----------------

    def _clone(self, **changes: Any) -> "VaultError":
        new = type(self).__new__(type(self))
        new.__dict__.update(self.__dict__)
        new.__dict__.update(changes)
        Exception.__init__(new, *self.args)
        return new

    def with_context(self, **ctx: Any) -> "VaultError":
        """Return a *new* error of the same kind with extra context merged."""
        return self._clone(data={**self.data, **_jsonmap(ctx)})

    def with_cause(self, exc: BaseException) -> "VaultError":
        """Attach/replace the causal exception (returns a new instance)."""
        return self._clone(data=dict(self.data), cause=exc)

    def to_dict(self, include_cause: bool = False) -> Dict[str, Any]:
        """JSON-safe shape suitable for logs and CLI output."""
        out = {
            "code": str(getattr(self.code, "value", self.code)),
            "kind": type(self).__name__,
            "message": self.message,
            "data": _coerce_json(self.data),
            "severity": int(self.severity),
            "retryable": self.retryable,
        }
        if include_cause and self.cause is not None:
            out["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return out

    def __str__(self) -> str:  # pragma: no cover - human formatting
        parts = [f"{getattr(self.code, 'value', self.code)}: {self.message}"]
        if self.data:
            preview = ", ".join(f"{k}={_preview(v)}" for k, v in self.data.items())
            parts.append(f"[{preview}]")
        return " ".join(parts)


def _kind(code: VaultErrorCode, default_message: str):
    """Build the `__init__` shared by the thin subclasses below."""

    def __init__(self, message: str = default_message, **data: Any) -> None:
        VaultError.__init__(self, code=code, message=message, data=_jsonmap(data))

    return __init__


class InternalError(VaultError):
    __init__ = _kind(VaultErrorCode.INTERNAL, "internal error")


class ConfigError(VaultError):
    __init__ = _kind(VaultErrorCode.CONFIG, "invalid configuration")


class StorageError(VaultError):
    __init__ = _kind(VaultErrorCode.STORAGE, "storage error")


class BoundaryError(VaultError):
    """A collaborator answered with a shape that matches no known variant."""

    __init__ = _kind(VaultErrorCode.BOUNDARY, "unexpected collaborator response")


class InvalidAmount(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_AMOUNT, "amount out of range")


class InvalidCommitment(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_COMMITMENT, "invalid commitment")


class TreeFull(VaultError):
    __init__ = _kind(VaultErrorCode.TREE_FULL, "commitment tree is full")


class InvalidRecipient(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_RECIPIENT, "invalid recipient")


class DoubleSpend(VaultError):
    __init__ = _kind(VaultErrorCode.DOUBLE_SPEND, "nullifier already spent")


class UnknownRoot(VaultError):
    __init__ = _kind(VaultErrorCode.UNKNOWN_ROOT, "root is not in the recent history")


class InvalidProof(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_PROOF, "proof rejected")


class InvalidAttestation(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_ATTESTATION, "attestation does not bind nullifier and root")


class TransferFailed(VaultError):
    __init__ = _kind(VaultErrorCode.TRANSFER_FAILED, "transfer failed")


class ProviderNotActive(VaultError):
    __init__ = _kind(VaultErrorCode.PROVIDER_NOT_ACTIVE, "association provider not registered or inactive")


class InvalidAssociationProof(VaultError):
    __init__ = _kind(VaultErrorCode.INVALID_ASSOCIATION_PROOF, "association proof rejected")


class AssociationRejected(VaultError):
    __init__ = _kind(VaultErrorCode.ASSOCIATION_REJECTED, "commitment not admitted to association set")


class NotAuthorized(VaultError):
    __init__ = _kind(VaultErrorCode.NOT_AUTHORIZED, "caller not authorized")


class AuditError(VaultError):
    __init__ = _kind(VaultErrorCode.AUDIT, "audit trail error")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

T = TypeVar("T", bound=VaultError)


def wrap(exc: BaseException, *, as_: Type[T] = InternalError, **ctx: Any) -> T:
    """
    Wrap any exception into a VaultError subclass, attaching context.
    If `exc` is already a VaultError, returns a context-enriched copy.
    """
    if isinstance(exc, VaultError):
        return exc.with_context(**ctx)  # type: ignore[return-value]
    err = as_(str(exc) or "wrapped exception", **ctx)  # type: ignore[call-arg]
    return err.with_cause(exc)  # type: ignore[return-value]


def _jsonmap(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: _coerce_json(v) for k, v in data.items()}


def _coerce_json(v: Any) -> Any:
    # Keep JSON primitives; hex-encode bytes; stringify the rest.
    if isinstance(v, Enum):
        return v.value
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    if isinstance(v, (list, tuple)):
        return [_coerce_json(x) for x in v]
    if isinstance(v, dict):
        return {str(k): _coerce_json(x) for k, x in v.items()}
    if isinstance(v, (bytes, bytearray, memoryview)):
        return "0x" + bytes(v).hex()
    return str(v)


def _preview(v: Any, limit: int = 96) -> str:
    s = str(_coerce_json(v))
    return s if len(s) <= limit else s[:limit] + "..."


__all__ = [
    "Severity",
    "VaultErrorCode",
    "VaultError",
    "InternalError",
    "ConfigError",
    "StorageError",
    "BoundaryError",
    "InvalidAmount",
    "InvalidCommitment",
    "TreeFull",
    "InvalidRecipient",
    "DoubleSpend",
    "UnknownRoot",
    "InvalidProof",
    "InvalidAttestation",
    "TransferFailed",
    "ProviderNotActive",
    "InvalidAssociationProof",
    "AssociationRejected",
    "NotAuthorized",
    "AuditError",
    "wrap",
]

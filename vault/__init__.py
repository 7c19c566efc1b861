"""
Privacy vault: a withdrawal ledger over a commitment/nullifier accumulator.

Deposits append Poseidon commitments to an incremental Merkle tree; a
withdrawal names a recent root, spends a nullifier and carries a proof that
the spender owns some unspent deposit under that root. An optional
association layer lets the withdrawal also bind to a provider's approved set.

Entry points:
    vault.ledger.Ledger          state machine (deposit / withdraw)
    vault.notes.DepositNote      client-side secret note
    vault.association            provider registry and approved sets
    vault.audit                  compliance audit trail with disclosures
    vault.boundary               proof producer / attested executor codecs
    vault.cli                    `python -m vault` command line
"""

from .version import __version__

__all__ = ["__version__"]

from dataclasses import replace

import pytest

from vault.association import (AssociationSet, ExclusionList, PolicyType,
                               check_association_proof,
                               encode_association_proof)
from vault.errors import (AssociationRejected, DoubleSpend,
                          InvalidAssociationProof, NotAuthorized,
                          ProviderNotActive)
from vault.ledger import Ledger
from vault.merkle import merkle_root, merkle_verify
from vault.tests import (ADMIN, AMOUNT, OTHER_PROVIDER, PROVIDER, RECIPIENT,
                         STRANGER, deposit_note, withdrawal_args)
from zk.verifiers.field import P, to_bytes32, to_hex


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_register_self_and_by_admin(registry, clock):
    rec = registry.register_provider(PROVIDER, PROVIDER, "Self ASP")
    assert rec.active and rec.reputation_score == 100
    assert rec.registered_at == clock.now
    registry.register_provider(ADMIN, OTHER_PROVIDER, "Admin-made ASP", initial_root=5)
    assert registry.is_registered(PROVIDER) and registry.is_registered(OTHER_PROVIDER)
    assert registry.get_provider_root(OTHER_PROVIDER) == 5
    assert registry.get_provider(STRANGER) is None
    assert registry.get_provider_root(STRANGER) == 0


def test_register_refuses_strangers_and_duplicates(registry):
    with pytest.raises(NotAuthorized):
        registry.register_provider(STRANGER, PROVIDER, "Impostor")
    registry.register_provider(PROVIDER, PROVIDER, "ASP")
    with pytest.raises(NotAuthorized, match="already"):
        registry.register_provider(ADMIN, PROVIDER, "Again")


def test_update_root_keeps_bounded_history(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP")
    for root in (10, 20, 30, 40, 50):
        registry.update_root(PROVIDER, root)
    rec = registry.get_provider(PROVIDER)
    assert rec.current_root == 50
    # history_size is 3 in the fixture
    assert rec.root_history == [20, 30, 40]
    assert registry.is_historical_root(PROVIDER, 50)
    assert registry.is_historical_root(PROVIDER, 20)
    assert not registry.is_historical_root(PROVIDER, 10)
    assert not registry.is_historical_root(STRANGER, 50)


def test_zero_root_is_never_historical(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP")
    assert registry.get_provider_root(PROVIDER) == 0
    assert not registry.is_historical_root(PROVIDER, 0)
    registry.update_root(PROVIDER, 7)
    # the initial zero root is not pushed into history
    assert registry.get_provider(PROVIDER).root_history == []
    assert not registry.is_historical_root(PROVIDER, 0)


def test_update_root_requires_registration(registry):
    with pytest.raises(ProviderNotActive):
        registry.update_root(STRANGER, 1)


def test_admin_controls_activation_and_reputation(registry):
    registry.register_provider(PROVIDER, PROVIDER, "A")
    registry.register_provider(OTHER_PROVIDER, OTHER_PROVIDER, "B")
    with pytest.raises(NotAuthorized):
        registry.set_active(PROVIDER, PROVIDER, False)
    with pytest.raises(NotAuthorized):
        registry.set_reputation(PROVIDER, PROVIDER, 100)

    registry.set_reputation(ADMIN, OTHER_PROVIDER, 50)
    assert [p.name for p in registry.get_high_reputation_providers()] == ["A"]
    assert [p.name for p in registry.get_high_reputation_providers(min_score=40)] == ["A", "B"]

    registry.set_active(ADMIN, PROVIDER, False)
    assert not registry.is_active(PROVIDER)
    assert [p.name for p in registry.get_active_providers()] == ["B"]
    assert registry.get_high_reputation_providers() == []
    with pytest.raises(ProviderNotActive):
        registry.set_active(ADMIN, STRANGER, True)


def test_provider_json(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP", initial_root=3)
    registry.update_root(PROVIDER, 4)
    j = registry.get_provider(PROVIDER).to_json()
    assert j["provider"] == PROVIDER
    assert j["currentRoot"] == to_hex(4)
    assert j["rootHistory"] == [to_hex(3)]


# ---------------------------------------------------------------------------
# Association proof
# ---------------------------------------------------------------------------


def test_check_association_proof(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP", initial_root=77)
    blob = encode_association_proof(1234, 77)
    assert len(blob) == 64
    assert blob[:32] == to_bytes32(1234)
    assert check_association_proof(blob, 1234, PROVIDER, registry) == 77

    with pytest.raises(InvalidAssociationProof, match="64 bytes"):
        check_association_proof(blob[:63], 1234, PROVIDER, registry)
    with pytest.raises(InvalidAssociationProof, match="different root"):
        check_association_proof(blob, 1235, PROVIDER, registry)
    with pytest.raises(InvalidAssociationProof, match="not published"):
        check_association_proof(encode_association_proof(1234, 78), 1234, PROVIDER, registry)
    with pytest.raises(InvalidAssociationProof):
        check_association_proof(encode_association_proof(1234, 0), 1234, PROVIDER, registry)


def test_association_root_must_be_canonical(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP", initial_root=77)
    aliased = to_bytes32(1234) + (77 + P).to_bytes(32, "big")
    with pytest.raises(InvalidAssociationProof, match="canonical"):
        check_association_proof(aliased, 1234, PROVIDER, registry)


# ---------------------------------------------------------------------------
# Provider-side set
# ---------------------------------------------------------------------------


def test_association_set_membership():
    aset = AssociationSet(PROVIDER, depth=4)
    assert aset.add_commitment(11) == 0
    assert aset.add_commitment(22) == 1
    assert aset.add_commitment(11) == 0  # already present
    assert len(aset) == 2
    path = aset.membership_path(22)
    assert path.root == aset.root
    assert merkle_verify(22, path)
    assert aset.is_approved(11) and not aset.is_approved(33)
    with pytest.raises(AssociationRejected):
        aset.membership_path(33)


def test_association_set_exclusions_and_capacity():
    excl = ExclusionList(source="sanctions")
    excl.add_exact(5)
    excl.add_prefix(b"\x12")
    assert len(excl) == 2
    aset = AssociationSet(PROVIDER, depth=4, max_set_size=2, exclusions=excl)
    with pytest.raises(AssociationRejected, match="excluded"):
        aset.add_commitment(5)
    with pytest.raises(AssociationRejected, match="excluded"):
        aset.add_commitment((0x12 << 248) + 1)
    aset.add_commitment(6)
    aset.add_commitment(7)
    with pytest.raises(AssociationRejected, match="full"):
        aset.add_commitment(8)

    later = ExclusionList()
    later.add_exact(6)
    aset.set_exclusion_list(later)
    assert not aset.is_approved(6)
    with pytest.raises(AssociationRejected):
        aset.membership_path(6)
    with pytest.raises(ValueError):
        later.add_prefix(b"")


def test_restrictive_policy_admits_only_screened_commitments():
    aset = AssociationSet(PROVIDER, depth=4, policy=PolicyType.RESTRICTIVE)
    with pytest.raises(AssociationRejected, match="screened"):
        aset.add_commitment(11)
    aset.allow(11)
    assert aset.add_commitment(11) == 0
    assert aset.is_approved(11)

    open_set = AssociationSet(PROVIDER, depth=4)
    assert open_set.policy is PolicyType.PERMISSIVE
    assert open_set.add_commitment(11) == 0


def test_remove_commitment_rebuilds_the_tree():
    aset = AssociationSet(PROVIDER, depth=4)
    for c in (11, 22, 33):
        aset.add_commitment(c)
    stale = aset.membership_path(33)

    assert aset.remove_commitment(22) is True
    assert aset.remove_commitment(22) is False
    assert len(aset) == 2
    assert not aset.is_approved(22)
    assert aset.root == merkle_root([11, 33], 4)
    with pytest.raises(AssociationRejected):
        aset.membership_path(22)

    path = aset.membership_path(33)
    assert path.index == 1
    assert aset.verify_membership(33, path)
    assert not aset.verify_membership(33, stale)
    assert aset.add_commitment(44) == 2


def test_removing_every_commitment_restores_the_empty_root():
    aset = AssociationSet(PROVIDER, depth=4)
    empty = aset.root
    aset.add_commitment(11)
    assert aset.remove_commitment(11)
    assert len(aset) == 0 and aset.root == empty


def test_verify_membership():
    aset = AssociationSet(PROVIDER, depth=4)
    for c in (11, 22, 33):
        aset.add_commitment(c)
    path = aset.membership_path(22)
    assert aset.verify_membership(22, path)
    assert not aset.verify_membership(11, path)
    assert not aset.verify_membership(
        22, replace(path, siblings=(path.siblings[0] + 1,) + path.siblings[1:]))
    assert not aset.verify_membership(22, replace(path, index=path.index ^ 1))

    excl = ExclusionList()
    excl.add_exact(22)
    aset.set_exclusion_list(excl)
    assert not aset.verify_membership(22, path)


def test_association_set_publish(registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP")
    aset = AssociationSet(PROVIDER, depth=4)
    aset.add_commitment(99)
    root = aset.publish(registry)
    assert registry.get_provider_root(PROVIDER) == root == aset.root


# ---------------------------------------------------------------------------
# Ledger compliance withdrawals
# ---------------------------------------------------------------------------


def _compliant_setup(ledger, registry):
    registry.register_provider(PROVIDER, PROVIDER, "ASP")
    note = deposit_note(ledger)
    deposit_note(ledger)
    aset = AssociationSet(PROVIDER, depth=4)
    aset.add_commitment(note.commitment)
    assoc_root = aset.publish(registry)
    nh, root, proof = withdrawal_args(ledger, note)
    blob = encode_association_proof(int(root, 16), assoc_root)
    return nh, root, proof, blob, assoc_root


def test_withdraw_with_compliance(ledger, registry):
    nh, root, proof, blob, assoc_root = _compliant_setup(ledger, registry)
    receipt = ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, PROVIDER)
    assert receipt.association_root == assoc_root
    assert receipt.to_json()["associationRoot"] == to_hex(assoc_root)
    with pytest.raises(DoubleSpend):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, PROVIDER)


def test_compliance_accepts_recent_association_root(ledger, registry):
    nh, root, proof, blob, _ = _compliant_setup(ledger, registry)
    registry.update_root(PROVIDER, 123456)
    ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, PROVIDER)


def test_compliance_requires_active_provider(ledger, registry):
    nh, root, proof, blob, _ = _compliant_setup(ledger, registry)
    with pytest.raises(ProviderNotActive):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, STRANGER)
    with pytest.raises(ProviderNotActive):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, "0xabc")
    registry.set_active(ADMIN, PROVIDER, False)
    with pytest.raises(ProviderNotActive):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob, PROVIDER)
    assert not ledger.is_nullifier_used(nh)


def test_compliance_rejects_bad_association_proof(ledger, registry):
    nh, root, proof, blob, assoc_root = _compliant_setup(ledger, registry)
    with pytest.raises(InvalidAssociationProof):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, blob[:40], PROVIDER)
    stale = encode_association_proof(int(root, 16), assoc_root + 1)
    with pytest.raises(InvalidAssociationProof):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, stale, PROVIDER)
    other_root = encode_association_proof(int(root, 16) + 1, assoc_root)
    with pytest.raises(InvalidAssociationProof):
        ledger.withdraw_with_compliance(nh, root, RECIPIENT, AMOUNT, proof, other_root, PROVIDER)
    assert not ledger.is_nullifier_used(nh)


def test_compliance_without_registry(kv, small_config, clock):
    ledger = Ledger(kv, config=small_config, clock=clock)
    with pytest.raises(ProviderNotActive):
        ledger.withdraw_with_compliance(to_hex(1), to_hex(2), RECIPIENT, AMOUNT, b"", b"", PROVIDER)

import os

import pytest

from vault import config as config_mod
from vault.association import AssociationRegistry
from vault.audit import AuditTrail
from vault.db import open_kv
from vault.funds import InMemoryFunds
from vault.ledger import Ledger
from vault.tests import ADMIN, FakeClock
from zk.verifiers import WithdrawalVerifier


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """No VAULT_* leakage from the host; default data dir lives in tmp."""
    for name in list(os.environ):
        if name.startswith("VAULT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("VAULT_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def kv():
    store = open_kv("memory://")
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def small_config():
    return config_mod.load(
        db={"uri": "memory://"},
        tree={"depth": 8, "history_size": 4},
        association={"admin": ADMIN, "history_size": 3},
    )


@pytest.fixture
def funds():
    return InMemoryFunds()


@pytest.fixture
def registry(kv, small_config, clock):
    return AssociationRegistry(kv, admin=ADMIN, history_size=small_config.association.history_size,
                               clock=clock)


@pytest.fixture
def ledger(kv, small_config, funds, registry, clock):
    return Ledger(kv, config=small_config, verifier=WithdrawalVerifier(), funds=funds,
                  registry=registry, clock=clock)


@pytest.fixture
def audit(kv, clock):
    return AuditTrail(kv, depth=8, clock=clock)


@pytest.fixture
def audited_registry(kv, small_config, clock, audit):
    return AssociationRegistry(kv, admin=ADMIN, history_size=small_config.association.history_size,
                               clock=clock, audit=audit)


@pytest.fixture
def audited_ledger(kv, small_config, funds, audited_registry, audit, clock):
    return Ledger(kv, config=small_config, verifier=WithdrawalVerifier(), funds=funds,
                  registry=audited_registry, audit=audit, clock=clock)

"""
Tests for the SQL project store, on a temporary SQLite file.
"""

import sys
from pathlib import Path

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankerbot.core.db import get_engine
from rankerbot.core.models import ProjectStatus
from rankerbot.core.store import ProjectOwnershipError, SqlProjectStore, StoredWallet

MINT = "TokenMint111111111111111111111111111111111"


def wallet(name):
    return StoredWallet(pubkey=name, encrypted_secret=b"secret-" + name.encode(), salt=b"salt-" + name.encode())


@pytest.fixture
def store(tmp_path):
    return SqlProjectStore(get_engine(str(tmp_path / "rankerbot.db")))


class TestProjects:
    """Create, read and ownership."""

    def test_upsert_creates_project(self, store):
        record = store.upsert(1, MINT, {"token_name": "TEST", "owner_username": "alice"})

        assert record.owner_id == 1
        assert record.token_name == "TEST"
        assert record.status == ProjectStatus.ONBOARDED
        assert record.worker_wallets == []
        assert record.project_wallet is None

    def test_get_is_owner_scoped(self, store):
        store.upsert(1, MINT, {})

        assert store.get(1, MINT) is not None
        assert store.get(2, MINT) is None
        assert store.get(1, "OtherMint") is None
        assert store.owner_of(MINT) == 1

    def test_asset_has_one_owner(self, store):
        store.upsert(1, MINT, {})

        with pytest.raises(ProjectOwnershipError):
            store.upsert(2, MINT, {"token_name": "MINE"})
        assert store.get(1, MINT).token_name is None

    def test_status_patch(self, store):
        store.upsert(1, MINT, {})
        store.upsert(1, MINT, {"status": ProjectStatus.ACTIVE})

        assert store.get(1, MINT).status == ProjectStatus.ACTIVE

    def test_custom_settings_merge(self, store):
        store.upsert(1, MINT, {})
        store.save_custom_setting(1, MINT, "buy_min", 0.01)
        store.save_custom_setting(1, MINT, "buy_max", 0.02)
        store.upsert(1, MINT, {"volume_custom_settings": {"buy_min": 0.015}})

        assert store.get(1, MINT).volume_custom_settings == {"buy_min": 0.015, "buy_max": 0.02}

    def test_list_projects(self, store):
        store.upsert(1, "MintA", {})
        store.upsert(2, "MintB", {})
        store.upsert(1, "MintC", {})

        assert [p.token_mint for p in store.list_projects(1)] == ["MintA", "MintC"]


class TestWallets:
    """Project wallet and append-only workers."""

    def test_project_wallet_set_once(self, store):
        store.upsert(1, MINT, {})

        assert store.set_project_wallet(1, MINT, wallet("P1")) is True
        assert store.set_project_wallet(1, MINT, wallet("P2")) is False
        assert store.get(1, MINT).project_wallet == wallet("P1")

    def test_workers_append_in_order(self, store):
        store.upsert(1, MINT, {})

        assert store.add_worker_wallets(1, MINT, [wallet("W1"), wallet("W2")]) == 2
        assert store.add_worker_wallets(1, MINT, [wallet("W3")]) == 3

        record = store.get(1, MINT)
        assert [w.pubkey for w in record.worker_wallets] == ["W1", "W2", "W3"]
        assert record.worker_wallets[2].encrypted_secret == b"secret-W3"

    def test_project_wallet_not_a_worker(self, store):
        store.upsert(1, MINT, {})
        store.set_project_wallet(1, MINT, wallet("P1"))
        store.add_worker_wallets(1, MINT, [wallet("W1")])

        assert [w.pubkey for w in store.get(1, MINT).worker_wallets] == ["W1"]

    def test_wallets_require_owner(self, store):
        store.upsert(1, MINT, {})

        with pytest.raises(ProjectOwnershipError):
            store.add_worker_wallets(2, MINT, [wallet("W1")])
        with pytest.raises(LookupError):
            store.add_worker_wallets(1, "Unknown", [wallet("W1")])

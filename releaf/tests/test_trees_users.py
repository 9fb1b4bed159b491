"""
Tests for the tree registry and user removal
"""

import threading
import pytest
from datetime import date
from decimal import Decimal

from pydantic import ValidationError as ModelValidationError

from releaf.errors import Conflict, DuplicatePendingRequest, Forbidden, NotFound, ValidationError
from releaf.models import (
    AllocationRequest,
    Caller,
    Role,
    TransactionType,
    TreeCreate,
    TreeStatus,
    WithdrawalCreate,
)
from releaf.service import LedgerService
from releaf.storage import InMemoryStorage
from releaf.trees import TreeRegistry
from releaf.users import UserDirectory
from releaf.withdrawals import WithdrawalService


ADMIN = Caller(user_id=1, role=Role.ADMIN)
MEMBER = Caller(user_id=2, role=Role.MEMBER)
OTHER_MEMBER = Caller(user_id=3, role=Role.MEMBER)
SEEDED_TREE = 1


def oak() -> TreeCreate:
    return TreeCreate(planted_date=date(2024, 5, 1), location="Karura Forest", tree_type="Oak")


class TestTreeRegistry:
    """Tests for planting submissions."""

    def test_submit_tree(self):
        registry = TreeRegistry()

        tree = registry.submit_tree(OTHER_MEMBER, oak())

        assert tree.user_id == OTHER_MEMBER.user_id
        assert tree.status == TreeStatus.PENDING
        assert tree.tokens_allocated == Decimal("0")

    def test_blank_location_rejected(self):
        with pytest.raises(ModelValidationError):
            TreeCreate(planted_date=date(2024, 5, 1), location=" ", tree_type="Oak")

    def test_members_see_own_trees(self):
        registry = TreeRegistry()
        theirs = registry.submit_tree(OTHER_MEMBER, oak())

        assert [t.id for t in registry.list_trees(OTHER_MEMBER)] == [theirs.id]
        assert len(registry.list_trees(ADMIN)) == 2
        with pytest.raises(Forbidden):
            registry.get_tree(MEMBER, theirs.id)

    def test_verify_tree(self):
        registry = TreeRegistry()

        tree = registry.set_tree_status(ADMIN, SEEDED_TREE, TreeStatus.VERIFIED, notes="Photo checks out")

        assert tree.status == TreeStatus.VERIFIED
        assert tree.verified_by == ADMIN.user_id
        assert tree.verified_at is not None
        assert registry.list_trees(ADMIN, TreeStatus.VERIFIED)[0].id == SEEDED_TREE

    def test_only_admin_sets_status(self):
        registry = TreeRegistry()

        with pytest.raises(Forbidden):
            registry.set_tree_status(MEMBER, SEEDED_TREE, TreeStatus.VERIFIED)
        with pytest.raises(NotFound):
            registry.set_tree_status(ADMIN, 999, TreeStatus.REJECTED)

    def test_delete_tree_keeps_transactions(self):
        storage = InMemoryStorage()
        ledger = LedgerService(storage)
        registry = TreeRegistry(storage)
        transaction = ledger.allocate(ADMIN, AllocationRequest(
            user_id=2, amount=Decimal("10"), type=TransactionType.REWARD, tree_id=SEEDED_TREE, auto_approve=True,
        ))

        registry.delete_tree(MEMBER, SEEDED_TREE)

        kept = ledger.get_transaction(ADMIN, transaction.id)
        assert kept.tree_id is None
        assert ledger.get_balance(MEMBER).balance == Decimal("10")
        with pytest.raises(NotFound):
            registry.get_tree(ADMIN, SEEDED_TREE)

    def test_member_cannot_delete_others_tree(self):
        registry = TreeRegistry()

        with pytest.raises(Forbidden):
            registry.delete_tree(OTHER_MEMBER, SEEDED_TREE)


class TestUserDirectory:
    """Tests for user creation and cascading removal."""

    def test_create_user(self):
        users = UserDirectory()

        user = users.create_user("New.Planter@Example.com", "New Planter")

        assert user.email == "new.planter@example.com"
        assert user.role == Role.MEMBER
        with pytest.raises(Conflict):
            users.create_user("new.planter@example.com", "Someone Else")

    def test_delete_user_cascades(self):
        storage = InMemoryStorage()
        ledger = LedgerService(storage)
        withdrawals = WithdrawalService(ledger)
        users = UserDirectory(storage)
        ledger.allocate(ADMIN, AllocationRequest(
            user_id=2, amount=Decimal("10"), type=TransactionType.REWARD, tree_id=SEEDED_TREE, auto_approve=True,
        ))
        withdrawals.create_request(MEMBER, WithdrawalCreate(amount=Decimal("5"), withdrawal_address="0xwallet"))

        users.delete_user(ADMIN, MEMBER.user_id)

        assert MEMBER.user_id not in storage.users
        assert storage.trees == {}
        assert storage.token_transactions == {}
        assert storage.withdrawal_requests == {}
        assert [s.user_id for s in ledger.list_balances(ADMIN)] == [3]

    def test_cascade_clears_other_users_tree_links(self):
        storage = InMemoryStorage()
        ledger = LedgerService(storage)
        transaction = ledger.allocate(ADMIN, AllocationRequest(
            user_id=3, amount=Decimal("4"), type=TransactionType.REWARD, tree_id=SEEDED_TREE,
        ))

        UserDirectory(storage).delete_user(ADMIN, MEMBER.user_id)

        assert ledger.get_transaction(ADMIN, transaction.id).tree_id is None

    def test_cannot_delete_self(self):
        with pytest.raises(ValidationError):
            UserDirectory().delete_user(ADMIN, ADMIN.user_id)

    def test_delete_requires_admin_and_existing_user(self):
        users = UserDirectory()

        with pytest.raises(Forbidden):
            users.delete_user(MEMBER, OTHER_MEMBER.user_id)
        with pytest.raises(NotFound):
            users.delete_user(ADMIN, 404)


class TestTreeAndUserRoutes:
    """HTTP tests for /trees and /users."""

    def test_submit_and_verify(self, client, admin_headers, member_headers):
        response = client.post(
            "/trees",
            json={"planted_date": "2024-06-01", "location": "Nairobi", "tree_type": "Acacia",
                  "latitude": -1.29, "longitude": 36.82},
            headers=member_headers,
        )
        assert response.status_code == 201
        tree_id = response.json()["id"]

        verified = client.patch(f"/trees/{tree_id}/status", json={"status": "verified"}, headers=admin_headers)
        assert verified.status_code == 200
        assert verified.json()["verified_by"] == 1

    def test_out_of_range_coordinates(self, client, member_headers):
        response = client.post(
            "/trees",
            json={"planted_date": "2024-06-01", "location": "Nowhere", "tree_type": "Acacia", "latitude": 120},
            headers=member_headers,
        )

        assert response.status_code == 400

    def test_delete_user_route(self, client, admin_headers, member_headers):
        assert client.delete("/users/1", headers=admin_headers).status_code == 400
        assert client.delete("/users/3", headers=member_headers).status_code == 403
        assert client.delete("/users/3", headers=admin_headers).status_code == 200
        assert client.delete("/users/3", headers=admin_headers).status_code == 404


class TestConcurrentRemoval:
    """Removals racing with writes that point at the removed row."""

    def test_allocations_racing_tree_delete_leave_no_dangling_link(self):
        storage = InMemoryStorage()
        ledger = LedgerService(storage)
        registry = TreeRegistry(storage)
        barrier = threading.Barrier(9)

        def reward():
            barrier.wait()
            try:
                ledger.allocate(ADMIN, AllocationRequest(
                    user_id=3, amount=Decimal("1"), type=TransactionType.REWARD, tree_id=SEEDED_TREE,
                ))
            except NotFound:
                pass

        def remove():
            barrier.wait()
            registry.delete_tree(MEMBER, SEEDED_TREE)

        threads = [threading.Thread(target=reward) for _ in range(8)] + [threading.Thread(target=remove)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert SEEDED_TREE not in storage.trees
        assert all(row["tree_id"] is None for row in storage.token_transactions.values())

    def test_requests_racing_user_delete_leave_no_orphans(self):
        storage = InMemoryStorage()
        ledger = LedgerService(storage)
        ledger.allocate(ADMIN, AllocationRequest(
            user_id=2, amount=Decimal("25"), type=TransactionType.REWARD, auto_approve=True,
        ))
        withdrawals = WithdrawalService(ledger)
        users = UserDirectory(storage)
        barrier = threading.Barrier(9)

        def request():
            barrier.wait()
            try:
                withdrawals.create_request(MEMBER, WithdrawalCreate(amount=Decimal("5"), withdrawal_address="0xwallet"))
            except (NotFound, DuplicatePendingRequest):
                pass

        def remove():
            barrier.wait()
            users.delete_user(ADMIN, MEMBER.user_id)

        threads = [threading.Thread(target=request) for _ in range(8)] + [threading.Thread(target=remove)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert MEMBER.user_id not in storage.users
        assert all(row["user_id"] in storage.users for row in storage.withdrawal_requests.values())

import itertools
import threading
from contextlib import ExitStack, contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator

from .models import Role, TreeStatus

TABLES = ("users", "trees", "token_transactions", "withdrawal_requests")


class InMemoryStorage:
    """Row tables keyed by integer id, plus the per-user locks that guard ledger writes."""

    def __init__(self, seed: bool = True):
        self.users: dict[int, dict] = {}
        self.trees: dict[int, dict] = {}
        self.token_transactions: dict[int, dict] = {}
        self.withdrawal_requests: dict[int, dict] = {}
        self._sequences = {table: itertools.count(1) for table in TABLES}
        self.lock = threading.RLock()
        self._user_locks: dict[int, threading.RLock] = {}
        if seed:
            self._seed_data()

    def next_id(self, table: str) -> int:
        with self.lock:
            return next(self._sequences[table])

    def user_lock(self, user_id: int) -> threading.RLock:
        with self.lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def locked_users(self, *user_ids: int) -> Iterator[None]:
        # ascending order so two batches never wait on each other
        with ExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                stack.enter_context(self.user_lock(user_id))
            yield

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        for email, name, role in (
            ("admin@releaf.example", "ReLeaf Admin", Role.ADMIN),
            ("planter@releaf.example", "Ada Planter", Role.MEMBER),
            ("grower@releaf.example", "Ben Grower", Role.MEMBER),
        ):
            user_id = self.next_id("users")
            self.users[user_id] = {
                "id": user_id, "email": email, "name": name, "role": role,
                "withdrawal_address": None, "created_at": now, "updated_at": now,
            }

        tree_id = self.next_id("trees")
        self.trees[tree_id] = {
            "id": tree_id, "user_id": 2, "planted_date": date(2024, 4, 22),
            "location": "Kakamega Forest", "latitude": Decimal("0.27"),
            "longitude": Decimal("34.85"), "tree_type": "Mahogany", "photo": None,
            "status": TreeStatus.PENDING, "tokens_allocated": Decimal("0.00"),
            "verified_by": None, "verified_at": None, "notes": None,
            "created_at": now, "updated_at": now,
        }

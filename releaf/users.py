import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import Conflict, NotFound, ValidationError
from .models import Caller, Role, User
from .permissions import ensure_admin
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

# tables whose rows belong to a user and go with them
OWNED_TABLES = ("trees", "token_transactions", "withdrawal_requests")


class UserDirectory:
    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def create_user(self, email: str, name: str, role: Role = Role.MEMBER) -> User:
        email = email.strip().lower()
        with self.storage.lock:
            if any(u["email"] == email for u in self.storage.users.values()):
                raise Conflict("Email is already registered", {"email": email})
            now = datetime.now(timezone.utc)
            user_id = self.storage.next_id("users")
            row = {
                "id": user_id, "email": email, "name": name, "role": role,
                "withdrawal_address": None, "created_at": now, "updated_at": now,
            }
            self.storage.users[user_id] = row
        logger.info("Created %s user %s", role.value, user_id)
        return User(**row)

    def get_user(self, user_id: int) -> User:
        row = self.storage.users.get(user_id)
        if not row:
            raise NotFound("User not found", {"user_id": user_id})
        return User(**row)

    def delete_user(self, caller: Caller, user_id: int) -> None:
        ensure_admin(caller)
        if user_id == caller.user_id:
            raise ValidationError("Cannot delete your own account")

        with self.storage.user_lock(user_id), self.storage.lock:
            if user_id not in self.storage.users:
                raise NotFound("User not found", {"user_id": user_id})
            del self.storage.users[user_id]

            removed_trees = {tid for tid, t in self.storage.trees.items() if t["user_id"] == user_id}
            for table in OWNED_TABLES:
                rows = getattr(self.storage, table)
                for row_id in [rid for rid, row in rows.items() if row["user_id"] == user_id]:
                    del rows[row_id]
            # other users' rewards may still point at the removed trees
            for transaction in self.storage.token_transactions.values():
                if transaction["tree_id"] in removed_trees:
                    transaction["tree_id"] = None

        logger.info("User %s deleted by admin %s", user_id, caller.user_id)

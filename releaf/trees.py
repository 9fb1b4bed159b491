import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import NotFound
from .models import ZERO, Caller, TreeCreate, TreeRecord, TreeStatus
from .permissions import ensure_admin, ensure_can_access
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class TreeRegistry:
    """Planting submissions that rewards point back to through ``tree_id``."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def submit_tree(self, caller: Caller, submission: TreeCreate) -> TreeRecord:
        now = datetime.now(timezone.utc)
        tree_id = self.storage.next_id("trees")
        row = {
            **submission.model_dump(),
            "id": tree_id,
            "user_id": caller.user_id,
            "status": TreeStatus.PENDING,
            "tokens_allocated": ZERO,
            "verified_by": None,
            "verified_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.storage.trees[tree_id] = row
        logger.info("Tree %s submitted by user %s", tree_id, caller.user_id)
        return TreeRecord(**row)

    def list_trees(self, caller: Caller, status: Optional[TreeStatus] = None) -> list[TreeRecord]:
        rows = [
            row for row in list(self.storage.trees.values())
            if (caller.is_admin or row["user_id"] == caller.user_id)
            and (status is None or row["status"] == status)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [TreeRecord(**row) for row in rows]

    def get_tree(self, caller: Caller, tree_id: int) -> TreeRecord:
        row = self._get_row(tree_id)
        ensure_can_access(caller, row["user_id"], "tree")
        return TreeRecord(**row)

    def set_tree_status(
        self, caller: Caller, tree_id: int, status: TreeStatus, notes: Optional[str] = None
    ) -> TreeRecord:
        ensure_admin(caller)
        with self.storage.lock:
            row = self._get_row(tree_id)
            now = datetime.now(timezone.utc)
            row["status"] = status
            row["notes"] = notes
            row["updated_at"] = now
            if status == TreeStatus.VERIFIED:
                row["verified_by"] = caller.user_id
                row["verified_at"] = now
        logger.info("Tree %s marked %s by admin %s", tree_id, status.value, caller.user_id)
        return TreeRecord(**row)

    def delete_tree(self, caller: Caller, tree_id: int) -> None:
        """Remove a tree; transactions that referenced it keep their rows with no tree."""
        with self.storage.lock:
            row = self._get_row(tree_id)
            ensure_can_access(caller, row["user_id"], "tree")
            del self.storage.trees[tree_id]
            for transaction in self.storage.token_transactions.values():
                if transaction["tree_id"] == tree_id:
                    transaction["tree_id"] = None
        logger.info("Tree %s deleted by user %s", tree_id, caller.user_id)

    def _get_row(self, tree_id: int) -> dict:
        row = self.storage.trees.get(tree_id)
        if not row:
            raise NotFound("Tree not found", {"tree_id": tree_id})
        return row

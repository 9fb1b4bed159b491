from .errors import Forbidden
from .models import Caller


def ensure_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Admin access required")


def ensure_can_access(caller: Caller, owner_id: int, resource: str = "resource") -> None:
    """Members may only touch their own rows; admins may touch any."""
    if not caller.is_admin and caller.user_id != owner_id:
        raise Forbidden(f"Not allowed to access this {resource}")

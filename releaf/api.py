import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import get_caller, require_admin
from .config import get_settings
from .errors import LedgerServiceError
from .logging_config import configure_logging
from .models import (
    AddressResponse,
    AddressUpdate,
    AllocationRequest,
    Balance,
    BulkAllocationRequest,
    BulkAllocationResponse,
    Caller,
    TokenTransaction,
    TokenTransactionDetail,
    TransactionStatus,
    TransactionStatusUpdate,
    TransactionType,
    TreeCreate,
    TreeRecord,
    TreeStatus,
    TreeStatusUpdate,
    UserBalanceSummary,
    WithdrawalCreate,
    WithdrawalRequest,
    WithdrawalRequestDetail,
    WithdrawalStatus,
    WithdrawalStatusUpdate,
)
from .service import LedgerService
from .storage import InMemoryStorage
from .trees import TreeRegistry
from .users import UserDirectory
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)


class Services:
    """Every service wired to one shared storage."""

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage(seed=get_settings().seed_demo_data)
        self.ledger = LedgerService(self.storage)
        self.withdrawals = WithdrawalService(self.ledger)
        self.trees = TreeRegistry(self.storage)
        self.users = UserDirectory(self.storage)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

tokens_router = APIRouter(prefix="/tokens", tags=["Tokens"])


@tokens_router.get("/balance", response_model=Balance)
def get_balance(
    caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> Balance:
    return services.ledger.get_balance(caller)


@tokens_router.get("/balances", response_model=list[UserBalanceSummary])
def list_balances(
    caller: Caller = Depends(require_admin), services: Services = Depends(get_services)
) -> list[UserBalanceSummary]:
    return services.ledger.list_balances(caller)


@tokens_router.get("/transactions", response_model=list[TokenTransactionDetail])
def list_transactions(
    user_id: Optional[int] = None,
    transaction_status: Optional[TransactionStatus] = Query(None, alias="status"),
    transaction_type: Optional[TransactionType] = Query(None, alias="type"),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> list[TokenTransactionDetail]:
    return services.ledger.list_transactions(caller, user_id, transaction_status, transaction_type)


@tokens_router.get("/transactions/{transaction_id}", response_model=TokenTransactionDetail)
def get_transaction(
    transaction_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> TokenTransactionDetail:
    return services.ledger.get_transaction(caller, transaction_id)


@tokens_router.post("/allocate", response_model=TokenTransaction, status_code=status.HTTP_201_CREATED)
def allocate_tokens(
    request: AllocationRequest,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> TokenTransaction:
    return services.ledger.allocate(caller, request)


@tokens_router.post("/allocate/bulk", response_model=BulkAllocationResponse, status_code=status.HTTP_201_CREATED)
def bulk_allocate_tokens(
    request: BulkAllocationRequest,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> BulkAllocationResponse:
    return BulkAllocationResponse(transactions=services.ledger.bulk_allocate(caller, request.allocations))


@tokens_router.patch("/transactions/{transaction_id}/status", response_model=TokenTransaction)
def update_transaction_status(
    transaction_id: int,
    request: TransactionStatusUpdate,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> TokenTransaction:
    return services.ledger.set_transaction_status(caller, transaction_id, request.status)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

withdrawals_router = APIRouter(prefix="/withdrawals", tags=["Withdrawals"])


@withdrawals_router.get("/address", response_model=AddressResponse, response_model_exclude_unset=True)
def get_withdrawal_address(
    caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> AddressResponse:
    return AddressResponse(withdrawal_address=services.withdrawals.get_address(caller))


@withdrawals_router.put("/address", response_model=AddressResponse)
def set_withdrawal_address(
    request: AddressUpdate, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> AddressResponse:
    address = services.withdrawals.set_address(caller, request.withdrawal_address)
    return AddressResponse(withdrawal_address=address, message="Withdrawal address updated successfully")


@withdrawals_router.get("/requests", response_model=list[WithdrawalRequestDetail])
def list_withdrawal_requests(
    request_status: Optional[WithdrawalStatus] = Query(None, alias="status"),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> list[WithdrawalRequestDetail]:
    return services.withdrawals.list_requests(caller, request_status)


@withdrawals_router.get("/requests/{request_id}", response_model=WithdrawalRequestDetail)
def get_withdrawal_request(
    request_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> WithdrawalRequestDetail:
    return services.withdrawals.get_request(caller, request_id)


@withdrawals_router.post("/requests", response_model=WithdrawalRequest, status_code=status.HTTP_201_CREATED)
def create_withdrawal_request(
    request: WithdrawalCreate, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> WithdrawalRequest:
    return services.withdrawals.create_request(caller, request)


@withdrawals_router.patch("/requests/{request_id}/status", response_model=WithdrawalRequest)
def update_withdrawal_status(
    request_id: int,
    request: WithdrawalStatusUpdate,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> WithdrawalRequest:
    return services.withdrawals.set_request_status(caller, request_id, request)


# ---------------------------------------------------------------------------
# Trees and users
# ---------------------------------------------------------------------------

trees_router = APIRouter(prefix="/trees", tags=["Trees"])


@trees_router.get("", response_model=list[TreeRecord])
def list_trees(
    tree_status: Optional[TreeStatus] = Query(None, alias="status"),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> list[TreeRecord]:
    return services.trees.list_trees(caller, tree_status)


@trees_router.post("", response_model=TreeRecord, status_code=status.HTTP_201_CREATED)
def submit_tree(
    request: TreeCreate, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> TreeRecord:
    return services.trees.submit_tree(caller, request)


@trees_router.get("/{tree_id}", response_model=TreeRecord)
def get_tree(
    tree_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> TreeRecord:
    return services.trees.get_tree(caller, tree_id)


@trees_router.patch("/{tree_id}/status", response_model=TreeRecord)
def update_tree_status(
    tree_id: int,
    request: TreeStatusUpdate,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
) -> TreeRecord:
    return services.trees.set_tree_status(caller, tree_id, request.status, request.notes)


@trees_router.delete("/{tree_id}")
def delete_tree(
    tree_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)
) -> dict:
    services.trees.delete_tree(caller, tree_id)
    return {"message": "Tree deleted successfully"}


users_router = APIRouter(prefix="/users", tags=["Users"])


@users_router.delete("/{user_id}")
def delete_user(
    user_id: int, caller: Caller = Depends(require_admin), services: Services = Depends(get_services)
) -> dict:
    services.users.delete_user(caller, user_id)
    return {"message": "User deleted successfully"}


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    logger.warning("%s %s -> %s %s: %s", request.method, request.url.path, int(exc.status_code), exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"code": "ValidationError", "message": "Invalid request", "details": {"errors": errors}}},
    )


def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "InternalServerError", "message": "Internal server error"}},
    )


def create_app(storage: Optional[InMemoryStorage] = None, root_path: str = "") -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="ReLeaf Token API",
        description="Tree-planting reward ledger with admin allocations and member withdrawals",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.services = Services(storage)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "releaf-tokens"}

    for router in (tokens_router, withdrawals_router, trees_router, users_router):
        app.include_router(router)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

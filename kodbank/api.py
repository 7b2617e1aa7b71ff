"""
FastAPI REST API Module

HTTP surface of the ledger core: transfers, account listing and detail,
balances and transaction history. Authentication happens upstream; the
caller's identity arrives in the X-User-Id header.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from . import __version__
from .errors import (
    AuthorizationError, ConcurrencyConflictError, InsufficientFundsError,
    LedgerError, NotFoundError, PersistenceError, ReconciliationRequired,
    ValidationError
)
from .ledger import TransactionRecord
from .logging_config import get_logger, log_action
from .system import BankingSystem

logger = get_logger("kodbank.api")

# Most specific class first
ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (InsufficientFundsError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (ReconciliationRequired, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: LedgerError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Pydantic models for API requests
class TransferRequest(BaseModel):
    # Left loose so the engine reports missing or malformed values itself
    from_account: Optional[str] = Field(None, alias="fromAccount")
    to_account: Optional[str] = Field(None, alias="toAccount")
    amount: Any = None
    description: Optional[str] = None


class CreateAccountRequest(BaseModel):
    account_type: Optional[str] = Field(None, alias="accountType")
    account_name: Optional[str] = Field(None, alias="accountName")


def transaction_response(record: TransactionRecord) -> Dict[str, Any]:
    return {
        "transaction_id": record.transaction_id,
        "from_account": record.from_account,
        "to_account": record.to_account,
        "amount": str(record.amount),
        "description": record.description,
        "transaction_type": record.transaction_type,
        "created_at": record.created_at.isoformat()
    }


# Dependencies
def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.system


def get_identity(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity set by the authentication layer in front of this service"""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Access denied. No identity provided.")
    return x_user_id.strip()


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        system: Wired ledger core; a BankingSystem from the global config
            is built when omitted

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="KodBank Ledger API",
        description="Fund transfers and transaction ledger for KodBank",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or BankingSystem()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, error: LedgerError):
        status_code = status_for(error)
        if status_code >= 500:
            log_action(
                logger, "error", f"{request.method} {request.url.path} failed: {error.message}",
                action="http_error", resource=request.url.path,
                extra={"error_code": error.code, "status_code": status_code}
            )
        return JSONResponse(status_code=status_code, content=error.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, error: StarletteHTTPException):
        return JSONResponse(status_code=error.status_code, content={"error": error.detail},
                            headers=getattr(error, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, error: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc'][1:]) or 'body'}: {item['msg']}"
            for item in error.errors()
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                            content={"error": problems or "Invalid request"})

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Blocking handlers are plain functions so FastAPI runs them in its threadpool;
    # transfers wait on account locks.

    @app.post("/api/transfer")
    def transfer(
        request: TransferRequest,
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Move money from one of the caller's accounts to any account"""
        record = system.transfer_engine.transfer(
            from_account=request.from_account,
            to_account=request.to_account,
            amount=request.amount,
            description=request.description,
            requesting_identity=identity
        )
        return {
            "message": "Transfer successful",
            "transactionId": record.transaction_id,
            "fromAccount": record.from_account,
            "toAccount": record.to_account,
            "amount": str(record.amount)
        }

    @app.get("/api/accounts")
    def list_accounts(
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ) -> List[Dict[str, Any]]:
        """Caller's accounts, newest first"""
        return [account.to_response() for account in system.queries.list_accounts(identity)]

    @app.post("/api/accounts", status_code=status.HTTP_201_CREATED)
    def create_account(
        request: CreateAccountRequest,
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Open an additional zero-balance account for the caller"""
        if not request.account_type or not request.account_name:
            raise ValidationError("Account type and name are required")
        account = system.add_account(identity, request.account_type, request.account_name)
        return {
            "message": "Account created successfully",
            "accountId": account.id,
            "accountNumber": account.account_number
        }

    @app.get("/api/accounts/{account_number}")
    def get_account(
        account_number: str,
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Account detail"""
        return system.queries.account_detail(account_number, identity).to_response()

    @app.get("/api/balance/{account_number}")
    def get_balance(
        account_number: str,
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Balance of one of the caller's accounts"""
        account = system.queries.balance_of(account_number, identity)
        return {
            "account_number": account.account_number,
            "account_name": account.account_name,
            "balance": str(account.balance)
        }

    @app.get("/api/transactions")
    def get_transactions(
        limit: Optional[int] = None,
        identity: str = Depends(get_identity),
        system: BankingSystem = Depends(get_banking_system)
    ) -> List[Dict[str, Any]]:
        """Ledger entries touching any of the caller's accounts, newest first"""
        return [transaction_response(record)
                for record in system.queries.history_for(identity, limit=limit)]

    return app


# Run server function
def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "kodbank.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )

"""/v1/wallet - balances, ledger and top-ups"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from emi_autopay.api.dependencies import get_request_id, get_services
from emi_autopay.api.v1.schemas import (
    AddMoneyRequest,
    BalanceResponse,
    TransactionListResponse,
    WalletTransactionSchema,
)
from emi_autopay.domain.exceptions import DomainException, ValidationError
from emi_autopay.domain.models import TransactionType
from emi_autopay.infrastructure.database.models import WalletTransaction
from emi_autopay.services.container import Services

router = APIRouter(prefix="/wallet")


def _transaction_schema(txn: WalletTransaction) -> WalletTransactionSchema:
    return WalletTransactionSchema(
        id=str(txn.id),
        type=txn.type,
        pool=txn.pool,
        amount_cents=txn.amount_cents,
        balance_after_cents=txn.balance_after_cents,
        description=txn.description,
        meta=txn.meta,
        created_at=txn.created_at.isoformat(),
    )


@router.get("", response_model=BalanceResponse)
def get_balance(user_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    return BalanceResponse(user_id=user_id, **services.wallet.get_balance(user_id))


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    user_id: str = Query(..., min_length=1),
    type: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    items, total = services.wallet.list_transactions(user_id, type=type, limit=limit, offset=offset)
    return TransactionListResponse(
        user_id=user_id,
        transactions=[_transaction_schema(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/add-money", response_model=BalanceResponse)
def add_money(body: AddMoneyRequest, request: Request, services: Services = Depends(get_services)):
    """Credit the wallet. Payment collection for the top-up happens upstream."""
    try:
        source = TransactionType(body.source)
    except ValueError:
        raise ValidationError("Unknown credit source", {"source": body.source})

    db = services.db
    try:
        txn = services.wallet.add_money(body.user_id, body.amount_cents, source=source, description=body.description)
        db.commit()
    except DomainException:
        db.rollback()
        raise

    logging.info(
        "Wallet credited",
        extra={
            "request_id": get_request_id(request),
            "user_id": body.user_id,
            "amount_cents": body.amount_cents,
            "transaction_id": str(txn.id),
        },
    )
    return BalanceResponse(user_id=body.user_id, **services.wallet.get_balance(body.user_id))


@router.get("/commissions")
def commission_summary(user_id: str = Query(..., min_length=1), services: Services = Depends(get_services)) -> Dict[str, Any]:
    summary = services.wallet.commission_summary(user_id)
    summary["user_id"] = user_id
    return summary

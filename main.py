import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from sqlalchemy.orm import Session

from ai import TextGenerator
from chat import ChatService
from config import get_settings
from database import SessionLocal, local_today
from jobs import JobRunner, build_clients
from ledger import LedgerWriteError
from models import Account, Budget, Transaction, TransactionType
from notifications import WhatsAppMessenger
from periods import resolve_period
from receipts import ReceiptScanError, ReceiptScanner
from scheduler import SchedulerManager
from schemas import AccountIn, BudgetIn, BulkDeleteIn, PhoneNumberIn, TransactionIn, UserIn
from services import (
    AccountDeletionError,
    AccountService,
    BudgetService,
    TransactionService,
    UserService,
)
from stats import aggregate_stats


logger = logging.getLogger(__name__)

app = FastAPI(title="FinWise")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ai_client(request: Request) -> Optional[TextGenerator]:
    return getattr(request.app.state, "ai_client", None)


def get_messenger(request: Request) -> Optional[WhatsAppMessenger]:
    return getattr(request.app.state, "messenger", None)


def current_user_id(
    x_user_id: int = Header(..., alias="X-User-Id"), db: Session = Depends(get_db)
) -> int:
    try:
        UserService(db).get(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return x_user_id


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    clients = build_clients(settings)
    runner = JobRunner(
        SessionLocal,
        clients.mailer,
        clients.messenger,
        clients.insights,
        currency_symbol=settings.currency_symbol,
        alert_threshold=settings.budget_alert_threshold,
    )
    app.state.ai_client = clients.ai
    app.state.messenger = clients.messenger
    app.state.scheduler_manager = SchedulerManager(runner, settings)
    app.state.scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    manager = getattr(app.state, "scheduler_manager", None)
    if manager is not None:
        manager.stop()


def account_payload(account: Account, transaction_count: int = 0) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "is_default": account.is_default,
        "transaction_count": transaction_count,
    }


def transaction_payload(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "category": txn.category,
        "receipt_url": txn.receipt_url,
        "is_recurring": txn.is_recurring,
        "recurring_interval": txn.recurring_interval.value if txn.recurring_interval else None,
        "next_recurring_date": (
            txn.next_recurring_date.isoformat() if txn.next_recurring_date else None
        ),
        "status": txn.status.value,
    }


def budget_payload(budget: Optional[Budget]) -> Optional[dict[str, object]]:
    if budget is None:
        return None
    return {
        "id": budget.id,
        "amount_cents": budget.amount_cents,
        "last_alert_sent": budget.last_alert_sent.isoformat() if budget.last_alert_sent else None,
    }


@app.post("/api/users")
def sync_user(payload: UserIn, db: Session = Depends(get_db)):
    """Create the local user for an identity on first sign-in."""
    user = UserService(db).get_or_create(
        payload.external_id,
        email=payload.email,
        name=payload.name,
        image_url=payload.image_url,
    )
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone_number": user.phone_number if user.has_real_phone else None,
    }


@app.get("/api/accounts")
def list_accounts(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    service = AccountService(db, user_id)
    counts = service.transaction_counts()
    return [account_payload(a, counts.get(a.id, 0)) for a in service.list_all()]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    account = AccountService(db, user_id).create(payload)
    return account_payload(account)


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        account = AccountService(db, user_id).set_default(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return account_payload(account)


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        AccountService(db, user_id).delete(account_id)
    except AccountDeletionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"success": True}


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    page: int = 1,
    limit: int = 50,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        account_id=account_id, type=type, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    return {
        "items": [transaction_payload(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return transaction_payload(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user_id)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        txn = service.update(transaction_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return transaction_payload(txn)


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    payload: BulkDeleteIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        changes = TransactionService(db, user_id).bulk_delete(payload.transaction_ids)
    except LedgerWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"success": True, "balance_changes": changes}


@app.get("/api/budget")
def get_budget(
    account_id: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    summary = BudgetService(db, user_id).current(account_id)
    return {
        "budget": budget_payload(summary.budget),
        "current_expenses": summary.current_expenses,
    }


@app.put("/api/budget")
def upsert_budget(
    payload: BudgetIn, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    budget = BudgetService(db, user_id).upsert(payload)
    return budget_payload(budget)


@app.get("/api/stats")
def get_stats(
    period: Optional[str] = "this_month",
    start: Optional[str] = None,
    end: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        resolved = resolve_period(period, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    stats = aggregate_stats(db, user_id, resolved)
    return {
        "period": resolved.slug,
        "start": resolved.start.isoformat(),
        "end": resolved.end.isoformat(),
        "total_income": stats.total_income,
        "total_expenses": stats.total_expenses,
        "net": stats.net,
        "by_category": stats.by_category,
        "transaction_count": stats.transaction_count,
    }


@app.post("/api/receipts/scan")
def scan_receipt(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    ai_client: Optional[TextGenerator] = Depends(get_ai_client),
):
    try:
        scan = ReceiptScanner(ai_client).scan(file.file.read(), file.content_type)
    except ReceiptScanError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "amount_cents": int((scan.amount * 100).to_integral_value()),
        "date": (scan.date or local_today()).isoformat(),
        "description": scan.description,
        "merchantName": scan.merchant_name,
        "category": scan.category,
    }


@app.post("/api/profile/phone")
def update_phone(
    payload: PhoneNumberIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    messenger: Optional[WhatsAppMessenger] = Depends(get_messenger),
):
    service = UserService(db)
    first_registration = service.update_phone(user_id, payload.phone_number)
    if first_registration and messenger is not None:
        user = service.get(user_id)
        messenger.send_welcome(user.phone_number, user.name)
    return {"success": True, "phone_number": payload.phone_number}


@app.post("/whatsapp")
def whatsapp_webhook(
    From: Optional[str] = Form(None),
    Body: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    ai_client: Optional[TextGenerator] = Depends(get_ai_client),
    messenger: Optional[WhatsAppMessenger] = Depends(get_messenger),
):
    if not From:
        raise HTTPException(status_code=400, detail="Missing sender")
    reply = ChatService(db, ai_client, get_settings().currency_symbol).handle(From, Body)
    if messenger is not None:
        messenger.send_message(From, reply)
    else:
        logger.warning(f"whatsapp_reply_dropped: to={From} reason=messenger_disabled")
    return {"success": True}

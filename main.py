import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from models import BillStatus, TransactionKind
from recurrence import InvalidFrequency
from scheduler import SchedulerManager
from schemas import (
    BillStatusIn,
    RecurringStatusOut,
    RolloverOut,
    SweepOut,
    ToggleIn,
    TransactionIn,
    TransactionOut,
    TransactionSaved,
)
from services import (
    BillService,
    NotFound,
    RecurringService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def raise_for(exc: ValueError) -> None:
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, InvalidFrequency):
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    kind = None
    if params.get("kind"):
        try:
            kind = TransactionKind(params["kind"])
        except ValueError:
            kind = None
    template_id = None
    if params.get("template_id"):
        try:
            template_id = int(params["template_id"])
        except ValueError:
            template_id = None
    try:
        start = date.fromisoformat(params["start"]) if params.get("start") else None
        end = date.fromisoformat(params["end"]) if params.get("end") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        kind=kind, template_id=template_id, start=start, end=end, query=params.get("q")
    )


def saved(txn, created: int) -> TransactionSaved:
    return TransactionSaved(
        transaction=TransactionOut.model_validate(txn), created_instances=created
    )


def rollover_out(result) -> RolloverOut:
    next_instance = result.next_instance
    return RolloverOut(
        updated=TransactionOut.model_validate(result.updated),
        next_instance=(
            TransactionOut.model_validate(next_instance) if next_instance else None
        ),
    )


@app.post("/transactions", response_model=TransactionSaved)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn, created = TransactionService(db).create(data)
    except ValueError as exc:
        raise_for(exc)
    return saved(txn, created)


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(request: Request, db: Session = Depends(get_db)):
    return TransactionService(db).list(filters_from_request(request))


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise_for(exc)


@app.put("/transactions/{transaction_id}", response_model=TransactionSaved)
def update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn, created = TransactionService(db).update(transaction_id, data)
    except ValueError as exc:
        raise_for(exc)
    return saved(txn, created)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise_for(exc)
    return Response(status_code=204)


@app.get("/recurring/templates", response_model=list[TransactionOut])
def recurring_templates(db: Session = Depends(get_db)):
    return RecurringService(db).list_templates()


@app.get("/recurring/status", response_model=RecurringStatusOut)
def recurring_status(db: Session = Depends(get_db)):
    return RecurringService(db).status()


@app.post("/recurring/trigger", response_model=SweepOut)
def trigger_recurring(db: Session = Depends(get_db)):
    result = RecurringService(db).reconcile_user()
    logger.info(
        f"manual_trigger: created={result.created} failed={result.failed}"
    )
    return SweepOut(**vars(result))


@app.post("/recurring/{template_id}/toggle", response_model=TransactionSaved)
def toggle_recurring(template_id: int, data: ToggleIn, db: Session = Depends(get_db)):
    service = RecurringService(db)
    try:
        created = service.toggle_active(template_id, data.active)
        template = service.get_template(template_id)
    except ValueError as exc:
        raise_for(exc)
    return saved(template, created)


@app.delete("/recurring/{template_id}")
def delete_recurring(template_id: int, db: Session = Depends(get_db)):
    try:
        deleted = RecurringService(db).delete_series(template_id)
    except ValueError as exc:
        raise_for(exc)
    return {"deleted_instances": deleted}


@app.get("/bills", response_model=list[TransactionOut])
def list_bills(status: Optional[BillStatus] = None, db: Session = Depends(get_db)):
    return BillService(db).list(status)


@app.get("/bills/overdue", response_model=list[TransactionOut])
def overdue_bills(db: Session = Depends(get_db)):
    return BillService(db).overdue()


@app.get("/bills/upcoming", response_model=list[TransactionOut])
def upcoming_bills(days: int = 7, db: Session = Depends(get_db)):
    if days < 0:
        raise HTTPException(status_code=400, detail="days must not be negative")
    return BillService(db).upcoming(days=days)


@app.post("/bills/{bill_id}/pay", response_model=RolloverOut)
def pay_bill(bill_id: int, db: Session = Depends(get_db)):
    try:
        result = BillService(db).mark_paid(bill_id)
    except ValueError as exc:
        raise_for(exc)
    return rollover_out(result)


@app.patch("/bills/{bill_id}/status", response_model=RolloverOut)
def update_bill_status(
    bill_id: int, data: BillStatusIn, db: Session = Depends(get_db)
):
    try:
        result = BillService(db).set_status(bill_id, data.bill_status)
    except ValueError as exc:
        raise_for(exc)
    return rollover_out(result)

import logging
from datetime import date
from typing import Iterator, NoReturn, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from config import get_settings
from database import Store, get_store
from periods import Period, resolve_period
from schemas import (
    AccountIn,
    AccountOut,
    BalanceOverrideIn,
    ConcreteTransactionOut,
    DailyBalanceOut,
    LayerIn,
    LayerOut,
    RecurringEditIn,
    Snapshot,
    TransactionIn,
    TransactionRecord,
)
from services import (
    AccountService,
    BalanceOverrideService,
    BalanceService,
    CalendarService,
    LayerService,
    NotFoundError,
    RecurringSeriesService,
    SnapshotService,
    TransactionService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Calendar")


def get_db(store: Store = Depends(get_store)) -> Iterator[Session]:
    with store.session_scope() as session:
        AccountService(session).ensure_default()
        yield session


def _raise_http(exc: ValueError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def default_active_from_request(request: Request) -> bool:
    raw = request.query_params.get("default_active")
    if raw is None:
        return True
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def period_from_request(request: Request) -> Period:
    try:
        year = request.query_params.get("year")
        month = request.query_params.get("month")
        return resolve_period(
            int(year) if year else None,
            int(month) if month else None,
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/api/accounts", response_model=AccountOut)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(data)


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).update(account_id, data)
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"success": True}


@app.get("/api/layers", response_model=list[LayerOut])
def list_layers(account_id: Optional[int] = None, db: Session = Depends(get_db)):
    return LayerService(db).list_all(account_id)


@app.post("/api/layers", response_model=LayerOut)
def create_layer(data: LayerIn, db: Session = Depends(get_db)):
    try:
        return LayerService(db).create(data)
    except ValueError as exc:
        _raise_http(exc)


@app.put("/api/layers/{layer_id}", response_model=LayerOut)
def update_layer(layer_id: int, data: LayerIn, db: Session = Depends(get_db)):
    try:
        return LayerService(db).update(layer_id, data)
    except ValueError as exc:
        _raise_http(exc)


@app.post("/api/layers/{layer_id}/toggle", response_model=LayerOut)
def toggle_layer(
    layer_id: int, account_id: Optional[int] = None, db: Session = Depends(get_db)
):
    try:
        return LayerService(db).toggle(layer_id, account_id)
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/api/layers/{layer_id}")
def delete_layer(
    layer_id: int, account_id: Optional[int] = None, db: Session = Depends(get_db)
):
    try:
        LayerService(db).delete(layer_id, account_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"success": True}


@app.get("/api/accounts/{account_id}/items", response_model=list[TransactionRecord])
def list_items(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).get(account_id)
    except ValueError as exc:
        _raise_http(exc)
    return TransactionService(db).list_for_account(account_id)


@app.get(
    "/api/accounts/{account_id}/calendar",
    response_model=list[ConcreteTransactionOut],
)
def expand_calendar(account_id: int, request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    try:
        return CalendarService(db).expand_range(
            account_id,
            period.start,
            period.end,
            default_active_from_request(request),
        )
    except ValueError as exc:
        _raise_http(exc)


@app.get(
    "/api/accounts/{account_id}/balances",
    response_model=dict[str, DailyBalanceOut],
)
def daily_balances(
    account_id: int, year: int, month: int, request: Request, db: Session = Depends(get_db)
):
    try:
        return BalanceService(db).daily_balances(
            account_id, year, month, default_active_from_request(request)
        )
    except ValueError as exc:
        _raise_http(exc)


@app.put("/api/accounts/{account_id}/overrides/{on}")
def set_balance_override(
    account_id: int, on: date, data: BalanceOverrideIn, db: Session = Depends(get_db)
):
    try:
        override = BalanceOverrideService(db).set(account_id, on, data.balance_cents)
    except ValueError as exc:
        _raise_http(exc)
    return {
        "account_id": override.account_id,
        "date": override.date.isoformat(),
        "balance_cents": override.balance_cents,
    }


@app.delete("/api/accounts/{account_id}/overrides/{on}")
def delete_balance_override(account_id: int, on: date, db: Session = Depends(get_db)):
    try:
        BalanceOverrideService(db).delete(account_id, on)
    except ValueError as exc:
        _raise_http(exc)
    return {"success": True}


@app.post("/api/items", response_model=TransactionRecord)
def create_item(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(data)
    except ValueError as exc:
        _raise_http(exc)


@app.put("/api/items/{item_id}", response_model=TransactionRecord)
def update_item(item_id: int, data: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).update(item_id, data)
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/api/items/{item_id}")
def delete_item(
    item_id: int, account_id: Optional[int] = None, db: Session = Depends(get_db)
):
    try:
        TransactionService(db).delete(item_id, account_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"success": True}


@app.put("/api/items/{item_id}/recurring", response_model=TransactionRecord)
def update_recurring(
    item_id: int,
    mode: str,
    data: RecurringEditIn,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        return RecurringSeriesService(db).update_recurring(
            item_id, data, mode, account_id
        )
    except ValueError as exc:
        _raise_http(exc)


@app.delete("/api/items/{item_id}/recurring")
def delete_recurring(
    item_id: int,
    mode: str,
    on: date = Query(..., alias="date"),
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        RecurringSeriesService(db).delete_recurring(item_id, mode, on, account_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"success": True}


@app.get("/api/snapshot", response_model=Snapshot)
def export_snapshot(account_id: Optional[int] = None, db: Session = Depends(get_db)):
    try:
        return SnapshotService(db).export_all(account_id)
    except ValueError as exc:
        _raise_http(exc)


@app.post("/api/snapshot")
def load_snapshot(snapshot: Snapshot, db: Session = Depends(get_db)):
    try:
        counts = SnapshotService(db).bulk_load(snapshot)
    except Exception as exc:
        logger.exception("bulk_load failed")
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "loaded": counts}


@app.post("/api/clear")
def clear_all(db: Session = Depends(get_db)):
    account = SnapshotService(db).clear_all()
    return {"success": True, "default_account_id": account.id}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

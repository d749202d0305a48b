import logging
import os
import re
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pocketbook import store
from pocketbook.auth import (
    BCRYPT_MAX_BYTES,
    DEFAULT_SESSION_TTL,
    AuthError,
    CurrentUser,
    bearer_token,
    create_session,
    create_user,
    find_user,
    resolve_session,
    revoke_session,
    verify_password,
)
from pocketbook.report_engine import ReportPlan, ReportUnavailable, build_report

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pocketbook")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./pocketbook.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_session_ttl() -> timedelta:
    raw = os.getenv("SESSION_TTL_DAYS", "")
    try:
        days = int(raw)
    except ValueError:
        return DEFAULT_SESSION_TTL
    if days <= 0:
        return DEFAULT_SESSION_TTL
    return timedelta(days=days)


SESSION_TTL = get_session_ttl()

TRANSACTION_TYPES = {"income", "expense"}
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
CENT = Decimal("0.01")


@app.on_event("startup")
def init_db() -> None:
    store.metadata.create_all(engine)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable."})


def parse_date_value(value: str | None) -> date:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise ValueError("Date must be YYYY-MM-DD.")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("Date must be YYYY-MM-DD.") from exc


def parse_optional_date(value: str | None) -> date | None:
    # Malformed bounds are ignored, leaving that side of the range open.
    try:
        return parse_date_value(value)
    except ValueError:
        return None


def parse_list_limit(value: str | None) -> int:
    try:
        limit = int(float(value)) if value is not None else 0
    except (ValueError, OverflowError):
        limit = 0
    if limit <= 0:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


class CredentialsPayload(BaseModel):
    username: str | None = None
    password: str | None = None


class UserResponse(BaseModel):
    id: int
    username: str


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


class MeResponse(BaseModel):
    user: UserResponse


class TransactionPayload(BaseModel):
    type: str | None = None
    amount: float | str | None = None
    category: str | None = None
    date: str | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> dict:
        txn_type = (payload.type or "").strip().lower()
        if txn_type not in TRANSACTION_TYPES:
            raise ValueError("Type must be income or expense.")
        try:
            amount = Decimal(str(payload.amount).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValueError("Amount must be a positive number.") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValueError("Amount must be a positive number.")
        try:
            cents = amount.quantize(CENT)
        except InvalidOperation as exc:
            raise ValueError("Amount must be a positive number.") from exc
        # Stored as fixed-point cents, so finer amounts would be rounded on write.
        if cents != amount:
            raise ValueError("Amount must be a positive number.")
        category = (payload.category or "").strip()
        if not category:
            raise ValueError("Category is required.")
        txn_date = parse_date_value(payload.date)
        note = payload.note.strip() if isinstance(payload.note, str) else ""
        return {
            "type": txn_type,
            "amount": amount,
            "category": category,
            "date": txn_date,
            "note": note or None,
        }


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: float
    category: str
    date: date
    note: str | None = None


class TransactionEnvelope(BaseModel):
    transaction: TransactionResponse


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]


class CategoryListResponse(BaseModel):
    categories: list[str]


class SummaryResponse(BaseModel):
    income: float
    expense: float
    balance: float


class ReportBucketResponse(BaseModel):
    key: str
    label: str
    income: float
    expense: float


class ReportResponse(BaseModel):
    period: str
    count: int
    start: date
    end: date
    buckets: list[ReportBucketResponse]


def to_transaction_response(row: dict) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        type=row["type"],
        amount=float(row["amount"]),
        category=row["category"],
        date=row["date"],
        note=row["note"],
    )


def to_report_response(plan: ReportPlan) -> ReportResponse:
    return ReportResponse(
        period=plan.period,
        count=plan.count,
        start=plan.start,
        end=plan.end,
        buckets=[
            ReportBucketResponse(
                key=bucket.key,
                label=bucket.label,
                income=float(bucket.income),
                expense=float(bucket.expense),
            )
            for bucket in plan.buckets
        ],
    )


def get_current_user(authorization: str | None = Header(None)) -> CurrentUser:
    token = bearer_token(authorization)
    with engine.begin() as conn:
        try:
            return resolve_session(conn, token)
        except AuthError as exc:
            failure = exc
    raise HTTPException(status_code=401, detail=str(failure))


def get_today() -> date:
    return date.today()


def validate_transaction_id(transaction_id: int) -> int:
    if transaction_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid transaction id.")
    return transaction_id


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: CredentialsPayload) -> AuthResponse:
    username = payload.username.strip() if isinstance(payload.username, str) else ""
    if len(username) < 3 or len(username) > 30:
        raise HTTPException(status_code=400, detail="Username must be 3-30 characters.")
    password = payload.password
    if not isinstance(password, str) or len(password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters.")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise HTTPException(status_code=400, detail="Password must be at most 72 bytes.")

    try:
        with engine.begin() as conn:
            if find_user(conn, username):
                raise HTTPException(status_code=409, detail="Username is already taken.")
            user_id = create_user(conn, username, password)
            session = create_session(conn, user_id, ttl=SESSION_TTL)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Username is already taken.") from exc

    logger.info("Registered user %s (%s)", user_id, username)
    return AuthResponse(token=session.token, user=UserResponse(id=user_id, username=username))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: CredentialsPayload) -> AuthResponse:
    username = payload.username.strip() if isinstance(payload.username, str) else ""
    if not username or not isinstance(payload.password, str):
        raise HTTPException(status_code=400, detail="Username and password are required.")

    with engine.begin() as conn:
        user = find_user(conn, username)
        if not user or not verify_password(payload.password, user["password_hash"]):
            user = None
        else:
            session = create_session(conn, user["id"], ttl=SESSION_TTL)

    if not user:
        logger.warning("Failed sign-in for %s", username)
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    logger.info("User %s signed in", user["id"])
    return AuthResponse(
        token=session.token,
        user=UserResponse(id=user["id"], username=user["username"]),
    )


@app.post("/api/auth/logout", status_code=204)
def logout(user: CurrentUser = Depends(get_current_user)) -> Response:
    with engine.begin() as conn:
        revoke_session(conn, user.token)
    logger.info("User %s signed out", user.id)
    return Response(status_code=204)


@app.get("/api/auth/me", response_model=MeResponse)
def me(user: CurrentUser = Depends(get_current_user)) -> MeResponse:
    return MeResponse(user=UserResponse(id=user.id, username=user.username))


@app.get("/api/transactions", response_model=TransactionListResponse)
def list_transactions(
    start: str | None = Query(None),
    end: str | None = Query(None),
    limit: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
) -> TransactionListResponse:
    with engine.begin() as conn:
        rows = store.list_transactions(
            conn,
            user.id,
            parse_optional_date(start),
            parse_optional_date(end),
            parse_list_limit(limit),
        )
    return TransactionListResponse(transactions=[to_transaction_response(row) for row in rows])


@app.get("/api/categories", response_model=CategoryListResponse)
def list_categories(user: CurrentUser = Depends(get_current_user)) -> CategoryListResponse:
    with engine.begin() as conn:
        names = store.list_categories(conn, user.id)
    return CategoryListResponse(categories=names)


@app.post("/api/transactions", response_model=TransactionEnvelope, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    user: CurrentUser = Depends(get_current_user),
) -> TransactionEnvelope:
    try:
        values = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = store.create_transaction(conn, user.id, values)
    return TransactionEnvelope(transaction=to_transaction_response(row))


@app.put("/api/transactions/{transaction_id}", response_model=TransactionEnvelope)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    user: CurrentUser = Depends(get_current_user),
) -> TransactionEnvelope:
    validate_transaction_id(transaction_id)
    try:
        values = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = store.update_transaction(conn, user.id, transaction_id, values)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return TransactionEnvelope(transaction=to_transaction_response(row))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(get_current_user),
) -> Response:
    validate_transaction_id(transaction_id)
    with engine.begin() as conn:
        deleted = store.delete_transaction(conn, user.id, transaction_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return Response(status_code=204)


@app.get("/api/summary", response_model=SummaryResponse)
def summary(
    start: str | None = Query(None),
    end: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
) -> SummaryResponse:
    with engine.begin() as conn:
        totals = store.fetch_summary(
            conn, user.id, parse_optional_date(start), parse_optional_date(end)
        )
    return SummaryResponse(
        income=float(totals.income),
        expense=float(totals.expense),
        balance=float(totals.balance),
    )


@app.get("/api/report", response_model=ReportResponse)
def report(
    period: str | None = Query(None),
    count: str | None = Query(None),
    today: date = Depends(get_today),
    user: CurrentUser = Depends(get_current_user),
) -> ReportResponse:
    try:
        plan = build_report(store.range_fetcher(engine, user.id), period, count, today)
    except ReportUnavailable as exc:
        raise HTTPException(status_code=503, detail="Unable to generate report.") from exc
    return to_report_response(plan)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pocketbook.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "5174")),
    )

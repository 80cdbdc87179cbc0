from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import asset_repo
import auth
import memo_repo
import repo
import reports
from db import PoolTimeout, init_db, pool_status
from logs import configure_logging
from tenant import clear_current_user_id, set_current_user_id
from utils import parse_date

from .schemas import (
    AssetRequest,
    AssetTypeRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    ChangePasswordRequest,
    EmailRequest,
    InitialBalanceRequest,
    LoginRequest,
    MemoRequest,
    RegisterRequest,
    TransactionRequest,
)
from .security import create_token, verify_token

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker API", version="0.1.0")


def _cors_origins() -> list[str]:
    raw = (os.getenv("CORS_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?/?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    configure_logging()
    init_db()


def _ok(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    """Success envelope; money goes out as a decimal string."""
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body, custom_encoder={Decimal: str}))


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors and errors[0].get("type") == "json_invalid":
        msg = "Malformed JSON body."
    elif errors:
        loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        msg = f"Invalid value for {loc}." if loc else "Invalid request body."
    else:
        msg = "Invalid request."
    return _fail(400, msg)


@app.exception_handler(PoolTimeout)
async def pool_timeout_handler(request: Request, exc: PoolTimeout) -> JSONResponse:
    return _fail(503, "Database is busy, try again later.")


@app.exception_handler(repo.BalanceUpdateError)
async def balance_error_handler(request: Request, exc: repo.BalanceUpdateError) -> JSONResponse:
    return _fail(500, str(exc))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _fail(500, "Internal server error.")


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


async def _current_user(authorization: str | None = Header(default=None)) -> dict:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Access token is required.")
    payload = verify_token(token)
    if not payload:
        raise HTTPException(status_code=403, detail="Invalid token.")
    set_current_user_id(int(payload["id"]))
    return {"id": int(payload["id"]), "username": payload.get("username")}


async def _optional_user(authorization: str | None = Header(default=None)) -> dict | None:
    token = _bearer(authorization)
    payload = verify_token(token) if token else None
    if not payload:
        return None
    set_current_user_id(int(payload["id"]))
    return {"id": int(payload["id"]), "username": payload.get("username")}


def _uid(user: dict | None) -> int | None:
    return int(user["id"]) if user else None


def _check_month(year: int, month: int) -> None:
    if not 1 <= month <= 12 or year < 1:
        raise HTTPException(status_code=400, detail="Invalid year or month.")


# ------------------------------------------------------------------- health


@app.get("/api/health")
def health():
    return _ok({"status": "ok"})


@app.get("/api/db-status")
def db_status():
    return _ok(pool_status())


# --------------------------------------------------------------------- auth


@app.post("/api/auth/register")
def register(body: RegisterRequest):
    try:
        user = auth.register_user(body.username, body.email, body.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    token = create_token(int(user["id"]), str(user["username"]))
    return _ok({"user": user, "token": token}, message="Registration complete.", status_code=201)


@app.post("/api/auth/login")
def login(body: LoginRequest):
    if not (body.username or "").strip() or not body.password:
        raise HTTPException(status_code=400, detail="Username and password are required.")
    user = auth.authenticate_user(body.username, body.password)
    if not user:
        raise HTTPException(status_code=401, detail="Username or password is incorrect.")
    token = create_token(int(user["id"]), str(user["username"]))
    return _ok({"user": user, "token": token}, message="Logged in.")


@app.get("/api/auth/profile")
def profile(user: dict = Depends(_current_user)):
    found = auth.get_user_by_id(int(user["id"]))
    if not found:
        raise HTTPException(status_code=404, detail="User not found.")
    return _ok(found)


@app.put("/api/auth/change-password")
def change_password(body: ChangePasswordRequest, user: dict = Depends(_current_user)):
    try:
        auth.change_password(int(user["id"]), body.current_password, body.new_password)
    except (ValueError, PermissionError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _ok(message="Password changed.")


@app.post("/api/auth/find-username")
def find_username(body: EmailRequest):
    try:
        username = auth.find_username(body.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _ok({"username": username})


@app.post("/api/auth/reset-password")
def reset_password(body: EmailRequest):
    try:
        temp = auth.reset_password(body.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _ok({"tempPassword": temp}, message="A temporary password has been issued.")


# --------------------------------------------------------------- categories


@app.get("/api/categories")
def list_categories(user: dict | None = Depends(_optional_user)):
    return _ok(repo.list_categories(user_id=_uid(user)))


@app.get("/api/categories/tree")
def category_tree(
    type: str | None = Query(default=None),
    user: dict | None = Depends(_optional_user),
):
    if type is not None and type not in repo.CATEGORY_TYPES:
        raise HTTPException(status_code=400, detail="Type must be either income or expense.")
    return _ok(repo.category_tree(user_id=_uid(user), cat_type=type))


@app.get("/api/categories/{cat_type}")
def list_categories_by_type(cat_type: str, user: dict | None = Depends(_optional_user)):
    if cat_type not in repo.CATEGORY_TYPES:
        raise HTTPException(status_code=400, detail="Type must be either income or expense.")
    return _ok(repo.list_categories_by_type(cat_type, user_id=_uid(user)))


@app.post("/api/categories")
def create_category(body: CategoryCreateRequest, user: dict = Depends(_current_user)):
    try:
        category = repo.create_category(
            body.name, body.type, color=body.color, user_id=_uid(user), parent_id=body.parent_id
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(category, status_code=201)


def _editable_category(category_id: int, uid: int) -> dict:
    category = repo.get_category(category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found.")
    if not repo.is_owner_or_shared(category, uid):
        logger.warning("Category %s is not editable by user %s", category_id, uid)
        raise HTTPException(status_code=403, detail="You do not have permission for this category.")
    return category


@app.put("/api/categories/{category_id}")
def update_category(category_id: int, body: CategoryUpdateRequest, user: dict = Depends(_current_user)):
    uid = _uid(user)
    _editable_category(category_id, uid)
    try:
        updated = repo.update_category(category_id, body.name, body.type, color=body.color, user_id=uid)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Category not found.")
    return _ok(repo.get_category(category_id))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, user: dict = Depends(_current_user)):
    uid = _uid(user)
    _editable_category(category_id, uid)
    if not repo.delete_category(category_id, user_id=uid):
        raise HTTPException(status_code=404, detail="Category not found.")
    return _ok(message="Category deleted.")


@app.get("/api/categories/{category_id}/usage")
def category_usage(category_id: int, user: dict = Depends(_current_user)):
    uid = _uid(user)
    category = repo.get_category(category_id)
    if not category or not repo.is_owner_or_shared(category, uid):
        raise HTTPException(status_code=404, detail="Category not found.")
    return _ok(repo.get_category_usage(category_id, user_id=uid))


# ------------------------------------------------------------- transactions


@app.get("/api/transactions")
def list_transactions(user: dict | None = Depends(_optional_user)):
    if not user:
        return _ok([])
    return _ok(repo.list_transactions(user_id=_uid(user)))


@app.get("/api/transactions/{year}/{month}")
def list_transactions_by_month(year: int, month: int, user: dict | None = Depends(_optional_user)):
    _check_month(year, month)
    if not user:
        return _ok([])
    return _ok(repo.list_transactions_by_month(year, month, user_id=_uid(user)))


def _check_links(body: TransactionRequest, uid: int, current_asset_id: int | None = None) -> None:
    if body.category_id:
        category = repo.get_category(body.category_id)
        if not category or not repo.is_owner_or_shared(category, uid):
            raise HTTPException(status_code=400, detail="Invalid category.")
    if body.asset_id and body.asset_id != current_asset_id:
        if not asset_repo.get_asset(body.asset_id, uid):
            logger.warning("User %s tried to link asset %s", uid, body.asset_id)
            raise HTTPException(status_code=403, detail="You do not have permission for this asset.")


@app.post("/api/transactions")
def create_transaction(body: TransactionRequest, user: dict = Depends(_current_user)):
    uid = _uid(user)
    data = body.model_dump()
    try:
        repo.normalize_transaction(data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _check_links(body, uid)
    tx = repo.create_transaction(data, user_id=uid)
    return _ok(tx, message="Transaction added.", status_code=201)


def _own_transaction(tx_id: int, uid: int) -> dict:
    tx = repo.get_transaction(tx_id)
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    if not repo.is_owner(tx, uid):
        logger.warning("Transaction %s is not owned by user %s", tx_id, uid)
        raise HTTPException(status_code=403, detail="You do not have permission for this transaction.")
    return tx


@app.put("/api/transactions/{tx_id}")
def update_transaction(tx_id: int, body: TransactionRequest, user: dict = Depends(_current_user)):
    uid = _uid(user)
    current = _own_transaction(tx_id, uid)
    data = body.model_dump()
    try:
        repo.normalize_transaction(data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _check_links(body, uid, current_asset_id=current.get("asset_id"))
    try:
        tx = repo.update_transaction(tx_id, data, user_id=uid)
    except repo.TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return _ok(tx, message="Transaction updated.")


@app.delete("/api/transactions/{tx_id}")
def delete_transaction(tx_id: int, user: dict = Depends(_current_user)):
    uid = _uid(user)
    _own_transaction(tx_id, uid)
    try:
        repo.delete_transaction(tx_id, user_id=uid)
    except repo.TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return _ok(message="Transaction deleted.")


# -------------------------------------------------------------------- stats


@app.get("/api/stats/{year}/{month}")
def monthly_stats(year: int, month: int, user: dict | None = Depends(_optional_user)):
    _check_month(year, month)
    return _ok(reports.monthly_stats(year, month, user_id=_uid(user)))


@app.get("/api/stats/{year}/{month}/categories")
def category_stats(year: int, month: int, user: dict | None = Depends(_optional_user)):
    _check_month(year, month)
    return _ok(reports.category_stats(year, month, user_id=_uid(user)))


# ------------------------------------------------------------------ balance


@app.get("/api/balance/initial")
def get_initial_balance(user: dict = Depends(_current_user)):
    return _ok(repo.get_initial_balance(_uid(user)))


@app.post("/api/balance/initial")
def set_initial_balance(body: InitialBalanceRequest, user: dict = Depends(_current_user)):
    if body.amount is None:
        raise HTTPException(status_code=400, detail="Please enter the initial balance amount.")
    try:
        saved = repo.set_initial_balance(_uid(user), body.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(saved, message="Initial balance saved.")


@app.get("/api/balance/total")
def total_balance(user: dict = Depends(_current_user)):
    return _ok(reports.total_balance(_uid(user)))


# ------------------------------------------------------------------- assets


@app.get("/api/assets")
def list_assets(user: dict = Depends(_current_user)):
    return _ok(asset_repo.list_assets(_uid(user)))


@app.get("/api/assets/total")
def asset_totals(user: dict = Depends(_current_user)):
    return _ok(asset_repo.asset_totals(_uid(user)))


@app.get("/api/assets/type/{type_id}")
def list_assets_by_type(type_id: int, user: dict = Depends(_current_user)):
    return _ok(asset_repo.list_assets_by_type(type_id, _uid(user)))


@app.get("/api/assets/{asset_id}")
def get_asset(asset_id: int, user: dict = Depends(_current_user)):
    asset = asset_repo.get_asset(asset_id, _uid(user))
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found.")
    return _ok(asset)


@app.post("/api/assets")
def create_asset(body: AssetRequest, user: dict = Depends(_current_user)):
    try:
        asset = asset_repo.create_asset(body.model_dump(), _uid(user))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(asset, status_code=201)


@app.put("/api/assets/{asset_id}")
def update_asset(asset_id: int, body: AssetRequest, user: dict = Depends(_current_user)):
    uid = _uid(user)
    if not asset_repo.get_asset(asset_id, uid):
        raise HTTPException(status_code=404, detail="Asset not found.")
    try:
        asset = asset_repo.update_asset(asset_id, body.model_dump(), uid)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found.")
    return _ok(asset)


@app.delete("/api/assets/{asset_id}")
def delete_asset(asset_id: int, user: dict = Depends(_current_user)):
    uid = _uid(user)
    if not asset_repo.get_asset(asset_id, uid):
        raise HTTPException(status_code=404, detail="Asset not found.")
    asset_repo.delete_asset(asset_id, uid)
    return _ok(message="Asset deleted.")


# -------------------------------------------------------------- asset types


@app.get("/api/asset-types")
def list_asset_types(user: dict = Depends(_current_user)):
    return _ok(asset_repo.list_asset_types(_uid(user)))


@app.post("/api/asset-types")
def create_asset_type(body: AssetTypeRequest, user: dict = Depends(_current_user)):
    try:
        asset_type = asset_repo.create_asset_type(
            body.name, _uid(user), icon=body.icon, color=body.color, description=body.description
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(asset_type, status_code=201)


def _editable_asset_type(type_id: int, uid: int) -> dict:
    asset_type = asset_repo.get_asset_type(type_id)
    if not asset_type:
        raise HTTPException(status_code=404, detail="Asset type not found.")
    if asset_type["is_default"]:
        raise HTTPException(status_code=403, detail="Default asset types cannot be changed.")
    if not repo.is_owner(asset_type, uid):
        logger.warning("Asset type %s is not owned by user %s", type_id, uid)
        raise HTTPException(status_code=403, detail="You do not have permission for this asset type.")
    return asset_type


@app.put("/api/asset-types/{type_id}")
def update_asset_type(type_id: int, body: AssetTypeRequest, user: dict = Depends(_current_user)):
    uid = _uid(user)
    _editable_asset_type(type_id, uid)
    try:
        asset_repo.update_asset_type(
            type_id, body.name, uid, icon=body.icon, color=body.color, description=body.description
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(asset_repo.get_asset_type(type_id))


@app.delete("/api/asset-types/{type_id}")
def delete_asset_type(type_id: int, user: dict = Depends(_current_user)):
    uid = _uid(user)
    _editable_asset_type(type_id, uid)
    try:
        asset_repo.delete_asset_type(type_id, uid)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(message="Asset type deleted.")


# -------------------------------------------------------------------- memos


@app.get("/api/memos/my")
def my_memos(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=memo_repo.DEFAULT_PAGE_SIZE, ge=1, le=memo_repo.MAX_PAGE_SIZE),
    search: str = Query(default=""),
    user: dict = Depends(_current_user),
):
    return _ok(memo_repo.list_my_memos(_uid(user), page=page, limit=limit, search=search))


@app.get("/api/memos/public")
def public_memos(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=memo_repo.DEFAULT_PAGE_SIZE, ge=1, le=memo_repo.MAX_PAGE_SIZE),
    search: str = Query(default=""),
):
    return _ok(memo_repo.list_public_memos(page=page, limit=limit, search=search))


@app.get("/api/memos/date/{memo_date}")
def memos_by_date(memo_date: str, user: dict = Depends(_current_user)):
    if not parse_date(memo_date):
        raise HTTPException(status_code=400, detail="Date must be in YYYY-MM-DD format.")
    return _ok(memo_repo.list_memos_by_date(_uid(user), memo_date))


@app.get("/api/memos/{memo_id}")
def get_memo(memo_id: int, user: dict | None = Depends(_optional_user)):
    memo = memo_repo.get_memo(memo_id)
    if not memo:
        raise HTTPException(status_code=404, detail="Memo not found.")
    if memo["visibility"] != "public" and not repo.is_owner(memo, _uid(user)):
        raise HTTPException(status_code=403, detail="You do not have permission for this memo.")
    return _ok(memo)


@app.post("/api/memos")
def create_memo(body: MemoRequest, user: dict = Depends(_current_user)):
    try:
        memo = memo_repo.create_memo(body.model_dump(), _uid(user))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(memo, status_code=201)


def _own_memo(memo_id: int, uid: int) -> None:
    if memo_repo.is_memo_owner(memo_id, uid):
        return
    if not memo_repo.get_memo(memo_id):
        raise HTTPException(status_code=404, detail="Memo not found.")
    logger.warning("Memo %s is not owned by user %s", memo_id, uid)
    raise HTTPException(status_code=403, detail="You do not have permission for this memo.")


@app.put("/api/memos/{memo_id}")
def update_memo(memo_id: int, body: MemoRequest, user: dict = Depends(_current_user)):
    _own_memo(memo_id, _uid(user))
    try:
        updated = memo_repo.update_memo(memo_id, body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Memo not found.")
    return _ok(memo_repo.get_memo(memo_id), message="Memo updated.")


@app.delete("/api/memos/{memo_id}")
def delete_memo(memo_id: int, user: dict = Depends(_current_user)):
    _own_memo(memo_id, _uid(user))
    if not memo_repo.delete_memo(memo_id):
        raise HTTPException(status_code=404, detail="Memo not found.")
    return _ok(message="Memo deleted.")


@app.patch("/api/memos/{memo_id}/toggle")
def toggle_memo(memo_id: int, user: dict = Depends(_current_user)):
    _own_memo(memo_id, _uid(user))
    if not memo_repo.toggle_memo(memo_id):
        raise HTTPException(status_code=404, detail="Memo not found.")
    return _ok(memo_repo.get_memo(memo_id), message="Completion status changed.")


@app.middleware("http")
async def tenant_cleanup_middleware(request, call_next):
    try:
        response = await call_next(request)
        return response
    finally:
        clear_current_user_id()

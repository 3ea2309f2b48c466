import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

import config
import database
from advisor import AdvisorNotConfigured, GeminiAdvisor, get_financial_advice, get_financial_tip
from budget import compute_budget
from database import AccessDenied, DocumentStore, expenses_path, user_path
from events import PERMISSION_ERROR, ErrorEmitter, PermissionDeniedError, PermissionErrorListener
from live import LiveDashboard, build_dashboard
from mutations import ExpenseMutator, ProfileMutator
from schemas import (
    AdvisorRequest,
    AuthUser,
    EmailRequest,
    Expense,
    ExpenseIn,
    IncomeUpdate,
    JWTToken,
    PasswordReset,
    ProfileSettings,
    ProfileUpdate,
    TokenRequest,
    User,
    UserProfile,
)
from session import LOGIN_PATH, resolve_redirect, state_for

logger = config.configure_logging()

VERIFY_PURPOSE = "verify-email"
RESET_PURPOSE = "reset-password"
GENERIC_SERVER_ERROR = "An error occurred while processing your request. Please try again later."

# Auth setup
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


# FastAPI app
app = FastAPI(title="SpendSense API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.store = DocumentStore(database.db) if database.db is not None else None
app.state.errors = ErrorEmitter()
app.state.permission_errors = PermissionErrorListener(debug=config.DEBUG)
app.state.permission_errors.install(app.state.errors)
app.state.advisor = None


# Dependencies
def get_store(request: Request) -> DocumentStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return store


def get_errors(request: Request) -> ErrorEmitter:
    return request.app.state.errors


def get_advisor(request: Request):
    if request.app.state.advisor is None:
        try:
            request.app.state.advisor = GeminiAdvisor()
        except AdvisorNotConfigured as e:
            logger.error("AI assistant is not configured: %s", e)
            return None
    return request.app.state.advisor


# Helpers
class TokenData(BaseModel):
    email: Optional[str] = None
    version: int = 0


class NavigationRedirect(Exception):
    def __init__(self, location: str):
        self.location = location


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def token_for(user: dict) -> str:
    return create_access_token(data={"sub": user["email"], "ver": user.get("token_version", 0)})


def create_action_token(user: dict, purpose: str) -> str:
    """Single-purpose link token (e-mail verification, password reset)."""
    return create_access_token(
        data={"sub": user["email"], "ver": user.get("token_version", 0), "purpose": purpose},
        expires_delta=timedelta(minutes=config.ACTION_TOKEN_EXPIRE_MINUTES),
    )


def _decode(token: str, purpose: Optional[str] = None) -> TokenData:
    payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    if payload.get("purpose") != purpose:
        raise JWTError("token issued for another purpose")
    email = payload.get("sub")
    if email is None:
        raise JWTError("token has no subject")
    return TokenData(email=email, version=payload.get("ver", 0))


def _user_for_token(store: DocumentStore, token: str, purpose: Optional[str] = None) -> Optional[dict]:
    token_data = _decode(token, purpose)
    user = store.find_user_by_email(token_data.email)
    if user is None or user.get("token_version", 0) != token_data.version:
        return None
    return user


def resolve_identity(token: Optional[str], store: DocumentStore) -> Optional[dict]:
    """The user a bearer token belongs to; a bad or revoked token means no session."""
    if not token:
        return None
    try:
        user = _user_for_token(store, token)
    except JWTError as e:
        logger.info("Rejected session token: %s", e)
        return None
    if user is None:
        logger.info("Session token refers to an unknown or revoked session")
    return user


def uid_of(user: dict) -> str:
    return str(user["_id"])


def send_link(user: dict, purpose: str) -> None:
    # no mail transport; the link goes to the log
    link = f"{config.PUBLIC_URL}/{purpose}?token={create_action_token(user, purpose)}"
    logger.info("%s link for %s: %s", purpose, user["email"], link)


def current_identity(token: Optional[str] = Depends(oauth2_scheme), store: DocumentStore = Depends(get_store)):
    return resolve_identity(token, store)


def get_current_user(user: Optional[dict] = Depends(current_identity)):
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_verified_user(user: dict = Depends(get_current_user)):
    if not user.get("email_verified"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Email not verified")
    return user


def page_gate(request: Request, user: Optional[dict] = Depends(current_identity)):
    target = resolve_redirect(state_for(user), request.url.path)
    if target:
        raise NavigationRedirect(target)
    return user


def read_or_deny(errors: ErrorEmitter, path: str, operation: str, read):
    try:
        return read()
    except AccessDenied:
        error = PermissionDeniedError.for_request(path, operation)
        errors.emit(PERMISSION_ERROR, error)
        raise error


# Exception handlers
@app.exception_handler(NavigationRedirect)
async def navigation_redirect_handler(request: Request, exc: NavigationRedirect):
    return RedirectResponse(exc.location, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content=request.app.state.permission_errors.render(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        message = err.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.setdefault(field, message)
    return JSONResponse(status_code=422, content={"errors": errors})


# Public endpoints
@app.get("/")
def root():
    return {"message": "SpendSense API is running"}


@app.get("/health")
def health(request: Request):
    store = request.app.state.store
    response = {"backend": "ok", "database": "not configured"}
    if store is not None:
        try:
            store.database.command("ping")
            response["database"] = "ok"
        except Exception as e:
            logger.error("Database ping failed: %s", e)
            response["database"] = "unreachable"
    return response


# Auth endpoints
@app.post("/auth/register", response_model=JWTToken)
def register(user: AuthUser, store: DocumentStore = Depends(get_store)):
    if store.find_user_by_email(user.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_doc = User(
        email=user.email,
        display_name=user.display_name,
        income=user.income,
        password_hash=get_password_hash(user.password),
    )
    store.create_user(user_doc.model_dump())
    created = store.find_user_by_email(user.email)
    send_link(created, VERIFY_PURPOSE)
    return {"access_token": token_for(created), "token_type": "bearer"}


@app.post("/auth/login", response_model=JWTToken)
def login(form_data: OAuth2PasswordRequestForm = Depends(), store: DocumentStore = Depends(get_store)):
    user = store.find_user_by_email(form_data.username)
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    return {"access_token": token_for(user), "token_type": "bearer"}


@app.post("/auth/logout")
def logout(current_user: dict = Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    store.bump_token_version(uid_of(current_user))
    return {"status": "logged_out", "redirect": LOGIN_PATH}


@app.post("/auth/verify-email")
def verify_email(body: TokenRequest, store: DocumentStore = Depends(get_store)):
    try:
        user = _user_for_token(store, body.token, VERIFY_PURPOSE)
    except JWTError:
        user = None
    if user is None:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    store.update_user(uid_of(user), {"email_verified": True})
    return {"status": "verified"}


@app.post("/auth/resend-verification")
def resend_verification(current_user: dict = Depends(get_current_user)):
    if current_user.get("email_verified"):
        return {"status": "already_verified"}
    send_link(current_user, VERIFY_PURPOSE)
    return {"status": "sent"}


@app.post("/auth/forgot-password")
def forgot_password(body: EmailRequest, store: DocumentStore = Depends(get_store)):
    user = store.find_user_by_email(body.email)
    if user is not None:
        send_link(user, RESET_PURPOSE)
    return {"message": "If an account exists for that email, a reset link has been sent."}


@app.post("/auth/reset-password")
def reset_password(body: PasswordReset, store: DocumentStore = Depends(get_store)):
    try:
        user = _user_for_token(store, body.token, RESET_PURPOSE)
    except JWTError:
        user = None
    if user is None:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    store.update_user(uid_of(user), {"password_hash": get_password_hash(body.password)})
    store.bump_token_version(uid_of(user))
    return {"status": "password_reset"}


# Pages
@app.get("/login")
@app.get("/signup")
@app.get("/forgot-password")
def auth_page(request: Request, user: Optional[dict] = Depends(page_gate)):
    return {"page": request.url.path.strip("/")}


@app.get("/verify-email")
def verify_email_page(user: Optional[dict] = Depends(page_gate)):
    return {"page": "verify-email", "email": user.get("email") if user else None}


@app.get("/dashboard")
def dashboard(
    user: Optional[dict] = Depends(page_gate),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(user)
    profile = read_or_deny(errors, user_path(uid), "get", lambda: store.get_profile(uid, uid))
    expenses = read_or_deny(errors, expenses_path(uid), "list", lambda: store.list_expenses(uid, uid))
    return build_dashboard(profile, expenses)


@app.get("/dashboard/settings")
def settings_page(
    user: Optional[dict] = Depends(page_gate),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(user)
    profile = read_or_deny(errors, user_path(uid), "get", lambda: store.get_profile(uid, uid)) or {}
    return {
        "page": "settings",
        "form": {
            "display_name": profile.get("display_name") or "",
            "income": profile.get("income") or 0,
            "savings_goal": profile.get("savings_goal") or 0,
            "bio": profile.get("bio") or "",
            "currency": profile.get("currency") or "USD",
        },
    }


def initials(name: Optional[str]) -> str:
    if not name:
        return "U"
    names = name.split(" ")
    if len(names) > 1 and names[-1]:
        return f"{names[0][0]}{names[-1][0]}".upper()
    return name[:2].upper()


@app.get("/dashboard/profile")
def profile_page(
    user: Optional[dict] = Depends(page_gate),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(user)
    profile = read_or_deny(errors, user_path(uid), "get", lambda: store.get_profile(uid, uid)) or {}
    return {
        "page": "profile",
        "display_name": profile.get("display_name") or "",
        "photo_url": profile.get("photo_url"),
        "initials": initials(profile.get("display_name")),
    }


# Profile endpoints
@app.get("/profile", response_model=UserProfile)
def get_profile(
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(current_user)
    profile = read_or_deny(errors, user_path(uid), "get", lambda: store.get_profile(uid, uid))
    if profile is None:
        raise HTTPException(status_code=404, detail="User data not found.")
    return profile


def _profile_write(result):
    if result.error is not None:
        raise result.error
    return {"status": "saved", "profile": result.value}


@app.put("/profile")
def update_profile(
    update: ProfileUpdate,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    return _profile_write(ProfileMutator(store, uid_of(current_user), errors).update_profile(update))


@app.put("/profile/settings")
def save_settings(
    settings: ProfileSettings,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    return _profile_write(ProfileMutator(store, uid_of(current_user), errors).save_settings(settings))


@app.put("/profile/income")
def set_income(
    update: IncomeUpdate,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    return _profile_write(ProfileMutator(store, uid_of(current_user), errors).set_income(update))


# Expense endpoints
@app.get("/expenses", response_model=List[Expense])
def list_expenses(
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(current_user)
    return read_or_deny(errors, expenses_path(uid), "list", lambda: store.list_expenses(uid, uid))


@app.post("/expenses", response_model=Expense, status_code=201)
def create_expense(
    expense: ExpenseIn,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    result = ExpenseMutator(store, uid_of(current_user), errors).create(expense)
    if result.error is not None:
        raise result.error
    return result.value


@app.put("/expenses/{expense_id}", response_model=Expense)
def update_expense(
    expense_id: str,
    expense: ExpenseIn,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    result = ExpenseMutator(store, uid_of(current_user), errors).update(expense_id, expense)
    if result.error is not None:
        raise result.error
    if result.not_found:
        raise HTTPException(status_code=404, detail="Expense not found")
    return result.value


@app.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: str,
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    result = ExpenseMutator(store, uid_of(current_user), errors).delete(expense_id)
    if result.error is not None:
        raise result.error
    if result.not_found:
        raise HTTPException(status_code=404, detail="Expense not found")
    return {"status": "deleted"}


# Budget summary
@app.get("/budget")
def budget_summary(
    current_user: dict = Depends(get_verified_user),
    store: DocumentStore = Depends(get_store),
    errors: ErrorEmitter = Depends(get_errors),
):
    uid = uid_of(current_user)
    profile = read_or_deny(errors, user_path(uid), "get", lambda: store.get_profile(uid, uid)) or {}
    expenses = read_or_deny(errors, expenses_path(uid), "list", lambda: store.list_expenses(uid, uid))
    return compute_budget(profile.get("income") or 0, expenses)


# AI advisor
def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _financial_context(store: DocumentStore, user: dict):
    uid = uid_of(user)
    profile = store.get_profile(uid, uid)
    if profile is None:
        return None
    expenses = [
        {"name": e["name"], "amount": e["amount"], "category": e["category"]}
        for e in store.list_expenses(uid, uid)
    ]
    return profile, expenses


async def _session_user(request: Request, token: str):
    store = get_store(request)
    user = await run_in_threadpool(resolve_identity, token, store)
    return store, user


@app.get("/api/genai")
def genai_status():
    return {"message": "GenAI API is active."}


@app.post("/api/financial-advisor")
async def financial_advisor(request: Request, token: Optional[str] = Depends(oauth2_scheme), advisor=Depends(get_advisor)):
    try:
        context = None
        if token:
            store, user = await _session_user(request, token)
            if user is None:
                return _error(401, "Unauthorized")
            if not user.get("email_verified"):
                return _error(403, "Email not verified")
            context = await run_in_threadpool(_financial_context, store, user)
            if context is None:
                return _error(404, "User data not found.")

        try:
            body = AdvisorRequest.model_validate(await request.json())
        except (ValueError, ValidationError):
            return _error(400, "Invalid input")

        if context is not None:
            profile, expenses = context
            income = profile.get("income") or 0
        elif body.income is None or body.expenses is None:
            return _error(400, "Invalid input")
        else:
            income = body.income
            expenses = [e.model_dump() for e in body.expenses]

        if advisor is None:
            return _error(500, GENERIC_SERVER_ERROR)
        result = await run_in_threadpool(get_financial_advice, advisor, income, expenses, body.query)
        return result
    except Exception:
        logger.exception("Error in financial-advisor API")
        return _error(500, GENERIC_SERVER_ERROR)


@app.post("/api/financial-tip")
async def financial_tip(request: Request, token: Optional[str] = Depends(oauth2_scheme), advisor=Depends(get_advisor)):
    try:
        store, user = await _session_user(request, token)
        if user is None:
            return _error(401, "Unauthorized")
        if not user.get("email_verified"):
            return _error(403, "Email not verified")
        context = await run_in_threadpool(_financial_context, store, user)
        if context is None:
            return _error(404, "User data not found.")
        profile, expenses = context
        if advisor is None:
            return _error(500, GENERIC_SERVER_ERROR)
        summary = compute_budget(profile.get("income") or 0, expenses)
        return await run_in_threadpool(get_financial_tip, advisor, summary, profile.get("currency", "USD"))
    except Exception:
        logger.exception("Error in financial-tip API")
        return _error(500, GENERIC_SERVER_ERROR)


# Live dashboard
@app.websocket("/ws/dashboard")
async def dashboard_feed(websocket: WebSocket, token: Optional[str] = None):
    store = websocket.app.state.store
    if store is None:
        await websocket.close(code=1011)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    def publish(view: dict):
        loop.call_soon_threadsafe(updates.put_nowait, jsonable_encoder(view))

    live = LiveDashboard(store, websocket.app.state.errors, publish)

    async def pump():
        while True:
            await websocket.send_json(await updates.get())

    sender = asyncio.ensure_future(pump())
    try:
        user = await run_in_threadpool(resolve_identity, token, store)
        await run_in_threadpool(live.observe, user)
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "auth":
                user = await run_in_threadpool(resolve_identity, message.get("token"), store)
                await run_in_threadpool(live.observe, user)
            elif kind == "logout":
                await run_in_threadpool(live.logout)
            else:
                await websocket.send_json({"error": "Unknown message"})
    except WebSocketDisconnect:
        pass
    finally:
        live.close()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Dashboard feed send failed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

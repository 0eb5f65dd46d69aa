import logging
import math
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
import psycopg2.extras
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from backend.app.routes.subscriptions import router as subscriptions_router
    from backend.app.services.subscriptions import (
        get_gateway_registry,
        get_subscription_config,
        is_subscription_admin,
        prepare_subscription_storage,
    )
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    from app.routes.subscriptions import router as subscriptions_router  # type: ignore[no-redef]
    from app.services.subscriptions import (  # type: ignore[no-redef]
        get_gateway_registry,
        get_subscription_config,
        is_subscription_admin,
        prepare_subscription_storage,
    )


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "restaurant_db"),
    user=os.getenv("DB_USER", "restaurant_user"),
    password=os.getenv("DB_PASSWORD", "restaurant_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXP_MINUTES = int(os.getenv("JWT_EXP_MINUTES", str(60 * 24 * 7)))  # default: 7 days
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("restaurant_api")


def get_conn():
    return psycopg2.connect(**DB_CFG)


class UserOut(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    role: str
    tenant_id: Optional[str] = None
    created_utc: datetime


def create_access_token(*, subject: str, expires_delta: Optional[timedelta] = None) -> str:
    payload: Dict[str, Any] = {"sub": subject}
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_EXP_MINUTES)
    payload["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def get_user_by_id(uid: int) -> Optional[UserOut]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute(
            "SELECT id, username, email, role, tenant_id::text AS tenant_id, created_utc FROM users WHERE id = %s",
            (uid,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return UserOut(**dict(row))


def resolve_user_from_session_token(session_token: str) -> Optional[UserOut]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        user_id = int(subject)
    except (JWTError, ValueError):
        return None

    return get_user_by_id(user_id)


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> UserOut:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


try:
    from backend import app_context
    from backend.subscription_jobs import (
        get_subscription_job_metrics,
        shutdown_subscription_scheduler,
        start_subscription_scheduler,
    )
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]
    from subscription_jobs import (  # type: ignore[no-redef]
        get_subscription_job_metrics,
        shutdown_subscription_scheduler,
        start_subscription_scheduler,
    )

app_context.configure(get_conn=get_conn)

app = FastAPI(title="Restaurant Subscriptions API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions_router)


@app.on_event("startup")
def _start_subscription_engine() -> None:
    prepare_subscription_storage()
    if get_subscription_config().scheduler_enabled:
        start_subscription_scheduler()
    else:
        logger.info("Subscription scheduler disabled by configuration")


@app.on_event("shutdown")
def _shutdown_subscription_engine() -> None:
    shutdown_subscription_scheduler()
    get_gateway_registry().close()


@app.get("/api/metrics/subscription-jobs")
def read_subscription_job_metrics(current_user: UserOut = Depends(get_current_user)) -> Dict[str, Any]:
    if not is_subscription_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return get_subscription_job_metrics()


import hashlib
import uuid
from datetime import datetime, timedelta, timezone

import jwt
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

import ledger
from config import get_settings
from database import RefreshToken, get_db, transaction, utcnow
from errors import ConflictError
from ratelimit import auth_limit
from schemas import (
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UserOut,
)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

logger = structlog.get_logger(__name__)

auth_router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/login")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode(user_id, token_type: str, ttl: timedelta, jti=None):
    settings = get_settings()
    now = datetime.now(timezone.utc)
    jti = jti or uuid.uuid4()
    payload = {
        "sub": str(user_id),
        "typ": token_type,
        "jti": str(jti),
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM), jti


def create_access_token(user_id):
    settings = get_settings()
    token, _ = _encode(
        user_id, ACCESS, timedelta(minutes=settings.access_token_ttl_minutes)
    )
    return token


def decode_token(token: str, expected_type: str) -> dict:
    """Verify signature, expiry, issuer and token type; raise 401 otherwise."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[ALGORITHM],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "sub", "jti", "typ"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="invalid token")

    if payload.get("typ") != expected_type:
        raise HTTPException(status_code=401, detail="invalid token type")
    try:
        payload["sub"] = uuid.UUID(payload["sub"])
        payload["jti"] = uuid.UUID(payload["jti"])
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid token")
    return payload


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> uuid.UUID:
    # No database access here: the notification stream depends on this and
    # must not keep a session open for the life of the connection.
    return decode_token(token, ACCESS)["sub"]


def issue_tokens(db: Session, user_id) -> TokenPair:
    settings = get_settings()
    ttl = timedelta(days=settings.refresh_token_ttl_days)
    refresh_token, jti = _encode(user_id, REFRESH, ttl)
    with transaction(db):
        db.add(
            RefreshToken(
                id=jti,
                user_id=user_id,
                token_hash=hash_refresh_token(refresh_token),
                expires_at=utcnow() + ttl,
            )
        )
    return TokenPair(
        access_token=create_access_token(user_id),
        refresh_token=refresh_token,
        expires_in=settings.access_token_ttl_minutes * 60,
    )


def rotate_refresh_token(db: Session, refresh_token: str) -> TokenPair:
    """Swap a live refresh token for a new pair; the old one is revoked."""
    payload = decode_token(refresh_token, REFRESH)
    settings = get_settings()
    ttl = timedelta(days=settings.refresh_token_ttl_days)

    with transaction(db):
        stored = (
            db.query(RefreshToken)
            .filter(
                RefreshToken.id == payload["jti"],
                RefreshToken.token_hash == hash_refresh_token(refresh_token),
            )
            .with_for_update()
            .first()
        )
        if stored is None or stored.revoked_at is not None or stored.expires_at <= utcnow():
            raise HTTPException(status_code=401, detail="invalid refresh token")

        new_token, new_jti = _encode(stored.user_id, REFRESH, ttl)
        stored.revoked_at = utcnow()
        stored.replaced_by = new_jti
        db.add(
            RefreshToken(
                id=new_jti,
                user_id=stored.user_id,
                token_hash=hash_refresh_token(new_token),
                expires_at=utcnow() + ttl,
            )
        )
        user_id = stored.user_id

    return TokenPair(
        access_token=create_access_token(user_id),
        refresh_token=new_token,
        expires_in=settings.access_token_ttl_minutes * 60,
    )


def revoke_refresh_token(db: Session, refresh_token: str) -> None:
    payload = decode_token(refresh_token, REFRESH)
    with transaction(db):
        stored = (
            db.query(RefreshToken)
            .filter(
                RefreshToken.id == payload["jti"],
                RefreshToken.token_hash == hash_refresh_token(refresh_token),
            )
            .first()
        )
        if stored is not None and stored.revoked_at is None:
            stored.revoked_at = utcnow()


def purge_refresh_tokens(db: Session) -> int:
    """Drop expired and revoked refresh tokens."""
    with transaction(db):
        deleted = (
            db.query(RefreshToken)
            .filter(
                (RefreshToken.expires_at <= utcnow()) | (RefreshToken.revoked_at.isnot(None))
            )
            .delete(synchronize_session=False)
        )
    logger.info("refresh tokens purged", count=deleted)
    return deleted


@auth_router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@auth_limit
def register(request: Request, user: RegisterRequest, db: Session = Depends(get_db)):
    email = normalize_email(user.email)
    if ledger.get_user_by_email(db, email) is not None:
        raise ConflictError("email already registered")

    new_user = ledger.create_user(
        db,
        email=email,
        password_hash=generate_password_hash(user.password),
        name=(user.name or "").strip() or None,
    )
    logger.info("user registered", user_id=str(new_user.id))
    tokens = issue_tokens(db, new_user.id)
    return AuthResponse(user=UserOut.model_validate(new_user), **tokens.model_dump())


@auth_router.post("/login", response_model=AuthResponse)
@auth_limit
def login(request: Request, user: LoginRequest, db: Session = Depends(get_db)):
    db_user = ledger.get_user_by_email(db, normalize_email(user.email))
    if not db_user or not check_password_hash(db_user.password_hash, user.password):
        raise HTTPException(status_code=401, detail="invalid credentials")

    tokens = issue_tokens(db, db_user.id)
    return AuthResponse(user=UserOut.model_validate(db_user), **tokens.model_dump())


@auth_router.post("/refresh", response_model=TokenPair)
@auth_limit
def refresh(request: Request, body: RefreshRequest, db: Session = Depends(get_db)):
    return rotate_refresh_token(db, body.refresh_token)


@auth_router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
@auth_limit
def logout(request: Request, body: RefreshRequest, db: Session = Depends(get_db)):
    revoke_refresh_token(db, body.refresh_token)


@auth_router.get("/me", response_model=UserOut)
@auth_limit
def me(
    request: Request,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ledger.get_user(db, user_id)

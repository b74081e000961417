"""Authentication sessions.

A :class:`Session` is the explicit value handed to every component call that
acts on behalf of a user. :class:`SessionStore` owns the session lifecycle:
tokens are minted on sign-in, looked up on every request and revoked on
sign-out by recording their ``jti`` in ``revoked_tokens``.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import Header, Request
from jose import jwt
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    create_access_token, create_refresh_token, verify_token, verify_refresh_token,
    get_password_hash, verify_password, UnauthorizedException, AppException
)

logger = logging.getLogger(__name__)


class Session(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str = "user"
    jti: str
    expires_at: datetime
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class SessionStore:
    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self):
        await self.db.users.create_index("email", unique=True)
        await self.db.revoked_tokens.create_index("exp", expireAfterSeconds=0)

    async def register(self, email: str, password: str, role: str = "user") -> dict:
        user_doc = {
            "email": email.lower(),
            "password_hash": get_password_hash(password),
            "role": role,
            "created_at": datetime.utcnow(),
        }
        try:
            result = await self.db.users.insert_one(user_doc)
        except DuplicateKeyError:
            raise AppException(detail="Email already registered")
        user_doc["_id"] = result.inserted_id
        logger.info("User registered", extra={"user_id": str(result.inserted_id)})
        return user_doc

    async def sign_in(self, email: str, password: str) -> Session:
        user = await self.db.users.find_one({"email": email.lower()})
        if not user or not verify_password(password, user["password_hash"]):
            raise UnauthorizedException("Incorrect email or password")
        return self._issue(str(user["_id"]), user["email"], user.get("role", "user"))

    async def refresh(self, refresh_token: str) -> Session:
        payload = verify_refresh_token(refresh_token)
        if await self.is_revoked(payload.get("jti")):
            raise UnauthorizedException("Refresh token has been revoked")
        # Rotate: the old refresh token cannot be used twice
        await self._revoke_payload(payload)
        return self._issue(payload["sub"], payload.get("email"), payload.get("role", "user"))

    async def sign_out(self, session: Session):
        await self._revoke(session.jti, session.expires_at)
        if session.refresh_token:
            try:
                await self._revoke_payload(verify_refresh_token(session.refresh_token))
            except UnauthorizedException:
                # Already expired, nothing left to revoke
                pass
        logger.info("Session signed out", extra={"user_id": session.user_id})

    async def get_current(self, token: str) -> Optional[Session]:
        try:
            payload = verify_token(token)
        except UnauthorizedException:
            return None
        if await self.is_revoked(payload.get("jti")):
            return None
        return Session(
            user_id=payload["sub"],
            email=payload.get("email"),
            role=payload.get("role", "user"),
            jti=payload["jti"],
            expires_at=datetime.utcfromtimestamp(payload["exp"]),
            access_token=token,
        )

    async def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        return await self.db.revoked_tokens.find_one({"jti": jti}) is not None

    async def _revoke(self, jti: str, exp: datetime):
        await self.db.revoked_tokens.update_one(
            {"jti": jti},
            {"$setOnInsert": {"exp": exp}},
            upsert=True
        )

    async def _revoke_payload(self, payload: dict):
        if "jti" in payload:
            await self._revoke(payload["jti"], datetime.utcfromtimestamp(payload["exp"]))

    def _issue(self, user_id: str, email: Optional[str], role: str) -> Session:
        claims = {"sub": user_id, "email": email, "role": role}
        access_token = create_access_token(claims)
        refresh_token = create_refresh_token(claims)
        payload = jwt.get_unverified_claims(access_token)
        return Session(
            user_id=user_id,
            email=email,
            role=role,
            jti=payload["jti"],
            expires_at=datetime.utcfromtimestamp(payload["exp"]),
            access_token=access_token,
            refresh_token=refresh_token,
        )


# --- Dependencies ---
def get_session_store(request: Request) -> SessionStore:
    return SessionStore(request.app.mongodb)

async def require_session(request: Request, authorization: str = Header(...)) -> Session:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedException("Invalid authentication credentials")

    session = await get_session_store(request).get_current(token)
    if session is None:
        raise UnauthorizedException("Invalid authentication credentials")

    request.state.session = session
    return session

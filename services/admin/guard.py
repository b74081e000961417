import asyncio
import logging
from typing import Set

from pymongo.errors import PyMongoError

from shared.models import AdminUserDB
from shared.sessions import Session, SessionStore
from shared.utils import ForbiddenException

logger = logging.getLogger(__name__)

ACCESS_DENIED = "Access denied. You are not an admin."

# Deferred sign-outs still running; holds strong references until done
_pending_sign_outs: Set[asyncio.Task] = set()


class AdminGuard:
    """Checks the ``admin_users`` flag on every admin entry point.

    A signed-in user without the flag is denied immediately and signed out
    after ``signout_delay`` seconds.
    """

    def __init__(self, db, sessions: SessionStore, signout_delay: float):
        self.db = db
        self.sessions = sessions
        self.signout_delay = signout_delay

    @property
    def pending_sign_outs(self) -> Set[asyncio.Task]:
        return set(_pending_sign_outs)

    async def is_admin(self, user_id: str) -> bool:
        record = await self.db.admin_users.find_one({"_id": user_id})
        return bool(record) and AdminUserDB(**record).is_admin

    async def grant(self, user_id: str, is_admin: bool = True):
        admin = AdminUserDB(_id=user_id, is_admin=is_admin)
        await self.db.admin_users.replace_one({"_id": user_id}, admin.dict(by_alias=True), upsert=True)
        logger.info("Admin flag set" if is_admin else "Admin flag cleared", extra={"user_id": user_id})

    async def require(self, session: Session) -> Session:
        if await self.is_admin(session.user_id):
            return session

        logger.warning("Admin access denied", extra={"user_id": session.user_id})
        task = asyncio.create_task(self._forced_sign_out(session))
        _pending_sign_outs.add(task)
        task.add_done_callback(_pending_sign_outs.discard)
        raise ForbiddenException(ACCESS_DENIED)

    async def _forced_sign_out(self, session: Session):
        await asyncio.sleep(self.signout_delay)
        try:
            await self.sessions.sign_out(session)
        except PyMongoError:
            logger.exception("Forced sign-out failed", extra={"user_id": session.user_id})
            return
        logger.info("Forced sign-out after denied admin access", extra={"user_id": session.user_id})

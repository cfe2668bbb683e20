"""
Account Store - גישה לחשבונות דואר ולמצב הסנכרון שלהם.

ה-cursor (history_id) הוא המשאב המשותף היחיד עם אינווריאנט: הוא לעולם לא יורד.
כל קידום עובר דרך advance_cursor, שמבצע compare-and-set על הערך הקודם
ומשווה ערכים כמספרים שלמים בדיוק שרירותי (int של Python) - cursor של Gmail
עלול לחרוג מטווח 64 ביט.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AccountNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.email_account import EmailAccount, SyncMode, SyncStatus

logger = get_logger(__name__)

# ניסיונות CAS לפני ויתור - כל כשל פירושו שכותב אחר קידם את ה-cursor בינתיים
_CAS_MAX_ATTEMPTS = 5


def cursor_value(cursor: str | int | None) -> int:
    """cursor -> int. None או מחרוזת ריקה נחשבים 0"""
    if cursor is None:
        return 0
    if isinstance(cursor, int):
        return cursor
    cursor = cursor.strip()
    if not cursor:
        return 0
    if not (cursor.isascii() and cursor.isdigit()):
        raise ValueError(f"cursor must be a non-negative integer string, got {cursor!r}")
    return int(cursor)


def is_cursor_newer(candidate: str | int | None, current: str | int | None) -> bool:
    """True רק אם candidate גדול ממש מ-current (שוויון = לא חדש)"""
    return cursor_value(candidate) > cursor_value(current)


class AccountStore:
    """ממשק צר לטבלת email_accounts"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def rollback(self) -> None:
        await self.db.rollback()

    async def find_by_id(self, account_id: int) -> EmailAccount | None:
        result = await self.db.execute(
            select(EmailAccount).where(EmailAccount.id == account_id)
        )
        return result.scalar_one_or_none()

    async def get(self, account_id: int) -> EmailAccount:
        account = await self.find_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def find_by_address(self, address: str) -> EmailAccount | None:
        result = await self.db.execute(
            select(EmailAccount).where(
                func.lower(EmailAccount.email) == address.strip().lower()
            )
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[EmailAccount]:
        result = await self.db.execute(
            select(EmailAccount)
            .where(EmailAccount.sync_enabled == True)  # noqa: E712
            .order_by(EmailAccount.id)
        )
        return list(result.scalars().all())

    async def advance_cursor(self, account_id: int, new_cursor: str) -> bool:
        """
        קידום ה-cursor רק אם new_cursor גדול מהערך הנוכחי.

        UPDATE מותנה בערך שנקרא - אם כותב אחר הקדים אותנו (rowcount=0)
        קוראים שוב ומשווים מחדש.

        Returns:
            True אם ה-cursor קודם, False אם הערך הקיים כבר גדול או שווה.
        """
        cursor_value(new_cursor)  # ולידציה לפני כל כתיבה

        for _ in range(_CAS_MAX_ATTEMPTS):
            result = await self.db.execute(
                select(EmailAccount.history_id).where(EmailAccount.id == account_id)
            )
            row = result.one_or_none()
            if row is None:
                raise AccountNotFoundError(account_id)
            current = row.history_id

            if not is_cursor_newer(new_cursor, current):
                logger.debug(
                    "Cursor not advanced - current value is not older",
                    extra_data={
                        "account_id": account_id,
                        "current": current,
                        "candidate": new_cursor,
                    },
                )
                return False

            condition = (
                EmailAccount.history_id.is_(None)
                if current is None
                else EmailAccount.history_id == current
            )
            updated = await self.db.execute(
                update(EmailAccount)
                .where(EmailAccount.id == account_id, condition)
                .values(history_id=new_cursor, updated_at=utcnow())
            )
            if updated.rowcount == 1:
                await self.db.commit()
                logger.info(
                    "Account cursor advanced",
                    extra_data={
                        "account_id": account_id,
                        "from": current,
                        "to": new_cursor,
                    },
                )
                return True

            logger.info(
                "Cursor compare-and-set lost a race, retrying",
                extra_data={"account_id": account_id, "expected": current},
            )

        logger.warning(
            "Cursor compare-and-set gave up after repeated conflicts",
            extra_data={"account_id": account_id, "candidate": new_cursor},
        )
        return False

    async def record_successful_sync(self, account_id: int, cursor: str | None = None) -> None:
        """סנכרון הושלם: last_sync_at=now, סטטוס ACTIVE, ניקוי last_error, וקידום cursor אם נמסר"""
        if cursor:
            await self.advance_cursor(account_id, cursor)
        await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id)
            .values(
                last_sync_at=utcnow(),
                sync_status=SyncStatus.ACTIVE,
                last_error=None,
                updated_at=utcnow(),
            )
        )
        await self.db.commit()

    async def record_sync_error(self, account_id: int, error: str) -> None:
        await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id)
            .values(
                sync_status=SyncStatus.ERROR,
                last_error=error[:2000],
                updated_at=utcnow(),
            )
        )
        await self.db.commit()
        logger.warning(
            "Sync error recorded",
            extra_data={"account_id": account_id, "error": error},
        )

    async def record_webhook_failure(
        self,
        account_id: int,
        error: str,
        at: datetime | None = None,
    ) -> int:
        """
        הגדלה אטומית של webhook_failure_count ושמירת השגיאה.

        Returns:
            ערך המונה אחרי ההגדלה.
        """
        at = at or utcnow()
        result = await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id)
            .values(
                webhook_failure_count=EmailAccount.webhook_failure_count + 1,
                last_webhook_error=error[:2000],
                last_webhook_error_at=at,
                updated_at=at,
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise AccountNotFoundError(account_id)

        count = await self.db.scalar(
            select(EmailAccount.webhook_failure_count).where(EmailAccount.id == account_id)
        )
        await self.db.commit()
        return int(count or 0)

    async def switch_to_polling(self, account_id: int) -> bool:
        """
        PUSH -> POLLING ואיפוס מונה הכשלים.

        UPDATE מותנה ב-sync_mode=PUSH - רק קורא אחד "זוכה" במעבר,
        ולכן ה-job החוזר נרשם פעם אחת לכל הסלמה.
        """
        result = await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id, EmailAccount.sync_mode == SyncMode.PUSH)
            .values(
                sync_mode=SyncMode.POLLING,
                webhook_failure_count=0,
                updated_at=utcnow(),
            )
        )
        await self.db.commit()
        return result.rowcount == 1

    async def reset_webhook_failures(self, account_id: int) -> None:
        """איפוס המונה בלי לשנות מצב - כשהחשבון כבר ב-POLLING"""
        await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id)
            .values(webhook_failure_count=0, updated_at=utcnow())
        )
        await self.db.commit()

    async def update_tokens(
        self,
        account_id: int,
        access_token: str,
        expires_at: datetime,
    ) -> None:
        await self.db.execute(
            update(EmailAccount)
            .where(EmailAccount.id == account_id)
            .values(access_token=access_token, token_expires_at=expires_at)
        )
        await self.db.commit()

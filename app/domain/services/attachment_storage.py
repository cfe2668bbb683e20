"""
אחסון קבצים מצורפים.

ברירת המחדל כותבת לתיקייה מקומית (UPLOAD_DIR) ומחזירה reference
בצורת file://. אחסון חיצוני (S3 וכו') מחליף את המחלקה דרך אותו ממשק.
"""
from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Protocol

from app.core.config import settings
from app.core.exceptions import ValidationException
from app.core.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    name = _UNSAFE_CHARS_RE.sub("_", Path(filename).name).strip("._")
    return name[:200] or "attachment"


class AttachmentStorage(Protocol):
    async def save(
        self,
        account_id: int,
        message_id: str,
        attachment_id: str,
        filename: str,
        content: bytes,
    ) -> str: ...


class LocalAttachmentStorage:
    def __init__(
        self,
        root: str | Path = settings.UPLOAD_DIR,
        max_size: int = settings.MAX_ATTACHMENT_SIZE,
    ):
        self.root = Path(root)
        self.max_size = max_size

    def _path_for(self, account_id: int, message_id: str, attachment_id: str, filename: str) -> Path:
        # attachment_id של Gmail ארוך מאוד - מספיק prefix לייחודיות בתוך ההודעה
        key = safe_filename(attachment_id)[:32]
        return (
            self.root
            / "attachments"
            / str(account_id)
            / safe_filename(message_id)
            / f"{key}_{safe_filename(filename)}"
        )

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def save(
        self,
        account_id: int,
        message_id: str,
        attachment_id: str,
        filename: str,
        content: bytes,
    ) -> str:
        if len(content) > self.max_size:
            raise ValidationException(
                f"attachment exceeds {self.max_size} bytes",
                details={"message_id": message_id, "size": len(content)},
            )
        path = self._path_for(account_id, message_id, attachment_id, filename)
        await asyncio.to_thread(self._write, path, content)
        logger.debug(
            "Attachment stored",
            extra_data={"account_id": account_id, "message_id": message_id, "path": str(path)},
        )
        return path.resolve().as_uri()

"""
תוצאות per-item עבור sweeps ו-batches.

כשל של פריט אחד (חשבון, אירוע, job חוזר) לא עוצר את ה-batch:
כל פריט מסתיים ב-ItemResult, וה-BatchSummary נרשם ללוג פעם אחת בסוף.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ItemResult:
    item_id: Any
    ok: bool
    error: str | None = None

    @classmethod
    def success(cls, item_id: Any) -> "ItemResult":
        return cls(item_id=item_id, ok=True)

    @classmethod
    def failure(cls, item_id: Any, error: Exception | str) -> "ItemResult":
        return cls(item_id=item_id, ok=False, error=str(error))


@dataclass
class BatchSummary:
    name: str
    results: list[ItemResult] = field(default_factory=list)
    skipped: int = 0

    def add(self, result: ItemResult) -> None:
        self.results.append(result)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "total": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": {str(r.item_id): r.error for r in self.failures},
        }

    def log(self) -> None:
        level = "warning" if self.failed else "info"
        getattr(logger, level)(
            f"Batch '{self.name}' finished",
            extra_data=self.to_dict(),
        )


async def run_batch(
    name: str,
    items: Iterable[T],
    handler: Callable[[T], Awaitable[Any]],
    *,
    item_id: Callable[[T], Any],
    on_error: Callable[[], Awaitable[Any]] | None = None,
    skipped: int = 0,
) -> BatchSummary:
    """
    מריץ handler על כל פריט ואוסף ItemResult לכל אחד.

    on_error רץ אחרי כל כשל (למשל rollback של ה-session) כדי
    שהפריט הבא יתחיל ממצב נקי.
    """
    summary = BatchSummary(name=name, skipped=skipped)
    for item in items:
        key = item_id(item)
        try:
            await handler(item)
        except Exception as exc:
            logger.error(
                f"Batch '{name}' item failed",
                extra_data={"batch": name, "item_id": key, "error": str(exc)},
                exc_info=True,
            )
            summary.add(ItemResult.failure(key, exc))
            if on_error is not None:
                await on_error()
        else:
            summary.add(ItemResult.success(key))
    summary.log()
    return summary

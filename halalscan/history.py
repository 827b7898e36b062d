"""Capacity-bounded local history of successful scans."""

from __future__ import annotations

import logging
import time

from .imaging import from_data_url, to_data_url
from .models import HalalStatus, ImageAsset, IngredientDetail, ScanHistoryItem, ScanResult
from .store import SecureStorage, StorageWriteFailed

logger = logging.getLogger(__name__)

HISTORY_KEY = "scanHistory"
DEFAULT_CAPACITY = 30

# Legacy records stored ingredient names only. Their status is unknown, and
# they are migrated as HALAL.
LEGACY_INGREDIENT_STATUS = HalalStatus.HALAL


def _item_to_dict(item: ScanHistoryItem, *, with_thumbnail: bool = True) -> dict:
    data = {"id": item.id, "date": item.date, "result": item.result.to_dict()}
    if with_thumbnail and item.thumbnail is not None:
        data["thumbnail"] = to_data_url(item.thumbnail)
    return data


def migrate_record(record: dict) -> dict:
    """Upgrade a persisted history record to the current shape.

    Older records stored ``ingredientsDetected`` as a list of plain names.
    """
    result = record.get("result") or {}
    ingredients = result.get("ingredientsDetected") or []
    if ingredients and isinstance(ingredients[0], str):
        result["ingredientsDetected"] = [
            {"name": name, "status": LEGACY_INGREDIENT_STATUS.value}
            for name in ingredients
        ]
    return record


def _item_from_dict(record: dict) -> ScanHistoryItem:
    record = migrate_record(record)
    thumbnail: ImageAsset | None = None
    if record.get("thumbnail"):
        try:
            thumbnail = from_data_url(record["thumbnail"])
        except ValueError:
            logger.warning("Dropping unreadable thumbnail of history item %s", record.get("id"))
    return ScanHistoryItem(
        id=str(record["id"]),
        date=int(record["date"]),
        result=ScanResult.from_dict(record["result"]),
        thumbnail=thumbnail,
    )


class HistoryStore:
    """Newest-first scan log, evicting the oldest entries beyond ``capacity``.

    Persistence is best-effort. ``append`` never raises.
    """

    def __init__(self, storage: SecureStorage, capacity: int = DEFAULT_CAPACITY) -> None:
        self._storage = storage
        self._capacity = capacity
        self._items: list[ScanHistoryItem] = []
        self._last_id = 0

    @property
    def items(self) -> list[ScanHistoryItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def load(self) -> list[ScanHistoryItem]:
        """Read persisted history, migrating legacy records and skipping bad ones."""
        raw = self._storage.get_item(HISTORY_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Stored history has unexpected type %s, ignoring", type(raw).__name__)
            raw = []

        items: list[ScanHistoryItem] = []
        for record in raw:
            try:
                items.append(_item_from_dict(record))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping unreadable history record: %s", e)

        self._items = items[: self._capacity]
        return self.items

    def _next_id(self) -> str:
        now = int(time.time() * 1000)
        self._last_id = max(now, self._last_id + 1)
        return str(self._last_id)

    def append(
        self, result: ScanResult, thumbnail: ImageAsset | None = None
    ) -> ScanHistoryItem | None:
        """Record a successful scan.

        Failure results (confidence 0) are not recorded. If persisting fails
        while a thumbnail is attached, the write is retried once without it.

        Returns:
            The recorded item, or None if ``result`` was a failure.
        """
        if result.is_failure:
            logger.debug("Not recording failed scan in history")
            return None

        item = ScanHistoryItem(
            id=self._next_id(),
            date=int(time.time() * 1000),
            result=result,
            thumbnail=thumbnail,
        )
        updated = [item, *self._items][: self._capacity]

        try:
            self._persist(updated)
        except StorageWriteFailed as e:
            if thumbnail is None:
                logger.warning("History write failed, keeping it in memory only: %s", e)
            else:
                logger.warning("History write failed, retrying without thumbnail: %s", e)
                item.thumbnail = None
                try:
                    self._persist(updated)
                except StorageWriteFailed as e2:
                    logger.warning("History write failed again, giving up: %s", e2)

        self._items = updated
        return item

    def _persist(self, items: list[ScanHistoryItem]) -> None:
        self._storage.set_item(HISTORY_KEY, [_item_to_dict(i) for i in items])

    def get(self, item_id: str) -> ScanHistoryItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def clear(self) -> None:
        self._items = []
        self._storage.remove_item(HISTORY_KEY)

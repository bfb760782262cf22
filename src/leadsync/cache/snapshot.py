"""In-memory replica of one remote list, keyed by remote item id."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Generic

from src.leadsync.cache.schemas import ChangeRecord, FieldsT, SyncedItem


class Snapshot(Generic[FieldsT]):
    """Reconciled local copy of a remote list.

    Holds at most one SyncedItem per item id. Records are applied in feed
    order: a later record for the same id supersedes an earlier one.

    Args:
        fields_model: ListFields subclass used to type each row's columns.
        items: Optional initial items (e.g. loaded from storage).
    """

    def __init__(
        self,
        fields_model: type[FieldsT],
        items: Iterable[SyncedItem[FieldsT]] = (),
    ) -> None:
        self._fields_model = fields_model
        self._items: dict[str, SyncedItem[FieldsT]] = {}
        for item in items:
            self._items[item.item_id] = item

    @property
    def fields_model(self) -> type[FieldsT]:
        return self._fields_model

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[SyncedItem[FieldsT]]:
        return iter(list(self._items.values()))

    def get(self, item_id: str) -> SyncedItem[FieldsT] | None:
        return self._items.get(item_id)

    def values(self) -> list[SyncedItem[FieldsT]]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()

    def upsert(self, item: SyncedItem[FieldsT]) -> None:
        self._items[item.item_id] = item

    def apply(self, records: Iterable[ChangeRecord]) -> int:
        """Apply change records in order and return how many were processed.

        - removed: delete the item if present (no-op otherwise)
        - otherwise: full replace of the item, or insert if new

        Every record is converted before the snapshot changes, so a batch is
        applied entirely or not at all. A replace resets ``is_calculated``
        but keeps ``status_set_by_user_at``: the feed echoes the user's own
        writes without that provenance.

        Args:
            records: ChangeRecords in feed order.

        Returns:
            Number of records applied, including no-op removals.
        """
        staged: list[tuple[str, SyncedItem[FieldsT] | None]] = []
        for record in records:
            if record.removed:
                staged.append((record.id, None))
            else:
                staged.append(
                    (
                        record.id,
                        SyncedItem[self._fields_model](
                            item_id=record.id,
                            fields=self._fields_model.from_columns(record.fields),
                        ),
                    )
                )

        for item_id, item in staged:
            if item is None:
                self._items.pop(item_id, None)
                continue
            previous = self._items.get(item_id)
            if previous is not None and previous.status_set_by_user_at is not None:
                item = item.model_copy(
                    update={"status_set_by_user_at": previous.status_set_by_user_at}
                )
            self._items[item_id] = item
        return len(staged)

#!/usr/bin/env python3
"""
Per-user interaction flags on items.

A user's read, favorite and read-later flags live in one row per
(user, item). Setting a flag creates the row on first touch with the other
flags false; later writes change only the named flag. Repeating a write
leaves the stored flags unchanged apart from ``updated_at``.
"""

from typing import Optional

from config import get_logger
from errors import ItemNotFoundError
from models import DatabaseQueue
from schemas import InteractionField, InteractionState, ItemKind
from telemetry import trace_span

logger = get_logger("interactions")


class InteractionReconciler:
    def __init__(self, db: DatabaseQueue):
        self.db = db

    @trace_span(
        "set_interaction",
        tracer_name="interactions",
        attr_from_args=lambda self, user_id, item_id, item_kind, field, value, now=None: {
            "user.id": user_id,
            "item.id": int(item_id),
            "interaction.field": str(field),
        },
    )
    async def set_interaction(
        self,
        user_id: str,
        item_id: int,
        item_kind: str,
        field: str,
        value: bool,
        now: Optional[int] = None,
    ) -> InteractionState:
        """Set one flag for (user, item) and return the resulting state.

        Raises:
            ValueError: unknown field or item kind.
            ItemNotFoundError: the item does not exist.
            StorageError: the write failed.
        """
        try:
            flag = InteractionField(field)
        except ValueError:
            raise ValueError(f"Unknown interaction field: {field!r}") from None
        try:
            kind = ItemKind(item_kind)
        except ValueError:
            raise ValueError(f"Unknown item kind: {item_kind!r}") from None

        if not await self.db.execute('item_exists', item_id=item_id):
            raise ItemNotFoundError(f"Item {item_id} not found")

        state = await self.db.execute(
            'upsert_interaction',
            user_id=user_id,
            item_id=item_id,
            item_kind=kind.value,
            field=flag.value,
            value=bool(value),
            now=now,
        )
        logger.debug(f"{user_id} set {flag.value}={bool(value)} on item {item_id}")
        return state

    async def get_interaction(self, user_id: str, item_id: int) -> Optional[InteractionState]:
        return await self.db.execute('get_interaction', user_id=user_id, item_id=item_id)

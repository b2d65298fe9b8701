"""Generic CRUD over a named JSON collection stored through the sync facade.

A collection is described by data (key, JSON Schema, extra rules) instead of
one hand-written manager per entity.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jsonschema import Draft7Validator

from ..facade import SyncFacade

logger = logging.getLogger(__name__)

# A rule returns an error message, or None if the item passes
Rule = Callable[[dict[str, Any]], str | None]


class ValidationError(ValueError):
    """Raised when an item fails its collection's schema or rules."""

    def __init__(self, collection: str, errors: list[str]):
        super().__init__(
            f"Invalid item for '{collection}':\n" + "\n".join(f"  - {e}" for e in errors)
        )
        self.collection = collection
        self.errors = errors


@dataclass
class CollectionSpec:
    """Everything needed to manage one stored collection."""

    key: str
    schema: dict[str, Any]
    rules: list[Rule] = field(default_factory=list)
    id_field: str = "id"
    defaults: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Draft7Validator.check_schema(self.schema)


def validate_item(spec: CollectionSpec, item: Any) -> list[str]:
    """Check an item against its schema, then its rules.

    Rules only run once the schema passes, so they can rely on field types.

    Returns:
        List of error messages; empty when the item is valid.
    """
    validator = Draft7Validator(spec.schema)
    errors = []
    for error in sorted(validator.iter_errors(item), key=lambda e: [str(p) for p in e.path]):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")

    if errors:
        return errors

    for rule in spec.rules:
        message = rule(item)
        if message:
            errors.append(message)

    return errors


class Collection:
    """A list of items stored under one key.

    Every mutation reads the whole list, changes it in memory and writes it
    back; deleting an item is a write of the list without it.
    """

    def __init__(self, facade: SyncFacade, spec: CollectionSpec):
        self.facade = facade
        self.spec = spec

    @property
    def key(self) -> str:
        return self.spec.key

    def validate(self, item: Any) -> list[str]:
        return validate_item(self.spec, item)

    async def items(self) -> list[dict[str, Any]]:
        """Load every item; a stored value that is not a list reads as empty."""
        items = await self.facade.get(self.key, [])
        if not isinstance(items, list):
            logger.warning(f"Stored value of {self.key} is not a list, ignoring it")
            return []
        return items

    async def get_item(self, item_id: str) -> dict[str, Any] | None:
        for item in await self.items():
            if isinstance(item, dict) and item.get(self.spec.id_field) == item_id:
                return item
        return None

    async def filter(self, **criteria: Any) -> list[dict[str, Any]]:
        """Items whose fields equal every given criterion.

        Criteria whose value is None are ignored, so optional filters can be
        passed through unchanged.
        """
        active = {k: v for k, v in criteria.items() if v is not None}
        return [
            item
            for item in await self.items()
            if isinstance(item, dict) and all(item.get(k) == v for k, v in active.items())
        ]

    async def add(self, item: dict[str, Any]) -> dict[str, Any] | None:
        """Validate and append a new item.

        Returns:
            The stored item with its generated id and createdAt, or None if
            the local write failed.

        Raises:
            ValidationError: If the item is invalid; nothing is written.
        """
        fields = {k: v for k, v in item.items() if k not in (self.spec.id_field, "createdAt")}
        errors = self.validate(fields)
        if errors:
            raise ValidationError(self.key, errors)

        new_item = {
            **fields,
            self.spec.id_field: uuid.uuid4().hex,
            "createdAt": datetime.now().isoformat(),
        }

        items = await self.items()
        items.append(new_item)
        if not self.facade.set(self.key, items):
            logger.error(f"Failed to add item to {self.key}")
            return None

        logger.info(f"Added {new_item[self.spec.id_field]} to {self.key}")
        return new_item

    async def update(self, item_id: str, changes: dict[str, Any]) -> bool:
        """Apply changes to one item.

        Returns:
            True if the item existed and the write succeeded.

        Raises:
            ValidationError: If the updated item is invalid.
        """
        items = await self.items()
        for index, item in enumerate(items):
            if isinstance(item, dict) and item.get(self.spec.id_field) == item_id:
                break
        else:
            return False

        updated = {**item, **changes, self.spec.id_field: item_id}
        if "createdAt" in item:
            updated["createdAt"] = item["createdAt"]

        errors = self.validate(
            {k: v for k, v in updated.items() if k not in (self.spec.id_field, "createdAt")}
        )
        if errors:
            raise ValidationError(self.key, errors)

        items[index] = updated
        return self.facade.set(self.key, items)

    async def remove(self, item_id: str) -> bool:
        """Delete one item. Returns True if it existed and the write succeeded."""
        items = await self.items()
        remaining = [
            item
            for item in items
            if not (isinstance(item, dict) and item.get(self.spec.id_field) == item_id)
        ]
        if len(remaining) == len(items):
            return False
        return self.facade.set(self.key, remaining)


class SingletonDocument:
    """A single JSON object stored under one key, with defaults."""

    def __init__(self, facade: SyncFacade, spec: CollectionSpec):
        self.facade = facade
        self.spec = spec

    @property
    def key(self) -> str:
        return self.spec.key

    async def load(self) -> dict[str, Any]:
        """Stored fields over the defaults."""
        stored = await self.facade.get(self.key, dict(self.spec.defaults))
        if not isinstance(stored, dict):
            logger.warning(f"Stored value of {self.key} is not an object, using defaults")
            return dict(self.spec.defaults)
        return {**self.spec.defaults, **stored}

    async def save(self, value: dict[str, Any]) -> bool:
        """Validate and store the whole document.

        Raises:
            ValidationError: If the document is invalid; nothing is written.
        """
        errors = validate_item(self.spec, value)
        if errors:
            raise ValidationError(self.key, errors)
        return self.facade.set(self.key, value)

    async def update(self, **fields: Any) -> bool:
        current = await self.load()
        return await self.save({**current, **fields})

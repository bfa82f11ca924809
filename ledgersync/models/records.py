"""Change-tracked record model.

Every synchronizable entity carries a stable id, an owning scope, a
millisecond ``updated_at`` used as the only conflict-resolution signal, and a
tombstone flag. Entity fields are opaque to the sync engine.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar

SETTINGS_ID = "settings"


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Generate a new globally unique record identifier."""
    return uuid.uuid4().hex


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present, non-None value among camelCase/snake_case aliases."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class SyncedRecord:
    """Behaviour shared by all change-tracked records.

    Concrete records are dataclasses declaring ``id``, ``updated_at``,
    ``is_deleted`` and ``extra`` alongside their own fields.
    """

    kind: ClassVar[str] = ""
    # wire name -> attribute name, for the entity-specific fields
    WIRE_FIELDS: ClassVar[dict[str, str]] = {}

    id: str
    updated_at: int
    is_deleted: bool
    extra: dict[str, Any]

    @property
    def scope_id(self) -> str:
        return ""

    def touch(self, now: int | None = None) -> None:
        """Record a local mutation.

        The new timestamp is strictly greater than the previous one, so the
        record's own history stays ordered even if the wall clock steps back.
        """
        stamp = now_ms() if now is None else now
        self.updated_at = max(stamp, self.updated_at + 1)

    def tombstone(self, now: int | None = None) -> None:
        """Mark the record deleted; the deletion is itself a change."""
        self.is_deleted = True
        self.touch(now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        data: dict[str, Any] = dict(self.extra)
        data["id"] = self.id
        for wire, attr in self.WIRE_FIELDS.items():
            value = getattr(self, attr)
            data[wire] = list(value) if isinstance(value, list) else value
        data["updatedAt"] = self.updated_at
        data["isDeleted"] = self.is_deleted
        return data

    @classmethod
    def _known_keys(cls) -> set[str]:
        keys = {"id", "updatedAt", "updated_at", "isDeleted", "is_deleted"}
        keys.update(cls.WIRE_FIELDS)
        keys.update(cls.WIRE_FIELDS.values())
        return keys

    @classmethod
    def _extra_from(cls, data: dict[str, Any]) -> dict[str, Any]:
        known = cls._known_keys()
        return {k: v for k, v in data.items() if k not in known}


@dataclass
class Ledger(SyncedRecord):
    """A ledger; it is its own scope."""

    kind: ClassVar[str] = "ledger"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "name": "name",
        "themeColor": "theme_color",
        "createdAt": "created_at",
    }

    id: str
    name: str = ""
    theme_color: str = "#007AFF"
    created_at: int = 0
    updated_at: int = 0
    is_deleted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scope_id(self) -> str:
        return self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Ledger":
        created_at = _as_int(_pick(data, "createdAt", "created_at"))
        return cls(
            id=str(data["id"]),
            name=_pick(data, "name", default=""),
            theme_color=_pick(data, "themeColor", "theme_color", default="#007AFF"),
            created_at=created_at,
            updated_at=_as_int(_pick(data, "updatedAt", "updated_at"), created_at),
            is_deleted=_as_bool(_pick(data, "isDeleted", "is_deleted", default=False)),
            extra=cls._extra_from(data),
        )


@dataclass
class Category(SyncedRecord):
    """A transaction category. An empty ``ledger_id`` means global."""

    kind: ClassVar[str] = "category"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "name": "name",
        "icon": "icon",
        "type": "type",
        "order": "order",
        "isCustom": "is_custom",
        "ledgerId": "ledger_id",
    }

    id: str
    name: str = ""
    icon: str = "Circle"
    type: str = "expense"
    order: int = 0
    is_custom: bool = False
    ledger_id: str = ""
    updated_at: int = 0
    is_deleted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scope_id(self) -> str:
        return self.ledger_id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Category":
        return cls(
            id=str(data["id"]),
            name=_pick(data, "name", default=""),
            icon=_pick(data, "icon", default="Circle"),
            type=_pick(data, "type", default="expense"),
            order=_as_int(_pick(data, "order")),
            is_custom=_as_bool(_pick(data, "isCustom", "is_custom", default=False)),
            ledger_id=_pick(data, "ledgerId", "ledger_id", default=""),
            updated_at=_as_int(_pick(data, "updatedAt", "updated_at")),
            is_deleted=_as_bool(_pick(data, "isDeleted", "is_deleted", default=False)),
            extra=cls._extra_from(data),
        )


@dataclass
class CategoryGroup(SyncedRecord):
    """An ordered group of categories."""

    kind: ClassVar[str] = "group"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "name": "name",
        "categoryIds": "category_ids",
        "order": "order",
        "ledgerId": "ledger_id",
    }

    id: str
    name: str = ""
    category_ids: list[str] = field(default_factory=list)
    order: int = 0
    ledger_id: str = ""
    updated_at: int = 0
    is_deleted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scope_id(self) -> str:
        return self.ledger_id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CategoryGroup":
        category_ids = _pick(data, "categoryIds", "category_ids", default=[])
        if isinstance(category_ids, str):
            # the structured backend stores the list as JSON text
            try:
                category_ids = json.loads(category_ids)
            except ValueError:
                category_ids = []
        return cls(
            id=str(data["id"]),
            name=_pick(data, "name", default=""),
            category_ids=[str(c) for c in category_ids],
            order=_as_int(_pick(data, "order")),
            ledger_id=_pick(data, "ledgerId", "ledger_id", default=""),
            updated_at=_as_int(_pick(data, "updatedAt", "updated_at")),
            is_deleted=_as_bool(_pick(data, "isDeleted", "is_deleted", default=False)),
            extra=cls._extra_from(data),
        )


@dataclass
class Transaction(SyncedRecord):
    """A ledger entry. ``attachment_ids`` are weak references into the attachment store."""

    kind: ClassVar[str] = "transaction"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {
        "ledgerId": "ledger_id",
        "amount": "amount",
        "type": "type",
        "categoryId": "category_id",
        "date": "date",
        "note": "note",
        "createdAt": "created_at",
        "attachmentIds": "attachment_ids",
    }

    id: str
    ledger_id: str
    amount: float = 0.0
    type: str = "expense"  # "expense" or "income"
    category_id: str = ""
    date: int = 0  # epoch milliseconds
    note: str = ""
    created_at: int = 0
    updated_at: int = 0
    is_deleted: bool = False
    attachment_ids: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scope_id(self) -> str:
        return self.ledger_id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        created_at = _as_int(_pick(data, "createdAt", "created_at"))
        return cls(
            id=str(data["id"]),
            ledger_id=_pick(data, "ledgerId", "ledger_id", default=""),
            amount=float(_pick(data, "amount", default=0.0)),
            type=_pick(data, "type", default="expense"),
            category_id=_pick(data, "categoryId", "category_id", default=""),
            date=_as_int(_pick(data, "date")),
            note=_pick(data, "note", default=""),
            created_at=created_at,
            updated_at=_as_int(_pick(data, "updatedAt", "updated_at"), created_at),
            is_deleted=_as_bool(_pick(data, "isDeleted", "is_deleted", default=False)),
            attachment_ids=list(_pick(data, "attachmentIds", "attachment_ids", default=[])),
            extra=cls._extra_from(data),
        )


@dataclass
class Settings(SyncedRecord):
    """The singleton settings record; ``data`` is an opaque nested config."""

    kind: ClassVar[str] = "settings"
    WIRE_FIELDS: ClassVar[dict[str, str]] = {"data": "data"}

    id: str = SETTINGS_ID
    data: dict[str, Any] = field(default_factory=dict)
    updated_at: int = 0
    is_deleted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        payload = _pick(data, "data", default={})
        if isinstance(payload, str):
            payload = json.loads(payload) if payload else {}
        return cls(
            id=str(data.get("id") or SETTINGS_ID),
            data=dict(payload),
            updated_at=_as_int(_pick(data, "updatedAt", "updated_at")),
            is_deleted=_as_bool(_pick(data, "isDeleted", "is_deleted", default=False)),
            extra=cls._extra_from(data),
        )


RECORD_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (Ledger, Category, CategoryGroup, Transaction, Settings)
}


def record_from_dict(kind: str, data: dict[str, Any]) -> SyncedRecord:
    """Build a record of the given kind from its wire dictionary.

    Raises:
        KeyError: If the kind is unknown or the payload has no ``id``.
    """
    return RECORD_TYPES[kind].from_dict(data)


def remote_wins(local: SyncedRecord, remote: SyncedRecord) -> bool:
    """Last-write-wins decision: the remote copy replaces the local one.

    Ties keep the local copy.
    """
    return remote.updated_at > local.updated_at

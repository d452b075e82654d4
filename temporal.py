"""
Bi-temporal versioning helpers.

Versioned tables keep one row per version. ``version_id`` is the row key,
``id`` is the logical entity id shared by every version, and the current
version is the one with ``valid_to == MAX_DATE`` that is not deleted. Rows are
never edited in place except to be closed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConcurrentModificationConflict, ImmutableVersion

MAX_DATE = datetime(9999, 12, 31, 23, 59, 59, 999000)
MIN_DATE = datetime(1900, 1, 1)

# Partial index predicates. The literal matches how DateTime is stored on SQLite.
OPEN_VERSION_SQL = f"valid_to = '{MAX_DATE.isoformat(sep=' ')}'"
LIVE_VERSION_SQL = f"{OPEN_VERSION_SQL} AND NOT is_deleted"

# The only columns a stored version may change after insert.
CLOSING_FIELDS = frozenset(
    {"valid_to", "system_to", "is_deleted", "deleted_at", "deleted_by", "updated_at"}
)

# Closed by the lifecycle itself, never copied forward by hand.
TEMPORAL_FIELDS = (
    "version_id",
    "previous_version_id",
    "valid_from",
    "valid_to",
    "system_from",
    "system_to",
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "changed_by",
    "change_reason",
)

T = TypeVar("T")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def current_version_filter(model, *, include_deleted: bool = False, **equals) -> list:
    criteria = [model.valid_to == MAX_DATE]
    if not include_deleted:
        criteria.append(model.is_deleted.is_(False))
    for key, value in equals.items():
        criteria.append(getattr(model, key) == value)
    return criteria


def as_of_filter(model, at: datetime, *, include_deleted: bool = False, **equals) -> list:
    criteria = [model.valid_from <= at, model.valid_to > at]
    if not include_deleted:
        criteria.append(model.is_deleted.is_(False))
    for key, value in equals.items():
        criteria.append(getattr(model, key) == value)
    return criteria


def bitemporal_as_of_filter(
    model, at: datetime, *, include_deleted: bool = False, **equals
) -> list:
    """Rows that were both recorded in the system and valid at ``at``."""
    return [
        model.system_from <= at,
        model.system_to > at,
        *as_of_filter(model, at, include_deleted=include_deleted, **equals),
    ]


def is_current_version(row) -> bool:
    return row.valid_to == MAX_DATE and not row.is_deleted


def was_valid_at(row, at: datetime) -> bool:
    return row.valid_from <= at < row.valid_to


def column_values(row) -> dict[str, Any]:
    mapper = sa_inspect(type(row))
    return {attr.key: getattr(row, attr.key) for attr in mapper.column_attrs}


def reject_in_place_edits(session: Session, flush_context, instances) -> None:
    """
    before_flush hook for versioned models.

    A stored version may only be closed or soft-deleted. Columns listed in a
    model's ``__mutable_columns__`` stay writable while the row is open.
    """
    for obj in session.dirty:
        model = type(obj)
        if not getattr(model, "__versioned__", False):
            continue
        state = sa_inspect(obj)
        changed = {
            attr.key for attr in state.attrs if attr.history.has_changes()
        } - CLOSING_FIELDS
        if obj.valid_to == MAX_DATE:
            changed -= set(getattr(model, "__mutable_columns__", ()))
        if changed:
            raise ImmutableVersion(
                f"{model.__name__} version {obj.version_id} cannot change "
                f"{', '.join(sorted(changed))} in place"
            )
    for obj in session.deleted:
        if getattr(type(obj), "__versioned__", False):
            raise ImmutableVersion(
                f"{type(obj).__name__} version {obj.version_id} cannot be deleted"
            )


def close_version(session: Session, model, version_id: str, at: datetime) -> None:
    """
    Close one version with an optimistic lock.

    The WHERE clause only matches a still-open row, so a version already
    closed by another writer affects zero rows and raises
    ConcurrentModificationConflict.
    """
    result = session.execute(
        update(model)
        .where(
            model.version_id == version_id,
            model.valid_to == MAX_DATE,
            model.system_to == MAX_DATE,
        )
        .values(valid_to=at, system_to=at)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationConflict(model.__name__, version_id)


def open_initial_version(model, at: datetime, actor: Optional[str] = None, **fields):
    data = {
        "id": new_id(),
        **fields,
        "version_id": new_id(),
        "previous_version_id": None,
        "valid_from": at,
        "valid_to": MAX_DATE,
        "system_from": at,
        "system_to": MAX_DATE,
        "is_deleted": False,
        "deleted_at": None,
        "deleted_by": None,
        "changed_by": actor,
        "created_at": at,
        "updated_at": at,
    }
    return model(**data)


def build_new_version_data(
    existing, updates: dict[str, Any], at: datetime, actor: Optional[str] = None
) -> dict[str, Any]:
    data = {
        key: value
        for key, value in column_values(existing).items()
        if key not in TEMPORAL_FIELDS
    }
    data.update(updates)
    data.update(
        id=existing.id,
        version_id=new_id(),
        previous_version_id=existing.version_id,
        valid_from=at,
        valid_to=MAX_DATE,
        system_from=at,
        system_to=MAX_DATE,
        is_deleted=False,
        deleted_at=None,
        deleted_by=None,
        changed_by=actor,
        updated_at=at,
    )
    return data


def _flush_successor(session: Session, model, row, closed_version_id: str) -> None:
    session.add(row)
    try:
        session.flush()
    except IntegrityError as exc:
        # Another writer already holds the open version for this id.
        raise ConcurrentModificationConflict(model.__name__, closed_version_id) from exc


def supersede(
    session: Session,
    model,
    current,
    updates: dict[str, Any],
    at: datetime,
    actor: Optional[str] = None,
):
    data = build_new_version_data(current, updates, at, actor)
    close_version(session, model, current.version_id, at)
    successor = model(**data)
    _flush_successor(session, model, successor, current.version_id)
    return successor


def soft_delete(session: Session, model, current, at: datetime, actor: Optional[str] = None):
    """Close the current version and record a deleted tombstone after it."""
    data = build_new_version_data(current, {}, at, actor)
    data.update(is_deleted=True, deleted_at=at, deleted_by=actor)
    close_version(session, model, current.version_id, at)
    tombstone = model(**data)
    _flush_successor(session, model, tombstone, current.version_id)
    return tombstone


def collect_ids(records: Iterable[T], *getters: Callable[[T], Optional[str]]) -> list[str]:
    ids: dict[str, None] = {}
    for record in records:
        for getter in getters:
            value = getter(record)
            if value:
                ids[value] = None
    return list(ids)


def resolve_current(
    session: Session,
    model,
    ids: Sequence[str],
    *,
    organization_id: Optional[str] = None,
    for_update: bool = False,
) -> dict[str, Any]:
    """Map logical id -> current version with a single query.

    Ids without a current version are left out of the map.
    """
    unique_ids = list(dict.fromkeys(i for i in ids if i))
    if not unique_ids:
        return {}
    stmt = select(model).where(*current_version_filter(model), model.id.in_(unique_ids))
    if organization_id is not None:
        stmt = stmt.where(model.organization_id == organization_id)
    if for_update:
        stmt = stmt.with_for_update()
    return {row.id: row for row in session.scalars(stmt).all()}


def order_version_chain(rows: Sequence[T]) -> list[T]:
    """
    Order one lineage newest-first by following previous_version_id.

    The walk starts from the newest head (a version nothing points back to),
    so a lineage whose oldest versions are missing still orders correctly.
    Versions the walk cannot reach are appended by system_from, newest first.
    """
    if not rows:
        return []
    by_version = {row.version_id: row for row in rows}
    referenced = {row.previous_version_id for row in rows if row.previous_version_id}
    heads = [row for row in rows if row.version_id not in referenced]
    heads.sort(key=lambda row: row.system_from, reverse=True)

    ordered: list[T] = []
    seen: set[str] = set()
    for head in heads:
        node = head
        while node is not None and node.version_id not in seen:
            ordered.append(node)
            seen.add(node.version_id)
            node = by_version.get(node.previous_version_id)
    leftovers = [row for row in rows if row.version_id not in seen]
    leftovers.sort(key=lambda row: row.system_from, reverse=True)
    return ordered + leftovers

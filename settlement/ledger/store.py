from __future__ import annotations

import copy
import logging
import operator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, Protocol
from uuid import uuid4

from sqlalchemy import ColumnElement, Select, false, or_, select
from sqlalchemy.exc import SQLAlchemyError

import settlement.persistence.pg as pg
from settlement.core.errors import DocumentStoreError
from settlement.persistence.models import DocumentModel

logger = logging.getLogger(__name__)

FilterOp = Literal[
    "EQUAL",
    "NOT_EQUAL",
    "IN",
    "LESS_THAN",
    "LESS_THAN_OR_EQUAL",
    "GREATER_THAN",
    "GREATER_THAN_OR_EQUAL",
]


@dataclass(frozen=True)
class Filter:
    field: str
    op: FilterOp
    value: Any


def where(field: str, op: FilterOp, value: Any) -> Filter:
    return Filter(field=field, op=op, value=value)


class DocumentStore(Protocol):
    """Collections of JSON documents keyed by id.

    Every call is durable on return. ``get`` returns ``None`` for a missing
    document instead of raising; ``update`` accepts dotted paths for nested
    fields and fails when the document does not exist.
    """

    backend: str

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        ...

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def add(self, collection: str, data: dict[str, Any]) -> str:
        ...

    def increment(self, collection: str, doc_id: str, deltas: dict[str, float]) -> None:
        ...

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def bind_identity(self, id_token: str | None) -> "DocumentStore":
        ...


def new_document_id() -> str:
    return uuid4().hex


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_path(doc: dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _in(left: Any, right: Any) -> bool:
    return left in (right or [])


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "EQUAL": operator.eq,
    "NOT_EQUAL": operator.ne,
    "IN": _in,
    "LESS_THAN": operator.lt,
    "LESS_THAN_OR_EQUAL": operator.le,
    "GREATER_THAN": operator.gt,
    "GREATER_THAN_OR_EQUAL": operator.ge,
}


def matches(doc: dict[str, Any], filters: Iterable[Filter]) -> bool:
    for flt in filters:
        comparator = _COMPARATORS.get(flt.op)
        if comparator is None:
            raise ValueError(f"unsupported filter op: {flt.op}")
        value = get_path(doc, flt.field)
        if value is None and flt.op not in {"EQUAL", "NOT_EQUAL"}:
            return False
        try:
            if not comparator(value, flt.value):
                return False
        except TypeError:
            return False
    return True


def json_field(path: str):
    parts = tuple(path.split("."))
    return DocumentModel.data[parts[0]] if len(parts) == 1 else DocumentModel.data[parts]


def _typed(element, sample: Any):
    if isinstance(sample, bool):
        return element.as_boolean()
    if isinstance(sample, (int, float)):
        return element.as_float()
    if isinstance(sample, str):
        return element.as_string()
    return None


def filter_clause(flt: Filter) -> ColumnElement[bool] | None:
    """SQL predicate for ``flt``, or None when it has to be applied in Python."""
    element = json_field(flt.field)
    if flt.op == "IN":
        values = list(flt.value or [])
        if not values:
            return false()
        if len({type(value) for value in values}) != 1:
            return None
        typed = _typed(element, values[0])
        return None if typed is None else typed.in_(values)

    typed = _typed(element, flt.value)
    if typed is None:
        return None
    if flt.op == "EQUAL":
        return typed == flt.value
    if flt.op == "NOT_EQUAL":
        return or_(typed.is_(None), typed != flt.value)
    if flt.op == "LESS_THAN":
        return typed < flt.value
    if flt.op == "LESS_THAN_OR_EQUAL":
        return typed <= flt.value
    if flt.op == "GREATER_THAN":
        return typed > flt.value
    if flt.op == "GREATER_THAN_OR_EQUAL":
        return typed >= flt.value
    raise ValueError(f"unsupported filter op: {flt.op}")


class SqlDocumentStore:
    """Document store over the ``documents`` table.

    Each call runs in its own committed session, so callers observe the same
    per-call durability they get from a hosted document database.
    """

    backend = "sql"

    def _row(self, session, collection: str, doc_id: str) -> DocumentModel | None:
        stmt = select(DocumentModel).where(
            DocumentModel.collection == collection,
            DocumentModel.doc_id == doc_id,
        )
        return session.scalar(stmt)

    @staticmethod
    def _present(row: DocumentModel) -> dict[str, Any]:
        doc = copy.deepcopy(row.data or {})
        doc["id"] = row.doc_id
        return doc

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            with pg.session_scope() as session:
                row = self._row(session, collection, doc_id)
                return self._present(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"get {collection}/{doc_id} failed: {exc}") from exc

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        payload = {key: value for key, value in copy.deepcopy(data).items() if key != "id"}
        now = datetime.now(timezone.utc)
        try:
            with pg.session_scope() as session:
                row = self._row(session, collection, doc_id)
                if row is None:
                    session.add(
                        DocumentModel(
                            collection=collection,
                            doc_id=doc_id,
                            data=payload,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    return
                if merge:
                    merged = copy.deepcopy(row.data or {})
                    merged.update(payload)
                    payload = merged
                row.data = payload
                row.updated_at = now
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"set {collection}/{doc_id} failed: {exc}") from exc

    def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None:
        try:
            with pg.session_scope() as session:
                row = self._row(session, collection, doc_id)
                if row is None:
                    raise DocumentStoreError(f"update {collection}/{doc_id} failed: document not found")
                doc = copy.deepcopy(row.data or {})
                for path, value in changes.items():
                    set_path(doc, path, copy.deepcopy(value))
                row.data = doc
                row.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"update {collection}/{doc_id} failed: {exc}") from exc

    def delete(self, collection: str, doc_id: str) -> None:
        try:
            with pg.session_scope() as session:
                row = self._row(session, collection, doc_id)
                if row is not None:
                    session.delete(row)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"delete {collection}/{doc_id} failed: {exc}") from exc

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(collection, doc_id, data)
        return doc_id

    def increment(self, collection: str, doc_id: str, deltas: dict[str, float]) -> None:
        try:
            with pg.session_scope() as session:
                row = self._row(session, collection, doc_id)
                if row is None:
                    raise DocumentStoreError(f"increment {collection}/{doc_id} failed: document not found")
                doc = copy.deepcopy(row.data or {})
                for path, delta in deltas.items():
                    current = get_path(doc, path)
                    if not isinstance(current, (int, float)) or isinstance(current, bool):
                        current = 0
                    set_path(doc, path, current + delta)
                row.data = doc
                row.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"increment {collection}/{doc_id} failed: {exc}") from exc

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        stmt: Select[tuple[DocumentModel]] = select(DocumentModel).where(DocumentModel.collection == collection)
        residual: list[Filter] = []
        for flt in filters:
            clause = filter_clause(flt)
            if clause is None:
                residual.append(flt)
            else:
                stmt = stmt.where(clause)
        if order_by:
            key = json_field(order_by).as_string()
            stmt = stmt.order_by(key.desc().nulls_last() if descending else key.asc().nulls_last())
        stmt = stmt.order_by(DocumentModel.seq_id.asc())
        if limit is not None and not residual:
            stmt = stmt.limit(limit)

        try:
            with pg.session_scope() as session:
                docs = [self._present(row) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"query {collection} failed: {exc}") from exc

        if residual:
            docs = [doc for doc in docs if matches(doc, residual)]
            if limit is not None:
                docs = docs[:limit]
        return docs

    def bind_identity(self, id_token: str | None) -> "SqlDocumentStore":
        return self

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATORS = {
    "$ne": "!=",
    "$lt": "<",
    "$lte": "<=",
    "$gt": ">",
    "$gte": ">=",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoreError(RuntimeError):
    pass


async def with_retry(fn: Callable[..., R], *args: Any, attempts: int = 3, **kwargs: Any) -> R:
    """Run a store call, retrying ``StoreError`` with a short backoff."""
    delay = 0.05
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except StoreError as exc:
            if attempt == attempts - 1:
                raise
            logger.warning("Store error (%s), retry %s/%s", exc, attempt + 1, attempts)
            await asyncio.sleep(delay)
            delay *= 4
    raise StoreError("unreachable")


def _field_expr(name: str) -> str:
    if not _FIELD_RE.match(name):
        raise StoreError(f"Invalid field name: {name!r}")
    return f"json_extract(doc, '$.{name}')"


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


class Store:
    """Typed JSON document collections on top of a single SQLite table."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    doc TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                );

                CREATE INDEX IF NOT EXISTS idx_documents_chat
                    ON documents (collection, json_extract(doc, '$.chat_id'));

                CREATE INDEX IF NOT EXISTS idx_documents_chat_state
                    ON documents (
                        collection,
                        json_extract(doc, '$.chat_id'),
                        json_extract(doc, '$.state')
                    );

                CREATE INDEX IF NOT EXISTS idx_documents_last_activity
                    ON documents (collection, json_extract(doc, '$.last_activity_at'));
                """
            )

    @staticmethod
    def _build_where(collection: str, filt: dict[str, Any] | None) -> tuple[str, list[Any]]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]

        for name, condition in (filt or {}).items():
            expr = _field_expr(name)
            if not isinstance(condition, dict):
                if condition is None:
                    clauses.append(f"{expr} IS NULL")
                else:
                    clauses.append(f"{expr} = ?")
                    params.append(_sql_value(condition))
                continue

            for op, value in condition.items():
                if op in ("$in", "$nin"):
                    values = list(value)
                    if not values:
                        clauses.append("0" if op == "$in" else "1")
                        continue
                    marks = ", ".join("?" for _ in values)
                    keyword = "IN" if op == "$in" else "NOT IN"
                    clauses.append(f"{expr} {keyword} ({marks})")
                    params.extend(_sql_value(v) for v in values)
                elif op in _OPERATORS:
                    clauses.append(f"{expr} {_OPERATORS[op]} ?")
                    params.append(_sql_value(value))
                else:
                    raise StoreError(f"Unsupported filter operator: {op}")

        return " AND ".join(clauses), params

    def upsert(self, collection: str, key: str, document: dict[str, Any]) -> None:
        with self._connect() as conn:
            self._upsert(conn, collection, key, document)

    @staticmethod
    def _upsert(conn: sqlite3.Connection, collection: str, key: str, document: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO documents (collection, key, doc, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (collection, key) DO UPDATE SET
                doc = excluded.doc,
                updated_at = excluded.updated_at
            """,
            (collection, key, json.dumps(document, ensure_ascii=True), utc_now_iso()),
        )

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
            return json.loads(row["doc"]) if row else None

    def find(
        self,
        collection: str,
        filt: dict[str, Any] | None = None,
        *,
        order_by: list[tuple[str, int]] | None = None,
        limit: int | None = None,
        projection: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        where, params = self._build_where(collection, filt)
        sql = f"SELECT doc FROM documents WHERE {where}"

        if order_by:
            parts = []
            for name, direction in order_by:
                parts.append(f"{_field_expr(name)} {'DESC' if direction < 0 else 'ASC'}")
            sql += " ORDER BY " + ", ".join(parts) + ", rowid ASC"
        else:
            sql += " ORDER BY rowid ASC"

        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        docs = [json.loads(row["doc"]) for row in rows]
        if projection:
            docs = [{name: doc.get(name) for name in projection} for doc in docs]
        return docs

    def count(self, collection: str, filt: dict[str, Any] | None = None) -> int:
        where, params = self._build_where(collection, filt)
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS cnt FROM documents WHERE {where}", params).fetchone()
            return int(row["cnt"])

    def delete(self, collection: str, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            )
            return cur.rowcount > 0

    def atomic_increment(
        self,
        collection: str,
        key: str,
        field: str,
        delta: float = 1,
        defaults: dict[str, Any] | None = None,
    ) -> float:
        path = f"$.{field}"
        _field_expr(field)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT doc FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
            if row is None:
                document = dict(defaults or {})
                document[field] = document.get(field, 0) + delta
                self._upsert(conn, collection, key, document)
                return document[field]

            conn.execute(
                """
                UPDATE documents
                SET doc = json_set(doc, ?, COALESCE(json_extract(doc, ?), 0) + ?),
                    updated_at = ?
                WHERE collection = ? AND key = ?
                """,
                (path, path, delta, utc_now_iso(), collection, key),
            )
            value = conn.execute(
                "SELECT json_extract(doc, ?) AS value FROM documents WHERE collection = ? AND key = ?",
                (path, collection, key),
            ).fetchone()
            return value["value"]

    def txn(self, writes: list[tuple[str, str, str, dict[str, Any] | None]]) -> None:
        """Apply ``(op, collection, key, document)`` writes atomically.

        ``op`` is ``"upsert"`` or ``"delete"``.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            for op, collection, key, document in writes:
                if op == "upsert":
                    self._upsert(conn, collection, key, document or {})
                elif op == "delete":
                    conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND key = ?",
                        (collection, key),
                    )
                else:
                    raise StoreError(f"Unsupported write op: {op}")

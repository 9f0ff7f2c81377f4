"""Comparison history repository: append-only create, paged search, deletes, stats."""

from __future__ import annotations

import csv
import io
import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, Optional

import aiosqlite

from twinstream.core.errors import StorageError
from twinstream.log import get_logger
from twinstream.storage.database import Database
from twinstream.storage.models import (
    ComparisonOutcome,
    HistoryPage,
    HistoryRecord,
    HistoryStats,
    ModelUsage,
    utcnow,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
CSV_HEADER = (
    "ID", "Created", "Prompt", "Model1", "Model2",
    "Response1", "Response2", "Cost1", "Cost2",
)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class HistoryRepository:
    """Persistence for finished comparisons.

    Records are immutable once written: there is no update path, and a second
    record for the same request id is refused.
    """

    def __init__(self, db: Database):
        self._db = db

    async def create(self, outcome: ComparisonOutcome) -> str:
        """Append one record for a finished comparison and return its ID."""
        record_id = uuid.uuid4().hex
        with self._guard("could not write comparison"):
            try:
                await self._db.conn.execute(
                    """INSERT INTO comparisons
                       (id, request_id, prompt, model_id1, model_id2,
                        final_text1, final_text2, cost1, cost2,
                        error1, error2, tokens1, tokens2, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record_id,
                        outcome.request_id,
                        outcome.prompt,
                        outcome.model_id1,
                        outcome.model_id2,
                        outcome.final_text1,
                        outcome.final_text2,
                        outcome.cost1,
                        outcome.cost2,
                        outcome.error1,
                        outcome.error2,
                        outcome.tokens1,
                        outcome.tokens2,
                        utcnow().isoformat(timespec="microseconds"),
                    ),
                )
                await self._db.conn.commit()
            except aiosqlite.IntegrityError as e:
                raise StorageError(
                    f"comparison {outcome.request_id} is already recorded"
                ) from e
        logger.info("history_record_created", record_id=record_id, request_id=outcome.request_id)
        return record_id

    async def get(self, record_id: str) -> Optional[HistoryRecord]:
        row = await self._fetchone("SELECT * FROM comparisons WHERE id = ?", (record_id,))
        return self._row_to_record(row) if row else None

    async def list(
        self, page: int = 1, page_size: int = 20, search: Optional[str] = None
    ) -> HistoryPage:
        """Newest-first page of records, optionally filtered by substring search.

        ``page`` is 1-based; ``page_size`` must be between 1 and 100.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        where, params = "", ()
        if search and search.strip():
            pattern = f"%{_escape_like(search.strip())}%"
            where = (
                "WHERE prompt LIKE ? ESCAPE '\\' "
                "OR final_text1 LIKE ? ESCAPE '\\' "
                "OR final_text2 LIKE ? ESCAPE '\\'"
            )
            params = (pattern, pattern, pattern)

        total_row = await self._fetchone(f"SELECT COUNT(*) AS n FROM comparisons {where}", params)
        rows = await self._fetchall(
            f"""SELECT * FROM comparisons {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?""",
            (*params, page_size, (page - 1) * page_size),
        )
        return HistoryPage(
            items=[self._row_to_record(row) for row in rows],
            total=total_row["n"],
            page=page,
            page_size=page_size,
        )

    async def search(self, query: str, limit: int = 50) -> list[HistoryRecord]:
        if not query.strip():
            return []
        result = await self.list(page=1, page_size=min(limit, MAX_PAGE_SIZE), search=query)
        return result.items

    async def delete(self, record_id: str) -> bool:
        """Delete one record. Missing ids are not an error; returns whether a row went away."""
        deleted = await self._execute("DELETE FROM comparisons WHERE id = ?", (record_id,))
        return deleted > 0

    async def delete_many(self, record_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        deleted = await self._execute(
            f"DELETE FROM comparisons WHERE id IN ({placeholders})", tuple(ids)
        )
        logger.info("history_records_deleted", requested=len(ids), deleted=deleted)
        return deleted

    async def statistics(self) -> HistoryStats:
        totals = await self._fetchone(
            """SELECT COUNT(*) AS n,
                      COALESCE(SUM(COALESCE(cost1, 0) + COALESCE(cost2, 0)), 0) AS cost,
                      COALESCE(SUM(tokens1 + tokens2), 0) AS tokens
               FROM comparisons""",
        )
        usage_rows = await self._fetchall(
            """SELECT model_id, COUNT(*) AS uses FROM (
                   SELECT model_id1 AS model_id FROM comparisons
                   UNION ALL
                   SELECT model_id2 AS model_id FROM comparisons
               )
               GROUP BY model_id
               ORDER BY uses DESC, model_id ASC
               LIMIT 10""",
        )
        count = totals["n"]
        total_cost = float(totals["cost"])
        return HistoryStats(
            total_comparisons=count,
            total_cost=round(total_cost, 6),
            average_cost=round(total_cost / count, 6) if count else 0.0,
            total_tokens=int(totals["tokens"]),
            most_used_models=[ModelUsage(row["model_id"], row["uses"]) for row in usage_rows],
        )

    async def export(self, fmt: str = "json") -> str:
        """Serialize the whole history, newest first, as JSON or CSV."""
        if fmt not in ("json", "csv"):
            raise ValueError(f"Unknown export format: {fmt}")
        rows = await self._fetchall(
            "SELECT * FROM comparisons ORDER BY created_at DESC, rowid DESC"
        )
        records = [self._row_to_record(row) for row in rows]

        if fmt == "json":
            return json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for r in records:
            writer.writerow(
                [
                    r.id,
                    r.created_at.isoformat(),
                    r.prompt,
                    r.model_id1,
                    r.model_id2,
                    r.final_text1 or "",
                    r.final_text2 or "",
                    r.cost1 or 0,
                    r.cost2 or 0,
                ]
            )
        return buffer.getvalue()

    async def cleanup(
        self,
        older_than_days: Optional[int] = None,
        keep_count: Optional[int] = None,
        remove_errors: bool = False,
    ) -> int:
        """Delete old, fully failed, or surplus records. Returns the number deleted.

        Age and error criteria are combined with OR. ``keep_count`` then trims
        everything beyond the newest N remaining records.
        """
        deleted = 0
        conditions: list[str] = []
        params: list[object] = []
        if older_than_days:
            cutoff = utcnow() - timedelta(days=older_than_days)
            conditions.append("created_at < ?")
            params.append(cutoff.isoformat(timespec="microseconds"))
        if remove_errors:
            conditions.append("(final_text1 IS NULL AND final_text2 IS NULL)")

        if conditions:
            deleted += await self._execute(
                f"DELETE FROM comparisons WHERE {' OR '.join(conditions)}", tuple(params)
            )

        if keep_count is not None and keep_count >= 0:
            deleted += await self._execute(
                """DELETE FROM comparisons WHERE id IN (
                       SELECT id FROM comparisons
                       ORDER BY created_at DESC, rowid DESC
                       LIMIT -1 OFFSET ?
                   )""",
                (keep_count,),
            )

        logger.info(
            "history_cleanup",
            deleted=deleted,
            older_than_days=older_than_days,
            keep_count=keep_count,
            remove_errors=remove_errors,
        )
        return deleted

    async def count(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM comparisons")
        return row["n"]

    @contextmanager
    def _guard(self, action: str):
        """Map every database failure, including a closed or uninitialised connection, to StorageError."""
        try:
            yield
        except (aiosqlite.Error, ValueError, RuntimeError) as e:
            raise StorageError(f"{action}: {e}") from e

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._guard("history write failed"):
            cursor = await self._db.conn.execute(sql, params)
            await self._db.conn.commit()
        return cursor.rowcount

    async def _fetchone(self, sql: str, params: tuple = ()):
        with self._guard("history read failed"):
            cursor = await self._db.conn.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()):
        with self._guard("history read failed"):
            cursor = await self._db.conn.execute(sql, params)
            return await cursor.fetchall()

    @staticmethod
    def _row_to_record(row) -> HistoryRecord:
        return HistoryRecord(
            id=row["id"],
            request_id=row["request_id"],
            prompt=row["prompt"],
            model_id1=row["model_id1"],
            model_id2=row["model_id2"],
            final_text1=row["final_text1"],
            final_text2=row["final_text2"],
            cost1=row["cost1"],
            cost2=row["cost2"],
            error1=row["error1"],
            error2=row["error2"],
            tokens1=row["tokens1"],
            tokens2=row["tokens2"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

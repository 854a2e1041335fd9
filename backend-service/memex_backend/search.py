from __future__ import annotations

import re
import sqlite3
from typing import Any

from .db import OCCURRENCES_FUNCTION, TITLE_KEY_FUNCTION, fetchall, fetchone
from .types import SearchOptions
from .utils import clamp_limit, clamp_offset, display_title

TOKEN_RE = re.compile(r"[^\W_]+", flags=re.UNICODE)

SEARCH_SORTS = {"relevance", "last_occurrence_desc", "occurrence_count_desc", "title_az", "title_za"}
DEFAULT_SORT = "last_occurrence_desc"
DEFAULT_LIMIT = 50
MAX_LIMIT = 100
SNIPPETS_PER_CONVERSATION = 3
SNIPPET_ELLIPSIS = "…"

ORDER_BY = {
    "relevance": "rank ASC, last_occurrence DESC",
    "last_occurrence_desc": "last_occurrence DESC",
    "occurrence_count_desc": "occurrence_count DESC, last_occurrence DESC",
    "title_az": "title_key ASC",
    "title_za": "title_key DESC",
}


def tokenize_query(query: str) -> list[str]:
    return [token.lower() for token in TOKEN_RE.findall(query or "")]


def build_match_expression(query: str, *, column: str | None = None) -> str | None:
    """Turn free text into an FTS5 prefix query: ``sal*`` -> ``"sal"*``.

    With ``column`` every phrase is scoped to that column, e.g.
    ``content : "sal"*``.
    """
    tokens = tokenize_query(query)
    if not tokens:
        return None
    scope = f"{column} : " if column else ""
    return " ".join(f'{scope}"{token}"*' for token in tokens)


def occurrence_needle(query: str) -> str:
    return (query or "").strip().rstrip("*").strip()


def resolve_sort(sort: str | None) -> str:
    return sort if sort in SEARCH_SORTS else DEFAULT_SORT


def _order_clause(sort: str) -> str:
    return f"{ORDER_BY[sort]}, conversation_id ASC"


def _page(options: SearchOptions) -> tuple[int, int]:
    limit = DEFAULT_LIMIT if options.limit is None else clamp_limit(options.limit, default=DEFAULT_LIMIT, maximum=MAX_LIMIT)
    return limit, clamp_offset(options.offset)


def _empty_result(*, with_occurrences: bool) -> dict[str, Any]:
    return {"rows": [], "total_matches": 0, "total_occurrences": 0 if with_occurrences else None}


class SearchEngine:
    def __init__(self, *, title_match_boost: int = 1000, snippet_tokens: int = 16):
        self.title_match_boost = title_match_boost
        self.snippet_tokens = snippet_tokens

    def search(self, conn: sqlite3.Connection, query: str, options: SearchOptions | None = None) -> dict[str, Any]:
        options = options or SearchOptions()
        if not (query or "").strip():
            return self.browse(conn, options)

        content_match = build_match_expression(query, column="content")
        title_match = build_match_expression(query, column="title")
        if content_match is None or title_match is None:
            return _empty_result(with_occurrences=True)

        sort = resolve_sort(options.sort)
        limit, offset = _page(options)

        filters: list[str] = []
        params: dict[str, Any] = {
            "content_match": content_match,
            "title_match": title_match,
            "needle": occurrence_needle(query),
            "boost": self.title_match_boost,
        }
        if options.source:
            filters.append("c.source = :source")
            params["source"] = options.source
        if options.date_from is not None:
            filters.append("m.created_at >= :date_from")
            params["date_from"] = int(options.date_from)
        if options.date_to is not None:
            filters.append("m.created_at <= :date_to")
            params["date_to"] = int(options.date_to)
        body_where = " AND ".join(["messages_fts MATCH :content_match", *filters])
        title_where = " AND ".join(["messages_fts MATCH :title_match", *filters])

        # Message-level hits come from the content column only; a title match
        # surfaces its conversation without making every message a hit.
        grouped = f"""
        WITH hits AS (
          SELECT
            messages_fts.conversation_id AS conversation_id,
            messages_fts.message_id AS message_id,
            {OCCURRENCES_FUNCTION}(m.content, :needle) AS occurrences,
            m.created_at AS message_created_at,
            ROW_NUMBER() OVER (
              PARTITION BY messages_fts.conversation_id ORDER BY m.created_at ASC, m.rowid ASC
            ) AS seq
          FROM messages_fts
          JOIN messages m ON m.id = messages_fts.message_id
          JOIN conversations c ON c.id = messages_fts.conversation_id
          WHERE {body_where}
        ),
        body AS (
          SELECT
            conversation_id,
            MAX(message_created_at) AS last_occurrence,
            SUM(occurrences) AS occurrence_count,
            COUNT(DISTINCT message_id) AS message_match_count,
            MAX(CASE WHEN seq = 1 THEN message_id END) AS first_match_message_id
          FROM hits
          GROUP BY conversation_id
        ),
        titled AS (
          SELECT
            messages_fts.conversation_id AS conversation_id,
            MAX(m.created_at) AS last_message_at
          FROM messages_fts
          JOIN messages m ON m.id = messages_fts.message_id
          JOIN conversations c ON c.id = messages_fts.conversation_id
          WHERE {title_where}
          GROUP BY messages_fts.conversation_id
        ),
        candidates AS (
          SELECT conversation_id FROM body
          UNION
          SELECT conversation_id FROM titled
        ),
        grouped AS (
          SELECT
            cand.conversation_id AS conversation_id,
            c.title AS title,
            c.source AS source,
            c.created_at AS created_at,
            COALESCE(b.last_occurrence, t.last_message_at, 0) AS last_occurrence,
            COALESCE(b.occurrence_count, 0) AS occurrence_count,
            COALESCE(b.message_match_count, 0) AS message_match_count,
            b.first_match_message_id AS first_match_message_id,
            -COALESCE(b.occurrence_count, 0)
              - CASE WHEN {OCCURRENCES_FUNCTION}(c.title, :needle) > 0 THEN :boost ELSE 0 END AS rank,
            {TITLE_KEY_FUNCTION}(c.title) AS title_key
          FROM candidates cand
          JOIN conversations c ON c.id = cand.conversation_id
          LEFT JOIN body b ON b.conversation_id = cand.conversation_id
          LEFT JOIN titled t ON t.conversation_id = cand.conversation_id
        )
        """

        totals = fetchone(
            conn,
            grouped + "SELECT COUNT(*) AS total_matches, COALESCE(SUM(occurrence_count), 0) AS total_occurrences FROM grouped",
            params,
        ) or {"total_matches": 0, "total_occurrences": 0}
        if not totals["total_matches"]:
            return _empty_result(with_occurrences=True)

        rows = fetchall(
            conn,
            grouped + f"SELECT * FROM grouped ORDER BY {_order_clause(sort)} LIMIT :limit OFFSET :offset",
            {**params, "limit": limit, "offset": offset},
        )
        results = [self._row_to_view(row) for row in rows]
        for row in results:
            if row["message_match_count"]:
                row["snippets"] = self._snippets(conn, row["conversation_id"], body_where, params, options)
            else:
                row["snippets"] = []
            row["snippet"] = row["snippets"][0] if row["snippets"] else ""

        return {
            "rows": results,
            "total_matches": int(totals["total_matches"]),
            "total_occurrences": int(totals["total_occurrences"]),
        }

    def _snippets(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        body_where: str,
        params: dict[str, Any],
        options: SearchOptions,
    ) -> list[str]:
        rows = conn.execute(
            f"""
            SELECT snippet(messages_fts, 0, :open, :close, :ellipsis, :tokens) AS snippet
            FROM messages_fts
            JOIN messages m ON m.id = messages_fts.message_id
            JOIN conversations c ON c.id = messages_fts.conversation_id
            WHERE {body_where} AND messages_fts.conversation_id = :conversation_id
            ORDER BY m.created_at DESC, m.rowid DESC
            LIMIT :snippet_limit
            """,
            {
                **params,
                "conversation_id": conversation_id,
                "open": options.highlight_open,
                "close": options.highlight_close,
                "ellipsis": SNIPPET_ELLIPSIS,
                "tokens": self.snippet_tokens,
                "snippet_limit": SNIPPETS_PER_CONVERSATION,
            },
        ).fetchall()
        return [str(r["snippet"]) for r in rows if r["snippet"] and str(r["snippet"]).strip()]

    def browse(self, conn: sqlite3.Connection, options: SearchOptions | None = None) -> dict[str, Any]:
        """List conversations without matching; occurrence_count carries the message count."""
        options = options or SearchOptions()
        sort = resolve_sort(options.sort)
        if sort == "relevance":
            sort = DEFAULT_SORT
        limit, offset = _page(options)

        clauses: list[str] = []
        params: dict[str, Any] = {}
        if options.source:
            clauses.append("source = :source")
            params["source"] = options.source
        if options.date_from is not None:
            clauses.append("last_occurrence >= :date_from")
            params["date_from"] = int(options.date_from)
        if options.date_to is not None:
            clauses.append("last_occurrence <= :date_to")
            params["date_to"] = int(options.date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        listing = f"""
        WITH listing AS (
          SELECT
            c.id AS conversation_id,
            c.title AS title,
            c.source AS source,
            c.created_at AS created_at,
            COALESCE(MAX(m.created_at), c.created_at, 0) AS last_occurrence,
            COUNT(m.id) AS occurrence_count,
            COUNT(m.id) AS message_match_count,
            0 AS rank,
            (
              SELECT fm.id FROM messages fm
              WHERE fm.conversation_id = c.id
              ORDER BY fm.created_at ASC, fm.rowid ASC
              LIMIT 1
            ) AS first_match_message_id,
            {TITLE_KEY_FUNCTION}(c.title) AS title_key
          FROM conversations c
          LEFT JOIN messages m ON m.conversation_id = c.id
          GROUP BY c.id
        )
        """
        total = fetchone(conn, listing + f"SELECT COUNT(*) AS n FROM listing {where}", params) or {"n": 0}
        rows = fetchall(
            conn,
            listing + f"SELECT * FROM listing {where} ORDER BY {_order_clause(sort)} LIMIT :limit OFFSET :offset",
            {**params, "limit": limit, "offset": offset},
        )
        results = [self._row_to_view(row) for row in rows]
        for row in results:
            row["snippets"] = []
            row["snippet"] = ""
        return {"rows": results, "total_matches": int(total["n"]), "total_occurrences": None}

    def _row_to_view(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "conversation_id": row["conversation_id"],
            "title": display_title(row.get("title")),
            "source": row["source"],
            "created_at": int(row.get("created_at") or 0),
            "last_occurrence": int(row.get("last_occurrence") or 0),
            "occurrence_count": int(row.get("occurrence_count") or 0),
            "message_match_count": int(row.get("message_match_count") or 0),
            "rank": int(row.get("rank") or 0),
            "first_match_message_id": row.get("first_match_message_id"),
        }

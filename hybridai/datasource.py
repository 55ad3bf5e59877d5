from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .tools import DataSource, RowsQuery


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SQLiteDataSource:
    """DataSource over a SQLite file. SQLite has a single ``main`` schema and no enums."""

    database_type = "sqlite"

    def __init__(self, path: str):
        self.path = path

    async def _fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [dict(row) for row in rows]

    async def get_tables_and_schemas(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [{"schema": "main", "tables": [row["name"] for row in rows]}]

    async def get_columns(self, schema: str, table: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(f"PRAGMA {_quote(schema)}.table_info({_quote(table)})")
        return [
            {
                "id": row["name"],
                "type": row["type"],
                "isNullable": not row["notnull"],
                "default": row["dflt_value"],
                "primaryKey": bool(row["pk"]),
            }
            for row in rows
        ]

    async def get_enums(self) -> List[Dict[str, Any]]:
        return []

    def build_select(self, query: RowsQuery) -> Tuple[str, List[Any]]:
        columns = ", ".join(_quote(c) for c in query.select) if query.select else "*"
        sql = f"SELECT {columns} FROM {_quote(query.schema)}.{_quote(query.table)}"
        params: List[Any] = []
        clauses: List[str] = []
        for item in query.filters:
            column = _quote(item.column)
            operator = item.ref.operator
            # SQLite LIKE is already case-insensitive for ASCII.
            if operator in ("ILIKE", "NOT ILIKE"):
                operator = operator.replace("ILIKE", "LIKE")
            if not item.ref.has_value:
                clauses.append(f"{column} {operator}")
            elif operator in ("BETWEEN", "NOT BETWEEN"):
                clauses.append(f"{column} {operator} ? AND ?")
                params.extend(item.values[:2])
            elif item.ref.is_array:
                placeholders = ", ".join("?" for _ in item.values) or "NULL"
                clauses.append(f"{column} {operator} ({placeholders})")
                params.extend(item.values)
            else:
                clauses.append(f"{column} {operator} ?")
                params.append(item.values[0] if item.values else None)
        if clauses:
            joiner = " OR " if query.filters_concat_operator == "OR" else " AND "
            sql += " WHERE " + joiner.join(clauses)
        if query.order_by:
            order = ", ".join(
                f"{_quote(col)} {'DESC' if direction == 'DESC' else 'ASC'}" for col, direction in query.order_by.items()
            )
            sql += f" ORDER BY {order}"
        sql += " LIMIT ? OFFSET ?"
        params.extend([query.limit, query.offset])
        return sql, params

    async def select_rows(self, query: RowsQuery) -> List[Dict[str, Any]]:
        sql, params = self.build_select(query)
        return await self._fetchall(sql, tuple(params))


class DataSourceRegistry:
    def __init__(self) -> None:
        self._sources: Dict[str, Tuple[str, DataSource]] = {}

    def register(self, database_id: str, database_type: str, source: DataSource) -> None:
        self._sources[database_id] = (database_type, source)

    def get(self, database_id: str) -> Optional[Tuple[str, DataSource]]:
        return self._sources.get(database_id)

    def ids(self) -> List[str]:
        return sorted(self._sources)

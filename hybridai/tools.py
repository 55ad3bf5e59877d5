import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import HybridAIError, InvalidOperator, ToolExecutionError, UnknownTool
from .schemas import ToolCall


logger = logging.getLogger("uvicorn.error")

ToolName = Literal["columns", "enums", "select"]
TOOL_NAMES = ("columns", "enums", "select")


@dataclass(frozen=True)
class FilterRef:
    operator: str
    label: str
    has_value: bool = True
    is_array: bool = False


SQL_FILTERS: List[FilterRef] = [
    FilterRef("=", "Equal"),
    FilterRef("!=", "Not equal"),
    FilterRef(">", "Greater than"),
    FilterRef(">=", "Greater than or equal"),
    FilterRef("<", "Less than"),
    FilterRef("<=", "Less than or equal"),
    FilterRef("LIKE", "Like"),
    FilterRef("NOT LIKE", "Not like"),
    FilterRef("ILIKE", "Like (case insensitive)"),
    FilterRef("NOT ILIKE", "Not like (case insensitive)"),
    FilterRef("IN", "In", is_array=True),
    FilterRef("NOT IN", "Not in", is_array=True),
    FilterRef("BETWEEN", "Between", is_array=True),
    FilterRef("NOT BETWEEN", "Not between", is_array=True),
    FilterRef("IS NULL", "Is null", has_value=False),
    FilterRef("IS NOT NULL", "Is not null", has_value=False),
]
_FILTERS_BY_OPERATOR: Dict[str, FilterRef] = {f.operator: f for f in SQL_FILTERS}


def find_filter(operator: str) -> Optional[FilterRef]:
    return _FILTERS_BY_OPERATOR.get(operator)


class _ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TableAndSchema(_ToolInput):
    table_name: str = Field(alias="tableName")
    schema_name: str = Field(alias="schemaName")


class ColumnsInput(_ToolInput):
    """Get the list of columns in a table"""

    table_and_schema: TableAndSchema = Field(alias="tableAndSchema")


class EnumsInput(_ToolInput):
    """Get the list of enums in the database"""


class WhereFilter(_ToolInput):
    column: str
    operator: str
    values: List[Any] = Field(default_factory=list)


class SelectInput(_ToolInput):
    """Select rows from a table with optional filters, ordering and paging"""

    table_and_schema: TableAndSchema = Field(alias="tableAndSchema")
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    order_by: Dict[str, Literal["ASC", "DESC"]] = Field(default_factory=dict, alias="orderBy")
    select: Optional[List[str]] = None
    where_filters: List[WhereFilter] = Field(default_factory=list, alias="whereFilters")
    where_concat_operator: Literal["AND", "OR"] = Field(default="AND", alias="whereConcatOperator")


TOOL_INPUTS: Dict[str, type] = {
    "columns": ColumnsInput,
    "enums": EnumsInput,
    "select": SelectInput,
}


def _function_definition(name: str, model: type) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": (model.__doc__ or name).strip(),
            "parameters": model.model_json_schema(by_alias=True),
        },
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [_function_definition(name, TOOL_INPUTS[name]) for name in TOOL_NAMES]


@dataclass
class ResolvedFilter:
    column: str
    ref: FilterRef
    values: List[Any] = field(default_factory=list)


@dataclass
class RowsQuery:
    schema: str
    table: str
    limit: int = 50
    offset: int = 0
    order_by: Dict[str, str] = field(default_factory=dict)
    select: Optional[List[str]] = None
    filters: List[ResolvedFilter] = field(default_factory=list)
    filters_concat_operator: str = "AND"


class DataSource(Protocol):
    async def get_tables_and_schemas(self) -> List[Dict[str, Any]]:
        ...

    async def get_columns(self, schema: str, table: str) -> List[Dict[str, Any]]:
        ...

    async def get_enums(self) -> List[Dict[str, Any]]:
        ...

    async def select_rows(self, query: RowsQuery) -> List[Dict[str, Any]]:
        ...


class ToolDispatcher:
    """Routes model-issued tool calls to typed handlers over one data source."""

    def __init__(self, data_source: DataSource) -> None:
        self.data_source = data_source

    async def dispatch(self, call: ToolCall) -> Any:
        if call.tool_name == "columns":
            return await self._columns(ColumnsInput.model_validate(call.input))
        if call.tool_name == "enums":
            return await self._enums(EnumsInput.model_validate(call.input))
        if call.tool_name == "select":
            return await self._select(SelectInput.model_validate(call.input))
        raise UnknownTool(call.tool_name)

    async def run(self, call: ToolCall) -> Any:
        """Like ``dispatch`` but always returns an output the model can read."""
        try:
            return await self.dispatch(call)
        except (HybridAIError, ValidationError) as exc:
            logger.warning("Tool call %s (%s) failed: %s", call.tool_call_id, call.tool_name, exc)
            return {"error": str(exc)}

    async def _columns(self, tool_input: ColumnsInput) -> List[Dict[str, Any]]:
        ref = tool_input.table_and_schema
        try:
            return await self.data_source.get_columns(ref.schema_name, ref.table_name)
        except Exception as exc:
            raise ToolExecutionError(str(exc) or "Error while reading columns") from exc

    async def _enums(self, tool_input: EnumsInput) -> List[Dict[str, Any]]:
        try:
            groups = await self.data_source.get_enums()
        except Exception as exc:
            raise ToolExecutionError(str(exc) or "Error while reading enums") from exc
        return [
            {"schema": group.get("schema"), "name": group.get("name"), "value": value}
            for group in groups
            for value in group.get("values") or []
        ]

    async def _select(self, tool_input: SelectInput) -> Any:
        filters: List[ResolvedFilter] = []
        for where in tool_input.where_filters:
            ref = find_filter(where.operator)
            if ref is None:
                raise InvalidOperator(where.operator)
            filters.append(ResolvedFilter(column=where.column, ref=ref, values=list(where.values)))
        query = RowsQuery(
            schema=tool_input.table_and_schema.schema_name,
            table=tool_input.table_and_schema.table_name,
            limit=tool_input.limit,
            offset=tool_input.offset,
            order_by=dict(tool_input.order_by),
            select=tool_input.select,
            filters=filters,
            filters_concat_operator=tool_input.where_concat_operator,
        )
        try:
            return await self.data_source.select_rows(query)
        except Exception as exc:
            logger.info("select on %s.%s failed: %s", query.schema, query.table, exc)
            return {"error": str(exc) or "Error during the query execution"}

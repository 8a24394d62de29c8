"""Named reports defined in external configuration.

A report lists the objects of one type as flat rows whose columns are
either the object's own value or one of its requisites.
"""
import csv
import io
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union
import logging

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import Float, cast, exists, not_
from sqlalchemy.orm import aliased

from .base_types import SECRET_REQUISITES, BaseKind
from .config import settings
from .db_models import ArenaRow
from .entity_store import EntityStore
from .errors import InvalidArgument, NotFound
from .schema_registry import TypeDescriptor
from .validation import parse_limit

logger = logging.getLogger(__name__)

FILTER_PREFIXES = ("FR_", "TO_", "EQ_", "LIKE_")


class ReportColumn(BaseModel):
    """
    One output column; no requisite means the object's own value.

    The requisite is given by id or, as ``requisite``, by alias or name.
    """

    name: str = Field(..., min_length=1, max_length=255)
    requisite_id: Optional[int] = Field(None, ge=1)
    requisite: Optional[str] = Field(None, min_length=1, max_length=255)


class ReportDefinition(BaseModel):
    """A named report over the objects of one type."""

    id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    type_id: int = Field(..., ge=1)
    columns: List[ReportColumn] = Field(..., min_length=1)
    limit: Optional[int] = Field(None, ge=1)

    @field_validator("columns")
    @classmethod
    def validate_unique_columns(cls, v: List[ReportColumn]) -> List[ReportColumn]:
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            raise ValueError("Column names must be unique within a report")
        return v

    def column(self, name: str) -> Optional[ReportColumn]:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class ReportCatalog(BaseModel):
    """Every report available to the service."""

    reports: List[ReportDefinition] = Field(default_factory=list)

    def find(self, key: Union[int, str]) -> ReportDefinition:
        """
        Find a report by numeric id or by name (case-insensitive).

        Raises:
            NotFound: If no report matches
        """
        text = str(key).strip()
        for report in self.reports:
            if text.isdigit() and report.id == int(text):
                return report
        for report in self.reports:
            if report.name.lower() == text.lower():
                return report
        raise NotFound(f"Report {text} not found", {"report": text[:64]})


@lru_cache(maxsize=8)
def _load_catalog(path: str) -> ReportCatalog:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        if raw.lstrip().startswith("["):
            return ReportCatalog.model_validate_json(f'{{"reports": {raw}}}')
        return ReportCatalog.model_validate_json(raw)
    except ValidationError as e:
        raise InvalidArgument(f"Invalid report configuration in {path}", {"errors": e.error_count()}) from e


def load_reports(path: Optional[str] = None) -> ReportCatalog:
    """Report catalog from ``path`` (default ``settings.reports_file``); empty when unset."""
    path = path or settings.reports_file
    if not path:
        return ReportCatalog()
    if not Path(path).is_file():
        logger.warning(f"Report configuration not found: {path}")
        return ReportCatalog()
    return _load_catalog(path)


def rows_to_csv(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    """Render report rows as CSV with a header line."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: "" if v is None else v for k, v in row.items()})
    return buffer.getvalue()


class ReportRunner:
    """Executes report definitions against one namespace."""

    def __init__(self, db, namespace: str, catalog: Optional[ReportCatalog] = None,
                 store: Optional[EntityStore] = None):
        self.db = db
        self.namespace = namespace
        self.catalog = catalog if catalog is not None else load_reports()
        self.store = store or EntityStore(db, namespace)
        self.arena = self.store.arena

    def list_reports(self) -> List[Dict[str, Any]]:
        return [
            {"id": r.id, "name": r.name, "val": r.name, "ord": position}
            for position, r in enumerate(self.catalog.reports, start=1)
        ]

    def _condition(self, prefix: str, column, raw: str, numeric: bool):
        value = str(raw)
        if prefix == "EQ_":
            return column == value
        if prefix == "LIKE_":
            return column.like(value if "%" in value else f"%{value}%")
        if prefix == "FR_":
            if value.startswith("!%") or (value.startswith("!") and "%" in value):
                return not_(column.like(value[1:]))
            if "%" in value:
                return column.like(value)
        compared = cast(column, Float) if numeric else column
        operand: Any = value
        if numeric:
            try:
                operand = float(value)
            except ValueError as e:
                raise InvalidArgument(f"{prefix}{value} is not a number", {"value": value[:32]}) from e
        return compared >= operand if prefix == "FR_" else compared <= operand

    def _column_requisite(self, col: ReportColumn, descriptor: TypeDescriptor) -> Optional[int]:
        """
        Requisite id behind a column, or None for the object's own value.

        Raises:
            InvalidArgument: If a named requisite is not part of the type
        """
        if col.requisite_id is not None:
            return col.requisite_id
        if not col.requisite:
            return None
        req = descriptor.find_requisite(col.requisite)
        if req is None:
            raise InvalidArgument(
                f"{descriptor.name} has no requisite {col.requisite}",
                {"column": col.name, "requisite": col.requisite[:64]},
            )
        return req.id

    def _filters(self, report: ReportDefinition, descriptor: TypeDescriptor, params: Mapping[str, Any]) -> list:
        criteria = []
        for key, raw in params.items():
            prefix = next((p for p in FILTER_PREFIXES if key.startswith(p)), None)
            if prefix is None or raw is None or str(raw) == "":
                continue
            col = report.column(key[len(prefix):])
            if col is None:
                raise InvalidArgument(f"Unknown report column {key[len(prefix):]}", {"filter": key})

            if prefix == "FR_" and str(raw).startswith("@"):
                wanted = str(raw)[1:]
                if not wanted.isdigit():
                    raise InvalidArgument(f"Invalid id filter {raw}", {"filter": key})
                criteria.append(ArenaRow.id == int(wanted))
                continue

            req_id = self._column_requisite(col, descriptor)
            if req_id is None:
                numeric = descriptor.kind == BaseKind.NUMBER
                criteria.append(self._condition(prefix, ArenaRow.val, raw, numeric))
                continue
            if req_id in SECRET_REQUISITES:
                raise InvalidArgument(f"Column {col.name} can't be filtered", {"filter": key})

            req = descriptor.requisite(req_id)
            numeric = req is not None and req.kind == BaseKind.NUMBER
            child = aliased(ArenaRow)
            criteria.append(exists().where(
                child.namespace == ArenaRow.namespace,
                child.up == ArenaRow.id,
                child.t == req_id,
                self._condition(prefix, child.val, raw, numeric),
            ))
        return criteria

    async def run(self, key: Union[int, str], params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Execute a report.

        Args:
            key: Report id or name
            params: ``FR_``/``TO_``/``EQ_``/``LIKE_`` filters, ``LIMIT`` and
                ``RECORD_COUNT``

        Returns:
            ``[{column: value}]`` rows, or ``{"count": n}`` for ``RECORD_COUNT``
        """
        params = params or {}
        report = self.catalog.find(key)
        descriptor = await self.store.registry.get_type(report.type_id)
        criteria = [
            ArenaRow.t == report.type_id,
            ArenaRow.up != 0,
            ArenaRow.up.not_in(self.arena.type_ids()),
            *self._filters(report, descriptor, params),
        ]

        if "RECORD_COUNT" in params:
            return {"count": await self.arena.count(*criteria)}

        offset, limit = parse_limit(
            params.get("LIMIT"),
            report.limit or settings.max_limit,
            settings.max_limit,
        )
        objects = await self.arena.find(*criteria, offset=offset, limit=limit)
        grouped = await self.store.attribute_map([o.id for o in objects])

        references = {
            r.id for r in descriptor.requisites if r.is_reference
        }
        target_ids = {
            int(row.val) for rows in grouped.values() for row in rows
            if row.t in references and row.val.isdigit()
        }
        names = {e.id: e.val for e in await self.arena.get_many(target_ids)}

        columns = [(col.name, self._column_requisite(col, descriptor)) for col in report.columns]
        result = []
        for obj in objects:
            values: Dict[int, List[str]] = {}
            for row in grouped.get(obj.id, []):
                if row.t in SECRET_REQUISITES:
                    continue
                shown = names.get(int(row.val), row.val) if row.t in references and row.val.isdigit() else row.val
                values.setdefault(row.t, []).append(shown)
            line: Dict[str, Any] = {}
            for name, req_id in columns:
                if req_id is None:
                    line[name] = obj.val
                else:
                    items = values.get(req_id)
                    line[name] = ",".join(items) if items else None
            result.append(line)

        logger.info(f"Report {report.id} executed in {self.namespace}: rows={len(result)}")
        return result

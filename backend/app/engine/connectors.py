"""
Dataset Connectors

Contract every data-source connector honours towards the analysis core,
plus two lightweight implementations:

* :class:`StaticConnector` - schema and sample rows supplied in memory
  (registered datasets whose schema was captured elsewhere, tests).
* :class:`CsvConnector`    - a local CSV file read with pandas.

Warehouse connectors (Postgres, Snowflake, BigQuery, ...) live outside
the core and only need to implement :class:`DatasetConnector`.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from backend.app.errors import ValidationError

logger = logging.getLogger(__name__)


class DatasetConnector(ABC):
    """Common contract for data sources."""

    @abstractmethod
    def fetch_schema(self) -> dict[str, Any]:
        """Return ``{"tables": {table: [columns]}, ...}``."""

    @abstractmethod
    def fetch_sample(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to *limit* rows as dicts."""

    @abstractmethod
    def execute(self, query: str) -> list[dict[str, Any]]:
        """Run a read-only query and return the rows."""

    def test_connection(self) -> dict[str, Any]:
        """Return ``{"success": True, ...}`` or ``{"success": False, "error": ...}``."""
        try:
            schema = self.fetch_schema()
        except Exception as exc:
            logger.warning("Connection test failed for %s: %s", type(self).__name__, exc)
            return {"success": False, "error": str(exc)}
        return {"success": True, "tables": sorted(schema.get("tables", {}))}


class StaticConnector(DatasetConnector):
    """Connector over an in-memory schema and sample rows."""

    def __init__(
        self,
        schema: dict[str, Any],
        sample_rows: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        self._schema = schema
        self._rows = list(sample_rows or [])

    def fetch_schema(self) -> dict[str, Any]:
        return dict(self._schema)

    def fetch_sample(self, limit: int = 100) -> list[dict[str, Any]]:
        return self._rows[:limit]

    def execute(self, query: str) -> list[dict[str, Any]]:
        raise ValidationError("StaticConnector cannot execute queries.")


_SELECT_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


class CsvConnector(DatasetConnector):
    """CSV file exposed as a single table named after the file stem."""

    def __init__(self, path: str | Path, table_name: str | None = None) -> None:
        self.path = Path(path)
        self.table_name = table_name or re.sub(r"\W+", "_", self.path.stem).lower()
        self._df: Optional[pd.DataFrame] = None

    def _load(self) -> pd.DataFrame:
        if self._df is None:
            if not self.path.is_file():
                raise FileNotFoundError(f"CSV file not found at {self.path}")
            self._df = pd.read_csv(self.path, low_memory=False)
            logger.info(
                "Loaded %s: %d rows x %d columns.",
                self.path.name, self._df.shape[0], self._df.shape[1],
            )
        return self._df

    def fetch_schema(self) -> dict[str, Any]:
        df = self._load()
        return {
            "tables": {self.table_name: [str(c) for c in df.columns]},
            "columns": {str(k): str(v) for k, v in df.dtypes.items()},
            "row_counts": {self.table_name: int(df.shape[0])},
            "nulls": {str(k): int(v) for k, v in df.isna().sum().items()},
        }

    def fetch_sample(self, limit: int = 100) -> list[dict[str, Any]]:
        df = self._load()
        return df.head(limit).to_dict(orient="records")

    def execute(self, query: str) -> list[dict[str, Any]]:
        """Run a SELECT against the CSV loaded into an in-memory SQLite table."""
        if not _SELECT_RE.match(query):
            raise ValidationError("Only SELECT queries are supported for CSV files.")
        df = self._load()
        with closing(sqlite3.connect(":memory:")) as conn:
            df.to_sql(self.table_name, conn, index=False)
            result = pd.read_sql_query(query, conn)
        return result.to_dict(orient="records")

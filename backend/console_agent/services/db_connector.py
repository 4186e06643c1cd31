"""
Request-scoped database connection used by client tools.

The agent core only consumes the query contract below; the
driver itself is whatever SQLAlchemy dialect the request's
URL names (``mysql+pymysql`` by default).

    conn = SqlAlchemyConnection(url)
    resp = conn.query("SELECT 1 AS x")
    resp.json()  # {"meta": [{"name": "x", "type": ""}],
                 #  "data": [[1]], "rows": 1}
    conn.close()
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class QueryError(Exception):
    """
    Raised when the database rejects or fails a query.

    Attributes:
        data (str, optional): Server-side error detail, when
            the driver reported one.
        headers (dict, optional): Transport metadata.
    """

    def __init__(
        self,
        message: str,
        data: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.data = data
        self.headers = headers


@dataclass
class QueryResponse:
    """Result of one query in compact column/row form."""

    meta: List[Dict[str, str]] = field(default_factory=list)
    data: List[List[Any]] = field(default_factory=list)

    @property
    def rows(self) -> int:
        return len(self.data)

    def json(self) -> Dict[str, Any]:
        """Return ``{"meta": [...], "data": [[...]], "rows": n}``."""
        return {
            "meta": self.meta,
            "data": self.data,
            "rows": self.rows,
        }

    def records(self) -> List[Dict[str, Any]]:
        """Rows as dictionaries keyed by column name."""
        names = [m["name"] for m in self.meta]
        return [dict(zip(names, row)) for row in self.data]


class Connection:
    """Query contract consumed by client tools."""

    def query(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> QueryResponse:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources; default is a no-op."""


class SqlAlchemyConnection(Connection):
    """
    ``Connection`` backed by a SQLAlchemy engine.

    The engine is created lazily on first query and disposed
    on ``close()``; nothing is pooled across requests.
    """

    def __init__(
        self,
        url: str,
        connect_timeout: Optional[int] = None,
    ) -> None:
        self.url = url
        self._connect_timeout = connect_timeout
        self._engine: Optional[Engine] = None
        self._engine_lock = threading.Lock()

    def _get_engine(self) -> Engine:
        # client tools of one step share this connection
        with self._engine_lock:
            if self._engine is None:
                connect_args = {}
                if self._connect_timeout:
                    connect_args["connect_timeout"] = self._connect_timeout
                self._engine = create_engine(
                    self.url,
                    connect_args=connect_args,
                )
            return self._engine

    def query(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> QueryResponse:
        """
        Execute *sql* with named parameters.

        Parameters:
            sql (str): SQL with ``:name`` placeholders.
            params (dict, optional): Bound parameter values.
            options (dict, optional): ``max_rows`` caps the
                number of fetched rows; ``raw`` sends *sql* to
                the driver verbatim, without placeholder parsing.

        Returns:
            QueryResponse: Column metadata and row values.

        Raises:
            QueryError: On any database error.
        """
        options = options or {}
        max_rows = options.get("max_rows")
        try:
            with self._get_engine().connect() as connection:
                if options.get("raw"):
                    result = connection.exec_driver_sql(
                        sql, execution_options={"no_parameters": True}
                    )
                else:
                    result = connection.execute(text(sql), params or {})
                if not result.returns_rows:
                    connection.commit()
                    return QueryResponse()
                meta = [
                    {"name": name, "type": ""}
                    for name in result.keys()
                ]
                rows = (
                    result.fetchmany(max_rows) if max_rows
                    else result.fetchall()
                )
                return QueryResponse(
                    meta=meta,
                    data=[list(row) for row in rows],
                )
        except SQLAlchemyError as exc:
            detail = str(getattr(exc, "orig", None) or exc)
            logger.warning("[db] query failed: %s", detail)
            raise QueryError(
                f"Query failed: {detail}",
                data=detail,
            ) from exc

    def close(self) -> None:
        with self._engine_lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

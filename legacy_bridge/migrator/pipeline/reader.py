"""Server-side cursor reader yielding ordered, bounded batches of source rows."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping

from sqlalchemy import Select, func, select
from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)


class CursorReader:
    """
    Stream ``query`` in batches of at most ``batch_size`` rows.

    The query must already carry an ORDER BY on the source primary key. Rows
    are fetched through a server-side cursor (``stream_results``), so the full
    result set is never buffered. Iteration ends after the first empty read.
    """

    def __init__(self, connection: Connection, query: Select, *, batch_size: int):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.connection = connection
        self.query = query
        self.batch_size = batch_size
        self.batches_read = 0
        self.reads = 0

    def count(self) -> int:
        count_query = select(func.count()).select_from(self.query.order_by(None).subquery())
        return int(self.connection.execute(count_query).scalar_one())

    def batches(self) -> Iterator[list[Mapping[str, Any]]]:
        result = self.connection.execute(
            self.query,
            execution_options={"stream_results": True, "max_row_buffer": self.batch_size},
        )
        mapped = result.mappings()
        try:
            while True:
                rows = mapped.fetchmany(self.batch_size)
                self.reads += 1
                if not rows:
                    logger.debug("Cursor exhausted after %s batches", self.batches_read)
                    return
                self.batches_read += 1
                yield [dict(row) for row in rows]
        finally:
            result.close()

"""CSV export of payout rows."""

import csv
import io
from typing import Iterable

from affiliates.logging_config import get_logger
from affiliates.models import ExportRow

logger = get_logger(__name__)

EXPORT_HEADER = ["affiliate_id", "name", "email", "code", "order_count", "revenue"]


def rows_to_csv(rows: Iterable[ExportRow]) -> str:
    """Serialize export rows to CSV text.

    String fields are always quoted, with embedded quotes doubled; numeric
    fields are written bare.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)

    count = 0
    for row in rows:
        writer.writerow([
            row.affiliate_id,
            row.name,
            row.email,
            row.code or "",
            row.order_count,
            row.revenue_amount,
        ])
        count += 1

    logger.info("csv_export_completed", count=count)
    return buffer.getvalue()

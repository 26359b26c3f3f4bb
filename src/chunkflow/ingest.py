"""Turn an uploaded file into work item payloads.

Accepts a CSV with a ``url`` column (any case) or plain text with one
payload per line; blank lines are skipped.
"""

import csv
import io
from typing import List


def parse_payloads(text: str) -> List[str]:
    rows = [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]
    if not rows:
        return []

    header = [cell.strip().lower() for cell in rows[0]]
    if "url" in header:
        column = header.index("url")
        return [
            row[column].strip()
            for row in rows[1:]
            if column < len(row) and row[column].strip()
        ]

    return [row[0].strip() for row in rows if row[0].strip()]

import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import Transaction

FORMULA_TRIGGERS = ("=", "+", "-", "@", "\t", "\r")


def sanitize_csv_value(value: str) -> str:
    """
    Prefix spreadsheet formula triggers with a tab so exported text is never evaluated.
    """
    if not value or value.strip() == "":
        return ""
    value = value.strip()
    if value.startswith(FORMULA_TRIGGERS):
        return "\t" + value
    if re.match(r"^(cmd|powershell)\b", value, re.IGNORECASE):
        return "\t" + value
    return value


def parse_amount(value: str) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    if not clean:
        raise ValueError("Please fill amount and date.")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Amount must be a positive number.") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a positive number.")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents <= 0:
        raise ValueError("Amount must be a positive number.")
    return cents


def format_amount(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\r\n")
    writer.writerow(["Date", "Category", "Description", "Type", "Amount"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.category or ""),
                sanitize_csv_value(txn.description or ""),
                txn.type.value,
                format_amount(txn.amount_cents),
            ]
        )
    # No trailing line break after the last row.
    return output.getvalue()[: -len("\r\n")]

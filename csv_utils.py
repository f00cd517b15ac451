import csv
import re
from io import StringIO
from typing import Sequence

from models import Expense


HEADER = ["Date", "Name", "Category", "Amount", "Recurring", "Interval", "Original"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(HEADER)
    for expense in expenses:
        writer.writerow(
            [
                expense.created_at.date().isoformat(),
                sanitize_csv_value(expense.name),
                sanitize_csv_value(expense.category_name or ""),
                format_amount(expense.amount_cents),
                "1" if expense.is_recurring else "0",
                expense.recurring_interval or "",
                "1" if expense.is_original else "0",
            ]
        )
    return output.getvalue()

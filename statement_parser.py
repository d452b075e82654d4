import csv
import logging
import re
from datetime import date, datetime
from decimal import Decimal, DecimalException
from io import StringIO
from typing import Optional

from schemas import ColumnMapping, ParsedStatement, StatementLine

logger = logging.getLogger(__name__)

HEADER_KEYWORDS: dict[str, tuple[str, ...]] = {
    "date": (
        "date",
        "trans date",
        "transaction date",
        "posting date",
        "post date",
        "posted",
    ),
    "description": (
        "description",
        "memo",
        "details",
        "narrative",
        "payee",
        "transaction description",
    ),
    "amount": ("amount", "transaction amount"),
    "debit": ("debit", "withdrawal", "withdrawals", "debit amount", "money out"),
    "credit": ("credit", "deposit", "deposits", "credit amount", "money in"),
    "reference": (
        "reference",
        "ref",
        "check",
        "check no",
        "check number",
        "ref no",
        "reference number",
    ),
    "category": ("category", "type", "transaction type"),
    "balance": ("balance", "running balance", "available balance"),
}

_US_DATE = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4})[-/](\d{2})[-/](\d{2})$")
_STMTTRN = re.compile(r"<STMTTRN>(.*?)</STMTTRN>", re.IGNORECASE | re.DOTALL)


def normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9\s]", "", value.lower()).strip()


def parse_date(value: str) -> Optional[date]:
    clean = value.strip().replace('"', "")
    match = _US_DATE.match(clean)
    try:
        if match:
            return date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        match = _ISO_DATE.match(clean)
        if match:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        return datetime.fromisoformat(clean).date()
    except ValueError:
        return None


def parse_amount(value: Optional[str]) -> Optional[int]:
    """Parse a statement amount into signed cents, or None when unreadable."""
    if not value or not value.strip():
        return None
    clean = re.sub(r"[\"$£€,\s]", "", value.strip())
    if not clean:
        return None
    paren = re.match(r"^\((.+)\)$", clean)
    if paren:
        clean = f"-{paren.group(1)}"
    try:
        amount = Decimal(clean)
        if not amount.is_finite():
            return None
        # Exponent forms like 1e30 exceed the context precision or range here.
        return int((amount * 100).quantize(Decimal("1")))
    except DecimalException:
        return None


def detect_column_mapping(header_row: list[str]) -> Optional[ColumnMapping]:
    normalized = [normalize_header(cell) for cell in header_row]

    def find_column(keywords: tuple[str, ...], skip: frozenset = frozenset()):
        for keyword in keywords:
            for idx, header in enumerate(normalized):
                if idx in skip:
                    continue
                if header == keyword or keyword in header:
                    return idx
        return None

    date_col = find_column(HEADER_KEYWORDS["date"])
    description_col = find_column(HEADER_KEYWORDS["description"])
    if date_col is None or description_col is None:
        return None

    debit_col = find_column(HEADER_KEYWORDS["debit"])
    credit_col = find_column(HEADER_KEYWORDS["credit"])
    # "Debit Amount" style headers must not be mistaken for a signed amount column.
    taken = frozenset(i for i in (debit_col, credit_col) if i is not None)
    amount_col = find_column(HEADER_KEYWORDS["amount"], taken)
    if amount_col is None and (debit_col is None or credit_col is None):
        return None

    return ColumnMapping(
        date=date_col,
        description=description_col,
        amount=amount_col,
        debit=debit_col,
        credit=credit_col,
        reference=find_column(HEADER_KEYWORDS["reference"]),
        category=find_column(HEADER_KEYWORDS["category"]),
        balance=find_column(HEADER_KEYWORDS["balance"]),
        has_header=True,
    )


def _cell(row: list[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    return row[index].replace('"', "").strip()


def parse_csv_statement(
    content: str, mapping: Optional[ColumnMapping] = None
) -> ParsedStatement:
    rows = [
        [cell.strip() for cell in row]
        for row in csv.reader(StringIO(content))
        if any(cell.strip() for cell in row)
    ]
    if not rows:
        return ParsedStatement(warnings=["Empty file"])

    warnings: list[str] = []
    start = 0
    if mapping is None:
        mapping = detect_column_mapping(rows[0])
        if mapping is None:
            return ParsedStatement(
                warnings=["Could not auto-detect column mapping from header row"]
            )
        start = 1
    elif mapping.has_header:
        start = 1

    lines: list[StatementLine] = []
    for idx in range(start, len(rows)):
        row = rows[idx]
        row_number = idx + 1

        raw_date = _cell(row, mapping.date)
        line_date = parse_date(raw_date) if raw_date else None
        if line_date is None:
            warnings.append(f'Row {row_number}: invalid date "{raw_date}"')
            continue

        description = _cell(row, mapping.description)
        if not description:
            warnings.append(f"Row {row_number}: empty description")
            continue

        if mapping.amount is not None:
            raw_amount = _cell(row, mapping.amount)
            amount_cents = parse_amount(raw_amount)
            if amount_cents is None:
                warnings.append(f'Row {row_number}: invalid amount "{raw_amount}"')
                continue
        else:
            raw_debit = _cell(row, mapping.debit)
            raw_credit = _cell(row, mapping.credit)
            debit = parse_amount(raw_debit)
            credit = parse_amount(raw_credit)
            unreadable = [
                raw
                for raw, parsed in ((raw_debit, debit), (raw_credit, credit))
                if raw and parsed is None
            ]
            if unreadable:
                warnings.append(f'Row {row_number}: invalid amount "{unreadable[0]}"')
                continue
            if debit is None and credit is None:
                warnings.append(f"Row {row_number}: no debit or credit amount")
                continue
            # Debits leave the account, credits arrive.
            amount_cents = (credit or 0) - (debit or 0)

        lines.append(
            StatementLine(
                row_number=row_number,
                date=line_date,
                description=description,
                amount_cents=amount_cents,
                reference=_cell(row, mapping.reference) or None,
                category=_cell(row, mapping.category) or None,
                balance_cents=parse_amount(_cell(row, mapping.balance)),
            )
        )

    return ParsedStatement(lines=lines, detected_mapping=mapping, warnings=warnings)


def _ofx_tag(block: str, tag: str) -> Optional[str]:
    match = re.search(rf"<{tag}>([^<\r\n]+)", block, re.IGNORECASE)
    if not match:
        return None
    return match.group(1).strip() or None


def parse_ofx_statement(content: str) -> ParsedStatement:
    """OFX is SGML-like, so transactions are found by tag scanning."""
    blocks = _STMTTRN.findall(content)
    if not blocks:
        return ParsedStatement(warnings=["No transactions found in OFX file"])

    warnings: list[str] = []
    lines: list[StatementLine] = []
    for number, block in enumerate(blocks, start=1):
        posted = _ofx_tag(block, "DTPOSTED")
        if not posted:
            warnings.append(f"Transaction {number}: missing DTPOSTED")
            continue
        try:
            line_date = datetime.strptime(posted[:8], "%Y%m%d").date()
        except ValueError:
            warnings.append(f"Transaction {number}: invalid OFX date {posted}")
            continue

        raw_amount = _ofx_tag(block, "TRNAMT")
        amount_cents = parse_amount(raw_amount)
        if amount_cents is None:
            warnings.append(f"Transaction {number}: invalid OFX amount {raw_amount}")
            continue

        lines.append(
            StatementLine(
                row_number=number,
                date=line_date,
                description=_ofx_tag(block, "NAME")
                or _ofx_tag(block, "MEMO")
                or "Unknown",
                amount_cents=amount_cents,
                reference=_ofx_tag(block, "CHECKNUM") or _ofx_tag(block, "FITID"),
                category=_ofx_tag(block, "TRNTYPE"),
            )
        )
    return ParsedStatement(lines=lines, warnings=warnings)


def parse_statement(
    content: str, file_name: str, mapping: Optional[ColumnMapping] = None
) -> ParsedStatement:
    extension = file_name.lower().rsplit(".", 1)[-1] if "." in file_name else ""
    if extension in {"ofx", "qfx"}:
        parsed = parse_ofx_statement(content)
    else:
        parsed = parse_csv_statement(content, mapping)
    logger.info(
        f"statement_parsed: file={file_name} lines={len(parsed.lines)} "
        f"warnings={len(parsed.warnings)}"
    )
    return parsed

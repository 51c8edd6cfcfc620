"""Best-effort streaming parser for clinician dataset exports.

Delimited text is parsed line by line. Physical transfer chunks may end in
the middle of a logical line, so every ``feed`` keeps the trailing fragment
as ``leftover`` and prepends it to the next chunk; ``finish`` parses the
final fragment. Rows without both a subject identifier and a label are
skipped and counted, never raised.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

IDENTIFIER_FIELD = "subject_id"
LABEL_FIELD = "label"
JSON_WRAPPER_KEYS = ("subjects", "data", "records")
DECIMAL_PATTERN = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)

CellValue = Union[float, str]
Record = Dict[str, Any]


class DataFormat(str, Enum):
    JSON = "json"
    DELIMITED = "delimited"
    UNRECOGNIZED = "unrecognized"


def sniff_format(text: str, complete: bool = True) -> DataFormat:
    """Decide how an input should be parsed, once, from its (leading) text.

    ``complete=False`` means ``text`` is only the first slice of a longer
    stream: a leading bracket is then taken as JSON without a trial parse.
    """
    stripped = text.lstrip("\ufeff \t\r\n")
    if not stripped:
        return DataFormat.UNRECOGNIZED
    if stripped[0] in "[{":
        if not complete:
            return DataFormat.JSON
        try:
            json.loads(stripped)
        except ValueError:
            return DataFormat.DELIMITED
        return DataFormat.JSON
    return DataFormat.DELIMITED


def split_delimited_line(line: str) -> List[str]:
    """Split on commas; a double quote toggles a no-split region (no unescaping)."""
    values: List[str] = []
    current: List[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    values.append("".join(current).strip())
    return values


def _strip_quotes(token: str) -> str:
    return token.replace('"', "").replace("'", "")


def parse_decimal(text: str) -> Optional[float]:
    """Plain ASCII decimal or exponent notation only; digit separators and
    non-ASCII digits are not numbers here."""
    text = text.strip()
    if not DECIMAL_PATTERN.fullmatch(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def coerce_value(token: str) -> CellValue:
    """Non-empty tokens that read as a finite number become floats; the rest stay text."""
    text = _strip_quotes(token)
    number = parse_decimal(text) if text else None
    return text if number is None else number


def parse_header(line: str) -> List[str]:
    return [_strip_quotes(name).strip().lower() for name in split_delimited_line(line.strip())]


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def has_identity(record: Record) -> bool:
    return _present(record.get(IDENTIFIER_FIELD)) and _present(record.get(LABEL_FIELD))


def parse_delimited_line(line: str, header: List[str]) -> Optional[Record]:
    """Map one data line onto the header; None when the row lacks identity."""
    values = split_delimited_line(line)
    record: Record = {}
    for idx, name in enumerate(header):
        if idx >= len(values):
            break
        record[name] = coerce_value(values[idx])
    return record if has_identity(record) else None


@dataclass
class ParseResult:
    records: List[Record] = field(default_factory=list)
    header: Optional[List[str]] = None
    leftover: str = ""
    skipped: int = 0


def _parse_lines(lines: List[str], header: Optional[List[str]], result: ParseResult) -> Optional[List[str]]:
    for line in lines:
        trimmed = line.strip()
        if not trimmed:
            continue
        if header is None:
            header = parse_header(trimmed)
            continue
        record = parse_delimited_line(trimmed, header)
        if record is None:
            result.skipped += 1
        else:
            result.records.append(record)
    return header


def parse_chunk(text: str, header: Optional[List[str]] = None, final: bool = False) -> ParseResult:
    """Parse every complete line in ``text``.

    The caller owns the leftover: it must prepend ``result.leftover`` to the
    next chunk's text. With ``final=True`` the last line is parsed too.
    """
    result = ParseResult()
    lines = text.split("\n")
    if not final:
        result.leftover = lines.pop()
    result.header = _parse_lines(lines, header, result)
    return result


class RecordParser:
    """Stateful wrapper carrying header and leftover across chunks."""

    def __init__(self) -> None:
        self.header: Optional[List[str]] = None
        self.leftover = ""
        self.skipped = 0

    def feed(self, text: str) -> List[Record]:
        result = parse_chunk(self.leftover + text, self.header)
        self.header = result.header
        self.leftover = result.leftover
        self.skipped += result.skipped
        return result.records

    def finish(self) -> List[Record]:
        result = parse_chunk(self.leftover, self.header, final=True)
        self.header = result.header
        self.leftover = ""
        self.skipped += result.skipped
        return result.records


def parse_json_document(text: str) -> Tuple[List[Record], int]:
    """Extract subject records from a JSON array or a wrapper object.

    Returns the qualifying records and how many candidates were dropped.
    """
    data = json.loads(text.lstrip("\ufeff"))
    candidates: Any = []
    if isinstance(data, list):
        candidates = data
    elif isinstance(data, dict):
        for key in JSON_WRAPPER_KEYS:
            if data.get(key):
                candidates = data[key]
                break
    if not isinstance(candidates, list):
        return [], 0

    records = [item for item in candidates if isinstance(item, dict) and has_identity(item)]
    return records, len(candidates) - len(records)

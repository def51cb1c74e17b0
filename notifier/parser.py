"""
Parser for pipe-delimited appointment files.

File layout:
    line 1: header (discarded, never validated)
    line N: name|phone|kind|date|time|location|provider_name|note

The note column is optional. Dates and times are kept as text; they are
validated only when a message is formatted for sending.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Union

from notifier.exceptions import MalformedRecord

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
REQUIRED_FIELDS = 7
NOTE_PLACEHOLDER = "Nenhuma observação adicional"


@dataclass(frozen=True)
class NotificationRecord:
    """One accepted line of an appointment file."""

    name: str
    phone: str
    kind: str
    scheduled_date: str
    scheduled_time: str
    location: str
    provider_name: str
    note: str = NOTE_PLACEHOLDER


def _decode(line: Union[bytes, str]) -> str:
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    return line.rstrip("\r\n")


def parse_line(line: str, line_number: int) -> NotificationRecord | None:
    """
    Parse a single data line.

    Returns:
        The record, or None when name or phone is blank after trimming.

    Raises:
        MalformedRecord: if the line has fewer than the required fields.
    """
    fields = [field.strip() for field in line.split(FIELD_SEPARATOR)]
    if len(fields) < REQUIRED_FIELDS:
        raise MalformedRecord(
            line_number,
            line,
            reason=f"expected at least {REQUIRED_FIELDS} fields, got {len(fields)}",
        )

    name, phone, kind, date, time, location, provider_name = fields[:REQUIRED_FIELDS]
    note = fields[REQUIRED_FIELDS] if len(fields) > REQUIRED_FIELDS else ""

    if not name or not phone:
        logger.debug(f"Line {line_number} ignored: empty name or phone")
        return None

    return NotificationRecord(
        name=name,
        phone=phone,
        kind=kind,
        scheduled_date=date,
        scheduled_time=time,
        location=location,
        provider_name=provider_name,
        note=note or NOTE_PLACEHOLDER,
    )


def parse_records(
    lines: Iterable[Union[bytes, str]],
    strict: bool = False,
) -> Iterator[NotificationRecord]:
    """
    Lazily yield accepted records from an appointment file.

    Args:
        lines: Binary or text line iterable (an open file, BytesIO, list of lines)
        strict: When True a malformed line aborts the parse by raising
            MalformedRecord. When False (default) it is logged and skipped.

    Yields:
        NotificationRecord for every line with non-empty name and phone
    """
    for index, raw_line in enumerate(lines):
        line_number = index + 1
        line = _decode(raw_line)

        # Header is always discarded
        if line_number == 1:
            continue

        if not line.strip():
            continue

        try:
            record = parse_line(line, line_number)
        except MalformedRecord as e:
            if strict:
                raise
            logger.warning(
                f"Skipping malformed line {e.line_number}: {e.reason}",
                extra={"line_number": e.line_number},
            )
            continue

        if record is not None:
            yield record

"""
Flat text export of a batch's delivery and confirmation state.

Format (consumed by downstream systems, keep column order stable):
    TELEFONE|STATUS|DATA_ENVIO|ID_MENSAGEM|ERRO|CONFIRMACAO|DATA_CONFIRMACAO
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from notifier.storage import get_batch, list_messages

EXPORT_HEADER = "TELEFONE|STATUS|DATA_ENVIO|ID_MENSAGEM|ERRO|CONFIRMACAO|DATA_CONFIRMACAO"
EXPORT_DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"


def format_timestamp(value: Optional[datetime], tz: ZoneInfo) -> str:
    """Render a stored timestamp in the report timezone, or '' when unset."""
    if value is None:
        return ""
    # SQLite returns naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).strftime(EXPORT_DATETIME_FORMAT)


def _clean(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.replace("|", " ").replace("\r", " ").replace("\n", " ")


def export_line(message, tz: ZoneInfo) -> str:
    return "|".join([
        _clean(message.phone),
        message.status,
        format_timestamp(message.sent_at, tz),
        _clean(message.provider_message_id),
        _clean(message.error_detail),
        message.confirmation_status or "",
        format_timestamp(message.confirmed_at, tz),
    ])


def export_batch(db: Session, batch_id: int, timezone_name: str = "America/Sao_Paulo") -> str:
    """
    Build the return file for a batch: header plus one line per message.

    Raises:
        BatchNotFound: if the batch does not exist
    """
    get_batch(db, batch_id)
    tz = ZoneInfo(timezone_name)

    lines = [EXPORT_HEADER]
    lines.extend(export_line(message, tz) for message in list_messages(db, batch_id))
    return "\n".join(lines) + "\n"

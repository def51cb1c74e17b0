"""
Maps a stored message onto a WhatsApp template invocation.
"""

from dataclasses import dataclass
from datetime import datetime

from notifier.exceptions import FormatError
from notifier.parser import NOTE_PLACEHOLDER

CONSULTA_KIND = "CONSULTA"

# Stored dates are accepted in either of these shapes
DATE_INPUT_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")
DATE_OUTPUT_FORMAT = "%d/%m/%Y"


@dataclass(frozen=True)
class TemplateConfig:
    """Template identifiers per notification kind."""

    consulta: str
    exame: str

    @classmethod
    def from_settings(cls, settings) -> "TemplateConfig":
        return cls(consulta=settings.TEMPLATE_CONSULTA, exame=settings.TEMPLATE_EXAME)


@dataclass(frozen=True)
class FormattedMessage:
    template_name: str
    parameters: list[str]


def select_template(kind: str, templates: TemplateConfig) -> str:
    """
    Pick the template for a notification kind.

    Only "consulta" (any case) gets the consulta template; every other kind,
    including unknown ones, falls back to the exame template.
    """
    if (kind or "").strip().upper() == CONSULTA_KIND:
        return templates.consulta
    return templates.exame


def format_date(value: str) -> str:
    """Render a stored date as dd/mm/yyyy, raising ValueError if unparsable."""
    value = (value or "").strip()
    for fmt in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime(DATE_OUTPUT_FORMAT)
        except ValueError:
            continue
    raise ValueError(f"unparsable date {value!r}")


def format_message(message, templates: TemplateConfig) -> FormattedMessage:
    """
    Build the template name and the six positional body parameters.

    Parameter order: name, date, time, location, provider name, note.

    Raises:
        FormatError: if the date cannot be parsed or no template is configured
    """
    try:
        date = format_date(message.scheduled_date)
    except ValueError as e:
        raise FormatError(message.id, str(e)) from e

    template_name = select_template(message.kind, templates)
    if not template_name:
        raise FormatError(message.id, f"no template configured for kind {message.kind!r}")

    return FormattedMessage(
        template_name=template_name,
        parameters=[
            message.name,
            date,
            message.scheduled_time,
            message.location,
            message.provider_name,
            message.note or NOTE_PLACEHOLDER,
        ],
    )

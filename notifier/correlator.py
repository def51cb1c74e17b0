"""
Correlation of inbound WhatsApp webhook events with sent messages.

Button replies are classified into CONFIRM / CANCEL / RESCHEDULE, written
onto the message whose provider id matches the reply context, and answered
with a fixed acknowledgment text. Delivery-status callbacks are only logged;
stored delivery state is not updated from them.

handle_inbound_event never raises: the provider must always get a success
response, otherwise it keeps retrying the delivery.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from notifier.exceptions import MessageNotFound
from notifier.messaging import MessagingClient
from notifier.metrics import record_webhook_event
from notifier.models import ConfirmationStatus
from notifier.schemas import InboundMessage, StatusEvent
from notifier.storage import update_confirmation

logger = logging.getLogger(__name__)

# Checked in this order: a token containing both CONFIRMAR and CANCELAR is a confirmation
REPLY_KEYWORDS = (
    (ConfirmationStatus.CONFIRM, ("CONFIRMAR",)),
    (ConfirmationStatus.CANCEL, ("CANCELAR", "NÃO")),
    (ConfirmationStatus.RESCHEDULE, ("REAGENDAR",)),
)

ACKNOWLEDGMENTS = {
    ConfirmationStatus.CONFIRM: (
        "✅ Agendamento confirmado!\n\n"
        "Obrigado pela confirmação. Sua presença está confirmada para o dia e horário agendados.\n\n"
        "Te esperamos! 😊"
    ),
    ConfirmationStatus.CANCEL: (
        "❌ Agendamento cancelado.\n\n"
        "Seu agendamento foi cancelado conforme solicitado.\n\n"
        "Para reagendar, entre em contato conosco pelos nossos canais de atendimento.\n\n"
        "Estamos à disposição!"
    ),
    ConfirmationStatus.RESCHEDULE: (
        "📅 Solicitação de reagendamento recebida!\n\n"
        "Nossa equipe entrará em contato com você em breve para verificar a melhor data "
        "e horário disponíveis.\n\n"
        "Aguarde nosso retorno. Obrigado!"
    ),
}


def classify_reply(token: Optional[str]) -> Optional[ConfirmationStatus]:
    """
    Map a free-text button token onto a confirmation outcome.

    Returns:
        The outcome, or None when no keyword matches
    """
    if not token:
        return None
    normalized = token.upper()
    for outcome, keywords in REPLY_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return outcome
    return None


@dataclass
class WebhookResult:
    """What one webhook delivery did, for request logging."""

    correlated: int = 0
    not_found: int = 0
    unclassified: int = 0
    acknowledged: int = 0
    statuses: int = 0
    errors: int = 0


def _iter_change_values(payload) -> Iterator[dict]:
    """Yield every entry[].changes[].value object, skipping malformed parts."""
    if not isinstance(payload, dict):
        return
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if isinstance(change, dict) and isinstance(change.get("value"), dict):
                yield change["value"]


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


class WebhookCorrelator:
    """
    Applies inbound provider events to the store.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        client: Messaging client used for acknowledgment replies
    """

    def __init__(self, session_factory: Callable, client: MessagingClient):
        self.session_factory = session_factory
        self.client = client

    async def handle_inbound_event(self, payload) -> WebhookResult:
        result = WebhookResult()

        try:
            for value in _iter_change_values(payload):
                for raw_message in _as_list(value.get("messages")):
                    await self._handle_message(raw_message, result)
                for raw_status in _as_list(value.get("statuses")):
                    self._handle_status(raw_status, result)
        except Exception:
            result.errors += 1
            record_webhook_event("unknown", "error")
            logger.exception("Unexpected error while handling webhook event")

        return result

    async def _handle_message(self, raw_message, result: WebhookResult) -> None:
        try:
            message = InboundMessage.model_validate(raw_message)
        except ValidationError as e:
            result.errors += 1
            record_webhook_event("message", "invalid")
            logger.warning(f"Ignoring malformed inbound message: {e.error_count()} errors")
            return

        token = message.reply_token
        if token is None:
            logger.debug(f"Ignoring inbound message of type {message.type}")
            return

        logger.info(f"Button reply {token!r} from {message.from_msisdn}")
        outcome = classify_reply(token)
        if outcome is None:
            result.unclassified += 1
            record_webhook_event("button", "unclassified")
            return

        if message.context_id:
            self._record_confirmation(message.context_id, outcome, result)

        # The sender is answered even when the reply could not be correlated
        await self._acknowledge(message.from_msisdn, outcome, result)

    def _record_confirmation(
        self, provider_message_id: str, outcome: ConfirmationStatus, result: WebhookResult
    ) -> None:
        try:
            with self.session_factory() as db:
                update_confirmation(db, provider_message_id, outcome)
        except MessageNotFound:
            result.not_found += 1
            record_webhook_event("button", "not_found")
            logger.info(
                f"No sent message for reply context {provider_message_id}",
                extra={"provider_message_id": provider_message_id},
            )
        except Exception:
            result.errors += 1
            record_webhook_event("button", "error")
            logger.exception(f"Failed to record confirmation for {provider_message_id}")
        else:
            result.correlated += 1
            record_webhook_event("button", "correlated")

    async def _acknowledge(self, to: str, outcome: ConfirmationStatus, result: WebhookResult) -> None:
        try:
            await self.client.send_text(to, ACKNOWLEDGMENTS[outcome])
        except Exception as e:
            result.errors += 1
            record_webhook_event("button", "ack_failed")
            logger.error(f"Acknowledgment to {to} failed: {e}")
        else:
            result.acknowledged += 1
            record_webhook_event("button", "acknowledged")

    def _handle_status(self, raw_status, result: WebhookResult) -> None:
        try:
            status = StatusEvent.model_validate(raw_status)
        except ValidationError:
            result.errors += 1
            record_webhook_event("status", "invalid")
            logger.warning("Ignoring malformed status event")
            return

        # Delivery statuses are acknowledged only; stored state is unchanged
        result.statuses += 1
        record_webhook_event("status", "received")
        logger.info(
            f"Delivery status {status.status} for message {status.id}",
            extra={"provider_message_id": status.id},
        )

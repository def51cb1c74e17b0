"""
Throttled background delivery of a batch's pending messages.

dispatch() schedules run_batch() on the running event loop and returns at
once; callers poll the batch summary for progress. Inside a run, messages
are sent strictly one at a time in creation order, with a fixed pause after
every provider call whatever its outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from notifier.exceptions import FormatError, InvalidTransition, SendFailure
from notifier.formatter import TemplateConfig, format_message
from notifier.logging_utils import batch_context
from notifier.messaging import MessagingClient
from notifier.metrics import record_dispatch_outcome
from notifier.models import DeliveryStatus
from notifier.storage import DeliveryOutcome, list_pending_messages, update_delivery_outcome

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Counters for one run over a batch snapshot."""

    batch_id: int
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


class Dispatcher:
    """
    Sends pending messages of a batch through a MessagingClient.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        client: Outbound messaging client
        templates: Template ids per notification kind
        send_interval: Seconds to wait after each provider call
        sleep: Awaitable sleep function (replaced in tests)
    """

    def __init__(
        self,
        session_factory: Callable,
        client: MessagingClient,
        templates: TemplateConfig,
        send_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.client = client
        self.templates = templates
        self.send_interval = send_interval
        self._sleep = sleep
        self._runs: dict[int, asyncio.Task] = {}

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    def dispatch(self, batch_id: int) -> asyncio.Task:
        """
        Start processing a batch in the background.

        Must be called from a running event loop. At most one run per batch is
        live: while it is, further calls return the same task instead of
        starting a second run that would send the same messages again.
        """
        running = self._runs.get(batch_id)
        if running is not None and not running.done():
            logger.info(f"Dispatch already running for batch {batch_id}", extra={"batch_id": batch_id})
            return running

        task = asyncio.get_running_loop().create_task(
            self.run_batch(batch_id), name=f"dispatch-batch-{batch_id}"
        )
        self._runs[batch_id] = task
        task.add_done_callback(lambda done: self._on_run_done(batch_id, done))
        logger.info(f"Dispatch scheduled for batch {batch_id}", extra={"batch_id": batch_id})
        return task

    def _on_run_done(self, batch_id: int, task: asyncio.Task) -> None:
        if self._runs.get(batch_id) is task:
            del self._runs[batch_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Dispatch run {task.get_name()} crashed: {exc!r}")

    async def wait_idle(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._runs:
            await asyncio.gather(*list(self._runs.values()), return_exceptions=True)

    async def _attempt(self, message) -> DeliveryOutcome:
        """Format and send one message, turning per-message errors into FAILED."""
        try:
            formatted = format_message(message, self.templates)
            provider_message_id = await self.client.send_template(
                message.phone, formatted.template_name, formatted.parameters
            )
        except FormatError as e:
            logger.warning(f"Message {message.id} not sendable: {e.reason}")
            return DeliveryOutcome.failed(e.reason)
        except SendFailure as e:
            logger.warning(f"Message {message.id} rejected by provider: {e.detail}")
            return DeliveryOutcome.failed(e.detail)
        except Exception as e:
            logger.exception(f"Unexpected error sending message {message.id}")
            return DeliveryOutcome.failed(str(e) or e.__class__.__name__)

        return DeliveryOutcome.sent(provider_message_id)

    async def run_batch(self, batch_id: int) -> DispatchReport:
        """
        Process the PENDING messages of a batch present at call time.

        Messages finalized by a concurrent run between the snapshot and their
        turn are skipped without contacting the provider.
        """
        report = DispatchReport(batch_id=batch_id)

        with batch_context(batch_id), self.session_factory() as db:
            pending = list_pending_messages(db, batch_id)
            logger.info(
                f"Dispatch started for batch {batch_id}: {len(pending)} pending",
                extra={"batch_id": batch_id},
            )

            for message in pending:
                message_id = message.id

                # Expired by the previous commit, so writes made outside this run
                # (another process, a manual fix) are seen before sending
                if message.status != DeliveryStatus.PENDING.value:
                    report.skipped += 1
                    record_dispatch_outcome("skipped")
                    continue

                outcome = await self._attempt(message)

                try:
                    update_delivery_outcome(db, message_id, outcome)
                except InvalidTransition as e:
                    logger.error(f"Outcome for message {message_id} discarded: {e}")
                    report.skipped += 1
                    record_dispatch_outcome("skipped")
                except Exception:
                    db.rollback()
                    logger.exception(f"Could not store outcome for message {message_id}")
                    report.skipped += 1
                    record_dispatch_outcome("skipped")
                else:
                    if outcome.status == DeliveryStatus.SENT.value:
                        report.sent += 1
                        record_dispatch_outcome("sent")
                    else:
                        report.failed += 1
                        record_dispatch_outcome("failed")

                await self._sleep(self.send_interval)

        logger.info(
            f"Dispatch finished for batch {batch_id}: "
            f"sent={report.sent} failed={report.failed} skipped={report.skipped}",
            extra={"batch_id": batch_id},
        )
        return report

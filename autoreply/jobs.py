"""
Background job execution for the Ticket Auto-Reply Pipeline.

Work items travel as dramatiq messages on the ``auto_reply`` queue. The
processing actor is declared with the lane's retry policy:

- a missing ticket is a no-op success and is never retried
- any error during an attempt, including exceeding the ``time_limit``,
  is retried by the Retries middleware with the unchanged payload after
  the retry delay, until ``max_attempts`` attempts have run
- once retries are exhausted the message is handed to the
  ``on_retry_exhausted`` actor, which logs it and calls the terminal
  failure hook

Nothing here serializes work items of the same ticket; two quick messages
on one ticket may be decided concurrently and delivered in either order.
"""

import logging
import time
from typing import Any, Callable, Optional

import dramatiq
from dramatiq import Worker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import CurrentMessage

from .engine import DecisionEngine
from .models import ReplyOutcome, ReplySource, Ticket, WorkItem
from .notifier import format_escalation_alert
from .ports import AdminNotifier, ReplyDelivery, TicketStore


logger = logging.getLogger(__name__)


FailureHook = Callable[[WorkItem], None]


def build_broker() -> StubBroker:
    """
    Create an in-process broker for the auto-reply lane.

    The broker carries the default middleware (retries, time limits) plus
    ``CurrentMessage``, which the lane reads the retry count from.
    """
    broker = StubBroker()
    broker.add_middleware(CurrentMessage())
    broker.emit_after("process_boot")
    dramatiq.set_broker(broker)
    return broker


class JobRunner:
    """
    Executes one attempt of a work item.

    Delivery happens inside the attempt, so a failed delivery is retried
    like any other error. Delivery is at-least-once.
    """

    def __init__(
        self,
        store: TicketStore,
        engine: DecisionEngine,
        delivery: ReplyDelivery,
        notifier: Optional[AdminNotifier] = None,
        on_failure: Optional[FailureHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the runner.

        Args:
            store: Ticket store for existence checks and account lookups.
            engine: Decision engine.
            delivery: Posts replies as the system user.
            notifier: Operator alert channel used on escalation.
            on_failure: Terminal failure hook for external alerting.
            sleep: Used for the pre-delivery delay.
        """
        self._store = store
        self._engine = engine
        self._delivery = delivery
        self._notifier = notifier
        self._on_failure = on_failure
        self._sleep = sleep

    def run(self, item: WorkItem) -> Optional[ReplyOutcome]:
        """
        Run one attempt of a work item.

        Args:
            item: The work item, with ``attempt`` set to the current attempt.

        Returns:
            The delivered outcome, or None when the ticket no longer exists.

        Raises:
            Exception: Any failure of the attempt, re-raised for the broker
                to retry.
        """
        logger.info(
            f"Auto-reply job started for ticket {item.ticket_id} "
            f"(attempt {item.attempt}, {len(item.raw_message)} chars)"
        )

        try:
            ticket = self._store.get_ticket(item.ticket_id)
            if ticket is None:
                logger.warning(f"Ticket {item.ticket_id} not found, discarding auto-reply job")
                return None

            logger.debug(f"Running decision for ticket {ticket.id} (owner {ticket.user_id})")
            outcome = self._engine.decide(ticket, item.raw_message, item.config)
            self.deliver(ticket, outcome, item)

        except Exception as e:
            logger.error(
                f"Auto-reply job error for ticket {item.ticket_id} "
                f"(attempt {item.attempt}): {e}"
            )
            raise

        logger.info(
            f"Auto-reply job succeeded for ticket {item.ticket_id} "
            f"(source: {outcome.source.value})"
        )
        return outcome

    def deliver(self, ticket: Ticket, outcome: ReplyOutcome, item: WorkItem) -> None:
        """
        Deliver a decision outcome.

        Escalations are posted immediately and alert the operators when
        enabled. Keyword and AI replies are delayed and prefixed.
        """
        config = item.config

        if not outcome.has_reply():
            logger.info(f"No auto-reply for ticket {ticket.id}")
            return

        if outcome.source is ReplySource.ESCALATION:
            self._delivery.reply_as_system(ticket.id, outcome.text)
            logger.info(f"Ticket {ticket.id} transferred to a human agent")
            if config.enable_telegram_notify:
                self._notify_escalation(ticket)
            return

        if config.auto_reply_delay > 0:
            self._sleep(config.auto_reply_delay)

        prefix = config.ai_reply_prefix if outcome.source is ReplySource.AI else config.auto_reply_prefix
        self._delivery.reply_as_system(ticket.id, f"{prefix}{outcome.text}")
        logger.info(
            f"Auto-reply sent for ticket {ticket.id} "
            f"(type: {outcome.source.value}, {len(outcome.text)} chars)"
        )

    def _notify_escalation(self, ticket: Ticket) -> None:
        if self._notifier is None:
            return
        try:
            account = self._store.get_account(ticket.user_id) if ticket.user_id is not None else None
            if account is None:
                logger.info(f"Ticket {ticket.id} has no resolvable owner, skipping admin alert")
                return
            self._notifier.notify_admins(format_escalation_alert(ticket, account), urgent=True)
        except Exception as e:
            logger.error(f"Failed to notify admins about ticket {ticket.id}: {e}")

    def fail(self, item: WorkItem) -> None:
        """Report a work item whose attempts are all used up."""
        logger.error(
            f"Auto-reply job for ticket {item.ticket_id} failed permanently "
            f"after {item.attempt} attempts"
        )
        if self._on_failure is None:
            return
        try:
            self._on_failure(item)
        except Exception as e:
            logger.error(f"Failure hook raised for ticket {item.ticket_id}: {e}")


class AutoReplyLane:
    """
    The auto-reply job lane on a dramatiq broker.

    Declares the processing actor and its retries-exhausted companion on
    the lane's queue, and turns work items into messages.
    """

    def __init__(
        self,
        broker: dramatiq.Broker,
        runner: JobRunner,
        queue_name: str = "auto_reply",
        max_attempts: int = 2,
        retry_delay: float = 30,
        attempt_timeout: float = 60,
    ):
        """
        Initialize the lane.

        Args:
            broker: Broker the actors are declared on.
            runner: Executes each attempt.
            queue_name: Name of the job lane.
            max_attempts: Total attempts per work item.
            retry_delay: Seconds before a retry is delivered. The Retries
                middleware applies jitter, so the actual wait lies between
                half and all of it.
            attempt_timeout: Seconds an attempt may run.
        """
        self.broker = broker
        self.queue_name = queue_name
        self._runner = runner

        backoff = int(retry_delay * 1000)
        self.exhausted_actor = dramatiq.actor(
            self._retries_exhausted,
            broker=broker,
            actor_name=f"{queue_name}_exhausted",
            queue_name=queue_name,
            max_retries=0,
        )
        self.actor = dramatiq.actor(
            self._process,
            broker=broker,
            actor_name=f"process_{queue_name}",
            queue_name=queue_name,
            max_retries=max_attempts - 1,
            min_backoff=backoff,
            max_backoff=backoff,
            time_limit=int(attempt_timeout * 1000),
            on_retry_exhausted=self.exhausted_actor.actor_name,
        )

    def enqueue(self, item: WorkItem) -> None:
        """Send a work item to the lane."""
        self.actor.send(item.model_dump(mode="json"))
        logger.debug(f"Enqueued ticket {item.ticket_id} on '{self.queue_name}'")

    def _process(self, payload: dict[str, Any]) -> None:
        message = CurrentMessage.get_current_message()
        retries = message.options.get("retries", 0) if message is not None else 0
        item = WorkItem.model_validate({**payload, "attempt": retries + 1})
        self._runner.run(item)

    def _retries_exhausted(self, message_data: dict[str, Any], retry_info: dict[str, Any]) -> None:
        payload = message_data["args"][0]
        retries = retry_info.get("retries", 0)
        item = WorkItem.model_validate({**payload, "attempt": retries + 1})
        self._runner.fail(item)

    def drain(self, concurrency: int = 1) -> None:
        """
        Run workers in this process until the lane is empty.

        Delayed retries and retries-exhausted messages are waited for.

        Args:
            concurrency: Number of worker threads.
        """
        worker = Worker(self.broker, worker_threads=concurrency, worker_timeout=100)
        worker.start()
        try:
            self.broker.join(self.queue_name, fail_fast=False)
            worker.join()
        finally:
            worker.stop()
        logger.info(f"Job lane '{self.queue_name}' drained")

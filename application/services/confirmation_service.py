"""
Confirmation protocol - reconcile a PaymentAttempt to a terminal result.

状态机：Processing -> Completed | Failed | TimedOut

Two cooperative asyncio tasks drive an external attempt: a deadline timer and
a repeating poll. Whichever reaches a terminal state first cancels the other;
the result is recorded exactly once.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from application.ports.checkout_store import CheckoutStore
from core.logging_config import bound_checkout_context, get_logger
from domain.checkout.entity import (
    AttemptPurpose,
    PaymentAttempt,
    SettlementResult,
    SettlementStatus,
    VerificationStatus,
)
from domain.checkout.events import (
    CheckoutEvent,
    PaymentCancelled,
    PaymentConfirmed,
    PaymentFailed,
    PaymentTimedOut,
)
from domain.common.exceptions import (
    AttemptInFlightException,
    StoreUnavailableException,
    TransactionNotFoundException,
)


logger = get_logger(__name__)

CompletionHook = Callable[[PaymentAttempt], Awaitable[None]]
Clock = Callable[[], float]


def timeout_message(refund_window: str) -> str:
    return (
        "We could not confirm your payment in time. "
        f"If any amount was deducted, it will be refunded within {refund_window}."
    )


class ConfirmationProtocol:
    """One instance per PaymentAttempt."""

    def __init__(
        self,
        attempt: PaymentAttempt,
        store: CheckoutStore,
        *,
        deadline_seconds: float = 300.0,
        poll_interval_seconds: float = 3.0,
        refund_window: str = "5-7 days",
        on_completed: Optional[CompletionHook] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.attempt = attempt
        self.store = store
        self.deadline_seconds = deadline_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.refund_window = refund_window
        self._on_completed = on_completed
        self._clock = clock
        self._result: Optional[SettlementResult] = None
        self.finished_at: Optional[float] = None
        self._done = asyncio.Event()
        self._deadline_task: Optional[asyncio.Task[Any]] = None
        self._poll_task: Optional[asyncio.Task[Any]] = None
        self._cleanup_task: Optional[asyncio.Task[Any]] = None
        self.polls = 0
        self.events: list[CheckoutEvent] = []

    @property
    def transaction_id(self) -> str:
        return self.attempt.transaction_id

    @property
    def status(self) -> SettlementStatus:
        return self._result.status if self._result else SettlementStatus.PROCESSING

    @property
    def result(self) -> Optional[SettlementResult]:
        return self._result

    @property
    def is_processing(self) -> bool:
        return self._result is None

    @property
    def is_settled(self) -> bool:
        """Terminal and no completion cleanup still running."""
        if self._result is None:
            return False
        return self._cleanup_task is None or self._cleanup_task.done()

    async def start(self) -> None:
        attempt = self.attempt
        if attempt.auto_complete:
            self._finish(
                SettlementResult.completed(
                    attempt,
                    verified_data={"wallet_transaction_id": attempt.wallet_transaction_id},
                )
            )
            return
        if attempt.is_wallet_only:
            await self._verify_wallet_only()
            return
        self._deadline_task = asyncio.create_task(self._run_deadline())
        self._poll_task = asyncio.create_task(self._run_poll())
        logger.info(
            "confirmation_started",
            transaction_id=attempt.transaction_id,
            deadline_seconds=self.deadline_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
        )

    async def _verify_wallet_only(self) -> None:
        try:
            verified = await self.store.verify_payment(self.transaction_id, "automatic")
        except StoreUnavailableException as exc:
            logger.warning("wallet_verification_failed", transaction_id=self.transaction_id, error=exc.message)
            self._finish(SettlementResult.failed(self.attempt, "verification_failed", message=exc.message))
            return
        if verified.success:
            self._finish(SettlementResult.completed(self.attempt, verified_data={"verification_method": "automatic"}))
        else:
            self._finish(SettlementResult.failed(self.attempt, "verification_failed", message=verified.message))

    async def _check(self) -> VerificationStatus:
        if self.attempt.purpose == AttemptPurpose.WALLET_LOAD:
            return await self.store.check_transaction_completion(self.transaction_id)
        return await self.store.check_order_verification(self.transaction_id)

    async def _run_poll(self) -> None:
        with bound_checkout_context(transaction_id=self.transaction_id, order_id=self.attempt.order_id):
            while self.is_processing:
                await asyncio.sleep(self.poll_interval_seconds)
                if not self.is_processing:
                    return
                self.polls += 1
                try:
                    status = await self._check()
                except StoreUnavailableException as exc:
                    # Transient; next tick tries again until the deadline
                    logger.warning("confirmation_poll_failed", poll=self.polls, error=exc.message)
                    continue
                if status == VerificationStatus.CONFIRMED:
                    self._finish(
                        SettlementResult.completed(self.attempt, verified_data={"verification": status.value})
                    )
                elif status == VerificationStatus.FAILED:
                    self._finish(SettlementResult.failed(self.attempt, "payment_failed"))

    async def _run_deadline(self) -> None:
        await asyncio.sleep(self.deadline_seconds)
        if self._finish(SettlementResult.timed_out(self.attempt, timeout_message(self.refund_window))):
            logger.warning("confirmation_timed_out", transaction_id=self.transaction_id, polls=self.polls)

    def _finish(self, result: SettlementResult) -> bool:
        """Record the terminal result once; later calls are ignored."""
        if self._result is not None:
            return False
        self._result = result
        self.finished_at = self._clock()
        current = asyncio.current_task()
        for task in (self._deadline_task, self._poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self.events.append(self._event_for(result))
        self._done.set()
        logger.info(
            "confirmation_finished",
            transaction_id=self.transaction_id,
            status=result.status.value,
            reason=result.reason,
        )
        if result.status == SettlementStatus.COMPLETED and self._on_completed is not None:
            self._cleanup_task = asyncio.create_task(self._run_cleanup())
        return True

    def _event_for(self, result: SettlementResult) -> CheckoutEvent:
        ids = {"transaction_id": result.transaction_id, "order_id": result.order_id}
        if result.status == SettlementStatus.COMPLETED:
            return PaymentConfirmed(**ids)
        if result.status == SettlementStatus.TIMED_OUT:
            return PaymentTimedOut(**ids)
        if result.reason == "cancelled":
            return PaymentCancelled(**ids)
        return PaymentFailed(reason=result.reason, **ids)

    async def _run_cleanup(self) -> None:
        try:
            await self._on_completed(self.attempt)  # type: ignore[misc]
        except StoreUnavailableException as exc:
            # Payment is already confirmed; a stale cart is not a failure
            logger.warning("confirmation_cleanup_failed", transaction_id=self.transaction_id, error=exc.message)

    def cancel(self) -> SettlementResult:
        """Stop both timers now (user navigated away or service shutdown)."""
        if self._finish(SettlementResult.failed(self.attempt, "cancelled", message="Payment confirmation cancelled")):
            logger.info("confirmation_cancelled", transaction_id=self.transaction_id)
        return self._result  # type: ignore[return-value]

    async def wait(self, timeout: Optional[float] = None) -> SettlementResult:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self._result  # type: ignore[return-value]

    async def aclose(self) -> None:
        self.cancel()
        tasks = [t for t in (self._deadline_task, self._poll_task, self._cleanup_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class ConfirmationRegistry:
    """
    Live and recently finished protocols by transaction id.

    At most one Processing protocol exists per order. Finished protocols stay
    queryable for ``finished_ttl_seconds`` and at most ``max_finished`` are kept.
    """

    def __init__(
        self,
        store: CheckoutStore,
        *,
        deadline_seconds: float = 300.0,
        poll_interval_seconds: float = 3.0,
        refund_window: str = "5-7 days",
        finished_ttl_seconds: float = 900.0,
        max_finished: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        self.store = store
        self.deadline_seconds = deadline_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.refund_window = refund_window
        self.finished_ttl_seconds = finished_ttl_seconds
        self.max_finished = max_finished
        self._clock = clock
        self._by_transaction: dict[str, ConfirmationProtocol] = {}
        self._processing_by_order: dict[str, ConfirmationProtocol] = {}

    def __len__(self) -> int:
        return len(self._by_transaction)

    def prune(self) -> int:
        """Drop expired and overflow finished protocols; returns how many went."""
        now = self._clock()
        settled = sorted(
            (p for p in self._by_transaction.values() if p.is_settled),
            key=lambda p: p.finished_at or 0.0,
        )
        overflow = max(0, len(settled) - self.max_finished)
        evicted = [
            p for index, p in enumerate(settled)
            if index < overflow or now - (p.finished_at or now) >= self.finished_ttl_seconds
        ]
        for protocol in evicted:
            self._by_transaction.pop(protocol.transaction_id, None)
            order_id = protocol.attempt.order_id
            if order_id and self._processing_by_order.get(order_id) is protocol:
                self._processing_by_order.pop(order_id, None)
        if evicted:
            logger.debug("confirmations_pruned", evicted=len(evicted), retained=len(self._by_transaction))
        return len(evicted)

    def in_flight(self, order_id: Optional[str]) -> Optional[ConfirmationProtocol]:
        if not order_id:
            return None
        protocol = self._processing_by_order.get(order_id)
        if protocol is not None and not protocol.is_processing:
            self._processing_by_order.pop(order_id, None)
            return None
        return protocol

    def ensure_idle(self, order_id: Optional[str]) -> None:
        protocol = self.in_flight(order_id)
        if protocol is not None:
            raise AttemptInFlightException(order_id or "", protocol.transaction_id)

    async def start(self, attempt: PaymentAttempt, *, on_completed: Optional[CompletionHook] = None) -> ConfirmationProtocol:
        self.ensure_idle(attempt.order_id)
        self.prune()
        protocol = ConfirmationProtocol(
            attempt,
            self.store,
            deadline_seconds=self.deadline_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            refund_window=self.refund_window,
            on_completed=on_completed,
            clock=self._clock,
        )
        self._by_transaction[attempt.transaction_id] = protocol
        if attempt.order_id:
            self._processing_by_order[attempt.order_id] = protocol
        await protocol.start()
        return protocol

    def get(self, transaction_id: str) -> ConfirmationProtocol:
        self.prune()
        protocol = self._by_transaction.get(transaction_id)
        if protocol is None:
            raise TransactionNotFoundException(transaction_id)
        return protocol

    def cancel(self, transaction_id: str) -> SettlementResult:
        return self.get(transaction_id).cancel()

    async def aclose(self) -> None:
        protocols = list(self._by_transaction.values())
        for protocol in protocols:
            await protocol.aclose()
        self._processing_by_order.clear()

from __future__ import annotations
from typing import Any, Dict, Optional

from .config import FULFILLMENT_SOURCE
from .errors import PaymentStateError, UnmatchedReference
from .fulfillment import FulfillmentEngine
from .infra.log import logger
from .infra.timings import timeit
from .model.payments import PaymentStatus
from .model.stores import Stores
from .notifier import Notifier
from .paystack import Paystack
from .schemas import ChargeFailed, IgnoredEvent


class WebhookGateway:
    """authenticate -> parse -> dispatch; nothing is read before auth."""

    def __init__(
        self, stores: Stores, notifier: Notifier,
        processor: Optional[Paystack] = None,
        source: str = FULFILLMENT_SOURCE,
    ) -> None:
        self.stores = stores
        self.processor = processor or Paystack()
        self.engine = FulfillmentEngine(stores, notifier, source=source)

    async def handle(
            self, payload: bytes, signature: Optional[str]
    ) -> Dict[str, Any]:
        self.processor.verify_signature(payload, signature)
        event = self.processor.parse_event(payload)

        if isinstance(event, IgnoredEvent):
            logger.bind(reference=event.reference or "-").info(
                f"ignoring webhook event {event.event}"
            )
            return {"ok": True, "ignored": True, "event": event.event}
        if isinstance(event, ChargeFailed):
            async with timeit("webhook.charge_failed"):
                return await self._charge_failed(event)
        async with timeit("webhook.charge_success"):
            result = await self.engine.fulfill(event)
        return result.as_ack()

    async def _charge_failed(self, event: ChargeFailed) -> Dict[str, Any]:
        ref = event.data.reference
        log = logger.bind(reference=ref)
        async with self.stores.transaction() as s:
            moved = await s.payments.transition(
                ref, PaymentStatus.PENDING, PaymentStatus.FAILED,
                failure_reason=event.data.failure_message,
            )
            current = moved or await s.payments.get_by_reference(
                ref, with_lines=False
            )

        if current is None:
            log.error("charge.failed for unknown reference (ledger desync)")
            raise UnmatchedReference(f"no payment with reference {ref}")
        if moved is not None:
            log.info(f"payment failed: {event.data.failure_message}")
            return {"ok": True, "reference": ref, "status": "failed"}
        if current.status is PaymentStatus.FAILED:
            return {"ok": True, "reference": ref, "status": "failed",
                    "idempotent": True}
        log.error(f"charge.failed for {current.status.value} payment")
        raise PaymentStateError(f"payment {ref} is {current.status.value}")

import asyncio
from typing import Optional, Set

from aurelia.notifications.mailer import MailSender, logger
from aurelia.schema.full_schema import OrderStatus

SUBJECTS = {
    OrderStatus.CONFIRMED: "Your order #{order_id} is confirmed",
    OrderStatus.PROCESSING: "We are preparing your order #{order_id}",
    OrderStatus.SHIPPED: "Your order #{order_id} has shipped",
    OrderStatus.DELIVERED: "Your order #{order_id} was delivered",
    OrderStatus.CANCELLED: "Your order #{order_id} was cancelled",
    OrderStatus.RETURNED: "Return received for order #{order_id}",
}


class OrderNotifier:
    """
    Queues order status emails after the ledger transaction has committed.

    Sending happens in background tasks: a slow or failing mail relay never
    blocks or rolls back the caller, failures are only logged.
    """

    def __init__(self, sender: MailSender):
        self.sender = sender
        self._pending: Set[asyncio.Task] = set()

    def order_status_changed(self, order_id: int, recipient: Optional[str], old_status: int, new_status: int) -> Optional[asyncio.Task]:
        new = OrderStatus(new_status)
        if old_status == new_status or new not in SUBJECTS:
            return None
        if not recipient:
            logger.debug("notify.order_status.no_recipient", extra={"order_id": order_id, "new_status": new.name})
            return None

        subject = SUBJECTS[new].format(order_id=order_id)
        body = (
            f"Order #{order_id} moved from {OrderStatus(old_status).name.lower()} "
            f"to {new.name.lower()}."
        )
        metadata = {"order_id": order_id, "old_status": OrderStatus(old_status).name, "new_status": new.name}

        task = asyncio.create_task(self._send(order_id, recipient, subject, body, metadata))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, order_id: int, recipient: str, subject: str, body: str, metadata: dict) -> None:
        try:
            await self.sender.send(recipient=recipient, subject=subject, body=body, metadata=metadata)
            logger.info("notify.order_status.sent", extra={"order_id": order_id, "new_status": metadata["new_status"]})
        except Exception:
            logger.exception("notify.order_status.failed", extra={"order_id": order_id, "new_status": metadata["new_status"]})

    async def drain(self, timeout: float = 5.0) -> None:
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            logger.warning("notify.drain.timeout", extra={"cancelled": len(pending)})

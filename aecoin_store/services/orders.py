import secrets
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from tortoise import timezone

from .billplz import BillplzClient
from .database import CoinPackage, Order, RedemptionCode
from .discord_webhook import OrderNotification, OrderNotifier
from ..utils.constants import OrderStatus
from ..utils.logger import logger

# Excludes 0, O, 1 and I.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.EXPIRED},
    OrderStatus.PAID: {OrderStatus.FULFILLED},
    OrderStatus.FULFILLED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.EXPIRED: set(),
}


class InvalidTransition(ValueError):
    pass


def generate_code(groups: int = 3, group_size: int = 4) -> str:
    parts = ["".join(secrets.choice(CODE_ALPHABET) for _ in range(group_size)) for _ in range(groups)]
    return "AEC-" + "-".join(parts)


def _is_true(value: Any) -> bool:
    return str(value).strip().lower() == "true"


def _parse_paid_at(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    # Billplz sends "2026-10-19 10:00:00 +0800".
    for fmt in ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    return None


class OrderService:
    def __init__(self, billplz: BillplzClient, notifier: OrderNotifier, pending_ttl_minutes: int = 60):
        self.billplz = billplz
        self.notifier = notifier
        self.pending_ttl_minutes = pending_ttl_minutes

    async def _claim(self, order: Order, status: str, **changes: Any) -> bool:
        """Move the stored row from ``order.status`` to ``status`` only if nobody moved it first."""
        if status not in TRANSITIONS.get(order.status, set()):
            raise InvalidTransition(f"order {order.id} cannot move from {order.status} to {status}")
        updated = await Order.filter(id=order.id, status=order.status).update(status=status, **changes)
        if not updated:
            return False
        logger.info(f"Order {order.id}: {order.status} -> {status}")
        order.status = status
        for name, value in changes.items():
            setattr(order, name, value)
        return True

    async def transition(self, order: Order, status: str) -> Order:
        if not await self._claim(order, status):
            await order.refresh_from_db()
            raise InvalidTransition(f"order {order.id} is already {order.status}")
        return order

    async def create_checkout(
        self,
        package_id: int,
        customer_name: str,
        email: str,
        callback_url: str,
        redirect_url: str,
        mobile: Optional[str] = None,
    ) -> Order:
        package = await CoinPackage.get_or_none(id=package_id, is_active=True)
        if package is None:
            raise LookupError(f"package {package_id} not found")

        order = await Order.create(
            customer_name=customer_name,
            email=email.strip().lower(),
            mobile=mobile or None,
            package=package,
            coins=package.total_coins,
            amount=package.price,
            access_token=secrets.token_urlsafe(24),
        )

        try:
            bill = await self.billplz.create_bill(
                description=f"{package.total_coins:,} AECOIN - {package.name}",
                amount=package.price,
                name=customer_name,
                email=email,
                mobile=mobile,
                callback_url=callback_url,
                redirect_url=redirect_url,
                reference_1_label="Order ID",
                reference_1=str(order.id),
            )
        except Exception:
            await self.transition(order, OrderStatus.FAILED)
            raise

        order.bill_id = str(bill["id"])
        order.bill_url = str(bill["url"])
        await order.save(update_fields=["bill_id", "bill_url"])
        return order

    async def _order_for_bill(self, bill_id: str) -> Order:
        order = await Order.get_or_none(bill_id=bill_id)
        if order is None:
            raise LookupError(f"no order for bill {bill_id}")
        return order

    async def handle_callback(self, fields: Mapping[str, Any]) -> Order:
        """Apply a signature-checked Billplz callback to its order."""
        order = await self._order_for_bill(str(fields.get("id") or ""))

        if _is_true(fields.get("paid")):
            return await self.confirm_payment(order, paid_at=_parse_paid_at(fields.get("paid_at")))

        state = str(fields.get("state") or "").strip().lower()
        if state == "deleted" and order.status == OrderStatus.PENDING:
            await self.transition(order, OrderStatus.FAILED)
        return order

    async def handle_redirect(self, fields: Mapping[str, Any]) -> Order:
        """Apply a signature-checked browser redirect; the bill is re-read before confirming."""
        order = await self._order_for_bill(str(fields.get("id") or ""))
        if order.status != OrderStatus.PENDING or not _is_true(fields.get("paid")):
            return order

        if not await self.billplz.verify_bill_payment(order.bill_id):
            logger.warning(f"Redirect for order {order.id} reported paid but bill {order.bill_id} is not settled")
            return order
        return await self.confirm_payment(order, paid_at=_parse_paid_at(fields.get("paid_at")))

    async def confirm_payment(self, order: Order, paid_at: Optional[datetime] = None) -> Order:
        """Mark the order paid and fulfil it.

        The callback and the browser redirect usually arrive together. Only the
        caller whose pending -> paid update hits the row goes on to allocate
        codes and notify; everyone else gets the order as it now stands.
        """
        if order.status == OrderStatus.PENDING:
            if await self._claim(order, OrderStatus.PAID, paid_at=paid_at or timezone.now()):
                return await self.fulfill(order)
            await order.refresh_from_db()

        if order.status in (OrderStatus.PAID, OrderStatus.FULFILLED):
            return order

        logger.error(f"Payment received for order {order.id} in status {order.status}")
        raise InvalidTransition(f"order {order.id} is {order.status} and cannot be paid")

    async def fulfill(self, order: Order) -> Order:
        if order.status != OrderStatus.PAID:
            raise InvalidTransition(f"order {order.id} is {order.status} and cannot be fulfilled")
        await self.allocate_codes(order)
        self.notifier.schedule(
            OrderNotification(
                username=order.customer_name,
                coins=order.coins,
                payment_method=order.payment_method.upper(),
                amount=order.amount,
                order_id=str(order.id),
                timestamp=order.paid_at or timezone.now(),
            )
        )
        return await self.transition(order, OrderStatus.FULFILLED)

    async def allocate_codes(self, order: Order) -> list[RedemptionCode]:
        existing = await RedemptionCode.filter(order=order).all()
        if existing:
            return existing

        code = generate_code()
        while await RedemptionCode.exists(code=code):
            code = generate_code()
        created = await RedemptionCode.create(code=code, coins=order.coins, order=order)
        logger.info(f"Allocated redemption code for order {order.id} ({order.coins} coins)")
        return [created]

    async def expire_stale_orders(self, ttl_minutes: Optional[int] = None) -> int:
        ttl = self.pending_ttl_minutes if ttl_minutes is None else ttl_minutes
        cutoff = timezone.now() - timedelta(minutes=ttl)
        stale = await Order.filter(status=OrderStatus.PENDING, created_at__lt=cutoff).all()
        expired = 0
        for order in stale:
            # A payment can land between the query and the update; that order stays paid.
            if await self._claim(order, OrderStatus.EXPIRED):
                expired += 1
        if expired:
            logger.info(f"Expired {expired} pending orders older than {ttl} minutes")
        return expired

    async def list_orders(self, email: Optional[str] = None) -> list[Order]:
        query = Order.all()
        if email:
            query = query.filter(email=email.strip().lower())
        return await query.order_by("-created_at")

    async def get_codes(self, order_id: str) -> list[RedemptionCode]:
        order = await Order.get_or_none(id=order_id)
        if order is None:
            raise LookupError(f"order {order_id} not found")
        if order.status != OrderStatus.FULFILLED:
            return []
        return await RedemptionCode.filter(order=order).order_by("id")

"""
Collaborator services used by the return lifecycle.

Refunds, replacement orders and reverse pickups are owned by other services.
The engine only depends on the protocols below; the httpx clients are the
production implementations and tests swap in in-memory fakes.
"""
import httpx
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Protocol

from returns_engine.config import Settings, settings as default_settings
from returns_engine.core.errors import InvalidAmountError
from returns_engine.core.permissions import ActorRole, PermissionChecker

logger = logging.getLogger(__name__)


@dataclass
class RefundReceipt:
    refund_id: str
    status: str = "pending"


@dataclass
class ReplacementReceipt:
    order_id: str
    status: str = "created"
    order_number: Optional[str] = None


@dataclass
class PickupTicket:
    ticket_id: str
    carrier: Optional[str] = None


@dataclass
class ReplacementLine:
    """Line sent to the order service when creating a replacement."""
    order_item_id: str
    product_name: str
    quantity: int
    sku: Optional[str] = None
    product_id: Optional[str] = None


class CollaboratorError(Exception):
    """A collaborator call failed: network error, non-2xx response or an unusable body."""

    def __init__(self, status_code: int, message: str, errors: Dict = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors or {}
        super().__init__(f"Collaborator error ({status_code}): {message}")


class PaymentService(Protocol):
    async def create_refund(
        self,
        order_id: str,
        return_id: str,
        amount: Decimal,
        method: str,
        notes: Optional[str] = None,
    ) -> RefundReceipt: ...


class OrderService(Protocol):
    async def create_replacement_order(
        self,
        original_order_id: str,
        return_id: str,
        items: List[ReplacementLine],
    ) -> ReplacementReceipt: ...


class ShippingService(Protocol):
    async def schedule_pickup(
        self,
        address: Optional[Dict[str, Any]],
        date: datetime,
        carrier: Optional[str] = None,
    ) -> PickupTicket: ...


class RBACService(Protocol):
    async def can_transition(self, actor_role: ActorRole, from_status: str, to_status: str) -> bool: ...


# ==================== HTTP CLIENTS ====================

class _HttpCollaborator:
    """Shared request handling for JSON collaborator APIs."""

    service_name = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(method.upper(), url, json=data)
        except httpx.HTTPError as e:
            logger.error(f"{self.service_name} unreachable: {e}")
            raise CollaboratorError(status_code=503, message=f"{self.service_name} unreachable: {e}")

        if response.status_code >= 400:
            logger.error(f"{self.service_name} API error: {response.status_code} - {response.text}")
            try:
                error_data = response.json() if response.text else {}
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            raise CollaboratorError(
                status_code=response.status_code,
                message=error_data.get("message", response.text),
                errors=error_data.get("errors", {}),
            )

        try:
            payload = response.json() if response.text else {}
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.error(f"{self.service_name} returned a non-JSON body: {response.text[:200]}")
            raise CollaboratorError(status_code=502, message=f"{self.service_name} returned an unreadable response")
        return payload

    def _require(self, data: Dict, key: str) -> str:
        value = data.get(key)
        if value in (None, ""):
            logger.error(f"{self.service_name} response missing '{key}': {data}")
            raise CollaboratorError(
                status_code=502,
                message=f"{self.service_name} response missing '{key}'",
                errors={"missing": key},
            )
        return str(value)


class HttpPaymentService(_HttpCollaborator):
    service_name = "payment service"

    async def create_refund(
        self,
        order_id: str,
        return_id: str,
        amount: Decimal,
        method: str,
        notes: Optional[str] = None,
    ) -> RefundReceipt:
        try:
            data = await self._request("POST", "/refunds", {
                "order_id": str(order_id),
                "return_id": str(return_id),
                "amount": str(amount),
                "refund_method": method,
                "notes": notes,
            })
        except CollaboratorError as e:
            # The payment service rejects amounts above the refundable balance
            if e.status_code == 422:
                raise InvalidAmountError(e.message, {"amount": str(amount), "errors": e.errors})
            raise
        return RefundReceipt(refund_id=self._require(data, "refund_id"), status=data.get("status", "pending"))


class HttpOrderService(_HttpCollaborator):
    service_name = "order service"

    async def create_replacement_order(
        self,
        original_order_id: str,
        return_id: str,
        items: List[ReplacementLine],
    ) -> ReplacementReceipt:
        data = await self._request("POST", f"/orders/{original_order_id}/replacements", {
            "return_id": str(return_id),
            "items": [
                {
                    "order_item_id": line.order_item_id,
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "sku": line.sku,
                    "quantity": line.quantity,
                }
                for line in items
            ],
        })
        return ReplacementReceipt(
            order_id=self._require(data, "order_id"),
            status=data.get("status", "created"),
            order_number=data.get("order_number"),
        )


class HttpShippingService(_HttpCollaborator):
    service_name = "shipping service"

    async def schedule_pickup(
        self,
        address: Optional[Dict[str, Any]],
        date: datetime,
        carrier: Optional[str] = None,
    ) -> PickupTicket:
        data = await self._request("POST", "/pickups", {
            "address": address,
            "pickup_date": date.isoformat(),
            "carrier": carrier,
        })
        return PickupTicket(ticket_id=self._require(data, "ticket_id"), carrier=data.get("carrier", carrier))


class LocalRBACService:
    """RBAC backed by the static role/permission table."""

    async def can_transition(self, actor_role: ActorRole, from_status: str, to_status: str) -> bool:
        return PermissionChecker(actor_role).can_transition(from_status, to_status)


@dataclass
class Collaborators:
    payment: PaymentService
    orders: OrderService
    rbac: RBACService
    shipping: Optional[ShippingService] = None


def build_collaborators(config: Optional[Settings] = None) -> Collaborators:
    """Create the production collaborator clients from settings."""
    config = config or default_settings
    timeout = config.COLLABORATOR_TIMEOUT_SECONDS
    shipping = None
    if config.SHIPPING_SERVICE_URL:
        shipping = HttpShippingService(config.SHIPPING_SERVICE_URL, timeout=timeout)
    return Collaborators(
        payment=HttpPaymentService(config.PAYMENT_SERVICE_URL, timeout=timeout),
        orders=HttpOrderService(config.ORDER_SERVICE_URL, timeout=timeout),
        rbac=LocalRBACService(),
        shipping=shipping,
    )

"""Payment gateway adapter: MD5-signed order query and notification signatures."""
import hashlib
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx
import structlog

from creditflow.config import settings
from creditflow.errors import TransportError

logger = structlog.get_logger(__name__)

SIGNATURE_EXCLUDED_KEYS = frozenset({"sign", "sign_type"})


@dataclass(frozen=True)
class GatewayVerification:
    """Gateway's answer about one order."""

    confirmed: bool
    trade_no: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """External payment gateway."""

    async def verify_payment(self, order_no: str) -> GatewayVerification:
        """Ask the gateway whether order_no is paid.

        Raises:
            TransportError: When the gateway cannot be reached
        """
        ...


def sign_params(params: Mapping[str, Any], key: str) -> str:
    """
    Compute the gateway signature of a parameter set.

    Parameters are sorted by name and joined as ``k=v&k2=v2``, skipping
    ``sign``, ``sign_type`` and empty values; the merchant key is appended
    and the result hashed with MD5 (lower-case hex).

    Args:
        params: Request or notification parameters
        key: Merchant key

    Returns:
        Signature string
    """
    items = sorted(
        (k, str(v)) for k, v in params.items() if k not in SIGNATURE_EXCLUDED_KEYS and v is not None and str(v) != ""
    )
    payload = "&".join(f"{k}={v}" for k, v in items) + key
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify_signature(params: Mapping[str, Any], key: str) -> bool:
    """Whether params carry a valid ``sign`` for key."""
    received = str(params.get("sign") or "").lower()
    if not received or not key:
        return False
    return received == sign_params(params, key)


def is_trade_success(params: Mapping[str, Any]) -> bool:
    """Whether a notification or query answer reports the trade as paid."""
    return params.get("trade_status") == "TRADE_SUCCESS" or str(params.get("status")) == "1"


class HttpPaymentGateway:
    """Order-query client for an epay-style gateway (``/api.php?act=order``)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        merchant_id: Optional[str] = None,
        merchant_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize gateway adapter from settings, with optional overrides."""
        self.base_url = (base_url or settings.payment_gateway_url).rstrip("/")
        self.merchant_id = merchant_id if merchant_id is not None else settings.payment_merchant_id
        self.merchant_key = merchant_key if merchant_key is not None else settings.payment_merchant_key
        self.timeout = timeout or settings.payment_gateway_timeout_seconds
        self.transport = transport

    async def verify_payment(self, order_no: str) -> GatewayVerification:
        """
        Query the gateway for an order.

        Args:
            order_no: Merchant order number (out_trade_no)

        Returns:
            GatewayVerification; confirmed only for a paid order

        Raises:
            TransportError: On timeouts, connection errors, 5xx or an unreadable body
        """
        params = {"act": "order", "pid": self.merchant_id, "out_trade_no": order_no}
        params["sign"] = sign_params(params, self.merchant_key)
        params["sign_type"] = "MD5"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/api.php", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("payment_gateway_timeout", order_no=order_no)
            raise TransportError(f"Payment gateway timed out for order {order_no}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("payment_gateway_error", order_no=order_no, error=str(e))
            raise TransportError(f"Payment gateway query failed for order {order_no}: {e}") from e

        confirmed = str(data.get("code")) == "1" and is_trade_success(data)
        logger.info("payment_gateway_queried", order_no=order_no, confirmed=confirmed)
        return GatewayVerification(confirmed=confirmed, trade_no=data.get("trade_no"), raw=data)

"""Dataclasses representing stored limit order records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

E18 = 10 ** 18
BPS_DENOMINATOR = 10_000


class OrderStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class OrderType(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(slots=True)
class Order:
    id: str
    trader: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out_min: int
    limit_price_e18: int
    slippage_bps: int
    deadline: int
    nonce: int
    signature: str
    order_type: OrderType = OrderType.BUY
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pool_address: Optional[str] = None
    last_error: Optional[str] = None
    # display only, never used for matching
    limit_price_reference: str = "0"
    limit_price_usd: str = "0"

    def validate(self) -> None:
        """Raise ValueError if the order's economic terms are inconsistent."""
        for name in ("amount_in", "amount_out_min", "limit_price_e18", "deadline", "nonce"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        if not 0 <= self.slippage_bps <= BPS_DENOMINATOR:
            raise ValueError(f"slippage_bps must be within 0-{BPS_DENOMINATOR}, got {self.slippage_bps}")
        if not self.trader or not self.token_in or not self.token_out or not self.signature:
            raise ValueError("trader, token_in, token_out and signature are required")
        if self.amount_out_min > self.max_amount_out_min():
            raise ValueError(
                f"amount_out_min {self.amount_out_min} exceeds output at limit price after slippage "
                f"({self.max_amount_out_min()})"
            )

    def max_amount_out_min(self) -> int:
        expected_out = self.amount_in * self.limit_price_e18 // E18
        return expected_out * (BPS_DENOMINATOR - self.slippage_bps) // BPS_DENOMINATOR

    def to_struct(self) -> dict[str, Any]:
        """Arguments for the on-chain execute() order tuple."""
        return {
            "trader": self.trader,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountIn": self.amount_in,
            "amountOutMin": self.amount_out_min,
            "limitPriceE18": self.limit_price_e18,
            "slippageBps": self.slippage_bps,
            "deadline": self.deadline,
            "nonce": self.nonce,
        }

    @classmethod
    def from_legacy(cls, payload: dict[str, Any]) -> "Order":
        """Build an order from the camelCase records of a limit-orders.json document."""
        created_raw = payload.get("createdAt")
        created_at = datetime.now(timezone.utc)
        if created_raw:
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        trader = payload["trader"].lower()
        nonce = int(payload["nonce"])
        return cls(
            id=payload.get("id") or f"{trader}-{nonce}-{int(created_at.timestamp() * 1000)}",
            trader=trader,
            token_in=payload["tokenIn"].lower(),
            token_out=payload["tokenOut"].lower(),
            amount_in=int(payload["amountIn"]),
            amount_out_min=int(payload["amountOutMin"]),
            limit_price_e18=int(payload["limitPriceE18"]),
            slippage_bps=int(payload.get("slippageBps", 0)),
            deadline=int(payload["deadline"]),
            nonce=nonce,
            signature=payload["signature"],
            order_type=OrderType(payload.get("orderType") or "buy"),
            status=OrderStatus(payload.get("status") or "pending"),
            created_at=created_at,
            limit_price_reference=str(payload.get("limitPriceWSOMI") or "0"),
            limit_price_usd=str(payload.get("limitPriceUSD") or "0"),
        )


@dataclass(slots=True)
class NotificationRecord:
    id: int
    wallet_address: str
    order_id: Optional[str]
    message: str
    created_at: datetime

#!/usr/bin/env python3
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

from services.exceptions import OrderStoreError
from services.price_oracle import PriceOracleAdapter
from storage.models import Order
from storage.sqlite_repository import SQLiteOrderStore

logger = logging.getLogger(__name__)


def format_units(value: int, decimals: int = 18) -> str:
    text = format(Decimal(value) / (Decimal(10) ** decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class OrderNotifier:
    """
    Reports executed orders to the trader's notification feed and, when a bot is
    configured, to a Telegram chat. Delivery is best effort: nothing here raises.
    """

    def __init__(
        self,
        store: SQLiteOrderStore,
        *,
        bot: Optional[Bot] = None,
        chat_id: Optional[str] = None,
        oracle: Optional[PriceOracleAdapter] = None,
    ):
        self.store = store
        self.bot = bot
        self.chat_id = chat_id
        self.oracle = oracle

    async def build_message(self, order: Order, tx_hash: Optional[str] = None) -> str:
        side = order.order_type.value
        message = f"Your {side} order for {format_units(order.amount_in)} tokens has been executed successfully!"

        usd_line = await self._limit_price_usd(order)
        if usd_line:
            message += f" {usd_line}"
        if tx_hash:
            message += f" Tx: {tx_hash}"
        return message

    async def _limit_price_usd(self, order: Order) -> Optional[str]:
        if self.oracle is None:
            return None
        try:
            reference_price = Decimal(order.limit_price_reference or "0")
        except InvalidOperation:
            return None
        if reference_price <= 0:
            return None
        usd = await self.oracle.get_reference_usd_price()
        if usd is None:
            return None
        return f"Limit price {reference_price.normalize():f} (~${reference_price * Decimal(str(usd)):.4f})."

    async def notify_executed(self, order: Order, tx_hash: Optional[str] = None) -> None:
        message = await self.build_message(order, tx_hash)
        try:
            await self.store.record_notification(
                wallet_address=order.trader,
                order_id=order.id,
                message=message,
                created_at=datetime.now(timezone.utc),
            )
        except OrderStoreError as exc:
            logger.warning("Could not store notification for order %s: %s", order.id, exc)

        if self.bot is None or not self.chat_id:
            return
        text = (
            f"<b>Limit order executed</b>\n"
            f"Order: <code>{order.id}</code>\n"
            f"Trader: <code>{order.trader}</code>\n"
            f"{message}"
        )
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode='HTML')
        except TelegramError as exc:
            logger.warning("Telegram notification for order %s failed: %s", order.id, exc)


__all__ = ["OrderNotifier", "format_units"]

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Set

import aiohttp
import discord
from dotenv import load_dotenv

from ..utils.constants import MYT, STORE_NAME, Emojis
from ..utils.logger import logger


@dataclass
class OrderNotification:
    username: str
    coins: int
    payment_method: str
    amount: Any
    order_id: str
    timestamp: datetime


def _format_amount(value: Any) -> str:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return "N/A"
    return f"RM{amount:.2f}"


def format_order_message(data: OrderNotification) -> str:
    timestamp = data.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    formatted_time = timestamp.astimezone(MYT).strftime("%d/%m/%Y %H:%M")

    return "\n".join(
        [
            f"{Emojis.DIAMOND} **{STORE_NAME} — PURCHASE LOG**",
            "────────────────────────────",
            f"{Emojis.USER} **User**        {data.username}",
            f"{Emojis.COIN} **Coin**        {data.coins:,}",
            f"{Emojis.CARD} **Payment**     {data.payment_method}",
            f"{Emojis.MONEY} **Amount**      {_format_amount(data.amount)}",
            f"{Emojis.ID} **Order ID**    {data.order_id}",
            f"{Emojis.CLOCK} **Time**        {formatted_time} MYT",
        ]
    )


class OrderNotifier:
    """Posts purchase logs to a Discord webhook without ever failing the caller."""

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: float = 10.0):
        load_dotenv()
        if webhook_url is None:
            webhook_url = os.getenv("DISCORD_WEBHOOK_URL") or ""
        self.webhook_url = webhook_url.strip()
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, data: OrderNotification) -> bool:
        if not self.webhook_url:
            logger.info("DISCORD_WEBHOOK_URL not configured - skipping Discord notification")
            return False

        message = format_order_message(data)
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                webhook = discord.Webhook.from_url(self.webhook_url, session=session)
                await webhook.send(content=message)
        except Exception as exc:
            logger.error(f"Failed to send Discord notification for order {data.order_id}: {exc!r}")
            return False

        logger.info(f"{Emojis.SUCCESS} Discord notification sent for order {data.order_id}")
        return True

    def schedule(self, data: OrderNotification) -> Optional[asyncio.Task]:
        if not self.webhook_url:
            logger.info("DISCORD_WEBHOOK_URL not configured - skipping Discord notification")
            return None

        task = asyncio.create_task(self.notify(data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

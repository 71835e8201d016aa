"""Operator alerts over Telegram.

Execution failures, lost races and refund outcomes go to one operator
chat. With no bot token or chat id configured every notify call is a
logged no-op.
"""

import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from htlc_resolver.models import ExecutionResult, RefundOutcome, RefundResult

logger = logging.getLogger(__name__)


def _short(value: Optional[str], size: int = 10) -> str:
    if not value:
        return "-"
    return value if len(value) <= 2 * size else f"{value[:size]}...{value[-6:]}"


class TelegramNotifier:
    """Sends operator alerts to a single chat."""

    def __init__(self, token: str = "", chat_id: Optional[int] = None, bot: Optional[Bot] = None):
        self.chat_id = chat_id
        self._bot = bot
        if self._bot is None and token:
            self._bot = Bot(token=token)
        if self._bot is None or chat_id is None:
            logger.warning("Telegram operator alerts not configured - notifications disabled")

    @property
    def enabled(self) -> bool:
        return self._bot is not None and self.chat_id is not None

    async def send_message(self, message: str, parse_mode: Optional[str] = "HTML") -> bool:
        """Send a message to the operator chat.

        Returns:
            True if message was sent successfully
        """
        if not self.enabled:
            logger.debug(f"Alert not sent (disabled): {message}")
            return False

        try:
            await self._bot.send_message(chat_id=self.chat_id, text=message, parse_mode=parse_mode)
            return True
        except TelegramForbiddenError:
            logger.warning(f"Bot cannot write to operator chat {self.chat_id}")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending alert: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send alert: {e}")
            return False

    async def notify_execution_failed(self, result: ExecutionResult) -> bool:
        title = "Race lost" if result.race_lost else "Execution failed"
        lines = [
            f"<b>{title}</b>",
            "",
            f"Order: <code>{_short(result.order_hash)}</code>",
            f"Reached: {result.state.value}",
            f"Error: {result.error or 'unknown'}",
        ]
        for chain, txids in result.transactions.items():
            for txid in txids:
                lines.append(f"{chain}: <code>{_short(txid)}</code>")
        return await self.send_message("\n".join(lines))

    async def notify_execution_complete(self, result: ExecutionResult) -> bool:
        message = (
            f"<b>Settled</b>\n\n"
            f"Order: <code>{_short(result.order_hash)}</code>\n"
            f"Profit: {result.actual_profit} wei\n"
            f"Time: {result.execution_time:.0f}s"
        )
        return await self.send_message(message)

    async def notify_refund(self, result: RefundResult) -> bool:
        if result.outcome == RefundOutcome.REFUNDED:
            detail = f"Refund tx: <code>{_short(result.txid)}</code>"
        elif result.outcome == RefundOutcome.ALREADY_CLAIMED:
            detail = f"Spent by: <code>{_short(result.spending_txid)}</code>"
            if result.revealed_secret is not None:
                detail += "\nSecret recovered, source claim queued"
        else:
            detail = f"Error: {result.error or 'unknown'}"

        message = (
            f"<b>Refund {result.outcome.value.replace('_', ' ')}</b>\n\n"
            f"Order: <code>{_short(result.order_hash)}</code>\n"
            f"{detail}"
        )
        return await self.send_message(message)

    async def close(self) -> None:
        if self._bot is not None:
            await self._bot.session.close()

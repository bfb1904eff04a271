"""
Admin notifications for the escrow service.

Sends HTML messages to the configured Telegram admin chat whenever a
transaction needs human attention. Delivery is best effort: failures are
logged and never affect transaction state.
"""

import html
import logging
from typing import Dict, Optional

from telegram import Bot
from telegram.error import TelegramError

from escrow_models import AIStatus, EscrowTransaction, RiskTier
from utils import format_currency, format_datetime

logger = logging.getLogger(__name__)

RISK_TIER_ICONS = {
    RiskTier.LOW: "🟢",
    RiskTier.MEDIUM: "🟡",
    RiskTier.HIGH: "🔴",
}


class EscrowNotifier:
    """
    Telegram notifier for escrow events.

    Attributes:
        bot: Telegram bot, or None when notifications are disabled
        admin_chat_id: Chat receiving the notifications
        currency: Currency code used to format amounts
    """

    def __init__(
        self,
        bot: Optional[Bot] = None,
        admin_chat_id: Optional[str] = None,
        currency: str = 'IDR'
    ):
        self.bot = bot
        self.admin_chat_id = admin_chat_id
        self.currency = currency

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.admin_chat_id)

    async def start(self) -> None:
        """Initialize the bot connection."""
        if not self.enabled:
            logger.warning("Telegram bot not configured, admin notifications disabled")
            return

        try:
            await self.bot.initialize()
            logger.info(f"Telegram bot initialized: @{self.bot.username}")
        except TelegramError as e:
            logger.error(f"Failed to initialize Telegram bot: {e}")

    async def stop(self) -> None:
        if self.enabled:
            await self.bot.shutdown()

    async def _send(self, text: str) -> bool:
        """
        Send a message to the admin chat.

        Returns:
            True if the message was delivered, False otherwise
        """
        if not self.enabled:
            logger.warning("Telegram bot not configured, skipping notification")
            return False

        try:
            await self.bot.send_message(
                chat_id=self.admin_chat_id,
                text=text,
                parse_mode='HTML'
            )
            return True
        except TelegramError as e:
            logger.error(f"Failed to send admin notification: {e}")
        except Exception as e:
            logger.error(f"Unexpected error sending admin notification: {e}")
        return False

    def _summary(self, transaction: EscrowTransaction) -> str:
        return (
            f"Transaction ID: <code>{transaction.id}</code>\n"
            f"Amount: {format_currency(transaction.amount, self.currency)}\n"
            f"Buyer: <code>{transaction.buyer_id}</code> | "
            f"Seller: <code>{transaction.seller_id}</code>\n"
            f"Product: <code>{transaction.product_id}</code>"
        )

    # ==================== EVENTS ====================

    async def notify_created(self, transaction: EscrowTransaction) -> bool:
        message = (
            f"🆕 <b>New Escrow Transaction</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"Risk assessment in progress."
        )
        return await self._send(message)

    async def notify_assessed(
        self,
        transaction: EscrowTransaction,
        risk_tier: Optional[RiskTier] = None
    ) -> bool:
        """Report an assessment, but only when it asks for human attention."""
        if transaction.ai_status not in (AIStatus.FLAGGED, AIStatus.MANUAL_REVIEW):
            logger.debug(f"Assessment of {transaction.id} needs no attention, not notifying")
            return False

        decision = transaction.ai_decision
        reasons = "\n".join(f"• {html.escape(r)}" for r in decision.reasons) if decision else ""
        icon = RISK_TIER_ICONS.get(risk_tier, "⚪")

        message = (
            f"⚠️ <b>Escrow Needs Review</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"{icon} Risk score: <b>{transaction.risk_score}</b>"
            f"{f' ({risk_tier.value})' if risk_tier else ''}\n"
            f"AI status: {transaction.ai_status.value}\n"
        )
        if decision:
            message += (
                f"Recommendation: {decision.recommendation.value} "
                f"({decision.confidence}% confidence)\n\n"
                f"{reasons}"
            )
        return await self._send(message)

    async def notify_admin_decision(self, transaction: EscrowTransaction) -> bool:
        note = html.escape(transaction.admin_note) if transaction.admin_note else "-"
        message = (
            f"🛡️ <b>Admin Decision Recorded</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"Status: <b>{transaction.status.value}</b>\n"
            f"AI status: {transaction.ai_status.value}\n"
            f"By: <code>{transaction.approved_by}</code> at {format_datetime(transaction.approved_at)}\n"
            f"Note: {note}"
        )
        return await self._send(message)

    async def notify_completed(self, transaction: EscrowTransaction) -> bool:
        message = (
            f"✅ <b>Escrow Completed</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"Completed at: {format_datetime(transaction.completed_at)}\n"
            f"Funds can be released to the seller."
        )
        return await self._send(message)

    async def notify_disputed(self, transaction: EscrowTransaction) -> bool:
        side = "buyer" if transaction.disputed_by == transaction.buyer_id else "seller"
        message = (
            f"🚨 <b>Dispute Opened</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"Raised by the {side} at {format_datetime(transaction.disputed_at)}\n"
            f"Reason: {html.escape(transaction.dispute_reason or '')}"
        )
        return await self._send(message)

    async def notify_fallback(self, transaction: EscrowTransaction, reason: str) -> bool:
        message = (
            f"🔧 <b>Risk Assessment Failed</b>\n\n"
            f"{self._summary(transaction)}\n\n"
            f"{html.escape(reason)}\n"
            f"The transaction was moved to manual review."
        )
        return await self._send(message)

    async def notify_review_queue(self, queue: Dict[str, int]) -> bool:
        if not any(queue.values()):
            logger.info("Review queue is empty, no report sent")
            return False

        lines = "\n".join(
            f"• {name.replace('_', ' ').title()}: <b>{count}</b>"
            for name, count in queue.items()
        )
        message = f"📋 <b>Escrow Review Queue</b>\n\n{lines}"
        return await self._send(message)


def create_notifier(config) -> EscrowNotifier:
    """Create the notifier, with a bot only when Telegram is configured."""
    bot = Bot(token=config.telegram_bot_token) if config.has_telegram_config else None
    return EscrowNotifier(bot, config.admin_chat_id, config.currency)

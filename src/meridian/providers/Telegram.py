import asyncio
import html
import os
from datetime import date

from loguru import logger
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import NetworkError, TelegramError, TimedOut

from meridian.providers.alerts import AlertEvent, AlertSink, AlertType

ALERT_ICONS = {
    AlertType.TRADE_EXECUTED: "✅",
    AlertType.TRADE_FAILED: "❌",
    AlertType.CIRCUIT_BREAKER: "🚨",
    AlertType.RESERVE_TRANSITION: "🪣",
    AlertType.BOT_STARTED: "🟢",
    AlertType.BOT_STOPPED: "🔴",
}


class TelegramNotifier(AlertSink):
    name = "telegram"

    def __init__(self, bot: Bot, chat_id: int, max_daily_messages: int = 50):
        self.bot = bot
        self.chat_id = chat_id
        self.max_daily_messages = max_daily_messages
        self._sent_today = 0
        self._current_day = date.today()

    @classmethod
    def from_token(cls, token: str, chat_id: int, **kwargs) -> "TelegramNotifier":
        return cls(Bot(token=token), chat_id, **kwargs)

    def _reset_if_new_day(self) -> None:
        today = date.today()
        if today != self._current_day:
            self._current_day = today
            self._sent_today = 0

    # =========================
    # Alert sink
    # =========================
    def deliver(self, event: AlertEvent) -> bool:
        return self.send_sync(self._build_alert_text(event))

    def _build_alert_text(self, event: AlertEvent) -> str:
        icon = ALERT_ICONS.get(event.type, "🔔")
        lines = [
            f"{icon} <b>{html.escape(event.title)}</b>",
            "",
            html.escape(event.message),
        ]
        meta = event.json_metadata()
        if meta:
            lines.append("")
            for key, value in sorted(meta.items()):
                lines.append(f"<b>{html.escape(str(key))}:</b> <code>{html.escape(str(value))}</code>")
        lines.append("")
        lines.append(f"<i>{event.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC</i>")
        return "\n".join(lines)

    # =========================
    # Status text
    # =========================
    def build_status_text(self, instance_id: str, state: dict) -> str:
        def fmt(value, decimals=4):
            if value is None:
                return "—"
            return f"{float(value):.{decimals}f}"

        position = state.get("position") or {}
        reserve = state.get("reserve") or {}
        lines = [
            "📊 <b>INSTANCE STATUS</b>",
            "",
            f"<b>Instance:</b> <code>{html.escape(instance_id)}</code>",
            f"<b>Paused:</b> {'⛔ ' + html.escape(state.get('pause_reason') or '') if state.get('paused') else '❌'}",
            f"<b>Last action:</b> {state.get('last_action', '—')}",
            "",
            "────────── <b>MARKET</b> ──────────",
            f"<b>Price:</b> {fmt(state.get('last_price'), 6)}",
            f"<b>Last buy:</b> {fmt(state.get('last_buy_price'), 6)}",
            f"<b>Last sell:</b> {fmt(state.get('last_sell_price'), 6)}",
            "",
            "────────── <b>POSITION</b> ────────",
            f"<b>Status:</b> {position.get('status', 'NO_POSITION')}",
            f"<b>Remaining:</b> {fmt(position.get('remaining_qty'), 8)}",
            f"<b>Reserve bucket:</b> {reserve.get('active', '—')}",
            "",
            "───────── <b>STATS</b> ────────────",
            f"<b>Trades today:</b> {state.get('trades_today', 0)}",
            f"<b>Daily PnL:</b> {fmt(state.get('daily_realized_pnl'))}",
            f"<b>Total PnL:</b> {fmt(state.get('total_realized_pnl'))}",
            f"<b>Failures:</b> {state.get('consecutive_failures', 0)}",
        ]
        return "\n".join(lines)

    # =========================
    # Sending
    # =========================
    def send_sync(self, text: str, silent: bool = False) -> bool:
        if os.getenv("TELEGRAM_DEV_MODE") == "true":
            return False

        self._reset_if_new_day()
        if self._sent_today >= self.max_daily_messages:
            logger.warning("TELEGRAM | local daily limit reached, skipping send")
            return False

        async def _send_message():
            return await self.bot.send_message(
                chat_id=self.chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                disable_web_page_preview=True,
                disable_notification=silent,
            )

        try:
            asyncio.run(_send_message())
        except (TimedOut, NetworkError) as e:
            logger.warning(f"TELEGRAM | network error: {e}")
            return False
        except TelegramError as e:
            logger.warning(f"TELEGRAM | failed: {e}")
            return False

        self._sent_today += 1
        logger.info(f"TELEGRAM | sent ({self._sent_today}/{self.max_daily_messages})")
        return True

    async def send_file(self, file_path: str, caption: str = ""):
        with open(file_path, "rb") as f:
            await self.bot.send_document(
                chat_id=self.chat_id,
                document=f,
                caption=caption,
            )

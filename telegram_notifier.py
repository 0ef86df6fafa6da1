"""
Telegram Notifier
Posts pool alerts and bot status messages to a Telegram channel.

Delivery failures are reported as False, never raised: the polling loop
decides what a failed send means for deduplication.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from telegram import Bot, LinkPreviewOptions
from telegram.error import TelegramError
from telegram.helpers import escape_markdown

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT_SECONDS = 10


def _md(value) -> str:
    return escape_markdown(str(value), version=1)


class TelegramNotifier:
    """
    Thin wrapper over telegram.Bot bound to one channel.

    Disabled (every send returns False) when token or channel is missing.
    """

    def __init__(self, bot_token: str, channel: str, bot: Bot = None,
                 send_timeout_seconds: float = 15):
        self.bot_token = bot_token
        self.channel = channel
        self.send_timeout_seconds = send_timeout_seconds
        self.enabled = bool(bot_token and channel)
        self.sent_count = 0
        self.failed_count = 0

        if bot is not None:
            self.bot = bot
        elif self.enabled:
            self.bot = Bot(token=self.bot_token)
        else:
            self.bot = None
            logger.warning("⚠️  No Telegram token/channel configured, running in monitoring-only mode")

    async def send_message_async(self, text: str) -> bool:
        """Send Markdown text to the channel. True on delivery."""
        if not self.enabled:
            return False

        try:
            await asyncio.wait_for(
                self.bot.send_message(
                    chat_id=self.channel,
                    text=text,
                    parse_mode='Markdown',
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                ),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.failed_count += 1
            logger.error(f"❌ Telegram send timed out after {self.send_timeout_seconds}s")
            return False
        except TelegramError as e:
            self.failed_count += 1
            logger.error(f"❌ Telegram send error: {e}")
            return False

        self.sent_count += 1
        return True

    def format_pool_alert(self, pool: Dict, profile: Dict, extras: Dict = None) -> str:
        """Plain alert text for a pool that passed every filter."""
        extras = extras or {}
        title = profile.get('alert_title') or 'NEW POOL DETECTED'
        address = pool.get('pool_address')
        token = pool.get('base_token_address')

        lines = [
            f"🌊 *{_md(title)}* 🌊",
            "",
            f"🎯 *Pool:* {_md(pool.get('pool_name') or pool.get('symbol'))}",
            f"⏰ *Age:* {_md((pool.get('age') or {}).get('age_string', 'Unknown'))}",
            f"💰 *Price:* ${pool.get('price_usd') or 0:.8f}",
            f"📊 *FDV:* ${pool.get('fdv_usd') or 0:,.0f}",
        ]
        if pool.get('market_cap_usd'):
            lines.append(f"💎 *Market Cap:* ${pool['market_cap_usd']:,.0f}")
        lines += [
            f"💧 *Liquidity:* ${pool.get('liquidity_usd') or 0:,.0f}",
            f"📈 *24h Volume:* ${pool.get('volume_24h') or 0:,.0f}",
            f"📊 *24h Change:* {pool.get('price_change_24h') or 0:.2f}%",
            f"📱 *24h:* {pool.get('buys_24h', 0)} buys / {pool.get('sells_24h', 0)} sells",
        ]

        safety = extras.get('safety')
        if safety and safety.get('score') is not None:
            lines.append(f"🛡️ *RugCheck:* {safety['score']}/1000")

        venues = self._venues(extras.get('dex_presence'))
        if venues:
            lines.append(f"🏦 *Venues:* {_md(', '.join(venues))}")

        lines += [
            "",
            f"🔗 *Token:* `{token}`",
            f"🔗 *Pool Address:* `{address}`",
            "",
            f"📊 DexScreener: https://dexscreener.com/solana/{token}",
            f"📈 GeckoTerminal: https://www.geckoterminal.com/solana/pools/{address}",
        ]

        tags = profile.get('hashtags') or []
        if tags:
            lines += ["", ' '.join(f"#{_md(tag)}" for tag in tags)]

        return '\n'.join(lines)

    @staticmethod
    def _venues(presence: Optional[Dict]) -> List[str]:
        if not presence:
            return []
        return sorted(name for name, present in presence.items() if present)

    async def send_pool_alert(self, pool: Dict, profile: Dict, extras: Dict = None) -> bool:
        sent = await self.send_message_async(self.format_pool_alert(pool, profile, extras))
        if sent:
            logger.info(f"✅ Sent alert for {pool.get('pool_name') or pool.get('symbol')}")
        return sent

    async def send_startup_message(self, profile: Dict, filter_lines: List[str]) -> bool:
        """Announce the bot in its channel. Bounded by a 10s timeout."""
        if not self.enabled:
            return False

        checks = '\n'.join(f"• {_md(line)}" for line in filter_lines) or '• none'
        text = (
            f"🤖 *{_md(profile.get('display_name', profile.get('name', 'Pool Signal Bot')))} Started!*\n\n"
            f"📡 *Source:* {_md(profile.get('source'))}\n"
            f"*Filters:*\n{checks}\n\n"
            f"🔒 One signal per {_md(profile.get('dedup_key'))} address"
        )
        try:
            sent = await asyncio.wait_for(self.send_message_async(text), timeout=STARTUP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("❌ Startup message timed out. Check your connection and bot token.")
            return False

        if sent:
            logger.info("✅ Successfully connected to channel")
        else:
            logger.warning("⚠️  Bot will continue running without channel notifications...")
        return sent

    def get_stats(self) -> Dict:
        return {
            'enabled': self.enabled,
            'channel': self.channel,
            'sent': self.sent_count,
            'failed': self.failed_count,
        }

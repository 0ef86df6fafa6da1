import argparse
import asyncio
import logging
import sys

from colorama import init, Fore, Style
from telegram import Bot
from telegram.error import TelegramError

import config
from dedup import DedupStore, MemoryBackend, RedisBackend
from offchain import CycleScheduler, DexScreenerAPI, GeckoTerminalAPI, PoolFilter
from pool_monitor import PoolMonitor
from security_audit import RugCheckAPI
from telegram_notifier import TelegramNotifier

init(autoreset=True)

logger = logging.getLogger("main")


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # aiohttp / telegram / httpx are chatty at INFO
    for noisy in ("httpx", "telegram", "aiohttp"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_store(profile, memory=False):
    if memory:
        print(f"{Fore.YELLOW}⚠️  In-memory dedup store: processed tokens are forgotten on restart")
        backend = MemoryBackend()
    else:
        backend = RedisBackend(config.REDIS_URL, timeout_seconds=config.REDIS_TIMEOUT_SECONDS)
    return DedupStore(
        backend,
        namespace=profile['namespace'],
        lease_seconds=config.CLAIM_LEASE_SECONDS,
        metadata_ttl_seconds=int(config.METADATA_TTL_DAYS * 24 * 60 * 60),
        fail_open=config.DEDUP_FAIL_OPEN,
    )


def build_notifier(profile, monitor_only=False):
    """Returns (notifier, missing env vars). Monitor-only mode needs no Telegram settings."""
    missing = config.validate_environment(profile, require_telegram=not monitor_only)
    if monitor_only:
        print(f"{Fore.YELLOW}⚠️  Monitor-only mode: signals are logged, nothing is sent to Telegram")
        logger.warning("⚠️  Monitor-only mode - Telegram delivery disabled")
        return TelegramNotifier('', ''), missing
    return TelegramNotifier(config.get_bot_token(profile), profile['telegram_channel']), missing


async def shutdown(heartbeat, clients, store):
    heartbeat.cancel()
    await asyncio.gather(heartbeat, return_exceptions=True)
    for client in clients:
        if client:
            await client.close()
    await store.close()


def print_banner(profile, pool_filter, store):
    print(f"\n{Fore.CYAN}{'=' * 50}")
    print(f"{Fore.GREEN}🚀 {profile['display_name']} ({profile['name']})")
    print(f"{Fore.CYAN}📡 Source: {profile['source']} | Network: {profile['network']}")
    if profile.get('dex_ids'):
        print(f"{Fore.CYAN}🏦 DEX ids: {', '.join(profile['dex_ids'])}")
    print(f"{Fore.CYAN}🔒 Dedup: {profile['dedup_key']} address | namespace '{store.namespace}' | "
          f"{'fail-open' if store.fail_open else 'fail-closed'}")
    print(f"{Fore.YELLOW}Filters:")
    for line in pool_filter.describe() or ['none']:
        print(f"{Fore.YELLOW}  • {Fore.WHITE}{line}")
    print(f"{Fore.CYAN}{'=' * 50}{Style.RESET_ALL}\n")


async def run_maintenance(args, store):
    """--stats / --prune / --reset-claims. Returns the process exit code."""
    if not await store.ping():
        print(f"{Fore.RED}❌ Dedup store unreachable at {config.REDIS_URL}")
        return 1

    if args.reset_claims:
        removed = await store.clear_claims()
        print(f"{Fore.GREEN}🔓 Removed {removed} claim locks from '{store.namespace}'")
    if args.prune:
        pruned = await store.prune()
        print(f"{Fore.GREEN}🧹 Pruned {pruned} processed entries with expired metadata")
    if args.stats:
        count = await store.count()
        print(f"{Fore.CYAN}💾 Namespace '{store.namespace}': {count} processed identifiers")
    return 0


async def print_chat_ids(token):
    """List chats that recently messaged the bot (to find TELEGRAM_CHANNEL)."""
    if not token:
        print(f"{Fore.RED}❌ No bot token configured")
        return 1
    try:
        async with Bot(token=token) as bot:
            updates = await bot.get_updates()
    except TelegramError as e:
        print(f"{Fore.RED}❌ Could not fetch updates: {e}")
        return 1

    if not updates:
        print(f"{Fore.YELLOW}No updates. Post a message in the channel (with the bot as admin) and retry.")
        return 0
    seen = set()
    for update in updates:
        chat = update.effective_chat
        if chat and chat.id not in seen:
            seen.add(chat.id)
            print(f"{Fore.GREEN}{chat.id}{Style.RESET_ALL}  {chat.type}  {chat.title or chat.username or ''}")
    return 0


async def main(argv=None):
    parser = argparse.ArgumentParser(description="Solana pool signal bot with cross-process dedup")
    parser.add_argument("--profile", default="meteora_pools", help="Bot profile from bots.yaml")
    parser.add_argument("--namespace", help="Override the dedup namespace of the profile")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--memory-store", action="store_true",
                        help="Use the in-process dedup store instead of Redis")
    parser.add_argument("--monitor-only", action="store_true",
                        help="Run without Telegram: log signals instead of sending them")
    parser.add_argument("--stats", action="store_true", help="Print the processed count and exit")
    parser.add_argument("--prune", action="store_true",
                        help="Drop processed entries whose metadata has expired, then exit")
    parser.add_argument("--reset-claims", action="store_true",
                        help="Delete every claim lock in the namespace, then exit")
    parser.add_argument("--list-profiles", action="store_true", help="List bot profiles and exit")
    parser.add_argument("--chat-ids", action="store_true",
                        help="Print chat ids seen by the bot token and exit")
    args = parser.parse_args(argv)

    setup_logging()

    if args.list_profiles:
        for name, raw in sorted(config.load_bot_profiles().items()):
            print(f"{Fore.CYAN}{name}{Style.RESET_ALL}  {raw.get('display_name', '')} "
                  f"[{raw.get('source', config.DEFAULT_PROFILE['source'])}]")
        return 0

    try:
        profile = config.get_profile(args.profile)
        if args.namespace:
            profile['namespace'] = args.namespace
            config.validate_profile(profile)
    except config.ConfigError as e:
        print(f"{Fore.RED}❌ {e}")
        return 1

    if args.chat_ids:
        return await print_chat_ids(config.get_bot_token(profile))

    store = build_store(profile, memory=args.memory_store)

    if args.stats or args.prune or args.reset_claims:
        try:
            return await run_maintenance(args, store)
        finally:
            await store.close()

    notifier, missing = build_notifier(profile, monitor_only=args.monitor_only)
    if missing:
        print(f"{Fore.RED}❌ Missing required environment variables: {', '.join(missing)}")
        await store.close()
        return 1

    http = profile['http']
    gecko = dexscreener = rugcheck = None
    filters = profile['filters']
    if profile['source'] == 'new_pools':
        gecko = GeckoTerminalAPI({
            'network': profile['network'],
            'timeout_seconds': http['geckoterminal_timeout_seconds'],
            'page_delay_seconds': http['page_delay_seconds'],
        })
    if (profile['source'] == 'boosted' or filters.get('max_oldest_pair_age_hours') is not None
            or filters.get('required_dexes')):
        dexscreener = DexScreenerAPI({'chain': profile['network'], 'timeout_seconds': http['timeout_seconds']})
    if filters.get('max_safety_score') is not None:
        rugcheck = RugCheckAPI({'max_score': filters['max_safety_score'],
                                'timeout_seconds': http['timeout_seconds']})

    pool_filter = PoolFilter(filters, dexscreener=dexscreener, rugcheck=rugcheck)
    monitor = PoolMonitor(profile, store, notifier, pool_filter,
                          geckoterminal=gecko, dexscreener=dexscreener)
    scheduler = CycleScheduler(profile['schedule'], rate_limited=monitor.consume_rate_limit)

    print_banner(profile, pool_filter, store)

    if await store.ping():
        count = await store.count()
        print(f"{Fore.GREEN}✅ Dedup store connected - {count} identifiers already processed")
    else:
        policy = "processing without dedup" if store.fail_open else "holding candidates"
        print(f"{Fore.YELLOW}⚠️  Dedup store unreachable - {policy} until it recovers")

    await notifier.send_startup_message(profile, pool_filter.describe())

    heartbeat = asyncio.create_task(scheduler.heartbeat(), name="heartbeat")
    try:
        await scheduler.run(monitor.run_cycle, max_cycles=1 if args.once else None)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print(f"\n{Fore.YELLOW}Monitoring stopped.")
    finally:
        scheduler.stop()
        await shutdown(heartbeat, (gecko, dexscreener, rugcheck), store)
        logger.info(f"📊 Final stats: {monitor.get_stats()}")
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Monitoring stopped.")


if __name__ == "__main__":
    cli()

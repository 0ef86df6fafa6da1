import copy
import os
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


# Telegram configuration
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
TELEGRAM_CHANNEL = os.getenv("TELEGRAM_CHANNEL", "").strip()

# Dedup store (Redis)
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_TIMEOUT_SECONDS = _env_float("REDIS_TIMEOUT_SECONDS", 5.0)
DEDUP_NAMESPACE = os.getenv("DEDUP_NAMESPACE", "").strip()
CLAIM_LEASE_SECONDS = _env_float("CLAIM_LEASE_SECONDS", 10 * 60)
METADATA_TTL_DAYS = _env_float("METADATA_TTL_DAYS", 30)
# Backend down -> True: proceed (possible duplicate alert), False: skip until next cycle
DEDUP_FAIL_OPEN = _env_bool("DEDUP_FAIL_OPEN", True)

# Optional override for every profile's liquidity floor
MIN_LIQUIDITY = os.getenv("MIN_LIQUIDITY", "").strip()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Defaults every profile in bots.yaml is merged over
DEFAULT_PROFILE = {
    'display_name': 'Pool Signal Bot',
    'source': 'new_pools',          # new_pools (GeckoTerminal) | boosted (DexScreener)
    'network': 'solana',
    'pages': 10,                    # new_pools pages per cycle
    'dex_ids': [],                  # GeckoTerminal dex ids to keep, [] keeps all
    'dedup_key': 'token',           # token | pool
    'telegram_channel': None,       # falls back to TELEGRAM_CHANNEL
    'telegram_token_env': 'TELEGRAM_BOT_TOKEN',
    'alert_title': 'NEW POOL DETECTED',
    'hashtags': [],
    'candidate_delay_seconds': 2.0,
    'filters': {
        'max_age_hours': None,
        'min_liquidity_usd': None,
        'require_positive_price_change': False,
        'max_market_cap_usd': None,
        'max_oldest_pair_age_hours': None,
        'required_dexes': [],
        'max_safety_score': None,
        'terminal_rejections': ['too_old', 'market_cap_too_high', 'old_pairs'],
    },
    'schedule': {
        'cycle_delay_seconds': 30,
        'error_step_seconds': 15,
        'max_wait_seconds': 120,
        'recovery_delay_seconds': 60,
        'rate_limit_recovery_delay_seconds': 180,
        'heartbeat_interval_seconds': 300,
    },
    'http': {
        'page_delay_seconds': 1.0,
        'geckoterminal_timeout_seconds': 15,
        'timeout_seconds': 10,
    },
}

VALID_SOURCES = ('new_pools', 'boosted')
VALID_DEDUP_KEYS = ('token', 'pool')

BOTS_CONFIG_PATH = Path(os.getenv("BOTS_CONFIG_PATH", Path(__file__).parent / "bots.yaml"))


class ConfigError(ValueError):
    """Invalid bot profile or environment."""


def _merge(base, override):
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_bot_profiles(path=None):
    """Load raw bot profiles from bots.yaml"""
    path = Path(path) if path else BOTS_CONFIG_PATH
    if path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            return (yaml.safe_load(f) or {}).get('bots', {})
    return {}


def get_profile(name, path=None):
    """
    Resolve one bot profile: defaults <- bots.yaml entry <- environment.
    """
    profiles = load_bot_profiles(path)
    if name not in profiles:
        available = ', '.join(sorted(profiles)) or 'none'
        raise ConfigError(f"Unknown bot profile '{name}' (available: {available})")

    profile = _merge(copy.deepcopy(DEFAULT_PROFILE), profiles[name])
    profile['name'] = name
    profile.setdefault('namespace', name)
    if DEDUP_NAMESPACE:
        profile['namespace'] = DEDUP_NAMESPACE
    if not profile.get('telegram_channel'):
        profile['telegram_channel'] = TELEGRAM_CHANNEL
    if MIN_LIQUIDITY:
        profile['filters']['min_liquidity_usd'] = float(MIN_LIQUIDITY)

    validate_profile(profile)
    return profile


def validate_profile(profile):
    if profile.get('source') not in VALID_SOURCES:
        raise ConfigError(f"source must be one of {VALID_SOURCES}, got {profile.get('source')!r}")
    if profile.get('dedup_key') not in VALID_DEDUP_KEYS:
        raise ConfigError(f"dedup_key must be one of {VALID_DEDUP_KEYS}, got {profile.get('dedup_key')!r}")
    if profile['source'] == 'boosted' and profile['dedup_key'] != 'token':
        raise ConfigError("boosted source only yields tokens; dedup_key must be 'token'")
    if not isinstance(profile.get('pages'), int) or profile['pages'] < 1:
        raise ConfigError("pages must be a positive integer")
    namespace = profile.get('namespace') or ''
    if not namespace or ':' in namespace or any(ch.isspace() for ch in namespace):
        raise ConfigError(f"Invalid dedup namespace: {namespace!r}")


def get_bot_token(profile):
    return os.getenv(profile.get('telegram_token_env') or 'TELEGRAM_BOT_TOKEN', '').strip()


def validate_environment(profile, require_telegram=True):
    """
    Return the list of missing required environment variables (empty when OK).
    """
    missing = []
    if require_telegram:
        token_env = profile.get('telegram_token_env') or 'TELEGRAM_BOT_TOKEN'
        if not get_bot_token(profile):
            missing.append(token_env)
        if not profile.get('telegram_channel'):
            missing.append('TELEGRAM_CHANNEL')
    return missing

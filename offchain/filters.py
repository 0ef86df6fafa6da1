"""
POOL FILTERS

Independent boolean checks applied to a normalized pool, cheapest first.
Evaluation stops at the first failing check.

Order:
  1. max_age_hours                 (local)
  2. min_liquidity_usd             (local)
  3. require_positive_price_change (local)
  4. max_market_cap_usd            (local, FDV)
  5. max_oldest_pair_age_hours     (DexScreener token pairs)
  6. required_dexes                (DexScreener token pairs)
  7. max_safety_score              (RugCheck)

A check set to None in the profile is skipped.

Each rejection reason is either TERMINAL (mark processed, never look at the
token again) or RETRYABLE (release only, re-evaluate next cycle). Which is
which is profile policy: `terminal_rejections`.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Rejection reasons
TOO_OLD = 'too_old'
LOW_LIQUIDITY = 'low_liquidity'
NEGATIVE_PRICE_CHANGE = 'negative_price_change'
MARKET_CAP_TOO_HIGH = 'market_cap_too_high'
OLD_PAIRS = 'old_pairs'
MISSING_DEX = 'missing_dex'
UNSAFE = 'unsafe'
SAFETY_UNAVAILABLE = 'safety_unavailable'

DEFAULT_TERMINAL_REJECTIONS = (TOO_OLD, MARKET_CAP_TOO_HIGH, OLD_PAIRS)


@dataclass
class FilterOutcome:
    passed: bool
    reason: Optional[str] = None
    terminal: bool = False
    detail: str = ""
    values: Dict = field(default_factory=dict)
    # Data gathered along the way, reused by the alert (pairs, dex presence, safety)
    extras: Dict = field(default_factory=dict)


class PoolFilter:
    """
    Filter chain for one bot profile.

    Remote checks use the injected DexScreener / RugCheck clients and only
    run when the profile enables them.
    """

    def __init__(self, config: Dict = None, dexscreener=None, rugcheck=None):
        self.config = config or {}
        self.dexscreener = dexscreener
        self.rugcheck = rugcheck

        self.max_age_hours = self.config.get('max_age_hours')
        self.min_liquidity_usd = self.config.get('min_liquidity_usd')
        self.require_positive_price_change = self.config.get('require_positive_price_change', False)
        self.max_market_cap_usd = self.config.get('max_market_cap_usd')
        self.max_oldest_pair_age_hours = self.config.get('max_oldest_pair_age_hours')
        self.required_dexes: List[str] = list(self.config.get('required_dexes') or [])
        self.max_safety_score = self.config.get('max_safety_score')
        self.terminal_rejections = set(
            self.config.get('terminal_rejections', DEFAULT_TERMINAL_REJECTIONS)
        )

        if (self.max_oldest_pair_age_hours is not None or self.required_dexes) and dexscreener is None:
            raise ValueError("Pair-based filters need a DexScreener client")
        if self.max_safety_score is not None and rugcheck is None:
            raise ValueError("Safety filter needs a RugCheck client")

        self.stats = {'total_evaluated': 0, 'passed': 0, 'rejected': {}}

    def _reject(self, reason: str, detail: str, values: Dict, extras: Dict) -> FilterOutcome:
        self.stats['rejected'][reason] = self.stats['rejected'].get(reason, 0) + 1
        return FilterOutcome(
            passed=False,
            reason=reason,
            terminal=reason in self.terminal_rejections,
            detail=detail,
            values=values,
            extras=extras,
        )

    def check_local(self, pool: Dict) -> Optional[FilterOutcome]:
        """Checks that need no network. Returns the rejection, or None if all pass."""
        age = pool.get('age') or {}
        age_hours = age.get('age_hours', float('inf'))
        liquidity = pool.get('liquidity_usd') or 0
        price_change = pool.get('price_change_24h') or 0
        fdv = pool.get('fdv_usd') or 0

        if self.max_age_hours is not None and age_hours > self.max_age_hours:
            return self._reject(TOO_OLD, f"age {age.get('age_string', '?')} > {self.max_age_hours}h",
                                {'age': age.get('age_string')}, {})

        if self.min_liquidity_usd is not None and liquidity < self.min_liquidity_usd:
            return self._reject(LOW_LIQUIDITY, f"liquidity ${liquidity:,.0f} < ${self.min_liquidity_usd:,.0f}",
                                {'liquidity_usd': liquidity}, {})

        if self.require_positive_price_change and price_change <= 0:
            return self._reject(NEGATIVE_PRICE_CHANGE, f"24h change {price_change:.2f}%",
                                {'price_change_24h': price_change}, {})

        if self.max_market_cap_usd is not None and fdv > self.max_market_cap_usd:
            return self._reject(MARKET_CAP_TOO_HIGH, f"FDV ${fdv:,.0f} > ${self.max_market_cap_usd:,.0f}",
                                {'fdv_usd': fdv}, {})

        return None

    async def evaluate(self, pool: Dict) -> FilterOutcome:
        """Run the whole chain for one normalized pool."""
        self.stats['total_evaluated'] += 1

        rejection = self.check_local(pool)
        if rejection:
            return rejection

        token = pool.get('base_token_address')
        extras: Dict = {}
        values = {
            'age': (pool.get('age') or {}).get('age_string'),
            'liquidity_usd': pool.get('liquidity_usd'),
            'price_change_24h': pool.get('price_change_24h'),
            'fdv_usd': pool.get('fdv_usd'),
        }

        if self.max_oldest_pair_age_hours is not None or self.required_dexes:
            pairs = await self.dexscreener.fetch_token_pairs(token) if token else []
            extras['pairs'] = pairs

            if self.max_oldest_pair_age_hours is not None:
                oldest = self.dexscreener.oldest_pair_age_hours(pairs)
                values['oldest_pair_age_hours'] = oldest
                if oldest is not None and oldest > self.max_oldest_pair_age_hours:
                    return self._reject(
                        OLD_PAIRS, f"oldest pair {oldest:.2f}h > {self.max_oldest_pair_age_hours}h",
                        values, extras
                    )

            if self.required_dexes:
                presence = self.dexscreener.dex_presence(pairs)
                extras['dex_presence'] = presence
                missing = [dex for dex in self.required_dexes if not presence.get(dex)]
                if missing:
                    values['missing_dexes'] = ','.join(missing)
                    return self._reject(MISSING_DEX, f"not on {', '.join(missing)}", values, extras)

        if self.max_safety_score is not None:
            safety = await self.rugcheck.fetch_safety(token, max_score=self.max_safety_score) \
                if token else {'score': None, 'is_safe': False}
            extras['safety'] = safety
            values['safety_score'] = safety.get('score')
            if safety.get('score') is None:
                return self._reject(SAFETY_UNAVAILABLE, "RugCheck score unavailable", values, extras)
            if not safety.get('is_safe'):
                return self._reject(
                    UNSAFE, f"RugCheck score {safety['score']} > {self.max_safety_score}", values, extras
                )

        self.stats['passed'] += 1
        return FilterOutcome(passed=True, values=values, extras=extras)

    def describe(self) -> List[str]:
        """Human-readable list of active checks, for the startup banner."""
        lines = []
        if self.max_age_hours is not None:
            lines.append(f"Age <= {self.max_age_hours}h")
        if self.min_liquidity_usd is not None:
            lines.append(f"Liquidity >= ${self.min_liquidity_usd:,.0f}")
        if self.require_positive_price_change:
            lines.append("Positive 24h price change")
        if self.max_market_cap_usd is not None:
            lines.append(f"FDV <= ${self.max_market_cap_usd:,.0f}")
        if self.max_oldest_pair_age_hours is not None:
            lines.append(f"No pairs older than {self.max_oldest_pair_age_hours}h")
        if self.required_dexes:
            lines.append(f"Listed on {', '.join(self.required_dexes)}")
        if self.max_safety_score is not None:
            lines.append(f"RugCheck score <= {self.max_safety_score}")
        return lines

    def get_stats(self) -> Dict:
        return {
            'total_evaluated': self.stats['total_evaluated'],
            'passed': self.stats['passed'],
            'rejected': dict(self.stats['rejected']),
        }

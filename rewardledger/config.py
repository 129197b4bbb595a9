# rewardledger/config.py
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).parent / ".env", override=False)


def _truthy(name: str, default: str = "") -> bool:
    v = os.getenv(name, default)
    return v not in ("", "0", "false", "False", "no", "No")


def _decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

IS_PROD = (
    _truthy("RENDER")
    or bool(os.getenv("RENDER_EXTERNAL_URL"))
    or os.getenv("ENV", "").lower() in {"prod", "production"}
    or _truthy("FORCE_CROSS_SITE_COOKIES")
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")

ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN")

# Reverse proxies in front of the app. X-Forwarded-For is ignored when 0;
# otherwise the client is the entry that many hops from the right.
TRUSTED_PROXY_HOPS = int(os.getenv("TRUSTED_PROXY_HOPS", "1" if IS_PROD else "0"))

# Sessions: one JWT format for the operator and for database users.
SESSION_COOKIE = "session"
SESSION_COOKIE_MAX_AGE = 7 * 24 * 60 * 60
SESSION_TTL = timedelta(minutes=int(os.getenv("JWT_EXPIRE_MIN", str(30 * 24 * 60))))
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGORITHM = "HS256"

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
# bcrypt hash wins; the plain password is only for local runs
ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

TOKEN_SYMBOL = os.getenv("TOKEN_SYMBOL", "JCMOVES")
TOKEN_NAME = os.getenv("TOKEN_NAME", "JCMOVES Token")
TOKEN_ADDRESS = os.getenv("TOKEN_ADDRESS", "BHZW4jds7NSe5Fqvw9Z4pvt423EJSx63k8MT11F2moon")

# Used when no price quote has been recorded yet (degraded path).
FALLBACK_TOKEN_PRICE = _decimal("FALLBACK_TOKEN_PRICE", "0.000005034116")


# ---------------------------------------------------------------------------
# Policy groups
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TreasuryPolicy:
    minimum_balance: Decimal = Decimal("1.00")
    warning_threshold: Decimal = Decimal("100.00")
    critical_threshold: Decimal = Decimal("25.00")


@dataclass(frozen=True)
class RewardConfig:
    daily_checkin_tokens: Decimal = Decimal("0.01")
    streak_multiplier: Decimal = Decimal("1.1")
    max_streak_multiplier: Decimal = Decimal("3.0")
    max_checkin_streak: int = 365
    signup_bonus_usd: Decimal = Decimal("5.00")
    referral_bonus_usd: Decimal = Decimal("10.00")
    job_completion_usd: Decimal = Decimal("2.50")
    job_value_bonus_percentage: Decimal = Decimal("0.01")
    performance_multiplier: Decimal = Decimal("1.5")
    booking_reward_percentage: Decimal = Decimal("0.02")


@dataclass(frozen=True)
class MiningConfig:
    tokens_per_second: Decimal = Decimal("0.02")
    tokens_per_cycle: Decimal = Decimal("1728")
    cycle_seconds: int = 24 * 60 * 60
    default_speed: Decimal = Decimal("1.00")
    streak_multiplier: Decimal = Decimal("1.1")
    max_streak_multiplier: Decimal = Decimal("3.0")


@dataclass(frozen=True)
class CashoutPolicy:
    min_tokens: Decimal = Decimal("1")
    max_tokens: Decimal = Decimal("100")


@dataclass(frozen=True)
class AbuseProtection:
    max_claims_per_ip_per_hour: int = 3
    max_claims_per_user_per_day: int = 12
    risk_score_threshold: int = 60


@dataclass(frozen=True)
class FaucetConfig:
    mode: str = "SELF_FUNDED"  # DEMO | SELF_FUNDED
    currencies: Tuple[str, ...] = ("BTC", "ETH", "LTC", "DOGE")
    claim_interval: int = 3600
    require_ad_completion: bool = True
    # smallest units: satoshi, gwei, litoshi, koinu
    self_funded_rewards: Dict[str, Decimal] = field(default_factory=lambda: {
        "BTC": Decimal("100"),
        "ETH": Decimal("2000"),
        "LTC": Decimal("20000"),
        "DOGE": Decimal("2000000"),
    })
    demo_rewards: Dict[str, Decimal] = field(default_factory=lambda: {
        "BTC": Decimal("200"),
        "ETH": Decimal("3000"),
        "LTC": Decimal("30000"),
        "DOGE": Decimal("3000000"),
    })
    usd_per_unit: Dict[str, Decimal] = field(default_factory=lambda: {
        "BTC": Decimal("0.10") / Decimal("200"),
        "ETH": Decimal("0.009") / Decimal("3000"),
        "LTC": Decimal("0.003") / Decimal("30000"),
        "DOGE": Decimal("0.30") / Decimal("3000000"),
    })
    abuse: AbuseProtection = field(default_factory=AbuseProtection)

    def default_reward(self, currency: str) -> Decimal:
        table = self.demo_rewards if self.mode == "DEMO" else self.self_funded_rewards
        return table.get(currency, Decimal("0"))


TREASURY_POLICY = TreasuryPolicy(
    minimum_balance=_decimal("TREASURY_MINIMUM_BALANCE", "1.00"),
    warning_threshold=_decimal("TREASURY_WARNING_THRESHOLD", "100.00"),
    critical_threshold=_decimal("TREASURY_CRITICAL_THRESHOLD", "25.00"),
)
REWARD_CONFIG = RewardConfig(
    daily_checkin_tokens=_decimal("DAILY_CHECKIN_TOKENS", "0.01"),
)
MINING_CONFIG = MiningConfig()
CASHOUT_POLICY = CashoutPolicy()
FAUCET_CONFIG = FaucetConfig(
    mode=os.getenv("FAUCET_MODE", "SELF_FUNDED").upper(),
    require_ad_completion=_truthy("FAUCET_REQUIRE_AD", "1"),
)

# Ad networks: name -> (display name, script url, publisher id env, webhook secret env)
AD_NETWORKS = {
    "bitmedia": ("Bitmedia", "https://js.bitmedia.io/btm.js",
                 "BITMEDIA_PUBLISHER_ID", "BITMEDIA_WEBHOOK_SECRET"),
    "cointraffic": ("Cointraffic", "https://cdn.cointraffic.io/js/cta.js",
                    "COINTRAFFIC_PUBLISHER_ID", "COINTRAFFIC_WEBHOOK_SECRET"),
    "aads": ("A-Ads", "https://cdn.a-ads.com/js/aadf.js",
             "AADS_PUBLISHER_ID", "AADS_WEBHOOK_SECRET"),
}
AD_COMPLETION_TTL_SECONDS = 60 * 60

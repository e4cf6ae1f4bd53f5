"""Django settings for the comic credits service.


This project runs the credit ledger behind a wallet-gated comic reader:
- Sign-In-With-Ethereum challenge/response → session user
- On-chain credit purchases verified against the payment contract → ledger credit
- Paid chapter unlocks → ledger debit + permanent unlock record


Everything chain- or wallet-specific is configured through the environment.
"""

import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DEBUG", "1") in ("1", "true", "True", "yes")
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(",")
CSRF_TRUSTED_ORIGINS = os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if os.getenv("CSRF_TRUSTED_ORIGINS") else []

def env_int(name, default):
    v = os.getenv(name)
    return int(v) if v not in (None, "") else default

#######################
# Chain / payment contract
CHAIN_ID = env_int("CHAIN_ID", 11155111)  # sepolia

def _default_rpc_url():
    if os.getenv("ALCHEMY_API_KEY"):
        return f"https://eth-sepolia.g.alchemy.com/v2/{os.getenv('ALCHEMY_API_KEY')}"
    if os.getenv("INFURA_API_KEY"):
        return f"https://sepolia.infura.io/v3/{os.getenv('INFURA_API_KEY')}"
    return ""

CHAIN_RPC_URL = os.getenv("CHAIN_RPC_URL") or _default_rpc_url()
CHAIN_RPC_TIMEOUT = float(os.getenv("CHAIN_RPC_TIMEOUT", "10"))

PAYMENT_CONTRACT_ADDRESS = os.getenv("PAYMENT_CONTRACT_ADDRESS", "").lower()

# Solidity-style event declaration; `indexed` params live in topics, the rest in data.
PURCHASE_EVENT_SIGNATURE = os.getenv(
    "PURCHASE_EVENT_SIGNATURE",
    "CreditsPurchased(address indexed buyer, uint256 credits, uint256 amountWei)",
)
#######################

#######################
# Sign-In-With-Ethereum
SIWE_STATEMENT = os.getenv("SIWE_STATEMENT", "Sign in to Web3 Comic Platform with your wallet.")
SIWE_NONCE_TTL_MINUTES = env_int("SIWE_NONCE_TTL_MINUTES", 10)
#######################

#######################
# Ledger limits
HISTORY_MAX_LIMIT = env_int("HISTORY_MAX_LIMIT", 100)
HISTORY_DEFAULT_LIMIT = 50
ADMIN_ADJUSTMENT_MAX = env_int("ADMIN_ADJUSTMENT_MAX", 10000)
STATS_CACHE_TTL = env_int("STATS_CACHE_TTL", 300)
#######################


INSTALLED_APPS = [
	"django.contrib.contenttypes",
	"django.contrib.sessions",
	# local apps
	"core",
	"api",
]


MIDDLEWARE = [
	"django.middleware.security.SecurityMiddleware",
	"django.contrib.sessions.middleware.SessionMiddleware",
	"django.middleware.common.CommonMiddleware",
	"django.middleware.csrf.CsrfViewMiddleware",
]


ROOT_URLCONF = "comic_credits.urls"
TEMPLATES = []


WSGI_APPLICATION = "comic_credits.wsgi.application"


DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "comic_credits"),
            "USER": os.getenv("POSTGRES_USER", "comic_credits"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "comic_credits"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    # writers queue on BEGIN IMMEDIATE for up to `timeout` seconds
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
            "OPTIONS": {
                "transaction_mode": "IMMEDIATE",
                "timeout": env_int("SQLITE_BUSY_TIMEOUT", 20),
            },
            # file-backed so threaded tests see real lock waits
            "TEST": {"NAME": os.getenv("SQLITE_TEST_NAME", str(BASE_DIR / "test_db.sqlite3"))},
        }
    }


#######################
# Cache for derived ledger stats (admin summary), shared by all workers
REDIS_URL = os.getenv("REDIS_URL", "")
if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.db.DatabaseCache",
            "LOCATION": "comic_credits_cache",
        }
    }
STATS_CACHE_ALIAS = os.getenv("STATS_CACHE_ALIAS", "default")
#######################


SESSION_ENGINE = "django.contrib.sessions.backends.db"


LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True


DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "core": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "api": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

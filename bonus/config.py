import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Unset means the in-memory store is used (tests, local demos)
DATABASE_URL = os.getenv("DATABASE_URL")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Legacy behaviour let spends drive the balance negative
BONUS_ALLOW_OVERDRAFT = os.getenv("BONUS_ALLOW_OVERDRAFT", "false").lower() == "true"

# Amounts written by the bootstrap step when no settings row exists yet
DEFAULT_BOOKING_REWARD = int(os.getenv("DEFAULT_BOOKING_REWARD", "300"))
DEFAULT_REFERRER_REWARD = int(os.getenv("DEFAULT_REFERRER_REWARD", "2000"))
DEFAULT_REFERRAL_REWARD = int(os.getenv("DEFAULT_REFERRAL_REWARD", "2000"))

CORS_ALLOW_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()
]

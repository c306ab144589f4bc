import os
from decimal import Decimal


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")

AUTH_KEY = os.getenv("AUTH_KEY", "dev-secret-key-12345")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Late-return fee charged per started day past the due date.
PENALTY_DAILY_RATE = Decimal(os.getenv("PENALTY_DAILY_RATE", "1.00"))

# How long a generated penalty stays in force.
PENALTY_DURATION_DAYS = int(os.getenv("PENALTY_DURATION_DAYS", "30"))

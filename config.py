import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

PORT = int(os.getenv("PORT", 8000))
FRONTEND_URL = os.getenv("FRONTEND_URL")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 7))

# Order pricing
SHIPPING_COST = float(os.getenv("SHIPPING_COST", 50))
TAX_RATE = float(os.getenv("TAX_RATE", 0.10))

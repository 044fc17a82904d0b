import os

# ---------- Config ----------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./farmchain.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# extra attempts after a fork is detected on append
APPEND_CONFLICT_RETRIES = int(os.getenv("APPEND_CONFLICT_RETRIES", "1"))

CORS_ALLOW_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
]

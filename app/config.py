import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Local SQLite file when no managed database is configured
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coachflow.db")

# Firebase Configuration
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# Frontend base URL for redirects and email links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "CoachFlow <noreply@coachflow.app>")

# Funnel runtime
# Anonymous flow sessions are abandoned after a week
FUNNEL_SESSION_TTL_HOURS = int(os.getenv("FUNNEL_SESSION_TTL_HOURS", "168"))
# Where a finished funnel sends the user when neither the caller nor the success step says otherwise
DEFAULT_COMPLETION_REDIRECT = os.getenv("DEFAULT_COMPLETION_REDIRECT", "/")

# Rate limiting (Redis)
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
SESSION_CREATE_LIMIT_PER_HOUR = int(os.getenv("SESSION_CREATE_LIMIT_PER_HOUR", "60"))

# CORS - comma separated
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "https://coachflow.app,https://www.coachflow.app,http://localhost:3000",
).split(",")

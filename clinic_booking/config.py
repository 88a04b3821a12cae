"""Configuration for the clinic booking service.

All business rules centralized here - override through environment
variables (or a .env file) without touching code.
"""
import os

from dotenv import load_dotenv

load_dotenv()

CLINIC_NAME = os.getenv("CLINIC_NAME", "Eswari Physiotherapy")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///clinic.db")
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))

# Session tokens
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "30"))

# The one account registered with this phone becomes the administrator
ADMIN_PHONE = os.getenv("ADMIN_PHONE", "+919999999999")

# OTP lifecycle
OTP_LENGTH = 6
MAX_OTP_PER_DAY = int(os.getenv("MAX_OTP_PER_DAY", "5"))
OTP_VALIDITY_MINUTES = int(os.getenv("OTP_VALIDITY_MINUTES", "5"))
OTP_RETENTION_MINUTES = int(os.getenv("OTP_RETENTION_MINUTES", "5"))
OTP_PURGE_INTERVAL_SECONDS = int(os.getenv("OTP_PURGE_INTERVAL_SECONDS", "60"))

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt input limit

# Login throttling (per identifier)
LOGIN_ATTEMPTS_PER_WINDOW = int(os.getenv("LOGIN_ATTEMPTS_PER_WINDOW", "10"))
LOGIN_WINDOW_SECONDS = int(os.getenv("LOGIN_WINDOW_SECONDS", "900"))

# Schedule: date.weekday() numbering, 6 = Sunday
CLOSED_WEEKDAY = int(os.getenv("CLOSED_WEEKDAY", "6"))

# Morning block 10:00-13:00, lunch 13:00-14:00, afternoon block 14:00-17:00
MORNING_SLOTS = [
    "10:00 AM - 10:50 AM",
    "11:00 AM - 11:50 AM",
    "12:00 PM - 12:50 PM",
]
AFTERNOON_SLOTS = [
    "02:00 PM - 02:50 PM",
    "03:00 PM - 03:50 PM",
    "04:00 PM - 04:50 PM",
]
TIME_SLOTS = MORNING_SLOTS + AFTERNOON_SLOTS

# SMS provider (MSG91). Without an auth key, messages are only logged.
MSG91_AUTH_KEY = os.getenv("MSG91_AUTH_KEY")
MSG91_SENDER_ID = os.getenv("MSG91_SENDER_ID", "TXTIND")
MSG91_API_URL = os.getenv("MSG91_API_URL", "https://control.msg91.com/api/v2/sendsms")
SMS_TIMEOUT_SECONDS = int(os.getenv("SMS_TIMEOUT_SECONDS", "10"))
SMS_MAX_RETRIES = int(os.getenv("SMS_MAX_RETRIES", "2"))

# API
API_PORT = int(os.getenv("API_PORT", "5000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

import os

APP_NAME = os.getenv("APP_NAME", "Man and Van")
APP_ENV = os.getenv("APP_ENV", "development")
APP_URL = os.getenv("APP_URL", "http://localhost:8000")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Document store (MongoDB)
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", 3000))

# Relational store (SQLAlchemy)
SQL_DATABASE_URL = os.getenv("SQL_DATABASE_URL", "sqlite:///./manandvan.db")

# Sessions and passwords
SESSION_SECRET = os.getenv("SESSION_SECRET", "van-and-man-secret-key")
SESSION_ALG = "HS256"
SESSION_COOKIE = "mv_session"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", 24 * 60 * 60))
SESSION_CHECK_PERIOD = int(os.getenv("SESSION_CHECK_PERIOD", 24 * 60 * 60))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
RESET_TOKEN_TTL_HOURS = int(os.getenv("RESET_TOKEN_TTL_HOURS", 24))

MIGRATION_SECRET = os.getenv("MIGRATION_SECRET", "default-migration-secret")

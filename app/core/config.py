# app/core/config.py
import os
from decimal import Decimal
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "MedPharm Marketplace")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "medpharm_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "medpharm")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins when set (sqlite for local runs / tests)
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "DATABASE_URL",
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}?charset=utf8mb4",
    )
    SQL_ECHO: bool = _flag("SQL_ECHO")
    DB_AUTO_CREATE: bool = _flag("DB_AUTO_CREATE", "true")

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "2440"))

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ---------- Order pricing ----------
    DELIVERY_FEE: Decimal = Decimal(os.getenv("DELIVERY_FEE", "25") or "0")
    FREE_DELIVERY_THRESHOLD: Decimal = Decimal(
        os.getenv("FREE_DELIVERY_THRESHOLD", "500") or "0")
    TAX_PERCENT: Decimal = Decimal(os.getenv("TAX_PERCENT", "5") or "0")

    # ---------- Credits / returns ----------
    CREDIT_EARN_PERCENT: Decimal = Decimal(
        os.getenv("CREDIT_EARN_PERCENT", "5") or "0")
    RETURN_WINDOW_DAYS: int = int(os.getenv("RETURN_WINDOW_DAYS", "7"))

    # ---------- Prescription workflow ----------
    MAX_PRESCRIPTION_IMAGES: int = int(
        os.getenv("MAX_PRESCRIPTION_IMAGES", "10"))
    REVIEW_BASE_HOURS: float = float(os.getenv("REVIEW_BASE_HOURS", "2"))
    SUSPENDED_BASE_HOURS: float = float(
        os.getenv("SUSPENDED_BASE_HOURS", "4"))


settings = Settings()

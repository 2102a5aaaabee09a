# medledger/core/config.py
import os
from typing import List, Optional
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "MedLedger Billing")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")
    FACILITY_NAME: str = os.getenv("FACILITY_NAME", "City Clinic & Pharmacy")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "medledger")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "medledger")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # Full URL wins over the MYSQL_* pieces (sqlite for local dev / tests)
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None

    DB_RETRY_ATTEMPTS: int = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ---------- Billing ----------
    DEFAULT_DUE_DAYS: int = int(os.getenv("DEFAULT_DUE_DAYS", "7"))
    PURCHASE_DUE_DAYS: int = int(os.getenv("PURCHASE_DUE_DAYS", "30"))
    INVOICE_SEQ_PADDING: int = int(os.getenv("INVOICE_SEQ_PADDING", "5"))
    DEFAULT_COMMISSION_PERCENT: float = float(
        os.getenv("DEFAULT_COMMISSION_PERCENT", "30") or 30.0)

    # Current behaviour removes a prescription once it is fully billed.
    # Set to false to keep it as a Completed record instead.
    PRESCRIPTION_DELETE_ON_CONVERT: bool = _flag(
        "PRESCRIPTION_DELETE_ON_CONVERT", "true")

    # ---------- Inventory ----------
    EXPIRY_ALERT_DAYS: int = int(os.getenv("EXPIRY_ALERT_DAYS", "30"))

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+{self.DB_DRIVER}://{quote_plus(self.MYSQL_USER)}:{quote_plus(self.MYSQL_PASSWORD)}"
            f"@{self.MYSQL_HOST}:{self.MYSQL_PORT}/{self.MYSQL_DB}?charset=utf8mb4")


settings = Settings()

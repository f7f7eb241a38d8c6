import os
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _default_database_url() -> str:
    # Local SQLite file in a `data/` folder adjacent to the package directory.
    pkg_root = Path(__file__).resolve().parents[1]
    data_dir = pkg_root / "data"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return "sqlite:///:memory:"
    return f"sqlite:///{(data_dir / 'steelmelt.db').as_posix()}"


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


class Settings(BaseModel):
    PROJECT_NAME: str = "SteelMelt ERP - Order Fulfillment & Inventory Ledger"
    DATABASE_URL: str = ""
    LOCK_TIMEOUT_SECONDS: int = 30

    # GST: counter-party state is compared against the company's home state
    COMPANY_STATE: str = "Maharashtra"

    # Finished goods are bagged at a fixed weight per bag
    BAG_WEIGHT: Decimal = Decimal("25")

    # Valuation fallbacks when no prior receipt / order rate exists
    DEFAULT_RAW_MATERIAL_RATE: Decimal = Decimal("30.00")
    DEFAULT_FINISHED_GOODS_RATE: Decimal = Decimal("50.00")
    RATE_FALLBACK: str = "default"  # "default" | "reject"

    # When set, melting produces WIP and heat treatment consumes it
    WIP_ITEM_ID: Optional[int] = None

    # Melting may not consume more than the ledger holds unless this is set
    ALLOW_NEGATIVE_STOCK: bool = False

    STOCK_STATEMENT_INCLUDE_ZERO: bool = False

    CORS_ORIGINS: List[str] = []
    LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL") or _default_database_url(),
            LOCK_TIMEOUT_SECONDS=int(os.getenv("LOCK_TIMEOUT_SECONDS", "30")),
            COMPANY_STATE=os.getenv("COMPANY_STATE", "Maharashtra"),
            BAG_WEIGHT=Decimal(os.getenv("BAG_WEIGHT", "25")),
            DEFAULT_RAW_MATERIAL_RATE=Decimal(os.getenv("DEFAULT_RAW_MATERIAL_RATE", "30.00")),
            DEFAULT_FINISHED_GOODS_RATE=Decimal(os.getenv("DEFAULT_FINISHED_GOODS_RATE", "50.00")),
            RATE_FALLBACK=os.getenv("RATE_FALLBACK", "default").strip().lower(),
            WIP_ITEM_ID=_optional_int(os.getenv("WIP_ITEM_ID")),
            ALLOW_NEGATIVE_STOCK=os.getenv("ALLOW_NEGATIVE_STOCK", "false").lower() in ("1", "true", "yes"),
            STOCK_STATEMENT_INCLUDE_ZERO=os.getenv("STOCK_STATEMENT_INCLUDE_ZERO", "false").lower() in ("1", "true", "yes"),
            CORS_ORIGINS=_split_csv(
                os.getenv(
                    "CORS_ORIGINS",
                    "http://127.0.0.1:3000,http://localhost:3000,http://127.0.0.1:5173,http://localhost:5173",
                )
            ),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def rejects_default_rates(self) -> bool:
        return self.RATE_FALLBACK == "reject"

import os
from decimal import Decimal
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _truthy(self, raw: str, *, default: bool) -> bool:
        raw = (raw or "").strip().lower()
        if not raw:
            return default
        return raw in {"1", "true", "yes", "on"}

    def _decimal(self, raw: str, *, default: Decimal) -> Decimal:
        raw = (raw or "").strip()
        if not raw:
            return default
        try:
            value = Decimal(raw)
        except Exception:
            return default
        return value if value > 0 else default

    def _int(self, raw: str, *, default: int, minimum: int = 0) -> int:
        raw = (raw or "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return value if value >= minimum else default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = (
            os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/barledger"
        )
        # Pool sizing is conservative for a single-location bar.
        self.db_pool_min_size = self._int(os.getenv("DB_POOL_MIN_SIZE", ""), default=1)
        self.db_pool_max_size = self._int(os.getenv("DB_POOL_MAX_SIZE", ""), default=10, minimum=1)
        # Milliseconds; 0 disables the server-side limit.
        self.db_statement_timeout_ms = self._int(os.getenv("DB_STATEMENT_TIMEOUT_MS", ""), default=15000)
        # Comma-separated list of allowed CORS origins for the POS/back-office UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Audit events are always logged as JSON; DB persistence can be turned off for local runs.
        self.audit_log_to_db = self._truthy(os.getenv("AUDIT_LOG_TO_DB", ""), default=True)
        # Default pour synthesized the first time an item is sold without an explicit size.
        self.default_peg_ml = self._decimal(os.getenv("DEFAULT_PEG_ML", ""), default=Decimal("60"))
        self.default_bottle_size_ml = self._decimal(os.getenv("DEFAULT_BOTTLE_SIZE_ML", ""), default=Decimal("750"))

settings = Settings()

import os
from decimal import Decimal
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def _truthy(self, name: str, default: bool) -> bool:
        raw = (os.getenv(name) or "").strip().lower()
        if not raw:
            return default
        return raw in {"1", "true", "yes", "y", "on"}

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/tally_dispatch')
        # Comma-separated list of allowed CORS origins for the dispatch/cashier front ends.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Tally: the XML gateway and the ODBC server share host/port.
        self.tally_host = os.getenv("TALLY_HOST", "localhost").strip() or "localhost"
        self.tally_port = self._int("TALLY_PORT", 9000)
        self.tally_dsn = os.getenv("TALLY_DSN", "TallyPrime").strip() or "TallyPrime"
        self.tally_company = os.getenv("TALLY_COMPANY", "").strip()
        self.probe_timeout_seconds = self._int("TALLY_PROBE_TIMEOUT_SECONDS", 5)
        self.fetch_timeout_seconds = self._int("TALLY_FETCH_TIMEOUT_SECONDS", 30)

        self.sync_enabled = self._truthy("SYNC_ENABLED", True)
        self.sync_interval_seconds = self._int("SYNC_INTERVAL_SECONDS", 30)
        self.sync_window_days = self._int("SYNC_WINDOW_DAYS", 30)
        self.sync_max_records = self._int("SYNC_MAX_RECORDS", 1000)
        # "today" keeps the record and stamps the current date; "reject" drops it.
        policy = os.getenv("SYNC_UNPARSABLE_DATE_POLICY", "today").strip().lower()
        self.unparsable_date_policy = policy if policy in {"today", "reject"} else "today"

        self.cash_variance_threshold = Decimal(os.getenv("CASH_VARIANCE_THRESHOLD", "100").strip() or "100")
        self.release_lock_timeout_ms = self._int("RELEASE_LOCK_TIMEOUT_MS", 5000)
        self.otp_expiry_minutes = self._int("OTP_EXPIRY_MINUTES", 10)

    @property
    def tally_xml_url(self) -> str:
        return f"http://{self.tally_host}:{self.tally_port}"


settings = Settings()

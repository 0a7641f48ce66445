"""Engine configuration — platform fee, currencies, payment polling, retention.

Loaded from config/engine_params.json. A few values can be overridden
from the environment (a .env file is honoured) so that deployments can
change the fee or default currency without editing the parameter file:

    BEAUTYBOOK_PLATFORM_FEE_RATE=0.12
    BEAUTYBOOK_DEFAULT_CURRENCY=USD
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = (
    Path(__file__).resolve().parents[2] / "config" / "engine_params.json"
)

_DEFAULTS: dict[str, Any] = {
    "platform_fee_rate": "0.10",
    "default_currency": "GHS",
    "supported_currencies": ["GHS", "USD"],
    "minor_unit": "0.01",
    "platform_account_id": "platform",
    "status_poll_attempts": 3,
    "status_poll_interval_seconds": 0.5,
    "archive_retention_days": 90,
    "list_default_limit": 50,
}


@dataclass(frozen=True)
class EngineConfig:
    """Validated engine parameters."""

    platform_fee_rate: Decimal
    default_currency: str
    supported_currencies: tuple[str, ...]
    minor_unit: Decimal
    platform_account_id: str
    status_poll_attempts: int
    status_poll_interval_seconds: float
    archive_retention_days: int
    list_default_limit: int

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.platform_fee_rate < Decimal("1"):
            raise ValueError(
                f"platform_fee_rate must be in [0, 1), got {self.platform_fee_rate}"
            )
        if self.default_currency not in self.supported_currencies:
            raise ValueError(
                f"default_currency {self.default_currency} is not in "
                f"supported_currencies {list(self.supported_currencies)}"
            )
        if self.status_poll_attempts < 1:
            raise ValueError("status_poll_attempts must be at least 1")
        if self.minor_unit <= Decimal("0"):
            raise ValueError("minor_unit must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        merged = {**_DEFAULTS, **data}
        return cls(
            platform_fee_rate=Decimal(str(merged["platform_fee_rate"])),
            default_currency=merged["default_currency"],
            supported_currencies=tuple(merged["supported_currencies"]),
            minor_unit=Decimal(str(merged["minor_unit"])),
            platform_account_id=merged["platform_account_id"],
            status_poll_attempts=int(merged["status_poll_attempts"]),
            status_poll_interval_seconds=float(merged["status_poll_interval_seconds"]),
            archive_retention_days=int(merged["archive_retention_days"]),
            list_default_limit=int(merged["list_default_limit"]),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> EngineConfig:
        """Load parameters from JSON, then apply environment overrides."""
        load_dotenv()
        config_path = path or DEFAULT_CONFIG_PATH
        data: dict[str, Any] = {}
        if config_path.exists():
            data = json.loads(config_path.read_text(encoding="utf-8"))

        fee = os.environ.get("BEAUTYBOOK_PLATFORM_FEE_RATE")
        if fee:
            data["platform_fee_rate"] = fee
        currency = os.environ.get("BEAUTYBOOK_DEFAULT_CURRENCY")
        if currency:
            data["default_currency"] = currency
        return cls.from_dict(data)

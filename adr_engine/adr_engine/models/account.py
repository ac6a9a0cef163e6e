"""Account and billing-cadence models.

``AccountSyncRow`` is the contract with the account source of truth: one row
per (external account id, account number) with the statistically derived
billing cadence already computed upstream.
"""

from __future__ import annotations

import re
from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PeriodType(str, Enum):
    """Billing cadence of an account."""

    BI_WEEKLY = "Bi-Weekly"
    MONTHLY = "Monthly"
    BI_MONTHLY = "Bi-Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUALLY = "Semi-Annually"
    ANNUALLY = "Annually"

    @classmethod
    def parse(cls, value: str | PeriodType | None) -> PeriodType:
        """Normalise a free-form period label; unknown or empty means monthly.

        ``"Bi-Weekly"``, ``"biweekly"`` and ``"bi weekly"`` all resolve to
        :attr:`BI_WEEKLY`.
        """
        if isinstance(value, PeriodType):
            return value
        if not value:
            return cls.MONTHLY
        key = re.sub(r"[\s_-]", "", value).lower()
        return _PERIOD_ALIASES.get(key, cls.MONTHLY)


_PERIOD_ALIASES: dict[str, PeriodType] = {
    "biweekly": PeriodType.BI_WEEKLY,
    "monthly": PeriodType.MONTHLY,
    "bimonthly": PeriodType.BI_MONTHLY,
    "quarterly": PeriodType.QUARTERLY,
    "semiannually": PeriodType.SEMI_ANNUALLY,
    "semiannual": PeriodType.SEMI_ANNUALLY,
    "annually": PeriodType.ANNUALLY,
    "annual": PeriodType.ANNUALLY,
    "yearly": PeriodType.ANNUALLY,
}


class NextRunStatus(str, Enum):
    RUN_NOW = "Run Now"
    DUE_SOON = "Due Soon"
    UPCOMING = "Upcoming"
    FUTURE = "Future"
    MISSING = "Missing"


class HistoricalBillingStatus(str, Enum):
    MISSING = "Missing"
    OVERDUE = "Overdue"
    DUE_NOW = "Due Now"
    DUE_SOON = "Due Soon"
    UPCOMING = "Upcoming"
    FUTURE = "Future"


class ExclusionType(str, Enum):
    """What a blacklist entry suppresses."""

    ALL = "All"
    CREDENTIAL_CHECK = "CredentialCheck"
    DOWNLOAD = "Download"


class AccountSyncRow(BaseModel):
    """One account as reported by the source-of-truth feed."""

    model_config = ConfigDict(extra="ignore")

    vm_account_id: int = Field(..., description="External account identifier (may repeat across numbers).")
    vm_account_number: str = Field(..., min_length=1, description="Vendor account number.")
    interface_account_id: str | None = None
    client_id: int | None = None
    client_name: str | None = None
    credential_id: int = Field(..., description="Current vendor credential reference.")
    vendor_code: str | None = None
    period_type: str | None = Field(default=None, description="Billing cadence label, e.g. 'Monthly'.")
    period_days: int | None = Field(default=None, ge=1)
    median_days: float | None = Field(default=None, ge=0)
    invoice_count: int = 0
    last_invoice_date: date | None = None
    expected_next_date: date | None = None
    expected_range_start: date | None = None
    expected_range_end: date | None = None
    next_run_date: date | None = None
    next_range_start: date | None = None
    next_range_end: date | None = None
    days_until_next_run: int | None = None
    next_run_status: str | None = None
    historical_billing_status: str | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.vm_account_id, self.vm_account_number)

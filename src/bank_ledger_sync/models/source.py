"""Raw source models, as produced by bank and card scrapers."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScrapedTransaction(BaseModel):
    """
    A single transaction as reported by a source. Unknown fields are kept.

    Some scrapers report identifiers as JSON numbers; they are read as strings.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    status: str = "completed"
    charged_amount: Decimal = Field(alias="chargedAmount")
    date: str
    description: str = ""
    memo: Optional[str] = None
    identifier: Optional[str] = None
    charged_currency: Optional[str] = Field(default=None, alias="chargedCurrency")
    original_currency: Optional[str] = Field(default=None, alias="originalCurrency")
    processed_date: Optional[str] = Field(default=None, alias="processedDate")
    category: Optional[str] = None

    def raw_fields(self) -> dict[str, Any]:
        """All fields in their source (camelCase) spelling, including extras."""
        return self.model_dump(mode="json", by_alias=True)


class ScrapedAccount(BaseModel):
    """An account with its transactions, as reported by a source."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    account_number: str = Field(alias="accountNumber")
    balance: Optional[Decimal] = None
    txns: list[ScrapedTransaction] = Field(default_factory=list)


class ScrapeResult(BaseModel):
    """Outcome of one source scrape."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    accounts: list[ScrapedAccount] = Field(default_factory=list)
    error_type: Optional[str] = Field(default=None, alias="errorType")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class SourceUser(BaseModel):
    """One configured login (bank or credit card) to scrape."""

    type: str
    credentials: dict[str, Optional[str]] = Field(default_factory=dict)
    name: Optional[str] = None

    # Index of the owning bank, set for credit cards configured under a bank
    parent_bank_index: Optional[int] = None

    last_import: Optional[datetime] = None
    scrape_from: Optional[datetime] = None

    @property
    def is_credit_card(self) -> bool:
        return self.parent_bank_index is not None

    @property
    def label(self) -> str:
        return f"{self.type} ({self.name})" if self.name else self.type


class SourceAccountBatch(BaseModel):
    """A scraped account tagged with the user it came from."""

    account: ScrapedAccount
    user: SourceUser

    @property
    def kind(self) -> str:
        return "credit-card" if self.user.is_credit_card else "bank"

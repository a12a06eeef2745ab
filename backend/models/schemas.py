from pydantic import BaseModel, Field
from typing import Optional, List


# ── Line Item ──────────────────────────────────────────
class ItemLabel(BaseModel):
    en: Optional[str] = None
    ar: Optional[str] = None


class LineItem(BaseModel):
    name: str
    quantity: float
    unit_price: float = Field(alias="unitPrice")
    subtotal: float = 0.0
    item_label: Optional[ItemLabel] = Field(default=None, alias="itemLabel")

    class Config:
        populate_by_name = True


# ── Bill ───────────────────────────────────────────────
class BillExtraction(BaseModel):
    items: List[LineItem]
    currency: str = "USD"
    vat_percentage: float = Field(default=0.0, alias="vatPercentage", ge=0, le=100)
    service_charge_percentage: float = Field(default=0.0, alias="serviceChargePercentage", ge=0, le=100)
    total: float = 0.0

    class Config:
        populate_by_name = True


class NotABillResponse(BaseModel):
    error: str = "NOT_A_BILL"
    message: str


class ErrorResponse(BaseModel):
    error: str


# ── Split ──────────────────────────────────────────────
class SelectionSummaryRequest(BaseModel):
    """Sent by frontend whenever the user toggles items or edits percentages."""
    items: List[LineItem]
    selected: Optional[List[bool]] = None   # defaults to all selected
    vat_percentage: float = Field(default=0.0, alias="vatPercentage", ge=0, le=100)
    service_charge_percentage: float = Field(default=0.0, alias="serviceChargePercentage", ge=0, le=100)
    people: int = 1

    class Config:
        populate_by_name = True


class SelectionSummary(BaseModel):
    selected_count: int = Field(alias="selectedCount")
    item_count: int = Field(alias="itemCount")
    subtotal: float
    vat_amount: float = Field(alias="vatAmount")
    service_amount: float = Field(alias="serviceAmount")
    total: float
    shares: List[float]                     # one per person, sums to total

    class Config:
        populate_by_name = True


# ── History ────────────────────────────────────────────
class HistoryEntryCreate(BaseModel):
    file_name: Optional[str] = Field(default=None, alias="fileName")
    items: List[LineItem]
    currency: str = "USD"
    vat_percentage: float = Field(default=0.0, alias="vatPercentage", ge=0, le=100)
    service_charge_percentage: float = Field(default=0.0, alias="serviceChargePercentage", ge=0, le=100)
    original_image_url: Optional[str] = Field(default=None, alias="originalImageUrl")  # data: URL

    class Config:
        populate_by_name = True


class HistoryEntry(BaseModel):
    id: str
    timestamp: int                          # epoch milliseconds
    file_name: str = Field(alias="fileName")
    items: List[LineItem]
    currency: str
    vat_percentage: float = Field(alias="vatPercentage")
    service_charge_percentage: float = Field(alias="serviceChargePercentage")
    original_image_url: Optional[str] = Field(default=None, alias="originalImageUrl")
    total_amount: float = Field(alias="totalAmount")

    class Config:
        populate_by_name = True


class HistoryStats(BaseModel):
    count: int
    size_kb: float = Field(alias="sizeKB")

    class Config:
        populate_by_name = True

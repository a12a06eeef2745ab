"""
Split Service: recomputes a bill after the user edits it and splits the
selected items' total between people.

All amounts use the same rounding as the extraction aggregator so the
totals shown after an edit never drift from a fresh extraction.
"""
from decimal import Decimal
from typing import Optional

from models.schemas import BillExtraction, LineItem, SelectionSummary
from services.errors import SplitError
from services.extraction_service import bill_total, line_subtotal, round_money, to_decimal


def display_name(item: LineItem, language: str = "en") -> str:
    """Label in the requested language, then the other language, then the raw name."""
    label = item.item_label
    if label:
        preferred = label.ar if language == "ar" else label.en
        if preferred:
            return preferred
        if label.en:
            return label.en
        if label.ar:
            return label.ar
    return item.name


def check_amounts(items: list[LineItem]) -> None:
    """Edited quantities may drop to 0 (deselect) but amounts never go negative."""
    for index, item in enumerate(items):
        if item.quantity < 0:
            raise SplitError(f"item {index}: quantity cannot be negative")
        if item.unit_price < 0:
            raise SplitError(f"item {index}: unit price cannot be negative")


def split_evenly(total: float, people: int) -> list[float]:
    """Split into ``people`` cent-exact shares; the first shares absorb leftover cents."""
    if people < 1:
        raise SplitError("people must be at least 1")
    cents = int(to_decimal(total).scaleb(2).to_integral_value())
    base, remainder = divmod(cents, people)
    return [float(Decimal(base + (1 if i < remainder else 0)).scaleb(-2)) for i in range(people)]


def summarize_selection(
    items: list[LineItem],
    selected: Optional[list[bool]],
    vat_percentage: float,
    service_percentage: float,
    people: int = 1,
) -> SelectionSummary:
    if selected is None:
        selected = [True] * len(items)
    if len(selected) != len(items):
        raise SplitError(f"selected has {len(selected)} flags for {len(items)} items")
    if people < 1:
        raise SplitError("people must be at least 1")
    check_amounts(items)

    # Quantities may have been edited since extraction, never trust item.subtotal here
    subtotals = [
        line_subtotal(item.quantity, item.unit_price)
        for item, chosen in zip(items, selected) if chosen
    ]
    items_sum = sum((to_decimal(s) for s in subtotals), Decimal(0))
    total = bill_total(subtotals, vat_percentage, service_percentage)

    return SelectionSummary(
        selected_count=len(subtotals),
        item_count=len(items),
        subtotal=round_money(items_sum),
        vat_amount=round_money(items_sum * to_decimal(vat_percentage) / 100),
        service_amount=round_money(items_sum * to_decimal(service_percentage) / 100),
        total=total,
        shares=split_evenly(total, people),
    )


def recalculate(bill: BillExtraction) -> BillExtraction:
    """Full recomputation after quantity or percentage edits."""
    check_amounts(bill.items)
    items = [
        item.model_copy(update={"subtotal": line_subtotal(item.quantity, item.unit_price)})
        for item in bill.items
    ]

    return bill.model_copy(update={
        "items": items,
        "total": bill_total([i.subtotal for i in items],
                            bill.vat_percentage, bill.service_charge_percentage),
    })

"""
Extraction Service: turns a receipt photo into a BillExtraction.

Four stages, run once and in order:
  1. Build the request: validate the upload, convert it to a format the model
     takes, base64 it, attach the prompt
  2. Interpret the model's raw text (strip fences, parse JSON, detect NOT_A_BILL)
  3. Validate item shapes, drop implausible items, fix unit-price/line-total mixups
  4. Aggregate: subtotals and the grand total are always recomputed here;
     whatever totals the model claims are ignored.

A failure at any stage raises that stage's error (see services/errors.py)
and aborts the extraction.  Nothing is retried.
"""
import base64
import io
import json
import logging
import math
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from models.schemas import BillExtraction, ItemLabel, LineItem
from services.errors import (
    FileTooLargeError,
    InvalidFileTypeError,
    ItemStructureError,
    LabelError,
    MissingImageError,
    NoValidItemsError,
    NotABillError,
    ParseError,
    StructureError,
    UnsupportedImageError,
)

logger = logging.getLogger("splitbill.extract")

# HEIC/HEIF (iPhone photos) through Pillow
register_heif_opener()

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# Formats the vision models take as-is; anything else is re-encoded as JPEG
VISION_MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
MEDIA_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

# Anything outside these bounds is treated as extraction noise
MAX_QUANTITY = 100
MAX_UNIT_PRICE = 10000
# An item priced above this multiple of the mean unit price (with qty > 1)
# probably had its line total read as the unit price
OUTLIER_FACTOR = 3

DEFAULT_CURRENCY = "USD"

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    # repr() gives the shortest round-tripping form, so 2.675 stays "2.675"
    return Decimal(repr(value))


def round_money(value) -> float:
    """Round half-up to cents, the way the amount would be rounded by hand."""
    if not isinstance(value, Decimal):
        value = to_decimal(value)
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


# ── Stage 1: request ──────────────────────────────────────────────────────────

EXTRACTION_PROMPT = """You are a receipt validator and parser. Decide whether this image is a bill, then extract its line items with exact numbers.

STEP 1 — Is this a bill?
A bill, receipt or invoice usually shows some of: a business name or logo, a date/time,
purchased items with prices, subtotal / tax / total lines, an order or receipt number,
currency symbols.

If the image is NOT a bill (a regular photo, a menu with no transaction, a screenshot of
something else), answer with exactly:
{"error": "NOT_A_BILL", "message": "This image does not appear to be a bill or receipt. Please upload a valid receipt with transaction details."}

STEP 2 — Extract the bill (only when STEP 1 says it is one)

NUMBERS — output every number as plain xx.xx (decimal point, no thousands separator):
  "12,50"    → 12.50      (comma decimal)
  "1.250,00" → 1250.00    (dot thousands, comma decimal)
  "1,250.50" → 1250.50    (comma thousands, dot decimal)
  "1 250,00" → 1250.00    (space thousands)
  "2,5" as a quantity → 2.5
Do not round, estimate or recalculate prices; copy them exactly after converting the format.

COLUMNS — receipts usually print [name] [quantity] [unit price] [line total], or
"2 x Coffee @ 5.50 = 11.00".
  • unitPrice is the price of ONE unit; the line total (quantity × unit price) is NOT wanted.
  • "2 x Coffee 5,50 11,00" → quantity 2, unitPrice 5.50 (not 11.00).
  • If you cannot tell which number is the unit price, choose the smaller plausible one.

QUANTITY — "2 x Coffee" or a quantity column gives the quantity; decimals (0.5, 1.5) are
allowed; if no quantity is printed use 1. Remove quantity prefixes from the item name.

CURRENCY — use the ISO code for the symbol or code printed ($, €, £, LE, EGP, SAR, AED, JOD…).

TAXES — VAT / Tax / ضريبة gives vatPercentage; Service / خدمة gives serviceChargePercentage.
If only an amount is printed, estimate the percentage from the items subtotal.
Use 0 when absent. Convert "12,5%" → 12.5.

LABELS — for every item add "itemLabel": {"en": ..., "ar": ...}:
  • en: normalised, concise, Title Case English name
  • ar: friendly colloquial (Jordanian) Arabic name

Skip headers, totals, taxes, payment lines and restaurant details — only purchased items.

Answer with ONLY this JSON, no markdown, no prose:
{
  "items": [
    {"name": "name exactly as printed", "quantity": 1, "unitPrice": 10.50,
     "itemLabel": {"en": "English Name", "ar": "الاسم"}}
  ],
  "currency": "USD",
  "vatPercentage": 0,
  "serviceChargePercentage": 0
}"""


def validate_image(image_bytes: Optional[bytes], content_type: Optional[str]) -> None:
    """Reject uploads the model should never see.  Order: presence, type, size."""
    if image_bytes is None:
        raise MissingImageError()
    if not content_type or not content_type.startswith("image/"):
        raise InvalidFileTypeError(content_type)
    if len(image_bytes) == 0:
        raise MissingImageError("Empty image")
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise FileTooLargeError(len(image_bytes), MAX_IMAGE_BYTES)


def prepare_image(image_bytes: bytes, content_type: str) -> tuple[bytes, str]:
    """
    Return (bytes, media_type) the vision model accepts.
    JPEG/PNG/GIF/WEBP pass through untouched; HEIC, BMP, TIFF etc. are
    converted to JPEG.  Raises UnsupportedImageError if Pillow can't read it.
    """
    media_type = MEDIA_TYPE_ALIASES.get(content_type, content_type)
    if media_type in VISION_MEDIA_TYPES:
        return image_bytes, media_type

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buf = io.BytesIO()
        # quality 92 keeps small receipt text legible
        img.save(buf, format="JPEG", quality=92)
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Could not decode %s upload: %s", content_type, e)
        raise UnsupportedImageError(content_type) from e

    converted = buf.getvalue()
    logger.info("Converted %s to JPEG (%d KB → %d KB)",
                content_type, len(image_bytes) // 1024, len(converted) // 1024)
    return converted, "image/jpeg"


def encode_image(image_bytes: bytes) -> str:
    return base64.standard_b64encode(image_bytes).decode()


# ── Stage 2: interpret ────────────────────────────────────────────────────────

def _is_number(value) -> bool:
    # bool is an int subclass but JSON true/false are not numbers
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _percentage(data: dict, key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if not _is_number(value) or not (0 <= value <= 100):
        raise StructureError(f"Invalid response structure: {key} must be a number between 0 and 100")
    return float(value)


def interpret_response(raw: Optional[str]) -> dict:
    """
    Parse the model's text into a bill dict with boundary defaults applied
    (currency "USD", percentages 0).  Raises NotABillError when the model
    classified the image as something else.
    """
    if not raw or not raw.strip():
        raise ParseError("Empty response from model")

    text = raw.strip()
    text = re.sub(r'^```[a-z]*\s*', '', text)
    text = re.sub(r'\s*```$', '', text)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse model response: %s — %r", e, raw[:500])
        raise ParseError("Invalid response format from AI") from e

    if isinstance(data, dict) and data.get("error") == "NOT_A_BILL":
        message = data.get("message")
        raise NotABillError(message if isinstance(message, str) and message.strip() else None)

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise StructureError("Invalid response structure: items must be an array")

    currency = data.get("currency") or DEFAULT_CURRENCY
    if not isinstance(currency, str):
        raise StructureError("Invalid response structure: currency must be a string")

    return {
        "items": data["items"],
        "currency": currency.strip().upper() or DEFAULT_CURRENCY,
        "vatPercentage": _percentage(data, "vatPercentage"),
        "serviceChargePercentage": _percentage(data, "serviceChargePercentage"),
    }


# ── Stage 3: validate, filter, correct ────────────────────────────────────────

def validate_items(items: list) -> None:
    """Check every item's shape; one bad item fails the whole response."""
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ItemStructureError(index, "not an object")
        if not isinstance(item.get("name"), str):
            raise ItemStructureError(index, "name must be a string")
        if not _is_number(item.get("quantity")):
            raise ItemStructureError(index, "quantity must be a number")
        if not _is_number(item.get("unitPrice")):
            raise ItemStructureError(index, "unitPrice must be a number")

        label = item.get("itemLabel")
        if label is None:
            continue
        if not isinstance(label, dict):
            raise LabelError(index, "itemLabel")
        for lang in ("en", "ar"):
            if label.get(lang) is not None and not isinstance(label[lang], str):
                raise LabelError(index, f"itemLabel.{lang}")


def filter_anomalies(items: list[dict]) -> list[dict]:
    """Drop implausible items.  Raises NoValidItemsError if nothing survives."""
    kept = []
    for item in items:
        name, qty, price = item["name"], item["quantity"], item["unitPrice"]
        if qty <= 0 or qty > MAX_QUANTITY:
            logger.warning("Filtered out item with invalid quantity: %r (qty: %s)", name, qty)
            continue
        if price <= 0 or price > MAX_UNIT_PRICE:
            logger.warning("Filtered out item with invalid unit price: %r (price: %s)", name, price)
            continue
        if not name.strip():
            logger.warning("Filtered out item with empty name")
            continue
        kept.append(item)

    if not kept:
        raise NoValidItemsError()
    return kept


def correct_unit_prices(items: list[dict]) -> list[dict]:
    """
    Undo the model reading a line total as a unit price.

    The mean is taken once, before any correction, so each item is judged
    against the same threshold regardless of order.  This is a heuristic:
    a bill with one legitimately expensive multi-unit item among cheap ones
    will be "corrected" too.
    """
    if not items:
        return []
    mean = sum(to_decimal(i["unitPrice"]) for i in items) / len(items)
    threshold = mean * OUTLIER_FACTOR

    corrected = []
    for item in items:
        price = to_decimal(item["unitPrice"])
        if price > threshold and item["quantity"] > 1:
            new_price = round_money(price / to_decimal(item["quantity"]))
            logger.warning(
                "Possible price correction for %r: %s → %s (mean unit price %.2f)",
                item["name"], item["unitPrice"], new_price, mean,
            )
            item = {**item, "unitPrice": new_price}
        corrected.append(item)
    return corrected


# ── Stage 4: aggregate ────────────────────────────────────────────────────────

def line_subtotal(quantity: float, unit_price: float) -> float:
    return round_money(to_decimal(quantity) * to_decimal(unit_price))


def bill_total(subtotals: list[float], vat_percentage: float, service_percentage: float) -> float:
    """VAT and service both apply to the items sum; they are not compounded."""
    items_sum = sum((to_decimal(s) for s in subtotals), Decimal(0))
    factor = 1 + to_decimal(vat_percentage) / 100 + to_decimal(service_percentage) / 100
    return round_money(items_sum * factor)


def aggregate(
    items: list[dict],
    currency: str,
    vat_percentage: float,
    service_percentage: float,
) -> BillExtraction:
    line_items = []
    for item in items:
        label = item.get("itemLabel")
        line_items.append(LineItem(
            name=item["name"],
            quantity=item["quantity"],
            unit_price=item["unitPrice"],
            subtotal=line_subtotal(item["quantity"], item["unitPrice"]),
            item_label=ItemLabel(en=label.get("en"), ar=label.get("ar")) if label else None,
        ))

    return BillExtraction(
        items=line_items,
        currency=currency,
        vat_percentage=vat_percentage,
        service_charge_percentage=service_percentage,
        total=bill_total([i.subtotal for i in line_items], vat_percentage, service_percentage),
    )


# ── Pipeline ──────────────────────────────────────────────────────────────────

def process_model_response(raw: Optional[str]) -> BillExtraction:
    """Stages 2–4 over the model's raw text."""
    data = interpret_response(raw)
    validate_items(data["items"])
    items = filter_anomalies(data["items"])
    items = correct_unit_prices(items)
    return aggregate(items, data["currency"], data["vatPercentage"], data["serviceChargePercentage"])


async def extract_bill(image_bytes: Optional[bytes], content_type: Optional[str], model_factory) -> BillExtraction:
    """
    Validate the upload, make the single model call, and run the response
    through the correction pipeline.

    ``model_factory`` is only called once the upload is valid; it returns an
    object with an async ``complete(prompt, image_b64, media_type)``
    (see services/model_client.py).
    """
    validate_image(image_bytes, content_type)
    image_bytes, media_type = prepare_image(image_bytes, content_type)
    model = model_factory()

    b64 = encode_image(image_bytes)
    logger.info("Sending %d KB b64 (%s) to bill model", len(b64) // 1024, media_type)
    raw = await model.complete(EXTRACTION_PROMPT, b64, media_type)

    bill = process_model_response(raw)
    logger.info("Extracted %d items, currency=%s, total=%.2f",
                len(bill.items), bill.currency, bill.total)
    return bill

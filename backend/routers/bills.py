"""
Bills Router

POST    /api/extract-bill      — upload a receipt photo, get a BillExtraction back
OPTIONS /api/extract-bill      — CORS preflight, always 200
POST    /api/bills/summary     — totals + per-person shares for the selected items
POST    /api/bills/recalculate — recompute subtotals/total after user edits
"""
import logging
from typing import Optional

from fastapi import APIRouter, File, UploadFile
from fastapi.responses import JSONResponse, Response

from models.schemas import BillExtraction, SelectionSummary, SelectionSummaryRequest
from services.errors import BillExtractionError, NotABillError, SplitError
from services.extraction_service import extract_bill
from services.model_client import get_bill_model
from services.split_service import recalculate, summarize_selection

logger = logging.getLogger("splitbill.bills")
router = APIRouter()


def _error_response(e: BillExtractionError) -> JSONResponse:
    if isinstance(e, NotABillError):
        return JSONResponse(status_code=e.status_code,
                            content={"error": e.error_code, "message": e.message})
    return JSONResponse(status_code=e.status_code, content={"error": e.message})


# ── Extract ───────────────────────────────────────────────────────────────────

@router.post("/extract-bill", response_model=BillExtraction)
async def extract_bill_endpoint(image: Optional[UploadFile] = File(None)):
    """
    Run the extraction pipeline on one uploaded image.
    Upload problems are rejected before the model is contacted.
    """
    try:
        contents = await image.read() if image is not None else None
        content_type = image.content_type if image is not None else None
        return await extract_bill(contents, content_type, get_bill_model)
    except NotABillError as e:
        logger.info("Upload %r is not a bill", image.filename if image else None)
        return _error_response(e)
    except BillExtractionError as e:
        log = logger.warning if e.status_code < 500 else logger.error
        log("Extract bill failed (%s): %s", type(e).__name__, e.message)
        return _error_response(e)
    except Exception:
        logger.exception("Extract bill failed unexpectedly")
        return JSONResponse(status_code=500, content={"error": "Failed to extract bill"})


@router.options("/extract-bill")
async def extract_bill_preflight():
    return Response(status_code=200)


@router.api_route("/extract-bill", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def extract_bill_method_not_allowed():
    return JSONResponse(status_code=405, content={"error": "Method not allowed"})


# ── Split ─────────────────────────────────────────────────────────────────────

@router.post("/bills/summary", response_model=SelectionSummary)
async def bill_summary(body: SelectionSummaryRequest):
    try:
        return summarize_selection(
            body.items, body.selected,
            body.vat_percentage, body.service_charge_percentage,
            people=body.people,
        )
    except SplitError as e:
        return JSONResponse(status_code=422, content={"error": str(e)})


@router.post("/bills/recalculate", response_model=BillExtraction)
async def bill_recalculate(body: BillExtraction):
    try:
        return recalculate(body)
    except SplitError as e:
        return JSONResponse(status_code=422, content={"error": str(e)})

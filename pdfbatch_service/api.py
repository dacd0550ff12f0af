"""
FastAPI layer exposing batch HTML-to-PDF rendering.

Endpoints:
 - GET /health
 - POST /download-pdfs-lote
 - POST /render-pdf
"""

from __future__ import annotations

from functools import partial
import json
import logging
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from . import config
from .asset_cache import get_asset_cache
from .exceptions import BatchValidationError, EngineStartError, RenderError
from .models import RenderItem
from .pipeline import BatchOrchestrator
from .render_session import render_pdf

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Batch HTML to PDF Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["POST", "OPTIONS", "GET"],
    allow_headers=["Content-Type"],
)


class BatchItemIn(BaseModel):
    html: str
    filename: Optional[str] = None


class BatchRequest(BaseModel):
    items: Optional[List[BatchItemIn]] = None
    logoUrl: Optional[str] = None


def get_orchestrator() -> BatchOrchestrator:
    return BatchOrchestrator(settings=settings, asset_cache=get_asset_cache())


def get_single_renderer() -> Callable[[str], bytes]:
    return partial(render_pdf, settings=settings)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/download-pdfs-lote")
def download_pdfs_lote(
    body: Optional[BatchRequest] = None,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> Response:
    items = [RenderItem(html=i.html, filename=i.filename) for i in (body.items if body and body.items else [])]
    logo_url = body.logoUrl if body else None

    try:
        report = orchestrator.run(items, logo_url=logo_url)
    except BatchValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EngineStartError as exc:
        logger.exception("PDF engine failed to start: %s", exc)
        raise HTTPException(status_code=500, detail=f"PDF engine failed to start: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Batch generation failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"Internal error while generating PDFs: {exc}") from exc

    return Response(
        content=report.archive_bytes,
        media_type="application/zip",
        headers={
            "Content-Disposition": f"attachment; filename={orchestrator.settings.archive_filename}",
            "X-Rendered-Count": str(report.succeeded),
            "X-Failed-Count": str(report.failed),
        },
    )


def _extract_html(raw: bytes, query_html: Optional[str]) -> str:
    """
    Pick the document to render: JSON `html`, then the `html` query
    parameter, then a raw (non-JSON) request body.
    """
    text = raw.decode("utf-8", errors="replace")
    payload = {}
    raw_html = ""
    if text.strip():
        try:
            payload = json.loads(text)
        except ValueError:
            raw_html = text

    body_html = payload.get("html") if isinstance(payload, dict) else None
    for candidate in (body_html, query_html, raw_html):
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return ""


@app.post("/render-pdf")
async def render_single_pdf(
    request: Request,
    html: Optional[str] = Query(None),
    renderer: Callable[[str], bytes] = Depends(get_single_renderer),
) -> Response:
    document = _extract_html(await request.body(), html)
    if not document:
        raise HTTPException(
            status_code=400,
            detail='Missing HTML. Send POST JSON { "html": "<!doctype html>..." }',
        )

    try:
        # Sync Playwright cannot run on the event loop thread.
        pdf_bytes = await run_in_threadpool(renderer, document)
    except EngineStartError as exc:
        logger.exception("PDF engine failed to start: %s", exc)
        raise HTTPException(status_code=500, detail=f"PDF engine failed to start: {exc}") from exc
    except RenderError as exc:
        logger.exception("PDF rendering failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"PDF rendering failed: {exc.reason}") from exc

    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": 'inline; filename="documento.pdf"'},
    )

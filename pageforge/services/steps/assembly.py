from __future__ import annotations

import logging
import time
from typing import Any, Optional

from pageforge.config import settings
from pageforge.db.enums import DocumentStatusEnum
from pageforge.errors import ValidationFailed
from pageforge.schemas.steps import AssemblyOutput
from pageforge.services import documents as documents_service
from pageforge.services.patch_engine import HtmlDocument
from pageforge.services.steps.context import StepContext, StepResult
from pageforge.services.tracking import inject_tracking

logger = logging.getLogger(__name__)


def _score(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def run(ctx: StepContext) -> StepResult:
    design = ctx.output("design")
    research = ctx.output("research")
    copy = ctx.output("copy")
    factcheck = ctx.output("factcheck")

    page_html = design.get("html") or ""
    if not HtmlDocument(page_html).has_root_marker():
        raise ValidationFailed("Design output is not a complete HTML document")

    company = research.get("company_name") or ctx.inputs.get("companyName") or "Landing Page"
    meta = copy.get("meta") if isinstance(copy.get("meta"), dict) else {}
    headlines = copy.get("headlines") if isinstance(copy.get("headlines"), dict) else {}
    page_name = meta.get("title") or headlines.get("hero_headline") or f"{company} {ctx.job.page_type}"
    desired_slug = f"{ctx.job.page_type}-{documents_service.slugify(company)[:50]}-{_base36(int(time.time() * 1000))}"

    document_id = documents_service.document_id_for_job(ctx.job.id)
    existing = ctx.store.get(documents_service.DOCUMENTS, document_id)
    score = _score(factcheck.get("overall_score"))

    if existing is not None and existing.data.get("generation_job_id") == ctx.job.id:
        # A retried assembly reuses the page created by the earlier attempt.
        record = existing
        page_html = record.data["html_content"]
        logger.info("assembly.document_reused", extra={"job_id": ctx.job.id, "document_id": record.id})
    else:
        page_html = inject_tracking(page_html, document_id, settings.PUBLIC_BASE_URL)
        record = documents_service.create_document(
            ctx.store,
            name=str(page_name),
            html_content=page_html,
            client_id=ctx.job.client_id,
            page_type=ctx.job.page_type,
            status=DocumentStatusEnum.draft.value,
            meta_title=str(meta.get("title") or page_name),
            meta_description=str(meta.get("description") or ""),
            generation_job_id=ctx.job.id,
            factcheck_score=score,
            document_id=document_id,
            slug=None if ctx.inputs.get("slug") is None else str(ctx.inputs["slug"]),
            desired_slug=desired_slug,
        )
        logger.info("assembly.document_created", extra={"job_id": ctx.job.id, "document_id": record.id})

    output = AssemblyOutput(
        html=page_html,
        pageId=record.id,
        pageName=str(page_name),
        slug=record.data["slug"],
        factcheckScore=score,
        factcheckRecommendation=factcheck.get("recommendation") or "approve",
    )
    return StepResult(output=output, result_document_id=record.id)

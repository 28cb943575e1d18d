from __future__ import annotations

import logging
from typing import Any

from pageforge.config import settings
from pageforge.errors import CollaboratorError
from pageforge.llm.client import LLMClientConfigError
from pageforge.schemas.steps import ResearchOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult
from pageforge.services.website_scraper import scrape_website

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a world-class market researcher and business analyst. Analyze the provided "
    "website/product information and extract comprehensive business intelligence. Return valid JSON only."
)

OUTPUT_SHAPE = """{
  "company_name": "string",
  "industry": "string",
  "tagline": "string",
  "value_propositions": ["string"],
  "unique_differentiators": ["string"],
  "products_services": [{"name": "string", "description": "string", "price": "string or null"}],
  "target_audiences": [{"name": "string", "demographics": "string", "pain_points": ["string"], "desires": ["string"]}],
  "testimonials": [{"quote": "string", "author": "string"}],
  "brand_voice": {"tone": "string", "keywords": ["string"]},
  "competitors": ["string"],
  "key_claims": ["string"],
  "emotional_hooks": ["string"]
}"""


def _website_data(ctx: StepContext) -> dict[str, Any]:
    url = ctx.inputs.get("websiteUrl") or ctx.inputs.get("url")
    if not url:
        return {}
    try:
        return scrape_website(url, timeout_seconds=ctx.call_timeout(settings.RESEARCH_TIMEOUT_SECONDS))
    except (CollaboratorError, ValueError) as exc:
        # A site that blocks scraping still leaves the search-backed research.
        logger.warning("research.scrape_failed", extra={"url": url, "error": str(exc)})
        return {"url": url, "error": str(exc)}


def build_prompt(ctx: StepContext, website: dict[str, Any]) -> str:
    inputs = ctx.inputs
    lines = ["Analyze this business and extract detailed research data.", ""]
    if website.get("url"):
        lines.append(f"Website URL: {website['url']}")
    if inputs.get("companyName"):
        lines.append(f"Company: {inputs['companyName']}")
    if inputs.get("offer"):
        lines.append(f"Product/Service: {inputs['offer']}")
    if inputs.get("targetAudience"):
        lines.append(f"Target audience: {inputs['targetAudience']}")
    meta = website.get("meta") or {}
    if meta:
        lines.append(f"Page Title: {meta.get('title', '')}")
        lines.append(f"Meta Description: {meta.get('description', '')}")
    if website.get("text"):
        lines.extend(["", "Website Content (excerpt):", website["text"][:8000]])
    if website.get("testimonials"):
        lines.append(f"\nTestimonials found: {len(website['testimonials'])}")
    lines.extend(["", "Use web search to verify claims and find competitors.", "", "Return a JSON object with these fields:", OUTPUT_SHAPE])
    return "\n".join(lines)


def run(ctx: StepContext) -> StepResult:
    website = _website_data(ctx)
    prompt = build_prompt(ctx, website)
    try:
        response = ctx.search(SYSTEM_PROMPT, prompt)
    except LLMClientConfigError as exc:
        # No search-capable provider configured; fall back to a plain completion.
        logger.warning("research.search_unavailable", extra={"error": str(exc)})
        response = ctx.generate(SYSTEM_PROMPT, prompt)

    data = parse_json_or_raw(response.text)
    data["citations"] = response.citations
    if website:
        data["website"] = {key: website.get(key) for key in ("url", "meta", "colors", "fonts", "error") if website.get(key)}
    return StepResult(output=ResearchOutput.model_validate(data))

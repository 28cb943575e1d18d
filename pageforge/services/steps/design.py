from __future__ import annotations

import html
import logging
import re
from typing import Any

from pageforge.config import settings
from pageforge.llm.images import GeneratedImage
from pageforge.schemas.steps import DesignOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult, to_json

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an elite landing page content specialist. You will receive an HTML template with "
    "{{PLACEHOLDER}} slots. Fill those slots with compelling content using the copy data provided. "
    "Return a JSON object mapping each placeholder name to its HTML content. Only return valid JSON."
)

# Slots whose values land inside attributes or <head>, so they are escaped as text.
TEXT_SLOTS = ("META_TITLE", "META_DESCRIPTION", "COMPANY_NAME", "CTA_URL")
CONTENT_SLOTS = (
    "BADGE_TEXT",
    "HEADLINE",
    "SUBHEADLINE",
    "HERO_BODY",
    "CTA_TEXT",
    "BODY_SECTIONS",
    "FINAL_CTA_HEADLINE",
    "FINAL_CTA_TEXT",
    "FOOTER_TEXT",
)

PAGE_TYPE_INSTRUCTIONS = {
    "advertorial": "Long-form editorial piece: report-style badge, article-like body, pull quotes, several CTAs.",
    "listicle": "Numbered list of 5-10 reasons, each with a headline and short description, CTAs every few items.",
    "quiz": "Quiz funnel intro: curiosity headline, what the quiz reveals, strong start-quiz CTA.",
    "vip-signup": "Exclusive invitation: VIP badge, member-count proof, short benefit list, scarcity line.",
    "calculator": "Savings/ROI framing: bold numeric headline, before/after comparison, CTA to get full results.",
    "sales-letter": "Direct response letter: short paragraphs, story-driven sections, P.S. in the footer text.",
    "sales_page": "Classic sales page: problem, agitation, solution, proof, offer, guarantee, final CTA.",
}

SKELETON = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{META_TITLE}}</title>
<meta name="description" content="{{META_DESCRIPTION}}">
<style>
{{BRAND_CSS}}
*{box-sizing:border-box}body{margin:0;font-family:var(--font-body);color:var(--color-text);background:var(--color-background);line-height:1.6}
h1,h2,h3{font-family:var(--font-heading);line-height:1.2}
.container{max-width:var(--max-width);margin:0 auto;padding:0 20px}
.badge{display:inline-block;background:var(--color-accent);color:#fff;padding:4px 12px;border-radius:999px;font-size:12px;font-weight:700;letter-spacing:.08em;text-transform:uppercase}
.hero{padding:64px 0 48px;text-align:center}.hero h1{font-size:clamp(2rem,5vw,3.25rem);margin:16px 0}
.hero-image{width:100%;max-height:420px;object-fit:cover;border-radius:var(--radius);margin-top:24px}
.btn{display:inline-block;background:var(--color-primary);color:#fff;text-decoration:none;font-weight:700;padding:16px 32px;border-radius:var(--radius);margin-top:16px}
section{padding:40px 0}.stats{display:flex;flex-wrap:wrap;gap:24px;justify-content:center;text-align:center}
.stat strong{display:block;font-size:2rem;color:var(--color-primary)}
.testimonials{display:grid;grid-template-columns:repeat(auto-fit,minmax(240px,1fr));gap:20px}
.testimonial{background:#fff;border-radius:var(--radius);padding:20px;box-shadow:0 2px 12px rgba(0,0,0,.06)}
.final-cta{text-align:center;background:var(--color-secondary);color:#fff;border-radius:var(--radius);padding:48px 20px}
footer{font-size:12px;color:#6b7280;text-align:center;padding:32px 0}
</style>
</head>
<body>
<header class="container"><strong>{{COMPANY_NAME}}</strong></header>
<main>
<section class="hero container">
<span class="badge">{{BADGE_TEXT}}</span>
<h1>{{HEADLINE}}</h1>
<p class="subheadline">{{SUBHEADLINE}}</p>
{{HERO_IMAGE}}
<div class="hero-body">{{HERO_BODY}}</div>
<a class="btn cta" href="{{CTA_URL}}">{{CTA_TEXT}}</a>
</section>
{{STATS_SECTION}}
<div class="container">{{BODY_SECTIONS}}</div>
{{TESTIMONIALS_SECTION}}
<section class="container"><div class="final-cta">
<h2>{{FINAL_CTA_HEADLINE}}</h2>
<a class="btn cta" href="{{CTA_URL}}">{{FINAL_CTA_TEXT}}</a>
</div></section>
</main>
<footer class="container">{{FOOTER_TEXT}}</footer>
</body>
</html>
"""

_PLACEHOLDER_RE = re.compile(r"\{\{[A-Z_]+\}\}")


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def brand_css(brand: dict[str, Any]) -> str:
    colors = _dict(brand.get("colors"))
    typography = _dict(brand.get("typography"))
    spacing = _dict(brand.get("spacing"))
    values = {
        "--color-primary": colors.get("primary") or "#4f46e5",
        "--color-secondary": colors.get("secondary") or "#111827",
        "--color-accent": colors.get("accent") or "#f59e0b",
        "--color-background": colors.get("background") or "#f9fafb",
        "--color-text": colors.get("text") or "#111827",
        "--font-heading": typography.get("heading_font") or "system-ui, sans-serif",
        "--font-body": typography.get("body_font") or "system-ui, sans-serif",
        "--radius": spacing.get("border_radius") or "8px",
        "--max-width": spacing.get("max_width") or "1080px",
    }
    # Brand values come from model output; keep them from closing the declaration.
    body = ";".join(f"{key}:{re.sub(r'[;{}<>]', '', str(value))}" for key, value in values.items())
    return f":root{{{body}}}"


def stats_section(copy: dict[str, Any]) -> str:
    stats = [s for s in _list(_dict(copy.get("social_proof")).get("stats")) if isinstance(s, dict)]
    if not stats:
        return ""
    items = "".join(
        f'<div class="stat"><strong>{html.escape(str(s.get("number", "")))}</strong>'
        f'{html.escape(str(s.get("label", "")))}</div>'
        for s in stats[:4]
    )
    return f'<section class="container stats">{items}</section>'


def testimonials_section(copy: dict[str, Any]) -> str:
    testimonials = [t for t in _list(_dict(copy.get("social_proof")).get("testimonials")) if isinstance(t, dict)]
    if not testimonials:
        return ""
    items = "".join(
        f'<blockquote class="testimonial"><p>&ldquo;{html.escape(str(t.get("quote", "")))}&rdquo;</p>'
        f'<cite>{html.escape(str(t.get("author", "")))}</cite></blockquote>'
        for t in testimonials[:6]
    )
    return f'<section class="container"><div class="testimonials">{items}</div></section>'


def default_slots(ctx: StepContext, research: dict[str, Any], copy: dict[str, Any]) -> dict[str, str]:
    headlines = _dict(copy.get("headlines"))
    hero = _dict(copy.get("hero"))
    ctas = _dict(copy.get("ctas"))
    meta = _dict(copy.get("meta"))
    company = research.get("company_name") or ctx.inputs.get("companyName") or "Our Company"
    sections = "".join(
        f'<section><h2>{html.escape(str(s.get("headline", "")))}</h2>'
        f'<p>{html.escape(str(s.get("body_copy", "")))}</p></section>'
        for s in _list(copy.get("body_sections"))
        if isinstance(s, dict)
    )
    headline = headlines.get("hero_headline") or f"{company}"
    return {
        "META_TITLE": str(meta.get("title") or headline),
        "META_DESCRIPTION": str(meta.get("description") or ""),
        "COMPANY_NAME": str(company),
        "CTA_URL": str(ctx.inputs.get("ctaUrl") or "#signup"),
        "BADGE_TEXT": "",
        "HEADLINE": html.escape(str(headline)),
        "SUBHEADLINE": html.escape(str(headlines.get("hero_subheadline") or "")),
        "HERO_BODY": f"<p>{html.escape(str(hero.get('above_fold_text') or ''))}</p>",
        "CTA_TEXT": html.escape(str(hero.get("primary_cta_text") or ctas.get("primary") or "Get Started")),
        "BODY_SECTIONS": sections,
        "FINAL_CTA_HEADLINE": html.escape(str(ctas.get("final") or "Ready to get started?")),
        "FINAL_CTA_TEXT": html.escape(str(ctas.get("primary") or "Get Started")),
        "FOOTER_TEXT": f"&copy; {html.escape(str(company))}",
    }


def populate_template(template: str, slots: dict[str, str]) -> str:
    rendered = template
    for key, value in slots.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return _PLACEHOLDER_RE.sub("", rendered)


def _hero_image(ctx: StepContext, research: dict[str, Any], copy: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    if not (settings.DESIGN_GENERATE_HERO_IMAGE or ctx.inputs.get("generateHeroImage")):
        return "", {}
    ctx.call_timeout(settings.IMAGE_TIMEOUT_SECONDS)
    headline = _dict(copy.get("headlines")).get("hero_headline") or ""
    prompt = (
        f"Photorealistic hero image for a {ctx.job.page_type} landing page. "
        f"Business: {research.get('company_name') or ctx.inputs.get('companyName') or ''}. "
        f"Industry: {research.get('industry') or ''}. Theme: {headline}. No text in the image."
    )
    outcome = ctx.images.generate(prompt=prompt, aspect_ratio="16:9")
    if not isinstance(outcome, GeneratedImage):
        logger.info("design.hero_image_refused", extra={"job_id": ctx.job.id, "reason": outcome.reason})
        return "", {"refused": outcome.reason}
    alt = html.escape(str(headline or "Hero image"))
    tag = f'<img class="hero-image" src="{outcome.data_uri()}" alt="{alt}">'
    return tag, {"mime_type": outcome.mime_type, "width": outcome.width, "height": outcome.height}


def run(ctx: StepContext) -> StepResult:
    research = ctx.output("research")
    brand = ctx.output("brand")
    strategy = ctx.output("strategy")
    copy = ctx.output("copy")
    page_type = ctx.job.page_type

    slots = default_slots(ctx, research, copy)
    prompt = "\n".join(
        [
            f"Fill the content slots in this {page_type} page template.",
            "",
            "TEMPLATE SLOTS TO FILL:",
            ", ".join(CONTENT_SLOTS + ("META_TITLE", "META_DESCRIPTION")),
            "",
            "COPY DATA:",
            to_json(copy),
            "",
            "STRATEGY:",
            to_json(strategy),
            "",
            f"Company: {slots['COMPANY_NAME']}",
            f"Tone: {_dict(brand.get('brand_voice')).get('tone') or ctx.inputs.get('tone') or 'Professional'}",
            PAGE_TYPE_INSTRUCTIONS.get(page_type, ""),
            "",
            "Return a JSON object with ALL placeholders filled. Use <p> tags for paragraphs and",
            "<section><h2>..</h2>..</section> blocks for BODY_SECTIONS.",
        ]
    )
    response = ctx.generate(SYSTEM_PROMPT, prompt, max_tokens=settings.LLM_MAX_OUTPUT_TOKENS)
    content = parse_json_or_raw(response.text)
    if "raw" in content:
        logger.warning("design.slot_fill_unparseable", extra={"job_id": ctx.job.id})

    for key in CONTENT_SLOTS + ("META_TITLE", "META_DESCRIPTION"):
        value = content.get(key)
        if isinstance(value, str) and value.strip():
            slots[key] = value
    for key in TEXT_SLOTS:
        slots[key] = html.escape(slots[key], quote=True)

    hero_tag, hero_meta = _hero_image(ctx, research, copy)

    slots.update(
        {
            "BRAND_CSS": brand_css(brand),
            "HERO_IMAGE": hero_tag,
            "STATS_SECTION": stats_section(copy),
            "TESTIMONIALS_SECTION": testimonials_section(copy),
        }
    )
    page = populate_template(SKELETON, slots)
    output = DesignOutput(html=page, template_type=page_type, hero_image=hero_meta or None)
    return StepResult(output=output)

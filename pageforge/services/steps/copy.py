from __future__ import annotations

from pageforge.schemas.steps import CopyOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult, to_json

SYSTEM_PROMPT = (
    "You are a master direct response copywriter. Write compelling, specific, benefit-driven copy "
    "that sells. Return valid JSON only."
)

OUTPUT_SHAPE = """{
  "headlines": {"hero_headline": "", "hero_subheadline": "", "section_headlines": [""]},
  "hero": {"above_fold_text": "", "primary_cta_text": "", "secondary_cta_text": "string or null"},
  "body_sections": [{"section_name": "", "headline": "", "body_copy": "", "cta_text": "string or null"}],
  "social_proof": {"stats": [{"number": "", "label": ""}], "testimonials": [{"quote": "", "author": "", "result": ""}]},
  "ctas": {"primary": "", "secondary": "", "final": ""},
  "meta": {"title": "", "description": ""}
}"""


def run(ctx: StepContext) -> StepResult:
    research = ctx.output("research")
    brand = ctx.output("brand")
    strategy = ctx.output("strategy")
    voice = brand.get("brand_voice") if isinstance(brand.get("brand_voice"), dict) else {}
    prompt = "\n".join(
        [
            f"Write all copy for a {ctx.job.page_type} landing page based on this strategy.",
            "",
            "STRATEGY:",
            to_json(strategy),
            "",
            "BRAND VOICE:",
            f"Tone: {ctx.inputs.get('tone') or voice.get('tone') or 'Professional & Trustworthy'}",
            f"Keywords: {to_json(voice.get('keywords') or [])}",
            f"Guidelines: {to_json(voice.get('do') or [])}",
            "",
            "BUSINESS:",
            f"Company: {research.get('company_name') or ctx.inputs.get('companyName') or 'Unknown'}",
            f"Value Props: {to_json(research.get('value_propositions') or [])}",
            f"Key Claims: {to_json(research.get('key_claims') or [])}",
            f"Testimonials: {to_json(research.get('testimonials') or [])}",
            "",
            "Return JSON with all copy:",
            OUTPUT_SHAPE,
        ]
    )
    response = ctx.generate(SYSTEM_PROMPT, prompt)
    return StepResult(output=CopyOutput.model_validate(parse_json_or_raw(response.text)))

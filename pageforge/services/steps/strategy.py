from __future__ import annotations

from pageforge.schemas.steps import StrategyOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult, to_json

SYSTEM_PROMPT = (
    "You are a world-class conversion strategist and direct response marketing expert. "
    "Create a detailed page strategy. Return valid JSON only."
)

OUTPUT_SHAPE = """{
  "page_title": "string",
  "meta_description": "string",
  "hero_strategy": {"headline_angle": "", "subheadline_angle": "", "hero_hook_type": "", "primary_cta": ""},
  "sections": [{"section_name": "", "purpose": "", "psychological_triggers": [""], "content_brief": "", "cta": "string or null"}],
  "psychology_plan": {"primary_triggers": [""], "stacking_sequence": "", "awareness_journey": "", "objection_handling": [""]},
  "social_proof_plan": {"testimonial_placement": [""], "data_points": [""], "authority_signals": [""]}
}"""


def run(ctx: StepContext) -> StepResult:
    research = ctx.output("research")
    brand = ctx.output("brand")
    page_type = ctx.job.page_type
    audiences = research.get("target_audiences")
    audience = ctx.inputs.get("targetAudience") or (
        to_json(audiences[0]) if isinstance(audiences, list) and audiences else "Unknown"
    )
    prompt = "\n".join(
        [
            f"Create a comprehensive page strategy for a {page_type} page.",
            "",
            "BUSINESS INFO:",
            f"Company: {research.get('company_name') or ctx.inputs.get('companyName') or 'Unknown'}",
            f"Industry: {research.get('industry') or 'Unknown'}",
            f"Offer: {ctx.inputs.get('offer') or 'See research'}",
            f"Value Props: {to_json(research.get('value_propositions') or [])}",
            f"Target Audience: {audience}",
            f"Tone: {ctx.inputs.get('tone') or 'Professional & Trustworthy'}",
            f"Brand Voice: {to_json(brand.get('brand_voice') or research.get('brand_voice') or {})}",
            "",
            f"DELIVERABLE: Create a detailed strategy for a {page_type} page. Return JSON:",
            OUTPUT_SHAPE,
        ]
    )
    response = ctx.generate(SYSTEM_PROMPT, prompt)
    return StepResult(output=StrategyOutput.model_validate(parse_json_or_raw(response.text)))

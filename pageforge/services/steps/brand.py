from __future__ import annotations

from pageforge.schemas.steps import BrandOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult, to_json

SYSTEM_PROMPT = (
    "You are an expert brand designer and visual identity specialist. Extract and define a complete "
    "brand guide from the provided information. Return valid JSON only."
)

OUTPUT_SHAPE = """{
  "colors": {"primary": "#hex", "secondary": "#hex", "accent": "#hex", "background": "#hex", "text": "#hex"},
  "typography": {"heading_font": "font-family", "body_font": "font-family", "heading_sizes": {"h1": "", "h2": "", "h3": ""}},
  "spacing": {"border_radius": "8px", "spacing_unit": "16px", "max_width": "1200px"},
  "button_style": {"border_radius": "", "padding": "", "font_weight": ""},
  "brand_voice": {"tone": "", "keywords": [""], "do": [""], "dont": [""]}
}"""


def run(ctx: StepContext) -> StepResult:
    research = ctx.output("research")
    website = research.get("website") if isinstance(research.get("website"), dict) else {}
    prompt = "\n".join(
        [
            "Create a brand guide for this business.",
            "",
            f"Company: {research.get('company_name') or ctx.inputs.get('companyName') or 'Unknown'}",
            f"Industry: {research.get('industry') or 'Unknown'}",
            f"Brand Voice: {to_json(research.get('brand_voice') or {})}",
            "",
            f"Colors found on website: {to_json(website.get('colors') or [])}",
            f"Fonts found on website: {to_json(website.get('fonts') or [])}",
            "",
            "Return a JSON object:",
            OUTPUT_SHAPE,
        ]
    )
    response = ctx.generate(SYSTEM_PROMPT, prompt, max_tokens=4096)
    return StepResult(output=BrandOutput.model_validate(parse_json_or_raw(response.text)))

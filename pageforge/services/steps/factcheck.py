from __future__ import annotations

from pageforge.config import settings
from pageforge.schemas.steps import FactcheckOutput
from pageforge.services.json_extract import parse_json_or_raw
from pageforge.services.steps.context import StepContext, StepResult, to_json

SYSTEM_PROMPT = (
    "You are a rigorous fact-checker and compliance reviewer. Analyze the landing page copy for accuracy, "
    "verify claims against source data, and flag any potentially misleading statements. Return valid JSON only."
)

OUTPUT_SHAPE = """{
  "verified_claims": [{"claim": "", "status": "verified|unverified|needs_source", "source": "string or null", "note": ""}],
  "flagged_issues": [{"issue": "", "severity": "low|medium|high", "suggestion": ""}],
  "compliance_notes": [""],
  "overall_score": 0-100,
  "recommendation": "approve|revise|reject"
}"""


def run(ctx: StepContext) -> StepResult:
    research = ctx.output("research")
    copy = ctx.output("copy")
    social_proof = copy.get("social_proof") if isinstance(copy.get("social_proof"), dict) else {}
    prompt = "\n".join(
        [
            "Fact-check this landing page content.",
            "",
            "ORIGINAL RESEARCH DATA:",
            f"Key Claims: {to_json(research.get('key_claims') or [])}",
            f"Testimonials: {to_json(research.get('testimonials') or [])}",
            f"Products: {to_json(research.get('products_services') or [])}",
            f"Sources: {to_json(research.get('citations') or [])}",
            "",
            "COPY TO VERIFY:",
            f"Headlines: {to_json(copy.get('headlines') or {})}",
            f"Body Sections: {to_json(copy.get('body_sections') or [])}",
            f"Social Proof Stats: {to_json(social_proof.get('stats') or [])}",
            "",
            "Return JSON:",
            OUTPUT_SHAPE,
        ]
    )
    response = ctx.generate(SYSTEM_PROMPT, prompt, model=settings.LLM_FAST_MODEL, max_tokens=4096)
    return StepResult(output=FactcheckOutput.model_validate(parse_json_or_raw(response.text)))

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from pageforge.db.enums import PipelineStepEnum


class StepOutput(BaseModel):
    """Base for per-step payloads. Unknown keys from the model are preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    # Unparseable model text is kept here instead of failing the step.
    raw: Optional[str] = None


class ResearchOutput(StepOutput):
    company_name: Optional[str] = None
    industry: Optional[str] = None
    tagline: Optional[str] = None
    value_propositions: Any = None
    products_services: Any = None
    target_audiences: Any = None
    testimonials: Any = None
    brand_voice: Any = None
    competitors: Any = None
    key_claims: Any = None
    website: Any = None
    citations: Any = Field(default_factory=list)


class BrandOutput(StepOutput):
    colors: Any = None
    typography: Any = None
    spacing: Any = None
    button_style: Any = None
    brand_voice: Any = None


class StrategyOutput(StepOutput):
    page_title: Optional[str] = None
    meta_description: Optional[str] = None
    hero_strategy: Any = None
    sections: Any = None
    psychology_plan: Any = None
    social_proof_plan: Any = None


class CopyOutput(StepOutput):
    headlines: Any = None
    hero: Any = None
    body_sections: Any = None
    social_proof: Any = None
    ctas: Any = None
    meta: Any = None


class DesignOutput(StepOutput):
    html: str
    template_type: str
    hero_image: Optional[dict[str, Any]] = None


class FactcheckOutput(StepOutput):
    verified_claims: Any = None
    flagged_issues: Any = None
    compliance_notes: Any = None
    overall_score: Any = None
    recommendation: Optional[str] = None


class AssemblyOutput(StepOutput):
    html: str
    page_id: str = Field(alias="pageId")
    page_name: str = Field(alias="pageName")
    slug: str
    factcheck_score: Optional[float] = Field(default=None, alias="factcheckScore")
    factcheck_recommendation: Optional[str] = Field(default=None, alias="factcheckRecommendation")


STEP_OUTPUT_MODELS: dict[str, type[StepOutput]] = {
    PipelineStepEnum.research.value: ResearchOutput,
    PipelineStepEnum.brand.value: BrandOutput,
    PipelineStepEnum.strategy.value: StrategyOutput,
    PipelineStepEnum.copy.value: CopyOutput,
    PipelineStepEnum.design.value: DesignOutput,
    PipelineStepEnum.factcheck.value: FactcheckOutput,
    PipelineStepEnum.assembly.value: AssemblyOutput,
}


def decode_step_output(step: str, payload: dict[str, Any]) -> StepOutput:
    model = STEP_OUTPUT_MODELS.get(step)
    if model is None:
        raise ValueError(f"Unknown pipeline step: {step}")
    return model.model_validate(payload)


def encode_step_output(output: StepOutput) -> dict[str, Any]:
    return output.model_dump(mode="json", by_alias=True, exclude_none=True)

from functools import lru_cache

from fastapi import Depends

from pageforge.llm.client import LLMClient
from pageforge.llm.images import GeminiImageGenerator
from pageforge.services.patch_engine import PatchEngine
from pageforge.services.pipeline import PipelineRunner
from pageforge.services.steps.context import ImageGenerator
from pageforge.storage import RecordStore, get_store


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    return LLMClient()


@lru_cache(maxsize=1)
def get_image_generator() -> ImageGenerator:
    return GeminiImageGenerator()


def get_pipeline_runner(
    store: RecordStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm_client),
    images: ImageGenerator = Depends(get_image_generator),
) -> PipelineRunner:
    return PipelineRunner(store, llm, images)


def get_patch_engine(llm: LLMClient = Depends(get_llm_client)) -> PatchEngine:
    return PatchEngine(llm)

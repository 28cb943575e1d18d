from typing import Callable

from pageforge.services.steps import assembly, brand, copy, design, factcheck, research, strategy
from pageforge.services.steps.context import StepContext, StepResult

STEP_HANDLERS: dict[str, Callable[[StepContext], StepResult]] = {
    "research": research.run,
    "brand": brand.run,
    "strategy": strategy.run,
    "copy": copy.run,
    "design": design.run,
    "factcheck": factcheck.run,
    "assembly": assembly.run,
}

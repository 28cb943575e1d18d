from enum import Enum


class PipelineStepEnum(str, Enum):
    research = "research"
    brand = "brand"
    strategy = "strategy"
    copy = "copy"
    design = "design"
    factcheck = "factcheck"
    assembly = "assembly"


class JobStatusEnum(str, Enum):
    pending = "pending"
    processing = "processing"
    complete = "complete"
    failed = "failed"


class DocumentStatusEnum(str, Enum):
    draft = "draft"
    published = "published"


class PageEventKindEnum(str, Enum):
    views = "views"
    leads = "leads"
    conversions = "conversions"

"""Queue processors and the default registry.

Token-driven matches are registered before path heuristics: COSTCO first, then the generic
document processor.
"""

from listrelay.config import COSTCO_SITE_PATH
from listrelay.processors.base import ProcessingContext, ProcessResult, Processor
from listrelay.processors.costco import COSTCO_PROCESSOR, CostcoProcessor, create_costco_processor
from listrelay.processors.generic_document import (
    GENERIC_DOCUMENT_PROCESSOR,
    GenericDocumentProcessor,
    create_generic_document_processor,
)
from listrelay.routing.registry import ProcessorDescriptor, ProcessorRegistry, token_or_path_matcher


def build_default_registry() -> ProcessorRegistry:
    registry = ProcessorRegistry()
    costco_paths = ("costco",) + ((COSTCO_SITE_PATH.lower(),) if COSTCO_SITE_PATH else ())
    registry.register(
        ProcessorDescriptor(
            name=COSTCO_PROCESSOR,
            matches=token_or_path_matcher(
                processor_values=("costco",),
                token_fragments=("costco",),
                path_fragments=costco_paths,
            ),
            factory=create_costco_processor,
            description="COSTCO routing forms with Status 'Send Generated Form'",
        )
    )
    registry.register(
        ProcessorDescriptor(
            name=GENERIC_DOCUMENT_PROCESSOR,
            matches=token_or_path_matcher(
                processor_values=("document", GENERIC_DOCUMENT_PROCESSOR),
                path_fragments=("documents", "/drives/"),
            ),
            factory=create_generic_document_processor,
            description="Any list or library item, all non-reserved fields",
        )
    )
    return registry


__all__ = [
    "COSTCO_PROCESSOR",
    "GENERIC_DOCUMENT_PROCESSOR",
    "CostcoProcessor",
    "GenericDocumentProcessor",
    "ProcessResult",
    "ProcessingContext",
    "Processor",
    "build_default_registry",
]

"""Planning stages and the orchestrator that runs them."""

from .orchestrator import RunOptions, StageOrchestrator, StageRunResult, StageStream
from .stages import STAGES, StageContext, StageDefinition, StageId, get_stage

__all__ = [
    "STAGES",
    "RunOptions",
    "StageContext",
    "StageDefinition",
    "StageId",
    "StageOrchestrator",
    "StageRunResult",
    "StageStream",
    "get_stage",
]

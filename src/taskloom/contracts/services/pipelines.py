from __future__ import annotations

from typing import Protocol

from taskloom.core.runtime.boundary_types import PipelineDefinition


class PipelineSource(Protocol):
    """
    Pipeline Definition collaborator as seen by the engine.

    Returns None when the pipeline (or its configuration) does not exist.
    """

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None: ...

from __future__ import annotations

import asyncio
import copy
from typing import Any

from taskloom.contracts.services.pipelines import PipelineSource
from taskloom.core.runtime.boundary_types import PipelineConfiguration, PipelineDefinition


class InMemoryPipelineSource(PipelineSource):
    """
    Process-local pipeline registry. Definitions are validated on registration and handed
    out as copies, so a run never observes later edits to the definition it started from.
    """

    def __init__(self) -> None:
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._lock = asyncio.Lock()

    def register(
        self,
        pipeline_id: str,
        configuration: PipelineConfiguration | dict[str, Any],
        *,
        name: str | None = None,
    ) -> PipelineDefinition:
        if not isinstance(configuration, PipelineConfiguration):
            configuration = PipelineConfiguration.model_validate(configuration)
        definition = PipelineDefinition(
            pipeline_id=pipeline_id,
            name=name or pipeline_id,
            configuration=configuration,
        )
        self._pipelines[pipeline_id] = definition
        return definition

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition | None:
        async with self._lock:
            found = self._pipelines.get(pipeline_id)
            return copy.deepcopy(found) if found is not None else None

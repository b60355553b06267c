"""
Contains base class for pipelines
"""
import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from core.entities import PipelineResult, ProgressEvent
from core.schemas import PipelineOptions


class Pipeline(ABC):
    """
    Orchestrates discovery → scoring → development
    for a single digest.
    """

    name: str

    @abstractmethod
    def run_with_progress(
        self,
        digest_id: str,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Execute the pipeline, yielding progress events and ending with
        exactly one "complete" or "error" event.
        """
        raise NotImplementedError

    @abstractmethod
    async def run(
        self,
        digest_id: str,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """
        Execute the pipeline and return its counters.
        Structural errors propagate; item-level errors are counted.
        """
        raise NotImplementedError

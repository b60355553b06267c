"""
Workflows module - Pipeline orchestration for cross-temporal synthesis.
"""
from workflows.base import Pipeline
from workflows.pipeline_factory import Services, create_services_from_config
from workflows.streaming import HEARTBEAT, with_heartbeat
from workflows.synthesis import SynthesisPipeline

__all__ = [
    "Pipeline",
    "SynthesisPipeline",
    "Services",
    "create_services_from_config",
    "HEARTBEAT",
    "with_heartbeat",
]

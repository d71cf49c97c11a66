"""Persistence layer."""

from .pipeline_store import PipelineStore

__all__ = ["PipelineStore"]

"""
Update pipeline for VersionKeeper.

This package provides:
- PipelineState / PipelineStateMachine: legal states and transitions of a run
- TemplateUpdater: interface of the collaborator that rewrites templates
- FileTemplateUpdater: TemplateUpdater over template directories on disk
- UpdatePipeline: detect, approve, back up, apply, roll back, validate
"""

from versionkeeper.updates.file_updater import FileTemplateUpdater
from versionkeeper.updates.pipeline import (
    PipelineOutcome,
    PipelineResult,
    UpdatePipeline,
)
from versionkeeper.updates.state_machine import PipelineState, PipelineStateMachine
from versionkeeper.updates.templates import TemplateUpdater

__all__ = [
    "FileTemplateUpdater",
    "PipelineOutcome",
    "PipelineResult",
    "PipelineState",
    "PipelineStateMachine",
    "TemplateUpdater",
    "UpdatePipeline",
]

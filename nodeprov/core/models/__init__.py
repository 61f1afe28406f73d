"""
Domain models — Pydantic types for the provisioner.

All models are re-exported here for convenient access:

    from nodeprov.core.models import Step, StepResult, NodeConfig
"""

from nodeprov.core.models.actions import (
    Action,
    BuildFromSource,
    FetchArchive,
    InstallPackages,
    ManageService,
    RepositorySpec,
    WriteConfig,
)
from nodeprov.core.models.node import (
    DeviceMapperConfig,
    NodeConfig,
    StorageConfig,
)
from nodeprov.core.models.step import (
    PipelineResult,
    PipelineState,
    Step,
    StepResult,
)
from nodeprov.core.models.template import ConfigTemplate, ServiceUnit

__all__ = [
    # actions.py
    "Action",
    "BuildFromSource",
    # template.py
    "ConfigTemplate",
    # node.py
    "DeviceMapperConfig",
    "FetchArchive",
    "InstallPackages",
    "ManageService",
    "NodeConfig",
    # step.py
    "PipelineResult",
    "PipelineState",
    "RepositorySpec",
    "ServiceUnit",
    "Step",
    "StepResult",
    "StorageConfig",
    "WriteConfig",
]

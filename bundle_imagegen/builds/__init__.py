"""Build orchestration subpackage.

Turns source bundles into container images: context preparation, recipe
generation, supervised runtime builds, registry pushes and retention.
"""

from bundle_imagegen.builds.retention import RetentionSweeper
from bundle_imagegen.builds.runner import BuildOutcome, ProcessSupervisor
from bundle_imagegen.builds.service import BuildOrchestrator

__all__ = [
    "BuildOrchestrator",
    "BuildOutcome",
    "ProcessSupervisor",
    "RetentionSweeper",
]

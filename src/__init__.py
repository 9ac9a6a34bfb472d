"""
vSphere VM Fleet OS Upgrade Tool.
"""

from aggregator import ResultAggregator
from clients import VSphereClient
from config import TimeoutConfig, UpgraderConfig, WorkflowDelays
from dispatcher import FleetDispatcher
from log_utils import setup_logging
from models import UpgradeJob, WorkflowOutcome
from snapshots import SnapshotCleaner
from upgrader import FleetUpgrader
from workflow import UpgradeWorkflow

__all__ = [
    "ResultAggregator",
    "VSphereClient",
    "TimeoutConfig",
    "UpgraderConfig",
    "WorkflowDelays",
    "FleetDispatcher",
    "setup_logging",
    "UpgradeJob",
    "WorkflowOutcome",
    "SnapshotCleaner",
    "FleetUpgrader",
    "UpgradeWorkflow",
]

"""patchpilot: turn change requests into verified commits in disposable sandboxes."""

from .config import Settings, load_settings
from .orchestrator import JobOrchestrator, JobResult, run_jobs
from .repair import RepairPipeline
from .schema import Job, JobState, JobStatus, ProjectRef

__version__ = "0.1.0"

__all__ = [
    "Job",
    "JobOrchestrator",
    "JobResult",
    "JobState",
    "JobStatus",
    "ProjectRef",
    "RepairPipeline",
    "Settings",
    "load_settings",
    "run_jobs",
]

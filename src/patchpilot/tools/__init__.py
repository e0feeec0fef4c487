"""Git, diff and verification tooling used by the job loop."""

from .patch import (
    Applicable,
    DiffLimits,
    NoChanges,
    PatchError,
    PatchResult,
    Rejected,
    ValidationOutcome,
    apply_patch,
    validate_candidate,
)
from .preflight import PreflightReport, PreflightStageConfig, StageResult, run_command, run_preflight
from .vcs import GitCheckpoint, GitError, GitRepository

__all__ = [
    "Applicable",
    "DiffLimits",
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "NoChanges",
    "PatchError",
    "PatchResult",
    "PreflightReport",
    "PreflightStageConfig",
    "Rejected",
    "StageResult",
    "ValidationOutcome",
    "apply_patch",
    "run_command",
    "run_preflight",
    "validate_candidate",
]

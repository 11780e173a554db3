from .controller import ControlResult, ServiceController
from .decommission import DecommissionSummary, Decommissioner
from .errors import CollaboratorFailure, PbHostError, PreconditionError, ReleaseError, ValidationError
from .model import Configuration, HostLayout, ProvisionedArtifact
from .reconciler import Reconciler, ReconcilerState, RunResult
from .runner import CommandRunner
from .steps import DEFAULT_STEPS, Step, StepState

__all__ = [
    "CollaboratorFailure",
    "CommandRunner",
    "Configuration",
    "ControlResult",
    "DEFAULT_STEPS",
    "DecommissionSummary",
    "Decommissioner",
    "HostLayout",
    "PbHostError",
    "PreconditionError",
    "ProvisionedArtifact",
    "Reconciler",
    "ReconcilerState",
    "ReleaseError",
    "RunResult",
    "ServiceController",
    "Step",
    "StepState",
    "ValidationError",
]

from .deprovision import DeprovisionWorkflow, StepResult, StepResults
from .provision import ProvisionWorkflow
from .quota import QuotaGuard
from .reaper import IdleReaper, ReapReport
from .service import ClientConfigBundle, SessionOrchestrator, SessionStatusView

__all__ = [
    "ClientConfigBundle",
    "DeprovisionWorkflow",
    "IdleReaper",
    "ProvisionWorkflow",
    "QuotaGuard",
    "ReapReport",
    "SessionOrchestrator",
    "SessionStatusView",
    "StepResult",
    "StepResults",
]

"""Reconciliation and coordination infrastructure."""

from __future__ import annotations

from .certificates import PreflightError, find_match, plan_certificates, preflight
from .coordinator import BusyStateCoordinator, CancelToken
from .dispatch import GatewayDispatcher
from .domains import plan_domains
from .engine import ReconcileEngine
from .models import (
    ActionKind,
    ActionResult,
    DesiredCertificate,
    DesiredDomain,
    DesiredVariable,
    FailureCause,
    ReconciliationAction,
    RemoteCertificate,
    RemoteDomain,
    RemoteError,
    RemoteErrorKind,
    RemoteStateGateway,
    RemoteVariable,
    ResourceKind,
    ResourceReadiness,
    ResourceRef,
    ResultStatus,
)
from .outcome import RunOutcome
from .planner import PlanValidationError, plan_variables

__all__ = [
    "ActionKind",
    "ActionResult",
    "BusyStateCoordinator",
    "CancelToken",
    "DesiredCertificate",
    "DesiredDomain",
    "DesiredVariable",
    "FailureCause",
    "GatewayDispatcher",
    "PlanValidationError",
    "PreflightError",
    "ReconcileEngine",
    "ReconciliationAction",
    "RemoteCertificate",
    "RemoteDomain",
    "RemoteError",
    "RemoteErrorKind",
    "RemoteStateGateway",
    "RemoteVariable",
    "ResourceKind",
    "ResourceReadiness",
    "ResourceRef",
    "ResultStatus",
    "RunOutcome",
    "find_match",
    "plan_certificates",
    "plan_domains",
    "plan_variables",
    "preflight",
]

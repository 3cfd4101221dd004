# Models package

from .fee_schedule import FeeSchedule, FeeScheduleStatus, FeeConfiguration
from .permit_type import PermitType, PermitKind, InspectionType
from .permit import Permit, PermitStatus, ReviewStatus
from .permit_comment import PermitComment, CommentVisibility
from .counter import PermitCounter
from .inspection import PermitInspection, InspectionStatus, InspectionResult
from .checklist_template import InspectionChecklistTemplate
from .inspection_settings import InspectionSettings
from .inspector_schedule import InspectorDaySchedule
from .inspection_issue import InspectionIssue, IssueStatus
from .payment_account import PaymentAccount

DOCUMENT_MODELS = [
    FeeSchedule,
    PermitType,
    Permit,
    PermitComment,
    PermitCounter,
    PermitInspection,
    InspectionChecklistTemplate,
    InspectionSettings,
    InspectorDaySchedule,
    InspectionIssue,
    PaymentAccount,
]

__all__ = [
    "FeeSchedule",
    "FeeScheduleStatus",
    "FeeConfiguration",
    "PermitType",
    "PermitKind",
    "InspectionType",
    "Permit",
    "PermitStatus",
    "ReviewStatus",
    "PermitComment",
    "CommentVisibility",
    "PermitCounter",
    "PermitInspection",
    "InspectionStatus",
    "InspectionResult",
    "InspectionChecklistTemplate",
    "InspectionSettings",
    "InspectorDaySchedule",
    "InspectionIssue",
    "IssueStatus",
    "PaymentAccount",
    "DOCUMENT_MODELS",
]

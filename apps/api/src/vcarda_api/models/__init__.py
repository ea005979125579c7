"""SQLAlchemy models package."""

# Import all models
from .user import User, UserRoleEnum, UserStatusEnum  # noqa: F401
from .business import Business, BusinessStaffMember, LoyaltyProgram  # noqa: F401
from .loyalty import (  # noqa: F401
    CardBalanceView,
    EnrollmentStatus,
    LoyaltyCard,
    PointTransaction,
    PointTransactionSource,
    ProgramEnrollment,
)
from .token import (  # noqa: F401
    QrScanLog,
    QrToken,
    QrTokenArchive,
    TokenArchiveStatus,
    TokenStatus,
    TokenSubjectKind,
)
from .notification import Notification, NotificationCategory, NotificationStatus  # noqa: F401
from .reconciliation import (  # noqa: F401
    BalanceDiscrepancy,
    DiscrepancyKind,
    ReconciliationRun,
    ReconciliationRunStatus,
)

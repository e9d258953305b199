import enum


class JobStatus(str, enum.Enum):
    ON_GOING = "OG"
    WAITING_PARTS = "WP"
    FOR_PLOTTING = "FP"
    QUALITY_INSPECTION = "QI"
    HOLD_CUSTOMER = "HC"
    HOLD_WARRANTY = "HW"
    HOLD_INSURANCE = "HI"
    HOLD_FORD = "HF"
    SUBLET = "SU"
    FOR_RELEASE = "FR"
    FINISHED_UNCLAIMED = "FU"
    COMPLETE = "CP"
    UNASSIGNED = "UA"  # legacy


# Plain values, matching the strings stored on rows
TERMINAL_STATUSES = frozenset({"FR", "FU", "CP"})
HOLD_STATUSES = frozenset({"HC", "HW", "HI", "HF"})


class QIStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, enum.Enum):
    FINISHED = "Finished"
    UNFINISHED = "Unfinished"


class PartAvailability(str, enum.Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"


class SourceType(str, enum.Enum):
    APPOINTMENT = "appointment"
    CARRY_OVER = "carry-over"
    DIRECT = "direct"


class Role(str, enum.Enum):
    ADMINISTRATOR = "administrator"
    JOB_CONTROLLER = "job-controller"
    TECHNICIAN = "technician"
    SERVICE_ADVISOR = "service-advisor"


class TechnicianLevel(str, enum.Enum):
    UNTRAINED = "untrained"
    LEVEL_0 = "level-0"
    LEVEL_1 = "level-1"
    LEVEL_2 = "level-2"
    LEVEL_3 = "level-3"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT_CHANGE = "assignment_change"
    FINANCIAL_CHANGE = "financial_change"
    LOGIN = "login"
    LOGOUT = "logout"
    PERMISSION_DENIED = "permission_denied"


class EntityType(str, enum.Enum):
    JOB_ORDER = "JobOrder"
    USER = "User"
    APPOINTMENT = "Appointment"
    BUG_REPORT = "BugReport"
    MAINTENANCE_SETTINGS = "MaintenanceSettings"
    SYSTEM = "System"


class LogLevel(str, enum.Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    AUDIT = "audit"


class BugStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class BugPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

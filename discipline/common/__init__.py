"""Common module — shared utilities for the point engine."""

from discipline.common.audit import AuditTrail, create_audit_entry
from discipline.common.constants import (
    DATE_FORMAT,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PERMISSIONS,
    ExpirationKind,
    NotificationType,
    PointStatus,
    UserRole,
    ViolationType,
)
from discipline.common.exceptions import (
    AppException,
    ForbiddenException,
    InvalidPointStateError,
    NotFoundException,
    ValidationException,
    register_exception_handlers,
)
from discipline.common.pagination import (
    PaginationMeta,
    PaginationParams,
    build_meta,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "ExpirationKind",
    "NotificationType",
    "PointStatus",
    "UserRole",
    "ViolationType",
    "PERMISSIONS",
    "DATE_FORMAT",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "ForbiddenException",
    "InvalidPointStateError",
    "NotFoundException",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginationMeta",
    "PaginationParams",
    "build_meta",
    "paginate",
]

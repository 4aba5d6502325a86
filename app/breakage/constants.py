"""
Central constants for the breakage tracker.
"""
from __future__ import annotations

ROLE_ADMIN = "admin"
ROLE_USER = "user"
VALID_ROLES = (ROLE_ADMIN, ROLE_USER)

USER_ACTIVE = "active"
USER_INACTIVE = "inactive"
VALID_USER_STATUSES = (USER_ACTIVE, USER_INACTIVE)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
VALID_SUBMISSION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

OPERATION_BREAKAGE = "breakage"
OPERATION_EXCHANGE = "exchange"
VALID_OPERATION_TYPES = (OPERATION_BREAKAGE, OPERATION_EXCHANGE)

# Photo uploads
ALLOWED_PHOTO_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "heic"})
PHOTO_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "heic": "image/heic",
}

MIN_PASSWORD_LENGTH = 6

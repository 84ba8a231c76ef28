OFFERED = "offered"
ACCEPTED = "accepted"
REJECTED = "rejected"
EXPIRED = "expired"
STARTED = "started"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_ASSIGNMENT_STATUSES = {OFFERED, ACCEPTED, STARTED}
# statuses that hold the worker's buffer window
BUSY_ASSIGNMENT_STATUSES = {ACCEPTED, STARTED}

ASSIGNED_BY_POOL = "pool"
ASSIGNED_BY_ADMIN = "admin"

REASON_BUFFER_CONFLICT = "buffer_conflict"
REASON_DECLINED = "declined"

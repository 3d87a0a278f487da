PENDING = "pending"
PROCESSING = "processing"
CONFIRMED = "confirmed"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
FAILED = "failed"

ALL_STATUSES = (PENDING, PROCESSING, CONFIRMED, SHIPPED, DELIVERED, CANCELLED, FAILED)

# processing and confirmed are the same step under two names
_RANK = {
    PENDING: 0,
    PROCESSING: 1,
    CONFIRMED: 1,
    SHIPPED: 2,
    DELIVERED: 3,
}

# Escape hatches, only valid before anything has been paid or fulfilled
_ONLY_FROM_PENDING = {CANCELLED, FAILED}

# A failed order can still be paid by a fresh attempt
_FROM_FAILED = {PROCESSING, CONFIRMED}

TERMINAL = {DELIVERED, CANCELLED}


class InvalidTransition(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    if target not in ALL_STATUSES:
        return False
    if current == target:
        return True
    if current in TERMINAL:
        return False
    if current == FAILED:
        return target in _FROM_FAILED
    if target in _ONLY_FROM_PENDING:
        return current == PENDING
    return _RANK[target] > _RANK.get(current, -1)


def check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

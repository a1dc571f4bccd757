"""Error kinds raised by the inventory lifecycle services.

Callers (HTTP layer, CLIs, workers) map these onto their own error format.
Every error is raised before or during the owning transaction, so the
transaction is rolled back and no audit entry is written, with the single
exception of PartialFailureError, which reports on work that has already
been committed.
"""


class InventoryError(Exception):
    """Base class for every inventory lifecycle error."""


class NotFoundError(InventoryError):
    def __init__(self, entity: str, key: str, hub_id: str | None = None):
        self.entity = entity
        self.key = key
        self.hub_id = hub_id
        where = f" at hub {hub_id}" if hub_id else ""
        super().__init__(f"{entity} {key} not found{where}")


class InvalidTransitionError(InventoryError):
    def __init__(self, uid: str, from_status, to_status):
        self.uid = uid
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for {uid}: {_label(from_status)} -> {_label(to_status)}"
        )


class TestFailureError(InventoryError):
    __test__ = False  # not a pytest test class

    def __init__(self, uid: str, read_passed: bool, write_passed: bool):
        self.uid = uid
        self.read_passed = read_passed
        self.write_passed = write_passed
        super().__init__(
            f"{uid} has not passed read/write tests "
            f"(read={read_passed}, write={write_passed}) and cannot be reserved"
        )


class NoStockError(InventoryError):
    def __init__(self, hub_id: str, lot: str | None = None, requested: int = 1, available: int = 0):
        self.hub_id = hub_id
        self.lot = lot
        self.requested = requested
        self.available = available
        lot_part = f" in lot {lot}" if lot else ""
        super().__init__(
            f"No eligible stock at hub {hub_id}{lot_part}: requested {requested}, available {available}"
        )


class ConcurrencyConflictError(InventoryError):
    def __init__(self, uid: str, expected_status):
        self.uid = uid
        self.expected_status = expected_status
        super().__init__(
            f"{uid} was modified by another writer (expected status {_label(expected_status)}); retry"
        )


class PartialFailureError(InventoryError):
    def __init__(self, result, failures: list):
        self.result = result
        self.failures = failures
        super().__init__(
            f"Bulk operation applied to a subset of units; {len(failures)} failed: "
            + ", ".join(f.uid for f in failures)
        )


def _label(status) -> str:
    if status is None:
        return "n/a"
    return getattr(status, "value", status)

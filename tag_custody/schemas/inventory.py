import json
from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from tag_custody.models.inventory_unit import UnitKind, UnitStatus


class EvidenceFile(BaseModel):
    name: str
    path: str
    type: str = "document"
    uploaded_by: str | None = None  # defaults to the acting user


class TestResults(BaseModel):
    __test__ = False  # not a pytest test class

    read_passed: bool = False
    write_passed: bool = False
    notes: str = ""
    tested_at: datetime | None = None

    @property
    def passed(self) -> bool:
        return self.read_passed and self.write_passed


class ReceiveBatch(BaseModel):
    hub_id: str
    lot: str
    quantity: int = Field(gt=0)
    kind: UnitKind = UnitKind.NFC_CHIP
    uids: list[str] = []  # explicit UIDs; generated for the remainder
    supplier_ref: str = ""
    test_results: TestResults | None = None
    received_at: datetime | None = None
    evidence: list[EvidenceFile] = []

    @model_validator(mode="after")
    def check_uids(self):
        if len(self.uids) > self.quantity:
            raise ValueError("More UIDs supplied than quantity")
        if len(set(self.uids)) != len(self.uids):
            raise ValueError("Duplicate UIDs in batch")
        return self


class ReserveRequest(BaseModel):
    shipment_id: str
    hub_id: str
    uid: str | None = None  # omit to take the oldest eligible unit at the hub
    lot: str | None = None
    kind: UnitKind | None = None


class InstallRequest(BaseModel):
    uid: str
    hub_id: str
    test_results: TestResults = TestResults(read_passed=True, write_passed=True)
    evidence: list[EvidenceFile] = []


class RMARequest(BaseModel):
    uid: str
    reason_code: str
    notes: str = ""
    replacement_uid: str | None = None
    evidence: list[EvidenceFile] = []


class QuarantineRequest(BaseModel):
    lot: str
    hub_id: str | None = None
    reason: str


class UnitFailure(BaseModel):
    uid: str
    error: str
    message: str

    @classmethod
    def from_error(cls, uid: str, error: Exception) -> "UnitFailure":
        return cls(uid=uid, error=type(error).__name__, message=str(error))


class QuarantineResult(BaseModel):
    lot: str
    hub_id: str | None = None
    reason: str
    affected_count: int = 0
    affected_uids: list[str] = []
    failures: list[UnitFailure] = []


class LiftResult(BaseModel):
    lot: str
    hub_id: str | None = None
    reason: str
    restored_count: int = 0
    restored_uids: list[str] = []
    failures: list[UnitFailure] = []


class UnitOut(BaseModel):
    uid: str
    kind: UnitKind
    status: UnitStatus
    lot: str
    supplier_ref: str
    current_hub_id: str | None
    assigned_shipment_id: str | None
    read_test_passed: bool
    write_test_passed: bool
    last_tested_at: datetime | None
    test_notes: str
    received_at: datetime | None
    assigned_at: datetime | None
    installed_at: datetime | None
    rma_initiated_at: datetime | None
    quarantined: bool
    transfer_id: str | None

    model_config = {"from_attributes": True}


class EvidenceOut(BaseModel):
    file_name: str
    file_type: str
    file_path: str
    uploaded_by: str
    created_at: datetime | None

    model_config = {"from_attributes": True}


class AuditEntryOut(BaseModel):
    id: int
    entity_table: str
    entity_id: str
    action: str
    field_name: str
    old_value: str | None
    new_value: str | None
    reason: str
    details: dict = {}
    actor_id: str
    created_at: datetime
    evidence: list[EvidenceOut] = []

    model_config = {"from_attributes": True}

    @field_validator("details", mode="before")
    @classmethod
    def parse_details(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v else {}
        return v


class LotCount(BaseModel):
    lot: str
    count: int


class HubStockSummary(BaseModel):
    hub_id: str
    available: int = 0
    available_tested_good: int = 0
    assigned: int = 0
    installed: int = 0
    in_transit: int = 0
    defective: int = 0
    quarantined: int = 0
    rma: int = 0
    total: int = 0
    installed_last_7_days: int = 0
    installed_last_30_days: int = 0
    burn_rate_7d: float = 0.0  # installs per day
    burn_rate_30d: float = 0.0
    days_of_cover: int | None = None  # None when nothing is being installed
    threshold: int = 0
    status_color: str = "green"  # green, amber or red
    low_stock: bool = False


class StockCheck(BaseModel):
    hub_id: str
    required: int
    available: int
    available_tested_good: int
    can_proceed: bool
    suggestion: str | None = None

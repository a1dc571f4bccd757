from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from tag_custody.models.transfer import TransferStatus


class TransferCreate(BaseModel):
    from_hub_id: str
    to_hub_id: str
    uids: list[str] = []
    quantity: int | None = Field(default=None, gt=0)
    reason: str = "Hub transfer"
    eta: datetime | None = None

    @model_validator(mode="after")
    def check_selection(self):
        if self.from_hub_id == self.to_hub_id:
            raise ValueError("Source and destination hub must differ")
        if not self.uids and not self.quantity:
            raise ValueError("Either uids or quantity is required")
        if self.uids and self.quantity:
            raise ValueError("Give either uids or quantity, not both")
        if len(set(self.uids)) != len(self.uids):
            raise ValueError("Duplicate UIDs in transfer")
        return self


class TransferComplete(BaseModel):
    transfer_id: str
    to_hub_id: str
    arrived_uids: list[str]


class TransferOut(BaseModel):
    id: str
    from_hub_id: str
    to_hub_id: str
    reason: str
    eta: datetime | None
    status: TransferStatus
    uids: list[str]
    pending_uids: list[str]
    arrived_uids: list[str]
    closed_uids: list[str]
    created_by: str
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}

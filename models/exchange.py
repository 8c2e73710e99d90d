"""
Blood Exchange API Models

Enums for the lifecycle states of units, offers, requests and transfers, and
Pydantic request bodies for the HTTP surface.
"""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class Component(str, Enum):
    RED_CELLS = "red_cells"
    PLASMA = "plasma"
    PLATELETS = "platelets"
    CRYOPRECIPITATE = "cryoprecipitate"
    WHOLE_BLOOD = "whole_blood"


class AboGroup(str, Enum):
    A = "A"
    B = "B"
    AB = "AB"
    O = "O"


class RhFactor(str, Enum):
    POSITIVE = "+"
    NEGATIVE = "-"


class UnitState(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    IN_TRANSIT = "in_transit"
    TRANSFERRED = "transferred"
    EXPIRED = "expired"          # only ever seen in units_history


class OfferState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class RequestState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PARTIAL = "partial"


class TransferState(str, Enum):
    CREATED = "created"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class TransferAction(str, Enum):
    SEND = "send"
    RECEIVE = "receive"
    CANCEL = "cancel"


class NotificationKind(str, Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_STATE_CHANGED = "request_state_changed"
    OFFER_CREATED = "offer_created"
    OFFER_STATE_CHANGED = "offer_state_changed"
    OFFER_CANCELLED_BY_EXPIRY = "offer_cancelled_by_expiry"
    TRANSFER_CREATED = "transfer_created"
    TRANSFER_STATE_CHANGED = "transfer_state_changed"


# =============================================================================
# Request bodies
# =============================================================================

class UnitCreate(BaseModel):
    """Register a unit into the caller's inventory"""
    component: Component
    abo: AboGroup
    rh: RhFactor
    filtered: bool = False
    irradiated: bool = False
    collected_at: Optional[date] = None
    expires_at: datetime


class OfferCreate(BaseModel):
    unit_ids: List[str] = Field(..., min_length=1)
    note: Optional[str] = None


class RequestCreate(BaseModel):
    component: Component
    abo: AboGroup
    rh: RhFactor
    quantity: int = Field(..., ge=1, le=500)
    urgent: bool = False
    filtered: bool = False
    irradiated: bool = False
    note: Optional[str] = None


class AllocateFromRequest(BaseModel):
    request_id: str
    unit_ids: List[str] = Field(..., min_length=1)
    note: Optional[str] = None


class AllocateFromOffer(BaseModel):
    offer_id: str
    unit_ids: Optional[List[str]] = None   # None / empty = every free unit of the offer


class OfferStateChange(BaseModel):
    new_state: OfferState


class RequestStateChange(BaseModel):
    new_state: RequestState

    @field_validator("new_state")
    @classmethod
    def not_accepted(cls, v: RequestState) -> RequestState:
        if v == RequestState.ACCEPTED:
            raise ValueError("accepted is only reachable through allocation")
        return v


class TransferAdvance(BaseModel):
    action: TransferAction


class SweepRun(BaseModel):
    job: str = Field(..., pattern="^(requests|inventory|watchdog|all)$")

"""
Blood Exchange Models Package
"""

from .exchange import (
    # Enums
    Component,
    AboGroup,
    RhFactor,
    UnitState,
    OfferState,
    RequestState,
    TransferState,
    TransferAction,
    NotificationKind,

    # Request bodies
    UnitCreate,
    OfferCreate,
    RequestCreate,
    AllocateFromRequest,
    AllocateFromOffer,
    OfferStateChange,
    RequestStateChange,
    TransferAdvance,
    SweepRun,
)

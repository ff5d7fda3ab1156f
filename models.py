"""
Shop Floor Update Ingestion — Core Pydantic Models

Records for the three mutable entities (machines, safety areas, orders),
the append-only safety log, the partial updates the extractors produce,
the error taxonomy, and the enum normalizers.
"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID, uuid4
from pydantic import BaseModel, ConfigDict, Field

# ============================================================
# Enums
# ============================================================

class MachineStatus(str, Enum):
    RUNNING = "Running"
    IDLE = "Idle"
    MAINTENANCE = "Maintenance"
    ERROR = "Error"

class SafetyStatus(str, Enum):
    SAFE = "Safe"
    WARNING = "Warning"
    CRITICAL = "Critical"
    MAINTENANCE = "Maintenance"

class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

class PPECompliance(str, Enum):
    COMPLIANT = "Compliant"
    NON_COMPLIANT = "NonCompliant"
    PARTIAL = "Partial"

class OrderStage(str, Enum):
    PLANNING = "Planning"
    PRODUCTION = "Production"
    QUALITY = "Quality"
    PACKAGING = "Packaging"
    SHIPPING = "Shipping"
    COMPLETED = "Completed"

class OrderPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"

class OrderStatus(str, Enum):
    ACTIVE = "Active"
    ON_HOLD = "OnHold"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

class IntentType(str, Enum):
    MACHINE_UPDATE = "MACHINE_UPDATE"
    SAFETY_UPDATE = "SAFETY_UPDATE"
    ORDER_UPDATE = "ORDER_UPDATE"
    UNKNOWN = "UNKNOWN"

class EntityKind(str, Enum):
    MACHINE = "machine"
    SAFETY_AREA = "safety_area"
    ORDER = "order"

INTENT_KINDS: dict[IntentType, EntityKind] = {
    IntentType.MACHINE_UPDATE: EntityKind.MACHINE,
    IntentType.SAFETY_UPDATE: EntityKind.SAFETY_AREA,
    IntentType.ORDER_UPDATE: EntityKind.ORDER,
}

# ============================================================
# Errors
# ============================================================

class UpdateError(Exception):
    """Base class for every caller-visible failure of the update core."""


class ExtractionError(UpdateError):
    """Text was classified but its mandatory key could not be found."""

    def __init__(self, intent: IntentType, text: str, message: Optional[str] = None):
        self.intent = intent
        self.text = text
        super().__init__(message or f"Could not extract key for {intent.value} from: {text!r}")


class UpdateValidationError(UpdateError, ValueError):
    """A supplied field value violates its constraint or enumeration."""

    def __init__(self, field: str, value: Any, allowed: tuple[str, ...] = (),
                 message: Optional[str] = None):
        self.field = field
        self.value = value
        self.allowed = tuple(allowed)
        if message is None:
            if self.allowed:
                message = f"Invalid {field}: {value}. Must be one of: {', '.join(self.allowed)}"
            else:
                message = f"Invalid {field}: {value}"
        super().__init__(message)


class PersistenceError(UpdateError):
    """The record store could not complete the operation."""

# ============================================================
# Records (persisted state)
# ============================================================

class Machine(BaseModel):
    machine_id: str
    name: str
    status: MachineStatus
    output: int = Field(ge=0)
    error_message: Optional[str] = None
    operator: Optional[str] = None
    last_updated: datetime

class SafetyArea(BaseModel):
    area_name: str
    zone: str
    ppe_required: str
    risk_level: RiskLevel
    status: SafetyStatus
    notes: Optional[str] = None
    last_inspection: datetime

class SafetyLog(BaseModel):
    """One compliance event. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    area_name: str
    zone: str
    ppe_compliance: PPECompliance
    incident_type: Optional[str] = None
    description: Optional[str] = None
    reported_by: Optional[str] = None
    created_at: datetime

class Order(BaseModel):
    order_id: str
    customer_name: Optional[str] = None
    stage: OrderStage
    priority: OrderPriority
    quantity: int = Field(ge=0)
    materials: Optional[str] = None
    eta: Optional[str] = None
    status: OrderStatus
    assigned_to: Optional[str] = None
    created_at: datetime
    updated_at: datetime

Record = Union[Machine, SafetyArea, Order]

# ============================================================
# Partial Updates (extractor / API input)
# ============================================================
# Only the fields actually supplied end up in ``model_fields_set``;
# ``model_dump(exclude_unset=True)`` is the patch.

class MachineUpdate(BaseModel):
    machine_id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    output: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None
    operator: Optional[str] = None

class SafetyAreaUpdate(BaseModel):
    area_name: Optional[str] = None
    zone: Optional[str] = None
    ppe_required: Optional[str] = None
    risk_level: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

class OrderUpdate(BaseModel):
    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    stage: Optional[str] = None
    priority: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    materials: Optional[str] = None
    eta: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[str] = None

PartialUpdate = Union[MachineUpdate, SafetyAreaUpdate, OrderUpdate]

class SafetyLogEntry(BaseModel):
    area_name: Optional[str] = None
    zone: Optional[str] = None
    ppe_compliance: Optional[str] = None
    incident_type: Optional[str] = None
    description: Optional[str] = None
    reported_by: Optional[str] = None

# ============================================================
# Per-Kind Lookup Tables
# ============================================================

RECORD_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.MACHINE: Machine,
    EntityKind.SAFETY_AREA: SafetyArea,
    EntityKind.ORDER: Order,
}

UPDATE_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.MACHINE: MachineUpdate,
    EntityKind.SAFETY_AREA: SafetyAreaUpdate,
    EntityKind.ORDER: OrderUpdate,
}

KEY_FIELDS: dict[EntityKind, str] = {
    EntityKind.MACHINE: "machine_id",
    EntityKind.SAFETY_AREA: "area_name",
    EntityKind.ORDER: "order_id",
}

# Refreshed on every successful update
TIMESTAMP_FIELDS: dict[EntityKind, str] = {
    EntityKind.MACHINE: "last_updated",
    EntityKind.SAFETY_AREA: "last_inspection",
    EntityKind.ORDER: "updated_at",
}

# Fields constrained to a closed enumeration, per kind
ENUM_FIELDS: dict[EntityKind, dict[str, type[Enum]]] = {
    EntityKind.MACHINE: {"status": MachineStatus},
    EntityKind.SAFETY_AREA: {"status": SafetyStatus, "risk_level": RiskLevel},
    EntityKind.ORDER: {"stage": OrderStage, "priority": OrderPriority, "status": OrderStatus},
}

# ============================================================
# Utility: Enum Normalizers
# ============================================================
# Stem tables are evaluated top to bottom; the first stem contained in the
# lowercased word wins. Order matters for ambiguous words.

MACHINE_STATUS_STEMS: list[tuple[tuple[str, ...], MachineStatus]] = [
    (("run",), MachineStatus.RUNNING),
    (("idle",), MachineStatus.IDLE),
    (("maintain",), MachineStatus.MAINTENANCE),
    (("error", "down"), MachineStatus.ERROR),
]

ORDER_STAGE_STEMS: list[tuple[tuple[str, ...], OrderStage]] = [
    (("plan",), OrderStage.PLANNING),
    (("product",), OrderStage.PRODUCTION),
    (("quality", "qc"), OrderStage.QUALITY),
    (("pack",), OrderStage.PACKAGING),
    (("ship",), OrderStage.SHIPPING),
    (("complete", "done"), OrderStage.COMPLETED),
]


def title_case(word: str) -> str:
    """'rUNNING' -> 'Running'. First letter upper, rest lower."""
    return word[:1].upper() + word[1:].lower()


def _normalize_by_stems(word: str, table: list[tuple[tuple[str, ...], Enum]]) -> str:
    lowered = word.strip().lower()
    for stems, canonical in table:
        if any(stem in lowered for stem in stems):
            return canonical.value
    # Unrecognized vocabulary passes through; the validator is the final gate
    return title_case(word.strip())


def normalize_machine_status(word: str) -> str:
    return _normalize_by_stems(word, MACHINE_STATUS_STEMS)


def normalize_order_stage(word: str) -> str:
    return _normalize_by_stems(word, ORDER_STAGE_STEMS)


def match_closed_enum(word: Optional[str], enum_cls: type[Enum]) -> Optional[str]:
    """Case-insensitive equality against a closed enumeration.

    Returns the canonical value, or None when nothing matches.
    """
    if not word:
        return None
    lowered = word.strip().lower()
    for member in enum_cls:
        if member.value.lower() == lowered:
            return member.value
    return None


def allowed_values(enum_cls: type[Enum]) -> tuple[str, ...]:
    return tuple(m.value for m in enum_cls)

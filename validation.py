"""
Shop Floor Update Ingestion — Update Validator

Last gate before a partial update is committed:
  1. Coerce raw input into the kind's partial update model
  2. Reject enum fields holding anything but a canonical value
  3. Apply machine status rules (error description, idle output)
  4. Fill creation defaults when the record does not exist yet
  5. Stamp the last-modified timestamp
"""
from __future__ import annotations
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from config import Settings, get_settings
from models import (
    ENUM_FIELDS, KEY_FIELDS, TIMESTAMP_FIELDS, UPDATE_MODELS,
    EntityKind, MachineStatus, OrderPriority, OrderStage, OrderStatus,
    PartialUpdate, PPECompliance, Record, RiskLevel, SafetyLog,
    SafetyLogEntry, SafetyStatus, UpdateValidationError, allowed_values,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidatedUpdate:
    """Fields ready to be merged into (or to create) one record.

    ``fields`` is the patch: supplied values, derived values and the fresh
    timestamp. ``defaults`` is only populated when no record existed at
    validation time.
    """
    kind: EntityKind
    key: str
    fields: dict[str, Any] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def is_new(self) -> bool:
        return bool(self.defaults)

    def record_data(self, settings: Optional[Settings] = None) -> dict[str, Any]:
        """Full field set for creating the record."""
        data = dict(self.defaults) or creation_defaults(self.kind, self.key, settings)
        data.update(self.fields)
        data[KEY_FIELDS[self.kind]] = self.key
        return data


# ============================================================
# Input Coercion
# ============================================================

def _coerce(model: type[BaseModel], update: Any, label: str) -> BaseModel:
    if isinstance(update, model):
        return update
    if isinstance(update, BaseModel):
        update = update.model_dump(exclude_unset=True)
    if not isinstance(update, Mapping):
        raise UpdateValidationError(
            label, type(update).__name__,
            message=f"Expected a mapping for {label}, got {type(update).__name__}")
    try:
        return model.model_validate(dict(update))
    except ValidationError as e:
        first = e.errors()[0]
        loc = first.get('loc') or (label,)
        raise UpdateValidationError(
            str(loc[0]), first.get('input'),
            message=f"Invalid {loc[0]}: {first.get('msg')}") from e


def coerce_update(kind: EntityKind, update: Any) -> PartialUpdate:
    return _coerce(UPDATE_MODELS[kind], update, f"{kind.value} update")


def supplied_fields(update: BaseModel) -> dict[str, Any]:
    """Fields explicitly set, with null and blank values dropped."""
    result = {}
    for k, v in update.model_dump(exclude_unset=True).items():
        if isinstance(v, str):
            v = v.strip()
        if v is None or v == '':
            continue
        result[k] = v
    return result


def check_enum(field_name: str, value: Any, enum_cls: type[Enum]) -> Enum:
    if isinstance(value, enum_cls):
        return value
    allowed = allowed_values(enum_cls)
    if value not in allowed:
        raise UpdateValidationError(field_name, value, allowed)
    return enum_cls(value)


# ============================================================
# Defaults
# ============================================================

def zone_from_area(area_name: str, suffix: str) -> str:
    if area_name.endswith(suffix) and len(area_name) > len(suffix):
        return area_name[:-len(suffix)]
    return area_name


def creation_defaults(
    kind: EntityKind,
    key: str,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Values for every field a brand-new record of this kind needs."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    if kind == EntityKind.MACHINE:
        return {
            'machine_id': key,
            'name': f'Machine {key}',
            'status': MachineStatus.IDLE,
            'output': 0,
            'error_message': None,
            'operator': None,
            'last_updated': now,
        }
    if kind == EntityKind.SAFETY_AREA:
        return {
            'area_name': key,
            'zone': zone_from_area(key, settings.area_suffix),
            'ppe_required': settings.default_ppe,
            'risk_level': RiskLevel.MEDIUM,
            'status': SafetyStatus.SAFE,
            'notes': None,
            'last_inspection': now,
        }
    if kind == EntityKind.ORDER:
        return {
            'order_id': key,
            'customer_name': None,
            'stage': OrderStage.PLANNING,
            'priority': OrderPriority.MEDIUM,
            'quantity': 0,
            'materials': None,
            'eta': None,
            'status': OrderStatus.ACTIVE,
            'assigned_to': None,
            'created_at': now,
            'updated_at': now,
        }
    raise ValueError(f"Unknown entity kind: {kind}")


# ============================================================
# Machine Status Rules
# ============================================================

def apply_machine_rules(
    fields: dict[str, Any],
    existing: Optional[Record],
    settings: Settings,
) -> dict[str, Any]:
    """
    Error  -> non-empty error description.
    !Error -> no error description.
    Idle   -> output 0.

    Evaluated against the status the merged record will have. Derived
    fields are only written when they change the merged record.
    """
    status = fields.get('status') or (existing.status if existing else MachineStatus.IDLE)
    current_error = existing.error_message if existing else None
    current_output = existing.output if existing else 0

    if status == MachineStatus.ERROR:
        message = fields.get('error_message')
        if not message and existing is not None and existing.status == MachineStatus.ERROR:
            message = current_error
        message = message or settings.default_error_message
        if existing is None or message != current_error:
            fields['error_message'] = message
        else:
            fields.pop('error_message', None)
    elif 'error_message' in fields or current_error:
        fields['error_message'] = None

    if status == MachineStatus.IDLE and ('output' in fields or current_output != 0):
        fields['output'] = 0

    return fields


# ============================================================
# Validator
# ============================================================

def validate_and_default(
    kind: EntityKind,
    update: Any,
    existing: Optional[Record] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> ValidatedUpdate:
    """
    Validate a partial update against the current record (if any).

    Raises:
        UpdateValidationError: missing key, non-canonical enum value, or
            a field that fails its type/range constraint.
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    key_field = KEY_FIELDS[kind]

    fields = supplied_fields(coerce_update(kind, update))

    key = fields.pop(key_field, None) or (getattr(existing, key_field) if existing else None)
    if not key:
        raise UpdateValidationError(key_field, key, message=f"{key_field} is required")

    for name, enum_cls in ENUM_FIELDS[kind].items():
        if name in fields:
            fields[name] = check_enum(name, fields[name], enum_cls)

    if kind == EntityKind.MACHINE:
        apply_machine_rules(fields, existing, settings)

    fields[TIMESTAMP_FIELDS[kind]] = now

    defaults = creation_defaults(kind, key, settings, now) if existing is None else {}
    return ValidatedUpdate(kind=kind, key=key, fields=fields, defaults=defaults)


def validate_safety_log(
    entry: Any,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> SafetyLog:
    """Build an immutable safety log from a raw entry."""
    settings = settings or get_settings()
    data = supplied_fields(_coerce(SafetyLogEntry, entry, "safety log"))

    area_name = data.get('area_name')
    if not area_name:
        raise UpdateValidationError('area_name', area_name, message="area_name is required")

    compliance = check_enum(
        'ppe_compliance',
        data.get('ppe_compliance', settings.default_ppe_compliance),
        PPECompliance,
    )

    return SafetyLog(
        area_name=area_name,
        zone=data.get('zone') or zone_from_area(area_name, settings.area_suffix),
        ppe_compliance=compliance,
        incident_type=data.get('incident_type'),
        description=data.get('description'),
        reported_by=data.get('reported_by'),
        created_at=now or datetime.now(timezone.utc),
    )

"""
Shop Floor Update Ingestion — Message Extraction Pipeline

Turns short worker messages into partial updates:
1. Machine updates   "M03 STATUS=Running OUTPUT=130 OPERATOR=Arun"
2. Safety updates    "SAFETY WeldingZone PPE=Helmet,Gloves RISK=High"
3. Order updates     "ORDER ORD1024 STAGE=Packaging ETA=Nov-18"

Labels are case-insensitive and accept an optional "=" or ":" separator.
Fields missing from the text are left unset on the returned update.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from config import Settings, get_settings
from models import (
    EntityKind, ExtractionError, INTENT_KINDS, IntentType, KEY_FIELDS,
    MachineUpdate, OrderPriority, OrderStatus, OrderUpdate, PartialUpdate,
    RiskLevel, SafetyAreaUpdate, SafetyStatus,
    match_closed_enum, normalize_machine_status, normalize_order_stage,
)

logger = logging.getLogger(__name__)

# ============================================================
# Label Helpers
# ============================================================

# Optional "=" or ":" between a label and its value
_SEP = r'\s*[=:]?\s*'

# Start of text, after punctuation, or after whitespace that does not follow
# "=" or ":". Keeps "STATUS=Error" and "STATUS= Error" from reading as an ERROR label.
_BOUNDARY = r'(?:^\s*|(?<=[^\w=:\s])|(?<=[^=:\s])\s+)'


def _alt(names: tuple[str, ...]) -> str:
    return '|'.join(names)


def _label(*names: str) -> str:
    return rf'{_BOUNDARY}(?:{_alt(names)})\b{_SEP}'


def _until_next_label(labels: tuple[str, ...]) -> str:
    """Free text up to the next recognized label or end of text."""
    return rf'(?!(?:{_alt(labels)})\b)(.+?)(?=\s+(?:{_alt(labels)})\b|$)'


def _search(pattern: re.Pattern, text: str) -> Optional[str]:
    m = pattern.search(text)
    return m.group(1).strip() if m else None

# ============================================================
# Intent Classification
# ============================================================

MACHINE_PREFIX_RE = re.compile(r'^M\d+', re.IGNORECASE)
ORDER_CODE_DIGITS_RE = re.compile(r'ORD\d+', re.IGNORECASE)


def classify_intent(text: object) -> IntentType:
    """First match wins: machine prefix, then SAFETY, then ORDER / ORD<digits>."""
    if not isinstance(text, str) or not text.strip():
        return IntentType.UNKNOWN

    if MACHINE_PREFIX_RE.match(text.strip()):
        return IntentType.MACHINE_UPDATE

    upper = text.upper()
    if 'SAFETY' in upper:
        return IntentType.SAFETY_UPDATE

    if 'ORDER' in upper or ORDER_CODE_DIGITS_RE.search(text):
        return IntentType.ORDER_UPDATE

    return IntentType.UNKNOWN

# ============================================================
# Machine Extractor
# ============================================================

MACHINE_LABELS = ('STATUS', 'OUTPUT', 'ERROR', 'OPERATOR')

MACHINE_CODE_RE = re.compile(r'(?<![A-Za-z0-9])M\d+', re.IGNORECASE)
MACHINE_STATUS_RE = re.compile(_label('STATUS') + r'(\w+)', re.IGNORECASE)
MACHINE_OUTPUT_RE = re.compile(_label('OUTPUT') + r'(\d+)', re.IGNORECASE)
MACHINE_ERROR_RE = re.compile(
    _label('ERROR') + _until_next_label(MACHINE_LABELS), re.IGNORECASE)
MACHINE_OPERATOR_RE = re.compile(_label('OPERATOR') + r'(.+?)\s*$', re.IGNORECASE)


def extract_machine_update(text: object) -> Optional[MachineUpdate]:
    if not isinstance(text, str):
        return None

    code = MACHINE_CODE_RE.search(text)
    if not code:
        return None

    found: dict[str, object] = {'machine_id': code.group(0).upper()}

    status = _search(MACHINE_STATUS_RE, text)
    if status:
        found['status'] = normalize_machine_status(status)

    output = _search(MACHINE_OUTPUT_RE, text)
    if output:
        found['output'] = int(output)

    error = _search(MACHINE_ERROR_RE, text)
    if error:
        found['error_message'] = error

    operator = _search(MACHINE_OPERATOR_RE, text)
    if operator:
        found['operator'] = operator

    return MachineUpdate(**found)

# ============================================================
# Safety Extractor
# ============================================================

SAFETY_LABELS = ('PPE', 'RISK', 'STATUS', 'NOTES')

SAFETY_ZONE_RE = re.compile(
    rf'{_BOUNDARY}SAFETY\s+(?!(?:{_alt(SAFETY_LABELS)})\b)(\w+)', re.IGNORECASE)
SAFETY_PPE_RE = re.compile(
    _label('PPE') + _until_next_label(SAFETY_LABELS), re.IGNORECASE)
SAFETY_RISK_RE = re.compile(_label('RISK') + r'(\w+)', re.IGNORECASE)
SAFETY_STATUS_RE = re.compile(_label('STATUS') + r'(\w+)', re.IGNORECASE)
SAFETY_NOTES_RE = re.compile(_label('NOTES') + r'(.+?)\s*$', re.IGNORECASE)


def split_ppe(raw: str) -> str:
    """'Helmet, Gloves ,,Boots' -> 'Helmet,Gloves,Boots'"""
    return ','.join(p.strip() for p in raw.split(',') if p.strip())


def extract_safety_update(text: object, area_suffix: str = '_Area') -> Optional[SafetyAreaUpdate]:
    if not isinstance(text, str):
        return None

    zone = _search(SAFETY_ZONE_RE, text)
    if not zone:
        return None

    found: dict[str, object] = {'zone': zone, 'area_name': f'{zone}{area_suffix}'}

    ppe = _search(SAFETY_PPE_RE, text)
    if ppe and split_ppe(ppe):
        found['ppe_required'] = split_ppe(ppe)

    risk = match_closed_enum(_search(SAFETY_RISK_RE, text), RiskLevel)
    if risk:
        found['risk_level'] = risk

    status = match_closed_enum(_search(SAFETY_STATUS_RE, text), SafetyStatus)
    if status:
        found['status'] = status

    notes = _search(SAFETY_NOTES_RE, text)
    if notes:
        found['notes'] = notes

    return SafetyAreaUpdate(**found)

# ============================================================
# Order Extractor
# ============================================================

ORDER_LABELS = ('STAGE', 'PRIORITY', 'QUANTITY', 'QTY', 'ETA', 'MATERIALS',
                'STATUS', 'ASSIGNED_TO', 'ASSIGNED')

ORDER_CODE_RE = re.compile(r'(?<![A-Za-z0-9])ORD[A-Z0-9]+', re.IGNORECASE)
ORDER_WORD_RE = re.compile(
    rf'{_BOUNDARY}ORDER\s+(?!(?:{_alt(ORDER_LABELS)})\b)([A-Z0-9]+)\b', re.IGNORECASE)
ORDER_STAGE_RE = re.compile(_label('STAGE') + r'(\w+)', re.IGNORECASE)
ORDER_PRIORITY_RE = re.compile(_label('PRIORITY') + r'(\w+)', re.IGNORECASE)
ORDER_QUANTITY_RE = re.compile(_label('QUANTITY', 'QTY') + r'(\d+)', re.IGNORECASE)
ORDER_ETA_RE = re.compile(
    _label('ETA')
    + rf'([A-Za-z0-9\-]+(?:\s+(?!(?:{_alt(ORDER_LABELS)})\b)[A-Za-z0-9\-]+)*)',
    re.IGNORECASE)
ORDER_MATERIALS_RE = re.compile(
    _label('MATERIALS') + _until_next_label(ORDER_LABELS), re.IGNORECASE)
ORDER_STATUS_RE = re.compile(_label('STATUS') + r'(\w+)', re.IGNORECASE)
ORDER_ASSIGNED_RE = re.compile(
    _label('ASSIGNED_TO', 'ASSIGNED') + r'(.+?)\s*$', re.IGNORECASE)

# The keyword itself is not a code
_ORDER_KEYWORDS = {'ORDER', 'ORDERS'}


def extract_order_id(text: str) -> Optional[str]:
    """Direct 'ORD1024' token first, then 'ORDER 1024' -> 'ORD1024'."""
    for m in ORDER_CODE_RE.finditer(text):
        token = m.group(0).upper()
        if token not in _ORDER_KEYWORDS:
            return token

    m = ORDER_WORD_RE.search(text)
    if m:
        token = m.group(1).upper()
        return token if token.startswith('ORD') else f'ORD{token}'
    return None


def extract_order_update(text: object) -> Optional[OrderUpdate]:
    if not isinstance(text, str):
        return None

    order_id = extract_order_id(text)
    if not order_id:
        return None

    found: dict[str, object] = {'order_id': order_id}

    stage = _search(ORDER_STAGE_RE, text)
    if stage:
        found['stage'] = normalize_order_stage(stage)

    priority = match_closed_enum(_search(ORDER_PRIORITY_RE, text), OrderPriority)
    if priority:
        found['priority'] = priority

    quantity = _search(ORDER_QUANTITY_RE, text)
    if quantity:
        found['quantity'] = int(quantity)

    eta = _search(ORDER_ETA_RE, text)
    if eta:
        found['eta'] = eta

    materials = _search(ORDER_MATERIALS_RE, text)
    if materials:
        found['materials'] = materials

    # STATUS is only set when mentioned; the Active default belongs to creation
    status = match_closed_enum(_search(ORDER_STATUS_RE, text), OrderStatus)
    if status:
        found['status'] = status

    assigned = _search(ORDER_ASSIGNED_RE, text)
    if assigned:
        found['assigned_to'] = assigned

    return OrderUpdate(**found)

# ============================================================
# Orchestrator: classify + route
# ============================================================

@dataclass(frozen=True)
class ClassifiedUpdate:
    intent: IntentType
    kind: EntityKind
    update: PartialUpdate

    @property
    def key(self) -> str:
        return getattr(self.update, KEY_FIELDS[self.kind])

    def fields(self) -> dict:
        """Only the fields found in the text."""
        return self.update.model_dump(exclude_unset=True)


class UpdateExtractor:
    """Dispatches a message to the extractor for its classified intent."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._extractors: dict[IntentType, Callable[[str], Optional[PartialUpdate]]] = {
            IntentType.MACHINE_UPDATE: extract_machine_update,
            IntentType.SAFETY_UPDATE: lambda t: extract_safety_update(
                t, area_suffix=self.settings.area_suffix),
            IntentType.ORDER_UPDATE: extract_order_update,
        }

    def extract(self, text: object) -> Optional[ClassifiedUpdate]:
        """
        Returns None when the text is unclassifiable.

        Raises:
            ExtractionError: classified, but the mandatory key is missing.
        """
        intent = classify_intent(text)
        if intent == IntentType.UNKNOWN:
            return None

        update = self._extractors[intent](text)
        if update is None:
            logger.warning(f"Classified as {intent.value} but no key found: {text!r}")
            raise ExtractionError(intent, str(text))

        return ClassifiedUpdate(intent=intent, kind=INTENT_KINDS[intent], update=update)


def classify_and_extract(text: object, settings: Optional[Settings] = None) -> Optional[ClassifiedUpdate]:
    """One-shot classification + extraction."""
    return UpdateExtractor(settings).extract(text)

"""
Tests for intent classification and field extraction
"""
import pytest

from extraction_pipeline import (
    classify_and_extract,
    classify_intent,
    extract_machine_update,
    extract_order_id,
    extract_order_update,
    extract_safety_update,
    split_ppe,
)
from models import EntityKind, ExtractionError, IntentType


# ── Classification ──────────────────────────────────────────────────────

@pytest.mark.parametrize("text,expected", [
    ("M03 STATUS=Running", IntentType.MACHINE_UPDATE),
    ("  m5 status run", IntentType.MACHINE_UPDATE),
    ("SAFETY WeldingZone RISK=High", IntentType.SAFETY_UPDATE),
    ("ORDER ORD1024 STAGE=Packaging", IntentType.ORDER_UPDATE),
    ("ORD77 PRIORITY=High", IntentType.ORDER_UPDATE),
    ("lunch at 1pm?", IntentType.UNKNOWN),
    ("", IntentType.UNKNOWN),
    ("   ", IntentType.UNKNOWN),
])
def test_classify_intent(text, expected):
    """Each message kind is recognized by its leading token or keyword"""
    assert classify_intent(text) == expected


def test_classify_non_text_is_unknown():
    """Non-string input never classifies"""
    assert classify_intent(None) == IntentType.UNKNOWN
    assert classify_intent(42) == IntentType.UNKNOWN


def test_classification_precedence():
    """Machine prefix beats SAFETY, and SAFETY beats ORDER"""
    assert classify_intent("M03 SAFETY ORDER") == IntentType.MACHINE_UPDATE
    assert classify_intent("Check SAFETY before ORDER ORD1") == IntentType.SAFETY_UPDATE


def test_machine_prefix_must_lead():
    """A machine code in the middle of the text is not a machine update"""
    assert classify_intent("xM03 STATUS=Running") == IntentType.UNKNOWN


# ── Machine extraction ──────────────────────────────────────────────────

def test_machine_full_message():
    """Running machine with output and operator"""
    update = extract_machine_update("M03 STATUS=Running OUTPUT=130 OPERATOR=Arun")

    assert update.model_dump(exclude_unset=True) == {
        "machine_id": "M03",
        "status": "Running",
        "output": 130,
        "operator": "Arun",
    }


def test_machine_error_with_description():
    """Stemmed 'down' status and free-text error description"""
    update = extract_machine_update("M07 STATUS=down ERROR=Spindle overheating")

    assert update.machine_id == "M07"
    assert update.status == "Error"
    assert update.error_message == "Spindle overheating"


def test_status_value_is_not_an_error_label():
    """'STATUS=Error' must not be read as an ERROR label"""
    update = extract_machine_update("M07 STATUS=Error")

    assert update.model_dump(exclude_unset=True) == {"machine_id": "M07", "status": "Error"}


def test_spaced_status_value_is_not_an_error_label():
    """'STATUS= Error' is still a status value, not an ERROR label"""
    update = extract_machine_update("M07 STATUS= Error OUTPUT=0")

    assert update.model_dump(exclude_unset=True) == {
        "machine_id": "M07",
        "status": "Error",
        "output": 0,
    }


def test_spaced_separator_before_label_word():
    """A label word right after 'label: ' is a value"""
    update = extract_machine_update("M07 STATUS:  error OPERATOR: Priya")

    assert update.status == "Error"
    assert update.operator == "Priya"
    assert "error_message" not in update.model_fields_set


def test_error_stops_at_next_label():
    """Error description ends where the next label starts"""
    update = extract_machine_update("M02 ERROR: belt jam OPERATOR: Priya")

    assert update.error_message == "belt jam"
    assert update.operator == "Priya"


def test_machine_labels_case_insensitive_with_colon():
    """Lowercase labels, colon separator, lowercase code"""
    update = extract_machine_update("m12 status: idle output: 5")

    assert update.machine_id == "M12"
    assert update.status == "Idle"
    assert update.output == 5


def test_unrecognized_status_passes_through():
    """Unknown vocabulary is title-cased, not rejected"""
    update = extract_machine_update("M03 STATUS=BROKEN")

    assert update.status == "Broken"


def test_machine_without_code():
    """No machine code means nothing to update"""
    assert extract_machine_update("STATUS=Running") is None


# ── Safety extraction ───────────────────────────────────────────────────

def test_safety_full_message():
    """Zone, PPE list, risk and status"""
    update = extract_safety_update("SAFETY WeldingZone PPE=Helmet,Gloves RISK=High STATUS=Warning")

    assert update.model_dump(exclude_unset=True) == {
        "zone": "WeldingZone",
        "area_name": "WeldingZone_Area",
        "ppe_required": "Helmet,Gloves",
        "risk_level": "High",
        "status": "Warning",
    }


def test_safety_ppe_and_notes():
    """PPE items are trimmed and notes run to the end of the text"""
    update = extract_safety_update("SAFETY Paint PPE=Mask, Goggles ,Apron NOTES=fumes high near booth 2")

    assert update.ppe_required == "Mask,Goggles,Apron"
    assert update.notes == "fumes high near booth 2"
    assert "risk_level" not in update.model_fields_set


def test_safety_closed_enums_are_case_insensitive():
    """Risk and status match their enumerations ignoring case"""
    update = extract_safety_update("safety welding risk: critical status: maintenance")

    assert update.zone == "welding"
    assert update.risk_level == "Critical"
    assert update.status == "Maintenance"


def test_safety_unknown_risk_is_absent():
    """A value outside the enumeration leaves the field unset"""
    update = extract_safety_update("SAFETY Dock RISK=Extreme")

    assert "risk_level" not in update.model_fields_set


def test_safety_label_is_not_a_zone():
    """'SAFETY PPE=...' has no zone"""
    assert extract_safety_update("SAFETY PPE=Helmet") is None


def test_safety_custom_suffix():
    """Area name uses the configured suffix"""
    update = extract_safety_update("SAFETY Dock", area_suffix="-zone")

    assert update.area_name == "Dock-zone"


def test_split_ppe():
    assert split_ppe("Helmet, Gloves ,,Boots") == "Helmet,Gloves,Boots"


# ── Order extraction ────────────────────────────────────────────────────

def test_order_with_direct_code():
    """Keyword followed by a direct ORD code"""
    update = extract_order_update("ORDER ORD1024 STAGE=Packaging ETA=Nov-18")

    assert update.model_dump(exclude_unset=True) == {
        "order_id": "ORD1024",
        "stage": "Packaging",
        "eta": "Nov-18",
    }


def test_order_keyword_with_bare_number():
    """'ORDER 1024' gets the ORD prefix"""
    assert extract_order_id("ORDER 1024 STAGE=ship") == "ORD1024"
    assert extract_order_update("ORDER 1024 STAGE=ship").stage == "Shipping"


def test_order_keyword_is_not_a_code():
    """The word ORDER itself never becomes the order id"""
    assert extract_order_id("ORDER ORD55") == "ORD55"
    assert extract_order_id("order status?") is None


def test_order_closed_enums_and_quantity():
    """Priority and status match exactly ignoring case; QTY is an alias"""
    update = extract_order_update("ORD1024 PRIORITY=urgent QTY=50 STATUS=onhold")

    assert update.priority == "Urgent"
    assert update.quantity == 50
    assert update.status == "OnHold"


def test_order_status_absent_unless_mentioned():
    """No STATUS in the text means no status in the update"""
    update = extract_order_update("ORD1024 STAGE=qc")

    assert update.stage == "Quality"
    assert "status" not in update.model_fields_set


def test_order_free_text_fields():
    """ETA word run, materials and assignee stop at label boundaries"""
    update = extract_order_update(
        "ORDER ORD55 ETA: next Friday MATERIALS=steel sheet, bolts STAGE=production ASSIGNED_TO=Team B")

    assert update.eta == "next Friday"
    assert update.materials == "steel sheet, bolts"
    assert update.stage == "Production"
    assert update.assigned_to == "Team B"


# ── classify_and_extract ────────────────────────────────────────────────

def test_classify_and_extract_routes_to_kind(settings):
    classified = classify_and_extract("M03 STATUS=Running", settings)

    assert classified.intent == IntentType.MACHINE_UPDATE
    assert classified.kind == EntityKind.MACHINE
    assert classified.key == "M03"
    assert classified.fields() == {"machine_id": "M03", "status": "Running"}


def test_unclassified_returns_none(extractor):
    """Unclassifiable text is a no-op, not an error"""
    assert extractor.extract("lunch at 1pm?") is None


def test_missing_key_raises(extractor):
    """Classified text without its key is an extraction failure"""
    with pytest.raises(ExtractionError) as exc:
        extractor.extract("SAFETY PPE=Helmet")

    assert exc.value.intent == IntentType.SAFETY_UPDATE


def test_extraction_is_deterministic(extractor):
    """Same text, same fields"""
    text = "ORDER ORD1024 STAGE=Packaging PRIORITY=High ETA=Nov-18"

    assert extractor.extract(text).fields() == extractor.extract(text).fields()

"""
Tests for enum normalizers and the error taxonomy
"""
import pytest

from models import (
    OrderPriority,
    OrderStatus,
    RiskLevel,
    UpdateError,
    UpdateValidationError,
    match_closed_enum,
    normalize_machine_status,
    normalize_order_stage,
    title_case,
)


@pytest.mark.parametrize("word,expected", [
    ("running", "Running"),
    ("RUN", "Running"),
    ("idle", "Idle"),
    ("maintaining", "Maintenance"),
    ("error", "Error"),
    ("down", "Error"),
    ("shutdown", "Error"),
])
def test_machine_status_stems(word, expected):
    assert normalize_machine_status(word) == expected


def test_machine_status_stem_order():
    """Earlier stems win for words containing several"""
    assert normalize_machine_status("rundown") == "Running"
    assert normalize_machine_status("idle-error") == "Idle"


def test_machine_status_passthrough():
    """Unmatched words are title-cased unchanged"""
    assert normalize_machine_status("MAINTENANCE") == "Maintenance"
    assert normalize_machine_status("broken") == "Broken"


@pytest.mark.parametrize("word,expected", [
    ("planning", "Planning"),
    ("production", "Production"),
    ("QC", "Quality"),
    ("packed", "Packaging"),
    ("shipped", "Shipping"),
    ("done", "Completed"),
    ("complete", "Completed"),
])
def test_order_stage_stems(word, expected):
    assert normalize_order_stage(word) == expected


def test_order_stage_stem_order():
    """'plan' is checked before 'product'"""
    assert normalize_order_stage("planned-production") == "Planning"


def test_order_stage_passthrough():
    assert normalize_order_stage("prod") == "Prod"


def test_title_case():
    assert title_case("rUNNING") == "Running"
    assert title_case("") == ""


def test_match_closed_enum():
    """Case-insensitive equality, no stemming"""
    assert match_closed_enum("HIGH", RiskLevel) == "High"
    assert match_closed_enum("onhold", OrderStatus) == "OnHold"
    assert match_closed_enum("urgently", OrderPriority) is None
    assert match_closed_enum(None, RiskLevel) is None


def test_validation_error_message_lists_allowed_values():
    err = UpdateValidationError("priority", "Asap", ("Low", "Medium", "High", "Urgent"))

    assert isinstance(err, UpdateError)
    assert isinstance(err, ValueError)
    assert err.field == "priority"
    assert str(err) == "Invalid priority: Asap. Must be one of: Low, Medium, High, Urgent"

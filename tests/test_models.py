import pytest

from nsmirror.models import (
    ItemKind,
    Outcome,
    OutcomeStatus,
    ValueFlags,
    ValueInfo,
    VariableDescriptor,
    classify_kind,
)


@pytest.mark.parametrize(
    "type_name, kind",
    [
        ("closure", ItemKind.FUNCTION),
        ("builtin", ItemKind.FUNCTION),
        ("numeric", ItemKind.VARIABLE),
        ("Closure", ItemKind.VARIABLE),
        ("list", ItemKind.VARIABLE),
        (None, ItemKind.VARIABLE),
    ],
)
def test_classify_kind(type_name, kind):
    assert classify_kind(type_name) is kind


def test_descriptor_from_value_info():
    info = ValueInfo(
        name=".tmp",
        type_name="closure",
        flags=ValueFlags.HIDDEN | ValueFlags.ATOMIC,
        representation="function (callable)",
    )
    d = VariableDescriptor.from_value_info(info)
    assert d.name == ".tmp"
    assert d.kind is ItemKind.FUNCTION
    assert d.is_hidden
    assert d.summary == "function (callable)"


def test_descriptor_defaults_to_visible_variable():
    d = VariableDescriptor.from_value_info(ValueInfo(name="x"))
    assert d.kind is ItemKind.VARIABLE
    assert not d.is_hidden
    assert d.type_name == ""


def test_outcome_tags():
    assert Outcome.success([1]).ok
    assert Outcome.success([1]).value == [1]
    for outcome, status in [
        (Outcome.timeout(), OutcomeStatus.TIMEOUT),
        (Outcome.evaluation_error("boom"), OutcomeStatus.EVALUATION_ERROR),
        (Outcome.transport_error("pipe"), OutcomeStatus.TRANSPORT_ERROR),
        (Outcome.cancelled(), OutcomeStatus.CANCELLED),
    ]:
        assert not outcome.ok
        assert outcome.status is status
        assert outcome.value is None
        assert outcome.error

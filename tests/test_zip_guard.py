import pytest

from enviadores.core.exceptions import ConsistencyError
from enviadores.services.zip_guard import ZipConsistencyGuard


def test_matching_zips_allow_commit(quote, customer, destination):
    guard = ZipConsistencyGuard()

    assert guard.check(quote, customer, destination) == []
    guard.ensure_consistent(quote, customer, destination)


def test_destination_drift_reported_with_distance(quote, customer, destination):
    moved = destination.model_copy(update={"postal_code": "06720"})

    mismatches = ZipConsistencyGuard().check(quote, customer, moved)

    assert len(mismatches) == 1
    assert mismatches[0].side == "destination"
    assert mismatches[0].quoted_zip == "06700"
    assert mismatches[0].current_zip == "06720"
    assert mismatches[0].difference == 20


def test_both_sides_can_drift(quote, customer, destination):
    mismatches = ZipConsistencyGuard().check(
        quote,
        customer.model_copy(update={"postal_code": "62010"}),
        destination.model_copy(update={"postal_code": "06600"}),
    )

    assert [m.side for m in mismatches] == ["origin", "destination"]


def test_missing_record_is_a_mismatch(quote, customer):
    mismatches = ZipConsistencyGuard().check(quote, customer, None)

    assert mismatches[0].current_zip == ""
    assert mismatches[0].difference is None


def test_ensure_consistent_blocks_with_requote_action(quote, customer, destination):
    moved = customer.model_copy(update={"postal_code": "62100"})

    with pytest.raises(ConsistencyError) as exc_info:
        ZipConsistencyGuard().ensure_consistent(quote, moved, destination)

    details = exc_info.value.details
    assert details["action"] == "requote"
    assert details["mismatches"] == [
        {"side": "origin", "quoted_zip": "62000", "current_zip": "62100", "difference": 100}
    ]

"""
Pytest configuration and shared fixtures/steps for qmem tests.
"""
from datetime import datetime, timezone
from pathlib import Path

import pytest
from pytest_bdd import parsers, then

import qmem.errors
from qmem.kernel.container import Container
from qmem.kernel.schema import Receipt, StateSnapshot


def at(timestamp: str) -> datetime:
    """Parse a feature-file timestamp as UTC."""
    return datetime.fromisoformat(timestamp).replace(tzinfo=timezone.utc)


def make_receipt(
    container: Container,
    operation_key: str,
    receipt_id: str | None = None,
    created_at: datetime | None = None,
    success: bool = True,
    payload: bytes = b"ok",
    token_cost: int = 0,
) -> Receipt:
    return Receipt.build(
        operation_key=operation_key,
        owning_agent_id=container.owning_agent_id,
        trace_id=container.trace_id,
        success=success,
        result_payload=payload if success else b"",
        error_message=None if success else "failed",
        token_cost=token_cost,
        latency=1.5,
        created_at=created_at,
        receipt_id=receipt_id,
        hasher=container.hasher,
    )


def make_snapshot(container: Container, n: int) -> StateSnapshot:
    return StateSnapshot.build(
        compressed_context=f"context-{n}".encode(),
        token_count=n * 10,
        message_count=n,
        state_id=f"state-{n:04d}",
        hasher=container.hasher,
    )


@pytest.fixture
def test_context():
    """Shared context for passing data between steps."""
    return {}


@pytest.fixture
def workdir(tmp_path) -> Path:
    """Directory for container files."""
    return tmp_path


# =============================================================================
# Shared Then Steps
# =============================================================================


@then(parsers.re(r"an? (?P<error_name>\w+)(?: error)? is raised"))
def error_raised(test_context, error_name: str):
    expected = getattr(qmem.errors, error_name)
    error = test_context.get("error")
    assert error is not None, f"expected {error_name}, nothing was raised"
    assert isinstance(error, expected), f"expected {error_name}, got {error!r}"


@then("an IntegrityViolation naming the container is raised")
def integrity_violation_names_container(test_context):
    error = test_context.get("error")
    assert isinstance(error, qmem.errors.IntegrityViolation), f"got {error!r}"
    assert error.container_id == test_context["container"].container_id
    assert error.container_id in str(error)


@then(parsers.parse('has_receipt for "{key}" is {expected}'))
def has_receipt_is(test_context, key: str, expected: str):
    assert test_context["container"].has_receipt(key) is (expected == "true")


@then(parsers.parse("the container stats report {receipts:d} receipts and {snapshots:d} snapshots"))
def stats_report_receipts_and_snapshots(test_context, receipts: int, snapshots: int):
    stats = test_context["container"].stats()
    assert stats.receipt_count == receipts
    assert stats.state_count == snapshots


@then(parsers.parse("the container stats report {receipts:d} receipts"))
def stats_report_receipts(test_context, receipts: int):
    assert test_context["container"].stats().receipt_count == receipts


@then(parsers.parse("the container stats report {snapshots:d} snapshots"))
def stats_report_snapshots(test_context, snapshots: int):
    assert test_context["container"].stats().state_count == snapshots


@then("the header content hash matches the folded logs")
def header_hash_matches(test_context):
    container = test_context["container"]
    assert container.header.content_hash == container.compute_content_hash()
    assert container.header.content_hash == container.hasher.digest_of_container(container)


@then(parsers.parse("the header entry count is {count:d}"))
def header_entry_count(test_context, count: int):
    assert test_context["container"].header.entry_count == count

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from potsettle.errors import (
    DuplicateParticipantError,
    IncompleteDataError,
    InvalidAmountError,
    UnbalancedPositionsError,
)
from potsettle.models import ParticipantPosition, TransactionKind, TransactionRecord
from potsettle.services.positions import build_positions, ensure_settleable, resolve_positions
from potsettle.services.precision import PrecisionTracker

NOW = datetime(2024, 5, 10, 18, 0, tzinfo=timezone.utc)
NAMES = {"u1": "Alice", "u2": "Bob", "u3": "Carol"}


def tx(participant_id, kind, amount):
    return TransactionRecord(
        participant_id=participant_id,
        kind=kind,
        amount=Decimal(amount),
        timestamp=NOW,
    )


def test_resolve_positions_nets_credits_and_debits():
    log = [
        tx("u2", TransactionKind.DEBIT, "50"),
        tx("u1", TransactionKind.DEBIT, "50"),
        tx("u1", TransactionKind.CREDIT, "150"),
        tx("u3", TransactionKind.DEBIT, "50"),
    ]

    positions = resolve_positions(log, NAMES)

    assert [(p.id, p.display_name, p.net_cents) for p in positions] == [
        ("u2", "Bob", -5000),
        ("u1", "Alice", 10000),
        ("u3", "Carol", -5000),
    ]
    assert positions[1].net_position == Decimal("100.00")
    assert positions[1].is_creditor and positions[0].is_debtor


def test_resolve_positions_rounds_half_up_and_flags():
    tracker = PrecisionTracker()
    log = [tx("u1", TransactionKind.CREDIT, "10.005"), tx("u2", TransactionKind.DEBIT, "10.005")]

    positions = resolve_positions(log, NAMES, tracker)

    assert [p.net_cents for p in positions] == [1001, -1001]
    report = tracker.report()
    assert [issue.participant_id for issue in report.fractional_cent_issues] == ["u1", "u2"]
    assert all(op.rounding_mode == "half_up" for op in report.rounding_operations)


def test_resolve_positions_requires_identity():
    with pytest.raises(IncompleteDataError):
        resolve_positions([tx("u9", TransactionKind.CREDIT, "10")], NAMES)


def test_resolve_positions_rejects_negative_amounts():
    with pytest.raises(InvalidAmountError):
        resolve_positions([tx("u1", TransactionKind.CREDIT, "-10")], NAMES)


def test_build_positions_from_amounts():
    positions = build_positions(
        [("a", "Alice", "133.34"), ("b", "Bob", 133.33), ("c", "Carol", Decimal("-266.67"))]
    )
    assert [p.net_cents for p in positions] == [13334, 13333, -26667]


def test_ensure_settleable():
    ensure_settleable([], 1)
    ensure_settleable([ParticipantPosition("a", "Alice", 1)], 1)

    with pytest.raises(DuplicateParticipantError):
        ensure_settleable(
            [ParticipantPosition("a", "Alice", 100), ParticipantPosition("a", "Alice", -100)], 1
        )

    with pytest.raises(IncompleteDataError):
        ensure_settleable([ParticipantPosition("a", "", 0)], 1)

    with pytest.raises(UnbalancedPositionsError) as exc_info:
        ensure_settleable(
            [ParticipantPosition("a", "Alice", 15000), ParticipantPosition("b", "Bob", 15000)], 1
        )
    assert exc_info.value.details["net_balance_cents"] == 30000
    assert str(exc_info.value).startswith("[UNBALANCED_POSITIONS]")

from __future__ import annotations

from decimal import Decimal
from fractions import Fraction
from typing import Iterable, Mapping, Optional, Sequence

from potsettle.errors import (
    DuplicateParticipantError,
    IncompleteDataError,
    InvalidAmountError,
    UnbalancedPositionsError,
)
from potsettle.models import ParticipantPosition, TransactionKind, TransactionRecord
from potsettle.services.precision import (
    Amount,
    PrecisionTracker,
    format_money,
    has_fractional_cents,
    quantize_half_up,
    to_cents,
    to_decimal,
)


def resolve_positions(
    transactions: Iterable[TransactionRecord],
    participants: Mapping[str, str],
    tracker: Optional[PrecisionTracker] = None,
) -> list[ParticipantPosition]:
    """Net credits against debits for every participant in the log.

    ``participants`` maps participant id to display name. Participants are
    returned in order of first appearance in ``transactions``.
    """
    credits: dict[str, Decimal] = {}
    debits: dict[str, Decimal] = {}
    order: list[str] = []

    for record in transactions:
        participant_id = record.participant_id
        name = participants.get(participant_id)
        if not participant_id or not name:
            raise IncompleteDataError(
                "transaction references a participant without identity metadata",
                details={"participant_id": participant_id},
            )

        amount = to_decimal(record.amount)
        if amount < 0:
            raise InvalidAmountError(
                "transaction amount must be non-negative",
                details={"participant_id": participant_id, "amount": str(amount)},
            )

        if participant_id not in credits:
            order.append(participant_id)
            credits[participant_id] = Decimal("0")
            debits[participant_id] = Decimal("0")

        if record.kind is TransactionKind.CREDIT:
            credits[participant_id] += amount
        else:
            debits[participant_id] += amount

    positions: list[ParticipantPosition] = []
    for participant_id in order:
        net = credits[participant_id] - debits[participant_id]
        net_cents = quantize_half_up(net)
        if tracker is not None and has_fractional_cents(net):
            tracker.flag_fractional(participant_id, participants[participant_id], net, net_cents)
            tracker.record(
                f"net position {participants[participant_id]}",
                Fraction(net) * 100,
                net_cents,
                mode="half_up",
            )
        positions.append(
            ParticipantPosition(
                id=participant_id,
                display_name=participants[participant_id],
                net_cents=net_cents,
            )
        )
    return positions


def build_positions(
    entries: Iterable[tuple[str, str, Amount]],
    tracker: Optional[PrecisionTracker] = None,
) -> list[ParticipantPosition]:
    """Build positions from ``(id, display_name, net_amount)`` triples."""
    positions: list[ParticipantPosition] = []
    for participant_id, name, amount in entries:
        value = to_decimal(amount)
        cents = to_cents(value)
        if tracker is not None and has_fractional_cents(value):
            tracker.flag_fractional(participant_id, name, value, cents)
            tracker.record(f"net position {name}", Fraction(value) * 100, cents)
        positions.append(ParticipantPosition(id=participant_id, display_name=name, net_cents=cents))
    return positions


def ensure_settleable(positions: Sequence[ParticipantPosition], aggregate_tolerance_cents: int) -> None:
    seen: set[str] = set()
    for position in positions:
        if not position.id or not position.display_name:
            raise IncompleteDataError(
                "participant position is missing an id or display name",
                details={"participant_id": position.id},
            )
        if position.id in seen:
            raise DuplicateParticipantError(
                "participant appears more than once",
                details={"participant_id": position.id},
            )
        seen.add(position.id)

    total = sum(p.net_cents for p in positions)
    if abs(total) > aggregate_tolerance_cents:
        raise UnbalancedPositionsError(
            f"positions sum to {format_money(total)}, expected $0.00",
            details={"net_balance_cents": total, "tolerance_cents": aggregate_tolerance_cents},
        )


def positions_digest_source(positions: Sequence[ParticipantPosition]) -> list[list[object]]:
    return [[p.id, p.display_name, p.net_cents] for p in sorted(positions, key=lambda p: p.id)]

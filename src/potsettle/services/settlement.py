from __future__ import annotations

import heapq
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Optional, Sequence

from potsettle.models import ParticipantPosition, PaymentPlanEntry, SettlementAlgorithmType
from potsettle.services.precision import PrecisionTracker, allocate_cents, format_money


@dataclass(frozen=True, slots=True)
class AlgorithmResult:
    algorithm: SettlementAlgorithmType
    payments: tuple[PaymentPlanEntry, ...]
    exhaustive: bool = False
    bound_exceeded: bool = False


# (debtor, creditor, amount_cents)
Transfer = tuple[ParticipantPosition, ParticipantPosition, int]


def _partition(
    positions: Sequence[ParticipantPosition],
) -> tuple[list[tuple[ParticipantPosition, int]], list[tuple[ParticipantPosition, int]]]:
    creditors: list[tuple[ParticipantPosition, int]] = []
    debtors: list[tuple[ParticipantPosition, int]] = []

    for position in positions:
        if position.net_cents > 0:
            creditors.append((position, position.net_cents))
        elif position.net_cents < 0:
            debtors.append((position, -position.net_cents))

    return creditors, debtors


def _finalize(transfers: Sequence[Transfer], minimum_cents: int) -> tuple[PaymentPlanEntry, ...]:
    payments: list[PaymentPlanEntry] = []
    for debtor, creditor, amount in transfers:
        # sub-minimum amounts are dropped, never rounded up into a transfer
        if amount < minimum_cents or debtor.id == creditor.id:
            continue
        payments.append(
            PaymentPlanEntry(
                from_id=debtor.id,
                from_name=debtor.display_name,
                to_id=creditor.id,
                to_name=creditor.display_name,
                amount_cents=amount,
                priority=len(payments) + 1,
                description=f"{debtor.display_name} pays {creditor.display_name} {format_money(amount)}",
            )
        )
    return tuple(payments)


def _greedy_transfers(positions: Sequence[ParticipantPosition]) -> list[Transfer]:
    creditors, debtors = _partition(positions)

    # heap key (-amount, input index) keeps equal amounts in input order
    cred_heap = [(-amount, idx, position) for idx, (position, amount) in enumerate(creditors)]
    debt_heap = [(-amount, idx, position) for idx, (position, amount) in enumerate(debtors)]
    heapq.heapify(cred_heap)
    heapq.heapify(debt_heap)

    transfers: list[Transfer] = []
    while cred_heap and debt_heap:
        neg_cred, cred_idx, creditor = heapq.heappop(cred_heap)
        neg_debt, debt_idx, debtor = heapq.heappop(debt_heap)
        cred_amount, debt_amount = -neg_cred, -neg_debt

        transfer_amount = min(cred_amount, debt_amount)
        transfers.append((debtor, creditor, transfer_amount))

        cred_amount -= transfer_amount
        debt_amount -= transfer_amount

        if cred_amount > 0:
            heapq.heappush(cred_heap, (-cred_amount, cred_idx, creditor))
        if debt_amount > 0:
            heapq.heappush(debt_heap, (-debt_amount, debt_idx, debtor))

    return transfers


def greedy_debt_reduction(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
) -> tuple[PaymentPlanEntry, ...]:
    return _finalize(_greedy_transfers(positions), minimum_cents)


def direct_settlement(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
    tracker: Optional[PrecisionTracker] = None,
) -> tuple[PaymentPlanEntry, ...]:
    """Every debtor pays every creditor in proportion to the creditor's share.

    Each debtor row is split exactly (it always sums to the debt). Column
    totals are then reconciled by moving single cents between cells of one row,
    so each creditor also receives exactly their position.
    """
    creditors, debtors = _partition(positions)
    if not creditors or not debtors:
        return ()

    weights = [amount for _, amount in creditors]
    total_credit = sum(weights)

    exact = [[Fraction(debt * w, total_credit) for w in weights] for _, debt in debtors]
    grid = [allocate_cents(debt, weights) for _, debt in debtors]

    residual = [
        amount - sum(row[j] for row in grid) for j, (_, amount) in enumerate(creditors)
    ]
    while True:
        short = next((j for j, r in enumerate(residual) if r > 0), None)
        excess = next((k for k, r in enumerate(residual) if r < 0), None)
        if short is None or excess is None:
            break
        candidates = [i for i in range(len(grid)) if grid[i][excess] > 0]
        i = max(
            candidates,
            key=lambda r: ((exact[r][short] - grid[r][short]) - (exact[r][excess] - grid[r][excess]), -r),
        )
        grid[i][short] += 1
        grid[i][excess] -= 1
        residual[short] -= 1
        residual[excess] += 1

    transfers: list[Transfer] = []
    for i, (debtor, _) in enumerate(debtors):
        for j, (creditor, _) in enumerate(creditors):
            if tracker is not None:
                tracker.record(f"direct share {debtor.display_name} -> {creditor.display_name}", exact[i][j], grid[i][j])
            if grid[i][j] > 0:
                transfers.append((debtor, creditor, grid[i][j]))

    return _finalize(transfers, minimum_cents)


def hub_settlement(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
) -> tuple[PaymentPlanEntry, ...]:
    active = [p for p in positions if p.net_cents != 0]
    if len(active) < 2:
        return ()

    # max() keeps the first of equal magnitudes
    hub = max(active, key=lambda p: abs(p.net_cents))

    pay_ins: list[Transfer] = []
    pay_outs: list[Transfer] = []
    for position in active:
        if position.id == hub.id:
            continue
        if position.net_cents < 0:
            pay_ins.append((position, hub, -position.net_cents))
        else:
            pay_outs.append((hub, position, position.net_cents))

    return _finalize(pay_ins + pay_outs, minimum_cents)


def balanced_flow(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
) -> tuple[PaymentPlanEntry, ...]:
    creditors, debtors = _partition(positions)
    creditors.sort(key=lambda x: x[1], reverse=True)
    debtors.sort(key=lambda x: x[1])

    transfers: list[Transfer] = []
    i, j = 0, 0

    while i < len(creditors) and j < len(debtors):
        creditor, cred_amount = creditors[i]
        debtor, debt_amount = debtors[j]

        transfer_amount = min(cred_amount, debt_amount)
        transfers.append((debtor, creditor, transfer_amount))

        cred_amount -= transfer_amount
        debt_amount -= transfer_amount

        if cred_amount == 0:
            i += 1
        else:
            creditors[i] = (creditor, cred_amount)

        if debt_amount == 0:
            j += 1
        else:
            debtors[j] = (debtor, debt_amount)

    return _finalize(transfers, minimum_cents)


def _zero_sum_groups(amounts: Sequence[int]) -> list[list[int]]:
    """Partition indices into the largest number of zero-sum groups.

    Subset DP: best[mask] is the maximum number of zero-sum groups the members
    of ``mask`` can be split into, so ``len(amounts) - best[full]`` is the
    minimum number of payments.
    """
    n = len(amounts)
    size = 1 << n
    sums = [0] * size
    best = [0] * size

    for mask in range(1, size):
        low = mask & -mask
        sums[mask] = sums[mask ^ low] + amounts[low.bit_length() - 1]

    for mask in range(1, size):
        top = 0
        rest = mask
        while rest:
            low = rest & -rest
            value = best[mask ^ low]
            if value > top:
                top = value
            rest ^= low
        best[mask] = top + (1 if sums[mask] == 0 else 0)

    order: list[int] = []
    mask = size - 1
    while mask:
        target = best[mask] - (1 if sums[mask] == 0 else 0)
        rest = mask
        while rest:
            low = rest & -rest
            if best[mask ^ low] == target:
                break
            rest ^= low
        order.append(low.bit_length() - 1)
        mask ^= low
    order.reverse()

    groups: list[list[int]] = []
    current: list[int] = []
    running = 0
    for idx in order:
        current.append(idx)
        running += amounts[idx]
        if running == 0:
            groups.append(sorted(current))
            current = []
    if current:
        groups.append(sorted(current))
    return groups


def minimal_transactions(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
    exhaustive_limit: int = 12,
) -> AlgorithmResult:
    active = [p for p in positions if p.net_cents != 0]

    if len(active) > exhaustive_limit:
        return AlgorithmResult(
            algorithm=SettlementAlgorithmType.MINIMAL_TRANSACTIONS,
            payments=greedy_debt_reduction(positions, minimum_cents),
            exhaustive=False,
            bound_exceeded=True,
        )

    transfers: list[Transfer] = []
    for group in _zero_sum_groups([p.net_cents for p in active]):
        transfers.extend(_greedy_transfers([active[idx] for idx in group]))

    return AlgorithmResult(
        algorithm=SettlementAlgorithmType.MINIMAL_TRANSACTIONS,
        payments=_finalize(transfers, minimum_cents),
        exhaustive=True,
    )


def manual_settlement(
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
) -> tuple[PaymentPlanEntry, ...]:
    return ()


_SIMPLE: dict[SettlementAlgorithmType, Callable[[Sequence[ParticipantPosition], int], tuple[PaymentPlanEntry, ...]]] = {
    SettlementAlgorithmType.GREEDY_DEBT_REDUCTION: greedy_debt_reduction,
    SettlementAlgorithmType.HUB_BASED: hub_settlement,
    SettlementAlgorithmType.BALANCED_FLOW: balanced_flow,
    SettlementAlgorithmType.MANUAL_SETTLEMENT: manual_settlement,
}


def run_algorithm(
    algorithm: SettlementAlgorithmType,
    positions: Sequence[ParticipantPosition],
    minimum_cents: int = 1,
    exhaustive_limit: int = 12,
    tracker: Optional[PrecisionTracker] = None,
) -> AlgorithmResult:
    if algorithm is SettlementAlgorithmType.MINIMAL_TRANSACTIONS:
        return minimal_transactions(positions, minimum_cents, exhaustive_limit)
    if algorithm is SettlementAlgorithmType.DIRECT_SETTLEMENT:
        return AlgorithmResult(algorithm, direct_settlement(positions, minimum_cents, tracker))
    return AlgorithmResult(algorithm, _SIMPLE[algorithm](positions, minimum_cents))


# rough per-operation costs, deliberately pessimistic
_LINEAR_COST_MS = 0.02
_CELL_COST_MS = 0.05
_SUBSET_COST_MS = 0.001


def estimate_cost_ms(
    algorithm: SettlementAlgorithmType,
    positions: Sequence[ParticipantPosition],
    exhaustive_limit: int = 12,
) -> float:
    creditors, debtors = _partition(positions)
    active = len(creditors) + len(debtors)

    if algorithm is SettlementAlgorithmType.MANUAL_SETTLEMENT:
        return 0.0
    if algorithm is SettlementAlgorithmType.DIRECT_SETTLEMENT:
        return len(creditors) * len(debtors) * _CELL_COST_MS + active * _LINEAR_COST_MS
    if algorithm is SettlementAlgorithmType.MINIMAL_TRANSACTIONS and active <= exhaustive_limit:
        return (1 << active) * max(active, 1) * _SUBSET_COST_MS
    return active * _LINEAR_COST_MS

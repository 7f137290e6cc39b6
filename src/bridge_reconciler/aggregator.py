#!/usr/bin/env python3
"""Claim/transfer reconciliation for the bridge reconciler.

Matches claims to the transfers they reference, validates the claimed
parameters against the transfer, and classifies every transfer as completed
or pending and every inconsistent claim as suspicious. The functions here are
pure: the same inputs always produce the same result.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .models import (
    AggregationResult,
    BridgeEvent,
    ClaimEvent,
    ParameterMismatch,
    ReconciliationReason,
    ReconciliationResult,
    ReconciliationStatus,
    TransferEvent,
    normalize_address,
    normalize_hex,
)

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationPolicy:
    """Which claim parameters are checked and how strictly.

    Attributes:
        strict_recipient: Treat a recipient missing on either side as a mismatch;
            when False the recipient is only compared if both sides carry one
        compare_sender: Compare the claimed sender when both sides carry one
        compare_data: Compare the data field when both sides carry one
        check_flow: Check the claim's bridge direction and networks against
            the transfer's, when both events carry bridge context
    """

    strict_recipient: bool = True
    compare_sender: bool = True
    compare_data: bool = True
    check_flow: bool = True


def _claim_order(claim: ClaimEvent) -> tuple[int, int, int, str]:
    return (claim.block_number, claim.log_index, claim.claim_num, normalize_hex(claim.transaction_hash))


def _transfer_order(transfer: TransferEvent) -> tuple[int, int, str]:
    return (transfer.block_number, transfer.log_index, normalize_hex(transfer.transaction_hash))


def _newest_first(results: list[ReconciliationResult]) -> tuple[ReconciliationResult, ...]:
    return tuple(sorted(
        results,
        key=lambda r: (
            r.block_number,
            r.claim.log_index if r.claim else -1,
            r.transfer.log_index if r.transfer else -1,
        ),
        reverse=True,
    ))


def find_parameter_mismatches(
    claim: ClaimEvent,
    transfer: TransferEvent,
    policy: ReconciliationPolicy | None = None
) -> list[ParameterMismatch]:
    """Compare a claim's asserted parameters with the transfer it references.

    Args:
        claim: The claim under validation
        transfer: The transfer whose hash matches the claim's txid
        policy: Which fields to compare

    Returns:
        List of disagreeing fields; empty when the claim is consistent
    """
    policy = policy or ReconciliationPolicy()
    mismatches: list[ParameterMismatch] = []

    if claim.amount != transfer.amount:
        mismatches.append(ParameterMismatch("amount", transfer.amount, claim.amount))

    expected_recipient = normalize_address(transfer.recipient_address)
    actual_recipient = normalize_address(claim.recipient_address)
    if policy.strict_recipient or (expected_recipient and actual_recipient):
        if expected_recipient != actual_recipient:
            mismatches.append(
                ParameterMismatch("recipient_address", transfer.recipient_address, claim.recipient_address)
            )

    if policy.compare_sender:
        expected_sender = normalize_address(transfer.sender_address)
        actual_sender = normalize_address(claim.sender_address)
        if expected_sender and actual_sender and expected_sender != actual_sender:
            mismatches.append(
                ParameterMismatch("sender_address", transfer.sender_address, claim.sender_address)
            )

    if policy.compare_data and transfer.data and claim.data and transfer.data.strip() != claim.data.strip():
        mismatches.append(ParameterMismatch("data", transfer.data, claim.data))

    if policy.check_flow and claim.bridge is not None and transfer.bridge is not None:
        expected_type = claim.bridge.expected_transfer_type
        if transfer.event_type is not expected_type:
            mismatches.append(
                ParameterMismatch("event_type", expected_type.value, transfer.event_type.value)
            )
        if claim.bridge.home_network != transfer.bridge.home_network:
            mismatches.append(
                ParameterMismatch("home_network", transfer.bridge.home_network, claim.bridge.home_network)
            )
        if claim.bridge.foreign_network != transfer.bridge.foreign_network:
            mismatches.append(
                ParameterMismatch(
                    "foreign_network", transfer.bridge.foreign_network, claim.bridge.foreign_network
                )
            )

    return mismatches


def aggregate(
    claims: Iterable[BridgeEvent],
    transfers: Iterable[BridgeEvent],
    policy: ReconciliationPolicy | None = None
) -> AggregationResult:
    """Reconcile claims against transfers.

    1. Transfers are indexed by their normalized transaction hash.
    2. Each claim, in (block, log index, claim number) order, is matched by
       txid. No match makes it suspicious (``no_matching_transfer``). A match
       with disagreeing parameters makes it suspicious (``parameter_mismatch``).
       Otherwise the transfer is completed by that claim.
    3. Transfers not completed by any claim are pending.

    Events of the wrong kind in either input are ignored.

    Args:
        claims: NewClaim events from any bridge
        transfers: NewExpatriation/NewRepatriation events from any bridge
        policy: Parameter validation policy

    Returns:
        AggregationResult with disjoint completed/pending lists, newest first
    """
    policy = policy or ReconciliationPolicy()

    claim_list = sorted(
        {c.unique_key: c for c in claims if isinstance(c, ClaimEvent)}.values(),
        key=_claim_order,
    )
    transfer_list = sorted(
        {t.unique_key: t for t in transfers if isinstance(t, TransferEvent)}.values(),
        key=_transfer_order,
    )

    transfer_index: dict[str, list[TransferEvent]] = {}
    for transfer in transfer_list:
        transfer_index.setdefault(transfer.correlation_key, []).append(transfer)

    completed: dict[tuple[str, int], ReconciliationResult] = {}
    suspicious: list[ReconciliationResult] = []

    for claim in claim_list:
        candidates = transfer_index.get(claim.correlation_key)
        if not candidates:
            logger.warning(f"Claim #{claim.claim_num} references unknown transfer {claim.txid}")
            suspicious.append(ReconciliationResult(
                transfer=None,
                claim=claim,
                status=ReconciliationStatus.SUSPICIOUS,
                is_fraudulent=True,
                reason=ReconciliationReason.NO_MATCHING_TRANSFER,
            ))
            continue

        first_mismatches: list[ParameterMismatch] | None = None
        matched: TransferEvent | None = None
        for transfer in candidates:
            mismatches = find_parameter_mismatches(claim, transfer, policy)
            if not mismatches:
                matched = transfer
                break
            if first_mismatches is None:
                first_mismatches = mismatches

        if matched is None:
            fields = ", ".join(m.field for m in first_mismatches or [])
            logger.warning(f"Claim #{claim.claim_num} disagrees with transfer {claim.txid}: {fields}")
            suspicious.append(ReconciliationResult(
                transfer=candidates[0],
                claim=claim,
                status=ReconciliationStatus.SUSPICIOUS,
                is_fraudulent=True,
                reason=ReconciliationReason.PARAMETER_MISMATCH,
                parameter_mismatches=tuple(first_mismatches or ()),
            ))
            continue

        existing = completed.get(matched.unique_key)
        if existing is None:
            completed[matched.unique_key] = ReconciliationResult(
                transfer=matched,
                claim=claim,
                status=ReconciliationStatus.COMPLETED,
            )
        else:
            completed[matched.unique_key] = ReconciliationResult(
                transfer=matched,
                claim=existing.claim,
                status=ReconciliationStatus.COMPLETED,
                additional_claims=existing.additional_claims + (claim,),
            )

    pending = [
        ReconciliationResult(
            transfer=transfer,
            claim=None,
            status=ReconciliationStatus.PENDING,
            reason=ReconciliationReason.NO_MATCHING_CLAIM,
        )
        for transfer in transfer_list
        if transfer.unique_key not in completed
    ]

    result = AggregationResult(
        completed_transfers=_newest_first(list(completed.values())),
        pending_transfers=_newest_first(pending),
        suspicious_claims=_newest_first(suspicious),
        total_claims=len(claim_list),
        total_transfers=len(transfer_list),
    )
    logger.info(
        f"Reconciled {result.total_transfers} transfers and {result.total_claims} claims: "
        f"{len(result.completed_transfers)} completed, {len(result.pending_transfers)} pending, "
        f"{len(result.suspicious_claims)} suspicious"
    )
    return result

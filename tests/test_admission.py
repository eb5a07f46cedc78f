"""Admission controller tests."""

from __future__ import annotations

import asyncio

import pytest
from safe_outputs_mcp.admission import AdmissionController
from safe_outputs_mcp.config import ActionType
from safe_outputs_mcp.errors import PolicyViolation


async def _admit(admission: AdmissionController, action_type: ActionType, maximum: int) -> int:
    async with admission.holding(action_type):
        admission.check(action_type, maximum)
        await asyncio.sleep(0)
        return admission.record(action_type)


@pytest.mark.asyncio
async def test_admit_until_max_then_reject_without_incrementing() -> None:
    admission = AdmissionController()

    assert await _admit(admission, ActionType.CLOSE_PULL_REQUEST, 2) == 1
    assert await _admit(admission, ActionType.CLOSE_PULL_REQUEST, 2) == 2
    with pytest.raises(PolicyViolation, match=r"Max count \(2\) exceeded for close_pull_request"):
        await _admit(admission, ActionType.CLOSE_PULL_REQUEST, 2)

    assert admission.count(ActionType.CLOSE_PULL_REQUEST) == 2


@pytest.mark.asyncio
async def test_types_are_counted_independently() -> None:
    admission = AdmissionController()

    await _admit(admission, ActionType.ADD_LABELS, 1)
    await _admit(admission, ActionType.REMOVE_LABELS, 1)

    assert admission.snapshot() == {"add-labels": 1, "remove-labels": 1}


@pytest.mark.asyncio
async def test_concurrent_admission_never_exceeds_max() -> None:
    admission = AdmissionController()

    async def attempt() -> bool:
        try:
            await _admit(admission, ActionType.ADD_COMMENT, 4)
        except PolicyViolation:
            return False
        return True

    outcomes = await asyncio.gather(*(attempt() for _ in range(20)))

    assert outcomes.count(True) == 4
    assert admission.count(ActionType.ADD_COMMENT) == 4


@pytest.mark.asyncio
async def test_failed_check_inside_lock_consumes_nothing() -> None:
    admission = AdmissionController()

    with pytest.raises(ValueError):
        async with admission.holding(ActionType.NOOP):
            admission.check(ActionType.NOOP, 1)
            raise ValueError("scope failed")

    assert admission.count(ActionType.NOOP) == 0
    assert await _admit(admission, ActionType.NOOP, 1) == 1


def test_separate_controllers_do_not_share_state() -> None:
    a = AdmissionController()
    b = AdmissionController()
    a.record(ActionType.NOOP)
    assert b.count(ActionType.NOOP) == 0

"""Admission finite state machine."""

from __future__ import annotations

from enum import Enum


class AdmissionState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    GATED = "gated"
    COMMITTED = "committed"
    REJECTED = "rejected"


class AdmissionStep(str, Enum):
    VALIDATION_PASSED = "validation_passed"
    GATE_EVALUATED = "gate_evaluated"
    COMMIT_APPLIED = "commit_applied"
    GATE_DECLINED = "gate_declined"


_TRANSITIONS = {
    (AdmissionState.RECEIVED, AdmissionStep.VALIDATION_PASSED): AdmissionState.VALIDATED,
    (AdmissionState.VALIDATED, AdmissionStep.GATE_EVALUATED): AdmissionState.GATED,
    (AdmissionState.GATED, AdmissionStep.COMMIT_APPLIED): AdmissionState.COMMITTED,
    (AdmissionState.GATED, AdmissionStep.GATE_DECLINED): AdmissionState.REJECTED,
}


def transition(current: AdmissionState, step: AdmissionStep) -> AdmissionState:
    try:
        return _TRANSITIONS[(current, step)]
    except KeyError as exc:
        raise ValueError(f"invalid transition from {current} via {step}") from exc

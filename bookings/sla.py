"""SLA timing derived from status history.

Everything here is a function of the recorded timestamps, so replaying the
same history always yields the same figures.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .models import BookingStatus, SLAStatus

RESPONSE_STATUSES = (BookingStatus.QUOTE_SENT, BookingStatus.PAYMENT_PENDING)


@dataclass
class SLASnapshot:
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_response_minutes: Optional[int] = None
    actual_completion_minutes: Optional[int] = None
    actual_service_minutes: Optional[int] = None
    response_on_time: Optional[bool] = None
    completion_on_time: Optional[bool] = None
    response_delay_minutes: Optional[int] = None
    completion_delay_minutes: Optional[int] = None
    status: str = SLAStatus.PENDING


def minutes_between(start, end):
    return math.floor((end - start).total_seconds() / 60 + 0.5)


def _first(history, statuses):
    for status, timestamp in history:
        if status in statuses:
            return timestamp
    return None


def compute_sla(created_at, history: Iterable, target_response, target_completion):
    """``history`` is an iterable of ``(status, timestamp)`` in recorded order."""
    history = list(history)
    snapshot = SLASnapshot()

    snapshot.accepted_at = _first(history, RESPONSE_STATUSES)
    snapshot.started_at = _first(history, (BookingStatus.SERVICE_ACTIVE,))
    snapshot.completed_at = _first(history, (BookingStatus.COMPLETED,))

    if snapshot.completed_at is not None:
        if snapshot.accepted_at is None:
            snapshot.accepted_at = created_at
        if snapshot.started_at is None:
            snapshot.started_at = snapshot.accepted_at

    if snapshot.accepted_at is not None:
        snapshot.actual_response_minutes = minutes_between(created_at, snapshot.accepted_at)
        snapshot.response_on_time = snapshot.actual_response_minutes <= target_response
        snapshot.response_delay_minutes = snapshot.actual_response_minutes - target_response

    if snapshot.completed_at is not None:
        snapshot.actual_completion_minutes = minutes_between(created_at, snapshot.completed_at)
        snapshot.actual_service_minutes = minutes_between(snapshot.started_at, snapshot.completed_at)
        snapshot.completion_on_time = snapshot.actual_completion_minutes <= target_completion
        snapshot.completion_delay_minutes = snapshot.actual_completion_minutes - target_completion
        snapshot.status = SLAStatus.MET if snapshot.completion_on_time else SLAStatus.MISSED

    return snapshot


SLA_FIELDS = {
    'accepted_at': 'sla_accepted_at',
    'started_at': 'sla_started_at',
    'completed_at': 'sla_completed_at',
    'actual_response_minutes': 'sla_actual_response_minutes',
    'actual_completion_minutes': 'sla_actual_completion_minutes',
    'actual_service_minutes': 'sla_actual_service_minutes',
    'response_on_time': 'sla_response_on_time',
    'completion_on_time': 'sla_completion_on_time',
    'response_delay_minutes': 'sla_response_delay_minutes',
    'completion_delay_minutes': 'sla_completion_delay_minutes',
    'status': 'sla_status',
}


def apply_sla(booking, history):
    """Copy the computed snapshot onto ``booking`` and return the field names."""
    snapshot = compute_sla(
        booking.created_at,
        history,
        booking.sla_target_response_minutes,
        booking.sla_target_completion_minutes,
    )
    for attr, field in SLA_FIELDS.items():
        setattr(booking, field, getattr(snapshot, attr))
    return list(SLA_FIELDS.values())

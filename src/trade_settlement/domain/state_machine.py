"""Deal, milestone and escrow-record state machine guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what a caller does, an illegal transition (e.g. draft -> completed)
raises before any ledger call or repository write.

The machines are instantiated per entity at its persisted status, fired,
and then discarded; the ORM row's status column is updated only afterwards.

Deal transition table:
    draft     -> funded      (fund_confirmed)
    funded    -> active      (milestone_verified | release_partial)
    active    -> active      (milestone_verified | release_partial)
    funded    -> completed   (release_final)
    active    -> completed   (release_final)
    draft     -> disputed    (raise_dispute)
    funded    -> disputed    (raise_dispute)
    active    -> disputed    (raise_dispute)
    draft     -> cancelled   (cancel_deal)
    funded    -> cancelled   (cancel_deal)

completed, cancelled and disputed are terminal for the core; dispute
resolution happens out of band.

Milestone:  Pending -> Released (release) | Pending -> Disputed (dispute_milestone)
Escrow:     created -> finished (finish)  | created -> cancelled (cancel_escrow)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from trade_settlement.domain.exceptions import InvalidStateTransitionError


class _StatusGuard:
    """Shared constructor and helpers for the status guards below."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return the ids of the events that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class DealStateMachine(_StatusGuard, StateMachine):
    """Guards the deal lifecycle.

    Usage:
        sm = DealStateMachine(current_status="funded")
        sm.release_partial()  # transitions to active
    """

    draft = State("Draft", initial=True)
    funded = State("Funded")
    active = State("Active")
    completed = State("Completed", final=True)
    cancelled = State("Cancelled", final=True)
    disputed = State("Disputed", final=True)

    fund_confirmed = draft.to(funded)

    milestone_verified = funded.to(active) | active.to.itself()
    release_partial = funded.to(active) | active.to.itself()
    release_final = funded.to(completed) | active.to(completed)

    raise_dispute = draft.to(disputed) | funded.to(disputed) | active.to(disputed)
    cancel_deal = draft.to(cancelled) | funded.to(cancelled)


class MilestoneStateMachine(_StatusGuard, StateMachine):
    """Guards a milestone. Released milestones are immutable."""

    Pending = State("Pending", initial=True)
    Released = State("Released", final=True)
    Disputed = State("Disputed", final=True)

    release = Pending.to(Released)
    dispute_milestone = Pending.to(Disputed)


class EscrowRecordStateMachine(_StatusGuard, StateMachine):
    """Guards the local escrow record; it only ever moves forward."""

    created = State("Created", initial=True)
    finished = State("Finished", final=True)
    cancelled = State("Cancelled", final=True)

    finish = created.to(finished)
    cancel_escrow = created.to(cancelled)


def fire_transition(
    machine_cls: type[_StatusGuard],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine at ``current_status``, fires the named
    event and returns the resulting status string.

    Raises:
        InvalidStateTransitionError: If the event is unknown or not allowed
            from ``current_status``.
        ValueError: If ``current_status`` is not a state of the machine.
    """
    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(current_status, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, event_name) from err
    return sm.status


def can_fire(machine_cls: type[_StatusGuard], current_status: str, event_name: str) -> bool:
    """Return True if ``event_name`` is allowed from ``current_status``."""
    return event_name in machine_cls(current_status=current_status).get_allowed_events()

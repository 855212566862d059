"""Transition records for the append-only state ledger."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyconductor.models.status import EntityKind

SORT_KEY_STEP = 10
"""Gap between consecutive sort keys of one entity."""


@dataclass(frozen=True)
class Transition:
    """Immutable record of one state change of a task or step.

    For a given entity exactly one transition has most_recent=True; its
    to_state is the entity's current state.
    """

    transition_id: str
    """Unique identifier (UUIDv7 string)."""

    entity_kind: EntityKind
    """Whether this transition belongs to a task or a step."""

    entity_id: str
    """task_id or step_id."""

    from_state: str | None
    """Previous state value, None for the entity's first transition."""

    to_state: str
    """New state value."""

    sort_key: int
    """Per-entity ordering key, increasing by SORT_KEY_STEP."""

    most_recent: bool
    """True only for the entity's latest transition."""

    created_at: datetime

    metadata: dict[str, Any] = field(default_factory=dict)
    """Free-form context (reason, attempt number, error class)."""


__all__ = ["Transition", "SORT_KEY_STEP"]

"""Service preference mode state machine.

LEGACY keeps the per-service block-list on the profile. MANUAL and AUTO use
structured per-service preference records keyed by the settings version, so
a mode change always moves to a fresh settings version. Once a profile has
left LEGACY it can never go back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import ProfileConflictError
from .models import (
    ServicePreferencesBlock,
    ServicePreferencesMode,
    ServicePreferencesSettings,
)

logger = logging.getLogger(__name__)

LEGACY = ServicePreferencesMode.LEGACY
MANUAL = ServicePreferencesMode.MANUAL
AUTO = ServicePreferencesMode.AUTO

ALLOWED_TRANSITIONS: frozenset[tuple[ServicePreferencesMode, ServicePreferencesMode]] = (
    frozenset(
        {
            (LEGACY, MANUAL),
            (LEGACY, AUTO),
            (MANUAL, AUTO),
            (AUTO, MANUAL),
        }
    )
)


@dataclass(frozen=True)
class ModeTransition:
    previous: ServicePreferencesSettings
    mode: ServicePreferencesMode
    version: int

    @property
    def changed(self) -> bool:
        return self.mode != self.previous.mode

    @property
    def settings(self) -> ServicePreferencesSettings:
        return ServicePreferencesSettings(mode=self.mode, version=self.version)


def requested_mode(block: ServicePreferencesBlock | None) -> ServicePreferencesMode:
    """An omitted preference block is a request for LEGACY."""
    if block is None:
        return LEGACY
    return block.mode


def compute_mode_transition(
    current: ServicePreferencesSettings,
    requested: ServicePreferencesMode,
) -> ModeTransition:
    """Validate ``current.mode -> requested`` and compute the resulting settings.

    Raises ``ProfileConflictError`` for a forbidden transition. The settings
    version is bumped by exactly one on an effective change and carried over
    otherwise.
    """
    if requested == current.mode:
        return ModeTransition(previous=current, mode=current.mode, version=current.version)

    if (current.mode, requested) not in ALLOWED_TRANSITIONS:
        logger.warning(
            "Forbidden service preferences mode transition %s -> %s",
            current.mode.value,
            requested.value,
        )
        raise ProfileConflictError(f"Mode {requested.value} is not valid.")

    return ModeTransition(previous=current, mode=requested, version=current.version + 1)


def is_legacy_to_auto(
    old: ServicePreferencesSettings, new: ServicePreferencesSettings
) -> bool:
    """True only for the one transition that requires a block-list migration."""
    return old.mode == LEGACY and new.mode == AUTO

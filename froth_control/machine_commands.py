"""Command names understood by the kiosk machine firmware.

These strings are published verbatim on ``{machineId}/input``. The firmware
vocabulary is open, so the dispatcher only warns about names missing here
unless strict checking is enabled.

Spellings (including ``intermideate_brew-1`` and ``Intermideate_brew-2``)
match what the firmware expects and must not be corrected.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable


class MachineCommandNames:
    """Machine command constants."""

    # -------------------------------------------------------------------------
    # Calibration (service controls)
    # -------------------------------------------------------------------------

    UP = "up"
    DOWN = "down"
    SAVE = "save"
    EXIT = "exit"

    # -------------------------------------------------------------------------
    # Latches
    # -------------------------------------------------------------------------

    UP_ON = "up_on"
    UP_OFF = "up_off"
    DOWN_ON = "down_on"
    DOWN_OFF = "down_off"

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    FLUSHING = "flushing"
    HOT_WATER = "hot_water"
    HOT_MILK = "hot_milk"
    DEMO = "Demo"

    # -------------------------------------------------------------------------
    # Brew steps
    # -------------------------------------------------------------------------

    MAIN_BREW_1 = "main_brew-1"
    MAIN_BREW_2 = "main_brew-2"
    INTERMEDIATE_BREW_1 = "intermideate_brew-1"
    INTERMEDIATE_BREW_2 = "Intermideate_brew-2"

    # -------------------------------------------------------------------------
    # Beverages
    # -------------------------------------------------------------------------

    COFFEE_BREW = "coffee_brew"
    BLACK_TEA = "black_tea"
    LIGHT_COFFEE = "light_coffee"
    STRONG_COFFEE = "strong_coffee"
    LIGHT_TEA = "light_tea"
    STRONG_TEA = "strong_tea"


ALL_COMMANDS: FrozenSet[str] = frozenset(
    value
    for name, value in vars(MachineCommandNames).items()
    if name.isupper() and isinstance(value, str)
)

LATCHES = ("up", "down")


def latch_command(latch: str, engaged: bool) -> str:
    """Return the command toggling ``latch`` on or off."""
    normalized = latch.strip().lower()
    if normalized not in LATCHES:
        raise ValueError(f"Unknown latch {latch!r}; expected one of {', '.join(LATCHES)}")
    return f"{normalized}_{'on' if engaged else 'off'}"


class CommandVocabulary:
    """Known command names plus any site-specific additions."""

    def __init__(self, extra: Iterable[str] = (), *, strict: bool = False) -> None:
        self._names = ALL_COMMANDS | frozenset(
            name.strip() for name in extra if name and name.strip()
        )
        self.strict = strict

    def is_known(self, name: str) -> bool:
        return name in self._names

    @property
    def names(self) -> list[str]:
        return sorted(self._names)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.is_known(name)

    def __len__(self) -> int:
        return len(self._names)

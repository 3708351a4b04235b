"""Dice rolling tool."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Any

from emulbot.agent.tools.base import Tool, ToolResult
from emulbot.errors import ValidationError

_DICE_RE = re.compile(r"^\s*(\d+)\s*[dD]\s*(\d+)\s*(?:([+-])\s*(\d+))?\s*$")


@dataclass(frozen=True)
class DiceRoll:
    notation: str
    rolls: list[int]
    modifier: int
    total: int

    def describe(self) -> str:
        if self.modifier > 0:
            mod = f" + {self.modifier}"
        elif self.modifier < 0:
            mod = f" - {-self.modifier}"
        else:
            mod = ""
        return f"Rolled {self.notation}: [{', '.join(map(str, self.rolls))}]{mod} = {self.total}"


def roll_dice(
    notation: str,
    *,
    max_dice: int = 100,
    max_sides: int = 1000,
    max_modifier: int = 10000,
    rng: random.Random | None = None,
) -> DiceRoll:
    """Roll ``<count>d<sides>[+|-<modifier>]``, bounds-checked."""
    match = _DICE_RE.match(notation or "")
    if not match:
        raise ValidationError(
            f"Invalid dice notation: {notation!r}. Use [count]d[sides][+/-modifier], e.g. 3d6+2"
        )
    count, sides = int(match.group(1)), int(match.group(2))
    if not 1 <= count <= max_dice:
        raise ValidationError(f"Number of dice must be between 1 and {max_dice}.")
    if not 1 <= sides <= max_sides:
        raise ValidationError(f"Number of sides must be between 1 and {max_sides}.")
    modifier = 0
    if match.group(3):
        modifier = int(match.group(4))
        if modifier > max_modifier:
            raise ValidationError(f"Modifier must be at most {max_modifier}.")
        if match.group(3) == "-":
            modifier = -modifier

    rng = rng or random.Random()
    rolls = [rng.randint(1, sides) for _ in range(count)]
    canonical = f"{count}d{sides}" + (f"{match.group(3)}{abs(modifier)}" if match.group(3) else "")
    return DiceRoll(notation=canonical, rolls=rolls, modifier=modifier, total=sum(rolls) + modifier)


class RollDiceTool(Tool):
    """Roll dice in standard tabletop notation."""

    def __init__(
        self,
        max_dice: int = 100,
        max_sides: int = 1000,
        max_modifier: int = 10000,
        rng: random.Random | None = None,
    ):
        self.max_dice = max_dice
        self.max_sides = max_sides
        self.max_modifier = max_modifier
        self._rng = rng or random.Random()

    @property
    def name(self) -> str:
        return "roll_dice"

    @property
    def description(self) -> str:
        return (
            "Rolls one or more dice with a specified number of sides. "
            "E.g., 3d6 means roll 3 six-sided dice."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "dice_notation": {
                    "type": "string",
                    "description": (
                        "The dice notation string (e.g., '1d20', '3d6', '2d10+5'). "
                        "It must be in the format [number]d[sides][+/-modifier]."
                    ),
                    "minLength": 3,
                    "maxLength": 32,
                },
            },
            "required": ["dice_notation"],
        }

    async def execute(self, dice_notation: str, **kwargs: Any) -> ToolResult:
        roll = roll_dice(
            dice_notation,
            max_dice=self.max_dice,
            max_sides=self.max_sides,
            max_modifier=self.max_modifier,
            rng=self._rng,
        )
        return ToolResult.success(
            roll.describe(),
            payload={"rolls": roll.rolls, "modifier": roll.modifier, "total": roll.total},
        )

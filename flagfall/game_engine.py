"""
Abstract game engine interface.

A game plugs into the room server by implementing this interface.
The server never looks at rules: it routes each player action through
apply_action and broadcasts whatever state comes back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class ActionResult:
    """Returned by apply_action to tell the caller what happened."""
    new_state: dict
    # Human-readable event lines for everyone at the table
    log: list[str] = field(default_factory=list)
    # True once the match has ended (set on the action that ends it)
    game_over: bool = False
    # False when the action broke a game rule; new_state is then the
    # untouched input state
    accepted: bool = True


class GameEngine(ABC):
    """
    Pure-logic game engine. No networking, no rendering, just rules.

    State is always a plain dict (JSON-serializable) so the server can
    keep it in memory, send it over the wire, and resend it on reconnect.

    Two failure modes are kept apart:
      * breaking a game rule is expected and returns
        ActionResult(accepted=False) with the state unchanged;
      * malformed input (unknown player, bad flag index, unknown action
        kind) is a protocol bug and raises ValueError.
    """

    player_count_range: tuple[int, int] = (2, 2)

    @abstractmethod
    def initial_state(self, player_ids: list[str], player_names: list[str]) -> dict:
        """Create the starting state. Called when a room starts or restarts."""
        ...

    @abstractmethod
    def get_player_view(self, state: dict, player_id: str) -> dict:
        """Return a copy of the state with other players' secrets hidden."""
        ...

    @abstractmethod
    def get_valid_actions(self, state: dict, player_id: str) -> list[dict]:
        """
        Return every action this player may submit right now.
        Empty list means nothing is currently legal for them.
        """
        ...

    @abstractmethod
    def apply_action(self, state: dict, player_id: str, action: dict) -> ActionResult:
        """Validate and apply one action; never mutates the input state."""
        ...

    @abstractmethod
    def get_waiting_for(self, state: dict) -> list[str]:
        """Return the player_ids who currently have a legal action."""
        ...

    @abstractmethod
    def get_phase_info(self, state: dict) -> dict:
        """Return a short summary of the current situation for display."""
        ...

    def get_result(self, state: dict) -> dict:
        """
        Return {"over": bool, "winner": ..., "scores": {...}}.
        Engines without a scoreboard can keep this default.
        """
        return {"over": False, "winner": None, "scores": {}}

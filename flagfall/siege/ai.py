"""
Scripted opponent for Siege.

Looks one action ahead: every legal action is tried on the engine (which
works on a copy) and the resulting position is scored from the bot's
point of view. Nothing here mutates the state it is given.
"""

import random
from dataclasses import dataclass

from flagfall.siege.engine import SiegeEngine
from flagfall.siege.formations import evaluate_formation
from flagfall.siege.state import flag_complete


@dataclass(frozen=True)
class AISpec:
    """Simple AI tuning parameters.

    difficulty:
      0 = easy (sometimes plays a random legal action)
      1 = normal
      2 = hard (never blunders on purpose)
    """

    difficulty: int = 1


MISTAKE_RATE = {0: 0.35, 1: 0.10, 2: 0.0}

WIN_SCORE = 1000.0
FLAG_WON = 10.0
FLAG_LEADING = 3.0
FORMATION_WEIGHT = 0.5
PRIVILEGE_BONUS = 2.0


def evaluate_position(state, player_id):
    """Score a snapshot for `player_id`; higher is better."""
    opponent = _opponent(state, player_id)

    if state["game_over"]:
        if state["winner"] == player_id:
            return WIN_SCORE
        if state["winner"] == "Tie":
            return 0.0
        return -WIN_SCORE

    score = FLAG_WON * (state["scores"][player_id] - state["scores"][opponent])

    for flag in state["board"]:
        if flag_complete(flag):
            continue
        if flag["claimed_by"] == player_id:
            score += FLAG_LEADING
        elif flag["claimed_by"] == opponent:
            score -= FLAG_LEADING
        # Partly filled slots count in proportion to how full they are
        for pid, sign in ((player_id, 1), (opponent, -1)):
            cards = flag["cards"][pid]
            if not cards:
                continue
            category, _ = evaluate_formation(cards, flag["capacity"])
            score += sign * FORMATION_WEIGHT * category * len(cards) / flag["capacity"]

    if state["attack_privilege"] == player_id:
        score += PRIVILEGE_BONUS
    elif state["attack_privilege"] == opponent:
        score -= PRIVILEGE_BONUS
    if state["citadel_privilege"] == player_id:
        score += PRIVILEGE_BONUS
    elif state["citadel_privilege"] == opponent:
        score -= PRIVILEGE_BONUS

    return score


def choose_action(state, player_id, spec=None, rng=None, engine=None):
    """
    Pick an action dict for `player_id`, or None if nothing is legal.
    Equal-scoring actions are broken with `rng` when given, else the
    first one found wins.
    """
    spec = spec or AISpec()
    engine = engine or SiegeEngine()
    actions = engine.get_valid_actions(state, player_id)
    if not actions:
        return None

    if rng is not None and rng.random() < MISTAKE_RATE.get(spec.difficulty, 0.0):
        return rng.choice(actions)

    best_score = None
    best_actions = []
    for action in actions:
        result = engine.apply_action(state, player_id, action)
        if not result.accepted:
            continue
        score = evaluate_position(result.new_state, player_id)
        if best_score is None or score > best_score:
            best_score = score
            best_actions = [action]
        elif score == best_score:
            best_actions.append(action)

    if not best_actions:
        return None
    if rng is not None:
        return rng.choice(best_actions)
    return best_actions[0]


def bot_move(state, player_id, difficulty=1, rng=None):
    """Room-server hook: the action a bot seat of this difficulty plays."""
    return choose_action(state, player_id, spec=AISpec(difficulty=difficulty), rng=rng)


def play_out(state, spec=None, seed=None, max_actions=500):
    """
    Let the bot play every seat until the match ends or nobody can act.
    Returns the final state. Handy for soak-testing the rules.
    """
    engine = SiegeEngine()
    rng = random.Random(seed)
    for _ in range(max_actions):
        if state["game_over"]:
            break
        waiting = engine.get_waiting_for(state)
        if not waiting:
            break
        player_id = rng.choice(waiting)
        action = choose_action(state, player_id, spec=spec, rng=rng, engine=engine)
        if action is None:
            break
        state = engine.apply_action(state, player_id, action).new_state
    return state


def _opponent(state, player_id):
    return next(pid for pid in state["player_ids"] if pid != player_id)

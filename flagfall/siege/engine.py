"""
Siege game engine.

Implements the GameEngine interface as a pure state machine.
All state is a plain dict. No side effects, no networking.

There is no turn counter. Whoever currently passes an action's guard
may act; the freeze and privilege fields are what order the turns:

  attack_privilege   holder must destroy a card before anyone places
  citadel_privilege  only the holder may place until they move a card
  freeze             encampment charge: owner waits, opponent answers
                     on the same flag; cannon: an attack is pending
"""

from copy import deepcopy

from flagfall.game_engine import GameEngine, ActionResult
from flagfall.siege.state import (
    CANNON, CANNON_CAPACITY, CANNON_FREEZE, ENCAMPMENT_FREEZE, DEFAULT_HAND_SIZE,
    create_initial_state, check_card, card_key, card_name,
    draw_up_to_max, slot_full, board_complete, player_name,
)
from flagfall.siege.effects import resolve_board, compute_scores, final_result


class SiegeEngine(GameEngine):

    player_count_range = (2, 2)

    def __init__(self, hand_size=DEFAULT_HAND_SIZE, scoring_mode="formation", rng=None):
        self.hand_size = hand_size
        self.scoring_mode = scoring_mode
        self.rng = rng

    # ── Setup ─────────────────────────────────────────────────────────

    def initial_state(self, player_ids, player_names):
        return create_initial_state(
            player_ids, player_names,
            hand_size=self.hand_size, scoring_mode=self.scoring_mode, rng=self.rng,
        )

    # ── Views ─────────────────────────────────────────────────────────

    def get_player_view(self, state, player_id):
        """Return state with the opponent's hand and the deck reduced to counts."""
        self._validate_player(state, player_id)
        view = deepcopy(state)
        for pid in view["player_ids"]:
            if pid != player_id:
                view["hands"][pid] = len(view["hands"][pid])
        view["deck"] = len(view["deck"])
        view.pop("log", None)
        return view

    def get_valid_actions(self, state, player_id):
        self._validate_player(state, player_id)
        if state["game_over"]:
            return []

        actions = []
        targets = list(range(len(state["board"]))) + [CANNON]
        for card in state["hands"][player_id]:
            ref = {"color": card["color"], "rank": card["rank"]}
            for target in targets:
                if can_place(state, player_id, ref, target):
                    actions.append({"kind": "place", "card": ref, "target": target})

        if can_destroy(state, player_id):
            for card in _all_placed_cards(state):
                actions.append({"kind": "destroy", "card": dict(card)})

        for fi, flag in enumerate(state["board"]):
            for card in flag["cards"][player_id]:
                for ti in range(len(state["board"])):
                    if ti != fi and can_move(state, player_id, fi, ti, card):
                        actions.append({
                            "kind": "move", "card": dict(card),
                            "from_flag": fi, "to_flag": ti,
                        })
        return actions

    def get_waiting_for(self, state):
        if state["game_over"]:
            return []
        return [pid for pid in state["player_ids"] if self.get_valid_actions(state, pid)]

    def get_phase_info(self, state):
        names = dict(zip(state["player_ids"], state["player_names"]))
        freeze = state["freeze"]

        if state["game_over"]:
            winner = state["winner"]
            description = "Tie game" if winner == "Tie" else f"{names[winner]} wins"
            phase = "game_over"
        elif state["attack_privilege"] is not None:
            description = f"{names[state['attack_privilege']]}: Destroy a card"
            phase = "attack"
        elif state["citadel_privilege"] is not None:
            description = f"{names[state['citadel_privilege']]}: Citadel, move one of your cards"
            phase = "citadel"
        elif freeze and freeze["kind"] == ENCAMPMENT_FREEZE:
            description = f"Charge at flag {freeze['flag_index'] + 1}: {names[freeze['owner']]} waits"
            phase = "encampment_freeze"
        else:
            description = "Place a card"
            phase = "place"

        return {
            "phase": phase,
            "cards_placed": state["cards_placed"],
            "deck": len(state["deck"]),
            "scores": dict(state["scores"]),
            "description": description,
        }

    def get_result(self, state):
        return is_game_over(state)

    # ── Action Dispatch ───────────────────────────────────────────────

    def apply_action(self, state, player_id, action):
        if not isinstance(action, dict):
            raise ValueError(f"Action must be an object, got {type(action).__name__}")
        kind = action.get("kind")
        if kind == "place":
            return self.place(state, player_id, action.get("card"), action.get("target"))
        if kind == "destroy":
            return self.destroy(state, player_id, action.get("card"))
        if kind == "move":
            return self.move(state, player_id, action.get("from_flag"),
                             action.get("to_flag"), action.get("card"))
        raise ValueError(f"Invalid action kind: {kind}")

    # ── Actions ───────────────────────────────────────────────────────

    def place(self, state, player_id, card, target):
        self._validate_player(state, player_id)
        check_card(card)
        self._validate_target(state, target)

        if not can_place(state, player_id, card, target):
            return _rejected(state)

        state = deepcopy(state)
        hand = state["hands"][player_id]
        placed = hand.pop(_find_in_hand(hand, card))
        placed["owner"] = player_id
        state["cards_placed"] += 1
        name = player_name(state, player_id)

        if target == CANNON:
            state["cannons"][player_id].append(placed)
            log = [f"{name} loads {card_name(placed)} into the cannon"]
            log += _check_cannon(state, player_id)
        else:
            state["board"][target]["cards"][player_id].append(placed)
            log = [f"{name} plays {card_name(placed)} on flag {target + 1}"]
            log += resolve_board(state, actor=player_id)

        draw_up_to_max(state, player_id)
        return _finish(state, log)

    def destroy(self, state, attacker_id, card):
        self._validate_player(state, attacker_id)
        check_card(card)

        if not can_destroy(state, attacker_id):
            return _rejected(state)
        if _locate_card(state, card) is None:
            return _rejected(state)

        state = deepcopy(state)
        pile = _locate_card(state, card)
        removed = pile.pop(next(i for i, c in enumerate(pile) if card_key(c) == card_key(card)))

        state["attack_privilege"] = None
        state["freeze"] = None

        log = [f"{player_name(state, attacker_id)} destroys {player_name(state, removed['owner'])}'s "
               f"{card_name(removed)}"]
        log += resolve_board(state, actor=attacker_id)
        for pid in state["player_ids"]:
            log += _check_cannon(state, pid)
        return _finish(state, log)

    def move(self, state, player_id, from_flag, to_flag, card):
        self._validate_player(state, player_id)
        self._validate_flag_index(state, from_flag)
        self._validate_flag_index(state, to_flag)
        check_card(card)

        if not can_move(state, player_id, from_flag, to_flag, card):
            return _rejected(state)

        state = deepcopy(state)
        state["citadel_privilege"] = None
        name = player_name(state, player_id)
        source = state["board"][from_flag]["cards"][player_id]
        dest_flag = state["board"][to_flag]

        if from_flag == to_flag:
            log = [f"{name} leaves {card_name(card)} on flag {from_flag + 1}"]
        elif slot_full(dest_flag, player_id):
            log = [f"{name} cannot move {card_name(card)}: flag {to_flag + 1} is full"]
        else:
            moved = source.pop(_find_in_slot(source, card))
            dest_flag["cards"][player_id].append(moved)
            log = [f"{name} moves {card_name(moved)} from flag {from_flag + 1} to flag {to_flag + 1}"]

        log += resolve_board(state, actor=player_id)
        return _finish(state, log)

    # ── Helpers ───────────────────────────────────────────────────────

    def _validate_player(self, state, player_id):
        if player_id not in state["player_ids"]:
            raise ValueError(f"Player {player_id} not in this game")

    def _validate_flag_index(self, state, fi):
        if not isinstance(fi, int) or isinstance(fi, bool):
            raise ValueError(f"Invalid flag index: {fi!r}")
        if fi < 0 or fi >= len(state["board"]):
            raise ValueError("Invalid flag index")

    def _validate_target(self, state, target):
        if target != CANNON:
            self._validate_flag_index(state, target)


# ── Guards ────────────────────────────────────────────────────────────
#
# Each guard is a pure predicate over the state. They assume the
# structural checks (known player, valid index, well-formed card)
# already passed.

def can_place(state, player_id, card, target):
    if state["game_over"]:
        return False
    if _find_in_hand(state["hands"][player_id], card) is None:
        return False
    if state["citadel_privilege"] not in (None, player_id):
        return False

    if target == CANNON:
        if state["fired_cannons"][player_id]:
            return False
        if state["attack_privilege"] == player_id:
            return False
        return len(state["cannons"][player_id]) < CANNON_CAPACITY

    if state["attack_privilege"] is not None:
        return False
    freeze = state["freeze"]
    if freeze is not None:
        if freeze["kind"] != ENCAMPMENT_FREEZE:
            return False
        if player_id == freeze["owner"] or target != freeze["flag_index"]:
            return False
    return not slot_full(state["board"][target], player_id)


def can_destroy(state, attacker_id):
    return not state["game_over"] and state["attack_privilege"] == attacker_id


def can_move(state, player_id, from_flag, to_flag, card):
    if state["game_over"]:
        return False
    if state["citadel_privilege"] != player_id:
        return False
    if state["attack_privilege"] == player_id:
        return False
    source = state["board"][from_flag]["cards"][player_id]
    return _find_in_slot(source, card) is not None


# ── Public Interface ──────────────────────────────────────────────────

_engine = SiegeEngine()


def create_match(player_ids, player_names=None, hand_size=DEFAULT_HAND_SIZE,
                 scoring_mode="formation", rng=None):
    """Build a fresh match: shuffled deck, full board, dealt hands."""
    return create_initial_state(player_ids, player_names, hand_size=hand_size,
                                scoring_mode=scoring_mode, rng=rng)


def apply_place(state, player_id, card, target):
    return _engine.place(state, player_id, card, target)


def apply_destroy(state, attacker_id, card):
    return _engine.destroy(state, attacker_id, card)


def apply_move(state, player_id, from_flag, to_flag, card):
    return _engine.move(state, player_id, from_flag, to_flag, card)


def is_game_over(state):
    """
    Return {"over", "winner", "scores"}. Pure: reads the latched result
    once the match has ended, so repeated calls agree.
    """
    if state["game_over"]:
        return {"over": True, "winner": state["winner"], "scores": dict(state["scores"])}
    if board_complete(state):
        scores, winner = final_result(state)
        return {"over": True, "winner": winner, "scores": scores}
    return {"over": False, "winner": None, "scores": dict(state["scores"])}


# ── Internals ─────────────────────────────────────────────────────────

def _rejected(state):
    return ActionResult(new_state=state, accepted=False)


def _finish(state, log):
    """Rescore, latch the end of the match if the board is full, record the log."""
    state["scores"] = compute_scores(state)
    if board_complete(state):
        scores, winner = final_result(state)
        state["scores"] = scores
        state["winner"] = winner
        state["game_over"] = True
        if winner == "Tie":
            log.append("The match ends in a tie")
        else:
            log.append(f"{player_name(state, winner)} wins!")
    state["log"].extend(log)
    return ActionResult(new_state=state, log=log, game_over=state["game_over"])


def _check_cannon(state, player_id):
    """Fire a loaded cannon: two cards of one color grant an attack."""
    cannon = state["cannons"][player_id]
    if state["fired_cannons"][player_id] or len(cannon) < CANNON_CAPACITY:
        return []
    if state["attack_privilege"] is not None:
        return []
    if len({card["color"] for card in cannon}) != 1:
        return []
    state["attack_privilege"] = player_id
    state["fired_cannons"][player_id] = True
    state["freeze"] = {"kind": CANNON_FREEZE}
    return [f"{player_name(state, player_id)} fires the cannon and may destroy a card"]


def _find_in_hand(hand, card):
    for i, c in enumerate(hand):
        if c["color"] == card["color"] and c["rank"] == card["rank"]:
            return i
    return None


def _find_in_slot(slot, card):
    """Cards in a slot all share an owner, so color and rank identify one."""
    return _find_in_hand(slot, card)


def _locate_card(state, card):
    """Return the list (flag slot or cannon) holding this exact owned card."""
    key = card_key(card)
    for flag in state["board"]:
        for cards in flag["cards"].values():
            if any(card_key(c) == key for c in cards):
                return cards
    for cannon in state["cannons"].values():
        if any(card_key(c) == key for c in cannon):
            return cannon
    return None


def _all_placed_cards(state):
    for flag in state["board"]:
        for cards in flag["cards"].values():
            yield from cards
    for cannon in state["cannons"].values():
        yield from cannon

"""
Per-flag derived state and special abilities.

resolve_flag() is re-run after anything touches a flag's cards. It
recomputes who currently leads the flag, the legacy bonus fields, and
fires the flag kind's one-shot trigger when a slot first fills up.
"""

from flagfall.siege.formations import (
    evaluate_formation, best_player, formation_label, NONE,
)
from flagfall.siege.state import (
    OUTPOST, GARRISON, ENCAMPMENT, STRONGHOLD, CITADEL, ENCAMPMENT_FREEZE,
    slot_full, flag_complete, draw_up_to_max, pick_winner, player_name,
)

# ── Triggers ──────────────────────────────────────────────────────────

HAND_BOOST = "hand_boost"
CHARGE = "charge"
STRONGHOLD_ATTACK = "stronghold"
CITADEL_MOVE = "citadel"

# Flag kind -> one-shot trigger fired when a slot first reaches capacity
FLAG_TRIGGERS = {
    OUTPOST: None,
    GARRISON: HAND_BOOST,
    ENCAMPMENT: CHARGE,
    STRONGHOLD: STRONGHOLD_ATTACK,
    CITADEL: CITADEL_MOVE,
}


def _fire_hand_boost(state, flag_index, player_id):
    state["max_hand_size"][player_id] += 1
    draw_up_to_max(state, player_id)
    return f"{player_name(state, player_id)} garrisons flag {flag_index + 1}: hand size +1"


def _fire_charge(state, flag_index, player_id):
    flag = state["board"][flag_index]
    flag["charge_owner"] = player_id
    state["freeze"] = {"kind": ENCAMPMENT_FREEZE, "flag_index": flag_index, "owner": player_id}
    return f"{player_name(state, player_id)} charges from flag {flag_index + 1}: the line is frozen"


def _fire_stronghold(state, flag_index, player_id):
    if state["attack_privilege"] is not None:
        return None
    state["attack_privilege"] = player_id
    return f"{player_name(state, player_id)} holds the stronghold and may destroy a card"


def _fire_citadel(state, flag_index, player_id):
    if state["citadel_used"]:
        return None
    state["citadel_used"] = True
    state["citadel_privilege"] = player_id
    return f"{player_name(state, player_id)} takes the citadel and may move one card"


TRIGGER_HANDLERS = {
    HAND_BOOST: _fire_hand_boost,
    CHARGE: _fire_charge,
    STRONGHOLD_ATTACK: _fire_stronghold,
    CITADEL_MOVE: _fire_citadel,
}


# ── Resolver ──────────────────────────────────────────────────────────

def resolve_flag(state, flag_index, actor=None):
    """
    Recompute derived state for one flag and fire its trigger if due.
    Returns a list of log lines for anything that fired.
    """
    flag = state["board"][flag_index]
    players = list(flag["cards"])
    if actor in flag["cards"]:
        players.remove(actor)
        players.insert(0, actor)

    _update_completion(flag)
    _update_claim(flag)
    _update_legacy_fields(flag)

    log = []
    trigger = FLAG_TRIGGERS[flag["kind"]]
    if trigger is not None and trigger not in flag["triggered"]:
        for pid in players:
            if slot_full(flag, pid):
                flag["triggered"].append(trigger)
                line = TRIGGER_HANDLERS[trigger](state, flag_index, pid)
                if line:
                    log.append(line)
                break

    log += _release_encampment_freeze(state, flag_index)
    return log


def resolve_board(state, actor=None):
    log = []
    for fi in range(len(state["board"])):
        log += resolve_flag(state, fi, actor)
    return log


def _update_completion(flag):
    """Keep completed_by in the order slots filled; drop slots that emptied."""
    flag["completed_by"] = [pid for pid in flag["completed_by"] if slot_full(flag, pid)]
    for pid in flag["cards"]:
        if slot_full(flag, pid) and pid not in flag["completed_by"]:
            flag["completed_by"].append(pid)


def _update_claim(flag):
    formations = {
        pid: evaluate_formation(cards, flag["capacity"])
        for pid, cards in flag["cards"].items()
    }
    winner, best = best_player(formations)
    flag["claimed_by"] = winner
    flag["best_formation"] = "" if best[0] == NONE else formation_label(best)


def _update_legacy_fields(flag):
    garrison_bonus = 0
    encampment_penalty = 0
    for pid, cards in flag["cards"].items():
        color_counts = {}
        for card in cards:
            color_counts[card["color"]] = color_counts.get(card["color"], 0) + 1
        garrison_bonus += 2 * sum(1 for count in color_counts.values() if count >= 2)
        encampment_penalty += sum(
            len(other) for opp, other in flag["cards"].items() if opp != pid
        )
    flag["garrison_bonus"] = garrison_bonus
    flag["encampment_penalty"] = encampment_penalty
    flag["stronghold_owner"] = flag["completed_by"][0] if flag["completed_by"] else None


def _release_encampment_freeze(state, flag_index):
    freeze = state["freeze"]
    if not freeze or freeze["kind"] != ENCAMPMENT_FREEZE or freeze["flag_index"] != flag_index:
        return []
    flag = state["board"][flag_index]
    owner = freeze["owner"]
    if all(slot_full(flag, pid) for pid in flag["cards"] if pid != owner):
        state["freeze"] = None
        return [f"Flag {flag_index + 1} is answered: the freeze lifts"]
    return []


# ── Scoring ───────────────────────────────────────────────────────────

def legacy_flag_score(flag, player_id):
    """
    Rank-sum score from the first version of the game: doubled for the
    stronghold owner, plus the garrison bonus, minus opponent cards.
    """
    cards = flag["cards"][player_id]
    total = sum(card["rank"] for card in cards)
    if flag["stronghold_owner"] == player_id:
        total *= 2
    total += flag["garrison_bonus"]
    total -= sum(len(other) for opp, other in flag["cards"].items() if opp != player_id)
    return total


def legacy_flag_winner(flag):
    scores = {pid: legacy_flag_score(flag, pid) for pid in flag["cards"]}
    top = max(scores.values())
    leaders = [pid for pid, score in scores.items() if score == top]
    return leaders[0] if len(leaders) == 1 else None


def flag_winner(state, flag):
    """Winner of a complete flag under the match's scoring mode."""
    if state["scoring_mode"] == "legacy":
        return legacy_flag_winner(flag)
    return flag["claimed_by"]


def compute_scores(state):
    """Count complete flags won per player."""
    scores = {pid: 0 for pid in state["player_ids"]}
    for flag in state["board"]:
        if not flag_complete(flag):
            continue
        winner = flag_winner(state, flag)
        if winner is not None:
            scores[winner] += 1
    return scores


def final_result(state):
    scores = compute_scores(state)
    return scores, pick_winner(scores)

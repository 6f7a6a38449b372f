"""
Constants and state helpers for Siege.

Cards, deck generation, board layout, dealing and drawing, and the
end-of-match check.
"""

import random

# ── Card Constants ────────────────────────────────────────────────────

CARD_COLORS = ("red", "blue", "green", "yellow", "purple", "orange", "pink")
CARD_RANKS = tuple(range(1, 11))

CANNON = "cannon"
CANNON_CAPACITY = 2

# Values of state["freeze"]["kind"]
CANNON_FREEZE = "cannon-freeze"
ENCAMPMENT_FREEZE = "encampment-freeze"

# ── Board Layout ──────────────────────────────────────────────────────

OUTPOST = "outpost"
GARRISON = "garrison"
ENCAMPMENT = "encampment"
STRONGHOLD = "stronghold"
CITADEL = "citadel"

# (kind, capacity, worth); worth is shown to players but never scored
BOARD_LAYOUT = (
    (OUTPOST, 2, 3),
    (GARRISON, 3, 1),
    (ENCAMPMENT, 3, 3),
    (ENCAMPMENT, 3, 3),
    (STRONGHOLD, 5, 1),
    (ENCAMPMENT, 3, 3),
    (ENCAMPMENT, 3, 3),
    (CITADEL, 4, 1),
    (OUTPOST, 2, 3),
)

NUM_FLAGS = len(BOARD_LAYOUT)

DEFAULT_HAND_SIZE = 5
HAND_SIZE_RANGE = (3, 5)

SCORING_MODES = ("formation", "legacy")


# ── Cards ─────────────────────────────────────────────────────────────

def make_card(color, rank, owner=None):
    return {"color": color, "rank": rank, "owner": owner}


def card_key(card):
    """Identity of a card: (color, rank, owner)."""
    return (card["color"], card["rank"], card.get("owner"))


def card_name(card):
    return f"{card['color']} {card['rank']}"


def check_card(card):
    """Raise ValueError unless `card` looks like a card reference."""
    if not isinstance(card, dict):
        raise ValueError("Card must be an object with color and rank")
    if card.get("color") not in CARD_COLORS:
        raise ValueError(f"Unknown card color: {card.get('color')!r}")
    rank = card.get("rank")
    if not isinstance(rank, int) or isinstance(rank, bool) or rank not in CARD_RANKS:
        raise ValueError(f"Invalid card rank: {rank!r}")


def generate_deck(rng=None):
    """Return a shuffled deck of 70 unowned cards, one per color × rank."""
    deck = [make_card(color, rank) for color in CARD_COLORS for rank in CARD_RANKS]
    (rng or random).shuffle(deck)
    return deck


# ── Flags ─────────────────────────────────────────────────────────────

def make_flag(kind, capacity, player_ids, worth=1):
    """Create an empty flag with one card slot per player."""
    return {
        "kind": kind,
        "capacity": capacity,
        "worth": worth,
        "cards": {pid: [] for pid in player_ids},
        "claimed_by": None,
        "best_formation": "",
        "garrison_bonus": 0,
        "encampment_penalty": 0,
        "stronghold_owner": None,
        "completed_by": [],
        "triggered": [],
        "charge_owner": None,
    }


def create_board(player_ids):
    return [make_flag(kind, capacity, player_ids, worth)
            for kind, capacity, worth in BOARD_LAYOUT]


def slot_full(flag, player_id):
    return len(flag["cards"][player_id]) >= flag["capacity"]


def flag_complete(flag):
    """A flag is complete once every player's slot is at capacity."""
    return all(len(cards) >= flag["capacity"] for cards in flag["cards"].values())


# ── Match Creation ────────────────────────────────────────────────────

def create_initial_state(player_ids, player_names=None, hand_size=DEFAULT_HAND_SIZE,
                         scoring_mode="formation", rng=None):
    """Build the full initial state for a 2-player match."""
    player_ids = list(player_ids)
    if len(player_ids) != 2:
        raise ValueError("Siege requires exactly 2 players")
    if len(set(player_ids)) != 2:
        raise ValueError("Player ids must be distinct")
    low, high = HAND_SIZE_RANGE
    if not low <= hand_size <= high:
        raise ValueError(f"Hand size must be between {low} and {high}")
    if scoring_mode not in SCORING_MODES:
        raise ValueError(f"Unknown scoring mode: {scoring_mode}")
    if player_names is None:
        player_names = list(player_ids)

    deck = generate_deck(rng)
    hands = {pid: [] for pid in player_ids}
    for _ in range(hand_size):
        for pid in player_ids:
            hands[pid].append(deck.pop())

    return {
        "game": "siege",
        "player_ids": player_ids,
        "player_names": list(player_names),
        "deck": deck,
        "hands": hands,
        "max_hand_size": {pid: hand_size for pid in player_ids},
        "board": create_board(player_ids),
        "cannons": {pid: [] for pid in player_ids},
        "fired_cannons": {pid: False for pid in player_ids},
        "scores": {pid: 0 for pid in player_ids},
        "attack_privilege": None,
        "freeze": None,
        "citadel_privilege": None,
        "citadel_used": False,
        "cards_placed": 0,
        "scoring_mode": scoring_mode,
        "game_over": False,
        "winner": None,
        "log": [],
    }


# ── Drawing ───────────────────────────────────────────────────────────

def draw_up_to_max(state, player_id):
    """Top a player's hand back up to their max hand size while the deck lasts."""
    hand = state["hands"][player_id]
    drawn = 0
    while state["deck"] and len(hand) < state["max_hand_size"][player_id]:
        hand.append(state["deck"].pop())
        drawn += 1
    return drawn


# ── End of Match ──────────────────────────────────────────────────────

def board_complete(state):
    """Every slot of every flag is full and at least one card was ever placed."""
    if state["cards_placed"] <= 0:
        return False
    return all(flag_complete(flag) for flag in state["board"])


def pick_winner(scores):
    """Strictly highest score wins; a shared top score is a "Tie"."""
    top = max(scores.values())
    leaders = [pid for pid, score in scores.items() if score == top]
    if len(leaders) == 1:
        return leaders[0]
    return "Tie"


def player_name(state, player_id):
    idx = state["player_ids"].index(player_id)
    return state["player_names"][idx]

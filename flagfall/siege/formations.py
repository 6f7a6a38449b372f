"""
Formation evaluation for Siege.

A player's cards on one flag form a poker-style formation.
Categories (highest to lowest):
  9 – Straight Flush:  straight, all one color
  8 – Four of a Kind:  four (or five) cards of one rank
  7 – Full House:      three of one rank plus a pair
  6 – Flush:           three or more cards, all one color
  5 – Straight:        a full slot of consecutive ranks
  4 – Three of a Kind
  3 – Two Pair
  2 – Pair
  1 – High Card
  0 – None:            no cards; always loses

A formation is (category, tie_break). tie_break lists the rank of each
rank group, groups ordered by size then by rank, both descending.
Comparison: higher category wins; equal categories compare tie_break
element by element, and running out of elements is a tie.
"""

from collections import Counter

# ── Formation Constants ───────────────────────────────────────────────

NONE = 0
HIGH_CARD = 1
PAIR = 2
TWO_PAIR = 3
THREE_OF_A_KIND = 4
STRAIGHT = 5
FLUSH = 6
FULL_HOUSE = 7
FOUR_OF_A_KIND = 8
STRAIGHT_FLUSH = 9

CATEGORY_NAMES = {
    NONE: "None",
    HIGH_CARD: "High Card",
    PAIR: "Pair",
    TWO_PAIR: "Two Pair",
    THREE_OF_A_KIND: "Three of a Kind",
    STRAIGHT: "Straight",
    FLUSH: "Flush",
    FULL_HOUSE: "Full House",
    FOUR_OF_A_KIND: "Four of a Kind",
    STRAIGHT_FLUSH: "Straight Flush",
}

MIN_FLUSH_CARDS = 3


# ── Core Formation Evaluation ────────────────────────────────────────

def _is_consecutive(ranks):
    """Check if ranks are distinct and form a consecutive run."""
    s = sorted(ranks)
    return all(s[i] + 1 == s[i + 1] for i in range(len(s) - 1))


def _rank_groups(ranks):
    """[(rank, count), ...] sorted by count desc, then rank desc."""
    return sorted(Counter(ranks).items(), key=lambda rc: (-rc[1], -rc[0]))


def evaluate_formation(cards, capacity):
    """
    Rank a player's cards on a flag of the given capacity.

    Returns (category, tie_break) where tie_break is a tuple of ranks.
    The result does not depend on the order of `cards`.
    """
    if not cards:
        return (NONE, ())

    ranks = [card["rank"] for card in cards]
    colors = {card["color"] for card in cards}
    groups = _rank_groups(ranks)
    counts = [count for _, count in groups]
    tie_break = tuple(rank for rank, _ in groups)

    flush = len(cards) >= MIN_FLUSH_CARDS and len(colors) == 1
    straight = (
        len(cards) >= 2
        and len(cards) == capacity
        and counts[0] == 1
        and _is_consecutive(ranks)
    )

    if straight and flush:
        return (STRAIGHT_FLUSH, tie_break)
    if counts[0] >= 4:
        return (FOUR_OF_A_KIND, tie_break)
    if counts[0] == 3 and len(counts) > 1 and counts[1] >= 2:
        return (FULL_HOUSE, tie_break)
    if flush:
        return (FLUSH, tie_break)
    if straight:
        return (STRAIGHT, tie_break)
    if counts[0] == 3:
        return (THREE_OF_A_KIND, tie_break)
    if counts[0] == 2 and len(counts) > 1 and counts[1] == 2:
        return (TWO_PAIR, tie_break)
    if counts[0] == 2:
        return (PAIR, tie_break)
    return (HIGH_CARD, tie_break)


def compare_formations(a, b):
    """Return 1 if a beats b, -1 if b beats a, 0 on a tie."""
    if a[0] != b[0]:
        return 1 if a[0] > b[0] else -1
    for x, y in zip(a[1], b[1]):
        if x != y:
            return 1 if x > y else -1
    return 0


def formation_label(formation):
    return CATEGORY_NAMES[formation[0]]


def best_player(formations):
    """
    Given {player_id: formation}, return (winner, best_formation).
    winner is None when the top formation is shared.
    """
    winner = None
    best = (NONE, ())
    tied = True
    for pid, formation in formations.items():
        cmp = compare_formations(formation, best)
        if cmp > 0:
            winner, best, tied = pid, formation, False
        elif cmp == 0:
            tied = True
    if tied:
        return None, best
    return winner, best

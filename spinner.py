import math
import random


POLICY_MUST_WATCH = "must-watch"
POLICY_ALL = "all"
POLICY_MUST_WATCH_OR_SEEN = "must-watch-or-seen"
POLICY_MUST_WATCH_OR_PASS = "must-watch-or-pass"

POLICY_LABELS = {
    POLICY_MUST_WATCH: "🌟 Must Watch",
    POLICY_ALL: "🎬 All Movies",
    POLICY_MUST_WATCH_OR_SEEN: "🌟✅ Must + Seen",
    POLICY_MUST_WATCH_OR_PASS: "🌟👎 Must + Pass",
}

MUST_WATCH_WEIGHT = 3
ALREADY_SEEN_WEIGHT = 1

MIN_SPIN_CHOICES = 2

REEL_MIN_SLOTS = 40
REEL_LOOPS = 5
REEL_ZONE_FRACTION = 0.75


def _must_watch(counts):
    return counts["must_watch"] > 0


def _any_movie(counts):
    return True


def _must_watch_or_seen(counts):
    return counts["must_watch"] > 0 or counts["already_seen"] > 0


def _must_watch_or_pass(counts):
    return counts["must_watch"] > 0 or counts["pass"] > 0


POLICIES = {
    POLICY_MUST_WATCH: _must_watch,
    POLICY_ALL: _any_movie,
    POLICY_MUST_WATCH_OR_SEEN: _must_watch_or_seen,
    POLICY_MUST_WATCH_OR_PASS: _must_watch_or_pass,
}


def filter_eligible(pool, policy):
    predicate = _policy_predicate(policy)
    return [movie for movie in pool if predicate(movie["opinion_counts"])]


def eligibility_counts(pool):
    return {policy: len(filter_eligible(pool, policy)) for policy in POLICIES}


def can_spin(eligible):
    return len(eligible) >= MIN_SPIN_CHOICES


def movie_weight(movie):
    counts = movie["opinion_counts"]
    return MUST_WATCH_WEIGHT * counts["must_watch"] + ALREADY_SEEN_WEIGHT * counts["already_seen"]


def select_winner(eligible, rng=random.random):
    """Roulette-wheel draw weighted by opinions.

    ``rng`` returns a float in [0, 1). When nobody has a positive weight the
    draw is uniform over ``eligible`` so every movie can still win.
    """
    if not eligible:
        return None

    weighted = [(movie, movie_weight(movie)) for movie in eligible]
    weighted = [(movie, weight) for movie, weight in weighted if weight > 0]
    if not weighted:
        index = min(int(rng() * len(eligible)), len(eligible) - 1)
        return eligible[index]

    total_weight = sum(weight for _, weight in weighted)
    target = rng() * total_weight
    cumulative = 0
    for movie, weight in weighted:
        cumulative += weight
        if cumulative > target:
            return movie
    return weighted[-1][0]


def reel_length_for(eligible):
    return max(REEL_MIN_SLOTS, REEL_LOOPS * len(eligible))


def build_reel(eligible, reel_length):
    if not eligible:
        return []
    return [eligible[i % len(eligible)] for i in range(reel_length)]


def map_to_reel_index(winner, eligible, reel_length, zone_fraction=REEL_ZONE_FRACTION):
    positions = [idx for idx, movie in enumerate(eligible) if movie["id"] == winner["id"]]
    if not positions:
        raise ValueError(f"Winner {winner['id']} is not on the reel")

    size = len(eligible)
    zone_start = math.ceil(reel_length * zone_fraction)
    for index in range(zone_start, reel_length):
        if index % size in positions:
            return index

    # reel too short for the late zone to hold the winner
    for index in range(reel_length - 1, -1, -1):
        if index % size in positions:
            return index
    raise ValueError(f"Reel of {reel_length} slots never shows winner {winner['id']}")


def spin(pool, policy, rng=random.random, reel_length=None):
    eligible = filter_eligible(pool, policy)
    winner = select_winner(eligible, rng=rng)
    if winner is None:
        return {"policy": policy, "eligible": [], "winner": None, "reel": [], "target_index": None}

    if reel_length is None:
        reel_length = reel_length_for(eligible)
    return {
        "policy": policy,
        "eligible": eligible,
        "winner": winner,
        "reel": build_reel(eligible, reel_length),
        "target_index": map_to_reel_index(winner, eligible, reel_length),
    }


def _policy_predicate(policy):
    try:
        return POLICIES[policy]
    except KeyError:
        raise ValueError(f"Unknown eligibility policy: {policy}") from None

MUST_WATCH = "must-watch"
ALREADY_SEEN = "already-seen"
PASS = "pass"

OPINIONS = (MUST_WATCH, ALREADY_SEEN, PASS)

COUNT_KEYS = {
    MUST_WATCH: "must_watch",
    ALREADY_SEEN: "already_seen",
    PASS: "pass",
}

OPINION_LABELS = {
    MUST_WATCH: "🌟 Must watch",
    ALREADY_SEEN: "✅ Seen it",
    PASS: "👎 Pass",
}


def calculate_opinion_counts(opinions):
    counts = {key: 0 for key in COUNT_KEYS.values()}
    for opinion in opinions.values():
        key = COUNT_KEYS.get(opinion)
        if key:
            counts[key] += 1
    return counts


def set_opinion(movie, member_id, opinion):
    """Return a copy of ``movie`` with the member's opinion set or cleared.

    Counts are always re-tallied from the full opinions map, never adjusted
    in place, so they cannot drift from the map they summarize.
    """
    if opinion is not None and opinion not in OPINIONS:
        raise ValueError(f"Unknown opinion: {opinion}")

    opinions = dict(movie.get("opinions") or {})
    member_id = str(member_id)
    if opinion is None:
        opinions.pop(member_id, None)
    else:
        opinions[member_id] = opinion

    updated = dict(movie)
    updated["opinions"] = opinions
    updated["opinion_counts"] = calculate_opinion_counts(opinions)
    return updated


def toggle_opinion(current, chosen):
    # re-clicking the active button clears it
    if current == chosen:
        return None
    return chosen


def member_opinion(movie, member_id):
    return movie["opinions"].get(str(member_id))


def normalize_movie(raw):
    movie = dict(raw)
    opinions = {
        str(member_id): opinion
        for member_id, opinion in (movie.get("opinions") or {}).items()
        if opinion in OPINIONS
    }
    movie["opinions"] = opinions
    movie["opinion_counts"] = calculate_opinion_counts(opinions)
    movie["watched"] = bool(movie.get("watched"))
    movie["genres"] = list(movie.get("genres") or [])
    ratings = {
        str(member_id): int(rating)
        for member_id, rating in (movie.get("group_ratings") or {}).items()
    }
    movie["group_ratings"] = ratings
    movie["average_group_rating"] = average_rating(ratings)
    return movie


def average_rating(ratings):
    if not ratings:
        return None
    return sum(ratings.values()) / len(ratings)

from collections import Counter


def compute_group_stats(watched_movies, member_names):
    genre_counts = Counter()
    contributor_counts = Counter()
    rated = []
    for movie in watched_movies:
        genre_counts.update(movie.get("genres", []))
        if movie.get("watched_by"):
            contributor_counts[movie["watched_by"]] += 1
        average = movie.get("average_group_rating")
        if average:
            rated.append(average)

    favorite_genre = genre_counts.most_common(1)[0][0] if genre_counts else None
    top_contributor = None
    if contributor_counts:
        member_id = contributor_counts.most_common(1)[0][0]
        top_contributor = member_names.get(member_id, "A member")

    average_rating = round(sum(rated) / len(rated), 1) if rated else None
    return {
        "total_movies": len(watched_movies),
        "average_rating": average_rating,
        "favorite_genre": favorite_genre,
        "top_contributor": top_contributor,
    }

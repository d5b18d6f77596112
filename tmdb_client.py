import logging

import requests
import streamlit as st


logger = logging.getLogger(__name__)

BASE_URL = "https://api.themoviedb.org/3"
IMAGE_BASE = "https://image.tmdb.org/t/p"


def _get(url, params):
    response = requests.get(url, params=params, timeout=10)
    if response.status_code != 200:
        logger.warning("TMDB request to %s failed with %s", url, response.status_code)
        raise RuntimeError(f"TMDB request failed: {response.status_code}")
    return response.json()


@st.cache_data(show_spinner=False, ttl=1800)
def search_movies(api_key, query, language):
    if not query or not query.strip():
        return []
    url = f"{BASE_URL}/search/movie"
    data = _get(
        url,
        {"api_key": api_key, "query": query.strip(), "language": language, "include_adult": False},
    )
    return [_summarize(movie) for movie in data.get("results", [])]


@st.cache_data(show_spinner=False, ttl=3600)
def get_popular_movies(api_key, language):
    url = f"{BASE_URL}/movie/popular"
    data = _get(url, {"api_key": api_key, "language": language})
    return [_summarize(movie) for movie in data.get("results", [])]


@st.cache_data(show_spinner=False, ttl=3600)
def get_trending_movies(api_key, language, window="week"):
    url = f"{BASE_URL}/trending/movie/{window}"
    data = _get(url, {"api_key": api_key, "language": language})
    return [_summarize(movie) for movie in data.get("results", [])]


@st.cache_data(show_spinner=False, ttl=1800)
def get_movie_details(api_key, tmdb_id, language):
    url = f"{BASE_URL}/movie/{tmdb_id}"
    data = _get(url, {"api_key": api_key, "language": language})
    return {
        "tmdb_id": data["id"],
        "title": data["title"],
        "year": (data.get("release_date") or "")[:4],
        "overview": data.get("overview", ""),
        "poster_path": data.get("poster_path"),
        "backdrop_path": data.get("backdrop_path"),
        "genres": [genre["name"] for genre in data.get("genres", [])],
        "rating": data.get("vote_average", 0),
    }


@st.cache_data(show_spinner=False, ttl=1800)
def get_movie_videos(api_key, tmdb_id, language):
    url = f"{BASE_URL}/movie/{tmdb_id}/videos"
    data = _get(url, {"api_key": api_key, "language": language})
    return data.get("results", [])


def get_trailer_url(api_key, tmdb_id, language):
    try:
        videos = get_movie_videos(api_key, tmdb_id, language)
    except RuntimeError:
        return None

    youtube_trailers = [
        video
        for video in videos
        if video.get("site") == "YouTube" and video.get("type") == "Trailer"
    ]
    if not youtube_trailers:
        return None

    youtube_trailers.sort(
        key=lambda v: "official" in v.get("name", "").lower(), reverse=True
    )
    key = youtube_trailers[0].get("key")
    if not key:
        return None
    return f"https://www.youtube.com/watch?v={key}"


def get_poster_url(poster_path, size="w500"):
    if not poster_path:
        return None
    return f"{IMAGE_BASE}/{size}{poster_path}"


def _summarize(movie):
    return {
        "tmdb_id": movie["id"],
        "title": movie.get("title", ""),
        "year": (movie.get("release_date") or "")[:4],
        "poster_path": movie.get("poster_path"),
        "rating": movie.get("vote_average", 0),
    }

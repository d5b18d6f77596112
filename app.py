import logging
import time

import streamlit as st

import opinions
import spinner
import stats
import storage
import tmdb_client


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

st.set_page_config(page_title="Movie Reel", page_icon="🎬", layout="centered")

TMDB_API_KEY = st.secrets.get("TMDB_API_KEY")
DB_PATH = st.secrets.get("DB_PATH")
LANGUAGE = st.secrets.get("TMDB_LANGUAGE", "en-US")

SPIN_DURATION_SECONDS = 4
GROUP_COLORS = ["Gold", "Red", "Blue", "Green", "Purple"]
PLACEHOLDER_POSTER = "https://via.placeholder.com/342x513?text=No+Poster"

storage.init_db(DB_PATH)

st.session_state.setdefault("user", None)
st.session_state.setdefault("page", "groups")
st.session_state.setdefault("group_id", None)
st.session_state.setdefault("search_results", [])
st.session_state.setdefault("spin_policy", spinner.POLICY_MUST_WATCH)
st.session_state.setdefault("spin_result", None)
st.session_state.setdefault("spin_animate", False)


def go(page, group_id=None):
    st.session_state.page = page
    if group_id is not None:
        st.session_state.group_id = group_id
    st.session_state.spin_result = None
    st.session_state.search_results = []
    st.rerun()


def member_id():
    return str(st.session_state.user["id"])


def poster(movie, size="w342"):
    return tmdb_client.get_poster_url(movie.get("poster_path"), size) or PLACEHOLDER_POSTER


def render_auth():
    st.title("🎬 Movie Reel")
    st.caption("Pick a movie together. Let the reel decide.")
    sign_in_tab, sign_up_tab = st.tabs(["Sign in", "Sign up"])

    with sign_in_tab:
        with st.form("sign-in"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            if st.form_submit_button("Sign in"):
                user = storage.authenticate_user(email, password, DB_PATH)
                if user:
                    st.session_state.user = user
                    st.rerun()
                st.error("Wrong email or password.")

    with sign_up_tab:
        with st.form("sign-up"):
            display_name = st.text_input("Display name")
            email = st.text_input("Email", key="sign-up-email")
            password = st.text_input("Password", type="password", key="sign-up-password")
            if st.form_submit_button("Create account"):
                user = storage.create_user(email, password, display_name, DB_PATH)
                if user:
                    st.session_state.user = user
                    st.rerun()
                st.error("Could not create the account. That email may already be registered.")


def render_groups():
    st.title("🎬 Your groups")
    groups = storage.list_user_groups(member_id(), DB_PATH)
    if not groups:
        st.info("You're not in any group yet. Create one or join with an invite code.")

    for group in groups:
        cols = st.columns([3, 1])
        cols[0].subheader(group["name"])
        cols[0].caption(f"{len(group['members'])} members · {group['movie_count']} movies")
        if cols[1].button("Open", key=f"open-{group['id']}"):
            go("group", group["id"])

    create_col, join_col = st.columns(2)
    with create_col:
        with st.form("create-group"):
            name = st.text_input("Group name")
            color = st.selectbox("Color", GROUP_COLORS)
            if st.form_submit_button("Create group"):
                try:
                    group = storage.create_group(name, color, member_id(), DB_PATH)
                except storage.GroupError as exc:
                    st.error(str(exc))
                else:
                    st.toast(f"Group created! Invite code: {group['invite_code']}")
                    go("group", group["id"])
    with join_col:
        with st.form("join-group"):
            code = st.text_input("Invite code", max_chars=storage.INVITE_CODE_LENGTH)
            if st.form_submit_button("Join group"):
                try:
                    group = storage.join_group(code, member_id(), DB_PATH)
                except storage.GroupError as exc:
                    st.error(str(exc))
                else:
                    go("group", group["id"])


def load_group():
    group = storage.get_group(st.session_state.group_id, DB_PATH)
    if not group or member_id() not in group["members"]:
        st.error("This group doesn't exist anymore.")
        if st.button("Back to groups"):
            go("groups")
        st.stop()
    return group


def render_add_movie(group):
    if not TMDB_API_KEY:
        st.warning("TMDB API key is missing, so movie search is disabled.")
        return

    with st.form("search"):
        query = st.text_input("Suggest a movie", placeholder="Search TMDB by title")
        if st.form_submit_button("Search"):
            try:
                st.session_state.search_results = tmdb_client.search_movies(
                    TMDB_API_KEY, query, LANGUAGE
                )[:8]
            except RuntimeError:
                st.error("Could not reach TMDB. Please try again.")

    existing = {movie["tmdb_id"] for movie in storage.get_group_movies(group["id"], DB_PATH)}
    if st.session_state.search_results:
        render_candidates(group, st.session_state.search_results, existing, "search")
        return

    popular_tab, trending_tab = st.tabs(["🔥 Popular", "📈 Trending"])
    for tab, fetch, prefix in (
        (popular_tab, tmdb_client.get_popular_movies, "popular"),
        (trending_tab, tmdb_client.get_trending_movies, "trending"),
    ):
        with tab:
            try:
                browse = fetch(TMDB_API_KEY, LANGUAGE)[:8]
            except RuntimeError:
                st.error("Could not reach TMDB. Please try again.")
                continue
            render_candidates(group, browse, existing, prefix)


def render_candidates(group, candidates, existing, prefix):
    for result in candidates:
        cols = st.columns([1, 4, 1])
        cols[0].image(poster(result, "w92"))
        cols[1].write(f"**{result['title']}** ({result['year'] or '—'})")
        if result["tmdb_id"] in existing:
            cols[2].caption("Already added")
            continue
        if cols[2].button("Add", key=f"add-{prefix}-{result['tmdb_id']}"):
            try:
                details = tmdb_client.get_movie_details(TMDB_API_KEY, result["tmdb_id"], LANGUAGE)
                storage.add_movie(
                    group["id"],
                    details,
                    member_id(),
                    st.session_state.user["display_name"],
                    DB_PATH,
                )
            except RuntimeError:
                st.error("Could not load that movie from TMDB.")
            except storage.NotFoundError as exc:
                st.error(str(exc))
            else:
                st.session_state.search_results = []
                st.rerun()


def render_movie(group, movie):
    me = member_id()
    counts = movie["opinion_counts"]
    current = opinions.member_opinion(movie, me)
    with st.container(border=True):
        cols = st.columns([1, 3])
        cols[0].image(poster(movie))
        with cols[1]:
            st.subheader(f"{movie['title']} ({movie['year'] or '—'})")
            st.caption(f"Added by {movie['added_by_name'] or 'a member'}")
            st.caption(", ".join(movie["genres"]) or "—")
            st.write(
                f"🌟 {counts['must_watch']} · ✅ {counts['already_seen']} · 👎 {counts['pass']}"
            )
            buttons = st.columns(len(opinions.OPINIONS))
            for col, opinion in zip(buttons, opinions.OPINIONS):
                label = opinions.OPINION_LABELS[opinion]
                kind = "primary" if opinion == current else "secondary"
                if col.button(label, key=f"{opinion}-{movie['id']}", type=kind):
                    chosen = opinions.toggle_opinion(current, opinion)
                    try:
                        storage.set_movie_opinion(group["id"], movie["id"], me, chosen, DB_PATH)
                    except storage.NotFoundError:
                        st.error("That movie was removed from the group.")
                    st.rerun()
            if me in (movie["added_by"], group["created_by"]):
                if st.button("Remove", key=f"remove-{movie['id']}"):
                    try:
                        storage.remove_movie(group["id"], movie["id"], me, DB_PATH)
                    except (storage.NotFoundError, storage.GroupError) as exc:
                        st.error(str(exc))
                    else:
                        st.rerun()


def render_group():
    group = load_group()
    st.title(group["name"])
    st.caption(f"Invite code: `{group['invite_code']}` · {len(group['members'])} members")

    nav = st.columns(3)
    if nav[0].button("🎰 Spin the reel"):
        go("spin")
    if nav[1].button("📜 Watch history"):
        go("history")
    if nav[2].button("← Groups"):
        go("groups")

    render_add_movie(group)

    pool = storage.get_unwatched_movies(group["id"], DB_PATH)
    if not pool:
        st.info("No movies yet. Suggest one above!")
    pool.sort(key=lambda movie: spinner.movie_weight(movie), reverse=True)
    for movie in pool:
        render_movie(group, movie)

    with st.expander("Group settings"):
        if st.button("Leave group"):
            try:
                storage.leave_group(group["id"], member_id(), DB_PATH)
            except (storage.NotFoundError, storage.GroupError) as exc:
                st.error(str(exc))
            else:
                go("groups")
        if group["created_by"] == member_id() and st.button("Delete group", type="primary"):
            try:
                storage.delete_group(group["id"], member_id(), DB_PATH)
            except (storage.NotFoundError, storage.GroupError) as exc:
                st.error(str(exc))
            else:
                go("groups")


def animate_reel(result):
    reel = result["reel"]
    target = result["target_index"]
    placeholder = st.empty()
    # ease out: later slots stay on screen longer
    weights = [1 + 8 * (idx / max(target, 1)) ** 3 for idx in range(target + 1)]
    total = sum(weights)
    for idx, weight in enumerate(weights):
        with placeholder.container():
            st.image(poster(reel[idx]), width=200)
            st.markdown(f"### 🎞️ {reel[idx]['title']}")
        time.sleep(SPIN_DURATION_SECONDS * weight / total)
    placeholder.empty()


def start_spin(group_id, policy):
    # re-read the pool: opinions may have changed since the page rendered
    pool = storage.get_unwatched_movies(group_id, DB_PATH)
    if not spinner.can_spin(spinner.filter_eligible(pool, policy)):
        logger.info("Spin in group %s skipped, not enough eligible movies", group_id)
        st.session_state.spin_result = None
        st.session_state.spin_animate = False
        return
    result = spinner.spin(pool, policy)
    logger.info(
        "Spin in group %s picked %s from %d eligible",
        group_id,
        result["winner"]["id"],
        len(result["eligible"]),
    )
    st.session_state.spin_result = result
    st.session_state.spin_animate = True


def render_result(group, result):
    winner = result["winner"]
    st.balloons()
    with st.container(border=True):
        st.success("Tonight you're watching…")
        cols = st.columns([1, 2])
        cols[0].image(poster(winner))
        cols[1].subheader(f"{winner['title']} ({winner['year'] or '—'})")
        cols[1].write(winner["overview"] or "")
        if TMDB_API_KEY and winner.get("tmdb_id"):
            trailer_url = tmdb_client.get_trailer_url(TMDB_API_KEY, winner["tmdb_id"], LANGUAGE)
            if trailer_url:
                cols[1].video(trailer_url)

        actions = st.columns(3)
        if actions[0].button("✅ We watched it!", type="primary"):
            try:
                storage.mark_watched(group["id"], winner["id"], member_id(), DB_PATH)
            except (storage.NotFoundError, storage.GroupError) as exc:
                st.error(str(exc))
            else:
                st.session_state.spin_result = None
                st.toast(f"{winner['title']} added to your history.")
                st.rerun()
        if actions[1].button("🔄 Spin again"):
            start_spin(group["id"], result["policy"])
            st.rerun()
        if actions[2].button("Close"):
            st.session_state.spin_result = None
            st.rerun()


def render_spin():
    group = load_group()
    st.title(f"🎰 {group['name']}")
    st.caption("Reel Spinner")
    if st.button("← Back to group"):
        go("group")

    pool = storage.get_unwatched_movies(group["id"], DB_PATH)
    if not pool:
        st.subheader("The Reel is Empty!")
        st.write("Add some movies to the group list to get started.")
        return

    counts = spinner.eligibility_counts(pool)
    policy = st.radio(
        "Who gets on the reel?",
        list(spinner.POLICIES),
        format_func=lambda p: f"{spinner.POLICY_LABELS[p]} ({counts[p]})",
        horizontal=True,
        key="spin_policy",
    )
    eligible = spinner.filter_eligible(pool, policy)

    result = st.session_state.spin_result
    if result and result["winner"]:
        if st.session_state.spin_animate:
            st.session_state.spin_animate = False
            animate_reel(result)
        render_result(group, result)
        return

    if not eligible:
        st.subheader("No Movies Eligible")
        st.write("Nothing matches this filter yet. Go back and vote on some movies!")
        return
    if not spinner.can_spin(eligible):
        st.warning(
            f"You need at least {spinner.MIN_SPIN_CHOICES} eligible movies to spin. "
            "Try another filter or add more movies."
        )

    cols = st.columns(min(len(eligible), 6))
    for idx, movie in enumerate(eligible):
        cols[idx % len(cols)].image(poster(movie, "w154"), caption=movie["title"])

    if st.button("🎟️ Spin the Reel!", type="primary", disabled=not spinner.can_spin(eligible)):
        start_spin(group["id"], policy)
        st.rerun()


def render_history():
    group = load_group()
    st.title(f"📜 {group['name']}")
    if st.button("← Back to group"):
        go("group")

    history = storage.get_watch_history(group["id"], DB_PATH)
    if not history:
        st.subheader("History is Empty")
        st.write("Spin the reel and mark a movie as watched to start your history!")
        return

    names = storage.get_display_names(group["members"], DB_PATH)
    summary = stats.compute_group_stats(history, names)
    metrics = st.columns(4)
    metrics[0].metric("Movies Watched", summary["total_movies"])
    metrics[1].metric("Avg. Group Rating", summary["average_rating"] or "N/A")
    metrics[2].metric("Favorite Genre", summary["favorite_genre"] or "N/A")
    metrics[3].metric("Top Contributor", summary["top_contributor"] or "N/A")

    me = member_id()
    for movie in history:
        with st.container(border=True):
            cols = st.columns([1, 3])
            cols[0].image(poster(movie, "w154"))
            with cols[1]:
                st.subheader(movie["title"])
                st.caption(f"Watched on {(movie['watched_at'] or '')[:10]}")
                average = movie["average_group_rating"]
                st.write(f"⭐ {average:.1f}/5" if average else "Not rated yet")
                rating = st.radio(
                    "Your rating",
                    list(range(storage.MIN_RATING, storage.MAX_RATING + 1)),
                    index=movie["group_ratings"].get(me, storage.MAX_RATING) - 1,
                    horizontal=True,
                    key=f"rating-{movie['id']}",
                )
                rate_col, unwatch_col = st.columns(2)
                if rate_col.button("Save rating", key=f"rate-{movie['id']}"):
                    try:
                        storage.rate_watched_movie(group["id"], movie["id"], me, rating, DB_PATH)
                    except (storage.NotFoundError, storage.GroupError) as exc:
                        st.error(str(exc))
                    else:
                        st.rerun()
                if unwatch_col.button("Unwatch", key=f"unwatch-{movie['id']}"):
                    try:
                        storage.unwatch_movie(group["id"], movie["id"], DB_PATH)
                    except storage.NotFoundError as exc:
                        st.error(str(exc))
                    else:
                        st.rerun()


if not st.session_state.user:
    render_auth()
    st.stop()

with st.sidebar:
    st.write(f"Signed in as **{st.session_state.user['display_name']}**")
    if st.button("Sign out"):
        st.session_state.user = None
        go("groups")
    with st.expander("Diagnostics"):
        st.write(f"TMDB key loaded: {bool(TMDB_API_KEY)}")
        st.write(f"Database: {DB_PATH or storage.DB_PATH}")
        st.write(f"Page: {st.session_state.page}")

PAGES = {
    "groups": render_groups,
    "group": render_group,
    "spin": render_spin,
    "history": render_history,
}

if st.session_state.page != "groups" and not st.session_state.group_id:
    st.session_state.page = "groups"
PAGES[st.session_state.page]()

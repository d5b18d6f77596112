import json
import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

import opinions
import storage


DETAILS = {
    "tmdb_id": 603,
    "title": "The Matrix",
    "year": "1999",
    "overview": "A hacker learns the truth.",
    "poster_path": "/matrix.jpg",
    "backdrop_path": None,
    "genres": ["Action", "Science Fiction"],
    "rating": 8.2,
}


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmpdir.name) / "test.db"
        storage.init_db(self.db_path)
        self.alice = storage.create_user("alice@example.com", "secret", "Alice", self.db_path)
        self.bob = storage.create_user("bob@example.com", "secret", "Bob", self.db_path)
        self.alice_id = str(self.alice["id"])
        self.bob_id = str(self.bob["id"])

    def tearDown(self):
        self.tmpdir.cleanup()

    def _group_with_movie(self):
        group = storage.create_group("Friday Crew", "Gold", self.alice_id, self.db_path)
        storage.join_group(group["invite_code"], self.bob_id, self.db_path)
        movie = storage.add_movie(group["id"], DETAILS, self.alice_id, "Alice", self.db_path)
        return group, movie

    def test_create_user_unique_email(self):
        duplicate = storage.create_user("Alice@example.com", "secret2", db_path=self.db_path)
        self.assertIsNone(duplicate)

    def test_authenticate_user(self):
        ok = storage.authenticate_user("bob@example.com", "secret", self.db_path)
        bad = storage.authenticate_user("bob@example.com", "wrong", self.db_path)
        self.assertEqual(ok["display_name"], "Bob")
        self.assertIsNone(bad)

    def test_display_name_defaults_to_email_prefix(self):
        user = storage.create_user("carol@example.com", "secret", db_path=self.db_path)
        self.assertEqual(user["display_name"], "carol")
        names = storage.get_display_names([self.alice_id, str(user["id"])], self.db_path)
        self.assertEqual(names, {self.alice_id: "Alice", str(user["id"]): "carol"})

    def test_create_and_join_group(self):
        group = storage.create_group("Friday Crew", "Gold", self.alice_id, self.db_path)
        self.assertEqual(len(group["invite_code"]), storage.INVITE_CODE_LENGTH)
        self.assertEqual(group["members"], [self.alice_id])

        joined = storage.join_group(group["invite_code"].lower(), self.bob_id, self.db_path)
        self.assertEqual(joined["members"], [self.alice_id, self.bob_id])

        with self.assertRaises(storage.GroupError):
            storage.join_group(group["invite_code"], self.bob_id, self.db_path)
        with self.assertRaises(storage.GroupError):
            storage.join_group("NOPE00", self.bob_id, self.db_path)

    def test_groups_are_listed_per_member(self):
        first = storage.create_group("First", "Red", self.alice_id, self.db_path)
        storage.create_group("Second", "Blue", self.bob_id, self.db_path)
        groups = storage.list_user_groups(self.alice_id, self.db_path)
        self.assertEqual([group["id"] for group in groups], [first["id"]])

    def test_owner_leaving_hands_over_ownership(self):
        group, _ = self._group_with_movie()
        remaining = storage.leave_group(group["id"], self.alice_id, self.db_path)
        self.assertEqual(remaining["created_by"], self.bob_id)
        self.assertEqual(remaining["members"], [self.bob_id])

        self.assertIsNone(storage.leave_group(group["id"], self.bob_id, self.db_path))
        self.assertIsNone(storage.get_group(group["id"], self.db_path))

    def test_only_owner_deletes_group(self):
        group, movie = self._group_with_movie()
        with self.assertRaises(storage.GroupError):
            storage.delete_group(group["id"], self.bob_id, self.db_path)
        storage.delete_group(group["id"], self.alice_id, self.db_path)
        with self.assertRaises(storage.NotFoundError):
            storage.get_movie(group["id"], movie["id"], self.db_path)

    def test_added_movie_starts_with_creator_must_watch(self):
        group, movie = self._group_with_movie()
        self.assertEqual(movie["opinions"], {self.alice_id: opinions.MUST_WATCH})
        self.assertEqual(movie["opinion_counts"], {"must_watch": 1, "already_seen": 0, "pass": 0})
        self.assertFalse(movie["watched"])
        self.assertEqual(movie["genres"], ["Action", "Science Fiction"])
        self.assertEqual(storage.get_group(group["id"], self.db_path)["movie_count"], 1)

    def test_set_movie_opinion_persists_counts(self):
        group, movie = self._group_with_movie()
        storage.set_movie_opinion(group["id"], movie["id"], self.bob_id, opinions.PASS, self.db_path)
        storage.set_movie_opinion(group["id"], movie["id"], self.alice_id, None, self.db_path)

        stored = storage.get_movie(group["id"], movie["id"], self.db_path)
        self.assertEqual(stored["opinions"], {self.bob_id: opinions.PASS})
        self.assertEqual(stored["opinion_counts"], {"must_watch": 0, "already_seen": 0, "pass": 1})

    def test_set_opinion_on_missing_movie(self):
        group, _ = self._group_with_movie()
        with self.assertRaises(storage.NotFoundError):
            storage.set_movie_opinion(group["id"], "missing", self.bob_id, opinions.PASS, self.db_path)

    def test_concurrent_opinions_are_not_lost(self):
        group, movie = self._group_with_movie()
        member_ids = [f"member-{idx}" for idx in range(8)]
        errors = []

        def vote(member):
            try:
                storage.set_movie_opinion(
                    group["id"], movie["id"], member, opinions.ALREADY_SEEN, self.db_path
                )
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=vote, args=(member,)) for member in member_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        stored = storage.get_movie(group["id"], movie["id"], self.db_path)
        self.assertEqual(stored["opinion_counts"]["already_seen"], len(member_ids))
        self.assertEqual(stored["opinion_counts"]["must_watch"], 1)

    def test_remove_movie_permissions(self):
        group, movie = self._group_with_movie()
        bobs = storage.add_movie(group["id"], dict(DETAILS, tmdb_id=604), self.bob_id, "Bob", self.db_path)

        with self.assertRaises(storage.GroupError):
            storage.remove_movie(group["id"], movie["id"], self.bob_id, self.db_path)
        # the owner may remove anyone's suggestion
        storage.remove_movie(group["id"], bobs["id"], self.alice_id, self.db_path)
        storage.remove_movie(group["id"], movie["id"], self.alice_id, self.db_path)
        self.assertEqual(storage.get_group_movies(group["id"], self.db_path), [])

    def test_watch_and_unwatch(self):
        group, movie = self._group_with_movie()
        other = storage.add_movie(group["id"], dict(DETAILS, tmdb_id=604), self.bob_id, "Bob", self.db_path)

        watched = storage.mark_watched(group["id"], movie["id"], self.bob_id, self.db_path)
        self.assertTrue(watched["watched"])
        self.assertEqual(watched["watched_by"], self.bob_id)
        pool = storage.get_unwatched_movies(group["id"], self.db_path)
        self.assertEqual([m["id"] for m in pool], [other["id"]])
        history = storage.get_watch_history(group["id"], self.db_path)
        self.assertEqual([m["id"] for m in history], [movie["id"]])

        storage.rate_watched_movie(group["id"], movie["id"], self.alice_id, 4, self.db_path)
        restored = storage.unwatch_movie(group["id"], movie["id"], self.db_path)
        self.assertFalse(restored["watched"])
        self.assertIsNone(restored["watched_at"])
        self.assertIsNone(restored["watched_by"])
        self.assertEqual(restored["group_ratings"], {})
        self.assertEqual(len(storage.get_unwatched_movies(group["id"], self.db_path)), 2)

    def test_mark_watched_touches_group_activity(self):
        group, movie = self._group_with_movie()
        before = storage.get_group(group["id"], self.db_path)["last_activity"]
        storage.mark_watched(group["id"], movie["id"], self.alice_id, self.db_path)
        after = storage.get_group(group["id"], self.db_path)["last_activity"]
        self.assertGreater(after, before)

    def test_rate_watched_movie(self):
        group, movie = self._group_with_movie()
        with self.assertRaises(storage.GroupError):
            storage.rate_watched_movie(group["id"], movie["id"], self.alice_id, 4, self.db_path)

        storage.mark_watched(group["id"], movie["id"], self.alice_id, self.db_path)
        storage.rate_watched_movie(group["id"], movie["id"], self.alice_id, 4, self.db_path)
        rated = storage.rate_watched_movie(group["id"], movie["id"], self.bob_id, 5, self.db_path)
        self.assertEqual(rated["average_group_rating"], 4.5)

        with self.assertRaises(storage.GroupError):
            storage.rate_watched_movie(group["id"], movie["id"], self.bob_id, 6, self.db_path)

    def test_second_confirmation_keeps_first_watch(self):
        group, movie = self._group_with_movie()
        first = storage.mark_watched(group["id"], movie["id"], self.alice_id, self.db_path)
        with self.assertRaises(storage.GroupError):
            storage.mark_watched(group["id"], movie["id"], self.bob_id, self.db_path)
        stored = storage.get_movie(group["id"], movie["id"], self.db_path)
        self.assertEqual(stored["watched_by"], self.alice_id)
        self.assertEqual(stored["watched_at"], first["watched_at"])

    def test_boolean_rating_rejected(self):
        group, movie = self._group_with_movie()
        storage.mark_watched(group["id"], movie["id"], self.alice_id, self.db_path)
        for rating in (True, False):
            with self.assertRaises(storage.GroupError):
                storage.rate_watched_movie(group["id"], movie["id"], self.alice_id, rating, self.db_path)
        stored = storage.get_movie(group["id"], movie["id"], self.db_path)
        self.assertEqual(stored["group_ratings"], {})

    def test_counts_loaded_from_opinions_not_stored_copy(self):
        group, movie = self._group_with_movie()
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                "UPDATE movies SET opinion_counts_json = ? WHERE id = ?",
                (json.dumps({"must_watch": 7, "already_seen": 7, "pass": 7}), movie["id"]),
            )
            conn.commit()
        finally:
            conn.close()
        stored = storage.get_movie(group["id"], movie["id"], self.db_path)
        self.assertEqual(stored["opinion_counts"], {"must_watch": 1, "already_seen": 0, "pass": 0})

    def test_add_movie_to_missing_group(self):
        with self.assertRaises(storage.NotFoundError):
            storage.add_movie("missing", DETAILS, self.alice_id, "Alice", self.db_path)


if __name__ == "__main__":
    unittest.main()

import json
import tempfile
import unittest
from pathlib import Path

from models import ChatMessage, Profile
from profile_store import (
    CHAT_KEY,
    PROFILE_KEY,
    ChatHistoryStore,
    ChatLog,
    KeyValueStore,
    PracticeHistory,
    ProfileStore,
)


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.kv = KeyValueStore(Path(self._tmp.name) / "storage")


class KeyValueStoreTests(StoreTestCase):
    def test_set_get_remove(self) -> None:
        self.assertIsNone(self.kv.get("missing"))

        self.kv.set("a", "1")
        self.kv.set("a", "2")

        self.assertEqual(self.kv.get("a"), "2")
        self.assertEqual(self.kv.keys(), ["a"])
        self.kv.remove("a")
        self.kv.remove("a")
        self.assertIsNone(self.kv.get("a"))

    def test_dump_and_clear(self) -> None:
        self.kv.set("x", "{}")
        self.kv.set("y", "[]")

        self.assertEqual(self.kv.dump(), {"x": "{}", "y": "[]"})
        self.kv.clear()
        self.assertEqual(self.kv.keys(), [])

    def test_export_writes_all_entries(self) -> None:
        self.kv.set(PROFILE_KEY, json.dumps({"name": "Ada"}))
        self.kv.set(CHAT_KEY, "[]")

        target = self.kv.export(Path(self._tmp.name) / "backup.json")

        exported = json.loads(target.read_text(encoding="utf-8"))
        self.assertEqual(exported, {CHAT_KEY: "[]", PROFILE_KEY: json.dumps({"name": "Ada"})})


class ProfileStoreTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = ProfileStore(self.kv)

    def test_absent_profile(self) -> None:
        self.assertIsNone(self.store.load())

    def test_save_then_load_is_equal(self) -> None:
        profile = Profile(name="Ada", skills=["python", "k8s"], github="ada-l")

        self.store.save(profile)
        loaded = self.store.load()

        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.to_payload(), profile.to_payload())

    def test_invalid_json_is_discarded(self) -> None:
        self.kv.set(PROFILE_KEY, "{not json")

        self.assertIsNone(self.store.load())
        self.assertIsNone(self.kv.get(PROFILE_KEY))

    def test_non_object_is_discarded(self) -> None:
        self.kv.set(PROFILE_KEY, json.dumps(["Ada"]))

        self.assertIsNone(self.store.load())
        self.assertIsNone(self.kv.get(PROFILE_KEY))

    def test_object_without_name_or_skills_is_discarded(self) -> None:
        self.kv.set(PROFILE_KEY, json.dumps({"email": "a@x.io"}))

        self.assertIsNone(self.store.load())
        self.assertIsNone(self.kv.get(PROFILE_KEY))

    def test_skills_alone_is_enough(self) -> None:
        self.kv.set(PROFILE_KEY, json.dumps({"skills": ["go"]}))

        loaded = self.store.load()

        self.assertEqual(loaded.skills, ["go"])

    def test_empty_skills_list_is_kept(self) -> None:
        self.kv.set(PROFILE_KEY, json.dumps({"skills": []}))

        loaded = self.store.load()

        self.assertIsNotNone(loaded)
        self.assertEqual(loaded.skills, [])
        self.assertIsNotNone(self.kv.get(PROFILE_KEY))

    def test_blank_profile_round_trips(self) -> None:
        profile = Profile(name="", skills=[], summary="x")

        self.store.save(profile)

        self.assertEqual(self.store.load(), profile)

    def test_save_none_removes_entry(self) -> None:
        self.store.save(Profile(name="Ada"))
        self.store.save(None)

        self.assertIsNone(self.kv.get(PROFILE_KEY))


class ChatHistoryTests(StoreTestCase):
    def test_persisted_history_keeps_last_fifty(self) -> None:
        store = ChatHistoryStore(self.kv)
        log = ChatLog(store)

        for i in range(60):
            log.append(ChatMessage.question(f"q{i}"))

        self.assertEqual(len(log), 60)
        records = json.loads(self.kv.get(CHAT_KEY))
        self.assertEqual(len(records), 50)
        self.assertEqual(records[0]["text"], "q10")
        self.assertEqual(records[-1]["text"], "q59")

    def test_reload_restores_messages(self) -> None:
        store = ChatHistoryStore(self.kv)
        ChatLog(store).append(ChatMessage.answer("hello"))

        restored = ChatLog(ChatHistoryStore(self.kv))

        self.assertEqual([m.text for m in restored.messages], ["hello"])
        self.assertEqual(restored.messages[0].kind, "answer")

    def test_bad_entries_are_skipped(self) -> None:
        self.kv.set(CHAT_KEY, json.dumps([{"type": "q", "text": "ok", "time": 1}, {"type": "?"}, 7]))

        messages = ChatHistoryStore(self.kv).load()

        self.assertEqual([m.text for m in messages], ["ok"])

    def test_unparsable_history_starts_empty(self) -> None:
        self.kv.set(CHAT_KEY, "oops")

        self.assertEqual(ChatHistoryStore(self.kv).load(), [])

    def test_clear_removes_entry(self) -> None:
        log = ChatLog(ChatHistoryStore(self.kv))
        log.append(ChatMessage.question("q"))

        log.clear()

        self.assertEqual(len(log), 0)
        self.assertIsNone(self.kv.get(CHAT_KEY))


class PracticeHistoryTests(unittest.TestCase):
    def test_newest_first_and_capped(self) -> None:
        history = PracticeHistory(limit=20)

        for i in range(25):
            history.add(f"q{i}", f"a{i}")

        entries = history.entries
        self.assertEqual(len(entries), 20)
        self.assertEqual(entries[0]["question"], "q24")
        self.assertEqual(entries[-1]["question"], "q5")
        self.assertIn("timestamp", entries[0])


if __name__ == "__main__":
    unittest.main()

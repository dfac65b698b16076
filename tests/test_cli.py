import contextlib
import importlib.util
import io
import json
import tempfile
import unittest
from pathlib import Path

from profile_store import CHAT_KEY, PROFILE_KEY, KeyValueStore

HAS_TK = importlib.util.find_spec("_tkinter") is not None


@unittest.skipUnless(HAS_TK, "main imports tkinter")
class DataCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.storage = Path(self._tmp.name) / "storage"
        self.kv = KeyValueStore(self.storage)
        self.kv.set(PROFILE_KEY, json.dumps({"name": "Ada", "skills": []}))
        self.kv.set(CHAT_KEY, "[]")

    def run_cli(self, *argv: str) -> int:
        from main import cli_main

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli_main(["--storage-dir", str(self.storage), *argv])
        self.output = out.getvalue()
        return code

    def test_export_writes_backup(self) -> None:
        target = Path(self._tmp.name) / "backup.json"

        self.assertEqual(self.run_cli("data", "export", str(target)), 0)

        self.assertIn("Data exported", self.output)
        exported = json.loads(target.read_text(encoding="utf-8"))
        self.assertEqual(sorted(exported), [CHAT_KEY, PROFILE_KEY])

    def test_clear_removes_everything(self) -> None:
        self.assertEqual(self.run_cli("data", "clear"), 0)

        self.assertEqual(self.kv.keys(), [])
        self.assertIn("All data cleared", self.output)


if __name__ == "__main__":
    unittest.main()

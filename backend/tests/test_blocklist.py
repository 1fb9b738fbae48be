"""Tests for blocklist.py: persisted reported question ids."""
import sys
import os
import json

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from blocklist import Blocklist


class TestBlocklist:
    def test_missing_file_starts_empty(self, tmp_path):
        bl = Blocklist(str(tmp_path / "missing.json"))
        bl.load()
        assert bl.ids == set()
        assert bl.is_blocked("q-1") is False

    def test_report_persists_across_instances(self, tmp_path):
        path = tmp_path / "data" / "reported.json"
        bl = Blocklist(str(path))
        assert bl.report("q-2") is True
        assert bl.report("q-1") is True
        assert json.loads(path.read_text()) == ["q-1", "q-2"]

        fresh = Blocklist(str(path))
        fresh.load()
        assert fresh.is_blocked("q-1")
        assert fresh.is_blocked("q-2")

    def test_duplicate_report_is_noop(self, tmp_path):
        bl = Blocklist(str(tmp_path / "reported.json"))
        assert bl.report("q-1") is True
        assert bl.report("q-1") is False
        assert bl.report("") is False
        assert bl.report(None) is False

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "reported.json"
        path.write_text("{not json")
        bl = Blocklist(str(path))
        bl.load()
        assert bl.ids == set()

    def test_non_list_file_is_ignored(self, tmp_path):
        path = tmp_path / "reported.json"
        path.write_text(json.dumps({"q-1": True}))
        bl = Blocklist(str(path))
        bl.load()
        assert bl.ids == set()

    def test_numeric_ids_are_normalized(self, tmp_path):
        path = tmp_path / "reported.json"
        path.write_text(json.dumps([7, "q-8"]))
        bl = Blocklist(str(path))
        bl.load()
        assert bl.is_blocked(7)
        assert bl.is_blocked("7")
        assert bl.is_blocked("q-8")

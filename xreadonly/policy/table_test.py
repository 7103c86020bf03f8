import os
import json
import tempfile
import unittest
import dataclasses

from xreadonly.policy.table import (
    PolicyTable,
    ControlDescriptor,
    SuppressionMode,
    OperationMatch,
    InvalidPolicyTableError,
    load_controls,
)


class TestPolicyTable(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

        self.requests = {
            "version": "1",
            "operations": ["CreateTweet", "FavoriteTweet"],
            "path_patterns": ["/statuses/update"],
        }
        self.controls = {
            "controls": [
                {"selector": '[data-testid="like"]', "mode": "hide"},
                {"selector": '[data-testid="reply"]', "mode": "disable", "description": "Reply"},
            ]
        }

    def _write(self, name: str, content) -> str:
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(content if isinstance(content, str) else json.dumps(content))
        return path

    def test_default_table(self):
        """The packaged resources load and cover the known write operations."""
        table = PolicyTable.default()
        self.assertIn("CreateTweet", table.operations)
        self.assertIn("/statuses/update", table.path_patterns)
        self.assertEqual(table.graphql_marker, "/graphql/")
        self.assertEqual(table.rest_markers, ("/api/1.1/", "/1.1/"))
        self.assertEqual(table.operation_match, OperationMatch.SEGMENT)
        self.assertIn('[data-testid="like"]', table.hide_selectors)
        self.assertEqual(table.disable_selectors, ('[data-testid="reply"]',))

    def test_load_from_files(self):
        table = PolicyTable.load(self._write("requests.json", self.requests), self._write("controls.json", self.controls))
        self.assertEqual(table.version, "1")
        self.assertEqual(table.operations, ("CreateTweet", "FavoriteTweet"))
        self.assertEqual(table.hide_selectors, ('[data-testid="like"]',))
        self.assertEqual(table.all_selectors, ('[data-testid="like"]', '[data-testid="reply"]'))
        self.assertEqual(table.controls[1].description, "Reply")

    def test_load_without_controls(self):
        table = PolicyTable.load(self._write("requests.json", self.requests), controls_path=None)
        self.assertEqual(table.controls, ())

    def test_table_is_immutable(self):
        table = PolicyTable.default()
        with self.assertRaises(dataclasses.FrozenInstanceError):
            table.operations = ()
        self.assertIsInstance(table.operations, tuple)
        self.assertIsInstance(table.controls, tuple)

    def test_with_controls_returns_copy(self):
        table = PolicyTable.default()
        stripped = table.with_controls([])
        self.assertEqual(stripped.controls, ())
        self.assertEqual(stripped.operations, table.operations)
        self.assertNotEqual(table.controls, ())

    def test_missing_fields(self):
        with self.assertRaises(InvalidPolicyTableError) as ctx:
            PolicyTable.from_dict({"version": "1"})
        self.assertIn("operations", str(ctx.exception))

    def test_duplicate_operation_rejected(self):
        self.requests["operations"].append("CreateTweet")
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(self.requests)

    def test_operation_with_separator_rejected(self):
        self.requests["operations"] = ["abcd/CreateTweet"]
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(self.requests)

    def test_empty_path_pattern_rejected(self):
        self.requests["path_patterns"] = [""]
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(self.requests)

    def test_unknown_match_mode(self):
        self.requests["operation_match"] = "fuzzy"
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(self.requests)

    def test_prefix_match_mode(self):
        self.requests["operation_match"] = "prefix"
        self.assertEqual(PolicyTable.from_dict(self.requests).operation_match, OperationMatch.PREFIX)

    def test_control_descriptor(self):
        control = ControlDescriptor.from_dict({"selector": " .composer ", "mode": "HIDE"})
        self.assertEqual(control.selector, ".composer")
        self.assertIs(control.mode, SuppressionMode.HIDE)

        with self.assertRaises(InvalidPolicyTableError):
            ControlDescriptor.from_dict({"selector": ".composer", "mode": "blur"})
        with self.assertRaises(InvalidPolicyTableError):
            ControlDescriptor.from_dict({"selector": "", "mode": "hide"})
        with self.assertRaises(InvalidPolicyTableError):
            ControlDescriptor.from_dict({"mode": "hide"})

    def test_invalid_selector_rejected(self):
        """Selectors are parsed when the taxonomy is loaded, not on the first enforcement pass."""
        with self.assertRaises(InvalidPolicyTableError) as ctx:
            ControlDescriptor.from_dict({"selector": "[data-testid=", "mode": "hide"})
        self.assertIn("[data-testid=", str(ctx.exception))
        with self.assertRaises(InvalidPolicyTableError):
            ControlDescriptor('[data-testid="like"', SuppressionMode.HIDE)

    def test_control_entries_of_wrong_type_rejected(self):
        for entry in [None, 123, "like", ["like", "hide"]]:
            with self.assertRaises(InvalidPolicyTableError):
                ControlDescriptor.from_dict(entry)
        for entry in [{"selector": 7, "mode": "hide"}, {"selector": ".a", "mode": None}, {"selector": ".a", "mode": "hide", "description": 1}]:
            with self.assertRaises(InvalidPolicyTableError):
                ControlDescriptor.from_dict(entry)
        with self.assertRaises(InvalidPolicyTableError):
            load_controls(self._write("nulls.json", {"controls": [None]}))

    def test_request_fields_of_wrong_type_rejected(self):
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(["CreateTweet"])
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, operations=[1]))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, operations="CreateTweet"))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, path_patterns=[None]))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, rest_markers="/1.1/"))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, graphql_marker=None))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_dict(dict(self.requests, controls=[None]))
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.load(self._write("requests.json", "[]"), controls_path=None)

    def test_load_controls_accepts_bare_list(self):
        controls = load_controls(self._write("controls.json", self.controls["controls"]))
        self.assertEqual([c.mode for c in controls], [SuppressionMode.HIDE, SuppressionMode.DISABLE])

    def test_unreadable_files(self):
        with self.assertRaises(InvalidPolicyTableError):
            load_controls(os.path.join(self.tmp.name, "missing.json"))
        with self.assertRaises(InvalidPolicyTableError):
            load_controls(self._write("broken.json", "{not json"))
        with self.assertRaises(InvalidPolicyTableError):
            load_controls(self._write("wrong.json", {"controls": "nope"}))

    def test_from_json_round_trip(self):
        table = PolicyTable.default()
        self.assertEqual(PolicyTable.from_json(json.dumps(table.to_dict())), table)
        with self.assertRaises(InvalidPolicyTableError):
            PolicyTable.from_json("[")


if __name__ == '__main__':
    unittest.main()

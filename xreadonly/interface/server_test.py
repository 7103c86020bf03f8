import re
import unittest

from xreadonly.interface.server import compile_dnr_rule, compile_dnr_rules, create_app, deduplicate_rules, FIRST_RULE_ID
from xreadonly.policy.classifier import RequestClassifier
from xreadonly.policy.table import PolicyTable, OperationMatch


class TestDnrCompilation(unittest.TestCase):

    def setUp(self):
        self.table = PolicyTable(
            version="test",
            operations=("CreateTweet", "FavoriteTweet"),
            path_patterns=("/statuses/update",),
            rest_markers=("/api/1.1/", "/1.1/"),
        )

    def _filters(self, rules: list[dict]) -> list[str]:
        return [r["condition"]["regexFilter"] for r in rules]

    def test_rule_shape(self):
        rule = compile_dnr_rule("/graphql/.*/CreateTweet", 7)
        self.assertEqual(rule, {
            "id": 7,
            "priority": 2,
            "action": {"type": "block"},
            "condition": {
                "regexFilter": "/graphql/.*/CreateTweet",
                "requestMethods": ["post"],
                "resourceTypes": ["xmlhttprequest"]
            }
        })

    def test_compiled_rules_match_like_the_classifier(self):
        rules = compile_dnr_rules(self.table)
        # 2 operations + 1 pattern for each of the 2 REST markers
        self.assertEqual(len(rules), 4)
        self.assertEqual([r["id"] for r in rules], list(range(FIRST_RULE_ID, FIRST_RULE_ID + 4)))

        patterns = [re.compile(f) for f in self._filters(rules)]

        def blocked(url):
            return any(p.search(url) for p in patterns)

        self.assertTrue(blocked("https://x.com/i/api/graphql/abcd1234/CreateTweet"))
        self.assertTrue(blocked("https://x.com/i/api/graphql/abcd1234/FavoriteTweet?variables=%7B%7D"))
        self.assertTrue(blocked("https://x.com/i/api/1.1/statuses/update.json"))
        self.assertTrue(blocked("https://api.twitter.com/1.1/statuses/update.json"))
        self.assertFalse(blocked("https://x.com/i/api/graphql/abcd1234/CreateTweetDraftPreview"))
        self.assertFalse(blocked("https://x.com/i/api/graphql/abcd1234/HomeTimeline"))
        self.assertFalse(blocked("https://x.com/statuses/update"))

    def test_rest_rules_agree_with_classifier(self):
        """REST rules block exactly the URLs the classifier blocks, whatever the order of marker and pattern."""
        classifier = RequestClassifier(self.table)
        patterns = [re.compile(f) for f in self._filters(compile_dnr_rules(self.table))]
        for url in [
            "https://x.com/i/api/1.1/statuses/update.json",
            "https://api.twitter.com/1.1/statuses/update.json",
            "https://x.com/statuses/update?via=/1.1/",
            "https://x.com/i/api/1.1/statuses/home_timeline.json",
            "https://x.com/1.1x/statuses/update",
            "https://x.com/statuses/update",
        ]:
            expected = classifier.classify("POST", url).blocked
            self.assertEqual(any(p.search(url) for p in patterns), expected, url)

    def test_prefix_mode_rules(self):
        table = PolicyTable(version="t", operations=("CreateTweet",), path_patterns=(), operation_match=OperationMatch.PREFIX)
        rules = compile_dnr_rules(table)
        self.assertEqual(len(rules), 1)
        self.assertTrue(re.search(rules[0]["condition"]["regexFilter"], "https://x.com/i/api/graphql/a/CreateTweetDraftPreview"))

    def test_deduplicate_rules(self):
        rules = [compile_dnr_rule("a", 0), compile_dnr_rule("b", 0), compile_dnr_rule("a", 0)]
        unique = deduplicate_rules(rules)
        self.assertEqual(self._filters(unique), ["a", "b"])
        self.assertEqual([r["id"] for r in unique], [FIRST_RULE_ID, FIRST_RULE_ID + 1])


class TestPolicyServer(unittest.TestCase):

    def setUp(self):
        self.table = PolicyTable.default()
        self.client = create_app(self.table).test_client()

    def test_ping(self):
        response = self.client.get("/ping")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"status": "ok", "version": self.table.version})

    def test_policy(self):
        data = self.client.get("/policy").get_json()
        self.assertEqual(PolicyTable.from_dict(data), self.table)

    def test_rules(self):
        data = self.client.get("/rules").get_json()
        self.assertEqual(data["version"], self.table.version)
        self.assertEqual(len(data["rules"]), len(compile_dnr_rules(self.table)))

    def test_scripts(self):
        response = self.client.get("/content.js")
        self.assertEqual(response.mimetype, "application/javascript")
        self.assertIn("MutationObserver", response.get_data(as_text=True))

        response = self.client.get("/inject.css")
        self.assertEqual(response.mimetype, "text/css")
        self.assertIn("display: none !important;", response.get_data(as_text=True))

    def test_cors_enabled(self):
        response = self.client.get("/rules", headers={"Origin": "https://x.com"})
        # flask-cors 6 echoes the request origin where older releases sent a wildcard
        self.assertIn(response.headers.get("Access-Control-Allow-Origin"), ("*", "https://x.com"))

    def test_post_not_allowed(self):
        self.assertEqual(self.client.post("/policy").status_code, 405)


if __name__ == '__main__':
    unittest.main()

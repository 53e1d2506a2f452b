import os
import tempfile
import textwrap
import unittest

import cwalk


class BuildRulesTests(unittest.TestCase):
    def test_all_rules_in_registry_order(self) -> None:
        rules = cwalk.build_rules()
        self.assertEqual([rule.rule_id for rule in rules], ["naming-convention", "for-loop-iterator"])

    def test_selection_keeps_registry_order(self) -> None:
        rules = cwalk.build_rules(["for-loop-iterator", "naming-convention"])
        self.assertEqual([type(rule) for rule in rules], [cwalk.NamingRule, cwalk.IncrementConsistencyRule])

    def test_unknown_rule_id(self) -> None:
        with self.assertRaises(cwalk.ConfigError):
            cwalk.build_rules(["camel-case"])


class RuleSelectionFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    def write(self, text):
        path = os.path.join(self._tmp.name, "rules.yaml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(textwrap.dedent(text))
        return path

    def test_mapping_with_rules_list(self) -> None:
        path = self.write(
            """
            rules:
              - naming-convention
              - id: for-loop-iterator
                enabled: false
            """
        )
        self.assertEqual(cwalk.load_rule_selection(path), ["naming-convention"])

    def test_plain_list_and_multiple_documents(self) -> None:
        path = self.write(
            """
            - for-loop-iterator
            ---
            - id: naming-convention
            - id: for-loop-iterator
              enabled: false
            """
        )
        self.assertEqual(cwalk.load_rule_selection(path), ["naming-convention"])

    def test_listed_rules_form_an_allowlist(self) -> None:
        path = self.write("rules: [for-loop-iterator]\n")
        self.assertEqual(cwalk.load_rule_selection(path), ["for-loop-iterator"])

    def test_disable_only_file_keeps_the_other_rules(self) -> None:
        path = self.write(
            """
            rules:
              - id: for-loop-iterator
                enabled: false
            """
        )
        self.assertEqual(cwalk.load_rule_selection(path), ["naming-convention"])

    def test_enabled_must_be_a_boolean(self) -> None:
        for value in ['"false"', "0", "off-ish"]:
            path = self.write(f"- id: naming-convention\n  enabled: {value}\n")
            with self.assertRaises(cwalk.ConfigError, msg=value):
                cwalk.load_rule_selection(path)

    def test_unknown_id_is_a_config_error(self) -> None:
        path = self.write("rules: [naming-convention, snake-everything]\n")
        with self.assertRaises(cwalk.ConfigError):
            cwalk.load_rule_selection(path)

    def test_bad_shapes_are_config_errors(self) -> None:
        for text in ["rules: 3\n", "- {enabled: true}\n", "key: [unclosed\n"]:
            with self.assertRaises(cwalk.ConfigError, msg=text):
                cwalk.load_rule_selection(self.write(text))

    def test_missing_file(self) -> None:
        with self.assertRaises(cwalk.ConfigError):
            cwalk.load_rule_selection(os.path.join(self._tmp.name, "absent.yaml"))


if __name__ == "__main__":
    unittest.main()

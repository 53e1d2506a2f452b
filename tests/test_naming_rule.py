import unittest

import cwalk


LOC = cwalk.SourceLocation(file="unit.c", line=3, column=6)


def function(name, implicit=False):
    return cwalk.FunctionDecl(name=name, location=LOC, implicit=implicit)


class SnakeCasePredicateTests(unittest.TestCase):
    def test_lowercase_names_comply(self) -> None:
        for name in ["calculate_sum", "calculatesum", "x2", "_private", "__", "a1_b2"]:
            self.assertTrue(cwalk.is_snake_case_compliant(name), name)

    def test_names_without_letters_comply(self) -> None:
        self.assertTrue(cwalk.is_snake_case_compliant("_1_2"))
        self.assertTrue(cwalk.is_snake_case_compliant(""))

    def test_any_uppercase_breaks_compliance(self) -> None:
        for name in ["calculateProduct", "CalculateDifference", "X", "snake_Case"]:
            self.assertFalse(cwalk.is_snake_case_compliant(name), name)


class NamingRuleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rule = cwalk.NamingRule()

    def test_compliant_name_is_silent(self) -> None:
        self.assertEqual(self.rule.visit(function("calculate_sum")), [])

    def test_one_diagnostic_per_offending_declaration(self) -> None:
        diagnostics = self.rule.visit(function("CalculateDifferenceOfTwoValues"))
        self.assertEqual(len(diagnostics), 1)
        diagnostic = diagnostics[0]
        self.assertEqual(diagnostic.severity, "warning")
        self.assertEqual(diagnostic.rule_id, "naming-convention")
        self.assertEqual(
            diagnostic.message,
            "function name 'CalculateDifferenceOfTwoValues' does not follow snake_case convention",
        )
        self.assertEqual(diagnostic.location, LOC)

    def test_main_and_implicit_declarations_are_skipped(self) -> None:
        self.assertEqual(self.rule.visit(function("main")), [])
        self.assertEqual(self.rule.visit(function("BuiltinThing", implicit=True)), [])

    def test_main_match_is_exact(self) -> None:
        self.assertEqual(len(self.rule.visit(function("Main"))), 1)

    def test_other_node_kinds_are_ignored(self) -> None:
        identity = cwalk.VariableIdentity(("unit.c", 10, "Counter"))
        var = cwalk.VariableDecl(name="Counter", location=LOC, identity=identity)
        self.assertEqual(self.rule.visit(var), [])


if __name__ == "__main__":
    unittest.main()

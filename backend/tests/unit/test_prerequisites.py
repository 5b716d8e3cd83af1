"""
Tests for services/prerequisites.py - prerequisite parsing and evaluation
"""

import itertools
import pytest

from services.prerequisites import (
    AndNode,
    CourseNode,
    OrNode,
    ParseOutcome,
    PrerequisiteEngine,
    PrerequisiteNode,
    check_prerequisites,
    evaluate,
    flatten_prerequisites,
    is_balanced,
    node_from_dict,
    normalize_course_code,
    parse_prerequisites,
    parse_with_outcome,
    prerequisites_to_string,
    split_at_top_level,
    AND_PATTERN,
    OR_PATTERN,
    PrerequisiteParseError,
)


class TestParsing:
    """Tests for parse_prerequisites"""

    def test_single_course(self):
        """A bare course code becomes a single leaf"""
        assert parse_prerequisites("CIS 1057") == CourseNode("CIS 1057")

    def test_and(self):
        result = parse_prerequisites("CIS 1057 and MATH 1041")
        assert result == AndNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")])

    def test_or(self):
        result = parse_prerequisites("CIS 1057 or CIS 1068")
        assert result == OrNode([CourseNode("CIS 1057"), CourseNode("CIS 1068")])

    def test_and_binds_tighter_than_or(self):
        """'A or B and C' is A or (B and C)"""
        result = parse_prerequisites("CIS 1057 or CIS 1068 and MATH 1041")
        assert result == OrNode([
            CourseNode("CIS 1057"),
            AndNode([CourseNode("CIS 1068"), CourseNode("MATH 1041")]),
        ])

    def test_parentheses_override_precedence(self):
        """Worked example: (CIS 1057 or CIS 1068) and MATH 1041"""
        result = parse_prerequisites("(CIS 1057 or CIS 1068) and MATH 1041")
        assert result == AndNode([
            OrNode([CourseNode("CIS 1057"), CourseNode("CIS 1068")]),
            CourseNode("MATH 1041"),
        ])

    def test_nested_parentheses(self):
        result = parse_prerequisites("((CIS 1057 or CIS 1068) and MATH 1041) or CIS 2168")
        assert isinstance(result, OrNode)
        assert result.children[1] == CourseNode("CIS 2168")
        assert isinstance(result.children[0], AndNode)

    def test_separately_parenthesized_operands(self):
        """Outer parens are only stripped when they wrap the whole expression"""
        result = parse_prerequisites("(CIS 1057) and (MATH 1041)")
        assert result == AndNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")])

    def test_min_grade(self):
        """Worked example: CIS 1057 (min grade C)"""
        assert parse_prerequisites("CIS 1057 (min grade C)") == CourseNode("CIS 1057", min_grade="C")

    def test_min_grade_with_modifier(self):
        assert parse_prerequisites("MATH 1021 (minimum grade of B-)").min_grade == "B-"

    def test_word_starting_with_grade_letter_is_not_a_grade(self):
        node = parse_prerequisites("CIS 1057 grade determined by instructor")
        assert node.min_grade is None

    def test_concurrent(self):
        node = parse_prerequisites("CIS 1057 (may be taken concurrently)")
        assert node == CourseNode("CIS 1057", concurrent=True)

    def test_case_insensitive_operators_and_codes(self):
        result = parse_prerequisites("cis 1057 OR Cis 1068")
        assert result == OrNode([CourseNode("CIS 1057"), CourseNode("CIS 1068")])

    def test_whitespace_is_collapsed(self):
        result = parse_prerequisites("  CIS   1057\n and\tMATH 1041  ")
        assert result == AndNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")])

    @pytest.mark.parametrize("text", [None, "", "   ", "None", "none", "NONE"])
    def test_empty_inputs(self, text):
        assert parse_prerequisites(text) is None

    def test_text_without_courses(self):
        assert parse_prerequisites("Permission of instructor") is None

    def test_operand_without_course_is_dropped(self):
        """'or permission' contributes nothing; a single survivor is unwrapped"""
        assert parse_prerequisites("CIS 1057 or permission of instructor") == CourseNode("CIS 1057")

    def test_unbalanced_falls_back_to_and(self):
        """Malformed structure falls back to an AND of every code found"""
        result = parse_prerequisites("((CIS 1057 or MATH 1041")
        assert result == AndNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")])

    def test_unbalanced_close_paren_falls_back(self):
        result = parse_prerequisites("CIS 1057) or (MATH 1041")
        assert result == AndNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")])

    def test_leaf_with_several_codes_falls_back(self):
        """Comma lists are not structure; every code becomes required"""
        node, outcome = parse_with_outcome("CIS 1057, CIS 1068")
        assert outcome is ParseOutcome.FALLBACK
        assert node == AndNode([CourseNode("CIS 1057"), CourseNode("CIS 1068")])

    @pytest.mark.parametrize("text", [
        "(", ")", "((((", "))))", "()", "(and)", "or or or", "and", "CIS", "1057",
        "CIS 1057 and", "or CIS 1057", "((CIS 1057) or", "\x00", "(" * 500 + "CIS 1057",
        "CIS 1057 (min grade", "grade C", "(may be taken concurrently)",
    ])
    def test_never_raises(self, text):
        """Any string gives None or a well-formed tree"""
        result = parse_prerequisites(text)
        assert result is None or isinstance(result, PrerequisiteNode)


class TestParseOutcome:
    """Tests for parse_with_outcome"""

    def test_outcomes(self):
        assert parse_with_outcome(None)[1] is ParseOutcome.EMPTY
        assert parse_with_outcome("CIS 1057")[1] is ParseOutcome.PARSED
        assert parse_with_outcome("(CIS 1057")[1] is ParseOutcome.FALLBACK


class TestSplitAtTopLevel:
    """Tests for the paren-aware splitter"""

    def test_split_ignores_nested_keywords(self):
        parts = split_at_top_level("(A or B) and C or D", OR_PATTERN)
        assert parts == ["(A or B) and C", "D"]

    def test_split_and(self):
        assert split_at_top_level("A and (B and C)", AND_PATTERN) == ["A", "(B and C)"]

    def test_no_split(self):
        assert split_at_top_level("CIS 1057", OR_PATTERN) == ["CIS 1057"]

    def test_keyword_inside_word_is_not_split(self):
        assert split_at_top_level("Honors CIS 1057", OR_PATTERN) == ["Honors CIS 1057"]

    def test_unbalanced_raises(self):
        with pytest.raises(PrerequisiteParseError):
            split_at_top_level("(A or B", OR_PATTERN)
        with pytest.raises(PrerequisiteParseError):
            split_at_top_level("A) or B", OR_PATTERN)

    def test_is_balanced(self):
        assert is_balanced("(a (b) c)")
        assert not is_balanced(")(")
        assert not is_balanced("((")


class TestEvaluation:
    """Tests for check_prerequisites / evaluate"""

    @pytest.fixture
    def worked_tree(self):
        return parse_prerequisites("(CIS 1057 or CIS 1068) and MATH 1041")

    def test_worked_example_satisfied(self, worked_tree):
        assert check_prerequisites(worked_tree, ["CIS 1068", "MATH 1041"]) is True

    def test_worked_example_unsatisfied(self, worked_tree):
        assert check_prerequisites(worked_tree, ["MATH 1041"]) is False

    def test_none_is_satisfied(self):
        assert check_prerequisites(None, []) is True

    def test_completed_codes_are_normalized(self, worked_tree):
        assert check_prerequisites(worked_tree, ["cis  1057", " math 1041 "]) is True

    def test_min_grade_not_enforced(self):
        """The grade is recorded but not checked"""
        tree = parse_prerequisites("CIS 1057 (min grade C)")
        assert check_prerequisites(tree, ["CIS 1057"]) is True

    def test_in_progress_only_counts_for_concurrent(self):
        plain = CourseNode("CIS 1057")
        concurrent = CourseNode("CIS 1057", concurrent=True)
        assert check_prerequisites(plain, [], ["CIS 1057"]) is False
        assert check_prerequisites(concurrent, [], ["CIS 1057"]) is True

    def test_concurrent_leaf_true_iff_same_course(self):
        leaf = CourseNode("CIS 1057", concurrent=True)
        for course in ["CIS 1057", "CIS 1068", "MATH 1041"]:
            assert evaluate(leaf, set(), {course}) == (course == "CIS 1057")

    def test_empty_combinators_are_satisfied(self):
        assert evaluate(AndNode([]), set(), set()) is True
        assert evaluate(OrNode([]), set(), set()) is True

    def test_unknown_node_type_is_permissive(self):
        class Mystery(PrerequisiteNode):
            type = "XOR"

        assert evaluate(Mystery(), set(), set()) is True
        assert check_prerequisites(AndNode([Mystery(), CourseNode("CIS 1057")]), ["CIS 1057"]) is True


class TestFlatten:
    """Tests for flatten_prerequisites"""

    def test_deduplicates(self):
        tree = AndNode([
            CourseNode("CIS 1057"),
            OrNode([CourseNode("CIS 1057"), CourseNode("MATH 1041")]),
        ])
        assert flatten_prerequisites(tree) == ["CIS 1057", "MATH 1041"]

    def test_none(self):
        assert flatten_prerequisites(None) == []


class TestToString:
    """Tests for prerequisites_to_string"""

    def test_none(self):
        assert prerequisites_to_string(None) == "None"

    def test_modifiers(self):
        assert prerequisites_to_string(CourseNode("CIS 1057", min_grade="C")) == "CIS 1057 (min grade C)"
        assert prerequisites_to_string(CourseNode("CIS 1057", concurrent=True)) == "CIS 1057 (may be concurrent)"

    def test_nested(self):
        tree = AndNode([OrNode([CourseNode("CIS 1057"), CourseNode("CIS 1068")]), CourseNode("MATH 1041")])
        assert prerequisites_to_string(tree) == "((CIS 1057 OR CIS 1068) AND MATH 1041)"

    def test_single_child_has_no_parens(self):
        assert prerequisites_to_string(OrNode([CourseNode("CIS 1057")])) == "CIS 1057"

    def test_modifiers_survive_reparse(self):
        tree = CourseNode("CIS 1057", min_grade="C", concurrent=True)
        assert parse_prerequisites(prerequisites_to_string(tree)) == tree

    def test_round_trip_preserves_evaluation(self):
        """evaluate(parse(str(tree)), S) == evaluate(tree, S) for every S"""
        a, b, c, d = "CIS 1057", "CIS 1068", "MATH 1041", "CIS 2168"
        trees = [
            CourseNode(a),
            AndNode([CourseNode(a), CourseNode(b)]),
            OrNode([CourseNode(a), AndNode([CourseNode(b), CourseNode(c)])]),
            AndNode([OrNode([CourseNode(a), CourseNode(b)]), CourseNode(c)]),
            OrNode([AndNode([CourseNode(a), CourseNode(d)]), AndNode([CourseNode(b), CourseNode(c)])]),
        ]
        universe = [a, b, c, d]
        for tree in trees:
            reparsed = parse_prerequisites(prerequisites_to_string(tree))
            for size in range(len(universe) + 1):
                for completed in itertools.combinations(universe, size):
                    assert check_prerequisites(reparsed, completed) == check_prerequisites(tree, completed)


class TestSerialization:
    """Tests for to_dict / node_from_dict"""

    def test_to_dict(self):
        tree = AndNode([CourseNode("CIS 1057", min_grade="C"), CourseNode("MATH 1041", concurrent=True)])
        assert tree.to_dict() == {
            "type": "AND",
            "children": [
                {"type": "course", "course": "CIS 1057", "minGrade": "C"},
                {"type": "course", "course": "MATH 1041", "concurrent": True},
            ],
        }

    def test_from_dict(self):
        tree = parse_prerequisites("(CIS 1057 or CIS 1068) and MATH 1041 (min grade C)")
        assert node_from_dict(tree.to_dict()) == tree

    def test_from_dict_unknown(self):
        assert node_from_dict({"type": "XOR"}) is None
        assert node_from_dict(None) is None


class TestPrerequisiteEngine:
    """Tests for the stateful engine"""

    def test_counts_outcomes(self):
        engine = PrerequisiteEngine()
        engine.parse("CIS 1057")
        engine.parse(None)
        engine.parse("((CIS 1057")
        assert engine.stats == {"empty": 1, "parsed": 1, "fallback": 1}
        assert engine.fallback_samples == ["((CIS 1057"]

    def test_reset(self):
        engine = PrerequisiteEngine()
        engine.parse("((CIS 1057")
        engine.reset()
        assert engine.stats["fallback"] == 0
        assert engine.fallback_samples == []

    def test_check(self):
        engine = PrerequisiteEngine()
        tree = engine.parse("CIS 1057 and MATH 1041")
        assert engine.check(tree, ["CIS 1057", "MATH 1041"])
        assert not engine.check(tree, ["CIS 1057"])


def test_normalize_course_code():
    assert normalize_course_code("  cis   1057 ") == "CIS 1057"

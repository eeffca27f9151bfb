"""
Unit tests for answer-key resolution, validation and session preparation.
"""

import random

import pytest

from examfunnel.core.answer_key import (
    AnswerSource,
    IntegrityStats,
    admit_candidate,
    infer_correct_from_choice_analysis,
    normalize_options,
    parse_choice_analysis,
    prepare_batch_for_session,
    prepare_for_session,
    resolve_correct_answer,
    strip_option_prefix,
    validate_answer_key,
)
from examfunnel.core.models import Question, QuestionType, RawCandidate, SourceType

OPTIONS = ["Heparin", "Argatroban", "Warfarin", "Aspirin"]

ANALYSIS = """Argatroban is a direct thrombin inhibitor.

Answer Choice Analysis:
| Choice | Rationale |
|---|---|
| A | Incorrect - worsens HIT |
| B | Correct - safe in HIT |
| C | Incorrect - not acutely |
| D | Incorrect - antiplatelet |
"""


class TestOptionNormalization:
    """Tests for option label stripping and payload coercion."""

    @pytest.mark.parametrize("raw", ["A. Heparin", "A) Heparin", "a: Heparin", "A - Heparin", " Heparin "])
    def test_strip_prefix(self, raw):
        assert strip_option_prefix(raw) == "Heparin"

    def test_list(self):
        assert normalize_options(["A. One", "", "B) Two", None]) == ["One", "Two"]

    def test_letter_mapping_in_letter_order(self):
        assert normalize_options({"B": "Two", "A": "One", "C": "Three"}) == ["One", "Two", "Three"]

    def test_numeric_mapping_in_numeric_order(self):
        assert normalize_options({"10": "Ten", "2": "Two", "1": "One"}) == ["One", "Two", "Ten"]

    def test_other_mapping_uses_values(self):
        assert normalize_options({"first": "One", "second": "Two"}) == ["One", "Two"]

    def test_newline_string(self):
        assert normalize_options("A. One\nB. Two\n\nC. Three") == ["One", "Two", "Three"]

    def test_unknown_shape(self):
        assert normalize_options(42) == []
        assert normalize_options(None) == []


class TestChoiceAnalysis:
    """Tests for parsing the Choice Analysis table."""

    def test_parses_rows_after_separator(self):
        rows = parse_choice_analysis(ANALYSIS)
        assert [row.option_text for row in rows] == ["A", "B", "C", "D"]
        assert rows[1].rationale.startswith("Correct")

    def test_bold_marker(self, sample_question):
        rows = parse_choice_analysis(sample_question.explanation)
        assert len(rows) == 4
        assert rows[0].option_text == "Heparin"

    def test_no_marker(self):
        assert parse_choice_analysis("| A | Correct |") == []

    def test_infer_by_letter(self):
        assert infer_correct_from_choice_analysis(ANALYSIS, OPTIONS) == "Argatroban"

    def test_infer_by_text(self, sample_question):
        assert infer_correct_from_choice_analysis(sample_question.explanation, OPTIONS) == "Argatroban"

    def test_two_correct_rows_is_ambiguous(self):
        explanation = "Choice Analysis:\n| A | Correct |\n| B | Correct too |\n"
        assert infer_correct_from_choice_analysis(explanation, OPTIONS) is None

    def test_substring_match(self):
        explanation = "Choice Analysis:\n| Option | Rationale |\n| --- | --- |\n| Argatroban (IV) | Correct |\n"
        assert infer_correct_from_choice_analysis(explanation, OPTIONS) == "Argatroban"


class TestResolveCorrectAnswer:
    """Tests for resolution priority."""

    def test_analysis_overrides_letter(self):
        resolved = resolve_correct_answer("A", OPTIONS, ANALYSIS)
        assert resolved.value == "Argatroban"
        assert resolved.source == AnswerSource.ANALYSIS

    def test_letter_without_explanation(self):
        resolved = resolve_correct_answer("B", OPTIONS, "")
        assert resolved.value == "Argatroban"
        assert resolved.source == AnswerSource.LETTER

    @pytest.mark.parametrize("raw", ["B)", "b.", "B: Argatroban", "The answer is B"])
    def test_letter_forms(self, raw):
        assert resolve_correct_answer(raw, OPTIONS).value == "Argatroban"

    def test_letter_out_of_range_falls_through(self):
        resolved = resolve_correct_answer("E", ["Argatroban", "Warfarin"])
        assert resolved.source == AnswerSource.UNRESOLVED
        assert resolved.value == "E"

    def test_field_exact(self):
        resolved = resolve_correct_answer("argatroban", OPTIONS)
        assert resolved.value == "Argatroban"
        assert resolved.source == AnswerSource.FIELD

    def test_field_substring(self):
        resolved = resolve_correct_answer("Warfarin therapy", OPTIONS)
        assert resolved.value == "Warfarin"
        assert resolved.source == AnswerSource.FIELD

    def test_verbatim_option_starting_with_article_is_text(self):
        options = ["A bacterial infection", "Viral infection", "Fungal infection"]
        resolved = resolve_correct_answer("A bacterial infection", options)
        assert resolved.value == "A bacterial infection"
        assert resolved.source == AnswerSource.FIELD

    def test_empty(self):
        assert resolve_correct_answer("  ", OPTIONS).source == AnswerSource.EMPTY
        assert resolve_correct_answer(None, OPTIONS).source == AnswerSource.EMPTY

    def test_unresolved_keeps_raw_text(self):
        resolved = resolve_correct_answer("Dabigatran", OPTIONS)
        assert resolved.source == AnswerSource.UNRESOLVED
        assert resolved.value == "Dabigatran"

    def test_unresolved_strips_prefix(self):
        resolved = resolve_correct_answer("E. Dabigatran", ["Argatroban", "Warfarin"])
        assert resolved.source == AnswerSource.UNRESOLVED
        assert resolved.value == "Dabigatran"


class TestValidateAnswerKey:
    """Tests for validate_answer_key."""

    def make(self, **kwargs) -> Question:
        data = {"stem": "Which?", "options": OPTIONS, "correct_answer": "Argatroban"}
        data.update(kwargs)
        return Question(**data)

    def test_valid(self):
        assert validate_answer_key(self.make()).ok

    def test_options_missing(self):
        result = validate_answer_key(self.make(options=["Only"]))
        assert result.reason == "Options missing"

    def test_correct_missing(self):
        assert validate_answer_key(self.make(correct_answer="")).reason == "Correct answer missing"

    def test_not_found(self):
        result = validate_answer_key(self.make(correct_answer="Dabigatran"))
        assert result.reason == "Correct answer not found in options"

    def test_ambiguous(self):
        result = validate_answer_key(self.make(options=["A. Heparin", "Heparin", "Aspirin"], correct_answer="Heparin"))
        assert result.reason == "Correct answer ambiguous"

    def test_free_response_always_passes(self):
        assert validate_answer_key(self.make(type=QuestionType.DESCRIPTIVE, options=[], correct_answer="")).ok


class TestPrepareForSession:
    """Tests for prepare_for_session."""

    def test_repairs_from_analysis(self, sample_question):
        prepared = prepare_for_session(sample_question, shuffle=False)

        assert prepared is not None
        assert prepared.question.options == OPTIONS
        assert prepared.question.correct_answer == "Argatroban"
        assert prepared.correct_source == AnswerSource.ANALYSIS

    def test_shuffle_keeps_exactly_one_correct_option(self, sample_question):
        rng = random.Random(7)
        for _ in range(100):
            prepared = prepare_for_session(sample_question, shuffle=True, rng=rng)
            assert prepared is not None
            options = prepared.question.options
            assert sorted(options) == sorted(OPTIONS)
            assert options.count(prepared.question.correct_answer) == 1
            assert prepared.question.correct_answer == "Argatroban"

    def test_shuffle_changes_order(self, sample_question):
        rng = random.Random(3)
        orders = {tuple(prepare_for_session(sample_question, shuffle=True, rng=rng).question.options) for _ in range(30)}
        assert len(orders) > 1

    def test_does_not_mutate_input(self, sample_question):
        prepare_for_session(sample_question, shuffle=True)
        assert sample_question.correct_answer == "A"
        assert sample_question.options[0] == "A. Heparin"

    def test_too_few_options(self):
        question = Question(stem="Which?", options=["Only"], correct_answer="Only")
        assert prepare_for_session(question) is None

    def test_unresolvable_key(self):
        question = Question(stem="Which?", options=OPTIONS, correct_answer="Dabigatran")
        assert prepare_for_session(question) is None

    def test_free_response_passes_through(self):
        question = Question(type=QuestionType.FLASHCARD, stem="Define HIT", correct_answer="An immune reaction")
        prepared = prepare_for_session(question, shuffle=True)
        assert prepared is not None
        assert prepared.shuffled is False
        assert prepared.question.correct_answer == "An immune reaction"


class TestPrepareBatch:
    """Tests for prepare_batch_for_session integrity counters."""

    def test_counts_per_source(self, sample_question):
        broken = Question(stem="Which?", options=OPTIONS, correct_answer="Dabigatran", source_type=SourceType.GOLD)
        by_letter = Question(stem="Which?", options=OPTIONS, correct_answer="B", source_type=SourceType.GOLD)
        analysed = sample_question.model_copy(update={"source_type": SourceType.PREFAB})

        prepared, stats = prepare_batch_for_session([broken, by_letter, analysed], shuffle=False)

        assert [question.correct_answer for question in prepared] == ["Argatroban", "Argatroban"]
        gold = stats.by_source["gold"]
        assert gold.total_questions_rendered == 1
        assert gold.repaired_from_letter == 1
        assert gold.dropped_unrepairable == 1
        assert stats.by_source["prefab"].repaired_from_choice_analysis == 1

    def test_accumulates_into_given_stats(self):
        stats = IntegrityStats()
        question = Question(stem="Which?", options=OPTIONS, correct_answer="Heparin")
        prepare_batch_for_session([question], stats=stats)
        prepare_batch_for_session([question], stats=stats)
        assert stats.by_source["other"].total_questions_rendered == 2


class TestAdmitCandidate:
    """Tests for the RawCandidate gate."""

    def test_camel_case_payload(self):
        question = admit_candidate(
            {
                "questionText": "Which drug for HIT?",
                "options": {"A": "Heparin", "B": "Argatroban"},
                "correctAnswer": "B",
                "studyConcepts": ["HIT"],
            }
        )
        assert question is not None
        assert question.correct_answer == "Argatroban"
        assert question.source_type == SourceType.GENERATED
        assert question.concepts == ["HIT"]
        assert question.id

    def test_correct_index(self):
        question = admit_candidate({"question": "Which?", "options": OPTIONS, "correct_index": 2})
        assert question.correct_answer == "Warfarin"

    def test_rejects_unresolvable_key(self):
        assert admit_candidate({"questionText": "Which?", "options": OPTIONS, "correctAnswer": "Dabigatran"}) is None

    def test_rejects_empty_stem(self):
        assert admit_candidate({"questionText": " ", "options": OPTIONS, "correctAnswer": "Heparin"}) is None

    def test_rejects_non_mapping(self):
        assert admit_candidate("not a question") is None

    def test_accepts_raw_candidate_instance(self):
        raw = RawCandidate(stem="Which?", options=OPTIONS, correct_answer="Heparin", type="true-false")
        question = admit_candidate(raw, SourceType.PREFAB, guide_id="g1")
        assert question.type == QuestionType.TRUE_FALSE
        assert question.guide_id == "g1"

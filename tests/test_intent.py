"""
Tests para el clasificador de comandos de turno.

Cubre:
- Comandos de workflow (cancelar, saltar, siguiente, iniciar)
- Detección de preguntas libres
- Texto sin comando → UNKNOWN
"""

import pytest
from rag.query.intent import Intent, IntentClassifier, classify_intent


@pytest.fixture
def classifier():
    """Instancia del clasificador."""
    return IntentClassifier()


class TestCommandClassification:
    """Comandos explícitos."""

    def test_cancel(self, classifier):
        assert classifier.classify("手続きをキャンセルします")["intent"] == Intent.CANCEL

    def test_skip(self, classifier):
        assert classifier.classify("このステップはスキップ")["intent"] == Intent.SKIP

    def test_skip_synonym(self, classifier):
        assert classifier.classify("飛ばす")["intent"] == Intent.SKIP

    def test_next(self, classifier):
        assert classifier.classify("次へ")["intent"] == Intent.NEXT

    def test_start_roadmap(self, classifier):
        result = classifier.classify("ロードマップを見たい")
        assert result["intent"] == Intent.START_ROADMAP
        assert "ロードマップ" in result["matched_keywords"]

    def test_start_step_by_step(self, classifier):
        assert (
            classifier.classify("手続きを始めるのを手伝って")["intent"]
            == Intent.START_STEP_BY_STEP
        )

    def test_bare_command_with_question_mark(self, classifier):
        assert classifier.classify("スキップ？")["intent"] == Intent.SKIP
        assert classifier.classify("キャンセル?")["intent"] == Intent.CANCEL

    @pytest.mark.parametrize(
        "message",
        [
            "手続きが終了するのはいつですか？",
            "スキップできますか？",
            "次へ進むにはどうすればいいですか",
            "中止したら手数料はかかりますか",
        ],
    )
    def test_question_mentioning_command_is_question(self, classifier, message):
        assert classifier.classify(message)["intent"] == Intent.QUESTION

    def test_start_command_wins_over_question(self, classifier):
        """Iniciar un workflow no depende de la forma de la frase."""
        assert (
            classifier.classify("ロードマップを見せてもらえますか？")["intent"]
            == Intent.START_ROADMAP
        )


class TestQuestionDetection:
    def test_question_mark(self, classifier):
        assert classifier.classify("MNP?")["intent"] == Intent.QUESTION

    def test_fullwidth_question_mark(self, classifier):
        assert classifier.classify("予約番号の期限は？")["intent"] == Intent.QUESTION

    def test_question_keyword_without_mark(self, classifier):
        result = classifier.classify("MNPとは")
        assert result["intent"] == Intent.QUESTION
        assert "とは" in result["matched_keywords"]

    def test_plain_input_is_unknown(self, classifier):
        result = classifier.classify("09012345678")
        assert result["intent"] == Intent.UNKNOWN
        assert result["matched_keywords"] == []


def test_convenience_function():
    assert classify_intent("次へ")["intent"] == Intent.NEXT

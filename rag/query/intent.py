"""
Intent Classifier - Clasifica el comando de cada turno de conversación.

Este módulo:
1. Detecta comandos de flujo (cancelar, saltar, siguiente, iniciar workflow)
2. Detecta preguntas libres (terminan en ?/？ o usan palabras interrogativas)
3. Ayuda al orquestador a enrutar el turno: workflow o retrieval
"""

from enum import Enum
from typing import Any, Dict


class Intent(str, Enum):
    """Tipos de comando de un turno"""

    CANCEL = "cancel"  # Abandonar el workflow actual
    SKIP = "skip"  # Saltar el paso actual
    NEXT = "next"  # Avanzar sin input
    START_ROADMAP = "start_roadmap"  # Iniciar la guía resumida
    START_STEP_BY_STEP = "start_step_by_step"  # Iniciar la guía paso a paso
    QUESTION = "question"  # Pregunta libre → retrieval
    UNKNOWN = "unknown"  # Texto libre (input para el paso actual)


# Orden de evaluación: los comandos explícitos ganan sobre "pregunta",
# salvo FLOW_COMMANDS dentro de una pregunta
INTENT_PATTERNS = {
    Intent.CANCEL: ["キャンセル", "やめる", "中止", "終了", "cancel"],
    Intent.SKIP: ["スキップ", "飛ばす", "skip"],
    Intent.NEXT: ["次へ", "進む", "next"],
    Intent.START_ROADMAP: ["ロードマップ", "全体の流れ", "概要を見る", "roadmap"],
    Intent.START_STEP_BY_STEP: [
        "ステップバイステップ",
        "手続きを始める",
        "手続きを開始",
        "ガイドを開始",
        "step by step",
    ],
}

# Comandos que actúan sobre el paso actual
FLOW_COMMANDS = {Intent.CANCEL, Intent.SKIP, Intent.NEXT}

QUESTION_KEYWORDS = [
    "とは",
    "ですか",
    "ますか",
    "でしょうか",
    "教えて",
    "どう",
    "なぜ",
    "いつ",
    "どこ",
    "いくら",
    "何",
    "なに",
]


class IntentClassifier:
    """Clasifica comandos usando keyword matching"""

    def __init__(self):
        self.intent_patterns = INTENT_PATTERNS
        self.question_keywords = QUESTION_KEYWORDS

    def classify(self, message: str) -> Dict[str, Any]:
        """
        Clasifica un mensaje ya normalizado.

        Returns:
            Dict con intent (Intent) y matched_keywords
        """
        text = message.strip().lower()
        question = self.is_question(text)
        bare = text.rstrip("?？").strip()

        for intent, keywords in self.intent_patterns.items():
            # En una pregunta, cancelar/saltar/siguiente solo cuentan si el
            # mensaje es el comando solo ("スキップ？")
            if question and intent in FLOW_COMMANDS:
                matches = [kw for kw in keywords if kw == bare]
            else:
                matches = [kw for kw in keywords if kw in text]
            if matches:
                return {"intent": intent, "matched_keywords": matches}

        if question:
            matches = [kw for kw in self.question_keywords if kw in text]
            return {"intent": Intent.QUESTION, "matched_keywords": matches}

        return {"intent": Intent.UNKNOWN, "matched_keywords": []}

    def is_question(self, text: str) -> bool:
        if text.rstrip().endswith(("?", "？")):
            return True
        return any(kw in text for kw in self.question_keywords)


_classifier_instance = None


def get_classifier() -> IntentClassifier:
    """Obtiene una instancia singleton del clasificador"""
    global _classifier_instance
    if _classifier_instance is None:
        _classifier_instance = IntentClassifier()
    return _classifier_instance


def classify_intent(message: str) -> Dict[str, Any]:
    """Función de conveniencia para clasificar un turno."""
    return get_classifier().classify(message)

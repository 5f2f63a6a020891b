"""
Responder - Genera respuestas usando LLM (Groq API).

Este módulo:
1. Integra con Groq API (cliente asíncrono) para generación de texto
2. Reintenta fallas transitorias con backoff exponencial (1s, 2s, ...)
3. Formatea el system prompt con las FAQ recuperadas
4. Parsea defensivamente la respuesta JSON del modelo
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from groq import (
    APIConnectionError,
    APITimeoutError,
    AsyncGroq,
    InternalServerError,
    RateLimitError,
)

from agent.errors import UpstreamUnavailable
from agent.models import RetrievalResult
from rag.query.retriever import format_context

logger = logging.getLogger(__name__)

# Errores que vale la pena reintentar
TRANSIENT_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    InternalServerError,
    asyncio.TimeoutError,
)

# Acción por defecto cuando la respuesta no se pudo estructurar
DEFAULT_ESCALATION_ACTION = {
    "type": "escalation",
    "label": "オペレーターに相談",
    "value": "escalate",
    "style": "danger",
}


class EmptyCompletion(Exception):
    """El modelo devolvió contenido vacío."""


class GroqResponder:
    """Proveedor de completions sobre Groq con reintentos."""

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        client: Optional[AsyncGroq] = None,
    ):
        """
        Inicializa el responder con el cliente Groq.

        Args:
            api_key: API key de Groq (requerida si no se pasa client)
            model: Modelo a usar (default: llama-3.3-70b-versatile)
            timeout_seconds: Timeout por intento
            max_retries: Intentos totales ante fallas transitorias
            base_delay: Espera inicial del backoff (se duplica por intento)
        """
        if client is None and not api_key:
            raise ValueError(
                "GROQ_API_KEY no encontrada. "
                "Crea un archivo .env con tu API key de https://console.groq.com/keys"
            )

        self.client = client or AsyncGroq(api_key=api_key)
        self.model = model or "llama-3.3-70b-versatile"
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

        logger.info(f"Groq Responder inicializado (modelo: {self.model})")

    async def complete(
        self,
        system_context: str,
        user_prompt: str,
        max_tokens: int = 1024,
        temperature: float = 0.5,
    ) -> str:
        """
        Pide una completion al modelo.

        Raises:
            UpstreamUnavailable: si se agotan los reintentos o el error no es
                transitorio.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                completion = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        messages=[
                            {"role": "system", "content": system_context},
                            {"role": "user", "content": user_prompt},
                        ],
                        model=self.model,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        response_format={"type": "json_object"},
                    ),
                    timeout=self.timeout_seconds,
                )
                content = completion.choices[0].message.content
                if not content:
                    raise EmptyCompletion("Respuesta vacía del modelo")

                if completion.usage:
                    logger.info(
                        f"Groq OK (intento {attempt}, "
                        f"tokens={completion.usage.total_tokens})"
                    )
                return content

            except (*TRANSIENT_ERRORS, EmptyCompletion) as e:
                last_error = e
                will_retry = attempt < self.max_retries
                logger.warning(
                    f"Groq falló (intento {attempt}/{self.max_retries}): "
                    f"{type(e).__name__}: {e}. Reintenta: {will_retry}"
                )
                if will_retry:
                    await asyncio.sleep(self.base_delay * 2 ** (attempt - 1))

            except Exception as e:
                logger.error(f"Error no transitorio de Groq: {e}")
                raise UpstreamUnavailable(f"Completion falló: {e}") from e

        raise UpstreamUnavailable(
            f"Completion falló tras {self.max_retries} intentos: {last_error}"
        )


# Prompting


def build_system_prompt(
    results: List[RetrievalResult], session: Dict[str, Any]
) -> str:
    """Construye el system prompt con el estado de la sesión y las FAQ."""
    return f"""あなたは携帯電話番号ポータビリティ（MNP）の手続きをサポートするアシスタントです。

ルール:
1. 参考情報（FAQ）を優先して、丁寧な日本語で簡潔に回答してください。
2. 情報が不足している場合は推測せず、その旨を伝えてオペレーターへの相談を提案してください。
3. 料金や期限などの数値は参考情報にあるものだけを使ってください。

## 現在のユーザー状況
- 現在のステップ: {session.get("current_step") or "初期"}
- 現在のキャリア: {session.get("current_carrier") or "未設定"}
- 移行先キャリア: {session.get("target_carrier") or "未設定"}

## 参考情報（FAQ検索結果）
{format_context(results)}

## 応答形式
以下のJSON形式で応答してください：
{{
  "message": "ユーザーへの応答メッセージ",
  "suggestions": ["提案1", "提案2", "提案3"],
  "actions": [{{"type": "button|link|escalation", "label": "ラベル", "value": "値", "url": "URL（linkの場合）"}}],
  "needsEscalation": false,
  "confidence": 0.0
}}"""


def parse_response(raw: str) -> Dict[str, Any]:
    """
    Parsea la respuesta JSON del modelo.

    Si no es JSON válido (o no trae "message"), el texto crudo se usa como
    respuesta y se adjunta la acción de escalamiento por defecto.
    """
    try:
        # Limpiar posible markdown
        clean = raw.strip().strip("`").strip()
        if clean.startswith("json"):
            clean = clean[4:].strip()

        data = json.loads(clean)
        if not isinstance(data, dict) or not str(data.get("message", "")).strip():
            raise ValueError("JSON sin campo 'message'")

        confidence = data.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None

        actions = [
            a
            for a in data.get("actions") or []
            if isinstance(a, dict) and a.get("label") and a.get("value")
        ]
        return {
            "message": str(data["message"]).strip(),
            "suggestions": [str(s) for s in data.get("suggestions") or []][:5],
            "actions": actions,
            "needs_escalation": bool(data.get("needsEscalation", False)),
            "confidence": confidence,
            "structured": True,
        }

    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"No se pudo parsear respuesta del LLM ({e}): {raw[:200]}")
        return {
            "message": raw.strip(),
            "suggestions": ["詳細を教えてください", "オペレーターに相談する"],
            "actions": [dict(DEFAULT_ESCALATION_ACTION)],
            "needs_escalation": False,
            "confidence": None,
            "structured": False,
        }

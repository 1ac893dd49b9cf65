"""
Structured Extraction Client
Calls the LLM with a fixed JSON Schema and returns a validated object, or
raises a typed error for refusals, unparseable output and transport failures.
"""

import json
from typing import Optional, Dict, Any, Type, TypeVar

from pydantic import BaseModel, ValidationError
from langchain_core.messages import SystemMessage, HumanMessage
from langchain_openai import ChatOpenAI
from langchain_google_genai import ChatGoogleGenerativeAI

from ap_recon.exceptions import (
    ExtractionError,
    ExtractionRefusalError,
    ExtractionParseError,
    ExtractionTransportError,
)
from ap_recon.utils.logging import setup_logging
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_llm():
    """Get LLM instance based on provider."""
    config.require_llm_credentials()
    if config.LLM_PROVIDER == "gemini":
        return ChatGoogleGenerativeAI(
            model=config.LLM_MODEL,
            google_api_key=config.GOOGLE_API_KEY,
            temperature=0,
            timeout=config.LLM_TIMEOUT,
            max_retries=config.LLM_MAX_RETRIES,
            response_mime_type="application/json",
        )
    else:
        return ChatOpenAI(
            model=config.LLM_MODEL,
            api_key=config.LLM_API_KEY,
            base_url=config.LLM_API_BASE,
            temperature=0,
            timeout=config.LLM_TIMEOUT,
            max_retries=config.LLM_MAX_RETRIES,
        )


def _message_text(content: Any) -> str:
    """Flatten message content; some providers return a list of parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


class StructuredExtractor:
    """
    Prompt + JSON Schema in, validated pydantic object out.

    Three failure modes stay distinct: ExtractionRefusalError when the model
    refuses, ExtractionParseError when the answer is not schema-conformant
    JSON, ExtractionTransportError for network/timeout/API errors. Nothing is
    coerced into an empty result.
    """

    def __init__(self, llm=None, provider: Optional[str] = None, system_prompt: Optional[str] = None):
        self._llm = llm
        self.provider = provider or config.LLM_PROVIDER
        self.system_prompt = system_prompt or config.LLM_SYSTEM_PROMPT

    @property
    def llm(self):
        if self._llm is None:
            self._llm = get_llm()
        return self._llm

    def _bind_schema(self, schema: Dict[str, Any], schema_name: str, strict: bool):
        if self.provider == "gemini":
            # JSON mode is set on the client; the prompt carries the shape
            return self.llm
        return self.llm.bind(
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "schema": schema,
                    "strict": strict,
                },
            }
        )

    async def extract(
        self,
        prompt: str,
        schema: Dict[str, Any],
        response_model: Type[ModelT],
        schema_name: str,
        strict: bool = True,
    ) -> ModelT:
        """Run one structured extraction call."""
        runnable = self._bind_schema(schema, schema_name, strict)
        messages = [
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=prompt),
        ]

        logger.info(f"[Extraction] Calling {self.provider} with {len(prompt)} character prompt")

        try:
            response = await runnable.ainvoke(messages)
        except ExtractionError:
            raise
        except Exception as e:
            # Provider SDKs raise their own error hierarchies
            logger.error(f"[Extraction] Transport error: {e}")
            raise ExtractionTransportError(f"LLM request failed: {e}") from e

        if response is None:
            raise ExtractionParseError("No message returned from model")

        refusal = (getattr(response, "additional_kwargs", None) or {}).get("refusal")
        if refusal:
            logger.error(f"[Extraction] Model refused: {refusal}")
            raise ExtractionRefusalError(f"Model refused to generate response: {refusal}")

        text = _message_text(getattr(response, "content", None)).strip()
        if not text:
            raise ExtractionParseError("No content returned from model")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"[Extraction] Invalid JSON: {e}")
            raise ExtractionParseError(f"Model returned invalid JSON: {e.msg}") from e

        try:
            result = response_model.model_validate(data)
        except ValidationError as e:
            logger.error(f"[Extraction] Response failed schema validation: {e.error_count()} error(s)")
            raise ExtractionParseError(f"Response does not match {schema_name}: {e.errors()[0]['msg']}") from e

        logger.info(f"[Extraction] Received structured {schema_name}")
        return result

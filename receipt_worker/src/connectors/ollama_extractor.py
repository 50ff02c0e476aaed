import base64
from typing import Any, Callable, Dict, List, Optional, Type

import httpx
from langchain_core.messages import HumanMessage
from langchain_ollama import ChatOllama
from loguru import logger
from pydantic import BaseModel

from ..config import Config
from ..errors import ExtractionError
from ..processing.schema import validate_items
from ..utils import TextUtils
from ..utils.json_utils import extract_first_json

BASE_PROMPT = (
    "You are a document data extraction engine. Read the attached document image and "
    "return every logical item you find as JSON matching the provided schema. "
    "Use null for values that are not present; never invent data. "
    "If the document contains nothing to extract, return an empty items list."
)


def build_response_schema(item_schema: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap the item schema in an `items` array; structured output needs an object root."""
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": item_schema,
                "description": "One entry per logical item found in the document.",
            }
        },
        "required": ["items"],
    }


def build_prompt(prompt_instructions: Optional[str] = None, existing_tags: Optional[List[str]] = None) -> str:
    prompt = BASE_PROMPT
    if prompt_instructions:
        prompt += f"\n\nINSTRUCTIONS:\n{prompt_instructions}"
    if existing_tags:
        prompt += (
            f"\n\nEXISTING DOCUMENT TAGS:\nThe document already has these tags: [{', '.join(existing_tags)}]\n"
            "Do not repeat them; suggest complementary ones only."
        )
    return prompt


def _default_chat_factory(response_schema: Dict[str, Any]) -> ChatOllama:
    return ChatOllama(
        model=Config.OLLAMA_MODEL,
        base_url=Config.OLLAMA_URL,
        temperature=0,
        format=response_schema,
        client_kwargs={"timeout": Config.OLLAMA_TIMEOUT},
    )


class OllamaExtractor:
    """Structured extraction from document images with a vision model served by Ollama."""

    def __init__(self, chat_factory: Optional[Callable[[Dict[str, Any]], Any]] = None):
        self.chat_factory = chat_factory or _default_chat_factory

    def extract(
        self,
        image_bytes: bytes,
        json_schema: Dict[str, Any],
        prompt_instructions: Optional[str] = None,
        existing_tags: Optional[List[str]] = None,
        validator: Optional[Type[BaseModel]] = None,
    ) -> List[Dict[str, Any]]:
        """Return the extracted items; an empty list means the document held nothing to extract."""
        if not image_bytes:
            raise ExtractionError("No image data to extract from")

        encoded = base64.b64encode(image_bytes).decode("ascii")
        message = HumanMessage(
            content=[
                {"type": "text", "text": build_prompt(prompt_instructions, existing_tags)},
                {"type": "image_url", "image_url": f"data:image/jpeg;base64,{encoded}"},
            ]
        )
        model = self.chat_factory(build_response_schema(json_schema))

        logger.info(f"[extract] sending {len(image_bytes) / 1024:.1f} KB image to {Config.OLLAMA_MODEL}")
        try:
            response = model.invoke([message])
        except (httpx.HTTPError, ConnectionError, TimeoutError, ValueError) as exc:
            raise ExtractionError(f"Model call failed: {exc}") from exc

        content = response.content if isinstance(response.content, str) else str(response.content)
        logger.debug(f"[extract] raw output: {TextUtils.truncate_text(content, Config.LOG_LLM_OUTPUT_MAX)}")

        payload = extract_first_json(content)
        if payload is None:
            raise ExtractionError(
                f"Model output is not valid JSON: {TextUtils.truncate_text(content, Config.LOG_ERROR_MAX)}"
            )

        if validator is None:
            if isinstance(payload, dict) and isinstance(payload.get("items"), list):
                return payload["items"]
            return payload if isinstance(payload, list) else [payload]
        return validate_items(validator, payload)

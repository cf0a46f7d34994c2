import os
import json
import re
import asyncio
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from google import genai
from google.genai import types

from citybrief.utils.error_monitoring import CityBriefError, ClassifierMalformedOutputError


DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent.parent / "config" / "prompts.yaml"


@dataclass
class AIResponse:
    content: Any
    prompt_key: str
    model: str
    temperature: float
    success: bool = True
    error_message: Optional[str] = None


class AIServiceError(CityBriefError):
    pass


class AIService:
    """
    Gemini client for the newsletter classifiers using the Google GenAI API.

    Prompts and temperatures come from ``config/prompts.yaml``. Every call asks
    for a JSON object; output that is not one raises
    ClassifierMalformedOutputError so callers can degrade per item.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        prompts_path: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise AIServiceError("Gemini API key required. Set GEMINI_API_KEY or pass api_key parameter.")

        self.client = genai.Client(api_key=self.api_key)

        self.prompts_path = prompts_path or str(DEFAULT_PROMPTS_PATH)
        self.prompts = self._load_prompts()

        params = self.prompts.get("parameters", {}) if isinstance(self.prompts, dict) else {}
        model_cfg = params.get("gemini", {}) if isinstance(params, dict) else {}
        self.model = model or os.getenv("GEMINI_MODEL") or model_cfg.get("model", "gemini-2.5-flash")

        temps_cfg = params.get("temperatures", {}) if isinstance(params, dict) else {}
        self.temperatures: Dict[str, float] = {
            "news_classification": float(temps_cfg.get("news", 0.3)),
            "event_category": float(temps_cfg.get("event_category", 0.1)),
            "sports_summary": float(temps_cfg.get("sports_summary", 0.5)),
            "match_extraction": float(temps_cfg.get("match_extraction", 0.3)),
        }
        tokens_cfg = params.get("max_tokens", {}) if isinstance(params, dict) else {}
        self.max_tokens: Dict[str, int] = {
            "news_classification": int(tokens_cfg.get("news", 400)),
            "event_category": int(tokens_cfg.get("event_category", 50)),
            "sports_summary": int(tokens_cfg.get("sports_summary", 300)),
            "match_extraction": int(tokens_cfg.get("match_extraction", 300)),
        }

        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)

    def _load_prompts(self) -> Dict[str, Any]:
        """Load prompts from YAML configuration file."""
        try:
            with open(self.prompts_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise AIServiceError(f"Prompts file not found at {self.prompts_path}") from e
        except yaml.YAMLError as e:
            raise AIServiceError(f"Error parsing YAML at {self.prompts_path}: {e}") from e

    async def test_connection(self) -> bool:
        """Ping the API to validate connectivity and key."""
        try:
            self.logger.info("🔍 Testing AI service connection...")
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents="ping",
                config=types.GenerateContentConfig(max_output_tokens=20)
            )
            return bool(getattr(response, "text", None))
        except Exception as e:
            self.logger.error(f"❌ AI service test connection failed: {e}")
            self.logger.error(f"   Model: {self.model}")
            return False

    def _format_prompt(self, prompt_key: str, context: Dict[str, Any]) -> List[Dict]:
        """Construct messages array from prompt templates and context."""
        cfg = self.prompts.get(prompt_key)
        if not cfg:
            raise AIServiceError(f"Prompt '{prompt_key}' missing from {self.prompts_path}")

        master_persona = self.prompts.get("master_persona", "")
        system_text = (master_persona + "\n" + cfg.get("system", "")).strip()
        template = cfg.get("template", "")

        try:
            user_text = template.format(**context)
        except (KeyError, IndexError, ValueError):
            user_text = template + "\n\nContext JSON:\n" + json.dumps(context, ensure_ascii=False)

        return [
            {"role": "system", "content": system_text},
            {"role": "user", "content": user_text},
        ]

    async def _call_gemini(self, messages: List[Dict], temperature: float, max_tokens: int) -> str:
        """Call Gemini and return the raw text of the first candidate."""
        system_instruction = None
        contents = []
        for msg in messages:
            if msg.get("role") == "system":
                system_instruction = msg["content"]
            else:
                contents.append(msg["content"])

        config_params: Dict[str, Any] = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
            "response_mime_type": "application/json",
        }
        if system_instruction:
            config_params["system_instruction"] = system_instruction

        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=types.GenerateContentConfig(**config_params),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise AIServiceError(f"Gemini API call timed out after {self.timeout_seconds:.0f} seconds")

        try:
            text = response.text
        except ValueError:
            text = None
        return text or ""

    @staticmethod
    def _parse_json_object(text: str) -> Dict[str, Any]:
        cleaned = text.strip()
        # Strip ```json fences some models still emit
        fence = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
        if fence:
            cleaned = fence.group(1)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise ClassifierMalformedOutputError(f"Classifier returned non-JSON output: {e}", raw_output=text) from e
        if not isinstance(parsed, dict):
            raise ClassifierMalformedOutputError("Classifier output is not a JSON object", raw_output=text)
        return parsed

    async def generate_json(self, prompt_key: str, context: Dict[str, Any]) -> AIResponse:
        """
        Run one prompt and parse its JSON object.

        Raises:
            AIServiceError: API failure or timeout
            ClassifierMalformedOutputError: response is not a JSON object
        """
        messages = self._format_prompt(prompt_key, context)
        temperature = self.temperatures.get(prompt_key, 0.3)
        max_tokens = self.max_tokens.get(prompt_key, 300)

        text = await self._call_gemini(messages, temperature, max_tokens)
        content = self._parse_json_object(text)

        return AIResponse(
            content=content,
            prompt_key=prompt_key,
            model=self.model,
            temperature=temperature,
        )

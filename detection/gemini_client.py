"""Gemini AI client for semantic detection and ground truth extraction."""

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
import asyncio
from functools import partial

from detection.errors import BackendTimeout, BackendUnavailable, MalformedResponse
from logger import log_debug, log_info, log_warning


# Supported Gemini models
SUPPORTED_MODELS = [
    "gemini-2.5-pro-exp-03-25",  # Gemini 2.5 Pro (Experimental, March 2025)
    "gemini-2.0-flash-exp",       # Gemini 2.0 Flash (Experimental)
    "gemini-1.5-pro",             # Gemini 1.5 Pro (Stable)
    "gemini-1.5-flash",           # Gemini 1.5 Flash (Stable)
]


class GeminiClient:
    """Client for Google Gemini API answering in JSON."""

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash",
                 temperature: float = 0.1, max_tokens: int = 1024):
        """
        Initialize Gemini client.

        Args:
            api_key: Google API key
            model: Gemini model name
            temperature: Sampling temperature, kept low for repeatable labels
            max_tokens: Output token ceiling

        Raises:
            ValueError: If API key is missing
        """
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required")

        if model not in SUPPORTED_MODELS:
            log_warning(f"Model '{model}' is not in the supported models list, API calls may fail",
                        model=model, supported_models=SUPPORTED_MODELS)

        genai.configure(api_key=api_key)
        self.model_name = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        log_info("Gemini client initialized", model=model)

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """
        Generate a JSON answer with a native system instruction.

        Returns:
            Raw response text

        Raises:
            BackendTimeout: If the API deadline was exceeded
            BackendUnavailable: On any other API failure
            MalformedResponse: If the response carries no text (e.g. blocked)
        """
        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt
        )
        generation_config = genai.types.GenerationConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
            response_mime_type="application/json",
        )
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                partial(
                    model.generate_content,
                    user_prompt,
                    generation_config=generation_config
                )
            )
        except google_exceptions.DeadlineExceeded as e:
            raise BackendTimeout(f"Gemini API timeout: {e}") from e
        except Exception as e:
            raise BackendUnavailable(f"Gemini API Error: {str(e)}") from e

        try:
            answer = response.text.strip()
        except ValueError as e:
            raise MalformedResponse(f"Gemini returned no text: {e}") from e

        log_debug("Gemini response generated", model=self.model_name, chars=len(answer))
        return answer

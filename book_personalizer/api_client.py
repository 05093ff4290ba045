import os
import json
import requests
from loguru import logger
from typing import Dict, Any, Optional, List, Sequence
from dotenv import load_dotenv

from .exceptions import ConfigurationError, EmptyResponseError, GenerationAPIError
from .image_processor import guess_mime_type, strip_data_uri

API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"


class APIClient:
    """Thin blocking client for Gemini's REST ``generateContent`` endpoints."""

    def __init__(self, generation_settings: Optional[Dict[str, Any]] = None, api_key: Optional[str] = None):
        """Initialize the API client with generation-specific configuration."""
        # Load environment variables
        load_dotenv()

        self.generation_settings = generation_settings or {}

        # Environment wins over the config file for model selection
        self.model = os.getenv('GEMINI_IMAGE_MODEL', self.generation_settings.get('image_model', DEFAULT_IMAGE_MODEL))
        self.text_model = os.getenv('GEMINI_TEXT_MODEL', self.generation_settings.get('text_model', DEFAULT_TEXT_MODEL))
        self.timeout = self.generation_settings.get('request_timeout', 120)

        # Load debug settings from environment variables
        self.debug_enable_prompt = os.getenv('DEBUG_ENABLE_PROMPT', 'false').lower() == 'true'
        self.debug_enable_response = os.getenv('DEBUG_ENABLE_RESPONSE', 'false').lower() == 'true'
        self.debug_verbose_level = int(os.getenv('DEBUG_VERBOSE_LEVEL', '1'))

        self.api_key = api_key or self._initialize_api_key()

    def _initialize_api_key(self) -> str:
        """Initialize and validate the API key."""
        api_key = os.getenv("GEMINI_API_KEY")

        if not api_key:
            raise ConfigurationError("API key not found. Please set it as GEMINI_API_KEY environment variable.")

        if len(api_key) < 10:
            raise ConfigurationError("API key appears to be invalid. Please check your API key format.")

        if not api_key.startswith("AI") and not (len(api_key) > 30):
            logger.warning("API key doesn't match typical Google Gemini API key format. This might cause authentication issues.")

        return api_key

    def get_api_url(self, model_name: Optional[str] = None, stream: bool = False) -> str:
        """Get the API URL for the specified model."""
        model = model_name or self.model
        if stream:
            return f"{API_BASE_URL}/{model}:streamGenerateContent?alt=sse"
        return f"{API_BASE_URL}/{model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key
        }

    def build_request(self, prompt: str, images: Sequence[str], modalities: Sequence[str]) -> Dict[str, Any]:
        """Request body with the images first (in order) and the prompt last."""
        parts = [
            {"inlineData": {"mimeType": guess_mime_type(image), "data": strip_data_uri(image)}}
            for image in images
        ]
        parts.append({"text": prompt})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": list(modalities)}
        }

    def make_request(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Make an API request with proper error handling."""
        if self.debug_enable_prompt:
            self._log_prompt_debug(data)

        try:
            response = requests.post(url, headers=self._headers(), json=data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise GenerationAPIError(f"API request timed out: {str(e)}") from e
        except requests.exceptions.RequestException as e:
            raise GenerationAPIError(f"API request failed (network error): {str(e)}") from e

        if response.status_code != 200:
            self._handle_error_response(response)

        try:
            response_json = response.json()
        except ValueError as e:
            raise GenerationAPIError(f"API returned invalid JSON: {str(e)}", status_code=response.status_code) from e

        if self.debug_enable_response:
            self._log_response_debug(response_json)

        return response_json

    def _handle_error_response(self, response: requests.Response) -> None:
        """Raise a GenerationAPIError carrying the HTTP status."""
        if response.status_code == 403:
            error_msg = "API request failed with status code 403: Authentication failed. Please verify your API key has the correct permissions for this API and model."
        else:
            error_msg = f"API request failed with status code {response.status_code}"

        try:
            error_json = response.json()
            if isinstance(error_json, dict) and 'error' in error_json:
                error_msg = f"API request failed with status code {response.status_code}: {error_json['error'].get('message', '')}"
        except ValueError:
            error_msg = f"{error_msg}: {response.text[:200]}"

        raise GenerationAPIError(error_msg, status_code=response.status_code)

    # --- Generation --- #

    def generate_image(self, prompt: str, images: Sequence[str]) -> str:
        """Single non-streaming image generation; returns base64 image data."""
        data = self.build_request(prompt, images, ["IMAGE"])
        response = self.make_request(self.get_api_url(self.model), data)
        extracted = self._extract_images_from_response(response)
        if not extracted:
            raise EmptyResponseError("No image data returned from Gemini API")
        return extracted[0]

    def stream_image(self, prompt: str, images: Sequence[str]) -> str:
        """Streaming image generation; returns the first image chunk received."""
        data = self.build_request(prompt, images, ["IMAGE"])
        if self.debug_enable_prompt:
            self._log_prompt_debug(data)

        url = self.get_api_url(self.model, stream=True)
        try:
            with requests.post(url, headers=self._headers(), json=data, timeout=self.timeout, stream=True) as response:
                if response.status_code != 200:
                    self._handle_error_response(response)

                for line in response.iter_lines(decode_unicode=True):
                    if not line or not line.startswith("data:"):
                        continue
                    try:
                        chunk = json.loads(line[len("data:"):].strip())
                    except ValueError:
                        logger.debug("Skipping undecodable stream chunk")
                        continue
                    images_found = self._extract_images_from_response(chunk)
                    if images_found:
                        return images_found[0]
        except requests.exceptions.Timeout as e:
            raise GenerationAPIError(f"Streaming request timed out: {str(e)}") from e
        except requests.exceptions.RequestException as e:
            raise GenerationAPIError(f"Streaming request failed (network error): {str(e)}") from e

        raise EmptyResponseError("Stream ended without image data")

    def generate_text(self, prompt: str, images: Sequence[str] = ()) -> str:
        """Text-modality call (used for page and cover analysis)."""
        data = self.build_request(prompt, images, ["TEXT"])
        response = self.make_request(self.get_api_url(self.text_model), data)

        texts = []
        for candidate in response.get('candidates', []):
            for part in candidate.get('content', {}).get('parts', []):
                if part.get('text'):
                    texts.append(part['text'])
        if not texts:
            raise EmptyResponseError("No text returned from Gemini API")
        return "".join(texts)

    def _extract_images_from_response(self, response: Optional[Dict[str, Any]]) -> List[str]:
        """Extracts base64 image data from a response or stream chunk."""
        images = []
        if not response:
            return images
        for candidate in response.get('candidates', []):
            content = candidate.get('content') or {}
            for part in content.get('parts', []):
                inline = part.get('inlineData') or part.get('inline_data')
                if inline and inline.get('data'):
                    images.append(inline['data'])
        return images

    # --- Debugging --- #

    def _log_prompt_debug(self, data: Dict[str, Any]) -> None:
        """Log prompt debugging information."""
        logger.info("===== PROMPT DEBUGGING =====")
        for i, part in enumerate(data['contents'][0]['parts']):
            if 'text' in part:
                logger.info(f"PROMPT TEXT PART {i}:\n{part['text']}\n")
            elif 'inlineData' in part:
                logger.info(f"PROMPT PART {i}: [INLINE DATA - {part['inlineData']['mimeType']}, length {len(part['inlineData']['data'])}]")
        logger.info("===== END PROMPT DEBUGGING =====")

    def _log_response_debug(self, response_json: Dict[str, Any]) -> None:
        """Log response debugging information."""
        logger.info("===== RESPONSE DEBUGGING =====")
        candidates = response_json.get('candidates')
        if not candidates:
            logger.warning("No candidates found in response")
        for idx, candidate in enumerate(candidates or []):
            parts = (candidate.get('content') or {}).get('parts', [])
            logger.info(f"Candidate {idx + 1}: {len(parts)} part(s), finishReason={candidate.get('finishReason')}")
            for part_idx, part in enumerate(parts):
                if 'text' in part and self.debug_verbose_level >= 2:
                    text_preview = part['text'][:100] + "..." if len(part['text']) > 100 else part['text']
                    logger.info(f"  Part {part_idx + 1} text preview: {text_preview}")
                if 'inlineData' in part:
                    mime_type = part['inlineData'].get('mimeType', 'unknown')
                    data_length = len(part['inlineData'].get('data', ''))
                    logger.info(f"  Part {part_idx + 1} inline data: {mime_type}, length: {data_length}")
                    if data_length == 0:
                        logger.error(f"  Empty image data detected! MIME type is {mime_type} but data length is 0")
        if self.debug_verbose_level >= 2:
            logger.info(f"Full response structure: {json.dumps(response_json, indent=2, default=str)[:500]}...")
        logger.info("===== END RESPONSE DEBUGGING =====")

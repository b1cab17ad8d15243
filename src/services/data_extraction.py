"""
Data Extraction Service.

Turns a call transcript plus the owner's extraction field definitions
into a mapping of field name -> extracted value using a single LLM
chat-completion call. Any field the model cannot find is reported as
the literal sentinel ``"Not Found"``.

Two modes live here:

* ``FieldExtractor`` (primary): N user-defined fields, AI only. With no
  backend configured every field is ``"Not Found"``.
* ``DoctorInfoExtractor`` (compatibility shim for the original fixed
  five-field "doctor info" dashboards): AI first, with a regex/heuristic
  fallback when the backend is missing or fails.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Sequence

import httpx

from src.config import Settings, get_settings
from src.exceptions import ExtractionError
from src.logging_config import get_logger
from src.schemas.extraction import LEGACY_DOCTOR_FIELDS, NOT_FOUND, FieldDescriptor

logger = get_logger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

# Models that accept response_format={"type": "json_object"}
JSON_MODE_MODELS = ("gpt-3.5-turbo-1106", "gpt-4-turbo", "gpt-4o", "gpt-4-1106", "gpt-4.1")

CUSTOM_FIELDS_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Extract structured information from call "
    "transcripts and return only valid JSON. If information is not found, always use "
    f'the exact string "{NOT_FOUND}".'
)

CUSTOM_FIELDS_PROMPT = """Extract the following information from this call transcript. Return ONLY a valid JSON object with the exact keys shown below. If any information is not found in the transcript, use the exact string "{not_found}".

Required JSON format:
{json_structure}

Field extraction instructions:
{field_instructions}

IMPORTANT:
- For each field, carefully read the transcript and extract the relevant information based on the instruction
- If the information is not present in the transcript, use exactly "{not_found}" (not an empty string, not null)
- Return only the JSON object, no additional text or explanation

Transcript:
{transcript}

Return only the JSON object:"""

DOCTOR_INFO_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Extract structured information from call "
    "transcripts and return only valid JSON. Always return a JSON object with the exact "
    "keys: doctor_name, clinic_hospital_name, phone_number, email_id, city."
)

DOCTOR_INFO_PROMPT = """Extract the following information from this call transcript. Return ONLY a valid JSON object with the exact keys shown below. If any information is not found, use an empty string "".

Required JSON format:
{{
  "doctor_name": "",
  "clinic_hospital_name": "",
  "phone_number": "",
  "email_id": "",
  "city": ""
}}

Instructions:
- doctor_name: Extract the full name of the doctor (e.g., "Dr. John Smith" or "John Smith")
- clinic_hospital_name: Extract the name of the clinic, hospital, or medical center
- phone_number: Extract any phone number mentioned (include country code if present)
- email_id: Extract any email address mentioned
- city: Extract the city name where the clinic/hospital is located

Transcript:
{transcript}

Return only the JSON object, no additional text or explanation:"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class OpenAIChatBackend:
    """Calls OpenAI chat completions over httpx and returns the message text."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._http = http_client

    @property
    def supports_json_mode(self) -> bool:
        return any(name in self.model for name in JSON_MODE_MODELS)

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int = 1000) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.3,
            "max_tokens": max_tokens,
        }
        if self.supports_json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            if self._http is not None:
                response = await self._http.post(OPENAI_CHAT_URL, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(OPENAI_CHAT_URL, headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except httpx.HTTPStatusError as e:
            raise ExtractionError(
                f"OpenAI returned {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionError(f"OpenAI request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ExtractionError(f"Unexpected OpenAI response shape: {e}") from e


def build_backend(settings: Settings | None = None) -> OpenAIChatBackend | None:
    """Return the configured extraction backend, or None when AI is disabled."""
    settings = settings or get_settings()
    if not settings.extraction_backend_enabled:
        return None
    return OpenAIChatBackend(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.openai_timeout_seconds,
    )


def parse_json_object(content: str) -> dict[str, Any]:
    """
    Parse the model's reply into a JSON object.

    Tolerates markdown code fences and leading/trailing prose by falling
    back to the outermost ``{...}`` block.
    """
    cleaned = _FENCE_RE.sub("", (content or "").strip())

    try:
        parsed = json.loads(cleaned)
    except ValueError:
        match = _OBJECT_RE.search(content or "")
        if not match:
            raise ExtractionError("Failed to parse extraction response as JSON")
        try:
            parsed = json.loads(match.group(0))
        except ValueError as e:
            raise ExtractionError("Failed to parse extraction response as JSON") from e

    if not isinstance(parsed, dict):
        raise ExtractionError("Extraction response is not a JSON object")
    return parsed


def sanitize_custom_value(value: Any) -> str:
    if not isinstance(value, str):
        return NOT_FOUND
    return value.strip() or NOT_FOUND


def not_found_for(fields: Sequence[FieldDescriptor]) -> dict[str, str]:
    return {field.name: NOT_FOUND for field in fields}


def has_meaningful_data(values: dict[str, str]) -> bool:
    """True when at least one field was actually found."""
    return any(value != NOT_FOUND for value in values.values())


class FieldExtractor:
    """Extracts owner-defined fields from a transcript."""

    def __init__(self, backend: OpenAIChatBackend | None) -> None:
        self.backend = backend

    async def extract(self, transcript: Any, fields: Sequence[FieldDescriptor]) -> dict[str, str]:
        """
        Extract every field in ``fields`` from ``transcript``.

        Returns exactly one entry per field, each either a non-empty
        trimmed string or ``"Not Found"``.

        Raises:
            ExtractionError: the backend call failed or its reply could
                not be parsed. No partial result is returned.
        """
        if not fields:
            return {}

        if not isinstance(transcript, str) or not transcript.strip():
            return not_found_for(fields)

        if self.backend is None:
            logger.debug("extraction_backend_disabled", fields=len(fields))
            return not_found_for(fields)

        prompt = build_custom_fields_prompt(transcript, fields)
        content = await self.backend.complete(CUSTOM_FIELDS_SYSTEM_PROMPT, prompt, max_tokens=1000)
        extracted = parse_json_object(content)

        result = {field.name: sanitize_custom_value(extracted.get(field.name)) for field in fields}

        logger.info(
            "extraction_complete",
            fields_requested=len(fields),
            fields_found=sum(1 for v in result.values() if v != NOT_FOUND),
        )
        return result


def build_custom_fields_prompt(transcript: str, fields: Sequence[FieldDescriptor]) -> str:
    json_structure = json.dumps({field.name: "" for field in fields}, indent=2)
    field_instructions = "\n".join(f"- {field.name}: {field.instruction}" for field in fields)
    return CUSTOM_FIELDS_PROMPT.format(
        not_found=NOT_FOUND,
        json_structure=json_structure,
        field_instructions=field_instructions,
        transcript=transcript,
    )


# ── Legacy fixed five-field mode ─────────────────────────────────

_NAME = r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"

DOCTOR_NAME_PATTERNS = [
    re.compile(rf"\b(?i:doctor|dr)\.?\s+({_NAME})"),
    re.compile(rf"\b(?i:i am|i'm|my name is|this is)\s+({_NAME})"),
    re.compile(rf"\b(?i:name)\s*[:\s]\s*({_NAME})"),
]

CLINIC_NAME_PATTERNS = [
    re.compile(r"\b(?i:clinic|hospital|medical center|health center)\s*:\s*([A-Z][A-Za-z&']*(?:\s+[A-Z][A-Za-z&']*){0,4})"),
    re.compile(r"((?:[A-Z][A-Za-z&']+\s+){1,4}(?i:clinic|hospital|medical center|health center))\b"),
]

PHONE_PATTERNS = [
    re.compile(r"(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}"),
    re.compile(r"(?:\+91[-.\s]?)?[6-9]\d{9}"),
]

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

CITY_PATTERNS = [
    re.compile(r"\b(?i:city|located in|based in)\s*[:\s]\s*([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+){0,2})"),
    re.compile(r"\b(?:in|at)\s+([A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+){0,2})(?=,|\s+(?i:city)\b)"),
]

COMMON_CITIES = [
    "mumbai", "delhi", "bangalore", "hyderabad", "chennai", "kolkata",
    "pune", "ahmedabad", "jaipur", "surat", "lucknow", "kanpur",
    "nagpur", "indore", "thane", "bhopal", "visakhapatnam", "patna",
    "vadodara", "ghaziabad", "ludhiana", "agra", "nashik", "faridabad",
    "meerut", "rajkot", "varanasi", "srinagar", "amritsar", "new york",
    "los angeles", "chicago", "houston", "phoenix", "philadelphia",
    "san antonio", "san diego", "dallas", "san jose", "austin",
]


def empty_doctor_info() -> dict[str, str]:
    return {key: "" for key in LEGACY_DOCTOR_FIELDS}


def has_valid_doctor_info(values: dict[str, str]) -> bool:
    return any(value and value.strip() for value in values.values())


def _first_group(patterns: list[re.Pattern[str]], text: str, min_length: int = 3) -> str:
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = match.group(1).strip()
            if len(value) >= min_length:
                return value
    return ""


def extract_doctor_name(text: str) -> str:
    return _first_group(DOCTOR_NAME_PATTERNS, text)


def extract_clinic_name(text: str) -> str:
    return _first_group(CLINIC_NAME_PATTERNS, text)


def extract_phone_number(text: str) -> str:
    for pattern in PHONE_PATTERNS:
        for match in pattern.finditer(text):
            phone = match.group(0).strip()
            if sum(ch.isdigit() for ch in phone) >= 10:
                return phone
    return ""


def extract_email(text: str) -> str:
    match = EMAIL_PATTERN.search(text)
    return match.group(0) if match else ""


def extract_city(text: str) -> str:
    city = _first_group(CITY_PATTERNS, text)
    if city:
        return city

    lowered = text.lower()
    for known in COMMON_CITIES:
        if re.search(rf"\b{re.escape(known)}\b", lowered):
            return known.title()
    return ""


def extract_doctor_info_with_regex(transcript: str) -> dict[str, str]:
    """Pattern-matching fallback used when the AI backend is unavailable."""
    return {
        "doctor_name": extract_doctor_name(transcript),
        "clinic_hospital_name": extract_clinic_name(transcript),
        "phone_number": extract_phone_number(transcript),
        "email_id": extract_email(transcript),
        "city": extract_city(transcript),
    }


class DoctorInfoExtractor:
    """Fixed five-field extractor kept for dashboards created before custom fields."""

    def __init__(self, backend: OpenAIChatBackend | None) -> None:
        self.backend = backend

    async def extract(self, transcript: Any) -> dict[str, str]:
        if not isinstance(transcript, str) or not transcript.strip():
            return empty_doctor_info()

        if self.backend is None:
            return extract_doctor_info_with_regex(transcript)

        try:
            content = await self.backend.complete(
                DOCTOR_INFO_SYSTEM_PROMPT,
                DOCTOR_INFO_PROMPT.format(transcript=transcript),
                max_tokens=500,
            )
            extracted = parse_json_object(content)
        except ExtractionError as e:
            logger.warning("doctor_info_ai_failed_using_regex", error=str(e))
            return extract_doctor_info_with_regex(transcript)

        result: dict[str, str] = {}
        for key in LEGACY_DOCTOR_FIELDS:
            value = extracted.get(key)
            result[key] = value.strip() if isinstance(value, str) else ""
        return result

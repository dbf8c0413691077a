import json
import re

import anthropic
from flask import current_app

DEFAULT_MODEL = "claude-haiku-4-5-20251001"

EMAIL_TYPES = [
    "LEAD_FOLLOW_UP",
    "QUOTATION_FOLLOW_UP",
    "INVOICE_REMINDER",
    "ORDER_UPDATE",
    "GENERAL",
]
EMAIL_TONES = ["PROFESSIONAL", "FRIENDLY", "URGENT", "FORMAL"]

UNAVAILABLE_MARKERS = (
    "payment required",
    "402",
    "insufficient credits",
    "insufficient_quota",
    "billing",
    "invalid api key",
    "incorrect api key",
    "401",
)
RATE_LIMIT_MARKERS = ("rate limit", "429")


class AiServiceError(RuntimeError):
    """Raised when an AI request cannot be completed.

    ``category`` is ``unavailable`` (credentials or credits), ``rate_limited``
    or ``failed``.
    """

    def __init__(self, category: str, message: str):
        super().__init__(message)
        self.category = category
        self.message = message


def classify_ai_error(exc: Exception, feature: str) -> AiServiceError:
    if isinstance(exc, AiServiceError):
        return exc

    status_code = getattr(exc, "status_code", None)
    text = f"{exc} {status_code or ''}".lower()

    if isinstance(exc, anthropic.RateLimitError) or any(
        marker in text for marker in RATE_LIMIT_MARKERS
    ):
        return AiServiceError(
            "rate_limited",
            "The AI service is receiving too many requests. Please try again shortly.",
        )
    if isinstance(exc, anthropic.AuthenticationError) or any(
        marker in text for marker in UNAVAILABLE_MARKERS
    ):
        return AiServiceError(
            "unavailable",
            f"AI {feature} is currently unavailable. Please contact your administrator.",
        )
    return AiServiceError("failed", f"Failed to complete AI {feature}. Please try again.")


def get_client() -> anthropic.Anthropic:
    api_key = (current_app.config.get("ANTHROPIC_API_KEY") or "").strip()
    if not api_key:
        raise AiServiceError(
            "unavailable", "AI features are not configured. Please contact your administrator."
        )
    return anthropic.Anthropic(api_key=api_key)


def _extract_json(text: str) -> dict:
    cleaned = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("AI response did not contain a JSON object")
    return json.loads(cleaned[start : end + 1])


def complete_json(system: str, prompt: str, *, feature: str, max_tokens: int = 1024) -> dict:
    try:
        client = get_client()
        response = client.messages.create(
            model=current_app.config.get("ANTHROPIC_MODEL") or DEFAULT_MODEL,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text_parts = [block.text for block in response.content if hasattr(block, "text")]
        return _extract_json("\n".join(text_parts))
    except Exception as exc:
        error = classify_ai_error(exc, feature)
        current_app.logger.warning("AI %s failed: %s", feature, exc)
        raise error from exc


def generate_email_content(
    *,
    email_type: str,
    tone: str,
    recipient_name: str,
    context: str,
    sender_name: str,
    company_name: str,
) -> dict[str, str]:
    system = (
        f"You write business emails for {company_name}, a facility and property "
        "maintenance company. Reply with a single JSON object with the keys "
        "subject, greeting, body, call_to_action, closing and signature."
    )
    prompt = (
        f"Email type: {email_type}\n"
        f"Tone: {tone}\n"
        f"Recipient: {recipient_name}\n"
        f"Sender: {sender_name}\n"
        f"Context:\n{context}"
    )
    result = complete_json(system, prompt, feature="email generation")

    parts = {
        key: str(result.get(key) or "").strip()
        for key in ("subject", "greeting", "body", "call_to_action", "closing", "signature")
    }
    if not parts["signature"]:
        parts["signature"] = f"{sender_name}\n{company_name}"
    parts["full_email"] = "\n\n".join(
        value
        for value in (
            parts["greeting"],
            parts["body"],
            parts["call_to_action"],
            parts["closing"],
            parts["signature"],
        )
        if value
    )
    return parts


def analyze_project_risks(project_summary: dict, metrics: dict, milestones: list[dict]) -> dict:
    system = (
        "You are a construction project risk analyst. Reply with a single JSON "
        "object: {\"risks\": [{\"title\", \"description\", \"category\", "
        "\"severity\", \"mitigation\"}], \"summary\": string}. Categories are "
        "TECHNICAL, FINANCIAL, SCHEDULE, RESOURCE or EXTERNAL; severity is LOW, "
        "MEDIUM or HIGH."
    )
    prompt = json.dumps(
        {"project": project_summary, "metrics": metrics, "milestones": milestones},
        default=str,
    )
    result = complete_json(system, prompt, feature="risk analysis", max_tokens=2048)
    risks = result.get("risks") or []
    if not isinstance(risks, list):
        risks = []
    return {"risks": risks, "summary": str(result.get("summary") or "")}


def rank_artisans(job: dict, candidates: list[dict]) -> dict:
    system = (
        "You match maintenance jobs to artisans. Reply with a single JSON object: "
        "{\"recommendations\": [{\"artisan_id\", \"score\", \"reasoning\"}], "
        "\"summary\": string}. Scores range from 0 to 100, best match first. "
        "Only use artisan ids from the candidate list."
    )
    prompt = json.dumps({"job": job, "candidates": candidates}, default=str)
    result = complete_json(system, prompt, feature="artisan suggestion")

    known_ids = {candidate["artisan_id"] for candidate in candidates}
    recommendations = [
        item
        for item in result.get("recommendations") or []
        if isinstance(item, dict) and item.get("artisan_id") in known_ids
    ]
    return {"recommendations": recommendations, "summary": str(result.get("summary") or "")}

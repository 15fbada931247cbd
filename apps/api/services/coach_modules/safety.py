"""
AI Coach Safety Guard

Input checks that run before any provider call, and the intent classifier
used to decide whether a medical disclaimer follows the coach's answer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

EMERGENCY_KEYWORDS = (
    "suicide", "suicidal", "kill myself", "end my life", "want to die",
    "self-harm", "self harm", "cutting myself", "hurt myself",
    "overdose", "no reason to live", "better off dead",
)

MEDICAL_TRIGGER_KEYWORDS = (
    "diagnosis", "diagnose", "prescription", "medication", "medicine",
    "treatment", "disease", "disorder", "symptom", "injury",
    "nutrition", "supplement", "diet", "calorie", "macro",
    "pain", "chronic", "acute", "condition", "surgery",
    "heart rate", "blood pressure", "spo2", "vo2max",
)

TRAINING_KEYWORDS = (
    "training", "workout", "swim", "bike", "run", "pace",
    "interval", "tempo", "threshold", "taper", "race", "plan",
    "tss", "ftp", "zone", "recovery", "rest day",
)

EMERGENCY_RESPONSE = (
    "**I'm concerned about your wellbeing.**\n\n"
    "If you're experiencing a crisis or having thoughts of self-harm, please reach out "
    "to professionals who can help:\n\n"
    "- **EU**: 112 (emergency)\n"
    "- **International**: Crisis Text Line, text **HELLO** to **741741**\n"
    "- **International**: Befrienders Worldwide, https://www.befrienders.org\n\n"
    "You are not alone, and there are people who care about you.\n\n"
    "*I'm an AI coaching assistant and cannot provide crisis support. "
    "Please contact a professional or someone you trust.*"
)

MEDICAL_DISCLAIMER = (
    "\n\n---\n*This is AI-generated guidance for informational purposes only. "
    "It is not medical advice. Always consult a qualified healthcare professional "
    "before making health decisions.*"
)


@dataclass(frozen=True)
class SafetyCheckResult:
    passed: bool
    blocked: bool = False
    reason: Optional[str] = None
    response: Optional[str] = None


def check_input(message: str, max_length: int) -> SafetyCheckResult:
    """
    Check a user message before it is sent anywhere.

    `input_too_long` and `empty_input` are client errors; `emergency_detected`
    is answered with crisis-help text instead of a model response.
    """
    if len(message) > max_length:
        return SafetyCheckResult(
            passed=False,
            blocked=True,
            reason="input_too_long",
            response=(
                f"Your message is too long ({len(message)} characters). "
                f"Please keep messages under {max_length} characters."
            ),
        )

    if not message.strip():
        return SafetyCheckResult(
            passed=False,
            blocked=True,
            reason="empty_input",
            response="Please enter a message.",
        )

    if classify_intent(message) == "emergency":
        return SafetyCheckResult(
            passed=False,
            blocked=True,
            reason="emergency_detected",
            response=EMERGENCY_RESPONSE,
        )

    return SafetyCheckResult(passed=True)


def classify_intent(message: str) -> str:
    """Classify a message as 'emergency', 'medical', 'training' or 'general'."""
    lower = message.lower()
    if any(kw in lower for kw in EMERGENCY_KEYWORDS):
        return "emergency"
    if any(kw in lower for kw in MEDICAL_TRIGGER_KEYWORDS):
        return "medical"
    if any(kw in lower for kw in TRAINING_KEYWORDS):
        return "training"
    return "general"

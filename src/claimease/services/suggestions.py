"""Rewrites a claimant's raw answer into a clear PIP form statement."""

import logging

from claimease.services.openai_client import create_chat_completion

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are ClaimEase, an assistant that helps people complete their UK \
Personal Independence Payment (PIP) application.

Your task:
Rewrite the user's answer into a clear, detailed first-person statement suitable for a PIP claim.
Keep everything truthful. Do not invent or exaggerate.
Emphasise reliability, safety, repetition and reasonable time where it naturally fits.
Focus on frequency ("most of the time", "every time I attempt") and impact on independence.
Keep the tone factual, formal and respectful.
The answer must still sound like the claimant wrote it.

Output format:
ClaimEase Answer:
[Rewritten text here in first person]"""

ANSWER_PREFIX = "ClaimEase Answer:"


class SuggestionError(Exception):
    """The model returned nothing usable."""

    pass


def build_messages(question: str, answer: str) -> list[dict[str, str]]:
    user_prompt = (
        f'Current question:\n"How does your condition affect \'{question}\'?"\n\n'
        f"User's raw answer for this question:\n\"{answer}\"\n\n"
        "Rewrite the user's raw answer into a well-structured, impactful response for their PIP form."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def clean_suggestion(content: str) -> str:
    """Strip the answer label the model is asked to emit."""
    text = content.strip()
    if text.startswith(ANSWER_PREFIX):
        text = text[len(ANSWER_PREFIX) :].strip()
    return text


async def suggest_response(question: str, answer: str) -> str:
    """Ask the model for a rewritten answer.

    Raises:
        SuggestionError: If the completion has no content
        CircuitOpenError: If OpenAI is currently failing
    """
    completion = await create_chat_completion(
        build_messages(question, answer),
        temperature=0.7,
        max_completion_tokens=1000,
    )
    content = completion.choices[0].message.content if completion.choices else None
    if not content or not content.strip():
        logger.warning("Empty suggestion returned by model")
        raise SuggestionError("Failed to generate AI suggestion")
    return clean_suggestion(content)

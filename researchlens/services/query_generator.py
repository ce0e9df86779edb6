from __future__ import annotations

from loguru import logger

from researchlens.llm_client import TextModel
from researchlens.models.memory import Marker

TEXT_SAMPLE_CHARS = 2000
MAX_PROMPT_MARKERS = 10
MIN_TOPIC_CHARS = 10
DEFAULT_TOPIC = "general health screening"

TOPIC_PROMPT = """You are a health topic identifier. Based on health markers and lab report content, identify ONE key health topic to research.

Health Markers Found:
{markers}

Lab Report Context (sample):
{sample}

Instructions:
- Generate ONLY 1 simple health topic (2-4 words)
- Focus on the most clinically significant finding
- Use common medical terms (e.g., "cholesterol levels", "blood glucose", "vitamin D deficiency")
- Avoid complex query syntax - just the core health topic

Return ONLY the health topic (2-4 words), no extra text.

Topic:"""


def fallback_queries(markers: list[Marker]) -> list[str]:
    """One topic derived from the first marker."""
    if not markers:
        return [DEFAULT_TOPIC]

    marker = markers[0]
    name = marker.name.lower()
    if "cholesterol" in name:
        topic = "cholesterol levels"
    elif "glucose" in name or "blood sugar" in name:
        topic = "blood glucose"
    elif "vitamin" in name:
        topic = "vitamin deficiency"
    elif "hemoglobin" in name or "hgb" in name:
        topic = "hemoglobin levels"
    else:
        topic = marker.name
    return [topic]


def build_prompt(markers: list[Marker], raw_text: str) -> str:
    if markers:
        summary = ", ".join(
            f"{m.name}: {m.value} {m.unit or ''}".strip() for m in markers[:MAX_PROMPT_MARKERS]
        )
    else:
        summary = "No specific markers extracted"
    return TOPIC_PROMPT.format(markers=summary, sample=raw_text[:TEXT_SAMPLE_CHARS])


async def generate_research_queries(
    markers: list[Marker],
    raw_text: str,
    *,
    model: TextModel | None = None,
) -> list[str]:
    """Pick one research topic for a document, falling back to its markers."""
    if model is None:
        return fallback_queries(markers)

    try:
        reply = await model.complete(
            build_prompt(markers, raw_text),
            caller="query_generator",
            max_tokens=100,
            temperature=0.2,
        )
    except Exception as exc:
        logger.warning(f"Research query generation failed, using fallback: {exc}")
        return fallback_queries(markers)

    topic = reply.strip().strip('"').strip()
    if len(topic) < MIN_TOPIC_CHARS:
        logger.warning(f"Text model returned an unusable topic: {reply!r}")
        return fallback_queries(markers)
    return [topic]

"""
Prompt templates and viral-element selection for provider prompts.

Strategy prompts are seeded with a randomly chosen hook, music style and
two emotional triggers so repeated runs on the same topic do not converge
on the same angle.
"""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from reelforge.models import CompilationAssets, PlatformPayload, Strategy

MUSIC_STYLES = ["Lo-fi beats", "Viral TikTok sounds", "Epic cinematic", "90s nostalgia"]

HOOKS = [
    "Unexpected twist endings",
    "Relatable everyday struggles",
    "Mystery cliffhangers",
    "Emotional storytelling",
    "Controversial opinions",
]

EMOTIONAL_TRIGGERS = [
    "Nostalgia", "Awe", "Amusement", "Indignation",
    "Curiosity", "Inspiration", "Surprise",
]


@dataclass
class ViralElements:
    hook: str
    music: str
    emotional_triggers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def pick_viral_elements(rng: Optional[random.Random] = None) -> ViralElements:
    rng = rng or random.Random()
    return ViralElements(
        hook=rng.choice(HOOKS),
        music=rng.choice(MUSIC_STYLES),
        emotional_triggers=rng.sample(EMOTIONAL_TRIGGERS, 2),
    )


STRATEGY_TEMPLATE = """Develop a viral short-form video strategy about "{topic}".
Hook: "{hook}"
Music style: "{music}"
Emotional triggers: {triggers}
{source_block}
Include a visual style, the target audience, 5-7 viral hashtags, an
attention-grabbing title, a two-sentence description and a short caption.
Respond ONLY with a JSON object:
{{"title": "", "description": "", "hashtags": [], "visualPrompt": "",
"viralMusicPrompt": "", "scriptSegment": "", "caption": "", "audience": ""}}"""

SCRIPT_TEMPLATE = """Write a 30-45 second voice-over script for a short video.
Title: {title}
Audience: {audience}
Angle: {description}
Opening line to build on: {script_segment}
Return only the spoken script, no stage directions."""

VIDEO_TEMPLATE = "{visual_prompt}. {description}"


def strategy_prompt(
    topic: str,
    elements: Optional[Dict[str, Any]] = None,
    extracted_text: Optional[str] = None,
) -> str:
    elements = elements or pick_viral_elements().to_dict()
    source_block = ""
    if extracted_text:
        source_block = f"Base the strategy on this source material:\n\"\"\"\n{extracted_text}\n\"\"\"\n"
    return STRATEGY_TEMPLATE.format(
        topic=topic,
        hook=elements.get("hook", ""),
        music=elements.get("music", ""),
        triggers=", ".join(elements.get("emotional_triggers", [])),
        source_block=source_block,
    )


def script_prompt(strategy: Strategy) -> str:
    return SCRIPT_TEMPLATE.format(
        title=strategy.title,
        audience=strategy.audience or "general",
        description=strategy.description,
        script_segment=strategy.script_segment,
    )


def video_prompt(strategy: Strategy) -> str:
    return VIDEO_TEMPLATE.format(
        visual_prompt=strategy.visual_prompt or strategy.title,
        description=strategy.description,
    ).strip(". ")


def compilation_prompt(assets: CompilationAssets) -> str:
    parts = [assets.title, assets.caption]
    if assets.music_prompt:
        parts.append(f"Music: {assets.music_prompt}")
    return "\n".join(p for p in parts if p)


def hashtag_line(tags: List[str]) -> str:
    return " ".join(t if t.startswith("#") else f"#{t}" for t in tags)


def platform_fields(payload: PlatformPayload) -> Dict[str, str]:
    """Text fields a publish form may ask for."""
    return {
        "title": payload.title,
        "description": payload.description,
        "caption": f"{payload.caption} {hashtag_line(payload.tags)}".strip(),
        "tags": ", ".join(t.lstrip("#") for t in payload.tags),
    }

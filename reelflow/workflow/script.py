"""
Script Parsing
==============

Turns the generated shot script into character and scene lists.

The script model is asked for a JSON object with ``characters`` and
``scenes``. Older prompts produced ``Image 1 | ...`` / ``Video 1 | ...``
lines instead; those are still understood when no JSON is present.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from ..core.exceptions import ScriptParseError

logger = logging.getLogger(__name__)


SCRIPT_OUTPUT_FORMAT = """

---

# Output Format Requirements (Must Follow Strictly)

Please output the result strictly in the following JSON format:

```json
{
  "characters": [
    {
      "name": "Character Name",
      "RoleimagePrompt": "Reference Image Prompt"
    }
  ],
  "scenes": [
    {
      "id": 1,
      "imagePrompt": "Image Prompt",
      "videoPrompt": "Video Prompt"
    }
  ]
}
```

**Important**: Output must be valid JSON format.
"""

DEFAULT_SCRIPT_PROMPT = (
    "Break the video content down into shots. Register every recurring character "
    "with a reference image prompt, then write an image prompt and a video prompt "
    "for each shot, keeping character descriptions consistent across shots."
)

JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
LEGACY_IMAGE_LINE = re.compile(r"[Ii]mage\s*(\d+)\s*[|｜:：]\s*([^|\n]+)")
LEGACY_VIDEO_LINE = re.compile(r"[Vv]ideo\s*(\d+)\s*[|｜:：]\s*([^|\n]+)")


@dataclass
class ParsedCharacter:
    name: str
    prompt: str
    description: str = ""


@dataclass
class ParsedScene:
    number: int
    image_prompt: str
    video_prompt: str = ""


@dataclass
class ParsedScript:
    characters: List[ParsedCharacter] = field(default_factory=list)
    scenes: List[ParsedScene] = field(default_factory=list)
    legacy: bool = False


def build_script_prompt(
    prompt: Optional[str] = None,
    idea: Optional[str] = None,
) -> str:
    """
    Assemble the prompt sent to the script model.

    Args:
        prompt: Custom instructions (defaults to a generic shot breakdown)
        idea: Free-form idea used when there is no source video

    Returns:
        Prompt with the JSON output format appended
    """
    parts = [prompt or DEFAULT_SCRIPT_PROMPT]
    if idea:
        parts.append(f"\nIdea:\n{idea}")
    return "\n".join(parts) + SCRIPT_OUTPUT_FORMAT


def strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_script(text: str) -> ParsedScript:
    """
    Parse a generated script.

    Args:
        text: Raw model output

    Returns:
        ParsedScript with at least one scene

    Raises:
        ScriptParseError: If neither the JSON nor the line format yields scenes
    """
    if not text or not text.strip():
        raise ScriptParseError("Script is empty")

    data = _load_json(strip_code_fence(text))
    if data is not None:
        parsed = _from_json(data)
        if not parsed.scenes:
            raise ScriptParseError("Script contains no scenes", excerpt=text)
        logger.info(f"Parsed script: {len(parsed.characters)} characters, {len(parsed.scenes)} scenes")
        return parsed

    parsed = _from_legacy_lines(text)
    if not parsed.scenes:
        raise ScriptParseError("Failed to parse script: Invalid JSON format", excerpt=text)
    logger.info(f"Parsed legacy script: {len(parsed.scenes)} scenes")
    return parsed


def _load_json(text: str) -> Optional[Dict[str, Any]]:
    match = JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"Script JSON did not decode: {e}")
        return None
    return data if isinstance(data, dict) else None


def _from_json(data: Dict[str, Any]) -> ParsedScript:
    characters = []
    for index, raw in enumerate(data.get("characters") or []):
        if not isinstance(raw, dict):
            continue
        characters.append(ParsedCharacter(
            name=raw.get("name") or f"Character {index + 1}",
            prompt=raw.get("imagePrompt") or raw.get("RoleimagePrompt") or "",
            description=raw.get("description") or "",
        ))

    scenes = []
    for index, raw in enumerate(data.get("scenes") or []):
        if not isinstance(raw, dict):
            continue
        number = raw.get("id")
        scenes.append(ParsedScene(
            number=number if isinstance(number, int) else index + 1,
            image_prompt=raw.get("imagePrompt") or "",
            video_prompt=raw.get("videoPrompt") or "",
        ))

    return ParsedScript(characters=characters, scenes=scenes)


def _from_legacy_lines(text: str) -> ParsedScript:
    images = [m.group(2).strip() for m in LEGACY_IMAGE_LINE.finditer(text)]
    videos = [m.group(2).strip() for m in LEGACY_VIDEO_LINE.finditer(text)]

    scenes = [
        ParsedScene(
            number=index + 1,
            image_prompt=prompt,
            video_prompt=videos[index] if index < len(videos) else "",
        )
        for index, prompt in enumerate(images)
    ]
    return ParsedScript(scenes=scenes, legacy=True)

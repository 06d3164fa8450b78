"""Prompt building for image generation.

Templates use {variable} and {variable|default} placeholders. {scene.attr}
reads from the scene, {location} falls back from parameters to the scene name.
"""

import re
from typing import Any, Optional

from pixelforge.models.scene import Scene

MAX_PROMPT_LENGTH = 4000

PLACEHOLDER_PATTERN = re.compile(r"\{([^{}]+)\}")

BUILTIN_TEMPLATES: dict[str, str] = {
    "photography": (
        "Professional fashion photography of a {age|25} year old {nationality|asian} "
        "{gender|female} model with {skin_tone|medium} skin tone wearing the garments "
        "from the reference images, shot at {location|a photo studio}. "
        "{scene.description|} High quality, professional lighting, fashion editorial style."
    ),
    "fitting": (
        "Virtual try-on: dress the model from the first reference image in the garments "
        "from the other reference images. Keep face, body and pose unchanged. "
        "Setting: {location|a photo studio}. High quality, professional lighting."
    ),
    "personal-fitting": (
        "Dress the person in the first photo in {clothing_description|the garments from the "
        "other reference images}. Keep identity, face and body shape unchanged. "
        "Natural lighting, realistic fabric detail."
    ),
    "travel": (
        "Place the person from the photo at {destination}, {style|natural travel photography}. "
        "Keep identity and face unchanged. Realistic lighting that matches the destination."
    ),
}

DEFAULT_PROMPTS: dict[str, str] = {
    "photography": (
        "Professional fashion photography showcasing the garments. High quality, "
        "professional lighting, fashion style, 1024x1024."
    ),
    "fitting": (
        "Professional virtual try-on showing how the garments look when worn. High quality, "
        "professional lighting, fashion style, 1024x1024."
    ),
    "personal-fitting": "Realistic try-on photo of the person wearing the selected clothing.",
    "travel": "Realistic travel photo of the person at a scenic destination.",
}


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Built prompt text

    Returns:
        Validated prompt with surrounding whitespace removed

    Raises:
        ValueError: If prompt is empty, None, or exceeds MAX_PROMPT_LENGTH characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be blank")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def default_prompt(task_type: str) -> str:
    """Canned prompt used whenever building fails."""
    return DEFAULT_PROMPTS.get(task_type, "Generate a high quality image.")


def _scene_info(scene: Optional[Scene]) -> dict[str, Any]:
    if scene is None:
        return {}
    return {
        "id": scene.id,
        "name": scene.name,
        "category": scene.category,
        "description": scene.description,
    }


def render_template(template: str, parameters: dict[str, Any], scene_info: dict[str, Any]) -> str:
    """Substitute placeholders from parameters and scene info.

    Raises:
        ValueError: If a placeholder without default has no value
    """

    def _replace(match: re.Match) -> str:
        name, _, default = match.group(1).partition("|")
        name = name.strip()
        has_default = "|" in match.group(1)

        if name.startswith("scene."):
            value = scene_info.get(name[len("scene.") :])
        elif name == "location":
            value = parameters.get("location") or scene_info.get("name") or scene_info.get("description")
        else:
            value = parameters.get(name)

        if value in (None, ""):
            if not has_default:
                raise ValueError(f"Missing value for prompt placeholder '{name}'")
            return default.strip()
        return str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def build_pose_variation_prompt(
    pose_description: str, scene_info: dict[str, Any], parameters: dict[str, Any]
) -> str:
    location = scene_info.get("name") or parameters.get("location") or "the original location"
    return (
        "Keep the subject and the garments of the image unchanged. "
        f"Follow this pose direction exactly: {pose_description}. "
        f"The shoot location is {location}. Output the new photo."
    )


class PromptBuilder:
    """Builds the generation prompt for a task from its parameters and scene."""

    def build(
        self,
        task_type: str,
        parameters: dict[str, Any],
        scene: Optional[Scene] = None,
        mode: str = "normal",
        pose_description: Optional[str] = None,
    ) -> str:
        """Build and validate a prompt.

        Args:
            task_type: Task type value (photography, fitting, ...)
            parameters: User parameters from the request
            scene: Resolved scene, if the request named one
            mode: "normal" or "pose_variation"
            pose_description: Pose direction for pose variation

        Returns:
            Validated prompt

        Raises:
            ValueError: Unknown type, unresolved placeholder, or invalid result
        """
        info = _scene_info(scene)

        if mode == "pose_variation" and pose_description:
            return validate_prompt(build_pose_variation_prompt(pose_description, info, parameters))

        template = (scene.prompt_template if scene and scene.prompt_template else None) or (
            BUILTIN_TEMPLATES.get(task_type)
        )
        if template is None:
            raise ValueError(f"No prompt template for task type '{task_type}'")

        prompt = render_template(template, parameters, info)
        image_count = parameters.get("image_count")
        if image_count:
            prompt += f"\n\nReference images: {image_count}."
        return validate_prompt(prompt)
